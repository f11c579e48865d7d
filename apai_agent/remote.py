import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Protocol

import anyio
import httpx
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.shared.exceptions import McpError

from .errors import ToolExecutionError
from .tools import RemoteTarget

logger = logging.getLogger("uvicorn.error")

# Transport and session failures that become tool errors instead of ending the run.
REMOTE_ERRORS = (
    httpx.HTTPError,
    McpError,
    OSError,
    asyncio.TimeoutError,
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    anyio.EndOfStream,
    ExceptionGroup,
)


class RemoteToolExecutor(Protocol):
    async def invoke(self, target: RemoteTarget, arguments: Dict[str, Any]) -> Any:
        ...


def describe_error(exc: BaseException) -> str:
    # anyio task groups wrap the transport error.
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return str(exc) or type(exc).__name__


async def _close_quietly(stack: AsyncExitStack, server: str) -> None:
    try:
        await stack.aclose()
    except Exception as exc:
        logger.warning("Closing MCP session for %s failed: %s", server, describe_error(exc))


def normalize_tool_result(result: Any) -> Any:
    """Flatten an MCP CallToolResult into plain data."""
    structured = getattr(result, "structuredContent", None)
    is_error = bool(getattr(result, "isError", False))
    if isinstance(structured, dict) and structured and not is_error:
        return dict(structured)
    text_parts: List[str] = []
    for block in getattr(result, "content", None) or []:
        text = getattr(block, "text", None)
        if isinstance(text, str):
            text_parts.append(text)
        elif hasattr(block, "model_dump"):
            text_parts.append(json.dumps(block.model_dump(), ensure_ascii=True, default=str))
        else:
            text_parts.append(str(block))
    text_out = "\n".join(text_parts).strip()
    if is_error:
        raise ToolExecutionError(text_out or "remote tool reported an error")
    if not text_out:
        return {"success": True}
    try:
        return json.loads(text_out)
    except json.JSONDecodeError:
        return {"result": text_out}


class McpToolExecutor:
    """MCP client sessions over SSE, one per remote server, opened on first use."""

    def __init__(self, *, connect_timeout_s: float = 20.0):
        self.connect_timeout_s = connect_timeout_s
        self._stacks: Dict[str, AsyncExitStack] = {}
        self._sessions: Dict[str, ClientSession] = {}
        self._lock = asyncio.Lock()

    async def _session(self, target: RemoteTarget) -> ClientSession:
        async with self._lock:
            session = self._sessions.get(target.server)
            if session is not None:
                return session
            if target.transport != "sse":
                raise ToolExecutionError(f"unsupported transport '{target.transport}' for server '{target.server}'")
            logger.info("Connecting to MCP server %s at %s", target.server, target.url)
            stack = AsyncExitStack()
            try:
                read_stream, write_stream = await stack.enter_async_context(sse_client(target.url))
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                await asyncio.wait_for(session.initialize(), timeout=self.connect_timeout_s)
            except REMOTE_ERRORS as exc:
                await _close_quietly(stack, target.server)
                raise ToolExecutionError(f"cannot reach MCP server '{target.server}': {describe_error(exc)}") from exc
            self._stacks[target.server] = stack
            self._sessions[target.server] = session
            return session

    async def _drop(self, server: str) -> None:
        async with self._lock:
            self._sessions.pop(server, None)
            stack = self._stacks.pop(server, None)
        if stack is not None:
            await _close_quietly(stack, server)

    async def invoke(self, target: RemoteTarget, arguments: Dict[str, Any]) -> Any:
        session = await self._session(target)
        try:
            result = await session.call_tool(target.tool, arguments=dict(arguments or {}))
        except REMOTE_ERRORS as exc:
            # The next call reconnects.
            await self._drop(target.server)
            raise ToolExecutionError(
                f"call to '{target.tool}' on MCP server '{target.server}' failed: {describe_error(exc)}"
            ) from exc
        return normalize_tool_result(result)

    async def close(self) -> None:
        async with self._lock:
            stacks = list(self._stacks.items())
            self._stacks.clear()
            self._sessions.clear()
        for server, stack in stacks:
            await _close_quietly(stack, server)
