import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .errors import ProviderError, ProviderOverloadedError
from .schemas import InferenceResult, Message, TextMessage, ToolCallMessage, ToolInvocation, ToolResultMessage


ANTHROPIC_VERSION = "2023-06-01"
OVERLOADED_STATUS = 529


class ModelCaller(Protocol):
    async def infer(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tool_schemas: Sequence[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> InferenceResult:
        ...


def _result_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=True, default=str)


def to_anthropic_messages(history: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert run history into Messages API turns.

    Tool results are sent as user turns; consecutive results share one turn.
    """
    converted: List[Dict[str, Any]] = []

    def append(role: str, blocks: List[Dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for msg in history:
        if isinstance(msg, TextMessage):
            if not msg.content.strip():
                continue
            append(msg.role, [{"type": "text", "text": msg.content}])
        elif isinstance(msg, ToolCallMessage):
            blocks = [
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.input}
                for call in msg.tools
            ]
            if blocks:
                append("assistant", blocks)
        elif isinstance(msg, ToolResultMessage):
            block: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": msg.tool.id,
                "content": _result_content(msg.content),
            }
            if msg.error:
                block["is_error"] = True
            append("user", [block])
    return converted


def from_anthropic_content(content: Sequence[Dict[str, Any]], stop_reason: Optional[str]) -> List[Message]:
    text_chunks: List[str] = []
    calls: List[ToolInvocation] = []
    for block in content or []:
        block_type = block.get("type")
        if block_type == "text":
            text_chunks.append(block.get("text") or "")
        elif block_type == "tool_use":
            calls.append(
                ToolInvocation(
                    id=str(block.get("id") or ""),
                    name=str(block.get("name") or ""),
                    input=block.get("input") or {},
                )
            )
    output: List[Message] = []
    text = "".join(text_chunks).strip()
    if text:
        output.append(TextMessage(role="assistant", content=text, stop_reason=stop_reason))
    if calls:
        output.append(ToolCallMessage(tools=calls, stop_reason=stop_reason or "tool_use"))
    return output


class AnthropicClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 1000,
        timeout: float = 90.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "content-type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _extract_error(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"type": "", "message": response.text}
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return {"type": str(error.get("type") or ""), "message": str(error.get("message") or "")}
        return {"type": "", "message": json.dumps(data, ensure_ascii=True)}

    def build_payload(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tool_schemas: Sequence[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": to_anthropic_messages(history),
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tool_schemas:
            payload["tools"] = [
                {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "input_schema": tool.get("input_schema") or {"type": "object"},
                }
                for tool in tool_schemas
            ]
        return payload

    async def infer(
        self,
        system_prompt: str,
        history: Sequence[Message],
        tool_schemas: Sequence[Dict[str, Any]],
        max_tokens: Optional[int] = None,
    ) -> InferenceResult:
        payload = self.build_payload(system_prompt, history, tool_schemas, max_tokens=max_tokens)
        url = f"{self.base_url}/v1/messages"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = self._extract_error(exc.response)
            if status == OVERLOADED_STATUS or detail["type"] == "overloaded_error":
                raise ProviderOverloadedError(
                    detail["message"] or "model backend overloaded", status_code=status, detail=detail
                ) from exc
            raise ProviderError(
                f"model request failed with HTTP {status}: {detail['message']}",
                status_code=status,
                detail=detail,
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"model request failed: {exc}") from exc

        data = resp.json()
        stop_reason = data.get("stop_reason")
        output = from_anthropic_content(data.get("content") or [], stop_reason)
        return InferenceResult(
            output=output,
            history=list(history) + output,
            stop_reason=stop_reason,
            usage=data.get("usage") or {},
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
