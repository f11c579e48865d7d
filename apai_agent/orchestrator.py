import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .agents import AgentSpec
from .config import AppSettings
from .db import Database
from .errors import (
    ProviderOverloadedError,
    ProviderTimeoutError,
    RunExhaustedError,
    ToolExecutionError,
    ValidationError,
)
from .llm import ModelCaller
from .postprocess import TurnDecision, TurnPolicy, decide_turn, latest_text
from .remote import RemoteToolExecutor
from .router import select_next
from .schemas import Message, RunStatus, TextMessage, ToolInvocation, ToolRef, ToolResultMessage
from .state import RunContext, RunState
from .steps import step_key
from .tools import ToolRegistry

logger = logging.getLogger("uvicorn.error")

OVERLOADED_ANSWER = "The server is currently overloaded. Please try again in a few moments."
NO_ANSWER = "No answer generated."


def new_run_id() -> str:
    return str(uuid.uuid4())


@dataclass
class RunOutcome:
    run_id: str
    status: RunStatus
    answer: Optional[str]
    turns: int
    history: List[Message] = field(default_factory=list)
    state: Dict[str, Any] = field(default_factory=dict)


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("run_id", run_id)
        stored = await self.db.add_event(run_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(run_id, []))
        for q in queues:
            await q.put(stored)
        return stored

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)


class RunObserver:
    """Receives run lifecycle notifications. Return values are ignored."""

    async def run_started(self, ctx: RunContext, agent: AgentSpec) -> None:
        pass

    async def turn_started(self, ctx: RunContext, turn: int, agent: AgentSpec) -> None:
        pass

    async def turn_decided(self, ctx: RunContext, turn: int, decision: TurnDecision) -> None:
        pass

    async def tool_dispatched(self, ctx: RunContext, result: ToolResultMessage) -> None:
        pass

    async def run_finished(self, ctx: RunContext, outcome: RunOutcome) -> None:
        pass


class LoggingObserver(RunObserver):
    async def run_started(self, ctx: RunContext, agent: AgentSpec) -> None:
        logger.info("Run %s started with agent %s", ctx.run_id, agent.name)

    async def turn_started(self, ctx: RunContext, turn: int, agent: AgentSpec) -> None:
        logger.info("Run %s turn %d: %s", ctx.run_id, turn, agent.name)

    async def turn_decided(self, ctx: RunContext, turn: int, decision: TurnDecision) -> None:
        logger.info("Run %s turn %d decision %s (%s)", ctx.run_id, turn, decision.state.value, decision.reason)

    async def tool_dispatched(self, ctx: RunContext, result: ToolResultMessage) -> None:
        if result.error:
            logger.warning("Run %s tool %s failed: %s", ctx.run_id, result.tool.name, result.content)
        else:
            logger.info("Run %s tool %s returned", ctx.run_id, result.tool.name)

    async def run_finished(self, ctx: RunContext, outcome: RunOutcome) -> None:
        logger.info("Run %s finished: status=%s turns=%d", ctx.run_id, outcome.status, outcome.turns)


class EventBusObserver(RunObserver):
    """Forward lifecycle notifications to the event bus for persistence and SSE."""

    def __init__(self, bus: EventBus):
        self.bus = bus

    async def run_started(self, ctx: RunContext, agent: AgentSpec) -> None:
        await self.bus.emit(ctx.run_id, "run_started", {"agent": agent.name, "prompt": ctx.prompt})

    async def turn_started(self, ctx: RunContext, turn: int, agent: AgentSpec) -> None:
        await self.bus.emit(ctx.run_id, "turn_started", {"turn": turn, "agent": agent.name})

    async def turn_decided(self, ctx: RunContext, turn: int, decision: TurnDecision) -> None:
        await self.bus.emit(
            ctx.run_id,
            "turn_decided",
            {
                "turn": turn,
                "state": decision.state.value,
                "tools": [call.name for call in decision.dispatch],
                "synthesized": decision.synthesized,
                "reason": decision.reason,
            },
        )

    async def tool_dispatched(self, ctx: RunContext, result: ToolResultMessage) -> None:
        await self.bus.emit(
            ctx.run_id,
            "tool_dispatched",
            {"tool": result.tool.name, "call_id": result.tool.id, "error": result.error},
        )

    async def run_finished(self, ctx: RunContext, outcome: RunOutcome) -> None:
        await self.bus.emit(
            ctx.run_id,
            "run_finished",
            {"status": outcome.status, "answer": outcome.answer, "turns": outcome.turns},
        )


class CompositeObserver(RunObserver):
    def __init__(self, *observers: RunObserver):
        self.observers = list(observers)

    async def _each(self, method: str, *args: Any) -> None:
        for observer in self.observers:
            await getattr(observer, method)(*args)

    async def run_started(self, ctx: RunContext, agent: AgentSpec) -> None:
        await self._each("run_started", ctx, agent)

    async def turn_started(self, ctx: RunContext, turn: int, agent: AgentSpec) -> None:
        await self._each("turn_started", ctx, turn, agent)

    async def turn_decided(self, ctx: RunContext, turn: int, decision: TurnDecision) -> None:
        await self._each("turn_decided", ctx, turn, decision)

    async def tool_dispatched(self, ctx: RunContext, result: ToolResultMessage) -> None:
        await self._each("tool_dispatched", ctx, result)

    async def run_finished(self, ctx: RunContext, outcome: RunOutcome) -> None:
        await self._each("run_finished", ctx, outcome)


class AgentNetwork:
    """Drive one agent through model turns until the router has nothing left to run."""

    def __init__(
        self,
        agent: AgentSpec,
        registry: ToolRegistry,
        model: ModelCaller,
        settings: AppSettings,
        *,
        remote: Optional[RemoteToolExecutor] = None,
        observer: Optional[RunObserver] = None,
        policy: Optional[TurnPolicy] = None,
    ):
        self.agent = agent
        self.registry = registry
        self.model = model
        self.settings = settings
        self.remote = remote
        self.observer = observer or LoggingObserver()
        self.policy = policy or TurnPolicy(max_calls_per_tool=settings.max_calls_per_tool)

    def tool_schemas(self, agent: AgentSpec) -> List[Dict[str, Any]]:
        schemas = self.registry.schemas()
        if not agent.tools:
            return schemas
        by_name = {schema["name"]: schema for schema in schemas}
        return [by_name[name] for name in agent.tools if name in by_name]

    async def _notify(self, method: str, *args: Any) -> None:
        try:
            await getattr(self.observer, method)(*args)
        except Exception:
            logger.exception("Observer %s failed", method)

    async def _infer(self, agent: AgentSpec, history: List[Message]):
        timeout = self.settings.model_timeout_s
        try:
            return await asyncio.wait_for(
                self.model.infer(agent.system, list(history), self.tool_schemas(agent)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(f"model call exceeded {timeout:g}s") from exc

    async def _call_tool(self, ctx: RunContext, call: ToolInvocation) -> Any:
        timeout = self.settings.tool_timeout_s
        try:
            return await asyncio.wait_for(self.registry.invoke(call.name, call.input, ctx), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(f"tool '{call.name}' exceeded {timeout:g}s") from exc

    async def _dispatch(self, ctx: RunContext, call: ToolInvocation) -> ToolResultMessage:
        ref = ToolRef(id=call.id, name=call.name)
        try:
            content = await ctx.steps.run(step_key(call.name, call.input), lambda: self._call_tool(ctx, call))
        except ValidationError as exc:
            return ToolResultMessage(tool=ref, content={"error": str(exc), "details": exc.errors}, error=True)
        except ToolExecutionError as exc:
            return ToolResultMessage(tool=ref, content={"error": str(exc)}, error=True)
        return ToolResultMessage(tool=ref, content=content)

    async def _loop(self, ctx: RunContext, cancel_event: Optional[asyncio.Event]) -> None:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                ctx.terminated = True
                return
            agent = select_next(ctx.state, self.agent)
            if agent is None:
                return
            if ctx.turns >= self.settings.max_turns:
                raise RunExhaustedError(self.settings.max_turns)
            ctx.turns += 1
            await self._notify("turn_started", ctx, ctx.turns, agent)

            result = await self._infer(agent, ctx.history)
            decision = decide_turn(result.output, ctx.history, self.policy)
            await self._notify("turn_decided", ctx, ctx.turns, decision)
            ctx.history.extend(decision.output)
            for call in decision.dispatch:
                tool_result = await self._dispatch(ctx, call)
                ctx.history.append(tool_result)
                if call.name == self.policy.finish_tool and not tool_result.error and "answer" not in ctx.state:
                    # A replayed finish step skips its handler, so the answer comes from the result.
                    ctx.state.set("answer", tool_result.content)
                await self._notify("tool_dispatched", ctx, tool_result)
            ctx.state.set("history", list(ctx.history))

    async def run(
        self,
        prompt: str,
        run_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        ctx = RunContext(run_id=run_id or new_run_id(), prompt=prompt, remote=self.remote)
        ctx.state = RunState({"initialized": False})
        ctx.history.append(TextMessage(role="user", content=prompt))
        await self._notify("run_started", ctx, self.agent)

        status: RunStatus = "completed"
        answer: Optional[str] = None
        try:
            await self._loop(ctx, cancel_event)
            if ctx.terminated:
                status = "cancelled"
            else:
                answer = ctx.answer
        except RunExhaustedError as exc:
            logger.warning("Run %s: %s", ctx.run_id, exc)
            status = "exhausted"
            answer = latest_text(ctx.history) or NO_ANSWER
        except ProviderOverloadedError as exc:
            logger.warning("Run %s: model backend overloaded: %s", ctx.run_id, exc)
            status = "overloaded"
            answer = OVERLOADED_ANSWER

        outcome = RunOutcome(
            run_id=ctx.run_id,
            status=status,
            answer=answer,
            turns=ctx.turns,
            history=list(ctx.history),
            state=ctx.state.snapshot(),
        )
        await self._notify("run_finished", ctx, outcome)
        return outcome
