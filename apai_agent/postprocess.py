"""Turn post-processing: decide what a model response means for the run.

``decide_turn`` is a pure function. It never executes tools or touches run
state; it returns a ``TurnDecision`` that the run loop applies. Checks are
evaluated in a fixed order and the first match wins:

1. AWAIT_RESULT      a non-finish tool is called while under its call cap
2. RESULT_SEEN       the finish tool already produced a result in history
3. ALREADY_FINISHED  the output calls the finish tool
4. STALLED_REPEAT    a non-finish tool is called again after reaching its cap
5. TOOL_CALL_PENDING a tool is called while its earlier call is unanswered
6. FALLBACK          text only

Tool calls that the decision does not dispatch are dropped from the output so
every call appended to history is paired with exactly one result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set

from .schemas import Message, TextMessage, ToolCallMessage, ToolInvocation, ToolResultMessage

STALLED_ANSWER_TEMPLATE = (
    "I was unable to finish: the '{tool}' tool was called again without producing new information."
)


class TurnState(str, Enum):
    AWAIT_RESULT = "await_result"
    RESULT_SEEN = "result_seen"
    ALREADY_FINISHED = "already_finished"
    STALLED_REPEAT = "stalled_repeat"
    TOOL_CALL_PENDING = "tool_call_pending"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class TurnPolicy:
    finish_tool: str = "done"
    # One successful call per non-finish tool; tune to allow N repeats.
    max_calls_per_tool: int = 1


@dataclass
class TurnDecision:
    state: TurnState
    output: List[Message] = field(default_factory=list)
    dispatch: List[ToolInvocation] = field(default_factory=list)
    stop: bool = False
    synthesized: bool = False
    reason: str = ""


def _output_calls(output: Sequence[Message]) -> List[ToolInvocation]:
    calls: List[ToolInvocation] = []
    for msg in output:
        if isinstance(msg, ToolCallMessage):
            calls.extend(msg.tools)
    return calls


def _texts(output: Sequence[Message]) -> List[Message]:
    return [msg for msg in output if isinstance(msg, TextMessage)]


def completed_calls(history: Sequence[Message]) -> Dict[str, int]:
    """Count successful tool results per tool name."""
    counts: Dict[str, int] = {}
    for msg in history:
        if isinstance(msg, ToolResultMessage) and not msg.error:
            counts[msg.tool.name] = counts.get(msg.tool.name, 0) + 1
    return counts


def outstanding_calls(history: Sequence[Message]) -> Set[str]:
    """Names of tools whose calls in history still lack a result."""
    answered: Set[str] = {msg.tool.id for msg in history if isinstance(msg, ToolResultMessage)}
    pending: Set[str] = set()
    for msg in history:
        if isinstance(msg, ToolCallMessage):
            for call in msg.tools:
                if call.id not in answered:
                    pending.add(call.name)
    return pending


def latest_text(messages: Sequence[Message], role: str = "assistant") -> Optional[str]:
    for msg in reversed(list(messages)):
        if isinstance(msg, TextMessage) and msg.role == role and msg.content.strip():
            return msg.content
    return None


def _finish_result(history: Sequence[Message], finish_tool: str) -> Optional[ToolResultMessage]:
    for msg in reversed(list(history)):
        if isinstance(msg, ToolResultMessage) and msg.tool.name == finish_tool and not msg.error:
            return msg
    return None


def synthesize_finish(answer: str, finish_tool: str, call_id: str) -> ToolCallMessage:
    return ToolCallMessage(
        tools=[ToolInvocation(id=call_id, name=finish_tool, input={"answer": answer})],
    )


def _with_calls(output: Sequence[Message], calls: List[ToolInvocation]) -> List[Message]:
    kept: List[Message] = _texts(output)
    if calls:
        kept.append(ToolCallMessage(tools=calls))
    return kept


def decide_turn(
    output: Sequence[Message],
    history: Sequence[Message],
    policy: Optional[TurnPolicy] = None,
) -> TurnDecision:
    policy = policy or TurnPolicy()
    finish = policy.finish_tool
    calls = _output_calls(output)
    completed = completed_calls(history)
    pending = outstanding_calls(history)
    synth_id = f"synth-{finish}-{len(history)}"

    fresh: List[ToolInvocation] = []
    seen_names: Set[str] = set()
    for call in calls:
        if call.name == finish or call.name in seen_names:
            continue
        if completed.get(call.name, 0) < policy.max_calls_per_tool and call.name not in pending:
            fresh.append(call)
            seen_names.add(call.name)
    if fresh:
        return TurnDecision(
            state=TurnState.AWAIT_RESULT,
            output=_with_calls(output, fresh),
            dispatch=fresh,
            reason="dispatching first call(s) to " + ", ".join(c.name for c in fresh),
        )

    prior = _finish_result(history, finish)
    if prior is not None:
        answer = prior.content if isinstance(prior.content, str) else str(prior.content or "")
        finish_calls = [c for c in calls if c.name == finish]
        if finish_calls:
            call = finish_calls[0]
            return TurnDecision(
                state=TurnState.RESULT_SEEN,
                output=_with_calls(output, [call]),
                dispatch=[call],
                stop=True,
                reason="finish result already in history",
            )
        call_msg = synthesize_finish(answer, finish, synth_id)
        return TurnDecision(
            state=TurnState.RESULT_SEEN,
            output=_texts(output) + [call_msg],
            dispatch=list(call_msg.tools),
            stop=True,
            synthesized=True,
            reason="finish result already in history",
        )

    finish_calls = [c for c in calls if c.name == finish]
    if finish_calls and not pending:
        call = finish_calls[0]
        return TurnDecision(
            state=TurnState.ALREADY_FINISHED,
            output=_with_calls(output, [call]),
            dispatch=[call],
            stop=True,
            reason="finish tool called",
        )

    repeated = [c for c in calls if completed.get(c.name, 0) >= policy.max_calls_per_tool]
    if repeated:
        tool_name = repeated[0].name
        answer = STALLED_ANSWER_TEMPLATE.format(tool=tool_name)
        call_msg = synthesize_finish(answer, finish, synth_id)
        return TurnDecision(
            state=TurnState.STALLED_REPEAT,
            output=_texts(output) + [call_msg],
            dispatch=list(call_msg.tools),
            stop=True,
            synthesized=True,
            reason=f"'{tool_name}' repeated after {completed[tool_name]} successful call(s)",
        )

    if calls:
        return TurnDecision(
            state=TurnState.TOOL_CALL_PENDING,
            output=_texts(output),
            reason="awaiting result for " + ", ".join(sorted({c.name for c in calls})),
        )

    return TurnDecision(state=TurnState.FALLBACK, output=list(output), reason="text only")
