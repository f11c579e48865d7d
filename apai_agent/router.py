from typing import Optional

from .agents import AgentSpec
from .state import RunState

# Auxiliary keys left over from an earlier pass through the same state.
STALE_KEYS = ("current_data", "data_context", "pending_tool")


def select_next(state: RunState, agent: AgentSpec) -> Optional[AgentSpec]:
    """Return the agent to run next, or None once the run has an answer.

    Reads run state only. The first call initializes the state exactly once.
    """
    if not state.get("initialized"):
        state.set("initialized", True)
        state.set("history", [])
        for key in STALE_KEYS:
            state.delete(key)
    if state.get("answer") is not None:
        return None
    return agent
