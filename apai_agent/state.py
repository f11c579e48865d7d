from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .schemas import Message
from .steps import StepGuard

if TYPE_CHECKING:
    from .remote import RemoteToolExecutor


class RunState:
    """Key-value store owned by a single run."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._kv: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._kv.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._kv[key] = value

    def has(self, key: str) -> bool:
        return key in self._kv

    def delete(self, key: str) -> None:
        self._kv.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._kv)

    def __contains__(self, key: object) -> bool:
        return key in self._kv

    def __repr__(self) -> str:
        return f"RunState(keys={sorted(self._kv)})"


@dataclass
class RunContext:
    run_id: str
    prompt: str
    state: RunState = field(default_factory=RunState)
    steps: StepGuard = field(default_factory=StepGuard)
    history: List[Message] = field(default_factory=list)
    remote: Optional["RemoteToolExecutor"] = None
    turns: int = 0
    terminated: bool = False

    @property
    def answer(self) -> Optional[str]:
        return self.state.get("answer")
