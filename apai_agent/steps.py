import hashlib
import json
from typing import Any, Awaitable, Callable, Dict, Set

from .errors import StepConflictError


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def step_key(tool_name: str, tool_input: Any) -> str:
    """Stable key for one logical tool call: name plus a digest of its input."""
    digest = hashlib.sha256(_canonical_json(tool_input).encode("utf-8")).hexdigest()[:16]
    return f"{tool_name}:{digest}"


class StepGuard:
    """Run each keyed unit of work at most once per run and replay its result."""

    def __init__(self) -> None:
        self._records: Dict[str, Any] = {}
        self._inflight: Set[str] = set()

    def has(self, key: str) -> bool:
        return key in self._records

    def records(self) -> Dict[str, Any]:
        return dict(self._records)

    def __len__(self) -> int:
        return len(self._records)

    async def run(self, key: str, work: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._records:
            return self._records[key]
        if key in self._inflight:
            raise StepConflictError(key)
        self._inflight.add(key)
        try:
            result = await work()
        finally:
            self._inflight.discard(key)
        # Failed work leaves no record so a corrected call can run.
        self._records[key] = result
        return result
