"""
Action result models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class AttemptRecord:
    """One call made for one action."""
    timestamp: datetime
    action_index: int
    action_kind: str
    error: Optional[str] = None
    transient: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action_index": self.action_index,
            "action_kind": self.action_kind,
            "error": self.error,
            "transient": self.transient,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttemptRecord":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            timestamp=timestamp,
            action_index=data["action_index"],
            action_kind=data["action_kind"],
            error=data.get("error"),
            transient=data.get("transient"),
        )


@dataclass(frozen=True)
class ActionResult:
    """Outcome of an action across all of its attempts."""
    action_index: int
    kind: str
    success: bool
    attempts: Tuple[AttemptRecord, ...] = ()
    error: Optional[str] = None
    transient: Optional[bool] = None
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_index": self.action_index,
            "kind": self.kind,
            "success": self.success,
            "attempts": len(self.attempts),
            "error": self.error,
            "transient": self.transient,
        }


@dataclass
class RunOutcome:
    """Results of running a rule's actions in declared order."""
    succeeded: List[ActionResult] = field(default_factory=list)
    failed: List[ActionResult] = field(default_factory=list)

    @property
    def results(self) -> List[ActionResult]:
        return sorted(self.succeeded + self.failed, key=lambda r: r.action_index)

    @property
    def attempts(self) -> List[AttemptRecord]:
        return [attempt for result in self.results for attempt in result.attempts]
