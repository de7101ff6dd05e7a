"""
Audit trail models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..actions.models import ActionResult, AttemptRecord


class ExecutionStatus(str, Enum):
    """Outcome of one rule for one event."""
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED_CONDITION_FALSE = "skipped_condition_false"
    SKIPPED_RATE_LIMITED = "skipped_rate_limited"
    SKIPPED_LOOP = "skipped_loop"
    SKIPPED_DISABLED = "skipped_disabled"

    @property
    def is_skipped(self) -> bool:
        return self.value.startswith("skipped_")

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.PENDING


@dataclass(frozen=True)
class ExecutionRecord:
    """Finalized audit row. Never mutated once written."""
    id: str
    rule_id: str
    workspace_id: str
    event_snapshot: Dict[str, Any]
    status: ExecutionStatus
    started_at: datetime
    finished_at: datetime
    execution_time_ms: float
    attempts: Tuple[AttemptRecord, ...] = ()
    action_results: Tuple[Dict[str, Any], ...] = ()
    details: Tuple[str, ...] = ()
    rerun_of: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "workspace_id": self.workspace_id,
            "event_snapshot": self.event_snapshot,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "execution_time_ms": self.execution_time_ms,
            "attempts": [a.to_dict() for a in self.attempts],
            "action_results": list(self.action_results),
            "details": list(self.details),
            "rerun_of": self.rerun_of,
        }


@dataclass
class PendingExecution:
    """In-flight execution collecting attempts and notes until finalized."""
    id: str
    rule_id: str
    workspace_id: str
    event_snapshot: Dict[str, Any]
    started_at: datetime
    started_clock: float
    rerun_of: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempts: List[AttemptRecord] = field(default_factory=list)
    action_results: List[ActionResult] = field(default_factory=list)
    details: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecutionSummary:
    """What ``AutomationEngine.handle`` reports per rule."""
    rule_id: str
    execution_id: str
    status: ExecutionStatus
    attempts: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    execution_time_ms: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionSummary":
        succeeded = sum(1 for r in record.action_results if r.get("success"))
        return cls(
            rule_id=record.rule_id,
            execution_id=record.id,
            status=record.status,
            attempts=len(record.attempts),
            actions_succeeded=succeeded,
            actions_failed=len(record.action_results) - succeeded,
            execution_time_ms=record.execution_time_ms,
            reason=record.details[0] if record.details else None,
        )


@dataclass(frozen=True)
class ExecutionStats:
    """Aggregate view of a workspace's audit trail."""
    total_executions: int
    by_status: Dict[str, int]
    success_rate: float
    avg_execution_time_ms: float
    failed_last_24h: int
