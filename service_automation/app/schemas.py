"""
Request and response models for the operator API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .audit.models import ExecutionRecord, ExecutionStats, ExecutionSummary
from .rules.models import Event, Rule


class EventRequest(BaseModel):
    """Domain event submitted for processing."""
    type: str = Field(..., min_length=1, description="Event type, e.g. deal.closed_won")
    workspace_id: str = Field(..., min_length=1, description="Workspace ID")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Flat event payload")
    occurred_at: Optional[datetime] = Field(None, description="When the event happened")
    entity_type: Optional[str] = Field(None, description="Entity type")
    entity_id: Optional[str] = Field(None, description="Entity ID")
    user_id: Optional[str] = Field(None, description="User that caused the event")

    def to_event(self) -> Event:
        event = Event(
            type=self.type,
            workspace_id=self.workspace_id,
            payload=dict(self.payload),
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            user_id=self.user_id,
        )
        if self.occurred_at:
            event.occurred_at = self.occurred_at
        return event


class ExecutionSummaryResponse(BaseModel):
    rule_id: str
    execution_id: str
    status: str
    attempts: int
    actions_succeeded: int
    actions_failed: int
    execution_time_ms: float
    reason: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: ExecutionSummary) -> "ExecutionSummaryResponse":
        return cls(
            rule_id=summary.rule_id,
            execution_id=summary.execution_id,
            status=summary.status.value,
            attempts=summary.attempts,
            actions_succeeded=summary.actions_succeeded,
            actions_failed=summary.actions_failed,
            execution_time_ms=summary.execution_time_ms,
            reason=summary.reason,
        )


class EventResponse(BaseModel):
    """Outcome of handling one event."""
    event_type: str
    workspace_id: str
    executions: List[ExecutionSummaryResponse]


class ExecutionResponse(BaseModel):
    """Full audit record."""
    id: str
    rule_id: str
    workspace_id: str
    event_snapshot: Dict[str, Any]
    status: str
    started_at: datetime
    finished_at: datetime
    execution_time_ms: float
    attempts: List[Dict[str, Any]]
    action_results: List[Dict[str, Any]]
    details: List[str]
    rerun_of: Optional[str] = None

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> "ExecutionResponse":
        return cls(
            id=record.id,
            rule_id=record.rule_id,
            workspace_id=record.workspace_id,
            event_snapshot=record.event_snapshot,
            status=record.status.value,
            started_at=record.started_at,
            finished_at=record.finished_at,
            execution_time_ms=record.execution_time_ms,
            attempts=[a.to_dict() for a in record.attempts],
            action_results=list(record.action_results),
            details=list(record.details),
            rerun_of=record.rerun_of,
        )


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionResponse]
    total: int


class StatsResponse(BaseModel):
    """Aggregate execution statistics of a workspace."""
    workspace_id: str
    total_executions: int
    by_status: Dict[str, int]
    success_rate: float
    avg_execution_time_ms: float
    failed_last_24h: int

    @classmethod
    def from_stats(cls, workspace_id: str, stats: ExecutionStats) -> "StatsResponse":
        return cls(
            workspace_id=workspace_id,
            total_executions=stats.total_executions,
            by_status=stats.by_status,
            success_rate=round(stats.success_rate, 4),
            avg_execution_time_ms=round(stats.avg_execution_time_ms, 3),
            failed_last_24h=stats.failed_last_24h,
        )


class RuleResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    trigger_type: str
    is_active: bool
    execution_count: int
    max_executions_per_minute: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    last_executed_at: Optional[datetime] = None

    @classmethod
    def from_rule(cls, rule: Rule) -> "RuleResponse":
        return cls(
            id=rule.id,
            workspace_id=rule.workspace_id,
            name=rule.name,
            trigger_type=rule.trigger_type,
            is_active=rule.is_active,
            execution_count=rule.execution_count,
            max_executions_per_minute=rule.max_executions_per_minute,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
            last_executed_at=rule.last_executed_at,
        )


class RateLimitResponse(BaseModel):
    rule_id: str
    current_count: int
    limit: int
    remaining: int
    window_seconds: float
    reset_in_seconds: float


class KillSwitchRequest(BaseModel):
    """Flag update; ``null`` clears an override."""
    enabled: Optional[bool] = Field(..., description="New flag value, or null to clear")


class KillSwitchResponse(BaseModel):
    scope: str
    id: Optional[str] = None
    enabled: bool
