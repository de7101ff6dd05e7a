"""
Append-only audit log of automation executions.
"""

import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..interfaces import AuditStore
from ..rules.models import Event, utcnow
from .models import ExecutionRecord, ExecutionStats, ExecutionStatus, PendingExecution


class AuditLog:
    """Builds and writes one ExecutionRecord per rule per event.

    Writing is best effort: a failing AuditStore is logged and counted but
    never propagates into the engine or the business operation that emitted
    the event.
    """

    def __init__(self, store: AuditStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("automation.audit")

    def start(self, rule_id: str, event: Event, rerun_of: Optional[str] = None) -> PendingExecution:
        return PendingExecution(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            workspace_id=event.workspace_id,
            event_snapshot=event.to_snapshot(),
            started_at=utcnow(),
            started_clock=time.perf_counter(),
            rerun_of=rerun_of,
        )

    async def record(self, pending: PendingExecution, status: ExecutionStatus) -> ExecutionRecord:
        """Finalize ``pending`` with ``status`` and append it to the store."""
        if not status.is_terminal:
            raise ValueError("Execution records are written with a terminal status")

        pending.status = status
        record = ExecutionRecord(
            id=pending.id,
            rule_id=pending.rule_id,
            workspace_id=pending.workspace_id,
            event_snapshot=pending.event_snapshot,
            status=status,
            started_at=pending.started_at,
            finished_at=utcnow(),
            execution_time_ms=round((time.perf_counter() - pending.started_clock) * 1000, 3),
            attempts=tuple(pending.attempts),
            action_results=tuple(r.to_dict() for r in pending.action_results),
            details=tuple(pending.details),
            rerun_of=pending.rerun_of,
        )

        try:
            await self.store.append(record)
        except Exception as e:
            self.logger.error(
                "Failed to write execution record",
                execution_id=record.id,
                rule_id=record.rule_id,
                status=status.value,
                error=str(e)
            )
            if self.metrics:
                self.metrics.increment_counter("automation_audit_write_failures_total")

        if self.metrics:
            self.metrics.increment_counter("automation_executions_total", status=status.value)

        self.logger.info(
            "Execution recorded",
            execution_id=record.id,
            rule_id=record.rule_id,
            workspace_id=record.workspace_id,
            status=status.value,
            attempts=len(record.attempts),
            execution_time_ms=record.execution_time_ms
        )
        return record

    async def get(self, record_id: str) -> ExecutionRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise NotFoundError("Execution", record_id)
        return record

    async def list(
        self,
        workspace_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        return await self.store.list(
            workspace_id=workspace_id,
            rule_id=rule_id,
            status=status,
            since=since,
            limit=limit,
        )

    async def stats(self, workspace_id: str, window: timedelta = timedelta(days=30),
                    now: Optional[datetime] = None) -> ExecutionStats:
        """Totals, success rate and latency over ``window``."""
        now = now or utcnow()
        records = await self.store.list(workspace_id=workspace_id, since=now - window, limit=10000)

        by_status = Counter(r.status.value for r in records)
        executed = [r for r in records if not r.status.is_skipped]
        day_ago = now - timedelta(hours=24)

        return ExecutionStats(
            total_executions=len(records),
            by_status=dict(by_status),
            success_rate=(by_status[ExecutionStatus.SUCCESS.value] / len(executed)) if executed else 0.0,
            avg_execution_time_ms=(
                sum(r.execution_time_ms for r in executed) / len(executed) if executed else 0.0
            ),
            failed_last_24h=sum(
                1 for r in records
                if r.status == ExecutionStatus.FAILED and r.started_at >= day_ago
            ),
        )
