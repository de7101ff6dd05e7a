"""
PostgreSQL persistence for automation rules and execution records.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import AutomationException
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..actions.models import AttemptRecord
from ..audit.models import ExecutionRecord, ExecutionStatus
from ..interfaces import AuditStore, RuleStore
from ..rules.models import Rule


async def _init_connection(conn):
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )


class PostgresPool:
    """Shared asyncpg pool and schema bootstrap for both stores."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("automation.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables, retrying while the database comes up."""

        @retry_on_exception(
            exceptions=(OSError, asyncpg.PostgresError),
            config=RetryConfig(max_attempts=5, base_delay=0.5, max_delay=5.0)
        )
        async def connect():
            return await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=_init_connection
            )

        try:
            self.pool = await connect()
            await self._create_tables()
        except (RetryError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise AutomationException("POSTGRES_START_FAILED", str(e))

        self.logger.info("PostgreSQL persistence started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_rules (
                    id VARCHAR(255) PRIMARY KEY,
                    workspace_id VARCHAR(255) NOT NULL,
                    name VARCHAR(255) NOT NULL DEFAULT '',
                    description TEXT,
                    trigger_type VARCHAR(100) NOT NULL,
                    conditions JSONB,
                    actions JSONB NOT NULL DEFAULT '[]',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    max_executions_per_minute INTEGER,
                    execution_count INTEGER NOT NULL DEFAULT 0,
                    last_executed_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_automation_rules_trigger
                ON automation_rules(workspace_id, trigger_type) WHERE is_active = TRUE;
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_executions (
                    id VARCHAR(255) PRIMARY KEY,
                    rule_id VARCHAR(255) NOT NULL,
                    workspace_id VARCHAR(255) NOT NULL,
                    event_snapshot JSONB NOT NULL,
                    status VARCHAR(50) NOT NULL,
                    attempts JSONB NOT NULL DEFAULT '[]',
                    action_results JSONB NOT NULL DEFAULT '[]',
                    details JSONB NOT NULL DEFAULT '[]',
                    rerun_of VARCHAR(255),
                    execution_time_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
                    started_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    finished_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_automation_executions_workspace
                ON automation_executions(workspace_id, started_at DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_automation_executions_rule
                ON automation_executions(rule_id, started_at DESC);
            """)

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False


class PostgresRuleStore(RuleStore):
    """Rules read from ``automation_rules``."""

    def __init__(self, db: PostgresPool):
        self.db = db
        self.logger = get_logger("automation.persistence.rules")

    async def list_active_rules(self, workspace_id: str, trigger_type: str) -> List[Rule]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM automation_rules
                WHERE workspace_id = $1 AND trigger_type = $2 AND is_active = TRUE
                ORDER BY created_at ASC
            """, workspace_id, trigger_type)
        return [self._row_to_rule(row) for row in rows]

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM automation_rules WHERE id = $1", rule_id)
        return self._row_to_rule(row) if row else None

    async def disable_rule(self, rule_id: str) -> None:
        await self._set_active(rule_id, False)

    async def enable_rule(self, rule_id: str) -> None:
        await self._set_active(rule_id, True)

    async def _set_active(self, rule_id: str, active: bool):
        async with self.db.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE automation_rules SET is_active = $2, updated_at = NOW() WHERE id = $1
            """, rule_id, active)
        if result == "UPDATE 0":
            self.logger.warning("Rule not found", rule_id=rule_id)
        else:
            self.logger.info("Rule active flag updated", rule_id=rule_id, is_active=active)

    async def record_execution(self, rule_id: str, executed_at: datetime) -> None:
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                UPDATE automation_rules
                SET execution_count = execution_count + 1, last_executed_at = $2
                WHERE id = $1
            """, rule_id, executed_at)

    async def save_rule(self, rule: Rule):
        """Insert or replace a rule. Used by seeding and tests."""
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_rules (
                    id, workspace_id, name, description, trigger_type, conditions, actions,
                    is_active, max_executions_per_minute, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    conditions = EXCLUDED.conditions,
                    actions = EXCLUDED.actions,
                    is_active = EXCLUDED.is_active,
                    max_executions_per_minute = EXCLUDED.max_executions_per_minute,
                    updated_at = EXCLUDED.updated_at
            """,
                rule.id, rule.workspace_id, rule.name, rule.description, rule.trigger_type,
                rule.condition, list(rule.actions), rule.is_active, rule.max_executions_per_minute,
                rule.created_at, rule.updated_at
            )

    def _row_to_rule(self, row) -> Rule:
        return Rule(
            id=row["id"],
            workspace_id=row["workspace_id"],
            trigger_type=row["trigger_type"],
            condition=row["conditions"],
            actions=list(row["actions"] or []),
            is_active=row["is_active"],
            name=row["name"],
            description=row["description"],
            max_executions_per_minute=row["max_executions_per_minute"],
            execution_count=row["execution_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_executed_at=row["last_executed_at"],
        )


class PostgresAuditStore(AuditStore):
    """Execution records in ``automation_executions``. Insert only."""

    def __init__(self, db: PostgresPool):
        self.db = db

    async def append(self, record: ExecutionRecord) -> None:
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO automation_executions (
                    id, rule_id, workspace_id, event_snapshot, status, attempts, action_results,
                    details, rerun_of, execution_time_ms, started_at, finished_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            """,
                record.id, record.rule_id, record.workspace_id, record.event_snapshot,
                record.status.value, [a.to_dict() for a in record.attempts],
                list(record.action_results), list(record.details), record.rerun_of,
                record.execution_time_ms, record.started_at, record.finished_at
            )

    async def get(self, record_id: str) -> Optional[ExecutionRecord]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM automation_executions WHERE id = $1", record_id)
        return self._row_to_record(row) if row else None

    async def list(
        self,
        workspace_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        clauses: List[str] = []
        args: List[Any] = []
        filters: Dict[str, Any] = {
            "workspace_id = ": workspace_id,
            "rule_id = ": rule_id,
            "status = ": status.value if status else None,
            "started_at >= ": since,
        }
        for clause, value in filters.items():
            if value is not None:
                args.append(value)
                clauses.append(f"{clause}${len(args)}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.append(limit)
        query = f"SELECT * FROM automation_executions {where} ORDER BY started_at DESC LIMIT ${len(args)}"

        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row) -> ExecutionRecord:
        return ExecutionRecord(
            id=row["id"],
            rule_id=row["rule_id"],
            workspace_id=row["workspace_id"],
            event_snapshot=row["event_snapshot"],
            status=ExecutionStatus(row["status"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            execution_time_ms=row["execution_time_ms"],
            attempts=tuple(AttemptRecord.from_dict(a) for a in row["attempts"]),
            action_results=tuple(row["action_results"]),
            details=tuple(row["details"]),
            rerun_of=row["rerun_of"],
        )
