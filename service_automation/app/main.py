"""
Automation service: operator API around the automation engine.
"""

import asyncio
from typing import Dict, Optional

from fastapi import Query

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ValidationError

from .actions.gateway import HttpDomainActionGateway
from .audit.models import ExecutionStatus
from .engine import AutomationEngine, build_engine
from .interfaces import AuditStore, ConfigStore, DomainActionGateway, RuleStore
from .persistence.memory import InMemoryAuditStore, InMemoryRuleStore
from .persistence.postgres import PostgresAuditStore, PostgresPool, PostgresRuleStore
from .safety.config_store import InMemoryConfigStore, RedisConfigStore
from .schemas import (
    EventRequest, EventResponse, ExecutionListResponse, ExecutionResponse,
    ExecutionSummaryResponse, KillSwitchRequest, KillSwitchResponse,
    RateLimitResponse, RuleResponse, StatsResponse
)


class AutomationService(BaseService):
    """Automation service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        rule_store: Optional[RuleStore] = None,
        audit_store: Optional[AuditStore] = None,
        config_store: Optional[ConfigStore] = None,
        gateway: Optional[DomainActionGateway] = None,
    ):
        super().__init__("automation", 8020, config or get_config("automation", 8020))

        self.database: Optional[PostgresPool] = None
        if self.config.storage_backend == "postgres" and (rule_store is None or audit_store is None):
            self.database = PostgresPool(self.config.postgres_dsn)
            rule_store = rule_store or PostgresRuleStore(self.database)
            audit_store = audit_store or PostgresAuditStore(self.database)

        if config_store is None and self.config.config_backend == "redis":
            config_store = RedisConfigStore(
                self.config.redis_url,
                refresh_interval=self.config.config_refresh_seconds
            )

        self.gateway = gateway or HttpDomainActionGateway(
            self.config.domain_api_url,
            token=self.config.domain_api_token,
            timeout=self.config.action_timeout_seconds
        )
        self.rule_store = rule_store or InMemoryRuleStore()
        self.audit_store = audit_store or InMemoryAuditStore()
        self.config_store = config_store or InMemoryConfigStore()

        self.engine: AutomationEngine = build_engine(
            self.config,
            rule_store=self.rule_store,
            audit_store=self.audit_store,
            config_store=self.config_store,
            gateway=self.gateway,
            metrics=self.metrics,
        )

        self.cleanup_task: Optional[asyncio.Task] = None
        self.running = False

        self._setup_automation_routes()

    def _setup_automation_routes(self):
        """Set up automation-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "automation",
                "message": "Workspace automation engine",
                "version": "1.0.0",
                "capabilities": ["rules", "retry", "rate_limiting", "loop_detection", "audit"]
            }

        @self.app.post("/automation/events", response_model=EventResponse)
        async def handle_event(request: EventRequest):
            """Run the workspace's rules for one event."""
            summaries = await self.engine.handle(request.to_event())
            return EventResponse(
                event_type=request.type,
                workspace_id=request.workspace_id,
                executions=[ExecutionSummaryResponse.from_summary(s) for s in summaries]
            )

        @self.app.get("/automation/executions", response_model=ExecutionListResponse)
        async def list_executions(
            workspace_id: Optional[str] = Query(None, description="Filter by workspace"),
            rule_id: Optional[str] = Query(None, description="Filter by rule"),
            status: Optional[str] = Query(None, description="Filter by status"),
            limit: int = Query(50, ge=1, le=500, description="Maximum records")
        ):
            """List execution records, newest first."""
            status_filter = None
            if status:
                try:
                    status_filter = ExecutionStatus(status)
                except ValueError:
                    raise ValidationError(f"Unknown execution status: {status}")

            records = await self.engine.audit_log.list(
                workspace_id=workspace_id,
                rule_id=rule_id,
                status=status_filter,
                limit=limit
            )
            return ExecutionListResponse(
                executions=[ExecutionResponse.from_record(r) for r in records],
                total=len(records)
            )

        @self.app.get("/automation/executions/{execution_id}", response_model=ExecutionResponse)
        async def get_execution(execution_id: str):
            """Get one execution record."""
            return ExecutionResponse.from_record(await self.engine.audit_log.get(execution_id))

        @self.app.post("/automation/executions/{execution_id}/rerun", response_model=ExecutionSummaryResponse)
        async def rerun_execution(execution_id: str):
            """Re-run a failed or partial execution."""
            summary = await self.engine.rerun(execution_id)
            return ExecutionSummaryResponse.from_summary(summary)

        @self.app.get("/automation/stats", response_model=StatsResponse)
        async def get_stats(workspace_id: str = Query(..., description="Workspace ID")):
            """Execution statistics for the last 30 days."""
            stats = await self.engine.audit_log.stats(workspace_id)
            return StatsResponse.from_stats(workspace_id, stats)

        @self.app.post("/automation/rules/{rule_id}/enable", response_model=RuleResponse)
        async def enable_rule(rule_id: str):
            """Re-enable a rule, clearing loop detection state."""
            rule = await self.engine.reenable_rule(rule_id)
            return RuleResponse.from_rule(rule)

        @self.app.get("/automation/rules/{rule_id}/rate-limit", response_model=RateLimitResponse)
        async def get_rate_limit(rule_id: str):
            """Current rate limit usage of a rule."""
            return RateLimitResponse(**await self.engine.rate_limit_status(rule_id))

        @self.app.get("/automation/kill-switch", response_model=KillSwitchResponse)
        async def get_kill_switch():
            """Global engine flag."""
            return KillSwitchResponse(scope="engine", enabled=self.engine.kill_switch.is_engine_enabled())

        @self.app.put("/automation/kill-switch", response_model=KillSwitchResponse)
        async def set_kill_switch(request: KillSwitchRequest):
            """Enable or disable the whole engine."""
            self.engine.kill_switch.set_engine_enabled(request.enabled)
            return KillSwitchResponse(scope="engine", enabled=self.engine.kill_switch.is_engine_enabled())

        @self.app.put("/automation/kill-switch/workspaces/{workspace_id}", response_model=KillSwitchResponse)
        async def set_workspace_kill_switch(workspace_id: str, request: KillSwitchRequest):
            """Enable or disable automations of one workspace."""
            self.engine.kill_switch.set_workspace_enabled(workspace_id, request.enabled)
            return KillSwitchResponse(
                scope="workspace",
                id=workspace_id,
                enabled=self.engine.kill_switch.is_workspace_enabled(workspace_id)
            )

        @self.app.put("/automation/kill-switch/rules/{rule_id}", response_model=KillSwitchResponse)
        async def set_rule_kill_switch(rule_id: str, request: KillSwitchRequest):
            """Enable or disable one rule without touching its stored state."""
            self.engine.kill_switch.set_rule_enabled(rule_id, request.enabled)
            return KillSwitchResponse(
                scope="rule",
                id=rule_id,
                enabled=self.engine.kill_switch.is_rule_enabled(rule_id)
            )

        @self.app.post("/automation/maintenance/cleanup")
        async def cleanup_windows() -> Dict[str, int]:
            """Drop idle rate limit and loop windows."""
            return self.engine.cleanup()

    async def startup(self):
        """Start automation service components."""
        if self.database:
            await self.database.start()
        if isinstance(self.config_store, RedisConfigStore):
            await self.config_store.start()

        self.running = True
        self.cleanup_task = asyncio.create_task(self._cleanup_loop())
        self.logger.info(
            "Automation service started",
            storage_backend=self.config.storage_backend,
            config_backend=self.config.config_backend
        )

    async def shutdown(self):
        """Stop automation service components."""
        self.running = False
        if self.cleanup_task:
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass
            self.cleanup_task = None

        if isinstance(self.config_store, RedisConfigStore):
            await self.config_store.stop()
        if isinstance(self.gateway, HttpDomainActionGateway):
            await self.gateway.close()
        if self.database:
            await self.database.stop()
        self.logger.info("Automation service stopped")

    async def _cleanup_loop(self):
        """Prune idle rate limit and loop windows periodically."""
        while self.running:
            try:
                await asyncio.sleep(self.config.cleanup_interval_seconds)
                self.engine.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in window cleanup loop", error=str(e))

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {
            "engine": "enabled" if self.engine.kill_switch.is_engine_enabled() else "disabled"
        }
        if self.database:
            dependencies["postgres"] = "ok" if await self.database.health_check() else "error"
        return dependencies


def create_app():
    """Create automation service application."""
    service = AutomationService()
    return service.app


if __name__ == "__main__":
    service = AutomationService()
    service.run()
