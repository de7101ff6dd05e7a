"""
Automation engine: turns domain events into rule executions.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from shared.config import BaseConfig
from shared.errors import ConfigurationError, NotFoundError, SafetyTrip, ValidationError
from shared.logging import get_logger, set_automation_context
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from .actions.executor import ActionExecutor
from .actions.retry import RetryCoordinator
from .audit.log import AuditLog
from .audit.models import ExecutionStatus, ExecutionSummary, PendingExecution
from .interfaces import AuditStore, ConfigStore, DomainActionGateway, RuleStore
from .rules.conditions import ConditionEvaluator
from .rules.models import CompiledRule, Event, Rule, compile_rule, utcnow
from .safety.kill_switch import KillSwitch
from .safety.loop_guard import LoopGuard
from .safety.rate_limiter import SlidingWindowRateLimiter

RERUNNABLE_STATUSES = (ExecutionStatus.FAILED, ExecutionStatus.PARTIAL)


class AutomationEngine:
    """Orchestrates safety checks, condition evaluation and actions per event.

    Every rule considered for an event produces exactly one audit record,
    skipped or not. Checks run one rule at a time in creation order; the
    actions of the rules that pass run concurrently. Nothing that goes wrong
    for one rule is allowed to affect its siblings or the caller.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        audit_log: AuditLog,
        kill_switch: KillSwitch,
        rate_limiter: SlidingWindowRateLimiter,
        loop_guard: LoopGuard,
        retry: RetryCoordinator,
        evaluator: Optional[ConditionEvaluator] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.rule_store = rule_store
        self.audit_log = audit_log
        self.kill_switch = kill_switch
        self.rate_limiter = rate_limiter
        self.loop_guard = loop_guard
        self.retry = retry
        self.evaluator = evaluator or ConditionEvaluator()
        self.metrics = metrics
        self.logger = get_logger("automation.engine")
        self._compiled: Dict[str, Tuple[datetime, CompiledRule]] = {}

    async def handle(self, event: Event) -> List[ExecutionSummary]:
        """Run every active rule of the event's workspace and type."""
        if not self.kill_switch.is_engine_enabled():
            self.logger.info(
                "Automation engine disabled, event ignored",
                event_type=event.type,
                workspace_id=event.workspace_id
            )
            return []

        set_automation_context(workspace_id=event.workspace_id)
        rules = await self._candidate_rules(event)
        if not rules:
            return []

        self.logger.info(
            "Processing event",
            event_type=event.type,
            workspace_id=event.workspace_id,
            rule_count=len(rules)
        )
        return await self._process(rules, event)

    async def rerun(self, execution_id: str) -> ExecutionSummary:
        """Replay the event of a failed or partial execution against its rule."""
        record = await self.audit_log.get(execution_id)
        if record.status not in RERUNNABLE_STATUSES:
            raise ValidationError(
                f"Only failed or partial executions can be re-run, got '{record.status.value}'",
                details={"execution_id": execution_id, "status": record.status.value}
            )
        if not self.kill_switch.is_engine_enabled():
            raise ValidationError("Automation engine is disabled")

        rule = await self.rule_store.get_rule(record.rule_id)
        if rule is None:
            raise NotFoundError("Rule", record.rule_id)
        self.loop_guard.observe_active(rule)

        self.logger.info("Re-running execution", execution_id=execution_id, rule_id=rule.id)
        summaries = await self._process([rule], Event.from_snapshot(record.event_snapshot), rerun_of=record.id)
        return summaries[0]

    async def reenable_rule(self, rule_id: str) -> Rule:
        """Human re-enable of a rule, clearing any loop trip."""
        if await self.rule_store.get_rule(rule_id) is None:
            raise NotFoundError("Rule", rule_id)

        await self.rule_store.enable_rule(rule_id)
        self.loop_guard.reset(rule_id)
        self.logger.warning("Rule re-enabled", rule_id=rule_id)
        return await self.rule_store.get_rule(rule_id)

    async def rate_limit_status(self, rule_id: str) -> Dict[str, Any]:
        rule = await self.rule_store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("Rule", rule_id)
        limit, window = self._rate_limit_for(rule)
        return self.rate_limiter.status(rule_id, limit, window)

    def cleanup(self) -> Dict[str, int]:
        """Drop idle rate and loop windows."""
        dropped = {
            "rate_windows": self.rate_limiter.cleanup(),
            "loop_windows": self.loop_guard.cleanup(),
        }
        self.logger.debug("Safety windows cleaned up", **dropped)
        return dropped

    async def _candidate_rules(self, event: Event) -> List[Rule]:
        try:
            rules = await self.rule_store.list_active_rules(event.workspace_id, event.type)
        except Exception as e:
            self.logger.error(
                "Failed to load rules",
                event_type=event.type,
                workspace_id=event.workspace_id,
                error=str(e)
            )
            if self.metrics:
                self.metrics.record_error("rule_store_unavailable")
            return []

        for rule in rules:
            self.loop_guard.observe_active(rule)

        # Loop-disabled rules are no longer returned by the store
        seen = {rule.id for rule in rules}
        tripped = [
            rule for rule in self.loop_guard.tripped_rules(event.workspace_id, event.type)
            if rule.id not in seen
        ]
        return sorted(rules + tripped, key=lambda r: r.created_at)

    async def _process(self, rules: List[Rule], event: Event,
                       rerun_of: Optional[str] = None) -> List[ExecutionSummary]:
        summaries: Dict[int, ExecutionSummary] = {}
        admitted: List[Tuple[int, CompiledRule, PendingExecution]] = []

        for position, rule in enumerate(rules):
            set_automation_context(rule_id=rule.id)
            pending = self.audit_log.start(rule.id, event, rerun_of=rerun_of)
            try:
                compiled = await self._admit(rule, event, pending)
            except SafetyTrip as trip:
                pending.details.insert(0, trip.reason)
                if trip.status != ExecutionStatus.SKIPPED_CONDITION_FALSE.value and self.metrics:
                    self.metrics.increment_counter("automation_safety_trips_total", reason=trip.status)
                summaries[position] = await self._finish(pending, ExecutionStatus(trip.status))
                continue
            except ConfigurationError as e:
                self.logger.error("Invalid rule configuration", rule_id=rule.id, error=e.message)
                pending.details.insert(0, f"Invalid rule configuration: {e.message}")
                summaries[position] = await self._finish(pending, ExecutionStatus.FAILED)
                continue
            except Exception as e:
                self.logger.error("Rule check failed", rule_id=rule.id, error=str(e))
                pending.details.insert(0, f"{type(e).__name__}: {e}")
                summaries[position] = await self._finish(pending, ExecutionStatus.FAILED)
                continue
            admitted.append((position, compiled, pending))

        results = await asyncio.gather(
            *(self._execute(compiled, event, pending) for _, compiled, pending in admitted)
        )
        for (position, _, _), summary in zip(admitted, results):
            summaries[position] = summary

        return [summaries[position] for position in sorted(summaries)]

    async def _admit(self, rule: Rule, event: Event, pending: PendingExecution) -> CompiledRule:
        """Run the safety checks and the condition; raise SafetyTrip to skip."""
        if not self.kill_switch.is_rule_enabled(rule.id, rule.workspace_id):
            raise SafetyTrip(ExecutionStatus.SKIPPED_DISABLED.value, "Rule disabled by kill switch")

        if self.loop_guard.is_tripped(rule.id):
            raise SafetyTrip(ExecutionStatus.SKIPPED_LOOP.value, "Rule disabled by loop detection")

        if not rule.is_active:
            raise SafetyTrip(ExecutionStatus.SKIPPED_DISABLED.value, "Rule is inactive")

        compiled = self._compile(rule)

        if self.loop_guard.is_reentrant(rule.id):
            # Only the nested invocation is stopped; the threshold decides on disabling
            if not self.evaluator.evaluate(compiled.condition, event.payload, pending.details):
                raise SafetyTrip(ExecutionStatus.SKIPPED_CONDITION_FALSE.value, "Condition evaluated to false")
            raise SafetyTrip(
                ExecutionStatus.SKIPPED_LOOP.value,
                "Rule re-triggered itself from its own actions"
            )

        check = await self.loop_guard.record_and_check(rule.id, rule)
        if not check.ok:
            if check.should_disable:
                await self._disable(rule, check.reason)
            raise SafetyTrip(ExecutionStatus.SKIPPED_LOOP.value, check.reason or "Loop detected")

        limit, window = self._rate_limit_for(rule)
        if not await self.rate_limiter.try_acquire(rule.id, limit, window):
            raise SafetyTrip(ExecutionStatus.SKIPPED_RATE_LIMITED.value, "Rate limit exceeded")

        if not self.evaluator.evaluate(compiled.condition, event.payload, pending.details):
            raise SafetyTrip(ExecutionStatus.SKIPPED_CONDITION_FALSE.value, "Condition evaluated to false")

        return compiled

    async def _execute(self, compiled: CompiledRule, event: Event,
                       pending: PendingExecution) -> ExecutionSummary:
        rule = compiled.rule
        set_automation_context(workspace_id=rule.workspace_id, rule_id=rule.id)
        try:
            with self.loop_guard.running(rule.id):
                outcome = await self.retry.run(compiled.actions, event)
        except Exception as e:
            self.logger.error("Rule execution failed", rule_id=rule.id, error=str(e))
            pending.details.append(f"{type(e).__name__}: {e}")
            return await self._finish(pending, ExecutionStatus.FAILED)

        pending.attempts.extend(outcome.attempts)
        pending.action_results.extend(outcome.results)
        for result in outcome.failed:
            pending.details.append(f"Action {result.action_index} ({result.kind}) failed: {result.error}")

        if not outcome.failed:
            status = ExecutionStatus.SUCCESS
        elif outcome.succeeded:
            status = ExecutionStatus.PARTIAL
        else:
            status = ExecutionStatus.FAILED

        summary = await self._finish(pending, status)
        if status in (ExecutionStatus.SUCCESS, ExecutionStatus.PARTIAL):
            await self._record_execution(rule)
        return summary

    async def _finish(self, pending: PendingExecution, status: ExecutionStatus) -> ExecutionSummary:
        record = await self.audit_log.record(pending, status)
        if self.metrics and not status.is_skipped:
            self.metrics.observe_histogram("automation_rule_duration_seconds", record.execution_time_ms / 1000)
        return ExecutionSummary.from_record(record)

    def _compile(self, rule: Rule) -> CompiledRule:
        cached = self._compiled.get(rule.id)
        if cached is not None and cached[0] == rule.updated_at:
            return replace(cached[1], rule=rule)

        compiled = compile_rule(rule)
        self._compiled[rule.id] = (rule.updated_at, compiled)
        return compiled

    def _rate_limit_for(self, rule: Rule) -> Tuple[Optional[int], Optional[float]]:
        if rule.max_executions_per_minute is not None:
            return rule.max_executions_per_minute, 60.0
        return None, None

    async def _disable(self, rule: Rule, reason: Optional[str]):
        self.logger.error("Disabling rule after loop detection", rule_id=rule.id, reason=reason)
        try:
            await self.rule_store.disable_rule(rule.id)
        except Exception as e:
            self.logger.error("Failed to disable rule", rule_id=rule.id, error=str(e))

    async def _record_execution(self, rule: Rule):
        try:
            await self.rule_store.record_execution(rule.id, utcnow())
        except Exception as e:
            self.logger.error("Failed to update execution count", rule_id=rule.id, error=str(e))


def build_engine(
    config: BaseConfig,
    rule_store: RuleStore,
    audit_store: AuditStore,
    config_store: ConfigStore,
    gateway: DomainActionGateway,
    metrics: Optional[MetricsCollector] = None,
) -> AutomationEngine:
    """Wire an engine from settings and injected collaborators."""
    retry_config = RetryConfig(
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
        jitter=config.retry_jitter,
    )
    return AutomationEngine(
        rule_store=rule_store,
        audit_log=AuditLog(audit_store, metrics),
        kill_switch=KillSwitch(
            config_store,
            default_enabled=config.engine_enabled,
            ttl_seconds=config.kill_switch_ttl_seconds
        ),
        rate_limiter=SlidingWindowRateLimiter(
            max_executions=config.rate_limit_max_executions,
            window_seconds=config.rate_limit_window_seconds
        ),
        loop_guard=LoopGuard(
            threshold=config.loop_threshold,
            window_seconds=config.loop_window_seconds
        ),
        retry=RetryCoordinator(
            ActionExecutor(gateway, metrics),
            retry_config,
            attempt_timeout=config.action_timeout_seconds
        ),
        metrics=metrics,
    )
