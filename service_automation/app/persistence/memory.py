"""
In-memory rule and audit stores.

Used for local runs and tests; nothing survives a restart.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from shared.logging import get_logger
from ..audit.models import ExecutionRecord, ExecutionStatus
from ..interfaces import AuditStore, RuleStore
from ..rules.models import Rule, utcnow


class InMemoryRuleStore(RuleStore):
    """Rule store backed by a dict.

    Rules are handed out as copies so the engine never mutates stored state
    except through the store methods.
    """

    def __init__(self, rules: Optional[List[Rule]] = None):
        self.logger = get_logger("automation.persistence.memory")
        self._rules: Dict[str, Rule] = {}
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: Rule) -> Rule:
        self._rules[rule.id] = rule
        return rule

    async def list_active_rules(self, workspace_id: str, trigger_type: str) -> List[Rule]:
        rules = [
            replace(rule) for rule in self._rules.values()
            if rule.is_active and rule.workspace_id == workspace_id and rule.trigger_type == trigger_type
        ]
        return sorted(rules, key=lambda r: r.created_at)

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        rule = self._rules.get(rule_id)
        return replace(rule) if rule else None

    async def disable_rule(self, rule_id: str) -> None:
        self._set_active(rule_id, False)

    async def enable_rule(self, rule_id: str) -> None:
        self._set_active(rule_id, True)

    def _set_active(self, rule_id: str, active: bool):
        rule = self._rules.get(rule_id)
        if rule is None:
            self.logger.warning("Rule not found", rule_id=rule_id)
            return
        rule.is_active = active
        rule.updated_at = utcnow()

    async def record_execution(self, rule_id: str, executed_at: datetime) -> None:
        rule = self._rules.get(rule_id)
        if rule is not None:
            rule.execution_count += 1
            rule.last_executed_at = executed_at


class InMemoryAuditStore(AuditStore):
    """Append-only list of execution records."""

    def __init__(self):
        self._records: List[ExecutionRecord] = []
        self._by_id: Dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

    @property
    def records(self) -> List[ExecutionRecord]:
        return list(self._records)

    async def append(self, record: ExecutionRecord) -> None:
        async with self._lock:
            if record.id in self._by_id:
                raise ValueError(f"Execution record {record.id} already written")
            self._records.append(record)
            self._by_id[record.id] = record

    async def get(self, record_id: str) -> Optional[ExecutionRecord]:
        return self._by_id.get(record_id)

    async def list(
        self,
        workspace_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        matches = [
            r for r in reversed(self._records)
            if (workspace_id is None or r.workspace_id == workspace_id)
            and (rule_id is None or r.rule_id == rule_id)
            and (status is None or r.status == status)
            and (since is None or r.started_at >= since)
        ]
        return matches[:limit]
