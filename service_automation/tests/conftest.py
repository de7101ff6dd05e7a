"""
Shared fixtures for automation service tests.
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Sequence, Tuple

import pytest

from shared.config import get_config
from shared.metrics import MetricsCollector
from service_automation.app.engine import build_engine
from service_automation.app.interfaces import DomainActionGateway
from service_automation.app.persistence.memory import InMemoryAuditStore, InMemoryRuleStore
from service_automation.app.rules.models import Event, Rule
from service_automation.app.safety.config_store import InMemoryConfigStore

REVENUE_ACTION = {
    "kind": "create_record",
    "target_collection": "revenue",
    "field_mapping": {"amount": "amount", "deal_id": "deal_id"},
}


class RecordingGateway(DomainActionGateway):
    """Gateway double that records calls and raises queued errors."""

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._failures: Dict[str, List[Exception]] = {}
        self.hook = None

    def fail_with(self, method: str, *errors: Exception):
        self._failures.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _call(self, method: str, **kwargs) -> Any:
        self.calls.append((method, kwargs))
        if self.hook:
            await self.hook(method, kwargs)
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)
        return {"id": f"{method}-{len(self.calls)}"}

    async def create_record(self, workspace_id: str, collection: str, fields: Dict[str, Any]) -> Any:
        return await self._call("create_record", workspace_id=workspace_id, collection=collection, fields=fields)

    async def update_record(self, workspace_id: str, collection: str, record_id: str,
                            fields: Dict[str, Any]) -> Any:
        return await self._call(
            "update_record", workspace_id=workspace_id, collection=collection,
            record_id=record_id, fields=fields
        )

    async def notify(self, workspace_id: str, user_ids: Sequence[str], message: str) -> Any:
        return await self._call("notify", workspace_id=workspace_id, user_ids=list(user_ids), message=message)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_rule():
    """Factory for rules created one second apart."""
    sequence = itertools.count()
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def factory(rule_id: str = "rule-1", workspace_id: str = "ws-1",
                trigger_type: str = "deal.closed_won", condition: Any = None,
                actions: Any = None, **kwargs) -> Rule:
        created = base + timedelta(seconds=next(sequence))
        kwargs.setdefault("created_at", created)
        kwargs.setdefault("updated_at", created)
        return Rule(
            id=rule_id,
            workspace_id=workspace_id,
            trigger_type=trigger_type,
            condition=condition,
            actions=list(actions) if actions is not None else [dict(REVENUE_ACTION)],
            **kwargs
        )

    return factory


@pytest.fixture
def deal_event():
    """Factory for ``deal.closed_won`` events."""

    def factory(amount: Any = 5000, workspace_id: str = "ws-1", **payload) -> Event:
        body = {"amount": amount, "deal_id": "deal-42"}
        body.update(payload)
        return Event(type="deal.closed_won", workspace_id=workspace_id, payload=body, user_id="user-7")

    return factory


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def rule_store():
    return InMemoryRuleStore()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def config_store():
    return InMemoryConfigStore()


@pytest.fixture
def config():
    return get_config(
        "automation",
        8020,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
        kill_switch_ttl_seconds=0.0,
        action_timeout_seconds=1.0,
    )


@pytest.fixture
def metrics():
    return MetricsCollector("automation")


@pytest.fixture
def engine(config, rule_store, audit_store, config_store, gateway, metrics):
    return build_engine(config, rule_store, audit_store, config_store, gateway, metrics)
