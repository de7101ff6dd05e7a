"""
Tests for the automation service operator API.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.errors import PermanentActionError
from service_automation.app.main import AutomationService


class TestAutomationService:
    """Test cases for the automation service endpoints."""

    @pytest.fixture
    def service(self, config, rule_store, audit_store, config_store, gateway):
        """Create AutomationService over in-memory collaborators."""
        return AutomationService(
            config=config,
            rule_store=rule_store,
            audit_store=audit_store,
            config_store=config_store,
            gateway=gateway,
        )

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        return TestClient(service.app)

    @pytest.fixture
    def event_body(self):
        return {
            "type": "deal.closed_won",
            "workspace_id": "ws-1",
            "payload": {"amount": 5000, "deal_id": "deal-42"},
            "user_id": "user-7",
        }

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "automation"

    def test_health_check(self, client):
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"engine": "enabled"}

    def test_handle_event(self, client, rule_store, make_rule, event_body):
        """Test posting an event runs matching rules."""
        rule_store.add_rule(make_rule())

        response = client.post("/automation/events", json=event_body)

        assert response.status_code == 200
        data = response.json()
        assert data["event_type"] == "deal.closed_won"
        assert [e["status"] for e in data["executions"]] == ["success"]

    def test_handle_event_validation(self, client):
        """Test malformed events are rejected."""
        response = client.post("/automation/events", json={"workspace_id": "ws-1"})

        assert response.status_code == 422

    def test_list_and_get_executions(self, client, rule_store, make_rule, event_body):
        """Test audit queries."""
        rule_store.add_rule(make_rule(condition={"field": "amount", "operator": "gt", "value": 10000}))
        client.post("/automation/events", json=event_body)

        response = client.get("/automation/executions", params={"workspace_id": "ws-1"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        execution = data["executions"][0]
        assert execution["status"] == "skipped_condition_false"

        response = client.get(f"/automation/executions/{execution['id']}")
        assert response.status_code == 200
        assert response.json()["event_snapshot"]["payload"]["amount"] == 5000

    def test_list_executions_bad_status(self, client):
        """Test unknown status filters are a validation error."""
        response = client.get("/automation/executions", params={"status": "exploded"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_get_missing_execution(self, client):
        """Test 404 for unknown executions."""
        response = client.get("/automation/executions/nope")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_rerun(self, client, rule_store, make_rule, gateway, event_body):
        """Test re-running a failed execution."""
        rule_store.add_rule(make_rule())
        gateway.fail_with("create_record", PermanentActionError("invalid"))
        failed = client.post("/automation/events", json=event_body).json()["executions"][0]
        assert failed["status"] == "failed"

        response = client.post(f"/automation/executions/{failed['execution_id']}/rerun")

        assert response.status_code == 200
        assert response.json()["status"] == "success"

        response = client.post(f"/automation/executions/{response.json()['execution_id']}/rerun")
        assert response.status_code == 400

    def test_stats(self, client, rule_store, make_rule, event_body):
        """Test workspace statistics."""
        rule_store.add_rule(make_rule())
        client.post("/automation/events", json=event_body)

        response = client.get("/automation/stats", params={"workspace_id": "ws-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["total_executions"] == 1
        assert data["success_rate"] == 1.0

    def test_enable_rule(self, client, rule_store, make_rule):
        """Test human re-enable."""
        rule_store.add_rule(make_rule(is_active=False))

        response = client.post("/automation/rules/rule-1/enable")

        assert response.status_code == 200
        assert response.json()["is_active"] is True
        assert client.post("/automation/rules/nope/enable").status_code == 404

    def test_rate_limit_status(self, client, rule_store, make_rule, event_body):
        """Test rate limit usage reporting."""
        rule_store.add_rule(make_rule(max_executions_per_minute=4))
        client.post("/automation/events", json=event_body)

        response = client.get("/automation/rules/rule-1/rate-limit")

        assert response.status_code == 200
        data = response.json()
        assert data["current_count"] == 1
        assert data["limit"] == 4
        assert data["remaining"] == 3

    def test_kill_switch(self, client, rule_store, make_rule, event_body):
        """Test flipping the global kill switch."""
        rule_store.add_rule(make_rule())

        response = client.put("/automation/kill-switch", json={"enabled": False})
        assert response.json() == {"scope": "engine", "id": None, "enabled": False}
        assert client.get("/automation/kill-switch").json()["enabled"] is False
        assert client.post("/automation/events", json=event_body).json()["executions"] == []

        client.put("/automation/kill-switch", json={"enabled": None})
        assert client.get("/automation/kill-switch").json()["enabled"] is True

    def test_workspace_and_rule_kill_switches(self, client, rule_store, make_rule, event_body):
        """Test scoped kill switches."""
        rule_store.add_rule(make_rule())

        response = client.put("/automation/kill-switch/rules/rule-1", json={"enabled": False})
        assert response.json()["enabled"] is False
        statuses = [e["status"] for e in client.post("/automation/events", json=event_body).json()["executions"]]
        assert statuses == ["skipped_disabled"]

        response = client.put("/automation/kill-switch/workspaces/ws-1", json={"enabled": False})
        assert response.json() == {"scope": "workspace", "id": "ws-1", "enabled": False}

    def test_cleanup_endpoint(self, client):
        """Test window housekeeping endpoint."""
        response = client.post("/automation/maintenance/cleanup")

        assert response.status_code == 200
        assert response.json() == {"rate_windows": 0, "loop_windows": 0}

    def test_metrics_endpoint(self, client, rule_store, make_rule, event_body):
        """Test automation metrics are exported."""
        rule_store.add_rule(make_rule())
        client.post("/automation/events", json=event_body)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'automation_executions_total{status="success"} 1.0' in response.text


class TestAutomationServiceLifecycle:
    """Test background work started with the service."""

    @pytest.mark.asyncio
    async def test_periodic_window_cleanup(self, rule_store, audit_store, config_store, gateway):
        """Test idle windows are pruned in the background until shutdown."""
        config = get_config("automation", 8020, cleanup_interval_seconds=0.01)
        service = AutomationService(
            config=config,
            rule_store=rule_store,
            audit_store=audit_store,
            config_store=config_store,
            gateway=gateway,
        )
        dropped = {"rate_windows": 0, "loop_windows": 0}
        service.engine.cleanup = MagicMock(side_effect=[RuntimeError("boom")] + [dropped] * 1000)

        await service.startup()
        await asyncio.sleep(0.1)
        task = service.cleanup_task
        await service.shutdown()

        assert service.engine.cleanup.call_count >= 2
        assert task.done()
        assert service.cleanup_task is None

        calls = service.engine.cleanup.call_count
        await asyncio.sleep(0.05)
        assert service.engine.cleanup.call_count == calls
