"""
Unit tests for the policy service HTTP surface.
"""

import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from shared.base_service import CORRELATION_HEADER
from shared.config import get_config

from service_policy.app.audit.emitter import AuditSink
from service_policy.app.main import PolicyService
from service_policy.app.store.memory import InMemoryAssignmentStore


class RecordingSink(AuditSink):
    name = "recording"

    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)


class TestPolicyService:
    """Test cases for PolicyService."""

    @pytest.fixture
    def sink(self):
        return RecordingSink()

    @pytest.fixture
    def store(self):
        return InMemoryAssignmentStore()

    @pytest.fixture
    def service(self, store, sink):
        config = get_config(
            "policy",
            8013,
            env="test",
            assignment_store="memory",
            decision_cache="memory",
            audit_sink="log",
            check_timeout_ms=1000,
            enable_tracing=False
        )
        return PolicyService(config=config, store=store, audit_sinks=[sink])

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    @pytest.fixture
    def assign(self, client):
        def _assign(subject_id, role_name, tenant_id=None, client_id=None):
            return client.post("/policies/assignments", json={
                "subject_id": subject_id,
                "role_name": role_name,
                "tenant_id": tenant_id,
                "client_id": client_id,
            })
        return _assign

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "policy"
        assert "policy_check" in data["capabilities"]

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {
            "assignment_store": "ok",
            "decision_cache": "ok",
            "audit": "ok",
        }

    def test_health_degraded(self, client, store):
        store.health_check = AsyncMock(return_value=False)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["dependencies"]["assignment_store"] == "error"

    def test_metrics_endpoint(self, client, assign):
        assign("u1", "viewer", "T1")
        client.post("/policies/check", json={
            "subject": "u1", "action": "read", "resource": "prompt:p1", "context": {"tenant_id": "T1"}
        })

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "policy_checks_total" in response.text

    def test_check_allow(self, client, assign):
        assign("u1", "client_admin", "T1", "C1")

        response = client.post(
            "/policies/check",
            json={
                "subject": "u1",
                "action": "write",
                "resource": "prompt:p1",
                "context": {"tenant_id": "T1", "client_id": "C1"}
            },
            headers={CORRELATION_HEADER: "corr-123"}
        )

        assert response.status_code == 200
        assert response.json() == {"allow": True, "reason": "allowed_by:client_admin"}
        assert response.headers[CORRELATION_HEADER] == "corr-123"

    def test_check_deny_is_200(self, client, assign):
        assign("u1", "client_admin", "T1", "C1")

        response = client.post("/policies/check", json={
            "subject": "u1",
            "action": "write",
            "resource": "prompt:p1",
            "context": {"tenant_id": "T1", "client_id": "C2"}
        })

        assert response.status_code == 200
        assert response.json() == {"allow": False, "reason": "scope_mismatch"}

    def test_check_without_context(self, client):
        response = client.post("/policies/check", json={
            "subject": "u3", "action": "read", "resource": "client:c1"
        })

        assert response.status_code == 200
        assert response.json()["reason"] == "missing_tenant_context"

    def test_check_generates_correlation_id(self, client, sink):
        response = client.post("/policies/check", json={
            "subject": "u2", "action": "read", "resource": "client:c1", "context": {"tenant_id": "T1"}
        })

        correlation_id = response.headers[CORRELATION_HEADER]
        assert correlation_id
        assert sink.events[-1].correlation_id == correlation_id

    def test_check_schema_violation(self, client):
        response = client.post("/policies/check", json={"action": "read", "resource": "prompt:p1"})

        assert response.status_code == 400
        assert response.json()["code"] == "MALFORMED_REQUEST"

    def test_check_malformed_decision(self, client):
        response = client.post("/policies/check", json={
            "subject": "u1", "action": "", "resource": "prompt:p1", "context": {"tenant_id": "T1"}
        })

        assert response.status_code == 400
        assert response.json() == {"allow": False, "reason": "malformed_request"}

    def test_audit_event_for_check(self, client, sink, assign):
        assign("u1", "viewer", "T1")

        client.post(
            "/policies/check",
            json={"subject": "u1", "action": "read", "resource": "prompt:p1", "context": {"tenant_id": "T1"}},
            headers={CORRELATION_HEADER: "corr-9"}
        )

        event = sink.events[-1]
        assert event.subject == "u1"
        assert event.action_attempted == "read"
        assert event.resource == "prompt:p1"
        assert event.allow is True
        assert event.correlation_id == "corr-9"

    def test_list_roles(self, client):
        response = client.get("/policies/roles")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 5
        viewer = next(r for r in data["roles"] if r["name"] == "viewer")
        assert viewer["permissions"] == ["read:client", "read:prompt", "read:workflow"]

    def test_create_assignment(self, assign):
        response = assign("u1", "viewer", "T1")

        assert response.status_code == 201
        data = response.json()
        assert data["changed"] is True
        assert data["assignment"]["scope"] == "tenant"
        assert data["assignment"]["tenant_id"] == "T1"

    def test_create_assignment_duplicate(self, assign):
        assign("u1", "viewer", "T1")

        response = assign("u1", "viewer", "T1")

        assert response.status_code == 200
        assert response.json()["changed"] is False

    def test_create_assignment_unknown_role(self, assign):
        response = assign("u1", "owner", "T1")

        assert response.status_code == 400
        assert response.json()["code"] == "UNKNOWN_ROLE"

    def test_create_assignment_invalid_scope(self, assign):
        response = assign("u1", "viewer", None, "C1")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SCOPE"

    def test_list_assignments(self, client, assign):
        assign("u1", "viewer", "T1")
        assign("u1", "agent", "T1", "C1")
        assign("u1", "super_admin")

        response = client.get("/policies/subjects/u1/assignments")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert [a["role_name"] for a in data["assignments"]] == ["agent", "super_admin", "viewer"]
        assert [a["scope"] for a in data["assignments"]] == ["client", "platform", "tenant"]

    def test_delete_assignment(self, client, assign):
        assign("u1", "client_admin", "T1", "C1")
        check_body = {
            "subject": "u1", "action": "write", "resource": "prompt:p1",
            "context": {"tenant_id": "T1", "client_id": "C1"}
        }
        assert client.post("/policies/check", json=check_body).json()["allow"] is True

        response = client.delete(
            "/policies/subjects/u1/assignments/client_admin",
            params={"tenant_id": "T1", "client_id": "C1"}
        )

        assert response.status_code == 200
        assert response.json()["invalidated_entries"] == 1
        assert client.post("/policies/check", json=check_body).json() == {
            "allow": False, "reason": "no_roles_assigned"
        }

    def test_delete_assignment_not_found(self, client, assign):
        assign("u1", "viewer", "T1")

        response = client.delete("/policies/subjects/u1/assignments/viewer", params={"tenant_id": "T2"})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_invalidate_subject(self, client, store, assign):
        assign("u1", "viewer", "T1")
        check_body = {"subject": "u1", "action": "read", "resource": "prompt:p1", "context": {"tenant_id": "T1"}}
        client.post("/policies/check", json=check_body)

        response = client.post("/policies/subjects/u1/invalidate")

        assert response.status_code == 200
        assert response.json() == {"subject_id": "u1", "invalidated_entries": 1}

    def test_stats(self, client, assign):
        assign("u1", "viewer", "T1")

        response = client.get("/policies/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["cache"]["backend"] == "memory"
        assert data["store"]["assignments"] == 1
        assert data["roles"] == 5
