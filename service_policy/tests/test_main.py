"""
Unit tests for the Policy Service HTTP surface.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from shared.config import get_config
from shared.test_helpers import InMemoryAuditSink, TestDataFactory, TestEnvironment
from service_policy.app.audit.sinks import HttpAuditSink, LoggingAuditSink
from service_policy.app.errors import ConfigurationError
from service_policy.app.main import PolicyService, create_app
from service_policy.app.persistence.postgres import PostgresAuditSink
from service_policy.app.rules.loader import dump_policies, policy_from_dict
from service_policy.app.rules.models import PolicyEffect


class TestPolicyService:
    """Test cases for PolicyService."""

    @pytest.fixture
    def audit_sink(self):
        return InMemoryAuditSink()

    @pytest.fixture
    def policy_service(self, audit_sink):
        service = PolicyService(config=get_config("policy", 8013, env="test"), audit_sink=audit_sink)
        yield service
        service.audit.stop()

    @pytest.fixture
    def client(self, policy_service):
        return TestClient(policy_service.app)

    @pytest.fixture
    def seeded_client(self, policy_service, client):
        for record in TestDataFactory.create_test_policy_records():
            policy_service.store.register(policy_from_dict(record))
        return client

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "policy"
        assert "policy_evaluation" in data["capabilities"]

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "audit_dispatcher" in response.json()["dependencies"]

    def test_metrics_endpoint(self, seeded_client):
        seeded_client.get("/")

        response = seeded_client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "policies_registered" in response.text

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_resolve_single_membership(self, client):
        response = client.post("/policy/resolve", json={"subject": TestDataFactory.subject_payload()})

        assert response.status_code == 200
        data = response.json()
        assert data["tenant_id"] == "tenant-a"
        assert data["method"] == "single_membership_fallback"

    def test_resolve_ambiguous(self, client):
        subject = TestDataFactory.subject_payload(memberships={"tenant-a": "employee", "tenant-b": "admin"})

        response = client.post("/policy/resolve", json={"subject": subject})

        assert response.status_code == 403
        assert response.json()["code"] == "AMBIGUOUS_TENANT_CONTEXT"

    def test_resolve_unauthorized_tenant(self, client):
        response = client.post("/policy/resolve", json={
            "subject": TestDataFactory.subject_payload(),
            "tenant_id": "tenant-z"
        })

        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED_TENANT"

    def test_evaluate_granted(self, seeded_client, policy_service, audit_sink):
        response = seeded_client.post("/policy/evaluate", json={
            "subject": TestDataFactory.subject_payload(),
            "resource": TestDataFactory.resource_payload(),
            "action": "read"
        })

        assert response.status_code == 200
        data = response.json()
        assert data["granted"] is True
        assert data["matched_policy_id"] == "invoices-read-staff"
        assert data["tenant_id"] == "tenant-a"

        assert policy_service.audit.flush(5)
        assert len(audit_sink.records) == 1

    def test_evaluate_cross_tenant(self, seeded_client):
        response = seeded_client.post("/policy/evaluate", json={
            "subject": TestDataFactory.subject_payload(memberships={"tenant-a": "admin"}),
            "resource": TestDataFactory.resource_payload(tenant_id="tenant-b"),
            "action": "read"
        })

        assert response.status_code == 200
        data = response.json()
        assert data["granted"] is False
        assert data["error_code"] == "CROSS_TENANT_ACCESS"
        assert data["risk_score"] == 100

    def test_evaluate_with_request_context(self, seeded_client):
        payload = {
            "subject": TestDataFactory.subject_payload(memberships={"tenant-a": "manager"}),
            "resource": TestDataFactory.resource_payload(),
            "action": "approve",
        }

        small = seeded_client.post("/policy/evaluate", json={**payload, "request": {"amount": 500}})
        large = seeded_client.post("/policy/evaluate", json={**payload, "request": {"amount": 50000}})

        assert small.json()["granted"] is True
        assert large.json()["granted"] is False

    def test_evaluate_default_deny(self, seeded_client):
        response = seeded_client.post("/policy/evaluate", json={
            "subject": TestDataFactory.subject_payload(),
            "resource": TestDataFactory.resource_payload(category="parts_inventory"),
            "action": "read"
        })

        assert response.json()["granted"] is False
        assert response.json()["reason"] == "no matching policy"

    def test_evaluate_resolution_error(self, client):
        response = client.post("/policy/evaluate", json={
            "subject": TestDataFactory.subject_payload(memberships={}),
            "resource": TestDataFactory.resource_payload(),
            "action": "read"
        })

        assert response.status_code == 403
        assert response.json()["code"] == "NO_TENANT_MEMBERSHIP"

    def test_evaluate_validation_error(self, client):
        response = client.post("/policy/evaluate", json={"action": "read"})

        assert response.status_code == 422

    def test_list_policies(self, seeded_client):
        response = seeded_client.get("/policy/policies")

        assert response.status_code == 200
        assert response.json()["total"] == 5

    def test_list_policies_by_category(self, seeded_client):
        response = seeded_client.get("/policy/policies", params={"category": "invoices"})

        ids = [policy["id"] for policy in response.json()["policies"]]
        assert ids == ["invoices-approve-managers", "invoices-read-staff", "admin-everything"]

    def test_create_policy(self, client, policy_service):
        response = client.post("/policy/policies", json={
            "id": "inventory-read",
            "category": "parts_inventory",
            "effect": "allow",
            "roles": ["employee"],
            "actions": ["read"],
            "condition": {"ip_allow_list": ["10.0.0.0/8"]}
        })

        assert response.status_code == 201
        assert response.json()["policy"]["id"] == "inventory-read"
        assert response.json()["conflicts"] == []
        assert policy_service.store.get("inventory-read").condition.ip_allow_list == ("10.0.0.0/8",)

    def test_create_policy_reports_conflict(self, seeded_client):
        response = seeded_client.post("/policy/policies", json={
            "id": "payments-allow-viewers",
            "category": "payments",
            "effect": "allow",
            "roles": ["viewer"],
            "priority": 100
        })

        assert response.status_code == 201
        conflicts = response.json()["conflicts"]
        assert conflicts[0]["policy_ids"] == ["payments-allow-viewers", "payments-deny-viewers"]

    def test_create_duplicate_policy(self, seeded_client):
        response = seeded_client.post("/policy/policies", json={
            "id": "admin-everything", "category": "*", "effect": "allow"
        })

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_POLICY_ID"

    @pytest.mark.parametrize("body", [
        {"id": "x", "category": "", "effect": "allow"},
        {"id": "x", "category": "invoices", "effect": "sometimes"},
        {"id": "x", "category": "invoices", "effect": "allow", "roles": ["emperor"]},
        {"id": "x", "category": "invoices", "effect": "allow", "condition": {"ip_allow_list": ["nope"]}},
        {"id": "x", "category": "invoices", "effect": "allow", "condition": {"time_window": "nine-to-five"}},
        {"id": "x", "category": "invoices", "effect": "allow", "condition": {"max_amount": "lots"}},
    ])
    def test_create_invalid_policy(self, client, body):
        response = client.post("/policy/policies", json=body)

        assert response.status_code == 400

    def test_delete_policy(self, seeded_client, policy_service):
        response = seeded_client.delete("/policy/policies/admin-everything")

        assert response.status_code == 200
        assert "admin-everything" not in policy_service.store

    def test_delete_missing_policy(self, client):
        response = client.delete("/policy/policies/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "POLICY_NOT_FOUND"

    def test_conflicts_endpoint(self, client, policy_service):
        policy_service.store.register(policy_from_dict(
            {"id": "pay-allow", "category": "payments", "effect": "allow", "roles": ["admin"]}))
        policy_service.store.register(policy_from_dict(
            {"id": "pay-deny", "category": "payments", "effect": "deny", "roles": ["admin"]}))

        response = client.get("/policy/conflicts")

        assert response.status_code == 200
        assert response.json()[0]["policy_ids"] == ["pay-allow", "pay-deny"]
        assert response.json()[0]["roles"] == ["admin"]

    def test_stats(self, seeded_client):
        response = seeded_client.get("/policy/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["store"]["total_policies"] == 5
        assert data["audit"]["capacity"] == 1024


class TestPolicyServiceLifecycle:
    """Startup, shutdown and persistence wiring."""

    @pytest.mark.parametrize("sink,expected", [
        ("log", LoggingAuditSink),
        ("http", HttpAuditSink),
        ("postgres", PostgresAuditSink),
    ])
    def test_audit_sink_from_config(self, sink, expected):
        service = PolicyService(config=get_config("policy", 8013, policy_audit_sink=sink))

        assert isinstance(service.audit.sink, expected)

    def test_startup_loads_policy_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        dump_policies([policy_from_dict(r) for r in TestDataFactory.create_test_policy_records()], path)
        service = PolicyService(
            config=get_config("policy", 8013, policy_file=str(path)),
            audit_sink=InMemoryAuditSink()
        )

        with TestClient(service.app) as client:
            assert len(service.store) == 5
            assert client.get("/policy/stats").json()["audit"]["running"] is True

        assert service.audit.running is False

    def test_startup_loads_repository(self):
        repository = MagicMock()
        repository.start = AsyncMock()
        repository.stop = AsyncMock()
        repository.load_all_policies = AsyncMock(return_value=[
            policy_from_dict({"id": "db-policy", "category": "invoices", "effect": "deny"})
        ])
        service = PolicyService(config=get_config("policy", 8013), audit_sink=InMemoryAuditSink(),
                                repository=repository)

        with TestClient(service.app):
            assert service.store.get("db-policy").effect == PolicyEffect.DENY

        repository.start.assert_awaited_once()
        repository.stop.assert_awaited_once()

    def test_create_rolls_back_when_save_fails(self):
        repository = MagicMock()
        repository.save_policy = AsyncMock(return_value=False)
        service = PolicyService(config=get_config("policy", 8013), audit_sink=InMemoryAuditSink(),
                                repository=repository)
        client = TestClient(service.app)

        response = client.post("/policy/policies", json={"id": "p", "category": "invoices", "effect": "allow"})

        assert response.status_code == 500
        assert response.json()["code"] == "POLICY_SAVE_FAILED"
        assert "p" not in service.store

    def test_delete_restores_when_repository_fails(self):
        repository = MagicMock()
        repository.delete_policy = AsyncMock(return_value=False)
        service = PolicyService(config=get_config("policy", 8013), audit_sink=InMemoryAuditSink(),
                                repository=repository)
        service.store.register(policy_from_dict({"id": "p", "category": "invoices", "effect": "allow"}))
        client = TestClient(service.app)

        response = client.delete("/policy/policies/p")

        assert response.status_code == 500
        assert "p" in service.store

    def test_create_app(self):
        app = create_app(get_config("policy", 8013))

        assert app.state.policy_service.engine.config.default_deny is True

    def test_allow_by_default_config_refused(self):
        with pytest.raises(ConfigurationError):
            PolicyService(config=get_config("policy", 8013, policy_default_deny=False))

    def test_settings_from_environment(self, monkeypatch):
        for key, value in TestEnvironment.get_mock_config().items():
            monkeypatch.setenv(key, value)
        monkeypatch.setenv("ACCESS_POLICY_AUDIT_QUEUE_CAPACITY", "16")
        monkeypatch.setenv("ACCESS_POLICY_CONDITION_CLOCK_SKEW_SECONDS", "30")

        service = PolicyService(audit_sink=InMemoryAuditSink())

        assert service.config.env == "test"
        assert service.audit.capacity == 16
        assert service.engine_config.condition_clock_skew_tolerance.total_seconds() == 30
