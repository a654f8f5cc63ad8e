"""
Integration tests for the policy administration and decision flow.
"""

import asyncio
import threading
import pytest
import pytest_asyncio
import httpx

from shared.config import get_config
from shared.test_helpers import InMemoryAuditSink, TestDataFactory
from service_policy.app.main import PolicyService


class TestPolicyFlow:
    """Integration tests for the Policy service flow."""

    @pytest.fixture
    def audit_sink(self):
        return InMemoryAuditSink()

    @pytest.fixture
    def policy_service(self, audit_sink):
        service = PolicyService(config=get_config("policy", 8013, env="test"), audit_sink=audit_sink)
        yield service
        service.audit.stop()

    @pytest.fixture
    def policy_url(self):
        return "http://policy.test"

    @pytest_asyncio.fixture
    async def client(self, policy_service, policy_url):
        transport = httpx.ASGITransport(app=policy_service.app)
        async with httpx.AsyncClient(transport=transport, base_url=policy_url) as client:
            yield client

    async def _create_policies(self, client):
        for record in TestDataFactory.create_test_policy_records():
            response = await client.post("/policy/policies", json=record)
            assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_policy_lifecycle_changes_decisions(self, client, policy_service, audit_sink):
        """Registering and removing policies changes the next decision."""
        await self._create_policies(client)
        subject = TestDataFactory.subject_payload(memberships={"tenant-a": "admin"})
        request = {
            "subject": subject,
            "resource": TestDataFactory.resource_payload(category="payments", resource_id="pay-1"),
            "action": "refund"
        }

        granted = await client.post("/policy/evaluate", json=request)
        assert granted.json()["granted"] is True
        assert granted.json()["matched_policy_id"] == "admin-everything"

        deny = {
            "id": "payments-refund-freeze",
            "category": "payments",
            "effect": "deny",
            "actions": ["refund"],
            "priority": 500
        }
        assert (await client.post("/policy/policies", json=deny)).status_code == 201

        denied = await client.post("/policy/evaluate", json=request)
        assert denied.json()["granted"] is False
        assert denied.json()["matched_policy_id"] == "payments-refund-freeze"

        assert (await client.delete("/policy/policies/payments-refund-freeze")).status_code == 200

        restored = await client.post("/policy/evaluate", json=request)
        assert restored.json()["granted"] is True

        assert policy_service.audit.flush(5)
        assert [record[0].granted for record in audit_sink.records] == [True, False, True]

    @pytest.mark.asyncio
    async def test_multi_tenant_subject_flow(self, client):
        """A subject in two tenants must name one, and the named tenant's role applies."""
        await self._create_policies(client)
        subject = TestDataFactory.subject_payload(memberships={"tenant-a": "viewer", "tenant-b": "admin"})

        ambiguous = await client.post("/policy/resolve", json={"subject": subject})
        assert ambiguous.status_code == 403
        assert ambiguous.json()["code"] == "AMBIGUOUS_TENANT_CONTEXT"

        as_viewer = await client.post("/policy/evaluate", json={
            "subject": subject,
            "tenant_id": "tenant-a",
            "resource": TestDataFactory.resource_payload(category="payments", tenant_id="tenant-a"),
            "action": "read"
        })
        assert as_viewer.json()["granted"] is False
        assert as_viewer.json()["matched_policy_id"] == "payments-deny-viewers"

        as_admin = await client.post("/policy/evaluate", json={
            "subject": subject,
            "tenant_id": "tenant-b",
            "resource": TestDataFactory.resource_payload(category="payments", tenant_id="tenant-b"),
            "action": "read"
        })
        assert as_admin.json()["granted"] is True

        crossed = await client.post("/policy/evaluate", json={
            "subject": subject,
            "tenant_id": "tenant-b",
            "resource": TestDataFactory.resource_payload(category="payments", tenant_id="tenant-a"),
            "action": "read"
        })
        assert crossed.json()["granted"] is False
        assert crossed.json()["error_code"] == "CROSS_TENANT_ACCESS"

    @pytest.mark.asyncio
    async def test_business_hours_flow(self, client):
        """Time-window conditions read the request timestamp."""
        await self._create_policies(client)
        base = {
            "subject": TestDataFactory.subject_payload(),
            "resource": TestDataFactory.resource_payload(category="work_orders", resource_id="wo-7"),
            "action": "update"
        }

        monday_morning = await client.post("/policy/evaluate", json={
            **base, "request": {"timestamp": "2024-03-04T09:30:00Z"}
        })
        saturday = await client.post("/policy/evaluate", json={
            **base, "request": {"timestamp": "2024-03-09T09:30:00Z"}
        })
        monday_night = await client.post("/policy/evaluate", json={
            **base, "request": {"timestamp": "2024-03-04T22:00:00Z"}
        })

        assert monday_morning.json()["granted"] is True
        assert saturday.json()["granted"] is False
        assert monday_night.json()["granted"] is False

    @pytest.mark.asyncio
    async def test_conflicts_and_stats_flow(self, client):
        """Conflicting policies are reported at creation and by the conflicts endpoint."""
        await self._create_policies(client)

        response = await client.post("/policy/policies", json={
            "id": "invoices-read-block",
            "category": "invoices",
            "effect": "deny",
            "roles": ["employee", "manager", "admin", "owner"],
            "actions": ["read"],
            "priority": 10
        })
        assert response.status_code == 201
        assert response.json()["conflicts"][0]["policy_ids"] == ["invoices-read-staff", "invoices-read-block"]

        conflicts = await client.get("/policy/conflicts")
        assert len(conflicts.json()) == 1

        stats = await client.get("/policy/stats")
        assert stats.json()["store"]["total_policies"] == 6

        metrics = await client.get("/metrics")
        assert "policies_registered 6.0" in metrics.text

    @pytest.mark.asyncio
    async def test_evaluation_waiting_on_store_does_not_block_other_requests(self, client, policy_service):
        """An evaluation queued behind a store writer leaves the event loop free."""
        await self._create_policies(client)
        lock_held = threading.Event()
        release = threading.Event()

        def writer():
            with policy_service.store._lock.write():
                lock_held.set()
                release.wait(5)

        thread = threading.Thread(target=writer)
        thread.start()
        assert lock_held.wait(5)

        try:
            evaluation = asyncio.create_task(client.post("/policy/evaluate", json={
                "subject": TestDataFactory.subject_payload(),
                "resource": TestDataFactory.resource_payload(),
                "action": "read"
            }))

            root = await asyncio.wait_for(client.get("/"), timeout=2)
            assert root.status_code == 200
            assert not evaluation.done()
        finally:
            release.set()
            thread.join()

        response = await asyncio.wait_for(evaluation, timeout=5)
        assert response.json()["granted"] is True
