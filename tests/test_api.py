"""Tests for API endpoints."""

import os
import pytest
from unittest.mock import patch
from fastapi import FastAPI
from fastapi.testclient import TestClient

from payments_recon.api import app
from payments_recon.auth import limiter
from payments_recon.reconciliation import (
    InMemoryRunStore,
    RecordSource,
    ReconciliationService,
    RunGuard,
    StaticLedgerSource,
    StorageError,
)
from payments_recon.reconciliation.api import get_reconciliation_service, router

from conftest import app_record, gateway_record


class ClosedGuard(RunGuard):
    """Guard that reports every window as held."""

    async def acquire(self, window_key, run_id):
        return False

    async def release(self, window_key, run_id):
        pass


class UnavailableStore(InMemoryRunStore):
    """Store whose reads fail."""

    async def list(self, run_filter=None):
        raise StorageError("database unavailable")


def make_service(**kwargs) -> ReconciliationService:
    return ReconciliationService(
        app_ledger=StaticLedgerSource([
            app_record(reference="R1", county="Nairobi"),
            app_record(reference="R2", amount="500", county="Nairobi"),
        ], RecordSource.APP),
        gateway_ledger=StaticLedgerSource([
            gateway_record(transaction_id="R1", county="Nairobi"),
        ], RecordSource.GATEWAY),
        store=kwargs.pop("store", None) or InMemoryRunStore(),
        **kwargs,
    )


@pytest.fixture
def service():
    return make_service()


@pytest.fixture
def client(service, mock_api_key):
    """Create a test client wired to an in-memory service."""
    limiter.reset()
    app.dependency_overrides[get_reconciliation_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
        # Background runs live on the client's event loop
        test_client.portal.call(service.shutdown)
    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Tests for health checks."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_reconciliation_health(self, client):
        response = client.get("/reconciliation/health")
        assert response.status_code == 200
        assert response.json()["service"] == "reconciliation"


class TestAuthentication:
    """Tests for API key handling."""

    def test_missing_auth(self, client, trigger_body):
        """Test that requests without credentials are rejected."""
        response = client.post("/reconciliation/runs", json=trigger_body)
        assert response.status_code in (401, 403)

    def test_invalid_key(self, client, trigger_body):
        """Test that an unknown key returns 401."""
        response = client.post(
            "/reconciliation/runs",
            json=trigger_body,
            headers={"Authorization": "Bearer wrong_key"},
        )
        assert response.status_code == 401

    def test_operator_recorded_from_key(self, client, trigger_body):
        """Test that the run creator is the operator owning the key."""
        with patch.dict(os.environ, {"RECONCILIATION_API_KEYS": "alice:key-a,bob:key-b"}):
            response = client.post(
                "/reconciliation/runs",
                json=trigger_body,
                headers={"Authorization": "Bearer key-b"},
            )
        assert response.status_code == 200
        assert response.json()["run"]["created_by"] == "bob"

    def test_no_keys_configured(self, client, trigger_body):
        """Test that a server without keys returns 500."""
        with patch.dict(os.environ, {"RECONCILIATION_API_KEYS": "", "API_KEY": ""}):
            response = client.get(
                "/reconciliation/runs",
                headers={"Authorization": "Bearer anything"},
            )
        assert response.status_code == 500


class TestTriggerEndpoint:
    """Tests for POST /reconciliation/runs."""

    def test_sync_run(self, client, auth_headers, trigger_body):
        """Test a sync run returning the terminal run and its items."""
        response = client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["persisted"] is True
        assert data["run"]["status"] == "partial"
        assert data["run"]["created_by"] == "admin"
        assert data["run"]["statistics"]["total_matched"] == 1
        assert data["run"]["statistics"]["total_unmatched_app"] == 1
        assert data["run"]["statistics"]["total_app_amount"] == "1500"
        assert len(data["items"]) == 3
        assert data["run"]["tolerance_config_used"]["fuzzy_match_threshold"] == 80

    def test_dry_run(self, client, auth_headers, trigger_body):
        """Test that dry runs are not listed afterwards."""
        trigger_body["dry_run"] = True
        response = client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["persisted"] is False
        assert client.get("/reconciliation/runs", headers=auth_headers).json() == []

    def test_async_run(self, client, auth_headers, trigger_body):
        """Test that async runs are accepted with 202 and a pending run."""
        trigger_body["sync"] = False
        response = client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)

        assert response.status_code == 202
        data = response.json()
        assert data["run"]["status"] == "pending"
        assert data["items"] == []

        run_response = client.get(f"/reconciliation/runs/{data['run']['run_id']}", headers=auth_headers)
        assert run_response.status_code == 200

    def test_tolerance_overrides(self, client, auth_headers, trigger_body):
        """Test that request tolerances are applied and recorded."""
        trigger_body.update({"date_tolerance": 7, "amount_absolute_tolerance": "5.00"})
        response = client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)

        tolerances = response.json()["run"]["tolerance_config_used"]
        assert tolerances["date_tolerance_days"] == 7
        assert tolerances["amount_absolute_tolerance"] == "5.00"

    def test_invalid_policy(self, client, auth_headers, trigger_body):
        """Test that out-of-range tolerances return 422 with the error kind."""
        trigger_body["fuzzy_match_threshold"] = 150
        response = client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "invalid_policy"

    def test_period_end_before_start(self, client, auth_headers, trigger_body):
        """Test that an inverted period is rejected."""
        trigger_body["period_end"] = "2024-12-31"
        response = client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)
        assert response.status_code == 422

    def test_concurrent_run_conflict(self, mock_api_key, auth_headers, trigger_body):
        """Test that a held window returns 409."""
        limiter.reset()
        app.dependency_overrides[get_reconciliation_service] = lambda: make_service(guard=ClosedGuard())
        try:
            with TestClient(app) as test_client:
                response = test_client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "concurrent_run_conflict"

    def test_rate_limit(self, client, auth_headers, trigger_body):
        """Test that triggers are rate limited."""
        trigger_body["dry_run"] = True
        statuses = [
            client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers).status_code
            for _ in range(31)
        ]
        assert statuses[:30] == [200] * 30
        assert statuses[30] == 429


class TestRunEndpoints:
    """Tests for reading runs and items."""

    def test_list_runs(self, client, auth_headers, trigger_body):
        """Test listing with filters."""
        client.post("/reconciliation/runs", json=trigger_body, headers=auth_headers)

        response = client.get("/reconciliation/runs", headers=auth_headers)
        assert response.status_code == 200
        runs = response.json()
        assert len(runs) == 1
        assert runs[0]["status"] == "partial"

        filtered = client.get(
            "/reconciliation/runs",
            params={"status": "success"},
            headers=auth_headers,
        )
        assert filtered.json() == []

        by_county = client.get(
            "/reconciliation/runs",
            params={"county": "nairobi"},
            headers=auth_headers,
        )
        assert len(by_county.json()) == 1

    def test_get_run(self, client, auth_headers, trigger_body):
        """Test fetching a stored run summary."""
        run_id = client.post(
            "/reconciliation/runs", json=trigger_body, headers=auth_headers
        ).json()["run"]["run_id"]

        response = client.get(f"/reconciliation/runs/{run_id}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["run_id"] == run_id
        assert response.json()["statistics"]["total_matched"] == 1

    def test_get_unknown_run(self, client, auth_headers):
        """Test that unknown runs return 404."""
        response = client.get("/reconciliation/runs/missing", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "run_not_found"

    def test_export_items(self, client, auth_headers, trigger_body):
        """Test exporting items filtered by status."""
        run_id = client.post(
            "/reconciliation/runs", json=trigger_body, headers=auth_headers
        ).json()["run"]["run_id"]

        response = client.get(
            f"/reconciliation/runs/{run_id}/items",
            params={"status": "unmatched_app"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        items = response.json()
        assert [item["reference"] for item in items] == ["R2"]

        assert client.get(
            "/reconciliation/runs/missing/items", headers=auth_headers
        ).status_code == 404

    def test_invalid_status_filter(self, client, auth_headers):
        """Test that unknown item statuses are rejected."""
        response = client.get(
            "/reconciliation/runs/any/items",
            params={"status": "bogus"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_cancel_unknown_run(self, client, auth_headers):
        """Test that cancelling an unknown run reports False."""
        response = client.post("/reconciliation/runs/missing/cancel", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"run_id": "missing", "cancelled": False}

    def test_storage_error(self, mock_api_key, auth_headers):
        """Test that store failures return 503."""
        app.dependency_overrides[get_reconciliation_service] = lambda: make_service(store=UnavailableStore())
        try:
            with TestClient(app) as test_client:
                response = test_client.get("/reconciliation/runs", headers=auth_headers)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        assert response.json()["detail"]["kind"] == "storage_error"


class TestServiceDependency:
    """Tests for get_reconciliation_service."""

    def test_service_not_initialized(self, auth_headers):
        """Test that a missing service returns 503."""
        bare_app = FastAPI()
        bare_app.include_router(router)
        response = TestClient(bare_app).get("/reconciliation/runs", headers=auth_headers)
        assert response.status_code == 503
