"""
Tests for the sync API

Covers:
- Caller resolution (X-User-Id, service token, neither)
- Error mapping (403, 404, 400)
- Sync, catch-up and status responses
- Health (database round trip) and operator status
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.api.sync import get_sync_service
from app.main import app
from app.models.base import get_db

from conftest import OWNER

SERVICE_HEADERS = {"X-Service-Token": "test-service-token"}
OWNER_HEADERS = {"X-User-Id": OWNER}


@pytest.fixture
def client(service, session_factory):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_sync_service] = lambda: service
    app.dependency_overrides[get_db] = override_db
    # No context manager: skip the lifespan (init_db and the scheduler)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def loaded(extract):
    extract.load(extract.order("o1", items=[extract.item("i1", total="10.00")], tax="0.80"))
    return extract


class TestHealth:

    def test_health_checks_database(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "ok"

    def test_unreachable_database_is_unhealthy(self, client):
        class UnreachableSession:
            def execute(self, *args, **kwargs):
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        app.dependency_overrides[get_db] = lambda: UnreachableSession()
        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["database"] == "unreachable"

    def test_status_summarizes_sync_health(self, client, tenant_id, loaded):
        client.post(f"/sync/{tenant_id}/all", headers=SERVICE_HEADERS)

        body = client.get("/status").json()

        assert body["scheduler"]["running"] is False
        assert body["sync"]["by_status"]["success"] >= 1
        assert body["sync"]["side_effects_pending"] == 0


class TestCallerResolution:

    def test_missing_identity_is_rejected(self, client, tenant_id):
        assert client.post(f"/sync/{tenant_id}/all").status_code == 401

    def test_wrong_service_token_is_rejected(self, client, tenant_id):
        response = client.post(f"/sync/{tenant_id}/all", headers={"X-Service-Token": "nope"})
        assert response.status_code == 401

    def test_non_member_is_forbidden(self, client, tenant_id, loaded):
        response = client.post(f"/sync/{tenant_id}/all", headers={"X-User-Id": "stranger"})

        assert response.status_code == 403
        assert loaded.ledger() == {}

    def test_service_token_runs_as_background(self, client, tenant_id, loaded):
        response = client.post(f"/sync/{tenant_id}/all", headers=SERVICE_HEADERS)

        assert response.status_code == 200
        assert response.json()["rows_written"] == 2
        assert response.json()["rows_classified"] == 0


class TestSyncEndpoints:

    def test_sync_all(self, client, tenant_id, loaded):
        body = client.post(f"/sync/{tenant_id}/all", headers=OWNER_HEADERS).json()

        assert body["status"] == "success"
        assert body["rows_written"] == 2
        assert body["dates_aggregated"] == 1

        again = client.post(f"/sync/{tenant_id}/all", headers=OWNER_HEADERS).json()
        assert again["rows_written"] == 0

    def test_sync_range(self, client, tenant_id, loaded):
        response = client.post(
            f"/sync/{tenant_id}/range",
            params={"start_date": "2026-02-14", "end_date": "2026-02-14"},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["rows_written"] == 2

    def test_inverted_range_is_bad_request(self, client, tenant_id):
        response = client.post(
            f"/sync/{tenant_id}/range",
            params={"start_date": "2026-02-15", "end_date": "2026-02-14"},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 400

    def test_unknown_tenant(self, client):
        assert client.post("/sync/9999/all", headers=SERVICE_HEADERS).status_code == 404

    def test_unknown_tenant_is_forbidden_for_users(self, client):
        assert client.post("/sync/9999/all", headers=OWNER_HEADERS).status_code == 403

    def test_catch_up(self, client, tenant_id, loaded):
        client.post(f"/sync/{tenant_id}/all", headers=SERVICE_HEADERS)

        response = client.post(f"/sync/{tenant_id}/catch-up", headers=OWNER_HEADERS)

        assert response.status_code == 200
        assert response.json()["dates_aggregated"] == 1
        assert loaded.daily().gross_revenue == 10


class TestStatusEndpoint:

    def test_reports_runs(self, client, tenant_id, loaded):
        client.post(f"/sync/{tenant_id}/all", headers=OWNER_HEADERS)

        body = client.get(f"/sync/{tenant_id}/status", headers=OWNER_HEADERS).json()

        assert body["providers"][0]["provider"] == "all"
        assert body["providers"][0]["sync_status"] == "success"
        assert body["providers"][0]["rows_written"] == 2
        assert [run["sync_type"] for run in body["recent_runs"]] == ["bulk"]

    def test_non_member_is_forbidden(self, client, tenant_id):
        response = client.get(f"/sync/{tenant_id}/status", headers={"X-User-Id": "stranger"})
        assert response.status_code == 403
