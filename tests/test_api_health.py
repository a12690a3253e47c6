"""Tests for the /health endpoint."""

from unittest.mock import AsyncMock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from content_pipeline.api.routes.health import router


def _make_app(services) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    app.state.services = services
    return app


class TestHealthRoute:
    def test_health_ok_in_memory(self, services):
        client = TestClient(_make_app(services))
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["checks"] == {}
        assert body["workers_running"] is False
        assert body["queued"] == 0

    def test_health_reports_stores(self, services):
        services.postgres = AsyncMock()
        services.postgres.verify_connectivity = AsyncMock(return_value=True)
        services.neo4j = AsyncMock()
        services.neo4j.health_check = AsyncMock(return_value={"healthy": True})
        response = TestClient(_make_app(services)).get("/health")
        assert response.status_code == 200
        assert response.json()["checks"] == {"postgres": True, "neo4j": True}

    def test_health_neo4j_unhealthy(self, services):
        services.neo4j = AsyncMock()
        services.neo4j.health_check = AsyncMock(return_value={"healthy": False, "error": "refused"})
        response = TestClient(_make_app(services)).get("/health")
        assert response.status_code == 503
        assert response.json()["checks"] == {"neo4j": False}

    def test_health_postgres_down(self, services):
        services.postgres = AsyncMock()
        services.postgres.verify_connectivity = AsyncMock(side_effect=Exception("Connection refused"))
        response = TestClient(_make_app(services)).get("/health")
        assert response.status_code == 503
