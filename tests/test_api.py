"""
Unit tests for api.py
Tests FastAPI endpoints with an in-process dashboard service.
"""
import json

import pytest
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient

from dashboard_agent import api
from dashboard_agent.auth import InMemoryAuthProfileStore
from dashboard_agent.services.clarification_store import ClarificationStore
from dashboard_agent.services.dashboard_service import DashboardService
from dashboard_agent.services.data_source_registry import InMemoryDataSourceRegistry


def _lines(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


@pytest.fixture
def service(fast_config, make_executor):
    return DashboardService(
        registry=InMemoryDataSourceRegistry(),
        tool_executor=make_executor({"/api/courses": [{"id": 1, "state": "SP"}]}),
        auth_store=InMemoryAuthProfileStore(),
        clarifications=ClarificationStore(ttl_hours=1),
        config=fast_config,
    )


@pytest.fixture
def client(service):
    with patch.object(api, "dashboard_service", service):
        yield TestClient(api.app)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "dashboard-agent"}


class TestPlanEndpoint:
    """Test the /api/dashboard/plan endpoint."""

    def test_plan(self, client):
        response = client.post("/api/dashboard/plan", json={"prompt": "dashboard de cursos em São Paulo"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["plan"]["complexity"] == "high"
        assert [sq["id"] for sq in data["plan"]["subQueries"]] == ["sq_courses", "sq_filter_location"]
        assert data["explanation"]["stages"] == [["sq_courses"], ["sq_filter_location"]]

    def test_empty_prompt(self, client):
        response = client.post("/api/dashboard/plan", json={"prompt": "   "})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Prompt cannot be empty"}

    def test_prompt_too_long(self, client):
        response = client.post("/api/dashboard/plan", json={"prompt": "a" * 5001})

        assert response.status_code == 400
        assert response.json()["message"] == "Prompt exceeds maximum length"

    def test_missing_prompt(self, client):
        response = client.post("/api/dashboard/plan", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request format"

    def test_invalid_body(self, client):
        response = client.post("/api/dashboard/plan", content=b"not json",
                               headers={"Content-Type": "application/json"})

        assert response.status_code == 400

    def test_invalid_config_override(self, client):
        response = client.post("/api/dashboard/plan", json={"prompt": "listar cursos", "config": {"max_concurrent": 0}})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid executor configuration"


class TestStreamEndpoint:
    """Test the /api/dashboard/stream endpoint."""

    def test_stream_ndjson(self, client):
        response = client.post("/api/dashboard/stream", json={"prompt": "dashboard de cursos em São Paulo"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert response.headers["cache-control"] == "no-cache"

        events = _lines(response)
        assert events[0]["type"] == "progress"
        assert events[0]["data"]["planId"].startswith("plan-")
        assert {e["queryId"] for e in events if e["type"] == "chunk"} == {"sq_courses", "sq_filter_location"}
        assert events[-1]["type"] == "complete"
        assert events[-1]["progress"] == 1.0

    def test_stream_validation_error(self, client):
        response = client.post("/api/dashboard/stream", json={"prompt": ""})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_stream_forwards_request_fields(self):
        mock_service = Mock()
        mock_service.stream_dashboard.return_value = _empty_stream()

        with patch.object(api, "dashboard_service", mock_service):
            TestClient(api.app).post("/api/dashboard/stream", json={
                "prompt": "perfil da empresa",
                "session_id": "s-1",
                "params": {"cnpj": "1"},
                "auth_profile": "acme",
                "config": {"batch_size": 10},
            })

        mock_service.stream_dashboard.assert_called_once_with(
            "perfil da empresa",
            session_id="s-1",
            user_supplied_params={"cnpj": "1"},
            auth_profile_hint="acme",
            config_overrides={"batch_size": 10},
        )


async def _empty_stream():
    for _ in ():
        yield


class TestResumeEndpoint:
    """Test the /api/dashboard/sessions/{session_id}/resume endpoint."""

    def test_resume_flow(self, client):
        first = _lines(client.post("/api/dashboard/stream", json={
            "prompt": "mostrar perfil da empresa",
            "session_id": "s-42",
        }))
        clarification = next(e for e in first if "clarification" in (e.get("data") or {}))
        assert clarification["data"]["clarification"]["missingParams"] == ["cnpj", "company_id", "company_name"]
        assert first[-1]["type"] == "complete"

        second = client.post("/api/dashboard/sessions/s-42/resume", json={"params": {"company_id": "c-9"}})

        events = _lines(second)
        assert second.status_code == 200
        assert events[-1]["type"] == "complete"
        assert events[-1]["data"]["succeeded"] == 1

    def test_resume_unknown_session(self, client):
        response = client.post("/api/dashboard/sessions/nope/resume", json={"params": {}})

        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "No pending clarification for session 'nope'"}
