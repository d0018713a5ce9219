"""
Tests for the Dashboard Service (plan -> execute -> stream, multi-turn resume).
"""
import asyncio

import pytest

from dashboard_agent.auth import InMemoryAuthProfileStore
from dashboard_agent.orchestration.models import StreamEventType, SubQueryStatus
from dashboard_agent.services.clarification_store import ClarificationStore
from dashboard_agent.services.dashboard_service import DashboardService
from dashboard_agent.services.data_source_registry import InMemoryDataSourceRegistry


@pytest.fixture
def service_factory(fast_config, make_executor):
    def factory(responses=None, delays=None):
        executor = make_executor(responses, delays)
        service = DashboardService(
            registry=InMemoryDataSourceRegistry(),
            tool_executor=executor,
            auth_store=InMemoryAuthProfileStore(),
            clarifications=ClarificationStore(ttl_hours=1),
            config=fast_config,
        )
        return service, executor
    return factory


async def _collect(events):
    return [event async for event in events]


class TestPlan:

    def test_plan_uses_config_overrides(self, service_factory):
        service, _ = service_factory()
        intent = "dashboard de cursos com matrículas por categoria"

        narrow = service.plan(intent, {"max_concurrent": 1})
        wide = service.plan(intent)

        assert narrow.sub_query_ids == wide.sub_query_ids
        assert narrow.estimated_time_ms > wide.estimated_time_ms


class TestStreamDashboard:

    @pytest.mark.asyncio
    async def test_stream_completes(self, service_factory):
        service, executor = service_factory({"/api/courses": [{"id": 1, "state": "SP"}]})

        events = await _collect(service.stream_dashboard("dashboard de cursos em São Paulo", session_id="s-1"))

        assert events[-1].type == StreamEventType.COMPLETE
        assert len(executor.calls) == 2
        # Nothing awaits input, so nothing is kept for the session
        assert not service.has_pending("s-1")

    @pytest.mark.asyncio
    async def test_blocked_turn_is_resumable(self, service_factory):
        service, executor = service_factory({"/api/companies/profile": {"name": "ACME"}})

        first = await _collect(service.stream_dashboard("mostrar perfil da empresa", session_id="s-1"))

        assert first[-1].data["awaitingUserInput"] == 1
        assert service.has_pending("s-1")
        assert executor.calls == []

        second = await _collect(service.resume("s-1", {"cnpj": "12.345.678/0001-90"}))

        assert second[-1].type == StreamEventType.COMPLETE
        assert second[-1].data["succeeded"] == 1
        assert executor.called("/api/companies/profile")[0]["cnpj"] == "12.345.678/0001-90"
        assert not service.has_pending("s-1")

    @pytest.mark.asyncio
    async def test_resume_keeps_config_overrides(self, service_factory):
        profile = {"data": [{"name": "ACME"}, {"name": "ACME Sul"}, {"name": "ACME Norte"}]}
        service, _ = service_factory({"/api/companies/profile": profile})

        await _collect(service.stream_dashboard(
            "mostrar perfil da empresa", session_id="s-1", config_overrides={"batch_size": 1}
        ))

        assert service.clarifications.get("s-1").executor_config.batch_size == 1

        events = await _collect(service.resume("s-1", {"cnpj": "12.345.678/0001-90"}))

        chunks = [event for event in events if event.type == StreamEventType.CHUNK]
        assert len(chunks) == 3
        assert [chunk.data["totalChunks"] for chunk in chunks] == [3, 3, 3]

    @pytest.mark.asyncio
    async def test_resume_keeps_earlier_params(self, service_factory):
        service, executor = service_factory()
        intent = "mostrar perfil da empresa"

        await _collect(service.stream_dashboard(intent, session_id="s-1", user_supplied_params={"limit": 3}))
        pending = service.clarifications.get("s-1")
        await _collect(service.resume("s-1", {"company_name": "ACME"}))

        assert pending.user_supplied_params == {"limit": 3}
        assert executor.called("/api/companies/profile")[0]["company_name"] == "ACME"

    @pytest.mark.asyncio
    async def test_resume_still_blocked_stays_pending(self, service_factory):
        service, _ = service_factory()

        await _collect(service.stream_dashboard("mostrar perfil da empresa", session_id="s-1"))
        events = await _collect(service.resume("s-1", {"unrelated": "x"}))

        assert events[-1].data["results"]["sq_company_profile"] == SubQueryStatus.AWAITING_USER_INPUT.value
        assert service.has_pending("s-1")

    def test_resume_without_pending(self, service_factory):
        service, _ = service_factory()

        assert service.resume("unknown") is None

    @pytest.mark.asyncio
    async def test_no_session_means_nothing_stored(self, service_factory):
        service, _ = service_factory()

        await _collect(service.stream_dashboard("mostrar perfil da empresa"))

        assert len(service.clarifications) == 0

    @pytest.mark.asyncio
    async def test_cancelled_turn_is_not_stored(self, service_factory):
        service, _ = service_factory(delays={"/api/generic-search": 1.0})
        cancel_event = asyncio.Event()
        cancel_event.set()

        events = await _collect(service.stream_dashboard("qual o nome do curso?", session_id="s-1",
                                                         cancel_event=cancel_event))

        assert events[-1].data["error"]["kind"] == "cancelled"
        assert not service.has_pending("s-1")
