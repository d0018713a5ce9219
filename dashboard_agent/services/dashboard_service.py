"""
Dashboard Service: plan -> execute -> stream.

Glues the query planner, the execution controller and the clarification
store together for the HTTP layer. A turn that ends with sub-queries
awaiting user input is stored per session; ``resume`` re-runs only those
sub-queries with the newly supplied parameters.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from dashboard_agent.auth.auth_context import AuthProfileStore, load_auth_store
from dashboard_agent.orchestration.execution_controller import StrategicExecutionController
from dashboard_agent.orchestration.models import (
    ComplexQuery,
    ExecutionContext,
    ExecutionResult,
    ExecutorConfig,
    StreamEvent,
)
from dashboard_agent.orchestration.query_planner import plan as build_plan
from dashboard_agent.services.clarification_store import ClarificationStore
from dashboard_agent.services.data_source_registry import DataSourceRegistry, load_registry
from dashboard_agent.services.tool_executor import RoutingToolExecutor

logger = logging.getLogger("dashboard_service")


class DashboardService:

    def __init__(
        self,
        registry: Optional[DataSourceRegistry] = None,
        tool_executor=None,
        auth_store: Optional[AuthProfileStore] = None,
        clarifications: Optional[ClarificationStore] = None,
        config: Optional[ExecutorConfig] = None
    ):
        self.registry = registry or load_registry()
        self.tool_executor = tool_executor or RoutingToolExecutor(self.registry)
        self.auth_store = auth_store if auth_store is not None else load_auth_store()
        self.clarifications = clarifications or ClarificationStore()
        self.config = config or ExecutorConfig()
        self.controller = StrategicExecutionController(
            self.registry,
            self.tool_executor,
            auth_store=self.auth_store,
            config=self.config
        )

    def plan(self, intent: str, config_overrides: Optional[Dict[str, Any]] = None) -> ComplexQuery:
        return build_plan(intent, executor_config=self.config.merged(config_overrides))

    def stream_dashboard(
        self,
        intent: str,
        session_id: Optional[str] = None,
        user_supplied_params: Optional[Dict[str, Any]] = None,
        auth_profile_hint: Optional[str] = None,
        config_overrides: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[StreamEvent]:
        """Plan ``intent`` and stream its execution."""
        run_config = self.config.merged(config_overrides)
        complex_query = build_plan(intent, executor_config=run_config)
        context = ExecutionContext(
            auth_profile_hint=auth_profile_hint,
            user_supplied_params=dict(user_supplied_params or {}),
            cancel_event=cancel_event or asyncio.Event(),
            session_id=session_id,
        )
        return self._run(complex_query, context, run_config, prior_results=None)

    def has_pending(self, session_id: str) -> bool:
        return self.clarifications.get(session_id) is not None

    def resume(
        self,
        session_id: str,
        user_supplied_params: Optional[Dict[str, Any]] = None,
        auth_profile_hint: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Optional[AsyncIterator[StreamEvent]]:
        """
        Resume the blocked sub-queries of a session.

        Returns:
            Event stream, or None when nothing is pending for the session
        """
        pending = self.clarifications.get(session_id)
        if pending is None:
            logger.info(f"No pending clarification for session {session_id}")
            return None

        params = {**pending.user_supplied_params, **(user_supplied_params or {})}
        context = ExecutionContext(
            auth_profile_hint=auth_profile_hint or pending.auth_profile_hint,
            user_supplied_params=params,
            cancel_event=cancel_event or asyncio.Event(),
            session_id=session_id,
        )
        logger.info(f"🔄 Resuming session {session_id}: {pending.blocked_query_ids}")
        run_config = pending.executor_config or self.config
        return self._run(pending.plan, context, run_config, prior_results=pending.carried_results())

    async def _run(
        self,
        complex_query: ComplexQuery,
        context: ExecutionContext,
        config: ExecutorConfig,
        prior_results: Optional[Dict[str, ExecutionResult]]
    ) -> AsyncIterator[StreamEvent]:
        produced: Dict[str, ExecutionResult] = {}
        async for event in self.controller.execute(
            complex_query,
            context,
            config=config,
            prior_results=prior_results,
            result_sink=produced
        ):
            yield event

        if context.session_id and not context.cancelled:
            self.clarifications.save(
                context.session_id,
                complex_query,
                {**(prior_results or {}), **produced},
                user_supplied_params=context.user_supplied_params,
                auth_profile_hint=context.auth_profile_hint,
                executor_config=config,
            )
