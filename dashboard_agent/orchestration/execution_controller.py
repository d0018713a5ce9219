"""
Strategic Execution Controller

Walks a ComplexQuery and drives every sub-query to a terminal
ExecutionResult, streaming events through a StreamingCoordinator.

Per sub-query:

    pending -> auth_resolved -> running -> succeeded
                                        -> awaiting_user_input
                                        -> failed

Scheduling is a cooperative asyncio loop over the dependency DAG: one task
per running sub-query, at most ``max_concurrent`` at a time (1 for
sequential plans), a sub-query starts only once all its dependencies
succeeded. Dependents of a failed sub-query fail with ``dependency_failed``;
dependents of a sub-query awaiting input are blocked by the same question.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from dashboard_agent import config as app_config
from dashboard_agent.auth import auth_context
from dashboard_agent.errors import DashboardAgentError, ErrorKind, StructuralError, ToolInvocationError
from dashboard_agent.orchestration.models import (
    ComplexQuery,
    ErrorInfo,
    ExecutionContext,
    ExecutionResult,
    ExecutorConfig,
    Priority,
    StreamEvent,
    StreamingStrategy,
    SubQuery,
    SubQueryStatus,
)
from dashboard_agent.orchestration.query_planner import validate_plan
from dashboard_agent.orchestration.streaming_coordinator import StreamingCoordinator
from dashboard_agent.parameters.validators import (
    AUTH_HEADERS_PARAM,
    AUTH_PROFILE_PARAM,
    UPSTREAM_PARAM,
    validate_params,
)
from dashboard_agent.security.pii_redactor import PIIRedactionFilter
from dashboard_agent.services.data_source_registry import DataSourceDescriptor, DataSourceRegistry

logger = logging.getLogger("execution_controller")

# Add PII redaction filter to this logger
logger.addFilter(PIIRedactionFilter())

_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class StrategicExecutionController:
    """
    Executes plans against a data-source registry and a tool executor.

    Args:
        registry: Resolves data-source names (read-only during execution)
        tool_executor: Object with ``async invoke(data_source, params)``
        auth_store: Optional auth-profile store used for scoped sources
        config: Default ExecutorConfig (process-wide defaults otherwise)
    """

    def __init__(
        self,
        registry: DataSourceRegistry,
        tool_executor,
        auth_store=None,
        config: Optional[ExecutorConfig] = None
    ):
        self.registry = registry
        self.tool_executor = tool_executor
        self.auth_store = auth_store
        self.config = config or ExecutorConfig()

    def _effective_config(self, config: Union[ExecutorConfig, Dict[str, Any], None]) -> ExecutorConfig:
        if config is None:
            return self.config
        if isinstance(config, ExecutorConfig):
            return config
        return self.config.merged(config)

    @staticmethod
    def plan_timeout_ms(plan: ComplexQuery, config: ExecutorConfig) -> int:
        if config.plan_timeout_ms:
            return config.plan_timeout_ms
        return int(plan.estimated_time_ms * app_config.PLAN_TIMEOUT_MULTIPLIER + config.timeout_ms)

    # ========================================================================
    # PLAN LOOP
    # ========================================================================

    async def execute(
        self,
        plan: ComplexQuery,
        context: Optional[ExecutionContext] = None,
        config: Union[ExecutorConfig, Dict[str, Any], None] = None,
        prior_results: Optional[Dict[str, ExecutionResult]] = None,
        result_sink: Optional[Dict[str, ExecutionResult]] = None
    ) -> AsyncIterator[StreamEvent]:
        """
        Execute ``plan`` and yield StreamEvents, ending with exactly one
        terminal event (complete or top-level error).

        ``prior_results`` holds terminal results from an earlier turn; those
        sub-queries are not dispatched again. When given, ``result_sink``
        receives every terminal result produced by this run.
        """
        context = context or ExecutionContext()
        run_config = self._effective_config(config)
        loop = asyncio.get_running_loop()

        prior = {
            query_id: result
            for query_id, result in (prior_results or {}).items()
            if query_id in plan.sub_query_ids and result.status.is_terminal
        }
        coordinator = StreamingCoordinator(plan, run_config, prior)

        logger.info("=" * 60)
        logger.info(f"EXECUTING PLAN {plan.plan_id}")
        logger.info("=" * 60)
        logger.info(f"Strategy: {plan.streaming_strategy.value}, sub-queries: {plan.sub_query_ids}")
        if prior:
            logger.info(f"Resuming with prior results for: {list(prior)}")

        try:
            validate_plan(plan)
            descriptors = self._resolve_descriptors(plan, prior)
        except StructuralError as e:
            logger.error(f"❌ Plan {plan.plan_id} rejected: {e.message}")
            for event in coordinator.abort(ErrorInfo(kind=ErrorKind.STRUCTURAL, message=e.message)):
                yield event
            return

        results: Dict[str, ExecutionResult] = dict(prior)
        states: Dict[str, SubQueryStatus] = {
            sq.id: results[sq.id].status if sq.id in results else SubQueryStatus.PENDING
            for sq in plan.sub_queries
        }
        running: Dict[str, asyncio.Task] = {}
        max_running = 1 if plan.streaming_strategy == StreamingStrategy.SEQUENTIAL else run_config.max_concurrent
        deadline = loop.time() + self.plan_timeout_ms(plan, run_config) / 1000
        cancel_waiter = asyncio.ensure_future(context.cancel_event.wait())

        def store(result: ExecutionResult) -> None:
            results[result.query_id] = result
            states[result.query_id] = result.status
            if result_sink is not None:
                result_sink[result.query_id] = result

        def record(result: ExecutionResult) -> List[StreamEvent]:
            store(result)
            logger.info(
                f"{'✅' if result.success else '⚠️'} {result.query_id}: {result.status.value} "
                f"({result.execution_time_ms}ms, retries={result.retries})"
            )
            events = coordinator.on_result(result)
            for blocked in self._propagate(plan, results, states):
                store(blocked)
                events.extend(coordinator.on_result(blocked))
            return events

        try:
            for event in coordinator.start():
                yield event

            for blocked in self._propagate(plan, results, states):
                store(blocked)
                for event in coordinator.on_result(blocked):
                    yield event

            while True:
                if context.cancelled:
                    raise asyncio.CancelledError()

                for sub_query in self._ready(plan, states, running)[:max(max_running - len(running), 0)]:
                    running[sub_query.id] = asyncio.create_task(
                        self._run_sub_query(sub_query, descriptors[sub_query.id], context, run_config, results, states),
                        name=f"{plan.plan_id}:{sub_query.id}"
                    )
                    logger.info(f"▶️  Dispatched {sub_query.id} ({len(running)}/{max_running} running)")

                if not running:
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()

                done, _ = await asyncio.wait(
                    set(running.values()) | {cancel_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_waiter in done:
                    raise asyncio.CancelledError()
                if not done:
                    raise asyncio.TimeoutError()

                for query_id in [qid for qid in plan.sub_query_ids if qid in running and running[qid] in done]:
                    result = running.pop(query_id).result()
                    for event in record(result):
                        yield event

            # Anything still pending could never be scheduled
            for sub_query in plan.sub_queries:
                if states[sub_query.id] == SubQueryStatus.PENDING:
                    for event in record(self._failure(
                        sub_query.id, ErrorKind.DEPENDENCY_FAILED, "Dependencies never completed"
                    )):
                        yield event

            for event in coordinator.finish():
                yield event

        except asyncio.TimeoutError:
            logger.error(f"⏱️ Plan {plan.plan_id} exceeded its deadline")
            self._cancel_all(running)
            for sub_query in plan.sub_queries:
                if not states[sub_query.id].is_terminal:
                    for event in record(self._failure(sub_query.id, ErrorKind.TIMEOUT, "Plan deadline exceeded")):
                        yield event
            for event in coordinator.finish():
                yield event

        except asyncio.CancelledError:
            self._cancel_all(running)
            if not context.cancelled:
                # Task cancelled from outside
                raise
            logger.warning(f"🛑 Plan {plan.plan_id} cancelled")
            for event in coordinator.cancelled():
                yield event

        finally:
            self._cancel_all(running)
            cancel_waiter.cancel()

    def _resolve_descriptors(
        self,
        plan: ComplexQuery,
        prior: Dict[str, ExecutionResult]
    ) -> Dict[str, DataSourceDescriptor]:
        descriptors = {}
        for sub_query in plan.sub_queries:
            if sub_query.id in prior:
                continue
            descriptors[sub_query.id] = self.registry.resolve(sub_query.data_source)
        return descriptors

    @staticmethod
    def _ready(
        plan: ComplexQuery,
        states: Dict[str, SubQueryStatus],
        running: Dict[str, asyncio.Task]
    ) -> List[SubQuery]:
        ready = [
            sq for sq in plan.sub_queries
            if states[sq.id] == SubQueryStatus.PENDING and sq.id not in running
            and all(states.get(dep) == SubQueryStatus.SUCCEEDED for dep in sq.depends_on)
        ]
        if plan.streaming_strategy == StreamingStrategy.SEQUENTIAL:
            return ready
        return sorted(ready, key=lambda sq: _PRIORITY_RANK.get(sq.priority, 1))

    def _propagate(
        self,
        plan: ComplexQuery,
        results: Dict[str, ExecutionResult],
        states: Dict[str, SubQueryStatus]
    ) -> List[ExecutionResult]:
        """Terminal results for pending sub-queries blocked by a non-successful dependency."""
        blocked: List[ExecutionResult] = []
        current = dict(results)
        changed = True
        while changed:
            changed = False
            for sub_query in plan.sub_queries:
                if sub_query.id in current or states[sub_query.id] != SubQueryStatus.PENDING:
                    continue
                deps = [current[dep] for dep in sub_query.depends_on if dep in current]
                failed = next((r for r in deps if r.status == SubQueryStatus.FAILED), None)
                waiting = next((r for r in deps if r.status == SubQueryStatus.AWAITING_USER_INPUT), None)
                if failed is not None:
                    result = self._failure(
                        sub_query.id,
                        ErrorKind.DEPENDENCY_FAILED,
                        f"Dependency '{failed.query_id}' failed"
                    )
                elif waiting is not None:
                    source = waiting.error
                    result = ExecutionResult(
                        query_id=sub_query.id,
                        status=SubQueryStatus.AWAITING_USER_INPUT,
                        success=False,
                        error=ErrorInfo(
                            kind=source.kind if source else ErrorKind.VALIDATION,
                            message=f"Blocked by '{waiting.query_id}' awaiting user input",
                            missing_params=list(source.missing_params) if source else [],
                            question=source.question if source else None,
                        ),
                    )
                else:
                    continue
                current[sub_query.id] = result
                blocked.append(result)
                changed = True
        return blocked

    @staticmethod
    def _cancel_all(running: Dict[str, asyncio.Task]) -> None:
        for task in running.values():
            if not task.done():
                task.cancel()
        running.clear()

    # ========================================================================
    # SUB-QUERY
    # ========================================================================

    @staticmethod
    def _failure(query_id: str, kind: ErrorKind, message: str, retries: int = 0,
                 elapsed_ms: int = 0, http_status: Optional[int] = None) -> ExecutionResult:
        return ExecutionResult(
            query_id=query_id,
            status=SubQueryStatus.FAILED,
            success=False,
            error=ErrorInfo(kind=kind, message=message, http_status=http_status),
            execution_time_ms=elapsed_ms,
            retries=retries,
        )

    @staticmethod
    def _awaiting(query_id: str, kind: ErrorKind, message: str, question: Optional[str],
                  missing: Optional[List[str]] = None, retries: int = 0, elapsed_ms: int = 0,
                  http_status: Optional[int] = None) -> ExecutionResult:
        return ExecutionResult(
            query_id=query_id,
            status=SubQueryStatus.AWAITING_USER_INPUT,
            success=False,
            error=ErrorInfo(
                kind=kind,
                message=message,
                missing_params=missing or [],
                question=question,
                http_status=http_status,
            ),
            execution_time_ms=elapsed_ms,
            retries=retries,
        )

    def build_params(
        self,
        sub_query: SubQuery,
        descriptor: DataSourceDescriptor,
        context: ExecutionContext,
        resolution,
        results: Dict[str, ExecutionResult]
    ) -> Dict[str, Any]:
        """
        Parameters sent to the tool: sub-query filters, user-supplied values
        the data source declares, resolved identifiers and reserved
        ``_upstream`` / ``_auth_profile`` / ``_auth_headers`` entries.
        """
        params = dict(sub_query.filters)
        accepted = set(descriptor.param_schema) | set(descriptor.identifying_params)
        for key, value in context.user_supplied_params.items():
            if key in accepted:
                params[key] = value
        for key, value in resolution.identifiers.items():
            params.setdefault(key, value)

        if resolution.profile is not None:
            params[AUTH_PROFILE_PARAM] = resolution.profile.profile_id
            if resolution.profile.headers:
                params[AUTH_HEADERS_PARAM] = dict(resolution.profile.headers)
        if sub_query.depends_on:
            params[UPSTREAM_PARAM] = {dep: results[dep].data for dep in sub_query.depends_on if dep in results}
        return params

    async def _run_sub_query(
        self,
        sub_query: SubQuery,
        descriptor: DataSourceDescriptor,
        context: ExecutionContext,
        config: ExecutorConfig,
        results: Dict[str, ExecutionResult],
        states: Dict[str, SubQueryStatus]
    ) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        started = loop.time()

        def elapsed_ms() -> int:
            return int((loop.time() - started) * 1000)

        resolution = auth_context.resolve_auth_context(sub_query, descriptor, context, self.auth_store)
        if not resolution.satisfied:
            logger.info(f"🔐 {sub_query.id} needs identifying context: {resolution.missing}")
            return self._awaiting(
                sub_query.id,
                ErrorKind.AUTH_REQUIRED,
                f"'{sub_query.data_source}' requires {resolution.required_scope} context",
                resolution.question,
                missing=resolution.missing,
                elapsed_ms=elapsed_ms(),
            )
        states[sub_query.id] = SubQueryStatus.AUTH_RESOLVED

        params = self.build_params(sub_query, descriptor, context, resolution, results)
        report = validate_params(params, descriptor.param_schema)
        if not report.ok:
            error = report.to_error()
            if report.user_resolvable:
                return self._awaiting(
                    sub_query.id,
                    ErrorKind.VALIDATION,
                    error.message,
                    error.message,
                    missing=list(report.missing) + list(report.invalid),
                    elapsed_ms=elapsed_ms(),
                )
            return self._failure(sub_query.id, ErrorKind.VALIDATION, error.message, elapsed_ms=elapsed_ms())

        states[sub_query.id] = SubQueryStatus.RUNNING
        return await self._invoke_with_retry(sub_query, params, config, started)

    async def _invoke_with_retry(
        self,
        sub_query: SubQuery,
        params: Dict[str, Any],
        config: ExecutorConfig,
        started: float
    ) -> ExecutionResult:
        """
        Invoke the tool, retrying transient failures with linear backoff
        (``retry_delay_ms * attempt``). The whole loop is bounded by
        ``timeout_ms``.
        """
        loop = asyncio.get_running_loop()
        deadline = started + config.timeout_ms / 1000
        retries = 0
        last_error: Optional[ErrorInfo] = None

        def elapsed_ms() -> int:
            return int((loop.time() - started) * 1000)

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return self._failure(
                    sub_query.id, ErrorKind.TIMEOUT,
                    f"Exceeded {config.timeout_ms}ms" + (f" (last error: {last_error.message})" if last_error else ""),
                    retries=retries, elapsed_ms=elapsed_ms()
                )

            try:
                data = await asyncio.wait_for(self.tool_executor.invoke(sub_query.data_source, params), timeout=remaining)
                return ExecutionResult(
                    query_id=sub_query.id,
                    status=SubQueryStatus.SUCCEEDED,
                    success=True,
                    data=data,
                    execution_time_ms=elapsed_ms(),
                    retries=retries,
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                if loop.time() >= deadline:
                    return self._failure(
                        sub_query.id, ErrorKind.TIMEOUT, f"Exceeded {config.timeout_ms}ms",
                        retries=retries, elapsed_ms=elapsed_ms()
                    )
                last_error = ErrorInfo(kind=ErrorKind.TRANSIENT, message="Tool call timed out")
            except ToolInvocationError as e:
                kind = e.classify()
                if kind == ErrorKind.AUTH_REQUIRED:
                    return self._awaiting(
                        sub_query.id, kind, e.message,
                        f"Access to {sub_query.data_source} was denied. Which account should I use?",
                        retries=retries, elapsed_ms=elapsed_ms(), http_status=e.http_status
                    )
                if kind != ErrorKind.TRANSIENT:
                    return self._failure(
                        sub_query.id, kind, e.message,
                        retries=retries, elapsed_ms=elapsed_ms(), http_status=e.http_status
                    )
                last_error = ErrorInfo(kind=kind, message=e.message, http_status=e.http_status)
            except DashboardAgentError as e:
                if e.kind == ErrorKind.AUTH_REQUIRED:
                    return self._awaiting(
                        sub_query.id, e.kind, e.message, getattr(e, "question", None) or e.message,
                        missing=getattr(e, "missing", []), retries=retries, elapsed_ms=elapsed_ms()
                    )
                if e.kind == ErrorKind.VALIDATION and getattr(e, "user_resolvable", False):
                    return self._awaiting(
                        sub_query.id, e.kind, e.message, e.message,
                        missing=getattr(e, "missing", []), retries=retries, elapsed_ms=elapsed_ms()
                    )
                if e.kind != ErrorKind.TRANSIENT:
                    return self._failure(sub_query.id, e.kind, e.message, retries=retries, elapsed_ms=elapsed_ms())
                last_error = ErrorInfo(kind=ErrorKind.TRANSIENT, message=e.message)
            except Exception as e:
                logger.error(f"Unexpected error in {sub_query.id}: {e}", exc_info=True)
                last_error = ErrorInfo(kind=ErrorKind.TRANSIENT, message=f"{type(e).__name__}: {e}")

            if retries >= config.retry_attempts:
                logger.warning(f"❌ {sub_query.id} exhausted {retries} retries")
                return self._failure(
                    sub_query.id, last_error.kind, last_error.message,
                    retries=retries, elapsed_ms=elapsed_ms(), http_status=last_error.http_status
                )

            retries += 1
            delay = config.retry_delay_ms * retries / 1000
            if loop.time() + delay >= deadline:
                return self._failure(
                    sub_query.id, ErrorKind.TIMEOUT,
                    f"Retry budget of {config.timeout_ms}ms exhausted (last error: {last_error.message})",
                    retries=retries - 1, elapsed_ms=elapsed_ms()
                )
            logger.info(f"🔁 Retrying {sub_query.id} in {delay:.2f}s (attempt {retries}/{config.retry_attempts})")
            await asyncio.sleep(delay)
