"""
Tool Executors.

A Tool Executor performs the actual call behind a sub-query:

    await executor.invoke(data_source, params) -> data

and raises ``ToolInvocationError(kind, message, http_status)`` on failure so
the execution controller can classify it (transient / auth / validation).

Adapters:
- HttpToolExecutor: REST data sources over httpx
- LangChainToolExecutor: MCP/SQL tools exposed as LangChain ``BaseTool``s
- LocalTransformExecutor: ``filter``/``aggregate`` over upstream results
- RoutingToolExecutor: dispatches on the registry descriptor's ``kind``
"""
import json
import logging
import unicodedata
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx
from langchain_core.tools import BaseTool, ToolException
from pydantic import ValidationError

from dashboard_agent import config
from dashboard_agent.errors import DataSourceNotFoundError, ToolInvocationError
from dashboard_agent.orchestration.streaming_coordinator import extract_records
from dashboard_agent.parameters.validators import AUTH_HEADERS_PARAM, RESERVED_PREFIX, UPSTREAM_PARAM
from dashboard_agent.security.pii_redactor import PIIRedactionFilter
from dashboard_agent.services.data_source_registry import DataSourceDescriptor, DataSourceKind, DataSourceRegistry

logger = logging.getLogger("tool_executor")

# Add PII redaction filter to this logger
logger.addFilter(PIIRedactionFilter())


class ToolExecutor(Protocol):

    async def invoke(self, data_source: str, params: Dict[str, Any]) -> Any:
        ...


def public_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Drop reserved ``_``-prefixed params before they leave the process."""
    return {key: value for key, value in params.items() if not key.startswith(RESERVED_PREFIX)}


# ============================================================================
# HTTP
# ============================================================================

class HttpToolExecutor:
    """
    Calls REST data sources relative to ``base_url``.

    The request path and method come from the registry descriptor's
    ``connection_info`` when a registry is given; otherwise the data-source
    name itself is used as a GET path. Headers of the resolved auth profile
    travel in the reserved ``_auth_headers`` param.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        registry: Optional[DataSourceRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        default_headers: Optional[Dict[str, str]] = None
    ):
        self.base_url = (base_url or config.TOOL_API_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or config.TOOL_HTTP_TIMEOUT_SECONDS
        self.registry = registry
        self._client = client
        self.default_headers = default_headers or {"Content-Type": "application/json"}

    def _route(self, data_source: str):
        connection = {}
        if self.registry is not None:
            try:
                connection = self.registry.resolve(data_source).connection_info
            except DataSourceNotFoundError:
                connection = {}
        method = str(connection.get("method", "GET")).upper()
        path = connection.get("path", data_source)
        if not path.startswith("/"):
            path = "/" + path
        return method, f"{self.base_url}{path}"

    @staticmethod
    def _query_params(params: Dict[str, Any]) -> Dict[str, Any]:
        query = {}
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                query[key] = json.dumps(value, ensure_ascii=False, default=str)
            elif isinstance(value, bool):
                query[key] = "true" if value else "false"
            else:
                query[key] = value
        return query

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, params: Dict[str, Any], headers: Dict[str, str]):
        if method == "GET":
            return await client.get(url, params=self._query_params(params), headers=headers)
        return await client.request(method, url, json=params, headers=headers)

    async def invoke(self, data_source: str, params: Dict[str, Any]) -> Any:
        method, url = self._route(data_source)
        headers = {**self.default_headers, **(params.get(AUTH_HEADERS_PARAM) or {})}
        body = public_params(params)

        logger.info(f"🌐 {method} {url}")
        try:
            if self._client is not None:
                response = await self._send(self._client, method, url, body, headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await self._send(client, method, url, body, headers)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling {url}")
            raise ToolInvocationError("timeout", f"Timeout calling {data_source}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error calling {url}: {e}")
            raise ToolInvocationError("network", f"Unable to reach {data_source}: {e}") from e

        if response.status_code in (401, 403):
            raise ToolInvocationError(
                "auth",
                f"{data_source} rejected the credentials (HTTP {response.status_code})",
                http_status=response.status_code
            )
        if response.status_code >= 400:
            raise ToolInvocationError(
                "http",
                f"{data_source} returned HTTP {response.status_code}: {response.text[:200]}",
                http_status=response.status_code
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ToolInvocationError("invalid_response", f"{data_source} returned a non-JSON body") from e


# ============================================================================
# LANGCHAIN TOOLS (MCP / SQL)
# ============================================================================

class LangChainToolExecutor:
    """
    Invokes LangChain tools registered by name.

    The tool name is ``connection_info["tool"]`` when a registry is given,
    otherwise the data-source name.
    """

    def __init__(self, tools: Iterable[BaseTool], registry: Optional[DataSourceRegistry] = None):
        self.tools: Dict[str, BaseTool] = {t.name: t for t in tools}
        self.registry = registry

    def _tool_for(self, data_source: str) -> BaseTool:
        name = data_source
        if self.registry is not None:
            try:
                name = self.registry.resolve(data_source).connection_info.get("tool", data_source)
            except DataSourceNotFoundError:
                name = data_source
        tool = self.tools.get(name)
        if tool is None:
            raise ToolInvocationError("not_found", f"No tool registered for '{data_source}'")
        return tool

    async def invoke(self, data_source: str, params: Dict[str, Any]) -> Any:
        tool = self._tool_for(data_source)
        logger.info(f"🔧 Invoking tool '{tool.name}' for {data_source}")
        try:
            return await tool.ainvoke(public_params(params))
        except ToolException as e:
            raise ToolInvocationError("tool_error", str(e)) from e
        except ValidationError as e:
            raise ToolInvocationError("validation", f"Invalid arguments for '{tool.name}': {e}") from e
        except TimeoutError as e:
            raise ToolInvocationError("timeout", f"Tool '{tool.name}' timed out") from e
        except ConnectionError as e:
            raise ToolInvocationError("network", f"Tool '{tool.name}' connection failed: {e}") from e


# ============================================================================
# LOCAL TRANSFORMS
# ============================================================================

def _fold(value: Any) -> str:
    text = unicodedata.normalize("NFKD", str(value))
    return "".join(ch for ch in text if not unicodedata.combining(ch)).casefold().strip()


DATE_FIELDS = ("date", "created_at", "createdAt", "enrolled_at", "enrolledAt", "start_date", "startDate")


def _group_key(record: Dict[str, Any], group_by: str) -> str:
    if group_by == "month":
        if record.get("month"):
            return str(record["month"])
        for name in DATE_FIELDS:
            if record.get(name):
                return str(record[name])[:7]
        return "unknown"
    value = record.get(group_by)
    return str(value) if value not in (None, "") else "unknown"


class LocalTransformExecutor:
    """
    In-process ``filter`` and ``aggregate`` over the records of the
    sub-query's dependencies (``_upstream``).
    """

    @staticmethod
    def _upstream_records(params: Dict[str, Any]) -> List[Any]:
        upstream = params.get(UPSTREAM_PARAM)
        if not upstream:
            raise ToolInvocationError("validation", "Transform has no upstream data")
        records: List[Any] = []
        for data in upstream.values():
            records.extend(extract_records(data))
        return records

    @staticmethod
    def filter_records(records: List[Any], criteria: Dict[str, Any]) -> List[Any]:
        """
        Keep dict records that match every criterion they carry.

        Comparison is case and accent insensitive. A record that carries none
        of the criteria fields is dropped.
        """
        wanted = {key: _fold(value) for key, value in criteria.items() if value is not None}
        kept = []
        for record in records:
            if not isinstance(record, dict):
                continue
            present = [key for key in wanted if record.get(key) is not None]
            if present and all(_fold(record[key]) == wanted[key] for key in present):
                kept.append(record)
        return kept

    @staticmethod
    def aggregate_records(records: List[Any], group_by: str) -> List[Dict[str, Any]]:
        counts: "OrderedDict[str, int]" = OrderedDict()
        for record in records:
            if not isinstance(record, dict):
                continue
            key = _group_key(record, group_by)
            counts[key] = counts.get(key, 0) + 1
        return [{"key": key, "count": counts[key]} for key in sorted(counts)]

    async def invoke(self, data_source: str, params: Dict[str, Any], operation: Optional[str] = None) -> Any:
        operation = operation or data_source
        records = self._upstream_records(params)
        criteria = public_params(params)

        if operation == "filter":
            result = self.filter_records(records, criteria)
        elif operation == "aggregate":
            group_by = criteria.get("group_by")
            if not group_by:
                raise ToolInvocationError("validation", "aggregate requires 'group_by'")
            result = self.aggregate_records(records, str(group_by))
        else:
            raise ToolInvocationError("validation", f"Unknown transform '{operation}'")

        logger.info(f"🧮 {operation}: {len(records)} upstream records -> {len(result)}")
        return result


# ============================================================================
# ROUTER
# ============================================================================

class RoutingToolExecutor:
    """Dispatches each call to the adapter matching the descriptor's kind."""

    def __init__(
        self,
        registry: DataSourceRegistry,
        http: Optional[HttpToolExecutor] = None,
        tools: Optional[LangChainToolExecutor] = None,
        transforms: Optional[LocalTransformExecutor] = None
    ):
        self.registry = registry
        self.http = http or HttpToolExecutor(registry=registry)
        self.tools = tools
        self.transforms = transforms or LocalTransformExecutor()

    async def invoke(self, data_source: str, params: Dict[str, Any]) -> Any:
        descriptor: DataSourceDescriptor = self.registry.resolve(data_source)

        if descriptor.kind == DataSourceKind.TRANSFORM:
            operation = descriptor.connection_info.get("operation", data_source)
            return await self.transforms.invoke(data_source, params, operation=operation)
        if descriptor.kind == DataSourceKind.TOOL:
            if self.tools is None:
                raise ToolInvocationError("configuration", f"No tool executor configured for '{data_source}'")
            return await self.tools.invoke(data_source, params)
        return await self.http.invoke(data_source, params)
