"""
Error taxonomy for planning and execution.

Sub-query level errors never escape the execution controller: they are
classified into an ``ErrorKind`` and folded into a terminal
``ExecutionResult``. Only ``StructuralError`` aborts a whole plan.
"""
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH_REQUIRED = "auth_required"
    TRANSIENT = "transient"
    STRUCTURAL = "structural"
    TIMEOUT = "timeout"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"


class DashboardAgentError(Exception):
    """Base class for every error raised by the dashboard agent."""

    kind: ErrorKind = ErrorKind.STRUCTURAL

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ParamValidationError(DashboardAgentError):
    """Malformed or missing parameters; surfaced immediately, never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        missing: Optional[List[str]] = None,
        invalid: Optional[dict] = None,
        user_resolvable: bool = True
    ):
        super().__init__(message, {"missing": missing or [], "invalid": invalid or {}})
        self.missing = missing or []
        self.invalid = invalid or {}
        self.user_resolvable = user_resolvable


class AuthRequiredError(DashboardAgentError):
    """Identifying credentials or context are missing; becomes a clarification request."""

    kind = ErrorKind.AUTH_REQUIRED

    def __init__(self, message: str, missing: Optional[List[str]] = None, question: Optional[str] = None):
        super().__init__(message, {"missing": missing or []})
        self.missing = missing or []
        self.question = question


class TransientToolError(DashboardAgentError):
    """Network, timeout or server-side failure; retried per policy."""

    kind = ErrorKind.TRANSIENT


class StructuralError(DashboardAgentError):
    """Plan cannot run at all (cyclic dependencies, unknown data source...)."""

    kind = ErrorKind.STRUCTURAL


class DataSourceNotFoundError(StructuralError):

    def __init__(self, data_source: str):
        super().__init__(f"Unknown data source '{data_source}'", {"data_source": data_source})
        self.data_source = data_source


class ToolInvocationError(DashboardAgentError):
    """
    Raised by Tool Executors: ``{kind, message, http_status?}``.

    ``kind`` is the executor's own label (``network``, ``timeout``, ``http``,
    ``auth``, ``validation``, ``tool_error``...); the controller classifies it
    with ``classify()``.
    """

    TRANSIENT_KINDS = frozenset({"network", "timeout", "transient", "unavailable"})
    AUTH_KINDS = frozenset({"auth", "unauthorized", "forbidden"})
    TRANSIENT_STATUSES = frozenset({408, 425, 429})

    def __init__(self, kind: str, message: str, http_status: Optional[int] = None):
        super().__init__(message, {"kind": kind, "http_status": http_status})
        self.tool_kind = kind
        self.http_status = http_status

    def classify(self) -> ErrorKind:
        if self.http_status is not None:
            if self.http_status >= 500 or self.http_status in self.TRANSIENT_STATUSES:
                return ErrorKind.TRANSIENT
            if self.http_status in (401, 403):
                return ErrorKind.AUTH_REQUIRED
            if 400 <= self.http_status < 500:
                return ErrorKind.VALIDATION
        if self.tool_kind in self.TRANSIENT_KINDS:
            return ErrorKind.TRANSIENT
        if self.tool_kind in self.AUTH_KINDS:
            return ErrorKind.AUTH_REQUIRED
        return ErrorKind.VALIDATION
