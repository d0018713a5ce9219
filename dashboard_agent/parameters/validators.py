"""
Parameter schema validation for data-source calls.

A data source declares a ``param_schema`` mapping parameter names to
``ParamSpec``. Before dispatch the execution controller validates the merged
sub-query parameters against it and decides between asking the user
(``user_resolvable`` specs) and failing the sub-query.
"""
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from dashboard_agent.errors import ParamValidationError

logger = logging.getLogger("param_validators")

RESERVED_PREFIX = "_"

# Reserved params set by the execution controller; never validated or sent upstream
UPSTREAM_PARAM = "_upstream"
AUTH_PROFILE_PARAM = "_auth_profile"
AUTH_HEADERS_PARAM = "_auth_headers"


class ParamType(str, Enum):
    NUMBER = "number"
    INTEGER = "integer"
    STRING = "string"
    BOOLEAN = "boolean"
    DATE = "date"
    DATERANGE = "daterange"
    ENUM = "enum"


class ParamSpec(BaseModel):
    type: ParamType
    required: bool = False
    options: List[Any] = Field(default_factory=list, description="Allowed values for enum params")
    description: str = ""
    user_resolvable: bool = Field(default=True, description="Whether the user can supply this value")


class ValidationReport(BaseModel):
    missing: List[str] = Field(default_factory=list)
    invalid: Dict[str, str] = Field(default_factory=dict)
    user_resolvable: bool = True

    @property
    def ok(self) -> bool:
        return not self.missing and not self.invalid

    def question(self) -> str:
        parts = []
        if self.missing:
            parts.append(f"Please provide: {', '.join(self.missing)}")
        if self.invalid:
            parts.append("Please correct: " + "; ".join(f"{k} ({v})" for k, v in self.invalid.items()))
        return ". ".join(parts) + "."

    def to_error(self) -> ParamValidationError:
        return ParamValidationError(
            self.question(),
            missing=list(self.missing),
            invalid=dict(self.invalid),
            user_resolvable=self.user_resolvable
        )


def parse_date(value: Any) -> Optional[date]:
    """Accept date/datetime objects and ISO-8601 strings; None if unparseable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def _range_bounds(value: Any):
    if isinstance(value, Mapping):
        return value.get("start"), value.get("end")
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value[0], value[1]
    return None, None


def validate_value(value: Any, spec: ParamSpec) -> Optional[str]:
    """
    Check a single value against its spec.

    Returns:
        None when valid, otherwise a short reason
    """
    if spec.type == ParamType.NUMBER:
        if isinstance(value, bool):
            return "expected a number"
        if isinstance(value, (int, float)):
            return None
        if isinstance(value, str):
            try:
                float(value)
                return None
            except ValueError:
                pass
        return "expected a number"

    if spec.type == ParamType.INTEGER:
        if isinstance(value, bool):
            return "expected an integer"
        if isinstance(value, int):
            return None
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return None
        return "expected an integer"

    if spec.type == ParamType.STRING:
        return None if isinstance(value, str) else "expected a string"

    if spec.type == ParamType.BOOLEAN:
        if isinstance(value, bool):
            return None
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return None
        return "expected true or false"

    if spec.type == ParamType.DATE:
        return None if parse_date(value) is not None else "expected an ISO date (YYYY-MM-DD)"

    if spec.type == ParamType.DATERANGE:
        raw_start, raw_end = _range_bounds(value)
        start, end = parse_date(raw_start), parse_date(raw_end)
        if start is None or end is None:
            return "expected a date range with start and end"
        if start > end:
            return "start must not be after end"
        return None

    if spec.type == ParamType.ENUM:
        if value in spec.options:
            return None
        return f"expected one of {', '.join(str(option) for option in spec.options)}"

    return f"unsupported type '{spec.type}'"


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_params(params: Mapping[str, Any], schema: Mapping[str, ParamSpec]) -> ValidationReport:
    """
    Validate ``params`` against ``schema``.

    Reserved ``_``-prefixed keys are never validated. Unknown keys are
    passed through untouched.
    """
    missing: List[str] = []
    invalid: Dict[str, str] = {}
    user_resolvable = True

    for name, spec in schema.items():
        if name.startswith(RESERVED_PREFIX):
            continue
        value = params.get(name)
        if _is_blank(value):
            if spec.required:
                missing.append(name)
                user_resolvable = user_resolvable and spec.user_resolvable
            continue
        reason = validate_value(value, spec)
        if reason:
            invalid[name] = reason
            user_resolvable = user_resolvable and spec.user_resolvable

    if missing or invalid:
        logger.debug(f"Parameter validation failed: missing={missing}, invalid={list(invalid)}")

    return ValidationReport(missing=missing, invalid=invalid, user_resolvable=user_resolvable)
