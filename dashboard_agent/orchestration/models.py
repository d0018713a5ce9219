import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from dashboard_agent import config
from dashboard_agent.errors import ErrorKind


# ============================================================================
# ENUMS
# ============================================================================

class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StreamingStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SubQueryStatus(str, Enum):
    PENDING = "pending"
    AUTH_RESOLVED = "auth_resolved"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    AWAITING_USER_INPUT = "awaiting_user_input"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SubQueryStatus.SUCCEEDED,
            SubQueryStatus.AWAITING_USER_INPUT,
            SubQueryStatus.FAILED,
        )


class StreamEventType(str, Enum):
    HTML = "html"
    CHUNK = "chunk"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class WireModel(BaseModel):
    """Base for models that cross the stream boundary (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=False,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# PLAN STRUCTURE
# ============================================================================

class SubQuery(WireModel):
    """
    One decomposed, independently executable unit of data retrieval.

    ``depends_on`` holds ids of sub-queries in the same plan; the plan is an
    arena indexed by id, sub-queries never reference each other directly.
    """
    id: str = Field(..., min_length=1, description="Unique id within the plan (e.g. 'sq_courses')")
    description: str = Field(..., description="Human-readable description of the data being fetched")
    data_source: str = Field(..., min_length=1, description="Registry name of the data source")
    filters: Dict[str, Any] = Field(default_factory=dict, description="Parameters sent to the data source")
    expected_results: int = Field(default=0, ge=0, description="Expected number of records")
    priority: Priority = Field(default=Priority.MEDIUM)
    depends_on: List[str] = Field(default_factory=list, description="Ids that must succeed before this runs")


class ComplexQuery(WireModel):
    """
    Execution plan produced by the query planner.

    Frozen once built; the execution controller only reads it.
    """
    plan_id: str = Field(..., description="Deterministic plan identifier derived from the intent")
    original_intent: str
    complexity: Complexity
    sub_queries: List[SubQuery] = Field(..., min_length=1)
    streaming_strategy: StreamingStrategy
    estimated_time_ms: int = Field(..., gt=0)

    def get_sub_query(self, query_id: str) -> SubQuery:
        for sub_query in self.sub_queries:
            if sub_query.id == query_id:
                return sub_query
        raise KeyError(query_id)

    @property
    def sub_query_ids(self) -> List[str]:
        return [sq.id for sq in self.sub_queries]


# ============================================================================
# EXECUTION
# ============================================================================

class ExecutorConfig(WireModel):
    """Executor tuning; defaults come from ``dashboard_agent.config``."""
    max_concurrent: int = Field(default_factory=lambda: config.EXECUTOR_MAX_CONCURRENT, ge=1)
    batch_size: int = Field(default_factory=lambda: config.EXECUTOR_BATCH_SIZE, ge=1)
    retry_attempts: int = Field(default_factory=lambda: config.EXECUTOR_RETRY_ATTEMPTS, ge=0)
    retry_delay_ms: int = Field(default_factory=lambda: config.EXECUTOR_RETRY_DELAY_MS, ge=0)
    timeout_ms: int = Field(default_factory=lambda: config.EXECUTOR_TIMEOUT_MS, gt=0)
    plan_timeout_ms: Optional[int] = Field(default=None, gt=0, description="Overrides the derived plan deadline")

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "ExecutorConfig":
        """Per-plan override; accepts snake_case or camelCase keys."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        return ExecutorConfig.model_validate(data)


class ErrorInfo(WireModel):
    kind: ErrorKind
    message: str
    http_status: Optional[int] = None
    missing_params: List[str] = Field(default_factory=list)
    question: Optional[str] = Field(default=None, description="Clarification asked to the user")


class ExecutionResult(WireModel):
    """Terminal outcome of one sub-query. Immutable once emitted."""
    query_id: str
    status: SubQueryStatus
    success: bool
    data: Any = None
    error: Optional[ErrorInfo] = None
    execution_time_ms: int = Field(default=0, ge=0)
    retries: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_terminal(self) -> "ExecutionResult":
        if not self.status.is_terminal:
            raise ValueError(f"ExecutionResult status must be terminal, got '{self.status.value}'")
        if self.success != (self.status == SubQueryStatus.SUCCEEDED):
            raise ValueError("success must be True exactly when status is 'succeeded'")
        return self

    @property
    def needs_user_input(self) -> bool:
        return self.status == SubQueryStatus.AWAITING_USER_INPUT


class ChunkMetadata(WireModel):
    title: str
    estimated_render_time_ms: int = Field(..., ge=0)
    record_count: int = Field(..., ge=0)
    source: Optional[str] = None


class DataChunk(WireModel):
    chunk_id: str
    chunk_index: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=1)
    data: List[Any]
    metadata: ChunkMetadata

    @model_validator(mode="after")
    def _check_index(self) -> "DataChunk":
        if self.chunk_index >= self.total_chunks:
            raise ValueError(f"chunk_index {self.chunk_index} must be < total_chunks {self.total_chunks}")
        return self


class StreamEvent(WireModel):
    """Wire-level unit emitted to the caller, totally ordered per connection."""
    type: StreamEventType
    data: Any = None
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    message: Optional[str] = None
    query_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.COMPLETE, StreamEventType.ERROR) and self.query_id is None

    def to_ndjson(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False, default=str) + "\n"


@dataclass
class ExecutionContext:
    """
    Per-execution inputs that are not part of the plan.

    ``user_supplied_params`` is a flat map merged into every sub-query whose
    data source declares (or requires) the key.
    """
    auth_profile_hint: Optional[str] = None
    user_supplied_params: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    session_id: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
