"""
Orchestration Module

Planning and execution core that turns a natural-language request into a
stream of dashboard data.

Components:
- query_planner: classifies complexity, decomposes into sub-queries, picks a
  streaming strategy and estimates execution time
- execution_controller: drives each sub-query to a terminal result (auth
  context, parameter validation, retry/backoff, clarification requests)
- streaming_coordinator: orders results into progress/chunk/error/complete
  events

Architecture:
┌─────────────────────────────────────────────────────────────┐
│                     Intent (free text)                      │
└─────────────────────────────────────────────────────────────┘
                            │
                            ▼
┌─────────────────────────────────────────────────────────────┐
│                      query_planner                          │
│   normalize → classify → decompose → validate → strategy    │
└─────────────────────────────────────────────────────────────┘
                            │ ComplexQuery
                            ▼
┌─────────────────────────────────────────────────────────────┐
│                  execution_controller                       │
│      (DAG scheduler, ≤ maxConcurrent sub-queries)           │
└─────────────────────────────────────────────────────────────┘
          │                 │                   │
          ▼                 ▼                   ▼
   ┌────────────┐    ┌─────────────┐    ┌──────────────┐
   │auth context│    │ param check │    │ tool executor│
   └────────────┘    └─────────────┘    └──────────────┘
                            │ ExecutionResult
                            ▼
┌─────────────────────────────────────────────────────────────┐
│                  streaming_coordinator                      │
│            (StreamEvent sequence, one terminal)             │
└─────────────────────────────────────────────────────────────┘
"""

from dashboard_agent.orchestration.models import (
    ComplexQuery,
    Complexity,
    DataChunk,
    ErrorInfo,
    ExecutionContext,
    ExecutionResult,
    ExecutorConfig,
    Priority,
    StreamEvent,
    StreamEventType,
    StreamingStrategy,
    SubQuery,
    SubQueryStatus
)

from dashboard_agent.orchestration.patterns import (
    DEFAULT_CORPUS,
    KeywordCorpus,
    get_known_patterns
)

from dashboard_agent.orchestration.query_planner import (
    plan,
    describe_plan,
    validate_plan
)

from dashboard_agent.orchestration.streaming_coordinator import (
    StreamingCoordinator,
    chunk_records,
    deduplicate,
    merge_chunks
)

from dashboard_agent.orchestration.execution_controller import (
    StrategicExecutionController
)

__all__ = [
    # Data model
    "ComplexQuery",
    "Complexity",
    "DataChunk",
    "ErrorInfo",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutorConfig",
    "Priority",
    "StreamEvent",
    "StreamEventType",
    "StreamingStrategy",
    "SubQuery",
    "SubQueryStatus",

    # Planning
    "DEFAULT_CORPUS",
    "KeywordCorpus",
    "get_known_patterns",
    "plan",
    "describe_plan",
    "validate_plan",

    # Execution
    "StrategicExecutionController",
    "StreamingCoordinator",
    "chunk_records",
    "deduplicate",
    "merge_chunks",
]
