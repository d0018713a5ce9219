"""
Streaming Coordinator

Turns terminal ExecutionResults into the ordered StreamEvent sequence sent to
the caller:

- Sequential plans release results strictly in plan order (later results are
  buffered until their predecessors arrive).
- Parallel/Hybrid plans release results in completion order.
- Every release is followed by a progress event; progress never decreases.
- Exactly one terminal event (complete or top-level error) closes the stream.

The chunk helpers at the bottom split large result sets into DataChunks of
at most ``batch_size`` records.
"""
import logging
import math
from typing import Any, Dict, List, Optional

from dashboard_agent.errors import ErrorKind
from dashboard_agent.orchestration.models import (
    ChunkMetadata,
    ComplexQuery,
    DataChunk,
    ErrorInfo,
    ExecutionResult,
    ExecutorConfig,
    StreamEvent,
    StreamEventType,
    StreamingStrategy,
    SubQueryStatus,
)

logger = logging.getLogger("streaming_coordinator")

RECORD_KEYS = ("data", "items", "results", "records")


class StreamingCoordinator:
    """
    Per-stream event sequencer. One instance per execution; not reusable.

    ``prior_results`` are results carried over from an earlier turn (resume):
    they count as already released and are not streamed again.
    """

    def __init__(
        self,
        plan: ComplexQuery,
        config: Optional[ExecutorConfig] = None,
        prior_results: Optional[Dict[str, ExecutionResult]] = None
    ):
        self.plan = plan
        self.config = config or ExecutorConfig()
        self._order = plan.sub_query_ids
        self._results: Dict[str, ExecutionResult] = {}
        self._released: List[str] = []
        self._buffer: Dict[str, ExecutionResult] = {}
        self._progress = 0.0
        self._terminated = False

        for query_id, result in (prior_results or {}).items():
            if query_id in self._order:
                self._results[query_id] = result
                self._released.append(query_id)

    @property
    def total(self) -> int:
        return len(self._order)

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def results(self) -> Dict[str, ExecutionResult]:
        return dict(self._results)

    def _advance(self, value: float) -> float:
        self._progress = max(self._progress, min(value, 1.0))
        return self._progress

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> List[StreamEvent]:
        if self._terminated:
            return []
        progress = self._advance(len(self._released) / self.total)
        return [StreamEvent(
            type=StreamEventType.PROGRESS,
            progress=progress,
            message=f"Executing {self.total} sub-queries ({self.plan.streaming_strategy.value})",
            data={
                "planId": self.plan.plan_id,
                "complexity": self.plan.complexity.value,
                "streamingStrategy": self.plan.streaming_strategy.value,
                "estimatedTimeMs": self.plan.estimated_time_ms,
                "subQueries": [sq.id for sq in self.plan.sub_queries],
                "resumed": list(self._released),
            },
        )]

    def on_result(self, result: ExecutionResult) -> List[StreamEvent]:
        if self._terminated:
            return []
        if result.query_id not in self._order:
            logger.warning(f"Ignoring result for unknown sub-query '{result.query_id}'")
            return []
        if result.query_id in self._results:
            logger.warning(f"Duplicate result for sub-query '{result.query_id}' ignored")
            return []

        self._results[result.query_id] = result

        if self.plan.streaming_strategy != StreamingStrategy.SEQUENTIAL:
            return self._release(result)

        self._buffer[result.query_id] = result
        return self._drain_buffer()

    def _drain_buffer(self) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for query_id in self._order:
            if query_id in self._released:
                continue
            if query_id not in self._buffer:
                break
            events.extend(self._release(self._buffer.pop(query_id)))
        return events

    def finish(self) -> List[StreamEvent]:
        if self._terminated:
            return []

        events: List[StreamEvent] = []
        # Anything still buffered is flushed in plan order
        for query_id in self._order:
            if query_id in self._buffer:
                events.extend(self._release(self._buffer.pop(query_id)))

        summary = self._summary()
        all_terminal = all(query_id in self._results for query_id in self._order)
        self._terminated = True

        if not all_terminal:
            events.append(StreamEvent(
                type=StreamEventType.ERROR,
                message="Execution ended before all sub-queries finished",
                data=summary,
            ))
        elif self._sequential_halted(summary):
            events.append(StreamEvent(
                type=StreamEventType.ERROR,
                message=f"Sequential plan halted: first sub-query '{self._order[0]}' failed",
                data=summary,
            ))
        else:
            events.append(StreamEvent(
                type=StreamEventType.COMPLETE,
                progress=self._advance(1.0),
                message=(
                    f"{summary['succeeded']}/{self.total} sub-queries succeeded"
                    + (f", {summary['awaitingUserInput']} awaiting input" if summary["awaitingUserInput"] else "")
                    + (f", {summary['failed']} failed" if summary["failed"] else "")
                ),
                data=summary,
            ))
        logger.info(f"Stream for {self.plan.plan_id} closed with '{events[-1].type.value}'")
        return events

    def abort(self, error: ErrorInfo) -> List[StreamEvent]:
        """Close the stream with a top-level error (structural failure, timeout...)."""
        if self._terminated:
            return []
        self._terminated = True
        self._buffer.clear()
        logger.warning(f"Stream for {self.plan.plan_id} aborted: {error.kind.value} - {error.message}")
        return [StreamEvent(
            type=StreamEventType.ERROR,
            message=error.message,
            data={"error": error.to_wire(), **self._summary()},
        )]

    def cancelled(self) -> List[StreamEvent]:
        return self.abort(ErrorInfo(kind=ErrorKind.CANCELLED, message="Execution cancelled"))

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def _release(self, result: ExecutionResult) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        sub_query = self.plan.get_sub_query(result.query_id)

        if result.status == SubQueryStatus.SUCCEEDED:
            chunks = chunk_records(
                extract_records(result.data),
                self.config.batch_size,
                chunk_prefix=result.query_id,
                title=sub_query.description or sub_query.id,
                source=sub_query.data_source,
            )
            events.extend(
                StreamEvent(type=StreamEventType.CHUNK, data=chunk.to_wire(), query_id=result.query_id)
                for chunk in chunks
            )
        elif result.status == SubQueryStatus.AWAITING_USER_INPUT:
            error = result.error
            events.append(StreamEvent(
                type=StreamEventType.PROGRESS,
                progress=self._progress,
                message=error.question if error and error.question else error.message if error else None,
                query_id=result.query_id,
                data={"clarification": {
                    "queryId": result.query_id,
                    "kind": error.kind.value if error else ErrorKind.VALIDATION.value,
                    "question": error.question if error else None,
                    "missingParams": list(error.missing_params) if error else [],
                }},
            ))
        else:
            events.append(StreamEvent(
                type=StreamEventType.ERROR,
                message=result.error.message if result.error else "Sub-query failed",
                query_id=result.query_id,
                data=result.error.to_wire() if result.error else None,
            ))

        self._released.append(result.query_id)
        done = len(self._released)
        events.append(StreamEvent(
            type=StreamEventType.PROGRESS,
            progress=self._advance(done / self.total),
            message=f"{done}/{self.total} sub-queries complete",
            query_id=result.query_id,
            data={"completed": done, "total": self.total, "status": result.status.value},
        ))
        return events

    def _summary(self) -> Dict[str, Any]:
        statuses = {query_id: self._results[query_id].status.value for query_id in self._order if query_id in self._results}
        clarifications = [
            {
                "queryId": result.query_id,
                "question": result.error.question if result.error else None,
                "missingParams": list(result.error.missing_params) if result.error else [],
            }
            for result in self._results.values()
            if result.needs_user_input
        ]
        return {
            "planId": self.plan.plan_id,
            "results": statuses,
            "succeeded": sum(1 for s in statuses.values() if s == SubQueryStatus.SUCCEEDED.value),
            "failed": sum(1 for s in statuses.values() if s == SubQueryStatus.FAILED.value),
            "awaitingUserInput": len(clarifications),
            "clarifications": clarifications,
        }

    def _sequential_halted(self, summary: Dict[str, Any]) -> bool:
        """A sequential plan whose first step failed left nothing able to run."""
        if self.plan.streaming_strategy != StreamingStrategy.SEQUENTIAL:
            return False
        if summary["succeeded"] or summary["awaitingUserInput"]:
            return False
        return self._results[self._order[0]].status == SubQueryStatus.FAILED


# ============================================================================
# CHUNK HELPERS
# ============================================================================

def extract_records(data: Any) -> List[Any]:
    """
    Normalise a tool payload into a list of records.

    Lists pass through; dicts wrapping a list under data/items/results/records
    are unwrapped; any other value becomes a single record.
    """
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in RECORD_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
    return [data]


def estimate_render_time_ms(record_count: int) -> int:
    # 100ms base overhead + 0.5ms per item
    return math.ceil(100 + record_count * 0.5)


def chunk_records(
    records: List[Any],
    batch_size: int,
    chunk_prefix: str = "chunk",
    title: Optional[str] = None,
    source: Optional[str] = None
) -> List[DataChunk]:
    """
    Split records into chunks of at most ``batch_size``.

    An empty result still yields one empty chunk so the consumer can render
    an empty widget.
    """
    batch_size = max(int(batch_size), 1)
    total = max(math.ceil(len(records) / batch_size), 1)
    chunks = []
    for index in range(total):
        part = records[index * batch_size:(index + 1) * batch_size]
        chunks.append(DataChunk(
            chunk_id=f"{chunk_prefix}_{index + 1}_of_{total}",
            chunk_index=index,
            total_chunks=total,
            data=part,
            metadata=ChunkMetadata(
                title=f"{title} ({index + 1}/{total})" if title and total > 1 else (title or f"Chunk {index + 1}/{total}"),
                estimated_render_time_ms=estimate_render_time_ms(len(part)),
                record_count=len(part),
                source=source,
            ),
        ))
    return chunks


def merge_chunks(chunks: List[DataChunk]) -> List[Any]:
    """Reassemble records from chunks (in chunk_index order)."""
    merged: List[Any] = []
    for chunk in sorted(chunks, key=lambda c: c.chunk_index):
        merged.extend(chunk.data)
    return merged


def chunk_stats(chunks: List[DataChunk]) -> Dict[str, Any]:
    total_records = sum(len(chunk.data) for chunk in chunks)
    return {
        "total_chunks": len(chunks),
        "total_records": total_records,
        "avg_chunk_size": total_records / len(chunks) if chunks else 0,
        "estimated_total_render_time_ms": sum(c.metadata.estimated_render_time_ms for c in chunks),
    }


def deduplicate(records: List[Any], key_field: str = "id") -> List[Any]:
    """
    Drop records whose ``key_field`` was already seen (first one wins).

    Records without the key (or that are not dicts) are always kept.
    """
    seen = set()
    unique = []
    for record in records:
        key = record.get(key_field) if isinstance(record, dict) else None
        if key is None:
            unique.append(record)
            continue
        try:
            marker = ("h", key)
            hash(marker)
        except TypeError:
            marker = ("r", repr(key))
        if marker not in seen:
            seen.add(marker)
            unique.append(record)
    return unique
