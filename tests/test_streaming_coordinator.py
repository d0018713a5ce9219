"""
Tests for the Streaming Coordinator and the chunk helpers.
"""
import pytest

from dashboard_agent.errors import ErrorKind
from dashboard_agent.orchestration.models import (
    Complexity,
    ComplexQuery,
    DataChunk,
    ErrorInfo,
    ExecutionResult,
    ExecutorConfig,
    StreamEventType,
    StreamingStrategy,
    SubQuery,
    SubQueryStatus,
)
from dashboard_agent.orchestration.streaming_coordinator import (
    StreamingCoordinator,
    chunk_records,
    chunk_stats,
    deduplicate,
    estimate_render_time_ms,
    extract_records,
    merge_chunks,
)


# ============================================================================
# FIXTURES
# ============================================================================

def _plan(strategy, ids=("sq_a", "sq_b", "sq_c")):
    return ComplexQuery(
        plan_id="plan-test",
        original_intent="test",
        complexity=Complexity.MEDIUM,
        sub_queries=[SubQuery(id=i, description=f"Fetch {i}", data_source="/api/generic-search") for i in ids],
        streaming_strategy=strategy,
        estimated_time_ms=1000,
    )


def _ok(query_id, data=None):
    return ExecutionResult(query_id=query_id, status=SubQueryStatus.SUCCEEDED, success=True,
                           data=data if data is not None else [{"id": query_id}])


def _failed(query_id, kind=ErrorKind.TRANSIENT):
    return ExecutionResult(query_id=query_id, status=SubQueryStatus.FAILED, success=False,
                           error=ErrorInfo(kind=kind, message=f"{query_id} broke"))


def _awaiting(query_id):
    return ExecutionResult(
        query_id=query_id,
        status=SubQueryStatus.AWAITING_USER_INPUT,
        success=False,
        error=ErrorInfo(kind=ErrorKind.AUTH_REQUIRED, message="needs company",
                        question="Which company?", missing_params=["cnpj"]),
    )


def _types(events):
    return [event.type for event in events]


@pytest.fixture
def config():
    return ExecutorConfig(batch_size=2)


# ============================================================================
# TEST ORDERING
# ============================================================================

class TestSequentialOrdering:

    def test_out_of_order_results_are_buffered(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.SEQUENTIAL), config)
        coordinator.start()

        assert coordinator.on_result(_ok("sq_b")) == []
        assert coordinator.on_result(_ok("sq_c")) == []

        events = coordinator.on_result(_ok("sq_a"))
        chunk_ids = [event.query_id for event in events if event.type == StreamEventType.CHUNK]

        assert chunk_ids == ["sq_a", "sq_b", "sq_c"]

    def test_finish_flushes_buffer_in_plan_order(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.SEQUENTIAL), config)
        coordinator.on_result(_ok("sq_c"))
        coordinator.on_result(_ok("sq_b"))

        events = coordinator.finish()
        chunk_ids = [event.query_id for event in events if event.type == StreamEventType.CHUNK]

        assert chunk_ids == ["sq_b", "sq_c"]
        assert events[-1].type == StreamEventType.ERROR
        assert events[-1].message == "Execution ended before all sub-queries finished"


class TestCompletionOrdering:

    def test_parallel_releases_immediately(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)

        events = coordinator.on_result(_ok("sq_c"))

        assert _types(events) == [StreamEventType.CHUNK, StreamEventType.PROGRESS]
        assert events[-1].data == {"completed": 1, "total": 3, "status": "succeeded"}

    def test_progress_is_monotonic_and_ends_at_one(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.HYBRID), config)
        events = coordinator.start()
        for result in (_ok("sq_b"), _awaiting("sq_a"), _failed("sq_c")):
            events += coordinator.on_result(result)
        events += coordinator.finish()

        values = [event.progress for event in events if event.progress is not None]
        assert values == sorted(values)
        assert events[-1].type == StreamEventType.COMPLETE
        assert events[-1].progress == 1.0

    def test_duplicate_and_unknown_results_are_ignored(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)
        coordinator.on_result(_ok("sq_a"))

        assert coordinator.on_result(_failed("sq_a")) == []
        assert coordinator.on_result(_ok("sq_zzz")) == []
        assert coordinator.results["sq_a"].success


# ============================================================================
# TEST EVENT CONTENT
# ============================================================================

class TestReleasedEvents:

    def test_chunks_respect_batch_size(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)

        events = coordinator.on_result(_ok("sq_a", data={"items": [{"id": n} for n in range(5)]}))
        chunks = [event.data for event in events if event.type == StreamEventType.CHUNK]

        assert [chunk["chunkId"] for chunk in chunks] == ["sq_a_1_of_3", "sq_a_2_of_3", "sq_a_3_of_3"]
        assert [len(chunk["data"]) for chunk in chunks] == [2, 2, 1]
        assert chunks[0]["metadata"]["title"] == "Fetch sq_a (1/3)"
        assert chunks[0]["metadata"]["source"] == "/api/generic-search"

    def test_awaiting_result_becomes_clarification(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)

        events = coordinator.on_result(_awaiting("sq_b"))

        assert events[0].type == StreamEventType.PROGRESS
        assert events[0].message == "Which company?"
        assert events[0].data["clarification"] == {
            "queryId": "sq_b",
            "kind": "auth_required",
            "question": "Which company?",
            "missingParams": ["cnpj"],
        }

    def test_failed_result_is_scoped_error(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)

        event = coordinator.on_result(_failed("sq_a"))[0]

        assert event.type == StreamEventType.ERROR
        assert event.query_id == "sq_a"
        assert not event.is_terminal
        assert event.data["kind"] == "transient"


# ============================================================================
# TEST TERMINATION
# ============================================================================

class TestTermination:

    def test_complete_when_all_terminal(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL, ids=("sq_a", "sq_b")), config)
        coordinator.on_result(_ok("sq_a"))
        coordinator.on_result(_awaiting("sq_b"))

        final = coordinator.finish()[-1]

        assert final.type == StreamEventType.COMPLETE
        assert final.is_terminal
        assert final.message == "1/2 sub-queries succeeded, 1 awaiting input"
        assert final.data["clarifications"][0]["queryId"] == "sq_b"

    def test_complete_when_every_sub_query_failed(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL, ids=("sq_a", "sq_b")), config)
        scoped = coordinator.on_result(_failed("sq_a", ErrorKind.VALIDATION))
        scoped += coordinator.on_result(_failed("sq_b", ErrorKind.VALIDATION))

        final = coordinator.finish()[-1]

        assert [e.query_id for e in scoped if e.type == StreamEventType.ERROR] == ["sq_a", "sq_b"]
        assert final.type == StreamEventType.COMPLETE
        assert final.progress == 1.0
        assert final.message == "0/2 sub-queries succeeded, 2 failed"
        assert final.data["failed"] == 2

    def test_error_when_sequential_plan_halts_at_first_step(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.SEQUENTIAL, ids=("sq_a", "sq_b")), config)
        coordinator.on_result(_failed("sq_a"))
        coordinator.on_result(_failed("sq_b", ErrorKind.DEPENDENCY_FAILED))

        final = coordinator.finish()[-1]

        assert final.type == StreamEventType.ERROR
        assert final.query_id is None
        assert final.message == "Sequential plan halted: first sub-query 'sq_a' failed"

    def test_sequential_plan_with_later_failure_completes(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.SEQUENTIAL, ids=("sq_a", "sq_b")), config)
        coordinator.on_result(_ok("sq_a"))
        coordinator.on_result(_failed("sq_b"))

        assert coordinator.finish()[-1].type == StreamEventType.COMPLETE

    def test_exactly_one_terminal_event(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL, ids=("sq_a",)), config)
        coordinator.on_result(_ok("sq_a"))

        assert len(coordinator.finish()) == 1
        assert coordinator.finish() == []
        assert coordinator.cancelled() == []
        assert coordinator.on_result(_ok("sq_a")) == []

    def test_abort(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)
        coordinator.on_result(_ok("sq_a"))

        events = coordinator.abort(ErrorInfo(kind=ErrorKind.STRUCTURAL, message="Unknown data source '/x'"))

        assert len(events) == 1
        assert events[0].data["error"]["kind"] == "structural"
        assert events[0].data["succeeded"] == 1
        assert coordinator.terminated

    def test_cancelled(self, config):
        coordinator = StreamingCoordinator(_plan(StreamingStrategy.PARALLEL), config)

        event = coordinator.cancelled()[0]

        assert event.message == "Execution cancelled"
        assert event.data["error"]["kind"] == "cancelled"


class TestPriorResults:

    def test_prior_results_are_not_streamed_again(self, config):
        coordinator = StreamingCoordinator(
            _plan(StreamingStrategy.SEQUENTIAL, ids=("sq_a", "sq_b")),
            config,
            prior_results={"sq_a": _ok("sq_a"), "sq_other": _ok("sq_other")},
        )

        start = coordinator.start()[0]
        events = coordinator.on_result(_ok("sq_b"))

        assert start.data["resumed"] == ["sq_a"]
        assert start.progress == 0.5
        assert [e.query_id for e in events if e.type == StreamEventType.CHUNK] == ["sq_b"]
        assert coordinator.finish()[-1].type == StreamEventType.COMPLETE


# ============================================================================
# TEST CHUNK HELPERS
# ============================================================================

class TestChunkHelpers:

    @pytest.mark.parametrize("payload,expected", [
        (None, []),
        ([1, 2], [1, 2]),
        ({"results": [1]}, [1]),
        ({"records": [1, 2]}, [1, 2]),
        ({"name": "ACME"}, [{"name": "ACME"}]),
        ("text", ["text"]),
    ])
    def test_extract_records(self, payload, expected):
        assert extract_records(payload) == expected

    def test_empty_records_yield_one_empty_chunk(self):
        chunks = chunk_records([], 10, chunk_prefix="sq_x")

        assert len(chunks) == 1
        assert chunks[0].chunk_id == "sq_x_1_of_1"
        assert chunks[0].data == []
        assert chunks[0].metadata.record_count == 0

    def test_chunk_then_merge_preserves_records(self):
        records = [{"id": n} for n in range(7)]
        chunks = chunk_records(records, 3)

        assert all(isinstance(chunk, DataChunk) for chunk in chunks)
        assert [chunk.total_chunks for chunk in chunks] == [3, 3, 3]
        assert merge_chunks(list(reversed(chunks))) == records

    def test_chunk_stats(self):
        stats = chunk_stats(chunk_records(list(range(4)), 2))

        assert stats["total_chunks"] == 2
        assert stats["total_records"] == 4
        assert stats["avg_chunk_size"] == 2
        assert stats["estimated_total_render_time_ms"] == 2 * estimate_render_time_ms(2)

    def test_render_time(self):
        assert estimate_render_time_ms(0) == 100
        assert estimate_render_time_ms(3) == 102

    def test_deduplicate(self):
        records = [{"id": 1, "v": "a"}, {"id": 1, "v": "b"}, {"v": "no id"}, {"id": [2]}, {"id": [2]}, "raw"]

        assert deduplicate(records) == [{"id": 1, "v": "a"}, {"v": "no id"}, {"id": [2]}, "raw"]
