"""
Query Planner

Turns a free-form intent into a ComplexQuery: complexity classification,
pattern-based decomposition, dependency validation, streaming strategy and
time estimation. Planning is pure and deterministic; the steps run as a
LangGraph workflow of side-effect free nodes.

Workflow:
    normalize -> classify -> decompose -> validate -> select_strategy -> estimate -> END
"""
import hashlib
import logging
import math
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from langgraph.graph import StateGraph, END
from langsmith import traceable

from dashboard_agent import config as app_config
from dashboard_agent.errors import StructuralError
from dashboard_agent.orchestration.models import (
    ComplexQuery,
    Complexity,
    ExecutorConfig,
    StreamingStrategy,
    SubQuery,
)
from dashboard_agent.orchestration.patterns import (
    DEFAULT_CORPUS,
    DEFAULT_TEMPLATE,
    KeywordCorpus,
    NormalizedIntent,
    SubQueryTemplate,
    match_patterns,
    normalize_intent,
)
from dashboard_agent.security.pii_redactor import PIIRedactionFilter

logger = logging.getLogger("query_planner")

# Add PII redaction filter to this logger
logger.addFilter(PIIRedactionFilter())


class PlanningState(TypedDict, total=False):
    intent: str
    corpus: KeywordCorpus
    executor_config: ExecutorConfig
    normalized: NormalizedIntent
    complexity: Complexity
    matched_patterns: List[str]
    sub_queries: List[SubQuery]
    streaming_strategy: StreamingStrategy
    estimated_time_ms: int


# ============================================================================
# CLASSIFICATION & DECOMPOSITION
# ============================================================================

def classify_complexity(intent: NormalizedIntent, corpus: KeywordCorpus = DEFAULT_CORPUS) -> Complexity:
    """
    High if any high keyword matches or the total number of matches reaches
    ``high_match_threshold``; Medium if medium matches reach
    ``medium_match_threshold``; Low otherwise.
    """
    high_hits, medium_hits = corpus.count_matches(intent)
    if high_hits > 0 or high_hits + medium_hits >= corpus.high_match_threshold:
        return Complexity.HIGH
    if medium_hits >= corpus.medium_match_threshold:
        return Complexity.MEDIUM
    return Complexity.LOW


def _build_sub_query(template: SubQueryTemplate, intent: str) -> SubQuery:
    filters = template.filters_dict()
    description = template.description
    if template.mirror_intent:
        description = intent.strip()
        if description:
            filters.setdefault("query", description)
    return SubQuery(
        id=template.id,
        description=description,
        data_source=template.data_source,
        filters=filters,
        expected_results=template.expected_results,
        priority=template.priority,
        depends_on=list(template.depends_on),
    )


def decompose(intent: str, normalized: NormalizedIntent, complexity: Complexity) -> Dict[str, Any]:
    """
    Expand matched patterns into sub-queries.

    Returns ``{"sub_queries": [...], "matched_patterns": [...]}``. Low
    complexity and unmatched intents get the single ``sq_default`` fallback.
    Duplicate ids across patterns keep their first occurrence.
    """
    text = intent if isinstance(intent, str) else ""
    if complexity == Complexity.LOW:
        return {"sub_queries": [_build_sub_query(DEFAULT_TEMPLATE, text)], "matched_patterns": []}

    patterns = match_patterns(normalized)
    sub_queries: List[SubQuery] = []
    seen = set()
    for pattern in patterns:
        for template in pattern.templates:
            if template.id in seen or not template.applies_to(normalized):
                continue
            seen.add(template.id)
            sub_queries.append(_build_sub_query(template, text))

    if not sub_queries:
        return {"sub_queries": [_build_sub_query(DEFAULT_TEMPLATE, text)], "matched_patterns": []}

    # A gated template may have been skipped while a later one still points at it
    kept = {sq.id for sq in sub_queries}
    sub_queries = [
        sq if all(dep in kept for dep in sq.depends_on)
        else sq.model_copy(update={"depends_on": [dep for dep in sq.depends_on if dep in kept]})
        for sq in sub_queries
    ]
    return {"sub_queries": sub_queries, "matched_patterns": [pattern.name for pattern in patterns]}


# ============================================================================
# VALIDATION
# ============================================================================

def validate_sub_queries(sub_queries: Sequence[SubQuery]) -> None:
    """
    Check that ids are unique, every dependency exists and the graph is acyclic.

    Raises:
        StructuralError: If the dependency graph is invalid
    """
    if not sub_queries:
        raise StructuralError("Plan has no sub-queries")

    index: Dict[str, SubQuery] = {}
    for sub_query in sub_queries:
        if sub_query.id in index:
            raise StructuralError(f"Duplicate sub-query id '{sub_query.id}'", {"query_id": sub_query.id})
        index[sub_query.id] = sub_query

    for sub_query in sub_queries:
        for dep_id in sub_query.depends_on:
            if dep_id not in index:
                raise StructuralError(
                    f"Sub-query '{sub_query.id}' depends on non-existent sub-query '{dep_id}'",
                    {"query_id": sub_query.id, "depends_on": dep_id}
                )

    # Iterative DFS with white/grey/black colouring
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {query_id: WHITE for query_id in index}
    for root in index:
        if colour[root] != WHITE:
            continue
        stack = [(root, iter(index[root].depends_on))]
        colour[root] = GREY
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep_id in deps:
                if colour[dep_id] == GREY:
                    raise StructuralError(
                        f"Circular dependency detected between '{node}' and '{dep_id}'",
                        {"query_id": node, "depends_on": dep_id}
                    )
                if colour[dep_id] == WHITE:
                    colour[dep_id] = GREY
                    stack.append((dep_id, iter(index[dep_id].depends_on)))
                    advanced = True
                    break
            if not advanced:
                colour[node] = BLACK
                stack.pop()


def validate_plan(plan: ComplexQuery) -> None:
    """Validate a plan's dependency graph. Raises StructuralError."""
    logger.info(f"Validating plan {plan.plan_id}...")
    validate_sub_queries(plan.sub_queries)
    logger.info(f"Plan {plan.plan_id} is valid (sub_queries: {len(plan.sub_queries)})")


# ============================================================================
# STRATEGY & ESTIMATION
# ============================================================================

def dependency_levels(sub_queries: Sequence[SubQuery]) -> List[List[SubQuery]]:
    """
    Group sub-queries by dependency depth (0 = no dependencies).

    Each level keeps plan order. Expects a validated, acyclic graph.
    """
    index = {sq.id: sq for sq in sub_queries}
    depth: Dict[str, int] = {}

    def level_of(query_id: str) -> int:
        if query_id not in depth:
            deps = [dep for dep in index[query_id].depends_on if dep in index]
            depth[query_id] = 1 + max(level_of(dep) for dep in deps) if deps else 0
        return depth[query_id]

    levels: List[List[SubQuery]] = []
    for sub_query in sub_queries:
        level = level_of(sub_query.id)
        while len(levels) <= level:
            levels.append([])
        levels[level].append(sub_query)
    return levels


def is_linear_chain(sub_queries: Sequence[SubQuery]) -> bool:
    """True when the sub-queries form a single path a -> b -> c (or one node)."""
    if not sub_queries:
        return False
    dependents: Dict[str, int] = {sq.id: 0 for sq in sub_queries}
    roots = 0
    for sub_query in sub_queries:
        if len(sub_query.depends_on) > 1:
            return False
        if not sub_query.depends_on:
            roots += 1
        for dep_id in sub_query.depends_on:
            dependents[dep_id] = dependents.get(dep_id, 0) + 1
    return roots == 1 and all(count <= 1 for count in dependents.values())


def select_streaming_strategy(complexity: Complexity, sub_queries: Sequence[SubQuery]) -> StreamingStrategy:
    if complexity == Complexity.LOW:
        return StreamingStrategy.SEQUENTIAL
    if complexity == Complexity.MEDIUM and is_linear_chain(sub_queries):
        return StreamingStrategy.SEQUENTIAL
    if all(not sq.depends_on for sq in sub_queries):
        return StreamingStrategy.PARALLEL
    return StreamingStrategy.HYBRID


def estimate_execution_time(
    sub_queries: Sequence[SubQuery],
    strategy: StreamingStrategy,
    max_concurrent: int
) -> int:
    """
    Estimated wall time in milliseconds.

    Each sub-query costs ``PLANNER_BASE_COST_MS + expected_results *
    PLANNER_PER_RECORD_MS``. Sequential plans pay the sum; parallel and
    hybrid plans pay, per dependency level, the level's cost divided by
    ``min(max_concurrent, level size)``.
    """
    def cost(sub_query: SubQuery) -> float:
        return app_config.PLANNER_BASE_COST_MS + sub_query.expected_results * app_config.PLANNER_PER_RECORD_MS

    if strategy == StreamingStrategy.SEQUENTIAL:
        total = sum(cost(sq) for sq in sub_queries)
    else:
        total = 0.0
        for level in dependency_levels(sub_queries):
            total += sum(cost(sq) for sq in level) / min(max(max_concurrent, 1), len(level))

    ceiling = max(app_config.PLANNER_MAX_ESTIMATE_MS - 1, 1)
    return int(min(max(math.ceil(total), 1), ceiling))


# ============================================================================
# LANGGRAPH NODES
# ============================================================================

def normalize_node(state: PlanningState) -> dict:
    return {"normalized": normalize_intent(state.get("intent"))}


def classify_node(state: PlanningState) -> dict:
    complexity = classify_complexity(state["normalized"], state.get("corpus") or DEFAULT_CORPUS)
    logger.info(f"Complexity: {complexity.value}")
    return {"complexity": complexity}


def decompose_node(state: PlanningState) -> dict:
    result = decompose(state.get("intent"), state["normalized"], state["complexity"])
    logger.info(f"Matched patterns: {result['matched_patterns'] or 'none'}")
    logger.info(f"Sub-queries: {[sq.id for sq in result['sub_queries']]}")
    return result


def validate_node(state: PlanningState) -> dict:
    # Pattern registry defects surface here as StructuralError
    validate_sub_queries(state["sub_queries"])
    return {}


def select_strategy_node(state: PlanningState) -> dict:
    strategy = select_streaming_strategy(state["complexity"], state["sub_queries"])
    logger.info(f"Streaming strategy: {strategy.value}")
    return {"streaming_strategy": strategy}


def estimate_node(state: PlanningState) -> dict:
    executor_config = state.get("executor_config") or ExecutorConfig()
    estimate = estimate_execution_time(
        state["sub_queries"],
        state["streaming_strategy"],
        executor_config.max_concurrent
    )
    return {"estimated_time_ms": estimate}


@lru_cache(maxsize=1)
def build_planning_graph():
    """
    Build the LangGraph planning workflow.

    Returns:
        Compiled StateGraph (compiled once and reused)
    """
    workflow = StateGraph(PlanningState)

    workflow.add_node("normalize", normalize_node)
    workflow.add_node("classify", classify_node)
    workflow.add_node("decompose", decompose_node)
    workflow.add_node("validate", validate_node)
    workflow.add_node("select_strategy", select_strategy_node)
    workflow.add_node("estimate", estimate_node)

    workflow.set_entry_point("normalize")
    workflow.add_edge("normalize", "classify")
    workflow.add_edge("classify", "decompose")
    workflow.add_edge("decompose", "validate")
    workflow.add_edge("validate", "select_strategy")
    workflow.add_edge("select_strategy", "estimate")
    workflow.add_edge("estimate", END)

    return workflow.compile()


def _plan_id(normalized: NormalizedIntent) -> str:
    digest = hashlib.sha1(" ".join(normalized.tokens).encode("utf-8")).hexdigest()
    return f"plan-{digest[:8]}"


# ============================================================================
# PUBLIC API
# ============================================================================

@traceable(name="plan_dashboard_query", tags=["planner"])
def plan(
    intent: str,
    executor_config: Optional[ExecutorConfig] = None,
    corpus: Optional[KeywordCorpus] = None
) -> ComplexQuery:
    """
    Build an execution plan for a natural-language intent.

    Never raises for user text: empty or non-string intents produce the Low
    complexity single sub-query fallback.

    Args:
        intent: Free-form user request
        executor_config: Executor configuration used for the time estimate
        corpus: Keyword corpus override (defaults to DEFAULT_CORPUS)

    Returns:
        Frozen ComplexQuery
    """
    text = intent if isinstance(intent, str) else ""

    logger.info("=" * 60)
    logger.info("QUERY PLANNER")
    logger.info("=" * 60)
    logger.info(f"Intent: {text[:200]}")

    final_state = build_planning_graph().invoke({
        "intent": text,
        "corpus": corpus or DEFAULT_CORPUS,
        "executor_config": executor_config or ExecutorConfig(),
    })

    complex_query = ComplexQuery(
        plan_id=_plan_id(final_state["normalized"]),
        original_intent=text,
        complexity=final_state["complexity"],
        sub_queries=final_state["sub_queries"],
        streaming_strategy=final_state["streaming_strategy"],
        estimated_time_ms=final_state["estimated_time_ms"],
    )

    logger.info(
        f"Plan {complex_query.plan_id}: {len(complex_query.sub_queries)} sub-queries, "
        f"strategy={complex_query.streaming_strategy.value}, estimate={complex_query.estimated_time_ms}ms"
    )
    return complex_query


def describe_plan(plan: ComplexQuery) -> Dict[str, Any]:
    """
    Generate a human-readable explanation of the plan.

    Args:
        plan: ComplexQuery to explain

    Returns:
        Dictionary with user-friendly explanation
    """
    levels = dependency_levels(plan.sub_queries)
    return {
        "plan_id": plan.plan_id,
        "summary": (
            f"{len(plan.sub_queries)} sub-quer{'y' if len(plan.sub_queries) == 1 else 'ies'} "
            f"({plan.complexity.value} complexity, {plan.streaming_strategy.value} streaming)"
        ),
        "what_will_happen": [sq.description or sq.id for sq in plan.sub_queries],
        "stages": [[sq.id for sq in level] for level in levels],
        "data_sources": sorted({sq.data_source for sq in plan.sub_queries}),
        "estimated_time": f"~{math.ceil(plan.estimated_time_ms / 1000)} seconds",
    }
