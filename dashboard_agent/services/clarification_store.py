"""
Store for pending clarifications.

When a turn ends with sub-queries awaiting user input, the plan, the
results so far, the parameters gathered and the executor config of the turn
are kept per session so the follow-up turn resumes only the blocked
sub-queries instead of replanning.
Entries expire after CLARIFICATION_TTL_HOURS.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dashboard_agent import config
from dashboard_agent.orchestration.models import ComplexQuery, ExecutionResult, ExecutorConfig, SubQueryStatus

logger = logging.getLogger("clarification_store")


@dataclass
class PendingClarification:
    session_id: str
    plan: ComplexQuery
    results: Dict[str, ExecutionResult]
    user_supplied_params: Dict[str, Any] = field(default_factory=dict)
    auth_profile_hint: Optional[str] = None
    executor_config: Optional[ExecutorConfig] = None
    created_at: float = 0.0
    expires_at: float = 0.0

    @property
    def blocked_query_ids(self) -> List[str]:
        return [qid for qid in self.plan.sub_query_ids if qid in self.results and self.results[qid].needs_user_input]

    @property
    def questions(self) -> List[Dict[str, Any]]:
        questions = []
        for query_id in self.blocked_query_ids:
            error = self.results[query_id].error
            questions.append({
                "queryId": query_id,
                "question": error.question if error else None,
                "missingParams": list(error.missing_params) if error else [],
            })
        return questions

    def carried_results(self) -> Dict[str, ExecutionResult]:
        """Results reused as-is on resume (everything not awaiting input)."""
        return {
            query_id: result
            for query_id, result in self.results.items()
            if result.status != SubQueryStatus.AWAITING_USER_INPUT
        }


class ClarificationStore:
    """
    In-memory pending-clarification store keyed by session id.

    Saving again for a session replaces the previous entry and refreshes the
    TTL.
    """

    def __init__(self, ttl_hours: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = (ttl_hours if ttl_hours is not None else config.CLARIFICATION_TTL_HOURS) * 3600
        self._clock = clock
        self._entries: Dict[str, PendingClarification] = {}
        logger.info(f"ClarificationStore initialized (ttl={self.ttl_seconds:.0f}s)")

    def save(
        self,
        session_id: str,
        plan: ComplexQuery,
        results: Dict[str, ExecutionResult],
        user_supplied_params: Optional[Dict[str, Any]] = None,
        auth_profile_hint: Optional[str] = None,
        executor_config: Optional[ExecutorConfig] = None
    ) -> Optional[PendingClarification]:
        """
        Keep the turn for later resume if anything awaits user input.

        Returns:
            The stored entry, or None when nothing is blocked (any previous
            entry for the session is cleared).
        """
        if not any(result.needs_user_input for result in results.values()):
            self.clear(session_id)
            return None

        now = self._clock()
        entry = PendingClarification(
            session_id=session_id,
            plan=plan,
            results=dict(results),
            user_supplied_params=dict(user_supplied_params or {}),
            auth_profile_hint=auth_profile_hint,
            executor_config=executor_config,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        self._entries[session_id] = entry
        logger.info(f"💾 Pending clarification saved for session {session_id}: {entry.blocked_query_ids}")
        return entry

    def get(self, session_id: str) -> Optional[PendingClarification]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            logger.info(f"⏰ Pending clarification for session {session_id} expired")
            del self._entries[session_id]
            return None
        return entry

    def clear(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, entry in self._entries.items() if now >= entry.expires_at]
        for session_id in expired:
            del self._entries[session_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
