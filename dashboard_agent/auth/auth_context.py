"""
Authentication-context detection.

Before a sub-query is dispatched, the execution controller asks this module
whether the call needs a non-default credential profile and, if so, whether
the tenant-identifying parameters (``cnpj``, ``company_id``...) are known.
When they are not, the sub-query goes straight to ``awaiting_user_input``
with a targeted question; the Tool Executor is never invoked.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, Field

from dashboard_agent import config
from dashboard_agent.orchestration.models import ExecutionContext, SubQuery
from dashboard_agent.orchestration.patterns import normalize_intent
from dashboard_agent.services.data_source_registry import DataSourceDescriptor

logger = logging.getLogger("auth_context")

ENTERPRISE_SCOPE = "enterprise"

# Token prefixes that mark a company-scoped resource
ENTERPRISE_CUES = ("empresa", "compan", "enterprise", "cnpj", "filial")

DEFAULT_IDENTIFYING_PARAMS = ("cnpj", "company_id", "company_name")


class AuthProfile(BaseModel):
    """A stored credential profile the caller may act under."""
    profile_id: str = Field(..., min_length=1)
    scope: str = "default"
    label: str = ""
    identity: Dict[str, Any] = Field(default_factory=dict, description="Identifying values, e.g. {'cnpj': ...}")
    headers: Dict[str, str] = Field(default_factory=dict, description="Headers sent with calls under this profile")


class AuthProfileStore(Protocol):

    def get(self, profile_id: str) -> Optional[AuthProfile]:
        ...

    def find_by_scope(self, scope: str) -> List[AuthProfile]:
        ...


class InMemoryAuthProfileStore:
    """Read-only profile store backed by a dict."""

    def __init__(self, profiles: Optional[Iterable[AuthProfile]] = None):
        self._profiles: Dict[str, AuthProfile] = {p.profile_id: p for p in profiles or []}

    def get(self, profile_id: str) -> Optional[AuthProfile]:
        return self._profiles.get(profile_id)

    def find_by_scope(self, scope: str) -> List[AuthProfile]:
        return [p for p in self._profiles.values() if p.scope == scope]

    def __len__(self) -> int:
        return len(self._profiles)

    @classmethod
    def from_json(cls, path: str) -> "InMemoryAuthProfileStore":
        """Load ``[{"profile_id": ..., "scope": ..., "identity": {...}}]`` or ``{"profiles": [...]}``."""
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        entries = payload.get("profiles", []) if isinstance(payload, dict) else payload
        store = cls(AuthProfile.model_validate(entry) for entry in entries)
        logger.info(f"🔐 Loaded {len(store)} auth profiles from {path}")
        return store


def load_auth_store(path: Optional[str] = None) -> InMemoryAuthProfileStore:
    path = path or config.AUTH_PROFILES_PATH
    if path:
        return InMemoryAuthProfileStore.from_json(path)
    return InMemoryAuthProfileStore()


@dataclass
class AuthResolution:
    """Outcome of auth-context detection for one sub-query."""
    required_scope: Optional[str] = None
    profile: Optional[AuthProfile] = None
    identifiers: Dict[str, Any] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    question: Optional[str] = None

    @property
    def satisfied(self) -> bool:
        return not self.missing

    @property
    def profile_id(self) -> Optional[str]:
        return self.profile.profile_id if self.profile else None


def has_enterprise_cues(sub_query: SubQuery) -> bool:
    text = " ".join([sub_query.data_source, sub_query.description, " ".join(sub_query.filters)])
    tokens = normalize_intent(text.replace("/", " ").replace("_", " ")).tokens
    return any(token.startswith(cue) for token in tokens for cue in ENTERPRISE_CUES)


def required_scope_for(sub_query: SubQuery, descriptor: DataSourceDescriptor) -> Optional[str]:
    if descriptor.required_auth_scope:
        return descriptor.required_auth_scope
    if has_enterprise_cues(sub_query):
        return ENTERPRISE_SCOPE
    return None


def _pick_profile(
    scope: Optional[str],
    hint: Optional[str],
    store: Optional[AuthProfileStore]
) -> Optional[AuthProfile]:
    if store is None:
        return None
    if hint:
        profile = store.get(hint)
        if profile is None:
            logger.warning(f"Auth profile hint '{hint}' not found")
        elif scope is None or profile.scope == scope:
            return profile
        else:
            logger.info(f"Auth profile '{hint}' has scope '{profile.scope}', need '{scope}'")
        return None
    if scope is None:
        return None
    candidates = store.find_by_scope(scope)
    # Only an unambiguous match is picked without asking
    return candidates[0] if len(candidates) == 1 else None


def _first_present(name: str, sources: Iterable[Dict[str, Any]]) -> Any:
    for source in sources:
        value = source.get(name)
        if value is not None and not (isinstance(value, str) and not value.strip()):
            return value
    return None


def build_question(scope: str, missing: List[str], store: Optional[AuthProfileStore] = None) -> str:
    question = f"Which company should I use for this data? Please provide one of: {', '.join(missing)}."
    if store is not None:
        labels = [p.label or p.profile_id for p in store.find_by_scope(scope)]
        if labels:
            question += f" Or pick an account: {', '.join(labels)}."
    return question


def resolve_auth_context(
    sub_query: SubQuery,
    descriptor: DataSourceDescriptor,
    context: Optional[ExecutionContext] = None,
    store: Optional[AuthProfileStore] = None
) -> AuthResolution:
    """
    Decide which credential profile a sub-query runs under.

    Identifying parameters are looked up in the sub-query filters, then the
    user-supplied params, then the identity of the selected profile. Any one
    of them is enough.
    """
    context = context or ExecutionContext()
    scope = required_scope_for(sub_query, descriptor)
    profile = _pick_profile(scope, context.auth_profile_hint, store)

    if scope is None:
        return AuthResolution(profile=profile)

    names = list(descriptor.identifying_params or DEFAULT_IDENTIFYING_PARAMS)
    sources = [sub_query.filters, context.user_supplied_params]
    if profile is not None:
        sources.append(profile.identity)

    identifiers = {}
    for name in names:
        value = _first_present(name, sources)
        if value is not None:
            identifiers[name] = value

    if identifiers:
        logger.info(f"Auth context for {sub_query.id}: scope={scope}, profile={profile.profile_id if profile else None}")
        return AuthResolution(required_scope=scope, profile=profile, identifiers=identifiers)

    logger.info(f"Auth context for {sub_query.id}: scope '{scope}' needs one of {names}")
    return AuthResolution(
        required_scope=scope,
        profile=profile,
        missing=names,
        question=build_question(scope, names, store),
    )
