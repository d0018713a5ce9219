"""
Keyword corpus and decomposition pattern registry for the query planner.

Everything here is a closed set of frozen descriptors evaluated in a fixed
order, so classification and decomposition are deterministic for a given
intent. Matching is done on normalised text (casefolded, diacritics
stripped), see ``normalize_intent``.
"""
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from dashboard_agent import config
from dashboard_agent.orchestration.models import Priority

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class NormalizedIntent:
    text: str
    tokens: Tuple[str, ...]

    @property
    def padded(self) -> str:
        return f" {' '.join(self.tokens)} "


def normalize_intent(intent: str) -> NormalizedIntent:
    """Casefold, strip diacritics and tokenise an intent."""
    if not isinstance(intent, str):
        intent = ""
    decomposed = unicodedata.normalize("NFKD", intent)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    text = stripped.casefold()
    return NormalizedIntent(text=text, tokens=tuple(_TOKEN_RE.findall(text)))


@dataclass(frozen=True)
class Keyword:
    """
    A single corpus entry.

    ``term`` is already normalised. Multi-word terms match as a phrase;
    ``prefix`` terms match any token starting with ``term``.
    """
    term: str
    prefix: bool = False

    def matches(self, intent: NormalizedIntent) -> bool:
        if " " in self.term:
            return f" {self.term} " in intent.padded
        if self.prefix:
            return any(token.startswith(self.term) for token in intent.tokens)
        return self.term in intent.tokens


def _kw(*terms: str, prefix: bool = False) -> Tuple[Keyword, ...]:
    return tuple(Keyword(term, prefix=prefix) for term in terms)


@dataclass(frozen=True)
class KeywordCorpus:
    """
    Weighted keyword sets used for complexity classification.

    Thresholds are inclusive ("at or above"), so a count sitting exactly on a
    boundary lands in the higher bucket.
    """
    high: Tuple[Keyword, ...]
    medium: Tuple[Keyword, ...]
    high_match_threshold: int = 4
    medium_match_threshold: int = 1

    def count_matches(self, intent: NormalizedIntent) -> Tuple[int, int]:
        high_hits = sum(1 for keyword in self.high if keyword.matches(intent))
        medium_hits = sum(1 for keyword in self.medium if keyword.matches(intent))
        return high_hits, medium_hits


# "todos"/"todas" stay high-weight even though they often appear in plain
# listing requests; it is a corpus tuning concern, not a classifier defect.
DEFAULT_CORPUS = KeywordCorpus(
    high=(
        _kw("dashboard", "painel", "todos", "todas", "grupo", "agregado")
        + _kw("analise", "analy", "compar", "tendencia", "trend", "agreg", "aggregat", "agrup", prefix=True)
    ),
    medium=(
        _kw("listar", "mostrar", "buscar", "filtrar", "de", "em")
        + _kw("list", "show", "search", "filter")
    ),
)


@dataclass(frozen=True)
class PatternMatcher:
    """All groups must match; inside a group any keyword is enough."""
    all_of: Tuple[Tuple[Keyword, ...], ...]

    def matches(self, intent: NormalizedIntent) -> bool:
        return all(any(keyword.matches(intent) for keyword in group) for group in self.all_of)


@dataclass(frozen=True)
class SubQueryTemplate:
    id: str
    description: str
    data_source: str
    expected_results: int
    priority: Priority
    depends_on: Tuple[str, ...] = ()
    filters: Tuple[Tuple[str, object], ...] = ()
    # Extra keywords (any-of) needed for this template to be emitted
    requires: Tuple[Keyword, ...] = ()
    # Use the raw intent as the description (free-text search templates)
    mirror_intent: bool = False

    def applies_to(self, intent: NormalizedIntent) -> bool:
        return not self.requires or any(keyword.matches(intent) for keyword in self.requires)

    def filters_dict(self) -> Dict[str, object]:
        return dict(self.filters)


@dataclass(frozen=True)
class QueryPattern:
    """
    Tagged decomposition pattern.

    ``standalone`` patterns only contribute when no earlier pattern matched,
    which reproduces the "simple listing" short-circuit.
    """
    name: str
    example: str
    matcher: PatternMatcher
    templates: Tuple[SubQueryTemplate, ...]
    standalone: bool = False


_DASHBOARD = _kw("dashboard", "painel")
_COURSE = _kw("curso", "course", prefix=True)
_ENROLLMENT = _kw("matricula", "inscric", "inscrito", "enrollment", "aluno", "student", prefix=True)
_COMPANY = _kw("empresa", "company", "companies", "enterprise", "cnpj", "filial", prefix=True)
_ANALYSIS = _kw("analise", "analy", "tendencia", "trend", "evolucao", prefix=True)
_LISTING = _kw("listar", "mostrar", "buscar", "list", "show", "search")

COURSES_SOURCE = "/api/courses"
ENROLLMENTS_SOURCE = "/api/enrollments"
COMPANY_PROFILE_SOURCE = "/api/companies/profile"
FILTER_SOURCE = "filter"
AGGREGATE_SOURCE = "aggregate"

KNOWN_PATTERNS: Tuple[QueryPattern, ...] = (
    QueryPattern(
        name="course_dashboard",
        example="dashboard de cursos em São Paulo",
        matcher=PatternMatcher(all_of=(_DASHBOARD, _COURSE)),
        templates=(
            SubQueryTemplate(
                id="sq_courses",
                description="Buscar todos os cursos",
                data_source=COURSES_SOURCE,
                expected_results=1000,
                priority=Priority.HIGH,
            ),
            SubQueryTemplate(
                id="sq_enrollments",
                description="Buscar matrículas dos cursos",
                data_source=ENROLLMENTS_SOURCE,
                expected_results=5000,
                priority=Priority.HIGH,
                depends_on=("sq_courses",),
                requires=_ENROLLMENT,
            ),
            SubQueryTemplate(
                id="sq_filter_location",
                description="Filtrar por localização - São Paulo",
                data_source=FILTER_SOURCE,
                expected_results=500,
                priority=Priority.MEDIUM,
                depends_on=("sq_courses",),
                filters=(("location", "São Paulo"), ("state", "SP")),
                requires=_kw("sao paulo", "sp"),
            ),
            SubQueryTemplate(
                id="sq_aggregate",
                description="Agrupar por categoria",
                data_source=AGGREGATE_SOURCE,
                expected_results=50,
                priority=Priority.MEDIUM,
                depends_on=("sq_courses",),
                filters=(("group_by", "category"),),
                requires=_kw("categoria", "category", "grupo", "agrup", prefix=True),
            ),
        ),
    ),
    QueryPattern(
        name="enterprise_profile",
        example="dashboard da empresa com cursos contratados",
        matcher=PatternMatcher(all_of=(_COMPANY,)),
        templates=(
            SubQueryTemplate(
                id="sq_company_profile",
                description="Buscar perfil da empresa",
                data_source=COMPANY_PROFILE_SOURCE,
                expected_results=1,
                priority=Priority.HIGH,
            ),
        ),
    ),
    QueryPattern(
        name="enrollment_trend",
        example="análise de tendências de inscrições",
        matcher=PatternMatcher(all_of=(_ANALYSIS, _ENROLLMENT)),
        templates=(
            SubQueryTemplate(
                id="sq_enrollments",
                description="Buscar matrículas",
                data_source=ENROLLMENTS_SOURCE,
                expected_results=5000,
                priority=Priority.HIGH,
            ),
            SubQueryTemplate(
                id="sq_enrollment_trend",
                description="Agregar matrículas por mês",
                data_source=AGGREGATE_SOURCE,
                expected_results=12,
                priority=Priority.MEDIUM,
                depends_on=("sq_enrollments",),
                filters=(("group_by", "month"),),
            ),
        ),
    ),
    QueryPattern(
        name="simple_listing",
        example="listar todos os alunos",
        matcher=PatternMatcher(all_of=(_LISTING,)),
        templates=(
            SubQueryTemplate(
                id="sq_simple_search",
                description="",
                data_source=config.DEFAULT_DATA_SOURCE,
                expected_results=100,
                priority=Priority.HIGH,
                mirror_intent=True,
            ),
        ),
        standalone=True,
    ),
)

# Fallback used for Low complexity and for unmatched intents
DEFAULT_TEMPLATE = SubQueryTemplate(
    id="sq_default",
    description="",
    data_source=config.DEFAULT_DATA_SOURCE,
    expected_results=50,
    priority=Priority.HIGH,
    mirror_intent=True,
)


def get_known_patterns() -> Tuple[QueryPattern, ...]:
    """Registry of decomposition patterns, in evaluation order."""
    return KNOWN_PATTERNS


def match_patterns(
    intent: NormalizedIntent,
    patterns: Optional[Iterable[QueryPattern]] = None
) -> Tuple[QueryPattern, ...]:
    """Patterns that fire for ``intent``, honouring ``standalone``."""
    matched = []
    for pattern in (patterns if patterns is not None else KNOWN_PATTERNS):
        if pattern.standalone and matched:
            continue
        if pattern.matcher.matches(intent):
            matched.append(pattern)
    return tuple(matched)
