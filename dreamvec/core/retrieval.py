"""Hybrid retrieval over reference fragments.

Candidates come from storage (vector KNN plus FTS matches). Ranking is a
pure function over the fetched fragments that blends three signals:

- semantic: cosine similarity of dense vectors
- sparse: weighted token overlap of sparse representations
- lexical: BM25 over the candidate set, scaled to [0, 1]

When the query has no usable sparse map, the sparse weight is handed to the
other two signals in proportion to their configured weights.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from dreamvec.core.content_types import ReferenceFragment
from dreamvec.core.settings import Settings

if TYPE_CHECKING:
    from dreamvec.core.storage import DB

logger = logging.getLogger(__name__)

# BM25 parameters
BM25_K1 = 1.5
BM25_B = 0.75

STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been
    before being below between both but by can could did do does doing down during
    each few for from further had has have having he her here hers herself him
    himself his how i if in into is it its itself just me more most my myself no
    nor not now of off on once only or other our ours ourselves out over own same
    she should so some such than that the their theirs them themselves then there
    these they this those through to too under until up very was we were what when
    where which while who whom why will with would you your yours yourself
    yourselves
    """.split()
)

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")


def tokenize(text: str | None) -> list[str]:
    """Lowercase word tokens without stopwords or single characters."""
    if not text:
        return []
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 1 and t not in STOPWORDS]


def build_fts_query(text: str | None) -> str | None:
    """FTS5 MATCH expression: OR of quoted query terms, or None if nothing is left."""
    terms = list(dict.fromkeys(tokenize(text)))
    if not terms:
        return None
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)


def cosine_similarity(a: list[float] | None, b: list[float] | None) -> float:
    """Cosine similarity; 0 when either vector is missing, empty or of another dimension."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def is_sparse_map(value: Any) -> bool:
    """True for a non-empty mapping of string keys to finite numbers."""
    if not isinstance(value, dict) or not value:
        return False
    for key, weight in value.items():
        if not isinstance(key, str):
            return False
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            return False
        if not math.isfinite(weight):
            return False
    return True


def sparse_overlap(query: Any, fragment: Any) -> float:
    """Sum of min weights over shared keys divided by the number of distinct keys.

    Returns 0 when either side is absent or malformed.
    """
    if not is_sparse_map(query) or not is_sparse_map(fragment):
        return 0.0
    shared = query.keys() & fragment.keys()
    if not shared:
        return 0.0
    total = sum(min(query[k], fragment[k]) for k in shared)
    return max(0.0, total / len(query.keys() | fragment.keys()))


def bm25_scores(query_tokens: list[str], documents: list[list[str]]) -> list[float]:
    """BM25 of each document against the query, scaled so the best document scores 1."""
    if not query_tokens or not documents:
        return [0.0] * len(documents)

    n_docs = len(documents)
    avg_len = sum(len(d) for d in documents) / n_docs or 1.0
    terms = set(query_tokens)
    df = {t: sum(1 for d in documents if t in d) for t in terms}

    raw = []
    for doc in documents:
        tf = Counter(doc)
        score = 0.0
        for term in terms:
            freq = tf.get(term, 0)
            if not freq:
                continue
            idf = math.log((n_docs - df[term] + 0.5) / (df[term] + 0.5) + 1.0)
            norm = freq + BM25_K1 * (1 - BM25_B + BM25_B * len(doc) / avg_len)
            score += idf * freq * (BM25_K1 + 1) / norm
        raw.append(score)

    best = max(raw)
    if best <= 0:
        return [0.0] * n_docs
    return [s / best for s in raw]


@dataclass(frozen=True)
class RetrievalWeights:
    semantic: float = 0.4
    sparse: float = 0.3
    lexical: float = 0.3
    boost_theme: float = 0.2
    boost_concept: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> RetrievalWeights:
        return cls(
            semantic=settings.semantic_weight,
            sparse=settings.sparse_weight,
            lexical=settings.lexical_weight,
            boost_theme=settings.boost_theme,
            boost_concept=settings.boost_concept,
        )


def effective_weights(weights: RetrievalWeights, has_sparse: bool) -> tuple[float, float, float]:
    """(semantic, sparse, lexical) weights actually applied, summing to 1."""
    semantic = max(0.0, weights.semantic)
    sparse = max(0.0, weights.sparse)
    lexical = max(0.0, weights.lexical)

    if not has_sparse:
        rest = semantic + lexical
        if rest > 0:
            semantic += sparse * semantic / rest
            lexical += sparse * lexical / rest
        else:
            semantic += sparse
        sparse = 0.0

    total = semantic + sparse + lexical
    if total <= 0:
        return 1.0, 0.0, 0.0
    return semantic / total, sparse / total, lexical / total


def _normalize_hints(hints: list[str] | None) -> list[str]:
    return list(dict.fromkeys(h.strip().lower() for h in hints or [] if h and h.strip()))


def hint_bonus(
    tags: frozenset[str],
    theme_hints: list[str],
    concept_hints: list[str],
    weights: RetrievalWeights,
) -> tuple[float, list[str], list[str]]:
    """Boost from hints present in a fragment's tags. Hints must already be normalized."""
    lowered = {t.lower() for t in tags}
    matched_themes = [h for h in theme_hints if h in lowered]
    matched_concepts = [h for h in concept_hints if h in lowered]
    bonus = 0.0
    if theme_hints:
        bonus += weights.boost_theme * len(matched_themes) / len(theme_hints)
    if concept_hints:
        bonus += weights.boost_concept * len(matched_concepts) / len(concept_hints)
    return bonus, matched_themes, matched_concepts


@dataclass(frozen=True)
class RetrievalFilters:
    collection: str | None = None
    source: str | None = None


@dataclass
class ScoredFragment:
    """A ranked fragment with the signals that produced its score."""

    fragment: ReferenceFragment
    score: float
    semantic: float = 0.0
    sparse: float = 0.0
    lexical: float = 0.0
    bonus: float = 0.0
    matched_themes: list[str] = field(default_factory=list)
    matched_concepts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.fragment.to_dict(),
            "score": round(self.score, 6),
            "semantic_score": round(self.semantic, 6),
            "sparse_score": round(self.sparse, 6),
            "lexical_score": round(self.lexical, 6),
            "bonus": round(self.bonus, 6),
            "matched_themes": self.matched_themes,
            "matched_concepts": self.matched_concepts,
        }


def score_fragments(
    fragments: list[ReferenceFragment],
    query_vector: list[float] | None,
    query_sparse: Any = None,
    query_text: str | None = None,
    theme_hints: list[str] | None = None,
    concept_hints: list[str] | None = None,
    weights: RetrievalWeights | None = None,
    k: int = 10,
    min_similarity: float | None = None,
) -> list[ScoredFragment]:
    """Rank fragments for a query.

    final = (w_semantic * semantic + w_sparse * sparse + w_lexical * lexical) * (1 + bonus)

    Args:
        fragments: Candidate fragments.
        query_vector: Dense query vector.
        query_sparse: Optional token -> weight map. Anything malformed counts as absent.
        query_text: Optional query text for BM25.
        theme_hints / concept_hints: Tags that boost fragments carrying them.
        weights: Base weights and boosts.
        k: Number of results.
        min_similarity: Drop candidates whose semantic score is below this.

    Returns:
        Up to k ScoredFragments ordered by score DESC, fragment id ASC
    """
    weights = weights or RetrievalWeights()
    has_sparse = is_sparse_map(query_sparse)
    if query_sparse is not None and not has_sparse:
        logger.debug("Ignoring malformed or empty query sparse map")
    w_sem, w_sparse, w_lex = effective_weights(weights, has_sparse)

    semantic = {f.id: cosine_similarity(query_vector, f.vector) for f in fragments}
    if min_similarity is not None:
        fragments = [f for f in fragments if semantic[f.id] >= min_similarity]
    if not fragments or k <= 0:
        return []

    lexical = bm25_scores(tokenize(query_text), [tokenize(f.text) for f in fragments])
    themes = _normalize_hints(theme_hints)
    concepts = _normalize_hints(concept_hints)

    scored = []
    for fragment, lex in zip(fragments, lexical):
        sem = semantic[fragment.id]
        sp = sparse_overlap(query_sparse, fragment.sparse) if has_sparse else 0.0
        bonus, matched_themes, matched_concepts = hint_bonus(fragment.tags, themes, concepts, weights)
        base = w_sem * sem + w_sparse * sp + w_lex * lex
        scored.append(
            ScoredFragment(
                fragment=fragment,
                score=base * (1 + bonus),
                semantic=sem,
                sparse=sp,
                lexical=lex,
                bonus=bonus,
                matched_themes=matched_themes,
                matched_concepts=matched_concepts,
            )
        )

    scored.sort(key=lambda s: (-s.score, s.fragment.id))
    return scored[:k]


def retrieve(
    db: DB,
    query_vector: list[float] | None,
    query_sparse: Any = None,
    query_text: str | None = None,
    theme_hints: list[str] | None = None,
    concept_hints: list[str] | None = None,
    filters: RetrievalFilters | None = None,
    k: int = 10,
    settings: Settings | None = None,
    min_similarity: float | None = None,
) -> list[ScoredFragment]:
    """Fetch candidates from storage and rank them.

    Read-only. min_similarity defaults to the configured retrieval threshold
    and only applies when a query vector is given.
    """
    s = settings or Settings.from_env()
    filters = filters or RetrievalFilters()
    if min_similarity is None and query_vector:
        min_similarity = s.retrieval_min_similarity

    pool = max(k, 1) * max(s.candidate_multiplier, 1)
    candidates = db.get_reference_candidates(
        query_vector=query_vector,
        fts_query=build_fts_query(query_text),
        limit=pool,
        collection=filters.collection,
        source=filters.source,
    )
    results = score_fragments(
        candidates,
        query_vector=query_vector,
        query_sparse=query_sparse,
        query_text=query_text,
        theme_hints=theme_hints,
        concept_hints=concept_hints,
        weights=RetrievalWeights.from_settings(s),
        k=k,
        min_similarity=min_similarity if query_vector else None,
    )
    logger.info(f"Retrieved {len(results)} of {len(candidates)} candidates (k={k})")
    return results
