"""Multi-factor re-ranking of vector search candidates."""
import logging
import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence

from models.chunk import Chunk, RetrievalCandidate
from models.content import SourceType
from models.prompt import QueryContext
from services.errors import InvalidConfigError
from config import (
    FRESHNESS_FLOOR,
    FRESHNESS_HORIZON_DAYS,
    KEYWORD_BOOST_CAP,
    MAX_FINAL_CHUNKS,
    MIN_RERANK_SCORE,
    RERANK_WEIGHTS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RerankWeights:
    """Factor weights for the composite score; must sum to 1.0."""
    semantic: float = 0.40
    content_type: float = 0.25
    freshness: float = 0.15
    context_match: float = 0.10
    quality: float = 0.10

    def __post_init__(self):
        values = self.as_dict()
        if any(v < 0 for v in values.values()):
            raise InvalidConfigError(f"Rerank weights cannot be negative: {values}")
        total = sum(values.values())
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise InvalidConfigError(f"Rerank weights must sum to 1.0, got {total:.4f}")

    @classmethod
    def from_mapping(cls, weights: Mapping[str, float]) -> "RerankWeights":
        unknown = set(weights) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidConfigError(f"Unknown rerank weights: {sorted(unknown)}")
        return cls(**{k: float(v) for k, v in weights.items()})

    def as_dict(self) -> Dict[str, float]:
        return {
            "semantic": self.semantic,
            "content_type": self.content_type,
            "freshness": self.freshness,
            "context_match": self.context_match,
            "quality": self.quality,
        }


TYPE_PRIORITIES = {
    SourceType.PRODUCT: 0.90,
    SourceType.FAQ: 0.85,
    SourceType.POLICY: 0.80,
    SourceType.SETTING: 0.75,
    SourceType.PAGE: 0.75,
}
UNKNOWN_TYPE_PRIORITY = 0.50
INTENT_BOOST = 1.2

PAGE_INTENTS = {
    "product": SourceType.PRODUCT,
    "shop": SourceType.PRODUCT,
    "category": SourceType.PRODUCT,
    "cart": SourceType.POLICY,
    "checkout": SourceType.POLICY,
}

KEYWORD_INTENTS = (
    (SourceType.PRODUCT, frozenset({
        "buy", "price", "cost", "size", "sizes", "color", "colour", "stock",
        "available", "product", "material", "fit",
    })),
    (SourceType.POLICY, frozenset({
        "return", "returns", "refund", "shipping", "delivery", "warranty",
        "policy", "exchange", "privacy", "terms",
    })),
    (SourceType.FAQ, frozenset({"how", "what", "why", "when"})),
)

STOPWORDS = frozenset({
    "about", "also", "does", "have", "that", "their", "there", "these", "they",
    "this", "what", "when", "where", "which", "will", "with", "would", "your",
    "from", "could", "should", "into", "than", "then", "them", "were", "been",
})

KEYWORD_MATCH_BOOST = 0.025

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def infer_intents(query_context: QueryContext) -> FrozenSet[SourceType]:
    """Source types the query most likely wants, from page type then keywords."""
    intents = set()
    if query_context.page_type in PAGE_INTENTS:
        intents.add(PAGE_INTENTS[query_context.page_type])

    query = (query_context.query or "").lower()
    tokens = set(_TOKEN_RE.findall(query))
    for source_type, keywords in KEYWORD_INTENTS:
        if tokens & keywords:
            intents.add(source_type)
    if "can i" in query:
        intents.add(SourceType.FAQ)
    return frozenset(intents)


def query_keywords(query: str) -> FrozenSet[str]:
    return frozenset(
        token for token in _TOKEN_RE.findall((query or "").lower())
        if len(token) >= 4 and token not in STOPWORDS
    )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class RetrievalReranker:
    """Reorder and filter candidates with a weighted composite score."""

    def __init__(
        self,
        weights: Optional[RerankWeights] = None,
        min_score: float = MIN_RERANK_SCORE,
        max_results: int = MAX_FINAL_CHUNKS,
        keyword_boost_cap: float = KEYWORD_BOOST_CAP,
        freshness_horizon_days: float = FRESHNESS_HORIZON_DAYS,
        freshness_floor: float = FRESHNESS_FLOOR,
    ):
        """
        Initialize the reranker.

        Args:
            weights: Factor weights (defaults to RERANK_WEIGHTS from config)
            min_score: Candidates scoring below this are dropped
            max_results: Maximum candidates returned
            keyword_boost_cap: Ceiling of the additive exact-keyword boost
            freshness_horizon_days: Age at which freshness reaches its floor
            freshness_floor: Minimum freshness factor
        """
        self.weights = weights or RerankWeights.from_mapping(RERANK_WEIGHTS)
        self.min_score = min_score
        self.max_results = max_results
        self.keyword_boost_cap = keyword_boost_cap
        self.freshness_horizon_days = freshness_horizon_days
        self.freshness_floor = freshness_floor

        if not 0 < freshness_floor <= 1:
            raise InvalidConfigError(f"freshness_floor must be in (0, 1], got {freshness_floor}")
        if freshness_horizon_days <= 0:
            raise InvalidConfigError("freshness_horizon_days must be positive")

    def rerank(
        self,
        candidates: Sequence[RetrievalCandidate],
        query_context: QueryContext,
    ) -> List[RetrievalCandidate]:
        """
        Score, filter and order candidates.

        Args:
            candidates: Vector search results
            query_context: Query text, page type and caller hints

        Returns:
            Candidates with rerank_score set, best first, none below min_score
        """
        if not candidates:
            return []

        intents = infer_intents(query_context)
        keywords = query_keywords(query_context.query)

        weights = self.weights.as_dict()
        scored = []
        for candidate in candidates:
            breakdown = self.score_factors(candidate, query_context, intents)
            composite = sum(weight * breakdown[name] for name, weight in weights.items())
            boost = self.keyword_boost(candidate.chunk, keywords)
            breakdown["keyword_boost"] = boost
            score = round(composite + boost, 6)
            scored.append(replace(candidate, rerank_score=score, score_breakdown=breakdown))

        kept = [c for c in scored if c.rerank_score >= self.min_score]
        kept.sort(key=lambda c: (-c.rerank_score, -c.similarity_score, c.chunk.chunk_id))
        kept = kept[:self.max_results]

        logger.info(
            f"Reranked {len(candidates)} candidates -> {len(kept)} "
            f"(intents={sorted(i.value for i in intents)}, top={kept[0].rerank_score if kept else 0:.3f})"
        )
        return kept

    def score_factors(
        self,
        candidate: RetrievalCandidate,
        query_context: QueryContext,
        intents: FrozenSet[SourceType],
    ) -> Dict[str, float]:
        chunk = candidate.chunk
        return {
            "semantic": max(0.0, min(1.0, candidate.similarity_score)),
            "content_type": self.content_type_score(chunk, intents),
            "freshness": self.freshness_score(chunk.last_modified_at, query_context.now),
            "context_match": self.context_match_score(chunk, query_context),
            "quality": max(0.0, min(1.0, chunk.quality_score)),
        }

    @staticmethod
    def content_type_score(chunk: Chunk, intents: FrozenSet[SourceType]) -> float:
        score = TYPE_PRIORITIES.get(chunk.source_type, UNKNOWN_TYPE_PRIORITY)
        if chunk.source_type in intents:
            score *= INTENT_BOOST
        return min(1.0, score)

    def freshness_score(self, last_modified_at: Optional[datetime], now: datetime) -> float:
        """Linear decay over age, never below the floor; unknown dates score 0.5."""
        if last_modified_at is None:
            return 0.5
        age_days = max(0.0, (_as_utc(now) - _as_utc(last_modified_at)).total_seconds() / 86400)
        return max(self.freshness_floor, 1.0 - age_days / self.freshness_horizon_days)

    @staticmethod
    def context_match_score(chunk: Chunk, query_context: QueryContext) -> float:
        hints = query_context.context_hints or {}
        score = 0.5

        referenced = hints.get("product_id") or hints.get("source_id")
        if referenced is not None:
            referenced = str(referenced)
            if chunk.source_id == referenced or chunk.source_id.endswith(f":{referenced}"):
                score += 0.3

        page_match = PAGE_INTENTS.get(query_context.page_type) == chunk.source_type
        category = hints.get("category")
        category_match = bool(category) and str(category).lower() in f"{chunk.title} {chunk.text}".lower()
        if page_match or category_match:
            score += 0.2

        return min(1.0, score)

    def keyword_boost(self, chunk: Chunk, keywords: FrozenSet[str]) -> float:
        if not keywords:
            return 0.0
        chunk_tokens = set(_TOKEN_RE.findall(f"{chunk.title} {chunk.text}".lower()))
        matches = len(keywords & chunk_tokens)
        return min(self.keyword_boost_cap, KEYWORD_MATCH_BOOST * matches)


def candidate_relevance(candidate: RetrievalCandidate) -> float:
    """Rerank score when the candidate was reranked, else raw similarity."""
    return candidate.rerank_score if candidate.score_breakdown else candidate.similarity_score


def response_confidence(candidates: Sequence[RetrievalCandidate], answer: Optional[str] = None) -> float:
    """
    Heuristic confidence in an answer grounded on `candidates`.

    Starts from the mean relevance of the chunks used, rewards broad support
    (three or more chunks), penalizes a single chunk and answers that are
    very short or very long (skipped when the answer is not known yet, as
    when streaming). Clamped to [0.1, 1.0]; 0.3 when nothing was retrieved.
    """
    if not candidates:
        return 0.3

    confidence = sum(candidate_relevance(c) for c in candidates) / len(candidates)
    if len(candidates) >= 3:
        confidence *= 1.1
    elif len(candidates) == 1:
        confidence *= 0.9

    if answer is not None and not 50 <= len(answer) <= 1000:
        confidence *= 0.95

    return round(max(0.1, min(1.0, confidence)), 4)


def sources_used(candidates: Sequence[RetrievalCandidate]) -> List[Dict[str, object]]:
    """One entry per distinct source, in candidate order."""
    sources = []
    seen = set()
    for candidate in candidates:
        chunk = candidate.chunk
        if chunk.source_id in seen:
            continue
        seen.add(chunk.source_id)
        sources.append({
            "source_id": chunk.source_id,
            "type": chunk.source_type.value,
            "title": chunk.title,
            "url": chunk.url,
            "relevance": round(candidate_relevance(candidate), 4),
        })
    return sources
