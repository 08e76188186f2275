"""Chunk, vector and retrieval data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import numpy as np

from .content import SourceType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChunkConfig:
    """Chunk window size and overlap, both in characters."""
    chunk_size: int
    overlap: int


@dataclass
class Chunk:
    """Represents a bounded slice of a content unit's normalized text."""
    chunk_id: str  # sha256("{source_id}:{start_offset}")[:32]
    source_id: str
    source_type: SourceType
    text: str
    token_estimate: int
    content_hash: str
    position: int
    start_offset: int = 0
    title: str = ""
    url: str = ""
    language: str = "en"
    last_modified_at: Optional[datetime] = None
    quality_score: float = 1.0
    hard_cut: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def end_offset(self) -> int:
        return self.start_offset + len(self.text)


@dataclass
class EmbeddingVector:
    """Unit-length embedding produced by one model."""
    values: np.ndarray
    model_id: str
    chunk_id: Optional[str] = None
    is_fallback: bool = False
    generated_at: datetime = field(default_factory=_utcnow)

    @property
    def dimension(self) -> int:
        return int(self.values.shape[0])

    def is_comparable(self, other: "EmbeddingVector") -> bool:
        return self.model_id == other.model_id and self.dimension == other.dimension


@dataclass
class RetrievalCandidate:
    """Chunk with similarity and rerank scores from a single query."""
    chunk: Chunk
    similarity_score: float  # 0.0 to 1.0
    rerank_score: float = 0.0
    score_breakdown: Dict[str, float] = field(default_factory=dict)
