"""Result models returned by the pipeline and its stages."""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional


@dataclass
class ScreenResult:
    """Outcome of a safety screen."""
    allowed: bool
    reason: Optional[str] = None
    category: Optional[str] = None
    matched: List[str] = field(default_factory=list)
    risk_level: str = "safe"
    confidence: float = 0.0
    flagged_chunks: List[int] = field(default_factory=list)


@dataclass
class GeneratedResponse:
    """Response from a generation provider."""
    text: str
    model_used: str
    provider: str
    tokens_input: int = 0
    tokens_output: int = 0
    latency_ms: int = 0
    is_fallback: bool = False


@dataclass
class TextChunk:
    """One streamed increment of generated text."""
    text: str
    index: int
    is_final: bool = False
    provider: str = ""


@dataclass
class QueryResult:
    """What the query-facing caller receives."""
    answer_text: str = ""
    used_chunk_ids: List[str] = field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[str] = None
    degraded: bool = False
    model_used: Optional[str] = None
    stream: Optional[AsyncIterator] = None
    confidence: float = 0.0  # 0.0 for blocked and failed queries
    sources: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ReindexResult:
    """Summary of an indexing run."""
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    duration_ms: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
