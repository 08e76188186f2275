"""Data models for the StoreSage knowledge base."""
from .content import ContentUnit, SourceType, ChangeType, ContentChangeEvent, SourceFilter
from .chunk import Chunk, ChunkConfig, EmbeddingVector, RetrievalCandidate
from .prompt import QueryContext, ContextWindow, PromptEnvelope, ResponseMode
from .plan import PlanPolicy
from .results import ScreenResult, GeneratedResponse, TextChunk, QueryResult, ReindexResult
from .api import (
    QueryRequest,
    QueryResponse,
    ReindexRequest,
    ReindexResponse,
    ContentChangeRequest,
    ContentChangeResponse,
)

__all__ = [
    "ContentUnit",
    "SourceType",
    "ChangeType",
    "ContentChangeEvent",
    "SourceFilter",
    "Chunk",
    "ChunkConfig",
    "EmbeddingVector",
    "RetrievalCandidate",
    "QueryContext",
    "ContextWindow",
    "PromptEnvelope",
    "ResponseMode",
    "PlanPolicy",
    "ScreenResult",
    "GeneratedResponse",
    "TextChunk",
    "QueryResult",
    "ReindexResult",
    "QueryRequest",
    "QueryResponse",
    "ReindexRequest",
    "ReindexResponse",
    "ContentChangeRequest",
    "ContentChangeResponse",
]
