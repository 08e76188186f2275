"""API request/response models for the HTTP surface."""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class QueryRequest(BaseModel):
    question: str = Field(..., description="Shopper's question")
    context_hints: Dict[str, Any] = Field(default_factory=dict)
    page_type: Optional[str] = None
    plan: Optional[str] = None
    response_mode: Optional[str] = None


class QueryResponse(BaseModel):
    answer: str
    used_chunk_ids: List[str] = Field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[str] = None
    degraded: bool = False
    model_used: Optional[str] = None
    confidence: float = 0.0
    sources: List[Dict[str, Any]] = Field(default_factory=list)


class ReindexRequest(BaseModel):
    source_types: List[str] = Field(default_factory=list)
    source_ids: List[str] = Field(default_factory=list)
    force_rescan: bool = False


class ReindexResponse(BaseModel):
    processed: int
    skipped: int
    failed: int
    deleted: int
    duration_ms: int
    failures: Dict[str, str] = Field(default_factory=dict)


class ContentChangeRequest(BaseModel):
    source_id: str
    change_type: str
    source_type: Optional[str] = None


class ContentChangeResponse(BaseModel):
    source_id: str
    outcome: str
