"""Query-time models: query context, context window and prompt envelope."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class ResponseMode(str, Enum):
    STANDARD = "standard"
    DETAILED = "detailed"
    CONCISE = "concise"


@dataclass
class QueryContext:
    """
    Signals available to the reranker for a single query.

    Attributes:
        query: The user's question
        page_type: Page the shopper is on (product, cart, checkout, shop, ...)
        context_hints: Opaque hints from the caller (product_id, category, locale)
        now: Reference clock for freshness scoring
    """
    query: str
    page_type: Optional[str] = None
    context_hints: Mapping[str, Any] = field(default_factory=dict)
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ContextWindow:
    """Token-budgeted context assembled from reranked candidates."""
    texts: List[str] = field(default_factory=list)
    chunk_ids: List[str] = field(default_factory=list)
    estimated_tokens: int = 0
    truncated: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.texts


@dataclass
class PromptEnvelope:
    """Everything the generation gateway needs for one call."""
    system_instructions: str
    context_chunks: List[str]
    user_query: str
    response_mode: ResponseMode = ResponseMode.STANDARD
    model_hint: str = "standard"
    temperature: float = 0.5
    max_tokens: int = 400
    chunk_ids: List[str] = field(default_factory=list)

    def to_messages(self) -> List[Dict[str, str]]:
        """Render the envelope as chat-completion messages."""
        if self.context_chunks:
            context_text = "\n\n---\n\n".join(self.context_chunks)
            user_content = (
                f"Store information:\n{context_text}\n\n"
                f"Customer question: {self.user_query}"
            )
        else:
            user_content = f"Customer question: {self.user_query}"
        return [
            {"role": "system", "content": self.system_instructions},
            {"role": "user", "content": user_content},
        ]
