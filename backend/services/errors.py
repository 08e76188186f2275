"""Error taxonomy for the knowledge base pipeline."""
from typing import Optional


class KnowledgeBaseError(Exception):
    """Base class for pipeline errors."""


class InvalidConfigError(KnowledgeBaseError):
    """Bad configuration values. Fatal; never retried."""


class EmbeddingUnavailableError(KnowledgeBaseError):
    """Embedding providers and the dummy fallback both failed."""


class StoreUnavailableError(KnowledgeBaseError):
    """The vector store backend could not be reached or written."""


class GenerationExhaustedError(KnowledgeBaseError):
    """Every provider in the generation chain failed."""

    def __init__(self, message: str, attempts: Optional[list] = None):
        self.attempts = attempts or []
        super().__init__(message)


class SafetyBlockedError(KnowledgeBaseError):
    """A query or prompt was intentionally refused. Not a failure."""

    def __init__(self, reason: str, category: Optional[str] = None):
        self.reason = reason
        self.category = category
        super().__init__(f"Blocked by safety guard: {reason}")
