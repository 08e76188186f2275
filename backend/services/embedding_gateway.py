"""Embedding gateway: provider chain with retries and a deterministic fallback."""
import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from models.chunk import EmbeddingVector
from services.errors import EmbeddingUnavailableError
from services.providers import AIProvider, ProviderCallError, ProviderChain
from config import (
    EMBEDDING_CACHE_SIZE,
    EMBEDDING_CACHE_TTL,
    EMBEDDING_DIMENSION,
    EMBEDDING_MAX_ATTEMPTS,
    EMBEDDING_MAX_BATCH,
    EMBEDDING_RETRY_BASE_DELAY,
)

logger = logging.getLogger(__name__)


def l2_normalize(values) -> np.ndarray:
    """Return values scaled to unit length as float32."""
    array = np.asarray(values, dtype=np.float64)
    norm = np.linalg.norm(array)
    if norm == 0 or not np.isfinite(norm):
        raise ValueError("Cannot normalize a zero or non-finite vector")
    return (array / norm).astype(np.float32)


class EmbeddingGateway:
    """Turns texts into unit-length vectors through the provider chain."""

    def __init__(
        self,
        chain: Optional[ProviderChain] = None,
        dimension: int = EMBEDDING_DIMENSION,
        max_batch: int = EMBEDDING_MAX_BATCH,
        max_attempts: int = EMBEDDING_MAX_ATTEMPTS,
        base_delay: float = EMBEDDING_RETRY_BASE_DELAY,
        cache_size: int = EMBEDDING_CACHE_SIZE,
        cache_ttl: float = EMBEDDING_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the embedding gateway.

        Args:
            chain: Providers to try in order; providers without embedding
                support are ignored. An empty chain means fallback only.
            dimension: Vector dimension expected by the vector store
            max_batch: Maximum texts per provider request
            max_attempts: Attempts per provider for retryable failures
            base_delay: First backoff delay in seconds, doubled per retry
            cache_size: Provider vectors kept in memory, least recently used evicted first
            cache_ttl: Seconds a cached vector stays valid
            clock: Monotonic time source for cache expiry
        """
        self.chain = chain or ProviderChain([])
        self.dimension = dimension
        self.max_batch = max_batch
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.fallback_model_id = f"hash-fallback-{dimension}"
        self.cache_size = cache_size
        self.cache_ttl = cache_ttl
        self.clock = clock
        # (model id, sha256 of text) -> (expires at, vector)
        self._cache: "OrderedDict[Tuple[str, str], Tuple[float, EmbeddingVector]]" = OrderedDict()
        self.cache_hits = 0
        self.cache_misses = 0

        providers = [p.name for p in self.chain.embedding_providers()]
        logger.info(f"Initialized EmbeddingGateway: dimension={dimension}, providers={providers or 'fallback only'}")

    async def embed_query(self, text: str) -> EmbeddingVector:
        """
        Embed a single query string.

        Raises:
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        """
        Embed texts, preserving input order.

        Cached provider vectors are reused; only the misses are sent, split
        client-side into batches of `max_batch` that run concurrently.

        Raises:
            ValueError: If any text is empty
            EmbeddingUnavailableError: If even the fallback cannot run
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Text cannot be empty")

        vectors: List[Optional[EmbeddingVector]] = [self._cache_get(t) for t in texts]
        misses = [i for i, vector in enumerate(vectors) if vector is None]
        self.cache_hits += len(texts) - len(misses)
        self.cache_misses += len(misses)
        if not misses:
            logger.debug(f"Embedding cache served all {len(texts)} texts")
            return vectors

        pending = [texts[i] for i in misses]
        batches = [pending[i:i + self.max_batch] for i in range(0, len(pending), self.max_batch)]
        results = await asyncio.gather(*(self._embed_one_batch(batch) for batch in batches))
        for i, vector in zip(misses, (vector for batch in results for vector in batch)):
            vectors[i] = vector
            self._cache_put(texts[i], vector)
        return vectors

    def _cache_get(self, text: str) -> Optional[EmbeddingVector]:
        if self.cache_size <= 0 or not self._cache:
            return None
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        now = self.clock()
        for provider in self.chain.embedding_providers():
            key = (provider.embedding_model_id, digest)
            entry = self._cache.get(key)
            if entry is None:
                continue
            expires_at, vector = entry
            if expires_at <= now:
                del self._cache[key]
                continue
            self._cache.move_to_end(key)
            return vector
        return None

    def _cache_put(self, text: str, vector: EmbeddingVector) -> None:
        # Fallback vectors are not cached so a recovered provider is used again
        if self.cache_size <= 0 or vector.is_fallback:
            return
        key = (vector.model_id, hashlib.sha256(text.encode("utf-8")).hexdigest())
        self._cache[key] = (self.clock() + self.cache_ttl, vector)
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def _embed_one_batch(self, texts: List[str]) -> List[EmbeddingVector]:
        for provider in self.chain.embedding_providers():
            raw = await self._call_with_retry(provider, texts)
            if raw is None:
                continue
            try:
                vectors = [self._to_vector(values, provider.embedding_model_id) for values in raw]
            except ValueError as e:
                logger.warning(f"Discarding embeddings from {provider.name}: {e}")
                continue
            return vectors

        logger.warning(
            f"Embedding providers exhausted, using fallback vectors for {len(texts)} texts",
            extra={"event": "embedding_fallback", "batch_size": len(texts)},
        )
        return [self.dummy_embedding(text) for text in texts]

    async def _call_with_retry(self, provider: AIProvider, texts: List[str]) -> Optional[List[List[float]]]:
        """Call one provider with exponential backoff; None when it gives up."""
        delay = self.base_delay

        for attempt in range(self.max_attempts):
            try:
                start_time = time.time()
                raw = await provider.embed(texts)
                elapsed = time.time() - start_time
                logger.debug(f"{provider.name} embedded {len(texts)} texts in {elapsed:.2f}s")
                return raw
            except ProviderCallError as e:
                logger.warning(
                    f"Embedding attempt {attempt + 1}/{self.max_attempts} with {provider.name} failed: {e}",
                    extra={"error_code": e.error.code, "provider": provider.name},
                )
                if not e.error.retryable:
                    return None
                if attempt < self.max_attempts - 1:
                    await asyncio.sleep(delay)
                    delay *= 2

        return None

    def _to_vector(self, values, model_id: str) -> EmbeddingVector:
        if len(values) != self.dimension:
            raise ValueError(f"expected dimension {self.dimension}, got {len(values)}")
        return EmbeddingVector(values=l2_normalize(values), model_id=model_id)

    def dummy_embedding(self, text: str) -> EmbeddingVector:
        """
        Deterministic pseudo-random unit vector seeded by the text's SHA-256.

        Identical text always yields a bit-identical vector.
        """
        if self.dimension <= 0:
            raise EmbeddingUnavailableError(f"Fallback embedding needs a positive dimension, got {self.dimension}")
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
        values = rng.standard_normal(self.dimension)
        return EmbeddingVector(values=l2_normalize(values), model_id=self.fallback_model_id, is_fallback=True)
