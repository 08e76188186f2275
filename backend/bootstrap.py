"""Builds a PipelineOrchestrator from environment configuration."""
import logging
from typing import List, Optional

from services.content_scanner import ContentScanner, JsonExportScanner
from services.embedding_gateway import EmbeddingGateway
from services.generation_gateway import GenerationGateway
from services.pipeline import PipelineOrchestrator
from services.providers import (
    PREMIUM,
    STANDARD,
    AIProvider,
    CannedResponseProvider,
    GroqProvider,
    OpenAICompatibleProvider,
    ProviderChain,
)
from services.vector_store import InMemoryVectorStore, SupabaseVectorStore, VectorStore
from services.errors import InvalidConfigError
from config import (
    CANNED_FALLBACK_ENABLED,
    CONTENT_EXPORT_PATH,
    EMBEDDING_API_KEY,
    EMBEDDING_API_URL,
    EMBEDDING_DIMENSION,
    EMBEDDING_MODEL,
    EMBEDDING_TIMEOUT,
    GROQ_API_KEY,
    GROQ_MODEL,
    GROQ_PREMIUM_MODEL,
    OPENROUTER_API_KEY,
    OPENROUTER_API_URL,
    PREMIUM_MODEL,
    PRIMARY_MODEL,
    VECTOR_STORE_BACKEND,
    VECTOR_STORE_PATH,
)

logger = logging.getLogger(__name__)


def build_provider_chain() -> ProviderChain:
    """Providers in fallback order: OpenRouter, embedding API, Groq, canned."""
    providers: List[AIProvider] = []

    if OPENROUTER_API_KEY:
        providers.append(OpenAICompatibleProvider(
            name="openrouter",
            api_key=OPENROUTER_API_KEY,
            base_url=OPENROUTER_API_URL,
            chat_models={STANDARD: PRIMARY_MODEL, PREMIUM: PREMIUM_MODEL},
        ))
    if EMBEDDING_API_KEY:
        providers.append(OpenAICompatibleProvider(
            name="openai",
            api_key=EMBEDDING_API_KEY,
            base_url=EMBEDDING_API_URL,
            embedding_model=EMBEDDING_MODEL,
            timeout=EMBEDDING_TIMEOUT,
        ))
    if GROQ_API_KEY:
        providers.append(GroqProvider(
            api_key=GROQ_API_KEY,
            chat_models={STANDARD: GROQ_MODEL, PREMIUM: GROQ_PREMIUM_MODEL},
        ))
    if CANNED_FALLBACK_ENABLED:
        providers.append(CannedResponseProvider())

    if not providers:
        logger.warning("No AI providers configured; every query will be answered as degraded")
    return ProviderChain(providers)


def build_vector_store(backend: str = VECTOR_STORE_BACKEND) -> VectorStore:
    if backend == "memory":
        return InMemoryVectorStore(dimension=EMBEDDING_DIMENSION, persist_path=VECTOR_STORE_PATH, autosave=False)
    if backend == "supabase":
        return SupabaseVectorStore()
    raise InvalidConfigError(f"Unknown vector store backend '{backend}', expected memory or supabase")


def build_orchestrator(scanner: Optional[ContentScanner] = None) -> PipelineOrchestrator:
    """
    Wire every pipeline component from config.

    Args:
        scanner: Content source; defaults to the JSON export at CONTENT_EXPORT_PATH

    Returns:
        Ready-to-use PipelineOrchestrator
    """
    chain = build_provider_chain()
    orchestrator = PipelineOrchestrator(
        scanner=scanner or JsonExportScanner(CONTENT_EXPORT_PATH),
        embedder=EmbeddingGateway(chain),
        store=build_vector_store(),
        generator=GenerationGateway(chain),
    )
    logger.info(f"Pipeline ready: backend={VECTOR_STORE_BACKEND}, providers={[p.name for p in chain]}")
    return orchestrator
