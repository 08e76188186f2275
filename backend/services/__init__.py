"""Services for the StoreSage knowledge base."""
from .errors import (
    KnowledgeBaseError,
    InvalidConfigError,
    EmbeddingUnavailableError,
    StoreUnavailableError,
    GenerationExhaustedError,
    SafetyBlockedError,
)
from .chunking_engine import ChunkingEngine
from .content_scanner import ContentScanner, InMemoryContentScanner, JsonExportScanner
from .providers import (
    AIProvider,
    OpenAICompatibleProvider,
    GroqProvider,
    CannedResponseProvider,
    ProviderChain,
    ProviderError,
    ProviderCallError,
)
from .embedding_gateway import EmbeddingGateway
from .vector_store import VectorStore, InMemoryVectorStore, SupabaseVectorStore
from .reranker import RetrievalReranker, RerankWeights
from .context_builder import ContextWindowBuilder
from .prompt_builder import PromptBuilder
from .safety_guard import SafetyGuard, SafetyPatterns
from .plan_policy import PlanPolicyResolver, Classification
from .generation_gateway import GenerationGateway
from .pipeline import PipelineOrchestrator

__all__ = [
    'KnowledgeBaseError', 'InvalidConfigError', 'EmbeddingUnavailableError', 'StoreUnavailableError',
    'GenerationExhaustedError', 'SafetyBlockedError', 'ChunkingEngine', 'ContentScanner',
    'InMemoryContentScanner', 'JsonExportScanner', 'AIProvider', 'OpenAICompatibleProvider', 'GroqProvider',
    'CannedResponseProvider', 'ProviderChain', 'ProviderError', 'ProviderCallError', 'EmbeddingGateway',
    'VectorStore', 'InMemoryVectorStore', 'SupabaseVectorStore', 'RetrievalReranker', 'RerankWeights',
    'ContextWindowBuilder', 'PromptBuilder', 'SafetyGuard', 'SafetyPatterns', 'PlanPolicyResolver',
    'Classification', 'GenerationGateway', 'PipelineOrchestrator',
]
