"""Configuration management for the StoreSage knowledge base pipeline."""
import json
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# API Keys
EMBEDDING_API_KEY = os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Provider endpoints
EMBEDDING_API_URL = os.getenv("EMBEDDING_API_URL", "https://api.openai.com/v1")
OPENROUTER_API_URL = os.getenv("OPENROUTER_API_URL", "https://openrouter.ai/api/v1")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8080"
).split(",")

# Store identity, used in prompts
STORE_NAME = os.getenv("STORE_NAME", "our store")

# Model Configuration
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1536"))
PRIMARY_MODEL = os.getenv("PRIMARY_MODEL", "google/gemini-2.5-flash")
PREMIUM_MODEL = os.getenv("PREMIUM_MODEL", "google/gemini-2.5-pro")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
GROQ_PREMIUM_MODEL = os.getenv("GROQ_PREMIUM_MODEL", "llama-3.3-70b-versatile")

# Embedding Gateway
EMBEDDING_MAX_BATCH = 100
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "30"))
EMBEDDING_MAX_ATTEMPTS = 3
EMBEDDING_RETRY_BASE_DELAY = 0.5  # seconds, doubled per attempt
EMBEDDING_CACHE_SIZE = int(os.getenv("EMBEDDING_CACHE_SIZE", "1000"))  # 0 disables
EMBEDDING_CACHE_TTL = float(os.getenv("EMBEDDING_CACHE_TTL", "86400"))  # seconds

# Generation Gateway
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "30"))
STREAM_FLUSH_CHARS = 200
CANNED_FALLBACK_ENABLED = _get_bool("CANNED_FALLBACK_ENABLED", "true")

# Vector Store
VECTOR_STORE_BACKEND = os.getenv("VECTOR_STORE_BACKEND", "memory")  # memory | supabase
VECTOR_STORE_PATH = os.getenv("VECTOR_STORE_PATH")  # JSON snapshot for the memory backend
SUPABASE_TABLE = os.getenv("SUPABASE_TABLE", "kb_chunks")

# Content source
CONTENT_EXPORT_PATH = os.getenv("CONTENT_EXPORT_PATH", "store_export.json")

# Chunking Configuration (characters)
CHUNK_SIZE = 1000
CHUNK_OVERLAP = 100
MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 2000
CHUNK_DEFAULTS = {
    "product": (800, 80),
    "page": (1000, 100),
    "policy": (1000, 100),
    "faq": (600, 60),
    "setting": (600, 60),
}

# Retrieval Configuration
RERANK_WEIGHTS = {
    "semantic": 0.40,
    "content_type": 0.25,
    "freshness": 0.15,
    "context_match": 0.10,
    "quality": 0.10,
}
if os.getenv("RERANK_WEIGHTS"):
    RERANK_WEIGHTS.update(json.loads(os.getenv("RERANK_WEIGHTS")))
MIN_RERANK_SCORE = float(os.getenv("MIN_RERANK_SCORE", "0.15"))
MAX_FINAL_CHUNKS = int(os.getenv("MAX_FINAL_CHUNKS", "8"))
KEYWORD_BOOST_CAP = 0.1
FRESHNESS_HORIZON_DAYS = 365
FRESHNESS_FLOOR = 0.3

# Safety Configuration
SAFETY_LEVEL = os.getenv("SAFETY_LEVEL", "moderate")  # strict | moderate | relaxed
BLOCK_CODE_REQUESTS = os.getenv("BLOCK_CODE_REQUESTS")  # unset: tier default
MAX_QUERY_LENGTH = int(os.getenv("MAX_QUERY_LENGTH", "2000"))

# Pipeline Configuration
TOTAL_QUERY_TIMEOUT = float(os.getenv("TOTAL_QUERY_TIMEOUT", "45"))
INDEX_WORKERS = int(os.getenv("INDEX_WORKERS", "4"))
SCAN_BATCH_SIZE = int(os.getenv("SCAN_BATCH_SIZE", "50"))
DEFAULT_PLAN = os.getenv("DEFAULT_PLAN", "free")
