from __future__ import annotations

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables before configuring the service.
load_dotenv()
load_dotenv(Path.home() / ".config" / "avatarmem" / ".env")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() not in {"0", "false", "no", "off", ""}


# Qdrant configuration
COLLECTION_NAME = os.getenv("QDRANT_COLLECTION", "memory_fragments")
# text-embedding-3-small produces 1536d vectors; change together with EMBEDDING_MODEL
VECTOR_SIZE = int(os.getenv("VECTOR_SIZE") or os.getenv("QDRANT_VECTOR_SIZE", "1536"))
VECTOR_SIZE_AUTODETECT = _env_flag("VECTOR_SIZE_AUTODETECT", "false")

# Provider configuration
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EXTRACTION_MODEL = os.getenv("EXTRACTION_MODEL", "gpt-4o-mini")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))

# Extraction limits
EXTRACTION_MIN_WORDS = int(os.getenv("EXTRACTION_MIN_WORDS", "3"))
EXTRACTION_MAX_CANDIDATES = int(os.getenv("EXTRACTION_MAX_CANDIDATES", "10"))
EXTRACTION_MIN_CONFIDENCE = float(os.getenv("EXTRACTION_MIN_CONFIDENCE", "0.0"))
FRAGMENT_MAX_LENGTH = int(os.getenv("FRAGMENT_MAX_LENGTH", "500"))
CONTEXT_EXCERPT_LENGTH = int(os.getenv("CONTEXT_EXCERPT_LENGTH", "200"))

# Recall defaults. Call sites pass their own threshold when they need one.
RECALL_SIMILARITY_THRESHOLD = float(os.getenv("RECALL_SIMILARITY_THRESHOLD", "0.5"))
RECALL_MAX_RESULTS = int(os.getenv("RECALL_MAX_RESULTS", "5"))
RECALL_MAX_LIMIT = int(os.getenv("RECALL_MAX_LIMIT", "50"))

# Background pipeline
PIPELINE_WORKERS = int(os.getenv("PIPELINE_WORKERS", "2"))
PIPELINE_QUEUE_MAXSIZE = int(os.getenv("PIPELINE_QUEUE_MAXSIZE", "256"))
PIPELINE_EMBED_CONCURRENCY = int(os.getenv("PIPELINE_EMBED_CONCURRENCY", "4"))
PIPELINE_MAX_ATTEMPTS = int(os.getenv("PIPELINE_MAX_ATTEMPTS", "3"))
PIPELINE_RETRY_BACKOFF_SECONDS = float(os.getenv("PIPELINE_RETRY_BACKOFF_SECONDS", "0.5"))
PIPELINE_IDLE_SLEEP_SECONDS = float(os.getenv("PIPELINE_IDLE_SLEEP_SECONDS", "1"))

# Circuit breakers around extraction, embedding and storage
CIRCUIT_BREAKER_FAILURE_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "5"))
CIRCUIT_BREAKER_RECOVERY_SECONDS = float(os.getenv("CIRCUIT_BREAKER_RECOVERY_SECONDS", "60"))

# Cache layer
CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "300"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "1024"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Relationship value stored for the avatar owner's own fragments
OWNER_RELATIONSHIP = "owner"

# Emotional tone labels recorded in conversation context
EMOTIONAL_TONES = {"positive", "negative", "anxious", "neutral"}
