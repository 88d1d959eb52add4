"""
Runtime configuration for the retrieval and completion pipeline.
Values come from environment variables; the dataclasses below snapshot them
so one process-wide set of services can be built (and tests can pass their own).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/recall.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Providers
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")  # openai|ollama
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "openai")  # openai|ollama|sentence-transformers|hash
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")

# Models
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "text-embedding-3-small")
EMBED_DIM = int(os.getenv("EMBED_DIM", "1536"))
MEMORY_EVALUATION_MODEL = os.getenv("MEMORY_EVALUATION_MODEL", "gpt-5-nano")
HYDE_MODEL = os.getenv("HYDE_MODEL", "gpt-5-nano")
FINAL_RESULT_MODEL = os.getenv("FINAL_RESULT_MODEL", "gpt-5")

# Per-call timeouts (seconds)
REQUEST_TIMEOUT_SEC = float(os.getenv("REQUEST_TIMEOUT_SEC", "30"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "10"))
HYDE_TIMEOUT_SEC = float(os.getenv("HYDE_TIMEOUT_SEC", "10"))

# Embedding cache
EMBED_CACHE_MAX_SIZE = int(os.getenv("EMBED_CACHE_MAX_SIZE", "1000"))
EMBED_CACHE_TTL_SEC = float(os.getenv("EMBED_CACHE_TTL_SEC", "3600"))

# HyDE
HYDE_ENABLED = _env_bool("HYDE_ENABLED", "true")
HYDE_MAX_TOKENS = int(os.getenv("HYDE_MAX_TOKENS", "100"))
HYDE_CACHE_MAX_SIZE = int(os.getenv("HYDE_CACHE_MAX_SIZE", "50"))
HYDE_CACHE_TTL_SEC = float(os.getenv("HYDE_CACHE_TTL_SEC", "3600"))

# Completion defaults
COMPLETION_ENABLE_MEMORY_SEARCH = _env_bool("COMPLETION_ENABLE_MEMORY_SEARCH", "true")
COMPLETION_MAX_MEMORY_RESULTS = int(os.getenv("COMPLETION_MAX_MEMORY_RESULTS", "5"))
COMPLETION_MEMORY_THRESHOLD = float(os.getenv("COMPLETION_MEMORY_THRESHOLD", "0.7"))
COMPLETION_DEFAULT_TEMPERATURE = float(os.getenv("COMPLETION_DEFAULT_TEMPERATURE", "0.7"))
COMPLETION_DEFAULT_MAX_TOKENS = int(os.getenv("COMPLETION_DEFAULT_MAX_TOKENS", "1000"))
MEMORY_EVALUATION_ENABLED = _env_bool("MEMORY_EVALUATION_ENABLED", "true")

# Memory extraction
EXTRACTION_MIN_CONFIDENCE = float(os.getenv("EXTRACTION_MIN_CONFIDENCE", "0.5"))
EXTRACTION_DUPLICATE_THRESHOLD = float(os.getenv("EXTRACTION_DUPLICATE_THRESHOLD", "0.98"))

# Version string
VERSION = "1.0.0"


@dataclass
class OpenAISettings:
    api_key: str = OPENAI_API_KEY
    base_url: str = OPENAI_BASE_URL
    timeout_sec: float = REQUEST_TIMEOUT_SEC
    evaluation_model: str = MEMORY_EVALUATION_MODEL
    final_model: str = FINAL_RESULT_MODEL


@dataclass
class HydeSettings:
    enabled: bool = HYDE_ENABLED
    model: str = HYDE_MODEL
    max_tokens: int = HYDE_MAX_TOKENS
    temperature: float = 0.7
    timeout_sec: float = HYDE_TIMEOUT_SEC


@dataclass
class CacheSettings:
    max_size: int = EMBED_CACHE_MAX_SIZE
    ttl_sec: Optional[float] = EMBED_CACHE_TTL_SEC


@dataclass
class CompletionDefaults:
    enable_memory_search: bool = COMPLETION_ENABLE_MEMORY_SEARCH
    enable_memory_evaluation: bool = MEMORY_EVALUATION_ENABLED
    max_memory_results: int = COMPLETION_MAX_MEMORY_RESULTS
    memory_threshold: float = COMPLETION_MEMORY_THRESHOLD
    model: str = FINAL_RESULT_MODEL
    temperature: float = COMPLETION_DEFAULT_TEMPERATURE
    max_tokens: int = COMPLETION_DEFAULT_MAX_TOKENS
    evaluation_model: str = MEMORY_EVALUATION_MODEL
    request_timeout_sec: float = REQUEST_TIMEOUT_SEC


@dataclass
class ExtractionSettings:
    min_confidence: float = EXTRACTION_MIN_CONFIDENCE
    duplicate_threshold: float = EXTRACTION_DUPLICATE_THRESHOLD


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate provider and pipeline configuration and return any issues."""
    issues = []

    if LLM_PROVIDER not in ["openai", "ollama"]:
        issues.append(f"Invalid LLM_PROVIDER: {LLM_PROVIDER}")

    if EMBED_PROVIDER not in ["openai", "ollama", "sentence-transformers", "hash"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if "openai" in (LLM_PROVIDER, EMBED_PROVIDER) and not OPENAI_API_KEY:
        issues.append("OPENAI_API_KEY is required when an OpenAI provider is selected")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if not 1 <= COMPLETION_MAX_MEMORY_RESULTS <= 20:
        issues.append("COMPLETION_MAX_MEMORY_RESULTS must be between 1 and 20")

    if not 0.0 <= COMPLETION_MEMORY_THRESHOLD <= 1.0:
        issues.append("COMPLETION_MEMORY_THRESHOLD must be between 0.0 and 1.0")

    if EMBED_CACHE_MAX_SIZE < 1 or HYDE_CACHE_MAX_SIZE < 1:
        issues.append("Cache sizes must be >= 1")

    return issues
