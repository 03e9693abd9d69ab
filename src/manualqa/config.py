# /manualqa/config.py
"""
Centralized configuration for the manual Q&A service.
Includes provider settings, retrieval tuning, paths and auth tokens.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0, maximum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    value = max(float(minimum), value)
    if maximum is not None:
        value = min(float(maximum), value)
    return value


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Embedding Provider ---
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
EMBEDDING_BASE_URL = os.getenv("EMBEDDING_BASE_URL") or None
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = _env_int("EMBEDDING_DIMENSIONS", 1536, minimum=8)
# Inputs longer than this are cut before submission; the tail is not embedded.
EMBEDDING_MAX_INPUT_CHARS = _env_int("EMBEDDING_MAX_INPUT_CHARS", 8000, minimum=256)
EMBEDDING_BATCH_SIZE = _env_int("EMBEDDING_BATCH_SIZE", 20, minimum=1)
EMBEDDING_RETRY_DELAY_S = _env_float("EMBEDDING_RETRY_DELAY_S", 5.0, minimum=0.0)
EMBEDDING_MAX_ATTEMPTS = _env_int("EMBEDDING_MAX_ATTEMPTS", 5, minimum=1)

# --- Chat Completion Gateway ---
CHAT_API_KEY = os.getenv("CHAT_API_KEY") or OPENAI_API_KEY
CHAT_BASE_URL = os.getenv("CHAT_BASE_URL") or None
CHAT_MODEL_NAME = os.getenv("CHAT_MODEL_NAME", "google/gemini-2.5-flash")
CHAT_TEMPERATURE = _env_float("CHAT_TEMPERATURE", 0.7, minimum=0.0, maximum=2.0)
CHAT_MAX_TOKENS = _env_int("CHAT_MAX_TOKENS", 1000, minimum=16)
CHAT_MAX_RETRIES = _env_int("CHAT_MAX_RETRIES", 0, minimum=0)

# --- Chunking Configuration ---
# ~800-1000 tokens per chunk.
CHUNK_TARGET_CHARS = _env_int("CHUNK_TARGET_CHARS", 3500, minimum=200)

# --- Retrieval Tuning ---
# Lower thresholds keep conversational follow-ups from returning nothing.
SEMANTIC_SIMILARITY_THRESHOLD = _env_float("SEMANTIC_SIMILARITY_THRESHOLD", 0.15, minimum=0.0, maximum=1.0)
SEMANTIC_CANDIDATE_LIMIT = _env_int("SEMANTIC_CANDIDATE_LIMIT", 20, minimum=1)
KEYWORD_CANDIDATE_LIMIT = _env_int("KEYWORD_CANDIDATE_LIMIT", 15, minimum=1)
RETRIEVAL_TOP_K = _env_int("RETRIEVAL_TOP_K", 12, minimum=1)
HISTORY_CONTEXT_MESSAGES = _env_int("HISTORY_CONTEXT_MESSAGES", 4, minimum=0)
MAX_QUERY_CHARS = _env_int("MAX_QUERY_CHARS", 8000, minimum=256)
CONVERSATION_HISTORY_LIMIT = _env_int("CONVERSATION_HISTORY_LIMIT", 10, minimum=1)

# --- Prompt Context ---
CONTEXT_WINDOW_CHARS = _env_int("CONTEXT_WINDOW_CHARS", 800, minimum=50)
CONTEXT_MAX_CHARS = _env_int("CONTEXT_MAX_CHARS", 60000, minimum=1000)

# --- Manual Search ---
SEARCH_SIMILARITY_THRESHOLD = _env_float("SEARCH_SIMILARITY_THRESHOLD", 0.20, minimum=0.0, maximum=1.0)
SEARCH_PAGE_SIZE = _env_int("SEARCH_PAGE_SIZE", 20, minimum=1)

# --- Request Budget ---
QUERY_TIMEOUT_S = _env_float("QUERY_TIMEOUT_S", 90.0, minimum=1.0)
API_WORKERS = _env_int("API_WORKERS", 4, minimum=1)

# --- Manual Defaults ---
MANUAL_SOURCE = os.getenv("MANUAL_SOURCE", "")
MANUAL_TITLE = os.getenv("MANUAL_TITLE", "Navy Diving Manual Rev 7")
MANUAL_VERSION = os.getenv("MANUAL_VERSION", "7")
MANUAL_DESCRIPTION = os.getenv("MANUAL_DESCRIPTION", "U.S. Navy Diving Manual Revision 7")
# Seed an empty index from MANUAL_SOURCE when the API starts.
SEED_INDEX_ON_STARTUP = _env_bool("SEED_INDEX_ON_STARTUP", False)

# --- Authentication ---
SERVICE_ROLE_KEY = os.getenv("SERVICE_ROLE_KEY", "")
# Format: "token:user_id:role|role,token2:user_id2:role"
API_TOKENS = os.getenv("API_TOKENS", "")

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/manualqa/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

KNOWLEDGE_DB_PATH = Path(os.getenv("KNOWLEDGE_DB_PATH", str(DATA_DIR / "knowledge.sqlite")))
CONVERSATION_DB_PATH = Path(os.getenv("CONVERSATION_DB_PATH", str(DATA_DIR / "conversations.sqlite")))
STORAGE_DIR = Path(os.getenv("STORAGE_DIR", str(DATA_DIR / "manuals")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(DATA_DIR / "logs")))

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "logs" / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
