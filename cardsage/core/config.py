"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
constants. Keeps the rest of the app decoupled from how config is sourced.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


# Test mode swaps every model backend for a scripted stub (no network, no keys)
TEST_MODE: bool = _env_flag("CARDSAGE_TEST_MODE")

# Azure AI Search (from env)
AZURE_SEARCH_ENDPOINT: str = os.getenv("AZURE_SEARCH_ENDPOINT", "").strip().rstrip("/")
AZURE_SEARCH_KEY: str = os.getenv("AZURE_SEARCH_KEY", "").strip()
AZURE_SEARCH_API_VERSION: str = (
    os.getenv("AZURE_SEARCH_API_VERSION", "2023-11-01").strip() or "2023-11-01"
)
# Card content index (documents are named "<card id>.json") and rulings index
AZURE_SEARCH_INDEX_NAME: str = os.getenv("AZURE_SEARCH_INDEX_NAME", "cards").strip() or "cards"
AZURE_SEARCH_INDEX_NAME_RULES: str = (
    os.getenv("AZURE_SEARCH_INDEX_NAME_RULES", "rules").strip() or "rules"
)

# Result caps per adapter (upper bounds, the backend may return fewer)
INFORMATION_TOP_K: int = _env_int("INFORMATION_TOP_K", 10)
RULES_TOP_K: int = _env_int("RULES_TOP_K", 3)

# Timeouts (seconds)
RETRIEVAL_TIMEOUT: float = _env_float("RETRIEVAL_TIMEOUT", 10.0)
# Max wait for the next increment of a model stream
MODEL_TIMEOUT: float = _env_float("MODEL_TIMEOUT", 60.0)
# Max wall time for one tool invocation (may fan out to several searches)
TOOL_TIMEOUT: float = _env_float("TOOL_TIMEOUT", 30.0)

# Agent loop
MAX_STEPS: int = _env_int("MAX_STEPS", 8)
AGENT_MAX_TOKENS: int = _env_int("AGENT_MAX_TOKENS", 1024)

# Streaming transport
STREAM_CHUNK_DELAY: float = _env_float("STREAM_CHUNK_DELAY", 0.01)
STREAM_QUEUE_SIZE: int = _env_int("STREAM_QUEUE_SIZE", 64)
CANCEL_GRACE_PERIOD: float = _env_float("CANCEL_GRACE_PERIOD", 2.0)

# OpenAI-compatible chat completions (production backends)
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_BASE_URL: str | None = os.getenv("OPENAI_BASE_URL", "").strip() or None
OPENAI_CHAT_MODEL: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
OPENAI_REASONING_MODEL: str = (
    os.getenv("OPENAI_REASONING_MODEL", "o4-mini").strip() or "o4-mini"
)
OPENAI_LIGHT_MODEL: str = (
    os.getenv("OPENAI_LIGHT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
)

DEFAULT_MODEL_KEY: str = "chat-model"
