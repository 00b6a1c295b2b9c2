"""Configuration for the Legion chat service."""

import os
from dotenv import load_dotenv

# Load local env files if present (never commit these).
# - `.env.local` is convenient for local dev.
# - `.env` is the default for docker-compose variable substitution.
load_dotenv(dotenv_path=".env.local", override=False)
load_dotenv(dotenv_path=".env", override=False)

# Environment name (used for warnings/behavior toggles)
ENV = os.getenv("ENV", "development")

# Database URL (async driver recommended: postgresql+asyncpg://...)
DATABASE_URL = os.getenv("DATABASE_URL")

# Auth: allow bypassing API key auth in local dev. Requests without a key then act as DEV_ACCOUNT_ID.
ALLOW_NO_AUTH = os.getenv("ALLOW_NO_AUTH", "false").lower() == "true"
DEV_ACCOUNT_ID = os.getenv("DEV_ACCOUNT_ID", "dev.near")

# API key hashing pepper/secret (required when ALLOW_NO_AUTH is false).
API_KEY_PEPPER = os.getenv("API_KEY_PEPPER", "")

# Model backend (any OpenAI-compatible chat completions endpoint; NEAR AI Cloud by default).
MODEL_API_KEY = os.getenv("MODEL_API_KEY") or os.getenv("NEAR_AI_API_KEY")
MODEL_API_URL = os.getenv("MODEL_API_URL", "https://cloud-api.near.ai/v1/chat/completions")
MODEL_NAME = os.getenv("MODEL_NAME", "deepseek-ai/DeepSeek-V3.1")

# Model client hardening knobs
MODEL_MAX_CONCURRENCY = int(os.getenv("MODEL_MAX_CONCURRENCY", "8"))
MODEL_MAX_RETRIES = int(os.getenv("MODEL_MAX_RETRIES", "2"))
MODEL_RETRY_BASE_SECONDS = float(os.getenv("MODEL_RETRY_BASE_SECONDS", "0.5"))
MODEL_TIMEOUT_SECONDS = float(os.getenv("MODEL_TIMEOUT_SECONDS", "120.0"))
MODEL_AUTH_COOLDOWN_SECONDS = int(os.getenv("MODEL_AUTH_COOLDOWN_SECONDS", "60"))

# Chat turn limits
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT", "20"))
CHAT_MAX_TOOL_ITERATIONS = int(os.getenv("CHAT_MAX_TOOL_ITERATIONS", "5"))
CHAT_MAX_MESSAGE_CHARS = int(os.getenv("CHAT_MAX_MESSAGE_CHARS", "10000"))
CONVERSATION_TITLE_MAX_CHARS = int(os.getenv("CONVERSATION_TITLE_MAX_CHARS", "100"))
CONVERSATION_LIST_LIMIT = int(os.getenv("CONVERSATION_LIST_LIMIT", "50"))

# Status text streamed to the client while tools run (empty disables it).
TOOL_STATUS_TEXT = os.getenv("TOOL_STATUS_TEXT", "\n\nSearching builders database...\n\n")

# Retry-after hints (seconds) surfaced with provider errors
SERVICE_UNAVAILABLE_RETRY_AFTER = 30
RATE_LIMITED_RETRY_AFTER = 60

# NEAR on-chain rank lookup
NEAR_RPC_URL = os.getenv("NEAR_RPC_URL", "https://rpc.mainnet.near.org")
NEAR_RANK_CONTRACT_ID = os.getenv("NEAR_RANK_CONTRACT_ID", "nearlegion.nfts.tg")
NEAR_INITIATE_CONTRACT_ID = os.getenv("NEAR_INITIATE_CONTRACT_ID", "initiate.nearlegion.near")
NEAR_ASCENDANT_CONTRACT_ID = os.getenv("NEAR_ASCENDANT_CONTRACT_ID", "ascendant.nearlegion.near")
NEAR_RPC_TIMEOUT_SECONDS = float(os.getenv("NEAR_RPC_TIMEOUT_SECONDS", "5"))
NEAR_RANK_LOOKUP_ENABLED = os.getenv("NEAR_RANK_LOOKUP_ENABLED", "true").lower() == "true"

# Rank cache (24h by default)
RANK_CACHE_TTL_SECONDS = int(os.getenv("RANK_CACHE_TTL_SECONDS", str(24 * 60 * 60)))

# Client-side coalescing interval for streamed tokens
STREAM_FLUSH_INTERVAL_SECONDS = float(os.getenv("STREAM_FLUSH_INTERVAL_SECONDS", "0.05"))


def _parse_csv_list(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [v.strip() for v in value.split(",")]
    items = [v for v in items if v]
    return items or None


def cors_allow_origins() -> list[str]:
    origins = _parse_csv_list(os.getenv("CORS_ALLOW_ORIGINS"))
    if origins:
        return origins
    if ENV == "production":
        return []
    return ["http://localhost:5173", "http://localhost:3000"]


def model_configured() -> bool:
    return bool(MODEL_API_KEY)
