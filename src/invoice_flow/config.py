"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

EXTRACTION_PROVIDERS = ("fixture", "llm")


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy for workflow steps."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 10.0


@dataclass(frozen=True)
class PoolConfig:
    """Database connection pool sizing."""

    min_size: int = 1
    max_size: int = 10


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_upload_path() -> Path:
    """Return the INVOICE_UPLOAD_PATH, defaulting to ./uploads/invoices.

    Always resolves to an absolute path to avoid issues if the
    working directory changes during execution.
    """
    return Path(os.environ.get("INVOICE_UPLOAD_PATH", "./uploads/invoices")).resolve()


def get_anthropic_api_key() -> str:
    """Return the ANTHROPIC_API_KEY from the environment."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    if not key:
        msg = "ANTHROPIC_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def get_extraction_provider() -> str:
    """Return EXTRACTION_PROVIDER: ``fixture`` (default) or ``llm``."""
    provider = os.environ.get("EXTRACTION_PROVIDER", "fixture").lower()
    if provider not in EXTRACTION_PROVIDERS:
        msg = (
            f"EXTRACTION_PROVIDER must be one of {', '.join(EXTRACTION_PROVIDERS)}, "
            f"got {provider!r}"
        )
        raise ValueError(msg)
    return provider


def get_extraction_timeout() -> float:
    """Return EXTRACTION_TIMEOUT_SECONDS, defaulting to 60."""
    timeout = _get_float("EXTRACTION_TIMEOUT_SECONDS", 60.0)
    if timeout <= 0:
        msg = "EXTRACTION_TIMEOUT_SECONDS must be positive"
        raise ValueError(msg)
    return timeout


def get_retry_config() -> RetryConfig:
    """Build the step retry policy from environment variables.

    Optional: WORKFLOW_MAX_ATTEMPTS (default 3), WORKFLOW_BACKOFF_SECONDS
    (default 1.0), WORKFLOW_MAX_BACKOFF_SECONDS (default 10.0)
    """
    max_attempts = _get_int("WORKFLOW_MAX_ATTEMPTS", 3)
    if max_attempts < 1:
        msg = "WORKFLOW_MAX_ATTEMPTS must be at least 1"
        raise ValueError(msg)

    return RetryConfig(
        max_attempts=max_attempts,
        backoff_seconds=_get_float("WORKFLOW_BACKOFF_SECONDS", 1.0),
        max_backoff_seconds=_get_float("WORKFLOW_MAX_BACKOFF_SECONDS", 10.0),
    )


def get_pool_config() -> PoolConfig:
    """Build pool sizing from DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE."""
    min_size = _get_int("DB_POOL_MIN_SIZE", 1)
    max_size = _get_int("DB_POOL_MAX_SIZE", 10)
    if min_size < 0 or max_size < max(min_size, 1):
        msg = f"Invalid pool size: min={min_size} max={max_size}"
        raise ValueError(msg)
    return PoolConfig(min_size=min_size, max_size=max_size)


def _get_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None


def _get_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        msg = f"{name} must be a number, got {raw!r}"
        raise ValueError(msg) from None
