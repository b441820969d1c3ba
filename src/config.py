"""
src/config.py
==============
Runtime Settings — SCAI Guard

Responsibility:
    - Read every tunable of the session engine from the environment
    - Apply defaults for anything not set
    - Reject malformed values at startup instead of at first use

Environment variables are read after ``load_dotenv()`` has run in
``main.py``, so a local ``.env`` file works the same as exported values.

This module does NOT:
    - Hold any session state
    - Configure logging (that is main.py)
"""

import os
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_RETENTION_SECONDS: float = 3600.0
DEFAULT_EVICTION_INTERVAL_SECONDS: float = 60.0
DEFAULT_SCORING_TIMEOUT_SECONDS: float = 10.0
DEFAULT_SCORING_MAX_RETRIES: int = 2
DEFAULT_SCORING_BASE_DELAY: float = 0.5
DEFAULT_SCORING_MAX_DELAY: float = 5.0
DEFAULT_AUDIT_LOG_MAX_ENTRIES: int = 1000
DEFAULT_MAX_CHUNK_BYTES: int = 50 * 1024 * 1024  # 50MB upload limit
DEFAULT_MAX_TOTAL_CHUNKS: int = 10_000  # ~2.8h of 1s chunks

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of the engine configuration."""

    retention_seconds: float = DEFAULT_RETENTION_SECONDS
    eviction_interval_seconds: float = DEFAULT_EVICTION_INTERVAL_SECONDS
    scoring_timeout_seconds: float = DEFAULT_SCORING_TIMEOUT_SECONDS
    scoring_max_retries: int = DEFAULT_SCORING_MAX_RETRIES
    scoring_base_delay: float = DEFAULT_SCORING_BASE_DELAY
    scoring_max_delay: float = DEFAULT_SCORING_MAX_DELAY
    allow_implicit_sessions: bool = True
    audit_log_max_entries: int = DEFAULT_AUDIT_LOG_MAX_ENTRIES
    max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES
    max_total_chunks: int = DEFAULT_MAX_TOTAL_CHUNKS
    webhook_url: str | None = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        Validated Settings.

    Raises:
        ValueError: If any variable is set to an unparseable or
            out-of-range value.
    """
    env = os.environ if environ is None else environ

    settings = Settings(
        retention_seconds=_read_float(env, "SESSION_RETENTION_SECONDS", DEFAULT_RETENTION_SECONDS),
        eviction_interval_seconds=_read_float(
            env, "EVICTION_INTERVAL_SECONDS", DEFAULT_EVICTION_INTERVAL_SECONDS
        ),
        scoring_timeout_seconds=_read_float(
            env, "SCORING_TIMEOUT_SECONDS", DEFAULT_SCORING_TIMEOUT_SECONDS
        ),
        scoring_max_retries=_read_int(env, "SCORING_MAX_RETRIES", DEFAULT_SCORING_MAX_RETRIES),
        scoring_base_delay=_read_float(env, "SCORING_BASE_DELAY", DEFAULT_SCORING_BASE_DELAY),
        scoring_max_delay=_read_float(env, "SCORING_MAX_DELAY", DEFAULT_SCORING_MAX_DELAY),
        allow_implicit_sessions=_read_bool(env, "ALLOW_IMPLICIT_SESSIONS", True),
        audit_log_max_entries=_read_int(
            env, "AUDIT_LOG_MAX_ENTRIES", DEFAULT_AUDIT_LOG_MAX_ENTRIES
        ),
        max_chunk_bytes=_read_int(env, "MAX_CHUNK_BYTES", DEFAULT_MAX_CHUNK_BYTES),
        max_total_chunks=_read_int(env, "MAX_TOTAL_CHUNKS", DEFAULT_MAX_TOTAL_CHUNKS),
        webhook_url=(env.get("WEBHOOK_URL") or "").strip() or None,
    )

    if settings.scoring_timeout_seconds <= 0:
        raise ValueError("SCORING_TIMEOUT_SECONDS must be > 0")
    if settings.eviction_interval_seconds <= 0:
        raise ValueError("EVICTION_INTERVAL_SECONDS must be > 0")
    if settings.audit_log_max_entries < 1:
        raise ValueError("AUDIT_LOG_MAX_ENTRIES must be >= 1")
    if settings.max_chunk_bytes < 1:
        raise ValueError("MAX_CHUNK_BYTES must be >= 1")
    if settings.max_total_chunks < 1:
        raise ValueError("MAX_TOTAL_CHUNKS must be >= 1")

    return settings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _read_float(env, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def _read_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def _read_bool(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
