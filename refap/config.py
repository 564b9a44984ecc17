"""
Centralized configuration with environment variable overrides.

All business-specific values, CTA targets, thresholds, and model settings
are configurable here. Nothing is hardcoded in the decision core or in
the collaborator adapters.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from refap.logging_context import SessionIdFilter

load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] [%(session_id)s] %(levelname)s: %(message)s"


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    return os.getenv(env_var, default).strip().lower() in ("1", "true", "yes", "on")


def _csv(env_var: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(env_var, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class BusinessConfig:
    """Brand settings and call-to-action targets."""

    bot_name: str = os.getenv("BOT_NAME", "Re-FAP Bot")
    stripped_brands: tuple[str, ...] = _csv(
        "STRIPPED_BRANDS", "Re-FAP,Refap,Cerameca,Carter-Cash,Norauto,Feu Vert,Midas,Speedy"
    )
    cta_diagnostic_url: str = os.getenv(
        "CTA_DIAGNOSTIC_URL", "https://www.re-fap.fr/trouver-garage-partenaire/"
    )
    cta_drop_off_url: str = os.getenv(
        "CTA_DROP_OFF_URL", "https://www.re-fap.fr/depot-fap-magasin/"
    )
    cta_garage_finder_url: str = os.getenv(
        "CTA_GARAGE_FINDER_URL", "https://www.re-fap.fr/trouver-un-garage/"
    )
    cta_info_url: str = os.getenv(
        "CTA_INFO_URL", "https://www.re-fap.fr/nettoyage-fap-explications/"
    )
    cta_callback_url: str = os.getenv(
        "CTA_CALLBACK_URL", "https://www.re-fap.fr/etre-rappele/"
    )


@dataclass(frozen=True)
class ModelConfig:
    """LLM provider settings."""

    api_key: Optional[str] = os.getenv("OPENAI_API_KEY") or None
    base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    llm_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    llm_temperature: float = _safe_float("LLM_TEMPERATURE", "0.2")
    max_reply_tokens: int = _safe_int("MAX_REPLY_TOKENS", "600")
    stream_timeout_ms: int = _safe_int("STREAM_TIMEOUT_MS", "15000")
    cache_ttl_ms: int = _safe_int("STREAM_CACHE_TTL_MS", "600000")
    cache_max_entries: int = _safe_int("STREAM_CACHE_MAX_ENTRIES", "1000")


@dataclass(frozen=True)
class ConversationConfig:
    """Thresholds and bounds for the decision core."""

    history_turns: int = _safe_int("HISTORY_TURNS", "6")
    symptoms_max_chars: int = _safe_int("SYMPTOMS_MAX_CHARS", "500")
    free_text_answer_max_chars: int = _safe_int("FREE_TEXT_ANSWER_MAX_CHARS", "160")
    max_message_chars: int = _safe_int("MAX_MESSAGE_CHARS", "2000")
    max_ctas: int = _safe_int("MAX_CTAS", "3")
    high_score_threshold: int = _safe_int("HIGH_SCORE_THRESHOLD", "60")
    medium_score_threshold: int = _safe_int("MEDIUM_SCORE_THRESHOLD", "40")
    signal_patterns_path: Optional[str] = os.getenv("SIGNAL_PATTERNS_PATH") or None
    debug_reasons: bool = _safe_bool("DEBUG_REASONS", "false")


@dataclass(frozen=True)
class DatabaseConfig:
    """Relational store settings. An empty URL disables DB-backed features."""

    url: Optional[str] = os.getenv("DATABASE_URL") or None
    pool_size: int = _safe_int("DB_POOL_SIZE", "10")
    retrieval_top_k: int = _safe_int("RETRIEVAL_TOP_K", "5")
    lead_buffer_size: int = _safe_int("LEAD_BUFFER_SIZE", "500")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    business: BusinessConfig = field(default_factory=BusinessConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = _safe_int("PORT", "3000")
    cors_origins: tuple[str, ...] = _csv("CORS_ORIGINS", "*")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if not 0.0 <= config.model.llm_temperature <= 2.0:
        raise ValueError(
            f"LLM_TEMPERATURE must be between 0.0 and 2.0, got {config.model.llm_temperature}"
        )
    if config.model.stream_timeout_ms <= 0:
        raise ValueError(
            f"STREAM_TIMEOUT_MS must be > 0, got {config.model.stream_timeout_ms}"
        )
    if config.model.cache_ttl_ms < 0:
        raise ValueError(
            f"STREAM_CACHE_TTL_MS must be >= 0, got {config.model.cache_ttl_ms}"
        )
    if config.model.cache_max_entries < 1:
        raise ValueError(
            f"STREAM_CACHE_MAX_ENTRIES must be >= 1, got {config.model.cache_max_entries}"
        )

    conv = config.conversation
    if not 0 < conv.medium_score_threshold < conv.high_score_threshold <= 100:
        raise ValueError(
            "Score thresholds must satisfy 0 < MEDIUM_SCORE_THRESHOLD < HIGH_SCORE_THRESHOLD <= 100, "
            f"got {conv.medium_score_threshold} / {conv.high_score_threshold}"
        )
    for name, value in [
        ("HISTORY_TURNS", conv.history_turns),
        ("MAX_CTAS", conv.max_ctas),
        ("SYMPTOMS_MAX_CHARS", conv.symptoms_max_chars),
        ("FREE_TEXT_ANSWER_MAX_CHARS", conv.free_text_answer_max_chars),
        ("MAX_MESSAGE_CHARS", conv.max_message_chars),
    ]:
        if value < 1:
            raise ValueError(f"{name} must be >= 1, got {value}")

    if config.database.pool_size < 1:
        raise ValueError(f"DB_POOL_SIZE must be >= 1, got {config.database.pool_size}")
    if config.database.retrieval_top_k < 1:
        raise ValueError(
            f"RETRIEVAL_TOP_K must be >= 1, got {config.database.retrieval_top_k}"
        )
    if config.database.lead_buffer_size < 1:
        raise ValueError(
            f"LEAD_BUFFER_SIZE must be >= 1, got {config.database.lead_buffer_size}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SessionIdFilter) for f in handler.filters):
            handler.addFilter(SessionIdFilter())
    logger.info(
        "Configuration loaded for '%s' (model=%s, db=%s)",
        config.business.bot_name,
        config.model.llm_model,
        "configured" if config.database.url else "disabled",
    )
    return config


# Singleton instance
settings = load_config()
