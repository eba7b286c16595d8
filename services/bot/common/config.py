# Centralised configuration and logging setup for the bot service.

# What this module provides:
#   1) A Settings dataclass holding all env-driven configuration
#   2) get_settings(): reads env vars once, configures logging once
#   3) settings: a module-level singleton (import and use anywhere)

import os        # Access to process environment variables (Docker injects these)
import logging   # Python's standard logging framework
from functools import lru_cache  # Cache get_settings() so we read env only once
from dataclasses import dataclass
from typing import List, Tuple

# Example output:
# 2025-10-25 12:34:56,789 INFO [scraper] chat=U123 Cache miss for contact search
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s]%(trace)s %(message)s"

# Platform limits (LINE Messaging API). Not configurable beyond these ceilings.
LINE_MAX_MESSAGES_PER_REPLY = 5
LINE_MAX_INPUT_LENGTH = 20000
LINE_MAX_POSTBACK_BYTES = 300

KNOWN_WARMUP_MODULES = ("id", "contact", "course", "program")


# -----------------------------------------------------------------------------
# Settings dataclass (immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True) # frozen=True makes the instance read-only after creation
class Settings:
    service_name: str = "campusbot"
    service_port: int = 10000
    log_level: str = "INFO" # One of: DEBUG, INFO, WARNING, ERROR, CRITICAL
    data_root: str = "./data"
    store_path: str = "./data/cache.db"

    # LINE platform credentials (only the server needs them)
    line_channel_secret: str = ""
    line_channel_access_token: str = ""
    line_api_base: str = "https://api.line.me"

    # Cache freshness
    cache_ttl_hours: int = 168
    historical_ttl_hours: int = 24
    sweep_interval_seconds: int = 3600

    # Scraper policy
    scraper_workers: int = 5
    scraper_timeout: float = 60.0
    scraper_max_retries: int = 3
    scraper_retry_initial: float = 1.0
    scraper_retry_budget: float = 120.0
    scraper_rate: float = 0.5       # requests per second across all upstreams
    scraper_burst: int = 5
    scraper_wait_timeout: float = 30.0

    # Request pipeline
    webhook_timeout: float = 25.0
    smart_search_timeout: float = 30.0
    max_messages_per_reply: int = LINE_MAX_MESSAGES_PER_REPLY
    max_input_length: int = LINE_MAX_INPUT_LENGTH
    max_postback_bytes: int = LINE_MAX_POSTBACK_BYTES

    # Warm-up and shutdown
    warmup_modules: Tuple[str, ...] = KNOWN_WARMUP_MODULES
    warmup_timeout: float = 3600.0
    shutdown_timeout: float = 30.0

    # Optional LLM providers (OpenAI-compatible chat completions)
    llm_api_key: str = ""
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "openai/gpt-4o-mini"
    llm_fallback_api_key: str = ""
    llm_fallback_base_url: str = ""
    llm_fallback_model: str = ""
    llm_timeout: float = 20.0

    # Rate limiters
    user_rate_burst: int = 6
    user_rate_refill: float = 0.2   # tokens per second (1 per 5s)
    llm_rate_burst: int = 5
    llm_rate_refill: float = 1.0 / 12
    llm_daily_limit: int = 50
    limiter_cleanup_seconds: int = 300

    # Result caps
    max_courses_per_search: int = 40
    max_students_per_search: int = 500
    max_contacts_per_search: int = 50

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_api_key)

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600.0

    @property
    def historical_ttl_seconds(self) -> float:
        return self.historical_ttl_hours * 3600.0

    def validate(self, *, require_line: bool = False) -> List[str]:
        """
        Return a list of human-readable configuration problems (empty when valid).
        """
        problems: List[str] = []
        if self.cache_ttl_hours <= 0:
            problems.append(f"CACHE_TTL_HOURS must be positive, got {self.cache_ttl_hours}")
        if self.historical_ttl_hours <= 0:
            problems.append(f"HISTORICAL_TTL_HOURS must be positive, got {self.historical_ttl_hours}")
        if self.scraper_timeout <= 0:
            problems.append(f"SCRAPER_TIMEOUT_SECONDS must be positive, got {self.scraper_timeout}")
        if self.scraper_rate <= 0 or self.scraper_burst < 1:
            problems.append("SCRAPER_RATE must be positive and SCRAPER_BURST at least 1")
        if self.webhook_timeout <= 0:
            problems.append(f"WEBHOOK_TIMEOUT_SECONDS must be positive, got {self.webhook_timeout}")
        if not 1 <= self.max_messages_per_reply <= LINE_MAX_MESSAGES_PER_REPLY:
            problems.append(
                f"max messages per reply must be 1-{LINE_MAX_MESSAGES_PER_REPLY}, got {self.max_messages_per_reply}"
            )
        if self.user_rate_burst < 1 or self.user_rate_refill <= 0:
            problems.append("USER_RATE_BURST must be >= 1 and USER_RATE_REFILL positive")
        unknown = [m for m in self.warmup_modules if m not in KNOWN_WARMUP_MODULES]
        if unknown:
            problems.append(f"unknown warm-up modules: {', '.join(unknown)}")
        if require_line:
            if not self.line_channel_secret:
                problems.append("LINE_CHANNEL_SECRET is required")
            if not self.line_channel_access_token:
                problems.append("LINE_CHANNEL_ACCESS_TOKEN is required")
        return problems


# -----------------------------------------------------------------------------
# Small helpers for robust environment variable parsing
# -----------------------------------------------------------------------------
def _env_str(key: str, default: str) -> str:
    """
    Read a string environment variable & fall back to default if unset or empty
    """
    val = os.getenv(key, default).strip()
    return val if val else default

def _env_int(key: str, default: int) -> int:
    """
    Read an integer environment variable & fall back to default if unset or empty
    """
    raw = os.getenv(key)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default

def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    try:
        return float(raw) if raw is not None else default
    except ValueError:
        return default

def _env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """
    Read a comma separated list, e.g. WARMUP_MODULES="id,contact".
    """
    raw = os.getenv(key)
    if raw is None:
        return default
    items = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    return items


# -----------------------------------------------------------------------------
# Logging configuration
# -----------------------------------------------------------------------------
def setup_logging(level: str, *filters: logging.Filter) -> None:
    """
    Configure the root logger ONCE per process (idempotent).
    Guard with a flag (_configured) so repeated imports don't attach duplicate handlers.
    Extra filters (e.g. one that injects tracing fields) are attached to the root handler.
    """
    if getattr(setup_logging, "_configured", False):
        return

    handler = logging.StreamHandler()
    # 'trace' is filled by tracing filters when present; empty otherwise
    handler.setFormatter(logging.Formatter(LOG_FORMAT, defaults={"trace": ""}))
    for flt in filters:
        handler.addFilter(flt)

    # Set up the root logger. All child loggers inherit this.
    logging.basicConfig(
        handlers=[handler],
        level=getattr(logging, level.upper(), logging.INFO) # Fallback to INFO on bad input
    )
    # httpx logs every request at INFO; keep it quiet unless debugging
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Mark as configured so subsequent calls do nothing
    setup_logging._configured = True


# -----------------------------------------------------------------------------
# Read and cache settings once
# -----------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Read all environment variables, configure logging once, and return a
    frozen Settings object.
    """
    defaults = Settings()
    data_root = _env_str("DATA_ROOT", defaults.data_root)
    log_level = _env_str("LOG_LEVEL", defaults.log_level)

    # Configure logging
    setup_logging(log_level)

    cfg = Settings(
        service_name=_env_str("SERVICE_NAME", defaults.service_name),
        service_port=_env_int("SERVICE_PORT", defaults.service_port),
        log_level=log_level,
        data_root=data_root,
        store_path=_env_str("STORE_PATH", os.path.join(data_root, "cache.db")),
        line_channel_secret=_env_str("LINE_CHANNEL_SECRET", ""),
        line_channel_access_token=_env_str("LINE_CHANNEL_ACCESS_TOKEN", ""),
        line_api_base=_env_str("LINE_API_BASE", defaults.line_api_base),
        cache_ttl_hours=_env_int("CACHE_TTL_HOURS", defaults.cache_ttl_hours),
        historical_ttl_hours=_env_int("HISTORICAL_TTL_HOURS", defaults.historical_ttl_hours),
        sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", defaults.sweep_interval_seconds),
        scraper_workers=_env_int("SCRAPER_WORKERS", defaults.scraper_workers),
        scraper_timeout=_env_float("SCRAPER_TIMEOUT_SECONDS", defaults.scraper_timeout),
        scraper_max_retries=_env_int("SCRAPER_MAX_RETRIES", defaults.scraper_max_retries),
        scraper_retry_initial=_env_float("SCRAPER_RETRY_INITIAL_SECONDS", defaults.scraper_retry_initial),
        scraper_retry_budget=_env_float("SCRAPER_RETRY_BUDGET_SECONDS", defaults.scraper_retry_budget),
        scraper_rate=_env_float("SCRAPER_RATE", defaults.scraper_rate),
        scraper_burst=_env_int("SCRAPER_BURST", defaults.scraper_burst),
        scraper_wait_timeout=_env_float("SCRAPER_WAIT_TIMEOUT_SECONDS", defaults.scraper_wait_timeout),
        webhook_timeout=_env_float("WEBHOOK_TIMEOUT_SECONDS", defaults.webhook_timeout),
        smart_search_timeout=_env_float("SMART_SEARCH_TIMEOUT_SECONDS", defaults.smart_search_timeout),
        warmup_modules=_env_list("WARMUP_MODULES", defaults.warmup_modules),
        warmup_timeout=_env_float("WARMUP_TIMEOUT_SECONDS", defaults.warmup_timeout),
        shutdown_timeout=_env_float("SHUTDOWN_TIMEOUT_SECONDS", defaults.shutdown_timeout),
        llm_api_key=_env_str("LLM_API_KEY", ""),
        llm_base_url=_env_str("LLM_BASE_URL", defaults.llm_base_url),
        llm_model=_env_str("LLM_MODEL", defaults.llm_model),
        llm_fallback_api_key=_env_str("LLM_FALLBACK_API_KEY", ""),
        llm_fallback_base_url=_env_str("LLM_FALLBACK_BASE_URL", ""),
        llm_fallback_model=_env_str("LLM_FALLBACK_MODEL", ""),
        llm_timeout=_env_float("LLM_TIMEOUT_SECONDS", defaults.llm_timeout),
        user_rate_burst=_env_int("USER_RATE_BURST", defaults.user_rate_burst),
        user_rate_refill=_env_float("USER_RATE_REFILL", defaults.user_rate_refill),
        llm_rate_burst=_env_int("LLM_RATE_BURST", defaults.llm_rate_burst),
        llm_rate_refill=_env_float("LLM_RATE_REFILL", defaults.llm_rate_refill),
        llm_daily_limit=_env_int("LLM_DAILY_LIMIT", defaults.llm_daily_limit),
        limiter_cleanup_seconds=_env_int("LIMITER_CLEANUP_SECONDS", defaults.limiter_cleanup_seconds),
        max_courses_per_search=_env_int("MAX_COURSES_PER_SEARCH", defaults.max_courses_per_search),
        max_students_per_search=_env_int("MAX_STUDENTS_PER_SEARCH", defaults.max_students_per_search),
        max_contacts_per_search=_env_int("MAX_CONTACTS_PER_SEARCH", defaults.max_contacts_per_search),
    )

    # Log a concise startup summary following the configured format
    logging.getLogger("config").info(
        "Loaded settings service=%s port=%s store=%s llm=%s warmup=%s",
        cfg.service_name, cfg.service_port, cfg.store_path,
        "on" if cfg.llm_enabled else "off", ",".join(cfg.warmup_modules),
    )
    return cfg


# -----------------------------------------------------------------------------
# Public, module-level singleton
# -----------------------------------------------------------------------------
# Import this from anywhere in the service: from common.config import settings
# This triggers get_settings() once (per process) and reuses it afterwards.
settings = get_settings()
