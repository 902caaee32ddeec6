"""
Remittance Engine - Runtime Configuration

All knobs are read from the environment once per process.
Defaults match the values the scheduler and delivery jobs were tuned with.
"""
import os
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional


class RejectionPolicy(str, Enum):
    """What happens to a bucket when an approver rejects it."""
    RETURN_TO_ACCUMULATING = "RETURN_TO_ACCUMULATING"
    FAIL = "FAIL"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineSettings:
    """Process-wide settings. Constructed once at startup and passed down."""

    database_url: str = "sqlite:///./remit_engine.db"
    log_level: str = "INFO"

    # Scheduled monitor
    monitor_enabled: bool = True
    monitor_interval_seconds: int = 300
    monitor_initial_delay_seconds: int = 60
    stale_bucket_days: int = 30
    generation_stall_seconds: int = 600

    # Lifecycle policy
    rejection_policy: RejectionPolicy = RejectionPolicy.RETURN_TO_ACCUMULATING
    dedupe_claims: bool = True

    # Delivery
    delivery_enabled: bool = True
    delivery_base_delay_ms: int = 5000
    delivery_max_retry_attempts: int = 3
    delivery_batch_size: int = 10
    delivery_output_dir: Optional[str] = None

    internal_api_key: str = "scheduler-internal-key-change-in-production"


def load_settings() -> EngineSettings:
    """Build settings from the current environment."""
    policy_raw = os.getenv("REJECTION_POLICY", RejectionPolicy.RETURN_TO_ACCUMULATING.value)
    try:
        policy = RejectionPolicy(policy_raw.strip().upper())
    except ValueError:
        raise ValueError(
            f"Environment variable REJECTION_POLICY must be one of "
            f"{[p.value for p in RejectionPolicy]}, got {policy_raw!r}"
        )

    settings = EngineSettings(
        database_url=os.getenv("DATABASE_URL", EngineSettings.database_url),
        log_level=os.getenv("LOG_LEVEL", EngineSettings.log_level).upper(),
        monitor_enabled=_env_bool("MONITOR_ENABLED", True),
        monitor_interval_seconds=_env_int("MONITOR_INTERVAL_SECONDS", 300),
        monitor_initial_delay_seconds=_env_int("MONITOR_INITIAL_DELAY_SECONDS", 60),
        stale_bucket_days=_env_int("STALE_BUCKET_DAYS", 30),
        generation_stall_seconds=_env_int("GENERATION_STALL_SECONDS", 600),
        rejection_policy=policy,
        dedupe_claims=_env_bool("DEDUPE_CLAIMS", True),
        delivery_enabled=_env_bool("DELIVERY_ENABLED", True),
        delivery_base_delay_ms=_env_int("DELIVERY_BASE_DELAY_MS", 5000),
        delivery_max_retry_attempts=_env_int("DELIVERY_MAX_RETRY_ATTEMPTS", 3),
        delivery_batch_size=_env_int("DELIVERY_BATCH_SIZE", 10),
        delivery_output_dir=os.getenv("DELIVERY_OUTPUT_DIR") or None,
        internal_api_key=os.getenv("INTERNAL_API_KEY", EngineSettings.internal_api_key),
    )

    if settings.delivery_base_delay_ms < 0:
        raise ValueError("DELIVERY_BASE_DELAY_MS must not be negative")
    if settings.delivery_max_retry_attempts < 0:
        raise ValueError("DELIVERY_MAX_RETRY_ATTEMPTS must not be negative")
    if settings.monitor_interval_seconds <= 0:
        raise ValueError("MONITOR_INTERVAL_SECONDS must be positive")

    return settings


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Cached settings for the running process."""
    return load_settings()
