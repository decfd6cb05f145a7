"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path

    # Default operating hours used when the site has no stored window config.
    window_open_minute: int
    window_close_minute: int
    window_bucket_count: int

    lottery_max_party_size: int
    lottery_admin_adjustment_limit: int

    fairness_low_fulfillment_threshold: float
    fairness_low_fulfillment_bonus: int
    fairness_mid_fulfillment_threshold: float
    fairness_mid_fulfillment_bonus: int
    fairness_streak_bonus_per_miss: int
    fairness_streak_bonus_cap: int

    demo_seed_days_ahead: int
    demo_random_seed: int
    demo_members: int
    demo_slot_interval_minutes: int
    demo_slot_capacity: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process from TEELOTTERY_* variables."""
    return Settings(
        app_name=_env_str("TEELOTTERY_APP_NAME", "Tee-Time Lottery Engine"),
        app_version=_env_str("TEELOTTERY_APP_VERSION", "1.0.0"),
        log_level=_env_str("TEELOTTERY_LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("TEELOTTERY_DATABASE_PATH", "data/teelottery.db")),
        window_open_minute=_env_int("TEELOTTERY_WINDOW_OPEN_MINUTE", 7 * 60),
        window_close_minute=_env_int("TEELOTTERY_WINDOW_CLOSE_MINUTE", 19 * 60),
        window_bucket_count=_env_int("TEELOTTERY_WINDOW_BUCKET_COUNT", 4),
        lottery_max_party_size=_env_int("TEELOTTERY_MAX_PARTY_SIZE", 4),
        lottery_admin_adjustment_limit=_env_int("TEELOTTERY_ADMIN_ADJUSTMENT_LIMIT", 10),
        fairness_low_fulfillment_threshold=_env_float(
            "TEELOTTERY_FAIRNESS_LOW_THRESHOLD", 0.5
        ),
        fairness_low_fulfillment_bonus=_env_int("TEELOTTERY_FAIRNESS_LOW_BONUS", 20),
        fairness_mid_fulfillment_threshold=_env_float(
            "TEELOTTERY_FAIRNESS_MID_THRESHOLD", 0.7
        ),
        fairness_mid_fulfillment_bonus=_env_int("TEELOTTERY_FAIRNESS_MID_BONUS", 10),
        fairness_streak_bonus_per_miss=_env_int("TEELOTTERY_FAIRNESS_STREAK_BONUS", 2),
        fairness_streak_bonus_cap=_env_int("TEELOTTERY_FAIRNESS_STREAK_CAP", 30),
        demo_seed_days_ahead=_env_int("TEELOTTERY_DEMO_DAYS_AHEAD", 3),
        demo_random_seed=_env_int("TEELOTTERY_DEMO_RANDOM_SEED", 42),
        demo_members=_env_int("TEELOTTERY_DEMO_MEMBERS", 40),
        demo_slot_interval_minutes=_env_int("TEELOTTERY_DEMO_SLOT_INTERVAL", 10),
        demo_slot_capacity=_env_int("TEELOTTERY_DEMO_SLOT_CAPACITY", 4),
    )
