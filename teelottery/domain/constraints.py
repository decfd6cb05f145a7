"""Domain-level validation rules for lottery configuration."""

from __future__ import annotations

from dataclasses import dataclass

from teelottery.domain.models import TimeWindow


MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class WindowConfig:
    """Site operating hours and how to bucket them.

    `close_minute` is exclusive. When `buckets` is non-empty the explicit
    definitions are used as-is and `bucket_count`/`labels` are ignored.
    """

    open_minute: int
    close_minute: int
    bucket_count: int = 4
    labels: tuple[str, ...] = ()
    buckets: tuple[TimeWindow, ...] = ()


@dataclass(frozen=True)
class LotteryConfig:
    max_party_size: int
    admin_adjustment_limit: int
    low_fulfillment_threshold: float
    low_fulfillment_bonus: int
    mid_fulfillment_threshold: float
    mid_fulfillment_bonus: int
    streak_bonus_per_miss: int
    streak_bonus_cap: int


def validate_window_config(config: WindowConfig) -> None:
    if not 0 <= config.open_minute < MINUTES_PER_DAY:
        raise ValueError("open_minute must be within a single day")
    if not 0 < config.close_minute <= MINUTES_PER_DAY:
        raise ValueError("close_minute must be within a single day")
    if config.open_minute >= config.close_minute:
        raise ValueError("open_minute must be earlier than close_minute")
    if config.buckets:
        return
    if config.bucket_count <= 0:
        raise ValueError("bucket_count must be > 0")
    if config.bucket_count > config.close_minute - config.open_minute:
        raise ValueError("bucket_count exceeds the number of operating minutes")
    if config.labels and len(config.labels) != config.bucket_count:
        raise ValueError("labels must provide exactly one label per bucket")
    if len(set(config.labels)) != len(config.labels):
        raise ValueError("labels must be unique")


def validate_lottery_config(config: LotteryConfig) -> None:
    if config.max_party_size < 2:
        raise ValueError("max_party_size must be >= 2")
    if config.admin_adjustment_limit < 0:
        raise ValueError("admin_adjustment_limit must be >= 0")
    if not 0.0 <= config.low_fulfillment_threshold <= 1.0:
        raise ValueError("low_fulfillment_threshold must be between 0 and 1")
    if not 0.0 <= config.mid_fulfillment_threshold <= 1.0:
        raise ValueError("mid_fulfillment_threshold must be between 0 and 1")
    if config.low_fulfillment_threshold > config.mid_fulfillment_threshold:
        raise ValueError("low_fulfillment_threshold must not exceed mid_fulfillment_threshold")
    if config.low_fulfillment_bonus < 0 or config.mid_fulfillment_bonus < 0:
        raise ValueError("fulfillment bonuses must be >= 0")
    if config.streak_bonus_per_miss < 0:
        raise ValueError("streak_bonus_per_miss must be >= 0")
    if config.streak_bonus_cap < 0:
        raise ValueError("streak_bonus_cap must be >= 0")
