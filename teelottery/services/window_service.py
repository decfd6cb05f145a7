"""Resolve site operating hours into named time-of-day windows."""

from __future__ import annotations

import re
from typing import Optional, Sequence

from teelottery.domain.constraints import WindowConfig, validate_window_config
from teelottery.domain.models import TimeWindow
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_WINDOW_LABELS = ("MORNING", "MIDDAY", "AFTERNOON", "EVENING")

_HHMM_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class WindowConfigurationError(Exception):
    """Raised when operating hours cannot be turned into windows."""


def parse_hhmm(value: str) -> int:
    """Convert "HH:MM" into minutes since midnight."""
    match = _HHMM_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"time must follow HH:MM format, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_minutes(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


def _default_labels(bucket_count: int) -> tuple[str, ...]:
    if bucket_count <= len(DEFAULT_WINDOW_LABELS):
        return DEFAULT_WINDOW_LABELS[:bucket_count]
    return tuple(f"WINDOW_{index + 1}" for index in range(bucket_count))


def _validate_explicit_buckets(config: WindowConfig) -> list[TimeWindow]:
    windows = sorted(config.buckets, key=lambda window: window.start_minute)
    labels = [window.label for window in windows]
    if len(set(labels)) != len(labels):
        raise WindowConfigurationError("window labels must be unique")
    if windows[0].start_minute != config.open_minute:
        raise WindowConfigurationError("first window must start at the open time")
    if windows[-1].end_minute != config.close_minute:
        raise WindowConfigurationError("last window must end at the close time")
    for previous, current in zip(windows, windows[1:]):
        if previous.end_minute != current.start_minute:
            raise WindowConfigurationError(
                f"windows {previous.label} and {current.label} must be contiguous"
            )
    for window in windows:
        if window.start_minute >= window.end_minute:
            raise WindowConfigurationError(f"window {window.label} is empty")
    return windows


def resolve_time_windows(config: Optional[WindowConfig]) -> list[TimeWindow]:
    """Split `[open, close)` into contiguous, non-overlapping windows.

    Buckets are equal-sized; leftover minutes go one each to the earliest
    buckets so the last window always ends exactly at the close time.
    """
    if config is None:
        raise WindowConfigurationError("window configuration is missing")
    try:
        validate_window_config(config)
    except ValueError as exc:
        raise WindowConfigurationError(str(exc)) from exc

    if config.buckets:
        windows = _validate_explicit_buckets(config)
    else:
        labels = config.labels or _default_labels(config.bucket_count)
        base, remainder = divmod(config.close_minute - config.open_minute, config.bucket_count)
        windows = []
        cursor = config.open_minute
        for index, label in enumerate(labels):
            width = base + (1 if index < remainder else 0)
            windows.append(TimeWindow(label=label, start_minute=cursor, end_minute=cursor + width))
            cursor += width

    logger.debug(
        "Time windows resolved | windows=%s",
        ", ".join(
            f"{w.label}={format_minutes(w.start_minute)}-{format_minutes(w.end_minute)}"
            for w in windows
        ),
    )
    return windows


def window_for_minute(windows: Sequence[TimeWindow], minute: int) -> Optional[TimeWindow]:
    for window in windows:
        if window.contains(minute):
            return window
    return None


def minute_in_window(windows: Sequence[TimeWindow], label: Optional[str], minute: int) -> bool:
    if not label:
        return False
    for window in windows:
        if window.label == label:
            return window.contains(minute)
    return False


def resolve_window_label(label: str, labels: Sequence[str]) -> Optional[str]:
    """Return the configured spelling of `label`.

    An exact match wins; otherwise a single case-insensitive match is used.
    """
    if label in labels:
        return label
    matches = [candidate for candidate in labels if candidate.casefold() == label.casefold()]
    if len(matches) == 1:
        return matches[0]
    return None
