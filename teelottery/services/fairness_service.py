"""Priority scoring for pending lottery requests."""

from __future__ import annotations

from typing import Mapping, Optional

from teelottery.domain.constraints import LotteryConfig
from teelottery.domain.models import FairnessRecord, LotteryRequest, SpeedProfile, SpeedTier


# Fast players get a head start for the high-demand early windows only.
DEFAULT_SPEED_BONUSES: dict[str, dict[SpeedTier, int]] = {
    "MORNING": {SpeedTier.FAST: 5, SpeedTier.AVERAGE: 2, SpeedTier.SLOW: 0},
    "MIDDAY": {SpeedTier.FAST: 2, SpeedTier.AVERAGE: 1, SpeedTier.SLOW: 0},
    "AFTERNOON": {SpeedTier.FAST: 0, SpeedTier.AVERAGE: 0, SpeedTier.SLOW: 0},
    "EVENING": {SpeedTier.FAST: 0, SpeedTier.AVERAGE: 0, SpeedTier.SLOW: 0},
}


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def compute_fairness_score(
    fulfillment_rate: float,
    days_without_good_time: int,
    config: LotteryConfig,
) -> int:
    """Higher score means more priority in the next cycle."""
    score = 0
    if fulfillment_rate < config.low_fulfillment_threshold:
        score += config.low_fulfillment_bonus
    elif fulfillment_rate < config.mid_fulfillment_threshold:
        score += config.mid_fulfillment_bonus
    score += min(days_without_good_time * config.streak_bonus_per_miss, config.streak_bonus_cap)
    return score


class FairnessScorer:
    """Combines fairness history, speed bonus and admin adjustment.

    Records are supplied by the caller, keyed by member id; the scorer never
    loads or writes anything itself.
    """

    def __init__(
        self,
        fairness_records: Mapping[int, FairnessRecord],
        speed_profiles: Mapping[int, SpeedProfile],
        adjustment_limit: int = 10,
        speed_bonuses: Optional[Mapping[str, Mapping[SpeedTier, int]]] = None,
    ) -> None:
        self._fairness_records = fairness_records
        self._speed_profiles = speed_profiles
        self._adjustment_limit = adjustment_limit
        self._speed_bonuses = speed_bonuses if speed_bonuses is not None else DEFAULT_SPEED_BONUSES

    def speed_bonus(self, tier: SpeedTier, window_label: Optional[str]) -> int:
        if not window_label:
            return 0
        return int(self._speed_bonuses.get(window_label, {}).get(tier, 0))

    def priority(self, request: LotteryRequest) -> float:
        record = self._fairness_records.get(request.organizer_id)
        profile = self._speed_profiles.get(request.organizer_id)

        score = float(record.fairness_score) if record is not None else 0.0
        if profile is not None:
            score += self.speed_bonus(profile.speed_tier, request.preferred_window)
            score += clamp(
                profile.admin_adjustment,
                -self._adjustment_limit,
                self._adjustment_limit,
            )
        return score

    def priorities(self, requests: list[LotteryRequest]) -> dict[int, float]:
        return {request.request_id: self.priority(request) for request in requests}
