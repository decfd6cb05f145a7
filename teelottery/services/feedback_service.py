"""Post-run fairness feedback for lottery participants."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from typing import Mapping, Optional, Sequence

from teelottery.domain.constraints import LotteryConfig
from teelottery.domain.models import (
    DecisionOutcome,
    FairnessRecord,
    LotteryRequest,
    PlacementDecision,
    TimeWindow,
)
from teelottery.services.fairness_service import compute_fairness_score
from teelottery.services.window_service import minute_in_window
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class FairnessUpdate:
    request_id: int
    member_id: int
    preference_granted: bool
    score_before: int
    score_after: int

    @property
    def delta(self) -> int:
        return self.score_after - self.score_before


@dataclass(frozen=True)
class FeedbackResult:
    records: dict[int, FairnessRecord]
    updates: list[FairnessUpdate]


def tracking_period(lottery_date: date) -> str:
    return lottery_date.strftime("%Y-%m")


def preference_granted(
    decision: PlacementDecision,
    request: LotteryRequest,
    windows: Sequence[TimeWindow],
) -> bool:
    """Did the golfer get what they asked for, or were they kept out by a rule?

    Club policy never penalizes fairness for an administrative rule, so a miss
    caused by a load-bearing eligibility rule counts as granted.
    """
    if decision.assignment is None:
        return False
    start = decision.assignment.start_minute
    if minute_in_window(windows, request.preferred_window, start):
        return True
    if minute_in_window(windows, request.alternate_window, start):
        return True
    return decision.rule_load_bearing


def update_record(
    record: FairnessRecord,
    granted: bool,
    config: LotteryConfig,
) -> FairnessRecord:
    total_entries = record.total_entries + 1
    preferences_granted = record.preferences_granted + (1 if granted else 0)
    fulfillment_rate = preferences_granted / total_entries
    streak = 0 if granted else record.days_without_good_time + 1
    return replace(
        record,
        total_entries=total_entries,
        preferences_granted=preferences_granted,
        fulfillment_rate=fulfillment_rate,
        days_without_good_time=streak,
        fairness_score=compute_fairness_score(fulfillment_rate, streak, config),
    )


def apply_fairness_feedback(
    *,
    decisions: Sequence[PlacementDecision],
    requests_by_id: Mapping[int, LotteryRequest],
    windows: Sequence[TimeWindow],
    records: Mapping[int, FairnessRecord],
    period: str,
    config: LotteryConfig,
) -> FeedbackResult:
    """Fold this run's placements into per-member fairness records.

    Only requests assigned in this run count, and for a group only the
    organizer's record moves. Records missing from `records` are created empty
    for `period`. The input mapping is left untouched.
    """
    updated: dict[int, FairnessRecord] = {}
    updates: list[FairnessUpdate] = []
    for decision in decisions:
        if decision.outcome != DecisionOutcome.ASSIGNED:
            continue
        request = requests_by_id.get(decision.request_id)
        if request is None:
            logger.warning(
                "Fairness feedback skipped | request_id=%s | reason=unknown request",
                decision.request_id,
            )
            continue

        member_id = request.organizer_id
        current: Optional[FairnessRecord] = updated.get(member_id) or records.get(member_id)
        if current is None or current.period != period:
            current = FairnessRecord(member_id=member_id, period=period)

        granted = preference_granted(decision, request, windows)
        new_record = update_record(current, granted, config)
        updated[member_id] = new_record
        updates.append(
            FairnessUpdate(
                request_id=request.request_id,
                member_id=member_id,
                preference_granted=granted,
                score_before=current.fairness_score,
                score_after=new_record.fairness_score,
            )
        )

    logger.info(
        "Fairness feedback computed | period=%s | members_updated=%s | preferences_missed=%s",
        period,
        len(updated),
        sum(1 for update in updates if not update.preference_granted),
    )
    return FeedbackResult(records=updated, updates=updates)
