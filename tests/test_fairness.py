from __future__ import annotations

from datetime import date, datetime

import pytest

from teelottery.domain.constraints import LotteryConfig
from teelottery.domain.models import (
    AssignmentReason,
    AssignmentRecord,
    DecisionOutcome,
    FairnessRecord,
    LotteryRequest,
    PlacementDecision,
    SpeedProfile,
    SpeedTier,
    TimeWindow,
)
from teelottery.services.fairness_service import FairnessScorer, compute_fairness_score
from teelottery.services.feedback_service import (
    apply_fairness_feedback,
    tracking_period,
    update_record,
)


CONFIG = LotteryConfig(
    max_party_size=4,
    admin_adjustment_limit=10,
    low_fulfillment_threshold=0.5,
    low_fulfillment_bonus=20,
    mid_fulfillment_threshold=0.7,
    mid_fulfillment_bonus=10,
    streak_bonus_per_miss=2,
    streak_bonus_cap=30,
)

WINDOWS = [
    TimeWindow("MORNING", 420, 600),
    TimeWindow("MIDDAY", 600, 780),
    TimeWindow("AFTERNOON", 780, 960),
    TimeWindow("EVENING", 960, 1140),
]

LOTTERY_DATE = date(2026, 3, 2)


def _request(request_id: int, organizer_id: int, *others: int, preferred="MORNING", alternate=None):
    member_ids = (organizer_id, *others)
    return LotteryRequest(
        request_id=request_id,
        organizer_id=organizer_id,
        member_ids=member_ids,
        requested_date=LOTTERY_DATE,
        preferred_window=preferred,
        alternate_window=alternate,
        submitted_at=datetime(2026, 2, 28, 9, 0),
        is_group=len(member_ids) > 1,
    )


def _assigned(request: LotteryRequest, start_minute: int, **overrides) -> PlacementDecision:
    values = {
        "request_id": request.request_id,
        "is_group": request.is_group,
        "outcome": DecisionOutcome.ASSIGNED,
        "assignment": AssignmentRecord(
            request_id=request.request_id,
            slot_id=start_minute,
            member_ids=request.member_ids,
            start_minute=start_minute,
        ),
        "reason": AssignmentReason.ALLOWED_FALLBACK,
    }
    values.update(overrides)
    return PlacementDecision(**values)


@pytest.mark.parametrize(
    ("rate", "streak", "expected"),
    [
        (0.4, 0, 20),
        (0.5, 0, 10),
        (0.69, 1, 12),
        (0.7, 0, 0),
        (1.0, 20, 30),
    ],
)
def test_fairness_score_formula(rate, streak, expected):
    assert compute_fairness_score(rate, streak, CONFIG) == expected


def test_priority_sums_score_speed_bonus_and_clamped_adjustment():
    scorer = FairnessScorer(
        fairness_records={1: FairnessRecord(member_id=1, period="2026-03", fairness_score=22)},
        speed_profiles={1: SpeedProfile(member_id=1, speed_tier=SpeedTier.FAST, admin_adjustment=25)},
    )

    assert scorer.priority(_request(10, 1, preferred="MORNING")) == 22 + 5 + 10
    assert scorer.priority(_request(11, 1, preferred="EVENING")) == 22 + 0 + 10


def test_priority_defaults_to_zero_without_records():
    scorer = FairnessScorer(fairness_records={}, speed_profiles={})

    assert scorer.priority(_request(10, 7)) == 0.0


def test_group_priority_uses_organizer_records():
    scorer = FairnessScorer(
        fairness_records={
            1: FairnessRecord(member_id=1, period="2026-03", fairness_score=5),
            2: FairnessRecord(member_id=2, period="2026-03", fairness_score=40),
        },
        speed_profiles={2: SpeedProfile(member_id=2, speed_tier=SpeedTier.SLOW, admin_adjustment=-30)},
    )

    assert scorer.priority(_request(10, 1, 2)) == 5.0
    assert scorer.priority(_request(11, 2, 1)) == 40 + 0 - 10


def test_low_fulfillment_member_gains_priority_after_another_miss():
    prior = FairnessRecord(
        member_id=1,
        period="2026-03",
        total_entries=5,
        preferences_granted=2,
        fulfillment_rate=0.4,
        days_without_good_time=1,
        fairness_score=22,
    )

    updated = update_record(prior, granted=False, config=CONFIG)

    assert updated.total_entries == 6
    assert updated.preferences_granted == 2
    assert updated.days_without_good_time == 2
    assert updated.fairness_score == 24
    assert updated.fairness_score > prior.fairness_score


def test_granted_preference_resets_streak():
    prior = FairnessRecord(
        member_id=1,
        period="2026-03",
        total_entries=3,
        preferences_granted=1,
        fulfillment_rate=1 / 3,
        days_without_good_time=2,
        fairness_score=24,
    )

    updated = update_record(prior, granted=True, config=CONFIG)

    assert updated.fulfillment_rate == 0.5
    assert updated.days_without_good_time == 0
    assert updated.fairness_score == 10


def test_feedback_creates_missing_records_and_updates_organizer_only():
    group = _request(1, 10, 11, 12, preferred="MORNING")
    individual = _request(2, 20, preferred="MORNING", alternate="MIDDAY")
    decisions = [
        _assigned(group, 480, reason=AssignmentReason.PREFERRED_MATCH),
        _assigned(individual, 800),
    ]

    result = apply_fairness_feedback(
        decisions=decisions,
        requests_by_id={1: group, 2: individual},
        windows=WINDOWS,
        records={},
        period=tracking_period(LOTTERY_DATE),
        config=CONFIG,
    )

    assert set(result.records) == {10, 20}
    assert result.records[10].preferences_granted == 1
    assert result.records[10].fairness_score == 0
    assert result.records[20].preferences_granted == 0
    assert result.records[20].days_without_good_time == 1
    assert result.records[20].fairness_score == 22
    assert result.records[20].period == "2026-03"


def test_alternate_window_counts_as_granted():
    request = _request(1, 10, preferred="MORNING", alternate="MIDDAY")

    result = apply_fairness_feedback(
        decisions=[_assigned(request, 660, reason=AssignmentReason.ALTERNATE_MATCH)],
        requests_by_id={1: request},
        windows=WINDOWS,
        records={},
        period="2026-03",
        config=CONFIG,
    )

    assert result.updates[0].preference_granted


def test_rule_load_bearing_miss_counts_as_granted():
    request = _request(1, 10, preferred="MORNING")
    decision = _assigned(
        request,
        480,
        reason=AssignmentReason.RESTRICTION_VIOLATION,
        policy_fallback=True,
        rule_load_bearing=True,
    )
    outside = _assigned(request, 900, rule_load_bearing=True)

    for placed in (decision, outside):
        result = apply_fairness_feedback(
            decisions=[placed],
            requests_by_id={1: request},
            windows=WINDOWS,
            records={},
            period="2026-03",
            config=CONFIG,
        )
        assert result.updates[0].preference_granted


def test_unassigned_decisions_leave_records_untouched():
    request = _request(1, 10)
    existing = {10: FairnessRecord(member_id=10, period="2026-03", total_entries=2, fairness_score=7)}

    result = apply_fairness_feedback(
        decisions=[
            PlacementDecision(request_id=1, is_group=False, outcome=DecisionOutcome.EXHAUSTED)
        ],
        requests_by_id={1: request},
        windows=WINDOWS,
        records=existing,
        period="2026-03",
        config=CONFIG,
    )

    assert result.records == {}
    assert result.updates == []
    assert existing[10].total_entries == 2


def test_record_from_previous_period_starts_fresh():
    request = _request(1, 10)
    stale = {10: FairnessRecord(member_id=10, period="2026-02", total_entries=9, fairness_score=30)}

    result = apply_fairness_feedback(
        decisions=[_assigned(request, 480)],
        requests_by_id={1: request},
        windows=WINDOWS,
        records=stale,
        period="2026-03",
        config=CONFIG,
    )

    assert result.records[10].total_entries == 1
    assert result.updates[0].score_before == 0
