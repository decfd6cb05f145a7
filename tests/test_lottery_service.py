from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from teelottery.domain.constraints import WindowConfig
from teelottery.domain.models import (
    FairnessRecord,
    FrequencyRule,
    RequestStatus,
    SpeedProfile,
    SpeedTier,
    TimeRule,
    TimeWindow,
)
from teelottery.repository.data_repository import DataRepository
from teelottery.services.lottery_service import (
    LotteryProcessingService,
    LotteryValidationError,
    RequestNotFoundError,
    SubmissionRestrictedError,
)
from teelottery.services.window_service import WindowConfigurationError
from teelottery.utils.config import get_settings


MONDAY = date(2026, 3, 2)
BASE_TIME = datetime(2026, 2, 27, 8, 0)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        window_open_minute=7 * 60,
        window_close_minute=19 * 60,
        window_bucket_count=4,
        lottery_max_party_size=4,
    )


def _build_service(tmp_path, filename: str) -> tuple[LotteryProcessingService, DataRepository]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    return LotteryProcessingService(repository=repository, settings=settings), repository


def _add_members(repository: DataRepository, count: int, member_class: str = "FULL") -> list[int]:
    return [repository.create_member(f"Golfer {i}", member_class) for i in range(count)]


def test_group_of_four_is_booked_and_slot_fills(tmp_path):
    service, repository = _build_service(tmp_path, "group.db")
    members = _add_members(repository, 4)
    slot_id = repository.create_slot(MONDAY, 480, 4)
    request_id = repository.create_request(members[0], members, MONDAY, "MORNING")

    summary = service.process_lottery_for_date(MONDAY)

    assert summary.processed_count == 1
    assert summary.total_requests == 1
    assert summary.bookings_created == 4
    assert summary.groups_assigned == 1
    assert repository.get_request_status(request_id) == "ASSIGNED"
    assert repository.count_bookings(slot_id) == 4
    assert repository.list_available_slots(MONDAY) == []
    assert summary.remaining_slots == 0


def test_tie_is_broken_by_submission_time(tmp_path):
    service, repository = _build_service(tmp_path, "tie.db")
    first, second = _add_members(repository, 2)
    repository.create_slot(MONDAY, 480, 1)
    late = repository.create_request(first, [first], MONDAY, "MORNING", submitted_at=BASE_TIME)
    early = repository.create_request(
        second, [second], MONDAY, "MORNING", submitted_at=BASE_TIME - timedelta(minutes=3)
    )

    summary = service.process_lottery_for_date(MONDAY)

    assert repository.get_request_status(early) == "ASSIGNED"
    assert repository.get_request_status(late) == "PENDING"
    assert summary.pending_request_ids == [late]


def test_policy_fallback_is_logged_and_fairness_positive(tmp_path):
    service, repository = _build_service(tmp_path, "fallback.db")
    (member,) = _add_members(repository, 1, member_class="RESTRICTED")
    rule_id = repository.create_rule(
        TimeRule(
            rule_id=0,
            name="Restricted weekday mornings",
            start_minute=360,
            end_minute=720,
            member_classes=frozenset({"RESTRICTED"}),
            days_of_week=frozenset({0, 1, 2, 3, 4}),
        )
    )
    repository.create_slot(MONDAY, 480, 4)
    request_id = repository.create_request(member, [member], MONDAY, "MORNING")

    summary = service.process_lottery_for_date(MONDAY)

    assert summary.policy_fallback_count == 1
    record = repository.get_fairness_record(member, "2026-03")
    assert record is not None
    assert record.preferences_granted == 1
    assert record.days_without_good_time == 0

    (entry,) = service.list_entry_logs(MONDAY)
    assert entry.request_id == request_id
    assert entry.assignment_reason == "RESTRICTION_VIOLATION"
    assert entry.violated_restrictions
    assert entry.restriction_details["violated_rule_ids"] == [rule_id]
    assert entry.preference_granted is True


def test_repeated_miss_raises_fairness_score(tmp_path):
    service, repository = _build_service(tmp_path, "fairness.db")
    (member,) = _add_members(repository, 1)
    repository.save_fairness_record(
        FairnessRecord(
            member_id=member,
            period="2026-03",
            total_entries=5,
            preferences_granted=2,
            fulfillment_rate=0.4,
            days_without_good_time=1,
            fairness_score=22,
        )
    )
    repository.create_slot(MONDAY, 17 * 60, 4)
    repository.create_request(member, [member], MONDAY, "MORNING")

    service.process_lottery_for_date(MONDAY)

    record = repository.get_fairness_record(member, "2026-03")
    assert record.total_entries == 6
    assert record.fairness_score == 24
    (entry,) = service.list_entry_logs(MONDAY)
    assert (entry.fairness_score_before, entry.fairness_score_after) == (22, 24)


def test_fairness_history_orders_the_next_run(tmp_path):
    service, repository = _build_service(tmp_path, "priority.db")
    lucky, unlucky = _add_members(repository, 2)
    repository.save_fairness_record(
        FairnessRecord(member_id=unlucky, period="2026-03", fairness_score=30)
    )
    repository.save_speed_profile(SpeedProfile(member_id=lucky, speed_tier=SpeedTier.FAST))
    repository.create_slot(MONDAY, 480, 1)
    repository.create_slot(MONDAY, 900, 1)
    lucky_request = repository.create_request(
        lucky, [lucky], MONDAY, "MORNING", submitted_at=BASE_TIME - timedelta(hours=1)
    )
    unlucky_request = repository.create_request(
        unlucky, [unlucky], MONDAY, "MORNING", submitted_at=BASE_TIME
    )

    summary = service.process_lottery_for_date(MONDAY)

    starts = {
        d.request_id: d.assignment.start_minute for d in summary.decisions if d.assignment
    }
    assert starts == {unlucky_request: 480, lucky_request: 900}


def test_rerun_does_not_double_book(tmp_path):
    service, repository = _build_service(tmp_path, "rerun.db")
    members = _add_members(repository, 3)
    repository.create_slot(MONDAY, 480, 4)
    for member in members:
        repository.create_request(member, [member], MONDAY, "MORNING")

    first = service.process_lottery_for_date(MONDAY)
    second = service.process_lottery_for_date(MONDAY)

    assert first.bookings_created == 3
    assert second.total_requests == 0
    assert second.bookings_created == 0
    assert repository.count_bookings() == 3
    assert repository.count_processing_runs() == 2


def test_preview_writes_nothing(tmp_path):
    service, repository = _build_service(tmp_path, "preview.db")
    (member,) = _add_members(repository, 1)
    repository.create_slot(MONDAY, 480, 4)
    request_id = repository.create_request(member, [member], MONDAY, "MORNING")

    summary = service.preview_lottery(MONDAY)

    assert summary.processed_count == 1
    assert repository.get_request_status(request_id) == "PENDING"
    assert repository.count_bookings() == 0
    assert repository.get_fairness_record(member, "2026-03") is None
    assert repository.count_processing_runs() == 0


def test_existing_bookings_reduce_capacity(tmp_path):
    service, repository = _build_service(tmp_path, "existing.db")
    members = _add_members(repository, 4)
    slot_id = repository.create_slot(MONDAY, 480, 4)
    repository.create_booking(slot_id, members[3], MONDAY, 480)
    repository.create_request(members[0], members[:3], MONDAY, "MORNING")

    summary = service.process_lottery_for_date(MONDAY)

    assert summary.groups_assigned == 1
    assert repository.count_bookings(slot_id) == 4


def test_invalid_stored_window_config_fails_before_processing(tmp_path):
    service, repository = _build_service(tmp_path, "badwindows.db")
    (member,) = _add_members(repository, 1)
    repository.create_slot(MONDAY, 480, 4)
    request_id = repository.create_request(member, [member], MONDAY, "MORNING")
    repository.save_window_config(WindowConfig(open_minute=900, close_minute=600))

    with pytest.raises(WindowConfigurationError):
        service.process_lottery_for_date(MONDAY)

    assert repository.get_request_status(request_id) == "PENDING"
    assert repository.count_processing_runs() == 0


def test_stored_window_config_overrides_settings(tmp_path):
    service, repository = _build_service(tmp_path, "windows.db")
    repository.save_window_config(
        WindowConfig(open_minute=360, close_minute=720, bucket_count=2, labels=("EARLY", "LATE"))
    )

    windows = service.get_time_windows()

    assert [(w.label, w.start_minute, w.end_minute) for w in windows] == [
        ("EARLY", 360, 540),
        ("LATE", 540, 720),
    ]


def test_submit_group_request(tmp_path):
    service, repository = _build_service(tmp_path, "submit.db")
    members = _add_members(repository, 3)

    request = service.submit_request(
        organizer_id=members[0],
        requested_date=MONDAY,
        preferred_window="MORNING",
        alternate_window="MIDDAY",
        member_ids=[members[1], members[2]],
    )

    assert request.is_group
    assert request.member_ids == tuple(members)
    assert request.status == RequestStatus.PENDING


def test_submit_rejects_unknown_window_and_duplicates(tmp_path):
    service, repository = _build_service(tmp_path, "submit_invalid.db")
    first, second = _add_members(repository, 2)

    with pytest.raises(LotteryValidationError):
        service.submit_request(first, MONDAY, "NIGHT")
    with pytest.raises(LotteryValidationError):
        service.submit_request(first, MONDAY, "MORNING", alternate_window="MORNING")
    with pytest.raises(LotteryValidationError):
        service.submit_request(first, MONDAY, "MORNING", member_ids=[999])

    service.submit_request(first, MONDAY, "MORNING")
    with pytest.raises(LotteryValidationError):
        service.submit_request(second, MONDAY, "MIDDAY", member_ids=[first])


def test_submit_rejects_oversized_party(tmp_path):
    service, repository = _build_service(tmp_path, "oversized.db")
    members = _add_members(repository, 5)

    with pytest.raises(LotteryValidationError):
        service.submit_request(members[0], MONDAY, "MORNING", member_ids=members[1:])


def test_submission_frequency_limit_and_override(tmp_path):
    service, repository = _build_service(tmp_path, "frequency.db")
    (member,) = _add_members(repository, 1)
    repository.create_rule(
        FrequencyRule(rule_id=0, name="Weekly limit", max_count=1, period_days=7, can_override=True)
    )
    slot_id = repository.create_slot(MONDAY - timedelta(days=2), 480, 4)
    repository.create_booking(slot_id, member, MONDAY - timedelta(days=2), 480)

    with pytest.raises(SubmissionRestrictedError) as excinfo:
        service.submit_request(member, MONDAY, "MORNING")
    assert "1/1 in the last week" in str(excinfo.value)

    request = service.submit_request(member, MONDAY, "MORNING", override=True)
    assert request.status == RequestStatus.PENDING


def test_cancel_request(tmp_path):
    service, repository = _build_service(tmp_path, "cancel.db")
    (member,) = _add_members(repository, 1)
    request_id = repository.create_request(member, [member], MONDAY, "MORNING")

    cancelled = service.cancel_request(request_id)

    assert cancelled.status == RequestStatus.CANCELLED
    assert repository.list_pending_requests(MONDAY).all == []
    with pytest.raises(LotteryValidationError):
        service.cancel_request(request_id)
    with pytest.raises(RequestNotFoundError):
        service.cancel_request(9999)


def test_demo_seed_runs_end_to_end(tmp_path):
    service, repository = _build_service(tmp_path, "demo.db")
    repository.seed_demo_data()
    repository.seed_demo_data()

    lottery_date = datetime.now(timezone.utc).date() + timedelta(
        days=get_settings().demo_seed_days_ahead
    )
    pending = repository.list_pending_requests(lottery_date)
    assert pending.all

    summary = service.process_lottery_for_date(lottery_date)

    assert summary.total_requests == len(pending.all)
    assert summary.processed_count == summary.total_requests
    assert repository.count_bookings() == sum(r.party_size for r in pending.all)


def test_failed_assignment_write_leaves_request_pending_and_run_continues(tmp_path, monkeypatch):
    service, repository = _build_service(tmp_path, "writefail.db")
    first, second = _add_members(repository, 2)
    repository.create_slot(MONDAY, 480, 4)
    saved = repository.create_request(
        first, [first], MONDAY, "MORNING", submitted_at=BASE_TIME - timedelta(minutes=5)
    )
    failing = repository.create_request(second, [second], MONDAY, "MORNING", submitted_at=BASE_TIME)

    broken_ids = {failing}
    original_persist = repository.persist_assignment

    def flaky_persist(request_id, slot_id, member_ids, start_minute):
        if request_id in broken_ids:
            raise sqlite3.OperationalError("database is locked")
        return original_persist(request_id, slot_id, member_ids, start_minute)

    monkeypatch.setattr(repository, "persist_assignment", flaky_persist)

    summary = service.process_lottery_for_date(MONDAY)

    assert summary.processed_count == 1
    assert summary.pending_request_ids == [failing]
    assert summary.remaining_slots == 3
    assert repository.get_request_status(saved) == "ASSIGNED"
    assert repository.get_request_status(failing) == "PENDING"
    assert repository.get_fairness_record(first, "2026-03").preferences_granted == 1
    assert repository.get_fairness_record(second, "2026-03") is None
    assert repository.count_processing_runs() == 1
    entries = {entry.request_id: entry for entry in service.list_entry_logs(MONDAY)}
    assert entries[failing].outcome == "EXHAUSTED"
    assert "could not be saved" in entries[failing].restriction_details["reason"]

    broken_ids.clear()
    retry = service.process_lottery_for_date(MONDAY)

    assert retry.processed_count == 1
    assert repository.get_request_status(failing) == "ASSIGNED"
    assert repository.get_fairness_record(second, "2026-03").total_entries == 1


def test_missing_slot_on_write_does_not_abort_run(tmp_path, monkeypatch):
    service, repository = _build_service(tmp_path, "missingslot.db")
    (member,) = _add_members(repository, 1)
    repository.create_slot(MONDAY, 480, 4)
    request_id = repository.create_request(member, [member], MONDAY, "MORNING")

    def missing_slot(request_id, slot_id, member_ids, start_minute):
        raise RuntimeError(f"Slot {slot_id} does not exist")

    monkeypatch.setattr(repository, "persist_assignment", missing_slot)

    summary = service.process_lottery_for_date(MONDAY)

    assert summary.processed_count == 0
    assert summary.pending_request_ids == [request_id]
    assert summary.remaining_slots == 4
    assert repository.get_request_status(request_id) == "PENDING"
    assert repository.count_processing_runs() == 1


def test_stored_explicit_buckets_drive_submission(tmp_path):
    service, repository = _build_service(tmp_path, "buckets.db")
    (member,) = _add_members(repository, 1)
    repository.save_window_config(
        WindowConfig(
            open_minute=360,
            close_minute=1200,
            buckets=(TimeWindow("early", 360, 420), TimeWindow("late", 420, 1200)),
        )
    )

    assert [w.label for w in service.get_time_windows()] == ["early", "late"]
    request = service.submit_request(member, MONDAY, "EARLY", alternate_window="late")

    assert request.preferred_window == "early"
    assert request.alternate_window == "late"
