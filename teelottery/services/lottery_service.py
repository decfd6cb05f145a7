"""Lottery processing orchestration: load, score, assign, persist, feed back."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Mapping, Optional, Sequence

from teelottery.domain.constraints import LotteryConfig, WindowConfig, validate_lottery_config
from teelottery.domain.models import (
    DecisionOutcome,
    FrequencyRule,
    LotteryRequest,
    LotteryRunSummary,
    PendingRequests,
    PlacementDecision,
    RequestStatus,
    RuleViolation,
    SpeedTier,
    TimeWindow,
)
from teelottery.repository.data_repository import DataRepository, ProcessingEntryLog
from teelottery.services.assignment_service import AssignmentEngine
from teelottery.services.eligibility_service import EligibilityFilter
from teelottery.services.fairness_service import FairnessScorer
from teelottery.services.feedback_service import (
    FairnessUpdate,
    apply_fairness_feedback,
    tracking_period,
)
from teelottery.services.window_service import resolve_time_windows, resolve_window_label
from teelottery.utils.config import Settings, get_settings
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)


class LotteryValidationError(Exception):
    """Raised when a lottery request or run input is invalid."""


class RequestNotFoundError(Exception):
    """Raised when a lottery request id does not exist."""


class SubmissionRestrictedError(Exception):
    """Raised when a member is over a booking limit at submission time."""

    def __init__(self, message: str, violations: Sequence[RuleViolation]) -> None:
        super().__init__(message)
        self.violations = tuple(violations)


def lottery_config_from_settings(settings: Settings) -> LotteryConfig:
    return LotteryConfig(
        max_party_size=settings.lottery_max_party_size,
        admin_adjustment_limit=settings.lottery_admin_adjustment_limit,
        low_fulfillment_threshold=settings.fairness_low_fulfillment_threshold,
        low_fulfillment_bonus=settings.fairness_low_fulfillment_bonus,
        mid_fulfillment_threshold=settings.fairness_mid_fulfillment_threshold,
        mid_fulfillment_bonus=settings.fairness_mid_fulfillment_bonus,
        streak_bonus_per_miss=settings.fairness_streak_bonus_per_miss,
        streak_bonus_cap=settings.fairness_streak_bonus_cap,
    )


def window_config_from_settings(settings: Settings) -> WindowConfig:
    return WindowConfig(
        open_minute=settings.window_open_minute,
        close_minute=settings.window_close_minute,
        bucket_count=settings.window_bucket_count,
    )


def history_lookback_days(rules: Sequence[object]) -> int:
    """Longest frequency window among the active rules, 0 when there is none."""
    periods = [rule.period_days for rule in rules if isinstance(rule, FrequencyRule)]
    return max(periods, default=0)


def build_entry_logs(
    decisions: Sequence[PlacementDecision],
    requests_by_id: Mapping[int, LotteryRequest],
    updates: Sequence[FairnessUpdate],
) -> list[ProcessingEntryLog]:
    updates_by_request = {update.request_id: update for update in updates}
    entries: list[ProcessingEntryLog] = []
    for decision in decisions:
        request = requests_by_id[decision.request_id]
        update = updates_by_request.get(decision.request_id)
        assignment = decision.assignment
        details: Optional[dict] = None
        if decision.policy_fallback:
            details = {
                "violated_rule_ids": list(decision.violated_rule_ids),
                "reason": decision.detail,
            }
        elif decision.outcome != DecisionOutcome.ASSIGNED and decision.detail:
            details = {"reason": decision.detail}
        entries.append(
            ProcessingEntryLog(
                request_id=decision.request_id,
                entry_type="GROUP" if decision.is_group else "INDIVIDUAL",
                preferred_window=request.preferred_window,
                alternate_window=request.alternate_window,
                outcome=decision.outcome.value,
                priority=decision.priority,
                assigned_slot_id=assignment.slot_id if assignment else None,
                assigned_start_minute=assignment.start_minute if assignment else None,
                assignment_reason=decision.reason.value if decision.reason else None,
                violated_restrictions=decision.policy_fallback,
                restriction_details=details,
                fairness_score_before=update.score_before if update else None,
                fairness_score_after=update.score_after if update else None,
                preference_granted=update.preference_granted if update else None,
            )
        )
    return entries


def _unsaved_decision(
    decision: PlacementDecision,
    outcome: DecisionOutcome,
    detail: str,
) -> PlacementDecision:
    return replace(
        decision,
        outcome=outcome,
        assignment=None,
        reason=None,
        policy_fallback=False,
        rule_load_bearing=False,
        violated_rule_ids=(),
        detail=detail,
    )


@dataclass(frozen=True)
class _RunInputs:
    windows: list[TimeWindow]
    pending: PendingRequests
    engine: AssignmentEngine
    priorities: dict[int, float]
    records: dict
    period: str


class LotteryProcessingService:
    """Runs the daily lottery for a date and manages entry submission."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        speed_bonuses: Optional[Mapping[str, Mapping[SpeedTier, int]]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._speed_bonuses = speed_bonuses

    def lottery_config(self) -> LotteryConfig:
        config = lottery_config_from_settings(self._settings)
        try:
            validate_lottery_config(config)
        except ValueError as exc:
            raise LotteryValidationError(str(exc)) from exc
        return config

    def get_time_windows(self) -> list[TimeWindow]:
        """Resolve the stored site windows, or the configured defaults."""
        config = self._repository.get_window_config() or window_config_from_settings(
            self._settings
        )
        return resolve_time_windows(config)

    def _load_inputs(self, lottery_date: date, config: LotteryConfig) -> _RunInputs:
        # Window errors must surface before any request is touched.
        windows = self.get_time_windows()
        pending = self._repository.list_pending_requests(lottery_date)
        rules = self._repository.list_active_rules(lottery_date)

        all_requests = pending.all
        member_ids = {member_id for request in all_requests for member_id in request.member_ids}
        organizer_ids = {request.organizer_id for request in all_requests}
        members = self._repository.list_members(member_ids)

        lookback = history_lookback_days(rules)
        history = (
            self._repository.get_booking_history(
                member_ids,
                lottery_date - timedelta(days=lookback),
                lottery_date,
            )
            if lookback
            else {}
        )

        period = tracking_period(lottery_date)
        records = self._repository.list_fairness_records(organizer_ids, period)
        profiles = self._repository.list_speed_profiles(organizer_ids)
        scorer = FairnessScorer(
            fairness_records=records,
            speed_profiles=profiles,
            adjustment_limit=config.admin_adjustment_limit,
            speed_bonuses=self._speed_bonuses,
        )

        engine = AssignmentEngine(
            windows=windows,
            eligibility=EligibilityFilter(rules, history),
            members=members,
            max_party_size=config.max_party_size,
        )
        return _RunInputs(
            windows=windows,
            pending=pending,
            engine=engine,
            priorities=scorer.priorities(all_requests),
            records=records,
            period=period,
        )

    def process_lottery_for_date(
        self,
        lottery_date: date,
        persist_outputs: bool = True,
    ) -> LotteryRunSummary:
        """Run one lottery pass for `lottery_date`.

        With `persist_outputs`, each assignment is written as soon as it is
        decided, then fairness records and the per-entry run log are saved.
        Without it the run is a dry preview and nothing is written.
        """
        config = self.lottery_config()
        inputs = self._load_inputs(lottery_date, config)
        slots = self._repository.list_available_slots(lottery_date)
        requests_by_id = {request.request_id: request for request in inputs.pending.all}
        unsaved: dict[int, PlacementDecision] = {}

        def persist_decision(decision: PlacementDecision) -> None:
            if decision.assignment is None:
                return
            record = decision.assignment
            try:
                stored = self._repository.persist_assignment(
                    request_id=record.request_id,
                    slot_id=record.slot_id,
                    member_ids=record.member_ids,
                    start_minute=record.start_minute,
                )
            except (sqlite3.Error, RuntimeError) as exc:
                logger.error(
                    "Assignment persistence failed | request_id=%s | slot_id=%s | error=%s",
                    record.request_id,
                    record.slot_id,
                    exc,
                )
                unsaved[record.request_id] = _unsaved_decision(
                    decision,
                    DecisionOutcome.EXHAUSTED,
                    f"assignment could not be saved: {exc}",
                )
                return
            if not stored:
                unsaved[record.request_id] = _unsaved_decision(
                    decision,
                    DecisionOutcome.SKIPPED,
                    "request is no longer pending",
                )

        result = inputs.engine.run(
            requested_date=lottery_date,
            pending=inputs.pending,
            slots=slots,
            priorities=inputs.priorities,
            on_decision=persist_decision if persist_outputs else None,
        )

        # Unsaved assignments return their seats and are left out of fairness
        # feedback. A failed write leaves the request PENDING for the next run.
        decisions = [unsaved.get(d.request_id, d) for d in result.decisions]
        remaining_capacity = dict(result.remaining_capacity)
        for decision in result.decisions:
            if decision.request_id in unsaved and decision.assignment is not None:
                remaining_capacity[decision.assignment.slot_id] += len(
                    decision.assignment.member_ids
                )

        feedback = apply_fairness_feedback(
            decisions=[d for d in decisions if d.request_id not in unsaved],
            requests_by_id=requests_by_id,
            windows=inputs.windows,
            records=inputs.records,
            period=inputs.period,
            config=config,
        )

        assigned = [d for d in decisions if d.outcome == DecisionOutcome.ASSIGNED]
        summary = LotteryRunSummary(
            lottery_date=lottery_date,
            processed_count=len(assigned),
            total_requests=len(decisions),
            bookings_created=sum(
                len(d.assignment.member_ids) for d in assigned if d.assignment is not None
            ),
            groups_assigned=sum(1 for d in assigned if d.is_group),
            individuals_assigned=sum(1 for d in assigned if not d.is_group),
            policy_fallback_count=sum(1 for d in assigned if d.policy_fallback),
            pending_request_ids=[
                d.request_id for d in decisions if d.outcome == DecisionOutcome.EXHAUSTED
            ],
            skipped_request_ids=[
                d.request_id for d in decisions if d.outcome == DecisionOutcome.SKIPPED
            ],
            remaining_slots=sum(remaining_capacity.values()),
            decisions=decisions,
        )

        if persist_outputs:
            self._repository.save_fairness_records(feedback.records.values())
            run_id = self._repository.create_processing_run(
                lottery_date=lottery_date,
                total_requests=summary.total_requests,
                assigned_count=summary.processed_count,
                group_count=summary.groups_assigned,
                individual_count=summary.individuals_assigned,
                violation_count=summary.policy_fallback_count,
                bookings_created=summary.bookings_created,
            )
            self._repository.save_processing_entry_logs(
                run_id,
                build_entry_logs(decisions, requests_by_id, feedback.updates),
            )

        logger.info(
            (
                "Lottery processed | date=%s | persisted=%s | assigned=%s/%s | "
                "bookings=%s | fallbacks=%s | pending=%s | skipped=%s"
            ),
            lottery_date.isoformat(),
            persist_outputs,
            summary.processed_count,
            summary.total_requests,
            summary.bookings_created,
            summary.policy_fallback_count,
            len(summary.pending_request_ids),
            len(summary.skipped_request_ids),
        )
        return summary

    def preview_lottery(self, lottery_date: date) -> LotteryRunSummary:
        return self.process_lottery_for_date(lottery_date, persist_outputs=False)

    def submit_request(
        self,
        organizer_id: int,
        requested_date: date,
        preferred_window: str,
        alternate_window: Optional[str] = None,
        member_ids: Optional[Sequence[int]] = None,
        submitted_at: Optional[datetime] = None,
        override: bool = False,
    ) -> LotteryRequest:
        """Validate and store a new PENDING request.

        `member_ids` may include or omit the organizer; a request with more than
        one distinct member becomes a group request.
        """
        config = self.lottery_config()
        party = [organizer_id, *[m for m in (member_ids or []) if m != organizer_id]]
        if len(set(party)) != len(party):
            raise LotteryValidationError("member_ids must not contain duplicates")
        if len(party) > config.max_party_size:
            raise LotteryValidationError(
                f"party size {len(party)} exceeds the maximum of {config.max_party_size}"
            )

        labels = [window.label for window in self.get_time_windows()]
        resolved = resolve_window_label(preferred_window, labels)
        if resolved is None:
            raise LotteryValidationError(f"unknown preferred window {preferred_window!r}")
        preferred_window = resolved
        if alternate_window is not None:
            resolved = resolve_window_label(alternate_window, labels)
            if resolved is None:
                raise LotteryValidationError(f"unknown alternate window {alternate_window!r}")
            alternate_window = resolved
            if alternate_window == preferred_window:
                raise LotteryValidationError("alternate window must differ from preferred window")

        members = self._repository.list_members(party)
        missing = [member_id for member_id in party if member_id not in members]
        if missing:
            raise LotteryValidationError(f"unknown member ids {missing}")

        already_entered = self._repository.list_members_with_active_requests(party, requested_date)
        if already_entered:
            raise LotteryValidationError(
                f"members {sorted(already_entered)} already have a lottery entry for "
                f"{requested_date.isoformat()}"
            )

        rules = [
            rule
            for rule in self._repository.list_active_rules(requested_date)
            if isinstance(rule, FrequencyRule)
        ]
        if rules:
            lookback = history_lookback_days(rules)
            history = self._repository.get_booking_history(
                [organizer_id],
                requested_date - timedelta(days=lookback),
                requested_date,
            )
            decision = EligibilityFilter(rules, history).check_submission(
                members[organizer_id],
                requested_date,
                override=override,
            )
            if not decision.eligible:
                raise SubmissionRestrictedError(decision.preferred_reason, decision.violations)

        request_id = self._repository.create_request(
            organizer_id=organizer_id,
            member_ids=party,
            requested_date=requested_date,
            preferred_window=preferred_window,
            alternate_window=alternate_window,
            submitted_at=submitted_at,
        )
        logger.info(
            "Lottery request submitted | request_id=%s | organizer_id=%s | date=%s | party_size=%s",
            request_id,
            organizer_id,
            requested_date.isoformat(),
            len(party),
        )
        request = self._repository.get_request(request_id)
        if request is None:  # pragma: no cover - defensive fallback
            raise RequestNotFoundError(f"Request {request_id} was not stored")
        return request

    def cancel_request(self, request_id: int) -> LotteryRequest:
        request = self._repository.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        if request.status != RequestStatus.PENDING:
            raise LotteryValidationError(
                f"Only PENDING requests can be cancelled; request {request_id} is "
                f"{request.status.value}"
            )
        self._repository.mark_request_status(request_id, RequestStatus.CANCELLED)
        logger.info("Lottery request cancelled | request_id=%s", request_id)
        cancelled = self._repository.get_request(request_id)
        if cancelled is None:  # pragma: no cover - defensive fallback
            raise RequestNotFoundError(f"Request {request_id} not found")
        return cancelled

    def list_entry_logs(self, lottery_date: date) -> list[ProcessingEntryLog]:
        return self._repository.list_processing_entry_logs(lottery_date)
