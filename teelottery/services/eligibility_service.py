"""Member-class eligibility checks for tee-time slots.

Two orderings live here and must not be confused:

- Rules are *evaluated* in their own priority order (highest first), which is
  the order violations are listed in.
- The human-readable reason always prefers an availability violation over a
  time violation over a frequency violation, whatever the rule priorities are.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable, Mapping, Optional, Sequence

from teelottery.domain.models import (
    AvailabilityRule,
    EligibilityDecision,
    EligibilityRule,
    FrequencyRule,
    Member,
    RuleType,
    RuleViolation,
    Slot,
    TimeRule,
)
from teelottery.services.window_service import format_minutes
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)

REASON_PRECEDENCE = (RuleType.AVAILABILITY, RuleType.TIME, RuleType.FREQUENCY)


def _applies_to_class(member_classes: frozenset[str], member_class: str) -> bool:
    return not member_classes or member_class in member_classes


def _within_dates(target: date, start: Optional[date], end: Optional[date]) -> bool:
    if start is not None and target < start:
        return False
    if end is not None and target > end:
        return False
    return True


def _period_label(period_days: int) -> str:
    if period_days == 7:
        return "week"
    if period_days == 30:
        return "month"
    return f"{period_days} days"


def order_rules(rules: Iterable[EligibilityRule]) -> list[EligibilityRule]:
    """Internal evaluation order: priority descending, then rule id."""
    return sorted(rules, key=lambda rule: (-rule.priority, rule.rule_id))


def preferred_reason(violations: Sequence[RuleViolation]) -> str:
    for rule_type in REASON_PRECEDENCE:
        for violation in violations:
            if violation.rule_type == rule_type:
                return violation.reason
    return ""


def count_bookings_in_window(
    booking_dates: Sequence[date],
    target_date: date,
    period_days: int,
) -> int:
    """Count bookings in the rolling window `[target - period_days, target]`."""
    window_start = target_date - timedelta(days=period_days)
    return sum(1 for booked in booking_dates if window_start <= booked <= target_date)


class EligibilityFilter:
    """Decides whether a requester may occupy a slot on a given date.

    `booking_history` maps member id to the dates of that member's confirmed
    bookings and is only consulted by frequency rules.
    """

    def __init__(
        self,
        rules: Iterable[EligibilityRule] = (),
        booking_history: Optional[Mapping[int, Sequence[date]]] = None,
    ) -> None:
        self._rules = [rule for rule in order_rules(rules) if rule.is_active]
        self._booking_history = dict(booking_history or {})

    @property
    def rules(self) -> list[EligibilityRule]:
        return list(self._rules)

    def _check_time_rule(
        self,
        rule: TimeRule,
        slot: Slot,
        requester: Member,
        requested_date: date,
    ) -> Optional[RuleViolation]:
        if not _applies_to_class(rule.member_classes, requester.member_class):
            return None
        if rule.days_of_week and requested_date.weekday() not in rule.days_of_week:
            return None
        if not rule.start_minute <= slot.start_minute < rule.end_minute:
            return None
        if not _within_dates(requested_date, rule.start_date, rule.end_date):
            return None
        return RuleViolation(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            rule_type=RuleType.TIME,
            message=(
                f"{requester.member_class} members may not play between "
                f"{format_minutes(rule.start_minute)} and {format_minutes(rule.end_minute)}"
            ),
            can_override=rule.can_override,
            description=rule.description,
        )

    def _check_frequency_rule(
        self,
        rule: FrequencyRule,
        requester: Member,
        requested_date: date,
    ) -> Optional[RuleViolation]:
        if not _applies_to_class(rule.member_classes, requester.member_class):
            return None
        current = count_bookings_in_window(
            self._booking_history.get(requester.member_id, ()),
            requested_date,
            rule.period_days,
        )
        if current + 1 <= rule.max_count:
            return None
        return RuleViolation(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            rule_type=RuleType.FREQUENCY,
            message=(
                f"Booking limit reached ({current}/{rule.max_count} in the last "
                f"{_period_label(rule.period_days)})"
            ),
            can_override=rule.can_override,
            description=rule.description,
        )

    @staticmethod
    def _check_availability_rule(
        rule: AvailabilityRule,
        requested_date: date,
    ) -> Optional[RuleViolation]:
        if not _within_dates(requested_date, rule.start_date, rule.end_date):
            return None
        return RuleViolation(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            rule_type=RuleType.AVAILABILITY,
            message=(
                f"Course unavailable from {rule.start_date.isoformat()} "
                f"to {rule.end_date.isoformat()}"
            ),
            can_override=rule.can_override,
            description=rule.description,
        )

    def _violations(
        self,
        slot: Optional[Slot],
        requester: Member,
        requested_date: date,
        rule_types: frozenset[RuleType],
    ) -> list[RuleViolation]:
        violations: list[RuleViolation] = []
        for rule in self._rules:
            if rule.rule_type not in rule_types:
                continue
            if isinstance(rule, TimeRule):
                if slot is None:
                    continue
                violation = self._check_time_rule(rule, slot, requester, requested_date)
            elif isinstance(rule, FrequencyRule):
                violation = self._check_frequency_rule(rule, requester, requested_date)
            else:
                violation = self._check_availability_rule(rule, requested_date)
            if violation is not None:
                violations.append(violation)
        return violations

    @staticmethod
    def _decision(violations: list[RuleViolation]) -> EligibilityDecision:
        return EligibilityDecision(
            eligible=not violations,
            was_rule_load_bearing=bool(violations),
            violations=tuple(violations),
            preferred_reason=preferred_reason(violations),
        )

    def is_eligible(
        self,
        slot: Slot,
        requester: Member,
        requested_date: date,
    ) -> EligibilityDecision:
        """Evaluate every active rule for one requester against one slot.

        Capacity is not considered; a full slot is the caller's concern.
        """
        violations = self._violations(
            slot,
            requester,
            requested_date,
            frozenset(RuleType),
        )
        return self._decision(violations)

    def is_eligible_for_all(
        self,
        slot: Slot,
        requesters: Sequence[Member],
        requested_date: date,
    ) -> EligibilityDecision:
        """A slot is usable by a group only if no member is blocked."""
        violations: list[RuleViolation] = []
        seen: set[int] = set()
        for requester in requesters:
            for violation in self.is_eligible(slot, requester, requested_date).violations:
                if violation.rule_id in seen:
                    continue
                seen.add(violation.rule_id)
                violations.append(violation)
        return self._decision(violations)

    def check_submission(
        self,
        requester: Member,
        requested_date: date,
        override: bool = False,
    ) -> EligibilityDecision:
        """Frequency check applied when an entry is submitted.

        With `override`, violations of rules flagged `can_override` are waived.
        """
        violations = self._violations(
            None,
            requester,
            requested_date,
            frozenset({RuleType.FREQUENCY}),
        )
        if override:
            violations = [violation for violation in violations if not violation.can_override]
        if violations:
            logger.info(
                "Submission restricted | member_id=%s | date=%s | reason=%s",
                requester.member_id,
                requested_date.isoformat(),
                preferred_reason(violations),
            )
        return self._decision(violations)
