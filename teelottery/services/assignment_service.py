"""Greedy lottery assignment of pending requests to tee-time slots.

Groups are placed before individuals: a group needs all of its seats in one
slot, so it is resolved while the sheet is still empty. Each request then
walks an ordered cascade of candidate filters and takes the earliest slot of
the first tier that yields anything:

1. eligible slots in the preferred window
2. eligible slots in the alternate window
3. any eligible slot
4. any slot with capacity, eligibility ignored (policy fallback)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Mapping, Optional, Sequence

from teelottery.domain.models import (
    AssignmentReason,
    AssignmentRecord,
    DecisionOutcome,
    EligibilityDecision,
    LotteryRequest,
    LotteryResult,
    Member,
    PendingRequests,
    PlacementDecision,
    RequestStatus,
    Slot,
    TimeWindow,
)
from teelottery.services.eligibility_service import EligibilityFilter
from teelottery.services.window_service import format_minutes, minute_in_window
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)


class RequestInconsistencyError(Exception):
    """Raised when a request references members or data that cannot be resolved."""


@dataclass
class PlacementContext:
    """Everything a candidate filter needs to judge one request."""

    request: LotteryRequest
    members: list[Member]
    windows: Sequence[TimeWindow]
    slots: Sequence[Slot]
    capacity: dict[int, int]
    eligibility: EligibilityFilter
    _decisions: dict[int, EligibilityDecision] = field(default_factory=dict)

    def has_capacity(self, slot: Slot) -> bool:
        return self.capacity.get(slot.slot_id, 0) >= self.request.party_size

    def eligibility_for(self, slot: Slot) -> EligibilityDecision:
        decision = self._decisions.get(slot.slot_id)
        if decision is None:
            decision = self.eligibility.is_eligible_for_all(
                slot,
                self.members,
                self.request.requested_date,
            )
            self._decisions[slot.slot_id] = decision
        return decision

    def open_slots(self) -> list[Slot]:
        return [slot for slot in self.slots if self.has_capacity(slot)]

    def eligible_slots(self) -> list[Slot]:
        return [slot for slot in self.open_slots() if self.eligibility_for(slot).eligible]

    def in_window(self, slot: Slot, label: Optional[str]) -> bool:
        return minute_in_window(self.windows, label, slot.start_minute)

    def rule_blocked_preference(self) -> bool:
        """True when a rule, not capacity, kept the request out of its windows."""
        request = self.request
        for slot in self.open_slots():
            wanted = self.in_window(slot, request.preferred_window) or self.in_window(
                slot, request.alternate_window
            )
            if wanted and not self.eligibility_for(slot).eligible:
                return True
        return False


CandidateFilter = Callable[[PlacementContext], list[Slot]]


def preferred_window_candidates(context: PlacementContext) -> list[Slot]:
    return [
        slot
        for slot in context.eligible_slots()
        if context.in_window(slot, context.request.preferred_window)
    ]


def alternate_window_candidates(context: PlacementContext) -> list[Slot]:
    if not context.request.alternate_window:
        return []
    return [
        slot
        for slot in context.eligible_slots()
        if context.in_window(slot, context.request.alternate_window)
    ]


def any_eligible_candidates(context: PlacementContext) -> list[Slot]:
    return context.eligible_slots()


def any_available_candidates(context: PlacementContext) -> list[Slot]:
    return context.open_slots()


@dataclass(frozen=True)
class FallbackTier:
    reason: AssignmentReason
    select: CandidateFilter
    ignores_eligibility: bool = False


FALLBACK_TIERS: tuple[FallbackTier, ...] = (
    FallbackTier(AssignmentReason.PREFERRED_MATCH, preferred_window_candidates),
    FallbackTier(AssignmentReason.ALTERNATE_MATCH, alternate_window_candidates),
    FallbackTier(AssignmentReason.ALLOWED_FALLBACK, any_eligible_candidates),
    FallbackTier(
        AssignmentReason.RESTRICTION_VIOLATION,
        any_available_candidates,
        ignores_eligibility=True,
    ),
)


def select_slot(
    context: PlacementContext,
    tiers: Sequence[FallbackTier] = FALLBACK_TIERS,
) -> tuple[Optional[Slot], Optional[FallbackTier]]:
    for tier in tiers:
        candidates = tier.select(context)
        if candidates:
            return candidates[0], tier
    return None, None


def priority_order(
    requests: Sequence[LotteryRequest],
    priorities: Mapping[int, float],
) -> list[LotteryRequest]:
    """Highest priority first; earliest submission breaks ties."""
    return sorted(
        requests,
        key=lambda request: (
            -priorities.get(request.request_id, 0.0),
            request.submitted_at,
            request.request_id,
        ),
    )


class AssignmentEngine:
    """Single pass over one date's demand.

    The engine never touches storage. Capacity changes live in a working copy
    and every decision is handed to `on_decision` as soon as it is made so the
    caller can persist it before the next request is attempted.
    """

    def __init__(
        self,
        windows: Sequence[TimeWindow],
        eligibility: EligibilityFilter,
        members: Mapping[int, Member],
        max_party_size: int = 4,
        tiers: Sequence[FallbackTier] = FALLBACK_TIERS,
    ) -> None:
        self._windows = list(windows)
        self._eligibility = eligibility
        self._members = members
        self._max_party_size = max_party_size
        self._tiers = tuple(tiers)

    def _resolve_members(self, request: LotteryRequest) -> list[Member]:
        if request.organizer_id not in request.member_ids:
            raise RequestInconsistencyError("organizer is not part of the member list")
        if len(set(request.member_ids)) != len(request.member_ids):
            raise RequestInconsistencyError("member list contains duplicates")
        if request.is_group:
            if not 2 <= request.party_size <= self._max_party_size:
                raise RequestInconsistencyError(
                    f"group size {request.party_size} outside 2..{self._max_party_size}"
                )
        elif request.party_size != 1:
            raise RequestInconsistencyError("individual request must list exactly one member")

        missing = [member_id for member_id in request.member_ids if member_id not in self._members]
        if missing:
            raise RequestInconsistencyError(f"unknown member ids {missing}")
        return [self._members[member_id] for member_id in request.member_ids]

    def _skip(self, request: LotteryRequest, priority: float, detail: str) -> PlacementDecision:
        logger.warning(
            "Lottery request skipped | request_id=%s | reason=%s",
            request.request_id,
            detail,
        )
        return PlacementDecision(
            request_id=request.request_id,
            is_group=request.is_group,
            outcome=DecisionOutcome.SKIPPED,
            priority=priority,
            detail=detail,
        )

    def _place(
        self,
        request: LotteryRequest,
        requested_date: date,
        slots: Sequence[Slot],
        capacity: dict[int, int],
        priority: float,
    ) -> PlacementDecision:
        if request.status != RequestStatus.PENDING:
            return self._skip(request, priority, f"status is {request.status.value}")
        if request.requested_date != requested_date:
            return self._skip(
                request,
                priority,
                f"requested for {request.requested_date.isoformat()}",
            )
        try:
            members = self._resolve_members(request)
        except RequestInconsistencyError as exc:
            return self._skip(request, priority, str(exc))

        context = PlacementContext(
            request=request,
            members=members,
            windows=self._windows,
            slots=slots,
            capacity=capacity,
            eligibility=self._eligibility,
        )
        slot, tier = select_slot(context, self._tiers)
        if slot is None or tier is None:
            logger.info(
                "Lottery request left pending | request_id=%s | party_size=%s",
                request.request_id,
                request.party_size,
            )
            return PlacementDecision(
                request_id=request.request_id,
                is_group=request.is_group,
                outcome=DecisionOutcome.EXHAUSTED,
                priority=priority,
                detail="no slot with sufficient capacity",
            )

        capacity[slot.slot_id] -= request.party_size
        violations = context.eligibility_for(slot).violations
        rule_load_bearing = tier.ignores_eligibility or context.rule_blocked_preference()
        detail = ""
        if tier.ignores_eligibility:
            detail = context.eligibility_for(slot).preferred_reason
            logger.warning(
                "Policy fallback assignment | request_id=%s | slot_id=%s | start=%s | reason=%s",
                request.request_id,
                slot.slot_id,
                format_minutes(slot.start_minute),
                detail,
            )
        return PlacementDecision(
            request_id=request.request_id,
            is_group=request.is_group,
            outcome=DecisionOutcome.ASSIGNED,
            priority=priority,
            assignment=AssignmentRecord(
                request_id=request.request_id,
                slot_id=slot.slot_id,
                member_ids=request.member_ids,
                start_minute=slot.start_minute,
            ),
            reason=tier.reason,
            policy_fallback=tier.ignores_eligibility,
            rule_load_bearing=rule_load_bearing,
            violated_rule_ids=tuple(v.rule_id for v in violations) if tier.ignores_eligibility else (),
            detail=detail,
        )

    def run(
        self,
        requested_date: date,
        pending: PendingRequests,
        slots: Sequence[Slot],
        priorities: Mapping[int, float],
        on_decision: Optional[Callable[[PlacementDecision], None]] = None,
    ) -> LotteryResult:
        usable_slots: list[Slot] = []
        for slot in slots:
            if slot.slot_date != requested_date:
                logger.warning(
                    "Slot ignored | slot_id=%s | slot_date=%s | lottery_date=%s",
                    slot.slot_id,
                    slot.slot_date.isoformat(),
                    requested_date.isoformat(),
                )
                continue
            usable_slots.append(slot)
        usable_slots.sort(key=lambda slot: (slot.start_minute, slot.slot_id))
        capacity = {
            slot.slot_id: max(0, min(slot.remaining_capacity, slot.total_capacity))
            for slot in usable_slots
        }

        logger.info(
            (
                "Lottery pass started | date=%s | slots=%s | open_seats=%s | "
                "groups=%s | individuals=%s"
            ),
            requested_date.isoformat(),
            len(usable_slots),
            sum(capacity.values()),
            len(pending.groups),
            len(pending.individual),
        )

        decisions: list[PlacementDecision] = []
        assignments: list[AssignmentRecord] = []
        ordered = [
            *priority_order(pending.groups, priorities),
            *priority_order(pending.individual, priorities),
        ]
        for request in ordered:
            decision = self._place(
                request,
                requested_date,
                usable_slots,
                capacity,
                priorities.get(request.request_id, 0.0),
            )
            decisions.append(decision)
            if decision.assignment is not None:
                assignments.append(decision.assignment)
            if on_decision is not None:
                on_decision(decision)

        result = LotteryResult(
            decisions=decisions,
            assignments=assignments,
            remaining_capacity=capacity,
        )
        logger.info(
            "Lottery pass completed | date=%s | assigned=%s/%s | bookings=%s | remaining_seats=%s",
            requested_date.isoformat(),
            len(assignments),
            len(ordered),
            result.bookings_created,
            sum(capacity.values()),
        )
        return result
