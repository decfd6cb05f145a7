"""Domain models for tee-time lottery allocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    CANCELLED = "CANCELLED"


class SpeedTier(str, Enum):
    FAST = "FAST"
    AVERAGE = "AVERAGE"
    SLOW = "SLOW"


class RuleType(str, Enum):
    TIME = "TIME"
    FREQUENCY = "FREQUENCY"
    AVAILABILITY = "AVAILABILITY"


class AssignmentReason(str, Enum):
    PREFERRED_MATCH = "PREFERRED_MATCH"
    ALTERNATE_MATCH = "ALTERNATE_MATCH"
    ALLOWED_FALLBACK = "ALLOWED_FALLBACK"
    RESTRICTION_VIOLATION = "RESTRICTION_VIOLATION"


class DecisionOutcome(str, Enum):
    ASSIGNED = "ASSIGNED"
    EXHAUSTED = "EXHAUSTED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class Member:
    member_id: int
    member_class: str
    name: str = ""


@dataclass(frozen=True)
class LotteryRequest:
    """One unit of lottery demand.

    An individual request has a single member id (the organizer). A group
    request lists every member, organizer included, and is admitted whole or
    not at all.
    """

    request_id: int
    organizer_id: int
    member_ids: tuple[int, ...]
    requested_date: date
    preferred_window: str
    alternate_window: Optional[str]
    submitted_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    assigned_slot_id: Optional[int] = None
    is_group: bool = False

    @property
    def party_size(self) -> int:
        return len(self.member_ids)


@dataclass(frozen=True)
class Slot:
    slot_id: int
    slot_date: date
    start_minute: int
    total_capacity: int
    remaining_capacity: int


@dataclass(frozen=True)
class TimeWindow:
    label: str
    start_minute: int
    end_minute: int

    def contains(self, minute: int) -> bool:
        return self.start_minute <= minute < self.end_minute


@dataclass(frozen=True)
class TimeRule:
    rule_id: int
    name: str
    start_minute: int
    end_minute: int
    member_classes: frozenset[str] = frozenset()
    days_of_week: frozenset[int] = frozenset()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    description: str = ""
    is_active: bool = True
    can_override: bool = False
    priority: int = 0
    rule_type: RuleType = field(default=RuleType.TIME, init=False)


@dataclass(frozen=True)
class FrequencyRule:
    rule_id: int
    name: str
    max_count: int
    period_days: int
    member_classes: frozenset[str] = frozenset()
    description: str = ""
    is_active: bool = True
    can_override: bool = False
    priority: int = 0
    rule_type: RuleType = field(default=RuleType.FREQUENCY, init=False)


@dataclass(frozen=True)
class AvailabilityRule:
    rule_id: int
    name: str
    start_date: date
    end_date: date
    description: str = ""
    is_active: bool = True
    can_override: bool = False
    priority: int = 0
    rule_type: RuleType = field(default=RuleType.AVAILABILITY, init=False)


EligibilityRule = Union[TimeRule, FrequencyRule, AvailabilityRule]


@dataclass(frozen=True)
class RuleViolation:
    rule_id: int
    rule_name: str
    rule_type: RuleType
    message: str
    can_override: bool
    description: str = ""

    @property
    def reason(self) -> str:
        return self.description if self.description.strip() else self.message


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    was_rule_load_bearing: bool
    violations: tuple[RuleViolation, ...] = ()
    preferred_reason: str = ""


@dataclass(frozen=True)
class FairnessRecord:
    member_id: int
    period: str
    total_entries: int = 0
    preferences_granted: int = 0
    fulfillment_rate: float = 0.0
    days_without_good_time: int = 0
    fairness_score: int = 0


@dataclass(frozen=True)
class SpeedProfile:
    member_id: int
    speed_tier: SpeedTier = SpeedTier.AVERAGE
    admin_adjustment: int = 0


@dataclass(frozen=True)
class AssignmentRecord:
    request_id: int
    slot_id: int
    member_ids: tuple[int, ...]
    start_minute: int


@dataclass(frozen=True)
class PlacementDecision:
    """Outcome of a single request's attempt during a lottery pass."""

    request_id: int
    is_group: bool
    outcome: DecisionOutcome
    priority: float = 0.0
    assignment: Optional[AssignmentRecord] = None
    reason: Optional[AssignmentReason] = None
    policy_fallback: bool = False
    rule_load_bearing: bool = False
    violated_rule_ids: tuple[int, ...] = ()
    detail: str = ""


@dataclass(frozen=True)
class PendingRequests:
    individual: list[LotteryRequest]
    groups: list[LotteryRequest]

    @property
    def all(self) -> list[LotteryRequest]:
        return [*self.groups, *self.individual]


@dataclass(frozen=True)
class LotteryResult:
    """In-memory result of a pass before fairness feedback is applied."""

    decisions: list[PlacementDecision]
    assignments: list[AssignmentRecord]
    remaining_capacity: dict[int, int]

    @property
    def bookings_created(self) -> int:
        return sum(len(record.member_ids) for record in self.assignments)


@dataclass(frozen=True)
class LotteryRunSummary:
    lottery_date: date
    processed_count: int
    total_requests: int
    bookings_created: int
    groups_assigned: int
    individuals_assigned: int
    policy_fallback_count: int
    pending_request_ids: list[int]
    skipped_request_ids: list[int]
    remaining_slots: int
    decisions: list[PlacementDecision] = field(default_factory=list)
