"""HTTP controller layer for the tee-time lottery."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from teelottery.controllers.dependencies import get_lottery_service
from teelottery.domain.models import LotteryRequest, LotteryRunSummary
from teelottery.services.lottery_service import (
    LotteryProcessingService,
    LotteryValidationError,
    RequestNotFoundError,
    SubmissionRestrictedError,
)
from teelottery.services.window_service import WindowConfigurationError, format_minutes
from teelottery.utils.config import get_settings
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(prefix="/lottery", tags=["lottery"])


class TimeWindowResponse(BaseModel):
    label: str
    start: str
    end: str
    start_minute: int = Field(ge=0)
    end_minute: int = Field(gt=0)


class SubmitRequestPayload(BaseModel):
    """Input DTO validated before entering service layer."""

    organizer_id: int = Field(gt=0)
    requested_date: date
    preferred_window: str = Field(min_length=1)
    alternate_window: Optional[str] = None
    member_ids: list[int] = Field(default_factory=list)
    override: bool = False

    @field_validator("member_ids")
    @classmethod
    def validate_member_ids(cls, value: list[int]) -> list[int]:
        if len(value) > settings.lottery_max_party_size:
            raise ValueError(
                f"member_ids must list at most {settings.lottery_max_party_size} members"
            )
        for member_id in value:
            if member_id <= 0:
                raise ValueError("member_ids values must be positive integers")
        return value

    @field_validator("preferred_window", "alternate_window")
    @classmethod
    def normalize_window_label(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("window label must be non-empty")
        return stripped


class LotteryRequestResponse(BaseModel):
    request_id: int = Field(gt=0)
    organizer_id: int = Field(gt=0)
    member_ids: list[int]
    requested_date: date
    preferred_window: str
    alternate_window: Optional[str] = None
    submitted_at: datetime
    status: str
    assigned_slot_id: Optional[int] = None
    is_group: bool


class PlacementDecisionResponse(BaseModel):
    request_id: int
    is_group: bool
    outcome: str
    priority: float
    slot_id: Optional[int] = None
    start: Optional[str] = None
    assignment_reason: Optional[str] = None
    policy_fallback: bool
    rule_load_bearing: bool
    violated_rule_ids: list[int]
    detail: str


class LotteryRunResponse(BaseModel):
    lottery_date: date
    processed_count: int = Field(ge=0)
    total_requests: int = Field(ge=0)
    bookings_created: int = Field(ge=0)
    groups_assigned: int = Field(ge=0)
    individuals_assigned: int = Field(ge=0)
    policy_fallback_count: int = Field(ge=0)
    pending_request_ids: list[int]
    skipped_request_ids: list[int]
    remaining_slots: int = Field(ge=0)
    decisions: list[PlacementDecisionResponse]


class EntryLogResponse(BaseModel):
    request_id: int
    entry_type: str
    preferred_window: Optional[str] = None
    alternate_window: Optional[str] = None
    outcome: str
    priority: float
    assigned_slot_id: Optional[int] = None
    assigned_start: Optional[str] = None
    assignment_reason: Optional[str] = None
    violated_restrictions: bool
    restriction_details: Optional[dict] = None
    fairness_score_before: Optional[int] = None
    fairness_score_after: Optional[int] = None
    preference_granted: Optional[bool] = None


class EntryLogListResponse(BaseModel):
    lottery_date: date
    entries: list[EntryLogResponse]


def _request_response(request: LotteryRequest) -> LotteryRequestResponse:
    return LotteryRequestResponse(
        request_id=request.request_id,
        organizer_id=request.organizer_id,
        member_ids=list(request.member_ids),
        requested_date=request.requested_date,
        preferred_window=request.preferred_window,
        alternate_window=request.alternate_window,
        submitted_at=request.submitted_at,
        status=request.status.value,
        assigned_slot_id=request.assigned_slot_id,
        is_group=request.is_group,
    )


def _run_response(summary: LotteryRunSummary) -> LotteryRunResponse:
    return LotteryRunResponse(
        lottery_date=summary.lottery_date,
        processed_count=summary.processed_count,
        total_requests=summary.total_requests,
        bookings_created=summary.bookings_created,
        groups_assigned=summary.groups_assigned,
        individuals_assigned=summary.individuals_assigned,
        policy_fallback_count=summary.policy_fallback_count,
        pending_request_ids=summary.pending_request_ids,
        skipped_request_ids=summary.skipped_request_ids,
        remaining_slots=summary.remaining_slots,
        decisions=[
            PlacementDecisionResponse(
                request_id=decision.request_id,
                is_group=decision.is_group,
                outcome=decision.outcome.value,
                priority=decision.priority,
                slot_id=decision.assignment.slot_id if decision.assignment else None,
                start=(
                    format_minutes(decision.assignment.start_minute)
                    if decision.assignment
                    else None
                ),
                assignment_reason=decision.reason.value if decision.reason else None,
                policy_fallback=decision.policy_fallback,
                rule_load_bearing=decision.rule_load_bearing,
                violated_rule_ids=list(decision.violated_rule_ids),
                detail=decision.detail,
            )
            for decision in summary.decisions
        ],
    )


@router.get(
    "/windows",
    response_model=list[TimeWindowResponse],
    status_code=status.HTTP_200_OK,
)
async def list_time_windows(
    service: LotteryProcessingService = Depends(get_lottery_service),
) -> list[TimeWindowResponse]:
    try:
        windows = service.get_time_windows()
    except WindowConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return [
        TimeWindowResponse(
            label=window.label,
            start=format_minutes(window.start_minute),
            end=format_minutes(window.end_minute),
            start_minute=window.start_minute,
            end_minute=window.end_minute,
        )
        for window in windows
    ]


@router.post(
    "/requests",
    response_model=LotteryRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_request(
    payload: SubmitRequestPayload,
    service: LotteryProcessingService = Depends(get_lottery_service),
) -> LotteryRequestResponse:
    """Enter an individual golfer or a group into a date's lottery."""
    try:
        request = service.submit_request(
            organizer_id=payload.organizer_id,
            requested_date=payload.requested_date,
            preferred_window=payload.preferred_window,
            alternate_window=payload.alternate_window,
            member_ids=payload.member_ids,
            override=payload.override,
        )
        return _request_response(request)
    except (LotteryValidationError, WindowConfigurationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except SubmissionRestrictedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected lottery submission failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to submit lottery request",
        ) from exc


@router.post(
    "/requests/{request_id}/cancel",
    response_model=LotteryRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def cancel_request(
    request_id: int,
    service: LotteryProcessingService = Depends(get_lottery_service),
) -> LotteryRequestResponse:
    try:
        return _request_response(service.cancel_request(request_id))
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except LotteryValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc


@router.post(
    "/{lottery_date}/process",
    response_model=LotteryRunResponse,
    status_code=status.HTTP_200_OK,
)
async def process_lottery(
    lottery_date: date,
    service: LotteryProcessingService = Depends(get_lottery_service),
) -> LotteryRunResponse:
    """Run the lottery for a date and persist bookings and fairness updates."""
    try:
        return _run_response(service.process_lottery_for_date(lottery_date))
    except (LotteryValidationError, WindowConfigurationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected lottery processing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process lottery",
        ) from exc


@router.get(
    "/{lottery_date}/preview",
    response_model=LotteryRunResponse,
    status_code=status.HTTP_200_OK,
)
async def preview_lottery(
    lottery_date: date,
    service: LotteryProcessingService = Depends(get_lottery_service),
) -> LotteryRunResponse:
    """Dry run; nothing is written."""
    try:
        return _run_response(service.preview_lottery(lottery_date))
    except (LotteryValidationError, WindowConfigurationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected lottery preview failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to preview lottery",
        ) from exc


@router.get(
    "/{lottery_date}/log",
    response_model=EntryLogListResponse,
    status_code=status.HTTP_200_OK,
)
async def get_entry_log(
    lottery_date: date,
    service: LotteryProcessingService = Depends(get_lottery_service),
) -> EntryLogListResponse:
    entries = service.list_entry_logs(lottery_date)
    return EntryLogListResponse(
        lottery_date=lottery_date,
        entries=[
            EntryLogResponse(
                request_id=entry.request_id,
                entry_type=entry.entry_type,
                preferred_window=entry.preferred_window,
                alternate_window=entry.alternate_window,
                outcome=entry.outcome,
                priority=entry.priority,
                assigned_slot_id=entry.assigned_slot_id,
                assigned_start=(
                    format_minutes(entry.assigned_start_minute)
                    if entry.assigned_start_minute is not None
                    else None
                ),
                assignment_reason=entry.assignment_reason,
                violated_restrictions=entry.violated_restrictions,
                restriction_details=entry.restriction_details,
                fairness_score_before=entry.fairness_score_before,
                fairness_score_after=entry.fairness_score_after,
                preference_granted=entry.preference_granted,
            )
            for entry in entries
        ],
    )
