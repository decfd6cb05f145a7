"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from teelottery.services.lottery_service import LotteryProcessingService
from teelottery.utils.config import get_settings


def get_lottery_service(request: Request) -> LotteryProcessingService:
    service = getattr(request.app.state, "lottery_service", None)
    if service is None:
        repository = getattr(request.app.state, "repository", None)
        if repository is not None:
            service = LotteryProcessingService(repository=repository, settings=get_settings())
            request.app.state.lottery_service = service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Lottery service is not initialized",
        )
    return service
