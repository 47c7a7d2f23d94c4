"""
FoundMatch — Inbound Event API

Receives events from the case store:
  - ``photo-ready``: a photo finished upload/processing; matching runs in
    the background and the call returns immediately
  - ``case-closed``: a case was closed or deleted; its open matches expire
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, status

from foundmatch.api.deps import get_matching_service
from foundmatch.schemas.match import (
    AcceptedResponse,
    CaseClosedEvent,
    CaseClosedResponse,
    PhotoReadyEvent,
)
from foundmatch.services.matching_service import MatchingService

logger = structlog.get_logger("foundmatch.api.events")

router = APIRouter()


async def _run_photo_ready(service: MatchingService, event: PhotoReadyEvent) -> None:
    log = logger.bind(photo_id=str(event.photo_id), case_id=str(event.case_id))
    try:
        result = await service.process_photo_ready(event)
    except Exception:
        # Background work has no caller to report to.
        log.exception("photo_ready_failed")
        return
    log.info(
        "photo_ready_processed",
        status=result.status,
        created=len(result.created),
        rescored=len(result.rescored),
    )


@router.post(
    "/photo-ready",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Photo processed; find and score matches",
)
async def photo_ready(
    payload: PhotoReadyEvent,
    background_tasks: BackgroundTasks,
    service: MatchingService = Depends(get_matching_service),
) -> AcceptedResponse:
    logger.info("photo_ready_received", photo_id=str(payload.photo_id))
    background_tasks.add_task(_run_photo_ready, service, payload)
    return AcceptedResponse(photo_id=payload.photo_id)


@router.post(
    "/case-closed",
    response_model=CaseClosedResponse,
    summary="Case closed or deleted; expire its open matches",
)
async def case_closed(
    payload: CaseClosedEvent,
    service: MatchingService = Depends(get_matching_service),
) -> CaseClosedResponse:
    expired = await service.process_case_closed(payload)
    logger.info("case_closed_processed", case_id=str(payload.case_id), expired=expired)
    return CaseClosedResponse(case_id=payload.case_id, expired=expired)
