"""
FoundMatch — Match Review API

Endpoints used by the review surface and the notification dispatcher:
  - Fetching a single match or the matches of a case
  - Marking a match as viewed
  - Submitting per-side feedback (confirm / reject / unsure)
  - Acknowledging a delivered notification
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.api.deps import get_feedback_service, get_lifecycle, get_publisher
from foundmatch.database import get_db
from foundmatch.models.match import PhotoMatch
from foundmatch.schemas.match import (
    FeedbackRequest,
    MatchStatus,
    PhotoMatchResponse,
    Side,
    ViewRequest,
)
from foundmatch.services.event_publisher import EventPublisher
from foundmatch.services.feedback_service import FeedbackService
from foundmatch.services.lifecycle_service import InvalidTransitionError, MatchLifecycle

logger = structlog.get_logger("foundmatch.api.matches")

router = APIRouter()


def _transition_conflict(exc: InvalidTransitionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "error": "invalid_transition",
            "current": exc.current,
            "requested": exc.requested,
            "message": str(exc),
        },
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /: Matches for a case
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=list[PhotoMatchResponse],
    summary="List matches touching a case",
)
async def list_matches(
    case_id: uuid.UUID = Query(..., description="Case on either side of the match"),
    match_status: MatchStatus | None = Query(None, alias="status"),
    min_score: int = Query(0, ge=0, le=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[PhotoMatch]:
    """Return matches where the case is source or target, best score first."""
    stmt = select(PhotoMatch).where(
        or_(PhotoMatch.source_case_id == case_id, PhotoMatch.target_case_id == case_id),
        PhotoMatch.overall_score >= min_score,
    )
    if match_status is not None:
        stmt = stmt.where(PhotoMatch.status == match_status)
    stmt = (
        stmt.order_by(PhotoMatch.overall_score.desc(), PhotoMatch.created_at.desc(), PhotoMatch.id)
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    matches = list(result.scalars().all())
    logger.info("list_matches", case_id=str(case_id), count=len(matches))
    return matches


# ──────────────────────────────────────────────────────────────────────────────
# GET /{match_id}
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{match_id}",
    response_model=PhotoMatchResponse,
    summary="Get a match",
)
async def get_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> PhotoMatch:
    match = await db.get(PhotoMatch, match_id)
    if match is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} not found.",
        )
    return match


# ──────────────────────────────────────────────────────────────────────────────
# POST /{match_id}/view
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/view",
    response_model=PhotoMatchResponse,
    summary="Mark a match as viewed",
)
async def mark_viewed(
    match_id: uuid.UUID,
    payload: ViewRequest,
    db: AsyncSession = Depends(get_db),
    lifecycle: MatchLifecycle = Depends(get_lifecycle),
    publisher: EventPublisher = Depends(get_publisher),
) -> PhotoMatch:
    log = logger.bind(match_id=str(match_id), side=payload.side)
    try:
        match = await lifecycle.mark_viewed(match_id, payload.side, db)
    except InvalidTransitionError as exc:
        log.info("mark_viewed_rejected", current=exc.current)
        raise _transition_conflict(exc)
    except LookupError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} not found.",
        )

    await db.commit()
    await publisher.flush(db)
    return match


# ──────────────────────────────────────────────────────────────────────────────
# POST /{match_id}/feedback
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/feedback",
    response_model=PhotoMatchResponse,
    summary="Submit one side's verdict",
)
async def submit_feedback(
    match_id: uuid.UUID,
    payload: FeedbackRequest,
    db: AsyncSession = Depends(get_db),
    feedback_service: FeedbackService = Depends(get_feedback_service),
    publisher: EventPublisher = Depends(get_publisher),
) -> PhotoMatch:
    """Record a confirm / reject / unsure verdict for one side.

    Rejection needs at least one reason code.  Any rejection resolves the
    match as ``rejected``, even if the other side confirmed.
    """
    log = logger.bind(match_id=str(match_id), side=payload.side, verdict=payload.verdict)
    try:
        match = await feedback_service.submit_feedback(
            match_id,
            payload.side,
            payload.verdict,
            db,
            reason_codes=payload.reason_codes,
            detail=payload.detail,
            user_id=payload.user_id,
        )
    except InvalidTransitionError as exc:
        log.info("feedback_rejected", current=exc.current, requested=exc.requested)
        raise _transition_conflict(exc)
    except LookupError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} not found.",
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )

    await db.commit()
    await publisher.flush(db)
    return match


# ──────────────────────────────────────────────────────────────────────────────
# POST /{match_id}/notifications/{side}/ack: Dispatcher callback
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/notifications/{side}/ack",
    response_model=PhotoMatchResponse,
    summary="Acknowledge a delivered notification",
)
async def acknowledge_notification(
    match_id: uuid.UUID,
    side: Side,
    db: AsyncSession = Depends(get_db),
    lifecycle: MatchLifecycle = Depends(get_lifecycle),
    publisher: EventPublisher = Depends(get_publisher),
) -> PhotoMatch:
    try:
        match = await lifecycle.acknowledge_notification(match_id, side, db)
    except LookupError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} not found.",
        )

    await db.commit()
    await publisher.flush(db)
    return match
