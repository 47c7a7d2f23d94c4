"""
FoundMatch — Admin Feedback & Maintenance API

Endpoints for the recalibration programme and scheduled maintenance:
  - Feedback statistics (verdicts, reason codes, mean scores per signal)
  - Exporting pending feedback as a training batch
  - Running the match expiry sweep
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.api.deps import get_feedback_service, get_lifecycle, get_publisher
from foundmatch.database import get_db
from foundmatch.schemas.match import (
    FeedbackExportRequest,
    FeedbackExportResponse,
    FeedbackStatsResponse,
    SweepResponse,
)
from foundmatch.services.event_publisher import EventPublisher
from foundmatch.services.feedback_service import FeedbackService
from foundmatch.services.lifecycle_service import MatchLifecycle

logger = structlog.get_logger("foundmatch.api.admin.feedback")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /feedback/stats
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/feedback/stats",
    response_model=FeedbackStatsResponse,
    summary="Feedback statistics for recalibration",
)
async def feedback_stats(
    db: AsyncSession = Depends(get_db),
    feedback_service: FeedbackService = Depends(get_feedback_service),
) -> dict:
    return await feedback_service.get_feedback_stats(db)


# ──────────────────────────────────────────────────────────────────────────────
# POST /feedback/export
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/feedback/export",
    response_model=FeedbackExportResponse,
    summary="Export pending feedback as a training batch",
)
async def export_feedback(
    payload: FeedbackExportRequest,
    db: AsyncSession = Depends(get_db),
    feedback_service: FeedbackService = Depends(get_feedback_service),
) -> FeedbackExportResponse:
    batch_id, records = await feedback_service.export_training_batch(
        db, batch_id=payload.batch_id, limit=payload.limit
    )
    await db.commit()
    logger.info("feedback_export", batch_id=batch_id, count=len(records))
    return FeedbackExportResponse(batch_id=batch_id, count=len(records), records=records)


# ──────────────────────────────────────────────────────────────────────────────
# POST /matches/expire: Retention sweep
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/matches/expire",
    response_model=SweepResponse,
    summary="Expire stale and orphaned open matches",
)
async def expire_matches(
    db: AsyncSession = Depends(get_db),
    lifecycle: MatchLifecycle = Depends(get_lifecycle),
    publisher: EventPublisher = Depends(get_publisher),
) -> SweepResponse:
    now = datetime.now(timezone.utc)
    expired, cutoff = await lifecycle.expire_stale(db, now=now)
    expired += await lifecycle.expire_orphaned(db, now=now)
    await db.commit()
    await publisher.flush(db)
    return SweepResponse(expired=expired, cutoff=cutoff)
