"""
FoundMatch — Match Deduplication

Turns a scored pair into at most one ``photo_matches`` row:

  1. No signal computable          → skipped (logged, nothing written)
  2. Row exists for the pair       → re-score: overwrite scoring fields only
  3. overall_score < floor         → skipped
  4. Otherwise                     → insert a ``pending`` match

The pair is looked up in either orientation (``pair_key``), so discovering
A→B and later B→A touches one row.  The lookup and insert are not atomic on
their own; the store's unique constraints are the arbiter.  The insert runs
inside a SAVEPOINT and an ``IntegrityError`` rolls back just that savepoint
and falls through to the re-score path against the row that won the race.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.config import get_settings
from foundmatch.models.match import PhotoMatch, make_pair_key
from foundmatch.services.candidate_service import is_opposite_type
from foundmatch.services.event_publisher import match_snapshot, queue_event
from foundmatch.services.match_lock import lock_match_by_pair
from foundmatch.services.scoring_service import ScoreResult

logger = structlog.get_logger("foundmatch.dedup_service")


@dataclass(frozen=True)
class MatchDraft:
    source_photo_id: uuid.UUID
    source_case_id: uuid.UUID
    source_case_type: str
    target_photo_id: uuid.UUID
    target_case_id: uuid.UUID
    target_case_type: str
    result: ScoreResult


@dataclass
class DedupOutcome:
    action: str                    # created / rescored / skipped
    match: PhotoMatch | None = None
    reason: str | None = None      # set when skipped


class Deduplicator:
    """Creates or re-scores the single match row for a photo pair."""

    def __init__(
        self,
        min_score: int | None = None,
        notify_min_score: int | None = None,
    ) -> None:
        settings = get_settings()
        self.min_score = min_score if min_score is not None else settings.MIN_MATCH_SCORE
        self.notify_min_score = (
            notify_min_score if notify_min_score is not None else settings.NOTIFY_MIN_SCORE
        )

    async def find_existing(
        self,
        source_photo_id: uuid.UUID,
        target_photo_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> PhotoMatch | None:
        return await lock_match_by_pair(db_session, source_photo_id, target_photo_id)

    async def upsert(self, draft: MatchDraft, db_session: AsyncSession) -> DedupOutcome:
        """Apply one scored pair.

        Parameters
        ----------
        draft:
            The pair identities and its ``ScoreResult``.
        db_session:
            Active session; the caller owns commit/rollback.

        Returns
        -------
        DedupOutcome

        Raises
        ------
        ValueError
            If a new match would link two cases that are not of opposite type.
        """
        log = logger.bind(
            source_photo_id=str(draft.source_photo_id),
            target_photo_id=str(draft.target_photo_id),
        )
        result = draft.result

        if not result.has_signal:
            log.info("pair_skipped_no_signal")
            return DedupOutcome(action="skipped", reason="no_signal")

        existing = await self.find_existing(
            draft.source_photo_id, draft.target_photo_id, db_session
        )
        if existing is not None:
            return await self._rescore(existing, result, db_session)

        if result.overall_score < self.min_score:
            log.info(
                "pair_below_floor",
                overall_score=result.overall_score,
                floor=self.min_score,
            )
            return DedupOutcome(action="skipped", reason="below_floor")

        if not is_opposite_type(draft.source_case_type, draft.target_case_type):
            raise ValueError(
                f"Cannot match a {draft.source_case_type!r} case with a "
                f"{draft.target_case_type!r} case"
            )

        match = PhotoMatch(
            source_photo_id=draft.source_photo_id,
            source_case_id=draft.source_case_id,
            target_photo_id=draft.target_photo_id,
            target_case_id=draft.target_case_id,
            pair_key=make_pair_key(draft.source_photo_id, draft.target_photo_id),
            status="pending",
            source_user_notified=False,
            target_user_notified=False,
            **result.score_fields(),
        )

        try:
            async with db_session.begin_nested():
                db_session.add(match)
                await db_session.flush()
        except IntegrityError:
            log.info("match_insert_conflict")
            existing = await self.find_existing(
                draft.source_photo_id, draft.target_photo_id, db_session
            )
            if existing is None:
                raise
            return await self._rescore(existing, result, db_session)

        notify = match.overall_score >= self.notify_min_score
        queue_event(db_session, "match.created", {**match_snapshot(match), "notify": notify})
        log.info(
            "match_created",
            match_id=str(match.id),
            overall_score=match.overall_score,
            match_type=match.match_type,
            notify=notify,
        )
        return DedupOutcome(action="created", match=match)

    async def _rescore(
        self,
        match: PhotoMatch,
        result: ScoreResult,
        db_session: AsyncSession,
    ) -> DedupOutcome:
        """Overwrite the scoring fields of ``match``; lifecycle and feedback
        fields are left exactly as they are."""
        previous_score = match.overall_score
        for column, value in result.score_fields().items():
            setattr(match, column, value)
        await db_session.flush()

        # A still-pending match that newly clears the alert gate is announced once.
        notify = (
            match.status == "pending"
            and previous_score < self.notify_min_score <= match.overall_score
        )
        queue_event(
            db_session,
            "match.updated",
            {
                **match_snapshot(match),
                "notify": notify,
                "previous_overall_score": previous_score,
            },
        )
        logger.info(
            "match_rescored",
            match_id=str(match.id),
            previous_score=previous_score,
            overall_score=match.overall_score,
            status=match.status,
        )
        return DedupOutcome(action="rescored", match=match)
