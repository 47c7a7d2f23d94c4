"""
FoundMatch — Matching Pipeline

Runs one unit of work per inbound event:

  photo ready
    1. Load the photo and its case
    2. Extract (or reuse) the photo's FeatureSet
    3. Find opposite-type candidates (bounded, deterministic)
    4. Score every candidate pair in parallel, up to MAX_SCORING_WORKERS
    5. Create / re-score match rows through the deduplicator
    6. Commit, then publish the queued match events

  case closed / deleted
    Expire every open match touching the case, commit, publish.

All scoring finishes before the first store write.  A store failure
anywhere in the unit rolls the whole unit back and the unit is retried with
exponential backoff on a fresh session, so a match is never left with half
of its fields applied.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from foundmatch.config import get_settings
from foundmatch.database import async_session_factory
from foundmatch.models.case import Case, Photo
from foundmatch.schemas.features import FeatureSet
from foundmatch.schemas.match import CaseClosedEvent, PhotoReadyEvent
from foundmatch.services.candidate_service import Candidate, CandidateGenerator
from foundmatch.services.dedup_service import Deduplicator, MatchDraft
from foundmatch.services.event_publisher import EventPublisher, discard_events
from foundmatch.services.feature_extractor import FeatureExtractor
from foundmatch.services.lifecycle_service import MatchLifecycle
from foundmatch.services.scoring_service import ScoreAggregator, ScoreResult

logger = structlog.get_logger("foundmatch.matching_service")

T = TypeVar("T")

_PET_CATEGORIES: set[str] = {"pet", "pets", "animal", "animals"}


def is_retryable_store_error(exc: BaseException) -> bool:
    """Connection-level store failures worth retrying the whole unit for."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _is_pet_case(case: Case) -> bool:
    return case.case_type == "pet" or (case.category or "").lower() in _PET_CATEGORIES


@dataclass
class PipelineResult:
    photo_id: uuid.UUID
    status: str                       # matched / no_features / case_closed
    candidates: int = 0
    created: list[uuid.UUID] = field(default_factory=list)
    rescored: list[uuid.UUID] = field(default_factory=list)
    skipped: int = 0


class MatchingService:
    """Photo-ready and case-closed pipeline.

    Dependencies are injected at construction so that the service can be
    tested with fakes and an in-memory store.
    """

    def __init__(
        self,
        extractor: FeatureExtractor | None = None,
        candidate_generator: CandidateGenerator | None = None,
        aggregator: ScoreAggregator | None = None,
        deduplicator: Deduplicator | None = None,
        lifecycle: MatchLifecycle | None = None,
        publisher: EventPublisher | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
        max_workers: int | None = None,
        retry_attempts: int | None = None,
    ) -> None:
        settings = get_settings()
        self.extractor = extractor or FeatureExtractor()
        self.candidate_generator = candidate_generator or CandidateGenerator()
        self.aggregator = aggregator or ScoreAggregator()
        self.deduplicator = deduplicator or Deduplicator()
        self.lifecycle = lifecycle or MatchLifecycle()
        self.publisher = publisher or EventPublisher()
        self.session_factory = session_factory or async_session_factory
        self.max_workers = max_workers or settings.MAX_SCORING_WORKERS
        self.retry_attempts = retry_attempts or settings.STORE_RETRY_ATTEMPTS

        logger.info(
            "matching_service_initialised",
            max_workers=self.max_workers,
            retry_attempts=self.retry_attempts,
            weights=self.aggregator.weights,
        )

    # ── Unit-of-work runner ───────────────────────────────────────────────

    async def _run_unit(
        self,
        name: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        **log_context: Any,
    ) -> T:
        log = logger.bind(unit=name, **log_context)

        def _before_sleep(retry_state) -> None:
            log.warning(
                "unit_retry_scheduled",
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_retryable_store_error),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=60, exp_base=2),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                async with self.session_factory() as session:
                    try:
                        result = await work(session)
                        await session.commit()
                    except Exception:
                        discard_events(session)
                        await session.rollback()
                        raise
                    await self.publisher.flush(session)
        return result

    # ── Photo ready ───────────────────────────────────────────────────────

    async def process_photo_ready(self, event: PhotoReadyEvent) -> PipelineResult:
        """Run the full matching pipeline for one processed photo.

        Parameters
        ----------
        event:
            The inbound "photo ready" event.

        Returns
        -------
        PipelineResult
            Counts and ids of created / re-scored matches.

        Raises
        ------
        LookupError
            If the photo does not exist.
        ValueError
            If the photo does not belong to ``event.case_id``.
        """
        return await self._run_unit(
            "photo_ready",
            lambda session: self._match_photo(event, session),
            photo_id=str(event.photo_id),
            case_id=str(event.case_id),
        )

    async def _load_features(
        self,
        photo: Photo,
        force: bool,
        db_session: AsyncSession,
    ) -> FeatureSet | None:
        if not force and photo.features_extracted_at is not None:
            stored = FeatureSet.from_photo(photo)
            if not stored.is_empty:
                return stored
        return await self.extractor.extract_for_photo(photo, db_session)

    async def _score_candidates(
        self,
        features: FeatureSet,
        case: Case,
        candidates: list[Candidate],
    ) -> list[ScoreResult]:
        semaphore = asyncio.Semaphore(self.max_workers)
        source_location = (case.latitude, case.longitude) if case.is_geolocated else None
        source_is_pet = _is_pet_case(case)

        async def _score_one(candidate: Candidate) -> ScoreResult:
            async with semaphore:
                return await asyncio.to_thread(
                    self.aggregator.score,
                    features,
                    candidate.features,
                    source_location,
                    candidate.location,
                    source_is_pet and _is_pet_case(candidate.case),
                )

        return await asyncio.gather(*(_score_one(c) for c in candidates))

    async def _match_photo(
        self,
        event: PhotoReadyEvent,
        db_session: AsyncSession,
    ) -> PipelineResult:
        log = logger.bind(photo_id=str(event.photo_id), case_id=str(event.case_id))
        log.info("pipeline_start")

        photo = await db_session.get(Photo, event.photo_id)
        if photo is None:
            raise LookupError(f"Photo {event.photo_id} not found")
        if photo.case_id != event.case_id:
            raise ValueError(
                f"Photo {event.photo_id} belongs to case {photo.case_id}, not {event.case_id}"
            )
        case = photo.case
        if event.case_type and event.case_type != case.case_type:
            log.warning(
                "event_case_type_mismatch",
                event_case_type=event.case_type,
                stored_case_type=case.case_type,
            )

        if case.status != "active":
            log.info("pipeline_skipped_case_closed", case_status=case.status)
            return PipelineResult(photo_id=photo.id, status="case_closed")

        features = await self._load_features(photo, event.force_reextract, db_session)
        if features is None or features.is_empty:
            log.info("pipeline_skipped_no_features")
            return PipelineResult(photo_id=photo.id, status="no_features")

        candidates = await self.candidate_generator.find_candidates(
            photo, case, features, db_session
        )
        scores = await self._score_candidates(features, case, candidates)

        result = PipelineResult(
            photo_id=photo.id, status="matched", candidates=len(candidates)
        )
        for candidate, score in zip(candidates, scores):
            outcome = await self.deduplicator.upsert(
                MatchDraft(
                    source_photo_id=photo.id,
                    source_case_id=case.id,
                    source_case_type=case.case_type,
                    target_photo_id=candidate.photo.id,
                    target_case_id=candidate.case.id,
                    target_case_type=candidate.case.case_type,
                    result=score,
                ),
                db_session,
            )
            if outcome.action == "created":
                result.created.append(outcome.match.id)
            elif outcome.action == "rescored":
                result.rescored.append(outcome.match.id)
            else:
                result.skipped += 1

        log.info(
            "pipeline_complete",
            candidates=result.candidates,
            created=len(result.created),
            rescored=len(result.rescored),
            skipped=result.skipped,
        )
        return result

    # ── Case closed ───────────────────────────────────────────────────────

    async def _close_case(self, event: CaseClosedEvent, db_session: AsyncSession) -> int:
        case = await db_session.get(Case, event.case_id)
        if case is not None and case.status != "closed":
            case.status = "closed"
            case.closed_at = datetime.now(timezone.utc)
        return await self.lifecycle.expire_for_case(event.case_id, db_session)

    async def process_case_closed(self, event: CaseClosedEvent) -> int:
        """Mark the case closed and expire every open match touching it.

        Unknown case ids are accepted; matches referencing them are still
        swept.
        """
        return await self._run_unit(
            "case_closed",
            lambda session: self._close_case(event, session),
            case_id=str(event.case_id),
            reason=event.reason,
        )
