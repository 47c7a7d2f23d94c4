"""
FoundMatch — Candidate Generation

Given a photo with a completed FeatureSet, returns the bounded list of
photos from opposite-type cases worth precise scoring.

Cheap pre-filters run in SQL:
  * opposite case type, case still active, not the photo's own case
  * candidate photo processed (``ready``)
  * same category when both cases carry one
  * case created within ``CANDIDATE_MAX_AGE_DAYS`` of the source photo
  * a lat/long bounding box when the source case is geolocated

The exact radius check and proxy ranking run in Python:

  rank = (category differs, distance or ∞, colour bucket differs,
          newer first, photo id)

The reference time is the source photo's own ``created_at`` and the final
tie-break is the photo id, so the same store state always produces the same
ordered list.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.config import get_settings
from foundmatch.ml.image_features import color_bucket
from foundmatch.models.case import Case, Photo
from foundmatch.schemas.features import FeatureSet
from foundmatch.utils.geo import bounding_box, haversine_miles

logger = structlog.get_logger("foundmatch.candidate_service")

# ── Constants ────────────────────────────────────────────────────────────────

OPPOSITE_CASE_TYPES: dict[str, frozenset[str]] = {
    "lost": frozenset({"found"}),
    "missing_person": frozenset({"found"}),
    "pet": frozenset({"found"}),
    "found": frozenset({"lost", "missing_person", "pet"}),
}


def is_opposite_type(type_a: str, type_b: str) -> bool:
    return type_b in OPPOSITE_CASE_TYPES.get(type_a, frozenset())


@dataclass(frozen=True)
class Candidate:
    photo: Photo
    case: Case
    features: FeatureSet
    distance_miles: float | None

    @property
    def location(self) -> tuple[float, float] | None:
        if self.case.is_geolocated:
            return self.case.latitude, self.case.longitude
        return None


class CandidateGenerator:
    """Finds opposite-type candidate photos for one source photo."""

    def __init__(
        self,
        radius_miles: float | None = None,
        max_age_days: int | None = None,
        top_k: int | None = None,
    ) -> None:
        settings = get_settings()
        self.radius_miles = radius_miles or settings.CANDIDATE_RADIUS_MILES
        self.max_age_days = max_age_days or settings.CANDIDATE_MAX_AGE_DAYS
        self.top_k = top_k or settings.CANDIDATE_TOP_K

    def _build_query(self, photo: Photo, case: Case):
        opposite = OPPOSITE_CASE_TYPES.get(case.case_type)
        if not opposite:
            raise ValueError(f"Unknown case type {case.case_type!r}")

        stmt = (
            select(Photo, Case)
            .join(Case, Photo.case_id == Case.id)
            .where(
                Case.case_type.in_(sorted(opposite)),
                Case.status == "active",
                Case.id != case.id,
                Photo.id != photo.id,
                Photo.processing_status == "ready",
            )
        )

        if photo.created_at is not None:
            stmt = stmt.where(
                Case.created_at >= photo.created_at - timedelta(days=self.max_age_days)
            )

        if case.category:
            stmt = stmt.where(
                or_(Case.category.is_(None), Case.category == case.category)
            )

        if case.is_geolocated:
            min_lat, max_lat, min_lon, max_lon = bounding_box(
                case.latitude, case.longitude, self.radius_miles
            )
            in_box = Case.latitude.between(min_lat, max_lat)
            # Boxes crossing the antimeridian are left to the exact check.
            if min_lon >= -180.0 and max_lon <= 180.0:
                in_box = and_(in_box, Case.longitude.between(min_lon, max_lon))
            stmt = stmt.where(
                or_(Case.latitude.is_(None), Case.longitude.is_(None), in_box)
            )

        return stmt.order_by(Photo.id)

    @staticmethod
    def _rank_key(
        case: Case,
        candidate: Candidate,
        source_bucket: int | None,
    ) -> tuple:
        category_miss = 0 if (
            case.category and candidate.case.category == case.category
        ) else 1
        distance = (
            candidate.distance_miles if candidate.distance_miles is not None else math.inf
        )
        color = candidate.features.average_color
        bucket_miss = 0 if (
            source_bucket is not None
            and color is not None
            and color_bucket(color) == source_bucket
        ) else 1
        created = candidate.photo.created_at
        recency = -created.timestamp() if created is not None else 0.0
        return (category_miss, distance, bucket_miss, recency, str(candidate.photo.id))

    async def find_candidates(
        self,
        photo: Photo,
        case: Case,
        source_features: FeatureSet,
        db_session: AsyncSession,
    ) -> list[Candidate]:
        """Return at most ``top_k`` candidates ordered by proxy rank.

        Parameters
        ----------
        photo:
            The newly processed source photo.
        case:
            The case owning ``photo``.
        source_features:
            The source photo's FeatureSet (used for the colour bucket).
        db_session:
            Active SQLAlchemy async session.

        Raises
        ------
        ValueError
            If ``case.case_type`` has no opposite type.
        """
        log = logger.bind(photo_id=str(photo.id), case_id=str(case.id))
        log.info("candidate_search_start", case_type=case.case_type, category=case.category)

        result = await db_session.execute(self._build_query(photo, case))

        seen: dict = {}
        for cand_photo, cand_case in result.all():
            if cand_photo.id in seen:
                continue

            distance = None
            if case.is_geolocated and cand_case.is_geolocated:
                distance = haversine_miles(
                    case.latitude, case.longitude,
                    cand_case.latitude, cand_case.longitude,
                )
                if distance > self.radius_miles:
                    continue

            features = FeatureSet.from_photo(cand_photo)
            if features.is_empty:
                continue

            seen[cand_photo.id] = Candidate(
                photo=cand_photo,
                case=cand_case,
                features=features,
                distance_miles=distance,
            )

        source_bucket = (
            color_bucket(source_features.average_color)
            if source_features.average_color is not None else None
        )
        ranked = sorted(
            seen.values(),
            key=lambda c: self._rank_key(case, c, source_bucket),
        )[: self.top_k]

        log.info(
            "candidate_search_complete",
            considered=len(seen),
            returned=len(ranked),
        )
        return ranked
