"""
FoundMatch — PhotoMatch model.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column

from foundmatch.database import JSONB, Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_pair_key(photo_a: uuid.UUID, photo_b: uuid.UUID) -> str:
    """Order-independent key for a photo pair."""
    low, high = sorted((str(photo_a), str(photo_b)))
    return f"{low}:{high}"


class PhotoMatch(Base):
    __tablename__ = "photo_matches"
    __table_args__ = (
        UniqueConstraint(
            "source_photo_id", "target_photo_id", name="uq_photo_match_pair"
        ),
        UniqueConstraint("pair_key", name="uq_photo_match_pair_key"),
        Index("ix_photo_matches_status_created", "status", "created_at"),
        Index("ix_photo_matches_source_case", "source_case_id"),
        Index("ix_photo_matches_target_case", "target_case_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # ── Pair (weak references; survive deletion as NULL) ───────────
    source_photo_id: Mapped[uuid.UUID | None] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("photos.id", ondelete="SET NULL"), nullable=True
    )
    source_case_id: Mapped[uuid.UUID | None] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("cases.id", ondelete="SET NULL"), nullable=True
    )
    target_photo_id: Mapped[uuid.UUID | None] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("photos.id", ondelete="SET NULL"), nullable=True
    )
    target_case_id: Mapped[uuid.UUID | None] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("cases.id", ondelete="SET NULL"), nullable=True
    )
    pair_key: Mapped[str] = mapped_column(
        String(80), nullable=False, comment="unordered photo pair"
    )

    # ── Scores ─────────────────────────────────────────────────────
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    dna_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hash_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ocr_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    color_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    visual_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shape_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    match_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment=(
            "visual / color / shape / text / license_plate / serial_number / "
            "combined / pet / pattern / embedding"
        ),
    )
    match_details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    matched_identifiers: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # ── Location (informational, not part of overall_score) ────────
    location_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    distance_miles: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    # ── Lifecycle ──────────────────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        comment="pending / notified / viewed / confirmed / rejected / expired",
    )
    source_user_notified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    target_user_notified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    notified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    viewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Per-side feedback ──────────────────────────────────────────
    source_user_feedback: Mapped[str | None] = mapped_column(
        String(16), nullable=True, comment="confirmed / rejected / unsure"
    )
    source_rejection_reasons: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    source_rejection_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_user_feedback: Mapped[str | None] = mapped_column(
        String(16), nullable=True, comment="confirmed / rejected / unsure"
    )
    target_rejection_reasons: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    target_rejection_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def sub_scores(self) -> dict[str, int | None]:
        return {
            "dna": self.dna_score,
            "hash": self.hash_score,
            "ocr": self.ocr_score,
            "color": self.color_score,
            "visual": self.visual_score,
            "shape": self.shape_score,
        }

    def __repr__(self) -> str:
        return (
            f"<PhotoMatch {self.source_photo_id} -> {self.target_photo_id} "
            f"score={self.overall_score} status={self.status!r}>"
        )
