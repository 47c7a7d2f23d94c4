"""
FoundMatch — MatchFeedback model.

One row per submitted verdict.  Rows are never updated after creation except
for the training-export bookkeeping columns, and they outlive the match's
own lifecycle (an expired match keeps its feedback).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column

from foundmatch.database import JSONB, Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchFeedback(Base):
    __tablename__ = "match_feedback"
    __table_args__ = (
        Index("ix_match_feedback_training_status", "training_status"),
        Index("ix_match_feedback_match", "photo_match_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    photo_match_id: Mapped[uuid.UUID | None] = mapped_column(
        PgUUID(as_uuid=True),
        ForeignKey("photo_matches.id", ondelete="SET NULL"),
        nullable=True,
    )
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    side: Mapped[str] = mapped_column(
        String(8), nullable=False, comment="source / target"
    )
    is_source_user: Mapped[bool] = mapped_column(Boolean, nullable=False)
    feedback_type: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="confirmed / rejected / unsure"
    )
    rejection_reasons: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    rejection_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ── Snapshots for offline recalibration ────────────────────────
    match_scores_snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    weights_used_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    match_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # ── Training export bookkeeping ────────────────────────────────
    training_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        comment="pending / exported / trained / invalid",
    )
    exported_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    training_batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<MatchFeedback match={self.photo_match_id} side={self.side!r} "
            f"verdict={self.feedback_type!r}>"
        )
