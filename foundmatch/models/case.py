"""
FoundMatch — Case and Photo models.

Both tables belong to the marketplace's case store.  The matching engine
reads them and writes only the FeatureSet columns on ``photos`` (through
the feature extractor).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Index, String, func
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from foundmatch.database import JSONB, Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Case(Base):
    __tablename__ = "cases"
    __table_args__ = (
        Index("ix_cases_type_status", "case_type", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    case_type: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="lost / found / missing_person / pet"
    )
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="active", comment="active / closed"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_geolocated(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __repr__(self) -> str:
        return f"<Case {self.id} type={self.case_type!r} category={self.category!r}>"


class Photo(Base):
    __tablename__ = "photos"
    __table_args__ = (
        Index("ix_photos_case_status", "case_id", "processing_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    storage_uri: Mapped[str | None] = mapped_column(
        String(1024), nullable=True, comment="gs://, http(s):// or local path"
    )
    processing_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", comment="pending / ready / failed"
    )

    # ── FeatureSet (written by the feature extractor) ──────────────
    perceptual_hash: Mapped[str | None] = mapped_column(String(16), nullable=True)
    average_color: Mapped[list | None] = mapped_column(
        JSONB, nullable=True, comment="[r, g, b]"
    )
    color_histogram: Mapped[list | None] = mapped_column(
        JSONB, nullable=True, comment="64-bin normalised RGB histogram"
    )
    ocr_tokens: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    identifiers: Mapped[dict | None] = mapped_column(
        JSONB, nullable=True, comment="{license_plates: [...], serial_numbers: [...]}"
    )
    shape_descriptor: Mapped[dict | None] = mapped_column(
        JSONB, nullable=True, comment="{grid: [64 floats], aspect_ratio, edge_density}"
    )
    embedding: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    features_extracted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    case: Mapped["Case"] = relationship("Case", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Photo {self.id} case={self.case_id} status={self.processing_status!r}>"
