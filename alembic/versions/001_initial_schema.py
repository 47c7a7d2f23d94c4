"""Initial schema: cases, photos, photo_matches, match_feedback.

Revision ID: 001_initial
Revises:
Create Date: 2026-09-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=None if nullable else sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    # ── 1. cases ────────────────────────────────────────────────────
    op.create_table(
        "cases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "case_type",
            sa.String(32),
            nullable=False,
            comment="lost / found / missing_person / pet",
        ),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column(
            "status",
            sa.String(16),
            server_default="active",
            nullable=False,
            comment="active / closed",
        ),
        _timestamp("created_at"),
        _timestamp("closed_at", nullable=True),
    )
    op.create_index("ix_cases_type_status", "cases", ["case_type", "status"])

    # ── 2. photos ───────────────────────────────────────────────────
    op.create_table(
        "photos",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "case_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cases.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "storage_uri",
            sa.String(1024),
            nullable=True,
            comment="gs://, http(s):// or local path",
        ),
        sa.Column(
            "processing_status",
            sa.String(16),
            server_default="pending",
            nullable=False,
            comment="pending / ready / failed",
        ),
        sa.Column("perceptual_hash", sa.String(16), nullable=True),
        sa.Column("average_color", postgresql.JSONB, nullable=True, comment="[r, g, b]"),
        sa.Column(
            "color_histogram",
            postgresql.JSONB,
            nullable=True,
            comment="64-bin normalised RGB histogram",
        ),
        sa.Column("ocr_tokens", postgresql.JSONB, nullable=True),
        sa.Column(
            "identifiers",
            postgresql.JSONB,
            nullable=True,
            comment="{license_plates: [...], serial_numbers: [...]}",
        ),
        sa.Column(
            "shape_descriptor",
            postgresql.JSONB,
            nullable=True,
            comment="{grid: [64 floats], aspect_ratio, edge_density}",
        ),
        sa.Column("embedding", postgresql.JSONB, nullable=True),
        _timestamp("features_extracted_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_photos_case_status", "photos", ["case_id", "processing_status"]
    )

    # ── 3. photo_matches ────────────────────────────────────────────
    op.create_table(
        "photo_matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "source_photo_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("photos.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "source_case_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cases.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "target_photo_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("photos.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "target_case_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("cases.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "pair_key", sa.String(80), nullable=False, comment="unordered photo pair"
        ),
        sa.Column("overall_score", sa.Integer, nullable=False),
        sa.Column("dna_score", sa.Integer, nullable=True),
        sa.Column("hash_score", sa.Integer, nullable=True),
        sa.Column("ocr_score", sa.Integer, nullable=True),
        sa.Column("color_score", sa.Integer, nullable=True),
        sa.Column("visual_score", sa.Integer, nullable=True),
        sa.Column("shape_score", sa.Integer, nullable=True),
        sa.Column(
            "match_type",
            sa.String(32),
            nullable=False,
            comment=(
                "visual / color / shape / text / license_plate / serial_number / "
                "combined / pet / pattern / embedding"
            ),
        ),
        sa.Column("match_details", postgresql.JSONB, nullable=True),
        sa.Column("matched_identifiers", postgresql.JSONB, nullable=True),
        sa.Column("location_score", sa.Integer, nullable=True),
        sa.Column("distance_miles", sa.Numeric(10, 2), nullable=True),
        sa.Column(
            "status",
            sa.String(16),
            server_default="pending",
            nullable=False,
            comment="pending / notified / viewed / confirmed / rejected / expired",
        ),
        sa.Column(
            "source_user_notified", sa.Boolean, server_default="false", nullable=False
        ),
        sa.Column(
            "target_user_notified", sa.Boolean, server_default="false", nullable=False
        ),
        _timestamp("notified_at", nullable=True),
        _timestamp("viewed_at", nullable=True),
        _timestamp("resolved_at", nullable=True),
        sa.Column("source_user_feedback", sa.String(16), nullable=True),
        sa.Column("source_rejection_reasons", postgresql.JSONB, nullable=True),
        sa.Column("source_rejection_details", sa.Text, nullable=True),
        sa.Column("target_user_feedback", sa.String(16), nullable=True),
        sa.Column("target_rejection_reasons", postgresql.JSONB, nullable=True),
        sa.Column("target_rejection_details", sa.Text, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "source_photo_id", "target_photo_id", name="uq_photo_match_pair"
        ),
        sa.UniqueConstraint("pair_key", name="uq_photo_match_pair_key"),
    )
    op.create_index(
        "ix_photo_matches_status_created", "photo_matches", ["status", "created_at"]
    )
    op.create_index("ix_photo_matches_source_case", "photo_matches", ["source_case_id"])
    op.create_index("ix_photo_matches_target_case", "photo_matches", ["target_case_id"])

    # ── 4. match_feedback ───────────────────────────────────────────
    op.create_table(
        "match_feedback",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "photo_match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("photo_matches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("side", sa.String(8), nullable=False, comment="source / target"),
        sa.Column("is_source_user", sa.Boolean, nullable=False),
        sa.Column(
            "feedback_type",
            sa.String(16),
            nullable=False,
            comment="confirmed / rejected / unsure",
        ),
        sa.Column("rejection_reasons", postgresql.JSONB, nullable=True),
        sa.Column("rejection_explanation", sa.Text, nullable=True),
        sa.Column("match_scores_snapshot", postgresql.JSONB, nullable=False),
        sa.Column("weights_used_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("match_type", sa.String(32), nullable=True),
        sa.Column(
            "training_status",
            sa.String(16),
            server_default="pending",
            nullable=False,
            comment="pending / exported / trained / invalid",
        ),
        _timestamp("exported_at", nullable=True),
        sa.Column("training_batch_id", sa.String(64), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_match_feedback_training_status", "match_feedback", ["training_status"]
    )
    op.create_index("ix_match_feedback_match", "match_feedback", ["photo_match_id"])


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_match_feedback_match", table_name="match_feedback")
    op.drop_index("ix_match_feedback_training_status", table_name="match_feedback")
    op.drop_table("match_feedback")

    op.drop_index("ix_photo_matches_target_case", table_name="photo_matches")
    op.drop_index("ix_photo_matches_source_case", table_name="photo_matches")
    op.drop_index("ix_photo_matches_status_created", table_name="photo_matches")
    op.drop_table("photo_matches")

    op.drop_index("ix_photos_case_status", table_name="photos")
    op.drop_table("photos")

    op.drop_index("ix_cases_type_status", table_name="cases")
    op.drop_table("cases")
