"""
FoundMatch — Feedback Loop

Captures each side's verdict on a match and resolves the match from the
pair of verdicts:

  * any side ``rejected``                        → rejected
  * both sides ``confirmed``                     → confirmed
  * otherwise                                    → stays open (viewed)

Rejection wins every conflict regardless of arrival order.  A verdict on a
resolved match is accepted only when it leaves the resolution unchanged;
anything else raises ``InvalidTransitionError``.

Every submission also writes a permanent ``match_feedback`` row holding a
snapshot of the scores and weights the match was created with.  Those rows
feed offline weight recalibration through ``get_feedback_stats`` and
``export_training_batch`` and outlive the match's own expiry.
"""

from __future__ import annotations

import uuid
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Iterable

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.models.feedback import MatchFeedback
from foundmatch.models.match import PhotoMatch
from foundmatch.services.event_publisher import match_snapshot, queue_event
from foundmatch.services.lifecycle_service import (
    InvalidTransitionError,
    MatchLifecycle,
    OPEN_STATUSES,
    SIDES,
)
from foundmatch.services.match_lock import lock_match
from foundmatch.services.scoring_service import SIGNALS

logger = structlog.get_logger("foundmatch.feedback_service")

# ── Constants ────────────────────────────────────────────────────────────────

VALID_VERDICTS: set[str] = {"confirmed", "rejected", "unsure"}

REJECTION_REASONS: set[str] = {
    "wrong_color",
    "wrong_size",
    "wrong_location",
    "wrong_brand",
    "different_item_type",
    "wrong_pattern",
    "wrong_shape",
    "other",
}

TRAINING_STATUSES: set[str] = {"pending", "exported", "trained", "invalid"}

# Status a verdict asks for; "unsure" only asks for the match to stay open.
_REQUESTED_STATUS: dict[str, str] = {
    "confirmed": "confirmed",
    "rejected": "rejected",
    "unsure": "viewed",
}


def resolve_outcome(source_feedback: str | None, target_feedback: str | None) -> str | None:
    """Resolution implied by the two sides' verdicts (``None`` = still open)."""
    verdicts = (source_feedback, target_feedback)
    if "rejected" in verdicts:
        return "rejected"
    if verdicts == ("confirmed", "confirmed"):
        return "confirmed"
    return None


class FeedbackService:
    """Records per-side feedback and drives resolution transitions."""

    def __init__(self, lifecycle: MatchLifecycle | None = None) -> None:
        self.lifecycle = lifecycle or MatchLifecycle()

    # ══════════════════════════════════════════════════════════════════════
    # Validation
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    def validate(side: str, verdict: str, reason_codes: Iterable[str]) -> list[str]:
        """Check a submission and return the de-duplicated reason codes.

        Raises
        ------
        ValueError
            Unknown side, verdict or reason code, or a rejection without
            any reason.
        """
        if side not in SIDES:
            raise ValueError(f"Invalid side {side!r}. Must be one of: source, target")
        if verdict not in VALID_VERDICTS:
            raise ValueError(
                f"Invalid verdict {verdict!r}. Must be one of: "
                f"{', '.join(sorted(VALID_VERDICTS))}"
            )
        codes = list(dict.fromkeys(reason_codes))
        unknown = [c for c in codes if c not in REJECTION_REASONS]
        if unknown:
            raise ValueError(f"Unknown rejection reason code(s): {', '.join(unknown)}")
        if verdict == "rejected" and not codes:
            raise ValueError("At least one reason code is required when rejecting")
        return codes

    # ══════════════════════════════════════════════════════════════════════
    # Submission
    # ══════════════════════════════════════════════════════════════════════

    async def submit_feedback(
        self,
        match_id: uuid.UUID | str,
        side: str,
        verdict: str,
        db_session: AsyncSession,
        reason_codes: Iterable[str] = (),
        detail: str | None = None,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> PhotoMatch:
        """Record one side's verdict and resolve the match if it can be.

        Parameters
        ----------
        match_id:
            UUID of the match.
        side:
            ``"source"`` or ``"target"``.
        verdict:
            ``"confirmed"``, ``"rejected"`` or ``"unsure"``.
        db_session:
            Active session; the caller owns commit/rollback.
        reason_codes:
            Rejection reasons (stored only for ``rejected``).
        detail:
            Optional free-text explanation.
        user_id:
            Identifier of the submitting user, kept on the feedback record.

        Returns
        -------
        PhotoMatch
            The updated match.

        Raises
        ------
        ValueError
            Malformed submission.
        LookupError
            Unknown match.
        InvalidTransitionError
            The match is expired, or resolved differently from what this
            verdict would now imply.
        """
        codes = self.validate(side, verdict, reason_codes)
        now = now or datetime.now(timezone.utc)

        match = await lock_match(db_session, match_id)
        log = logger.bind(match_id=str(match.id), side=side, verdict=verdict)

        if match.status == "expired":
            raise InvalidTransitionError(match.status, _REQUESTED_STATUS[verdict], match.id)

        verdicts = {
            "source": match.source_user_feedback,
            "target": match.target_user_feedback,
        }
        verdicts[side] = verdict
        outcome = resolve_outcome(verdicts["source"], verdicts["target"])

        # Resolved matches only accept verdicts that keep the same resolution.
        if match.status not in OPEN_STATUSES and outcome != match.status:
            raise InvalidTransitionError(
                match.status, outcome or _REQUESTED_STATUS[verdict], match.id
            )

        rejected = verdict == "rejected"
        setattr(match, f"{side}_user_feedback", verdict)
        setattr(match, f"{side}_rejection_reasons", codes if rejected else None)
        setattr(match, f"{side}_rejection_details", detail)

        db_session.add(MatchFeedback(
            photo_match_id=match.id,
            user_id=user_id,
            side=side,
            is_source_user=(side == "source"),
            feedback_type=verdict,
            rejection_reasons=codes if rejected else None,
            rejection_explanation=detail,
            match_scores_snapshot={"overall": match.overall_score, **match.sub_scores()},
            weights_used_snapshot=(match.match_details or {}).get("weights_used"),
            match_type=match.match_type,
            training_status="pending",
        ))

        if match.status in OPEN_STATUSES:
            # Giving a verdict implies the match was opened.
            if match.status != "viewed":
                self.lifecycle.transition(match, "viewed", db_session, now=now)
            if outcome is not None:
                self.lifecycle.transition(match, outcome, db_session, now=now)

        await db_session.flush()
        queue_event(db_session, "match.updated", {**match_snapshot(match), "notify": False})
        log.info("feedback_recorded", status=match.status, reasons=codes)
        return match

    # ══════════════════════════════════════════════════════════════════════
    # Recalibration support
    # ══════════════════════════════════════════════════════════════════════

    async def get_feedback_stats(self, db_session: AsyncSession) -> dict:
        """Aggregate feedback for weight recalibration.

        Returns
        -------
        dict
            ``total``, ``by_verdict``, ``by_reason``, ``by_training_status``
            and ``mean_scores`` (per verdict, the mean of each signal's
            snapshot score over the feedback rows that had that signal).
        """
        stmt = select(
            MatchFeedback.feedback_type,
            MatchFeedback.rejection_reasons,
            MatchFeedback.match_scores_snapshot,
            MatchFeedback.training_status,
        )
        rows = (await db_session.execute(stmt)).all()

        by_verdict: Counter = Counter()
        by_reason: Counter = Counter()
        by_training: Counter = Counter()
        sums: dict[str, dict[str, list[float]]] = defaultdict(lambda: defaultdict(list))

        for verdict, reasons, snapshot, training_status in rows:
            by_verdict[verdict] += 1
            by_training[training_status] += 1
            for reason in reasons or []:
                by_reason[reason] += 1
            for signal in ("overall", *SIGNALS):
                value = (snapshot or {}).get(signal)
                if value is not None:
                    sums[verdict][signal].append(float(value))

        mean_scores = {
            verdict: {
                signal: (
                    round(sum(sums[verdict][signal]) / len(sums[verdict][signal]), 2)
                    if sums[verdict][signal] else None
                )
                for signal in ("overall", *SIGNALS)
            }
            for verdict in sorted(VALID_VERDICTS)
        }

        return {
            "total": len(rows),
            "by_verdict": dict(by_verdict),
            "by_reason": dict(by_reason),
            "by_training_status": dict(by_training),
            "mean_scores": mean_scores,
        }

    async def export_training_batch(
        self,
        db_session: AsyncSession,
        batch_id: str | None = None,
        limit: int = 1000,
        now: datetime | None = None,
    ) -> tuple[str, list[dict]]:
        """Mark up to ``limit`` pending feedback rows as ``exported``.

        Returns
        -------
        tuple
            ``(batch_id, records)`` where each record is a JSON-ready dict.
        """
        batch_id = batch_id or f"batch-{uuid.uuid4().hex[:12]}"
        now = now or datetime.now(timezone.utc)

        stmt = (
            select(MatchFeedback)
            .where(MatchFeedback.training_status == "pending")
            .order_by(MatchFeedback.created_at, MatchFeedback.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        rows = list((await db_session.execute(stmt)).scalars().all())

        records = []
        for row in rows:
            row.training_status = "exported"
            row.exported_at = now
            row.training_batch_id = batch_id
            records.append({
                "id": str(row.id),
                "photo_match_id": str(row.photo_match_id) if row.photo_match_id else None,
                "side": row.side,
                "feedback_type": row.feedback_type,
                "rejection_reasons": row.rejection_reasons or [],
                "rejection_explanation": row.rejection_explanation,
                "match_type": row.match_type,
                "match_scores_snapshot": row.match_scores_snapshot,
                "weights_used_snapshot": row.weights_used_snapshot,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            })
        await db_session.flush()

        logger.info("training_batch_exported", batch_id=batch_id, count=len(records))
        return batch_id, records

    async def mark_batch(
        self,
        batch_id: str,
        training_status: str,
        db_session: AsyncSession,
    ) -> int:
        """Set ``training_status`` (``trained`` / ``invalid``) for an exported batch."""
        if training_status not in TRAINING_STATUSES - {"pending", "exported"}:
            raise ValueError(
                f"Invalid training status {training_status!r}. Must be 'trained' or 'invalid'"
            )
        stmt = (
            update(MatchFeedback)
            .where(
                MatchFeedback.training_batch_id == batch_id,
                MatchFeedback.training_status == "exported",
            )
            .values(training_status=training_status)
        )
        result = await db_session.execute(stmt)
        logger.info(
            "training_batch_marked",
            batch_id=batch_id,
            training_status=training_status,
            count=result.rowcount,
        )
        return result.rowcount
