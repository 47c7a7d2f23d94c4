"""
FoundMatch — Match Lifecycle State Machine

    pending ──► notified ──► viewed ──► confirmed
       │           │           └──────► rejected
       └───────────┴───────────┴──────► expired   (from any open state)

``pending`` may also go straight to ``viewed`` when a user opens a match
before the dispatcher's acknowledgement arrives.  ``confirmed``,
``rejected`` and ``expired`` are terminal; nothing leaves them.

Transitions are driven by:
  * dispatcher acknowledgements (``acknowledge_notification``)
  * the review surface (``mark_viewed``; feedback via FeedbackService)
  * the retention sweep (``expire_stale``) and case-closed events
    (``expire_for_case``)

Every mutation locks the match row first (``match_lock``), so two callers
acting on the same match are applied one after the other.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.config import get_settings
from foundmatch.models.match import PhotoMatch
from foundmatch.services.event_publisher import match_snapshot, queue_event
from foundmatch.services.match_lock import lock_match

logger = structlog.get_logger("foundmatch.lifecycle_service")

# ── Constants ────────────────────────────────────────────────────────────────

TERMINAL_STATUSES: frozenset[str] = frozenset({"confirmed", "rejected", "expired"})

OPEN_STATUSES: frozenset[str] = frozenset({"pending", "notified", "viewed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"notified", "viewed", "expired"}),
    "notified": frozenset({"viewed", "expired"}),
    "viewed": frozenset({"confirmed", "rejected", "expired"}),
    "confirmed": frozenset(),
    "rejected": frozenset(),
    "expired": frozenset(),
}

SIDES: set[str] = {"source", "target"}


class InvalidTransitionError(ValueError):
    """Raised when a match cannot move from its current status to the
    requested one."""

    def __init__(self, current: str, requested: str, match_id: uuid.UUID | None = None) -> None:
        self.current = current
        self.requested = requested
        self.match_id = match_id
        super().__init__(
            f"Invalid transition for match {match_id}: {current!r} -> {requested!r}"
        )


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def _check_side(side: str) -> None:
    if side not in SIDES:
        raise ValueError(f"Invalid side {side!r}. Must be one of: source, target")


class MatchLifecycle:
    """Applies status transitions to PhotoMatch rows."""

    def __init__(
        self,
        alert_sides: list[str] | None = None,
        retention_days: int | None = None,
    ) -> None:
        settings = get_settings()
        self.alert_sides = alert_sides or settings.alert_sides_list
        self.retention_days = retention_days or settings.MATCH_RETENTION_DAYS

    # ── Core transition ───────────────────────────────────────────────────

    def transition(
        self,
        match: PhotoMatch,
        requested: str,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> None:
        """Move a locked ``match`` to ``requested`` and queue the event.

        Raises
        ------
        InvalidTransitionError
            If the transition table does not allow the move.
        """
        current = match.status
        if not can_transition(current, requested):
            raise InvalidTransitionError(current, requested, match.id)

        now = now or datetime.now(timezone.utc)
        match.status = requested
        if requested == "notified" and match.notified_at is None:
            match.notified_at = now
        elif requested == "viewed":
            match.viewed_at = now
        elif requested in TERMINAL_STATUSES:
            match.resolved_at = now

        if requested in TERMINAL_STATUSES:
            queue_event(
                db_session,
                "match.resolved",
                {"match_id": str(match.id), "status": requested},
            )

        logger.info(
            "transition_applied",
            match_id=str(match.id),
            from_status=current,
            to_status=requested,
        )

    # ── Commands ──────────────────────────────────────────────────────────

    async def acknowledge_notification(
        self,
        match_id: uuid.UUID | str,
        side: str,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> PhotoMatch:
        """Record that the dispatcher delivered an alert to one side.

        The side's flag is set in any non-terminal state.  A ``pending``
        match becomes ``notified`` once every configured alert side has
        been flagged.  Repeated acknowledgements for a side change
        nothing and queue no event.

        Raises
        ------
        ValueError
            If ``side`` is not ``source`` or ``target``.
        LookupError
            If the match does not exist.
        """
        _check_side(side)
        match = await lock_match(db_session, match_id)
        log = logger.bind(match_id=str(match.id), side=side)

        if match.status in TERMINAL_STATUSES:
            log.info("notification_ack_ignored", status=match.status)
            return match
        if getattr(match, f"{side}_user_notified"):
            log.info("notification_ack_duplicate", status=match.status)
            return match

        now = now or datetime.now(timezone.utc)
        setattr(match, f"{side}_user_notified", True)

        flags = {
            "source": match.source_user_notified,
            "target": match.target_user_notified,
        }
        if match.status == "pending" and all(flags[s] for s in self.alert_sides):
            self.transition(match, "notified", db_session, now=now)
        elif match.notified_at is None:
            match.notified_at = now

        await db_session.flush()
        queue_event(db_session, "match.updated", {**match_snapshot(match), "notify": False})
        log.info("notification_acknowledged", status=match.status)
        return match

    async def mark_viewed(
        self,
        match_id: uuid.UUID | str,
        side: str,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> PhotoMatch:
        """Record that a case owner opened the match.

        Re-opening an already ``viewed`` match is a no-op.

        Raises
        ------
        InvalidTransitionError
            If the match is already resolved or expired.
        """
        _check_side(side)
        match = await lock_match(db_session, match_id)
        if match.status != "viewed":
            self.transition(match, "viewed", db_session, now=now)
            await db_session.flush()
            queue_event(db_session, "match.updated", {**match_snapshot(match), "notify": False})
        logger.info("match_viewed", match_id=str(match.id), side=side)
        return match

    # ── Sweeps ────────────────────────────────────────────────────────────

    async def _expire_where(
        self,
        criteria,
        db_session: AsyncSession,
        now: datetime,
    ) -> int:
        stmt = (
            select(PhotoMatch.id)
            .where(PhotoMatch.status.in_(sorted(OPEN_STATUSES)), criteria)
            .order_by(PhotoMatch.created_at, PhotoMatch.id)
        )
        match_ids = list((await db_session.execute(stmt)).scalars().all())

        expired = 0
        for match_id in match_ids:
            match = await lock_match(db_session, match_id)
            # Resolved by another worker between the scan and the lock.
            if match.status in TERMINAL_STATUSES:
                continue
            self.transition(match, "expired", db_session, now=now)
            expired += 1
        await db_session.flush()
        return expired

    async def expire_stale(
        self,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> tuple[int, datetime]:
        """Expire every open match created before the retention cutoff.

        Parameters
        ----------
        now:
            Reference time (defaults to the current UTC time).
        db_session:
            Active session; the caller owns commit/rollback.

        Returns
        -------
        tuple
            ``(expired_count, cutoff)``.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.retention_days)
        log = logger.bind(cutoff=cutoff.isoformat())
        log.info("expiry_sweep_start")

        count = await self._expire_where(PhotoMatch.created_at < cutoff, db_session, now)

        log.info("expiry_sweep_complete", expired=count)
        return count, cutoff

    async def expire_for_case(
        self,
        case_id: uuid.UUID | str,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> int:
        """Expire every open match touching ``case_id`` (case closed or deleted)."""
        if isinstance(case_id, str):
            case_id = uuid.UUID(case_id)
        now = now or datetime.now(timezone.utc)
        count = await self._expire_where(
            or_(PhotoMatch.source_case_id == case_id, PhotoMatch.target_case_id == case_id),
            db_session,
            now,
        )
        logger.info("case_matches_expired", case_id=str(case_id), expired=count)
        return count

    async def expire_orphaned(
        self,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> int:
        """Expire open matches whose photo or case reference was deleted."""
        now = now or datetime.now(timezone.utc)
        count = await self._expire_where(
            or_(
                PhotoMatch.source_photo_id.is_(None),
                PhotoMatch.target_photo_id.is_(None),
                PhotoMatch.source_case_id.is_(None),
                PhotoMatch.target_case_id.is_(None),
            ),
            db_session,
            now,
        )
        logger.info("orphaned_matches_expired", expired=count)
        return count
