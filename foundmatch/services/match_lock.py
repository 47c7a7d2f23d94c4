"""Per-match serialisation point.

Every PhotoMatch mutation loads the row through ``lock_match`` (or
``lock_match_by_pair``), which takes a row-level ``SELECT ... FOR UPDATE``
lock for the rest of the transaction.  Concurrent writers for the same match
queue behind each other; writers for different matches never contend.
"""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.models.match import PhotoMatch, make_pair_key


async def lock_match(db_session: AsyncSession, match_id: uuid.UUID | str) -> PhotoMatch:
    """Load and lock one match.

    Raises
    ------
    LookupError
        If no match exists with ``match_id``.
    """
    if isinstance(match_id, str):
        match_id = uuid.UUID(match_id)
    stmt = (
        select(PhotoMatch)
        .where(PhotoMatch.id == match_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    match = (await db_session.execute(stmt)).scalar_one_or_none()
    if match is None:
        raise LookupError(f"Match {match_id} not found")
    return match


async def lock_match_by_pair(
    db_session: AsyncSession,
    photo_a: uuid.UUID,
    photo_b: uuid.UUID,
) -> PhotoMatch | None:
    """Load and lock the match for a photo pair in either orientation."""
    stmt = (
        select(PhotoMatch)
        .where(PhotoMatch.pair_key == make_pair_key(photo_a, photo_b))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db_session.execute(stmt)).scalar_one_or_none()
