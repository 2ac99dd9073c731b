"""Post-commit statistics work scheduled from request handlers.

Each task opens its own session and commits on its own. A failure is logged
and leaves the row stale; the arq cron picks it up later.
"""

from __future__ import annotations

import logging

from kartpark.database import session_scope
from kartpark.stats.service import apply_session, recompute_statistics

logger = logging.getLogger(__name__)


async def recompute_after_commit(user_id: int) -> None:
    """Recompute one user's statistics in a fresh transaction."""
    try:
        async with session_scope() as db:
            await recompute_statistics(db, user_id)
            await db.commit()
    except Exception:
        logger.warning("Deferred recompute failed for user %d", user_id, exc_info=True)


async def apply_session_after_commit(race_session_pk: int) -> None:
    """Fold a freshly recorded session in a fresh transaction."""
    try:
        async with session_scope() as db:
            await apply_session(db, race_session_pk)
            await db.commit()
    except Exception:
        logger.warning("Deferred session processing failed for session %d", race_session_pk, exc_info=True)
