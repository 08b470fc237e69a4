"""
Cleanup module for superseded cache rows and stale run locks.

Every refresh of a key writes a new CachedResult and leaves the previous one
behind for audit. Superseded rows older than a number of days (default: 90)
can be pruned; the current row of a key is never removed, whatever its age.
"""

from datetime import datetime, timedelta
from typing import Callable, Tuple

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from .database import CachedResult, RunLock, session_scope
from .logger import get_logger


def prune_superseded_results(
    session_factory: sessionmaker,
    days: int = 90,
    clock: Callable[[], datetime] = datetime.now,
) -> Tuple[int, int]:
    """
    Remove non-current cache rows computed more than ``days`` ago.

    Args:
        session_factory: Session factory for the leadenrich database
        days: Age threshold in days (default: 90)

    Returns:
        Tuple of (rows_before, rows_after)
        Difference = rows_removed
    """
    logger = get_logger()
    cutoff = clock() - timedelta(days=days)
    logger.debug("Starting cache pruning", days=days, cutoff=cutoff.isoformat())

    try:
        with session_scope(session_factory) as session:
            rows_before = session.query(func.count(CachedResult.id)).scalar()
            candidates = session.query(CachedResult).filter(CachedResult.computed_at < cutoff).all()

            current_ids = set()
            for key in {row.key for row in candidates}:
                current = (
                    session.query(CachedResult.id)
                    .filter(CachedResult.key == key)
                    .order_by(CachedResult.computed_at.desc(), CachedResult.id.desc())
                    .first()
                )
                current_ids.add(current[0])

            removed = 0
            for row in candidates:
                if row.id not in current_ids:
                    session.delete(row)
                    removed += 1
            rows_after = rows_before - removed
    except Exception as e:
        logger.error("Cache pruning failed", error=str(e), days=days)
        raise

    logger.info(
        f"Cache pruning complete: {removed} removed, {rows_after} remaining",
        rows_before=rows_before,
        rows_removed=removed,
        rows_after=rows_after,
        days_threshold=days,
    )
    return (rows_before, rows_after)


def release_stale_locks(
    session_factory: sessionmaker,
    clock: Callable[[], datetime] = datetime.now,
) -> int:
    """Delete run locks whose lease has expired. Returns the number released."""
    logger = get_logger()
    now = clock()
    with session_scope(session_factory) as session:
        stale = session.query(RunLock).filter(RunLock.expires_at <= now).all()
        for lock in stale:
            logger.info(
                "Releasing stale run lock",
                run_id=lock.run_id,
                owner=lock.owner,
                expired_at=lock.expires_at.isoformat(),
            )
            session.delete(lock)
    return len(stale)
