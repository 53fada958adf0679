"""
movie_state.py

Processing-status transitions for rows in `movies`.

pending -> processing -> completed, or -> failed (attempts + 1). Each
transition is one UPDATE committed on its own, so whatever an evicted
invocation managed to write is the durable state. `vector_id` and the
'completed' status are always set together in the same statement.
"""
import logging
from typing import Optional

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError

from whatnext.core.database import SessionLocal
from whatnext.models import Movie
from whatnext.utils.timezone import utc_now

logger = logging.getLogger(__name__)

VECTOR_ID_PREFIX = "movie_"


def vector_id_for(tmdb_id: int) -> str:
    return f"{VECTOR_ID_PREFIX}{int(tmdb_id)}"


def tmdb_id_from_vector_id(vector_id: str) -> Optional[int]:
    if not vector_id or not vector_id.startswith(VECTOR_ID_PREFIX):
        return None
    try:
        return int(vector_id[len(VECTOR_ID_PREFIX):])
    except ValueError:
        return None


def _apply(session_factory, statement) -> int:
    db = (session_factory or SessionLocal)()
    try:
        rowcount = db.execute(statement).rowcount
        db.commit()
        return rowcount
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def mark_processing(session_factory, tmdb_id: int) -> int:
    return _apply(session_factory, update(Movie).where(Movie.tmdb_id == tmdb_id).values(
        processing_status="processing",
        vector_id=None,
        updated_at=utc_now(),
    ))


def mark_completed(session_factory, tmdb_id: int) -> int:
    """Record a successful upsert: vector_id, status and timestamp in one statement."""
    now = utc_now()
    return _apply(session_factory, update(Movie).where(Movie.tmdb_id == tmdb_id).values(
        vector_id=vector_id_for(tmdb_id),
        processing_status="completed",
        last_error=None,
        embedded_at=now,
        updated_at=now,
    ))


def mark_failed(session_factory, tmdb_id: int, error: str, title: Optional[str] = None) -> int:
    """
    Record a failure against the movie, bumping its attempt counter.

    Fetch failures happen before a row exists; those get a placeholder row in
    'failed' so reprocessing and the attempt cap still apply to them.
    """
    error = (error or "")[:2000]
    bump = update(Movie).where(Movie.tmdb_id == tmdb_id).values(
        processing_status="failed",
        vector_id=None,
        last_error=error,
        processing_attempts=Movie.processing_attempts + 1,
        updated_at=utc_now(),
    )
    db = (session_factory or SessionLocal)()
    try:
        rowcount = db.execute(bump).rowcount
        if rowcount == 0:
            try:
                db.execute(insert(Movie).values(
                    tmdb_id=tmdb_id,
                    title=title or f"TMDB {tmdb_id}",
                    processing_status="failed",
                    processing_attempts=1,
                    last_error=error,
                ))
            except IntegrityError:
                # Row created concurrently
                db.rollback()
                db.execute(bump)
            rowcount = 1
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    logger.error(f"[Pipeline] Movie {tmdb_id} failed: {error}")
    return rowcount


def exhausted_ids(session_factory, tmdb_ids, max_attempts: int) -> set:
    """Ids of failed movies that have used up their processing attempts."""
    if not tmdb_ids:
        return set()
    db = (session_factory or SessionLocal)()
    try:
        rows = db.query(Movie.tmdb_id).filter(
            Movie.tmdb_id.in_(list(tmdb_ids)),
            Movie.processing_status == "failed",
            Movie.processing_attempts >= max_attempts,
        )
        return {r.tmdb_id for r in rows}
    finally:
        db.close()


def reset_to_pending(session_factory, tmdb_id: int) -> int:
    return _apply(session_factory, update(Movie).where(Movie.tmdb_id == tmdb_id).values(
        processing_status="pending",
        vector_id=None,
        embedded_at=None,
        updated_at=utc_now(),
    ))
