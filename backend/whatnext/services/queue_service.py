"""
queue_service.py

The processing_queue table: durable record of work that later invocations
resume. Entries are marked completed/failed by processing and only removed
by explicit clear or cleanup.

Draining uses one fixed query (outer join on movies, ORDER BY priority then
insertion, LIMIT n) rather than building IN (...) lists sized to the batch.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from whatnext.core.database import SessionLocal
from whatnext.models import Movie, ProcessingQueue
from whatnext.utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)

CLEAR_TYPES = ("all", "pending", "completed")


class QueueService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def add_to_queue(self, tmdb_ids: Iterable[int], priority: int = 0) -> Dict[str, int]:
        added = skipped = 0
        db = self.session_factory()
        try:
            for tmdb_id in tmdb_ids:
                present = db.query(ProcessingQueue.id).filter(ProcessingQueue.tmdb_id == int(tmdb_id)).first()
                if present:
                    skipped += 1
                    continue
                db.add(ProcessingQueue(tmdb_id=int(tmdb_id), priority=priority, status="pending"))
                try:
                    db.commit()
                    added += 1
                except IntegrityError:
                    # Queued concurrently by another invocation
                    db.rollback()
                    skipped += 1
        finally:
            db.close()
        logger.info(f"[Queue] Added {added}, skipped {skipped} (priority {priority})")
        return {"added": added, "skipped": skipped}

    def get_next_batch(self, limit: int) -> List[int]:
        """Pending ids in priority-then-insertion order, skipping movies that are already completed."""
        db = self.session_factory()
        try:
            completed_movie = (
                select(Movie.id)
                .where(Movie.tmdb_id == ProcessingQueue.tmdb_id, Movie.processing_status == "completed")
                .correlate(ProcessingQueue)
                .exists()
            )
            # Entries whose movie finished elsewhere are done
            db.execute(
                update(ProcessingQueue)
                .where(ProcessingQueue.status == "pending", completed_movie)
                .values(status="completed", processed_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            db.commit()

            rows = db.execute(
                select(ProcessingQueue.tmdb_id)
                .outerjoin(Movie, Movie.tmdb_id == ProcessingQueue.tmdb_id)
                .where(
                    ProcessingQueue.status == "pending",
                    or_(Movie.id.is_(None), Movie.processing_status != "completed"),
                )
                .order_by(ProcessingQueue.priority.desc(), ProcessingQueue.added_at.asc(), ProcessingQueue.id.asc())
                .limit(limit)
            ).all()
            return [r.tmdb_id for r in rows]
        finally:
            db.close()

    def mark_entry(self, tmdb_id: int, status: str, error: Optional[str] = None) -> int:
        values: Dict[str, Any] = {"status": status, "last_error": error}
        if status in ("completed", "failed"):
            values["processed_at"] = utc_now()
        db = self.session_factory()
        try:
            rowcount = db.execute(
                update(ProcessingQueue).where(ProcessingQueue.tmdb_id == tmdb_id).values(**values)
            ).rowcount
            db.commit()
            return rowcount
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _count(self, db, status: Optional[str] = None) -> int:
        query = db.query(func.count(ProcessingQueue.id))
        if status:
            query = query.filter(ProcessingQueue.status == status)
        return query.scalar() or 0

    def clear_queue(self, clear_type: str = "all") -> Dict[str, int]:
        if clear_type not in CLEAR_TYPES:
            raise ValueError(f"clearType must be one of {', '.join(CLEAR_TYPES)}")
        db = self.session_factory()
        try:
            before = self._count(db)
            statement = delete(ProcessingQueue)
            if clear_type != "all":
                statement = statement.where(ProcessingQueue.status == clear_type)
            db.execute(statement)
            db.commit()
            after = self._count(db)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(f"[Queue] Cleared {clear_type}: {before} -> {after}")
        return {"before": before, "after": after, "removed": before - after}

    def get_queue_stats(self) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            by_status = dict(
                db.query(ProcessingQueue.status, func.count(ProcessingQueue.id))
                .group_by(ProcessingQueue.status).all()
            )
            oldest = db.query(func.min(ProcessingQueue.added_at)).filter(
                ProcessingQueue.status == "pending"
            ).scalar()
            return {
                "total": sum(by_status.values()),
                "pending": by_status.get("pending", 0),
                "processing": by_status.get("processing", 0),
                "completed": by_status.get("completed", 0),
                "failed": by_status.get("failed", 0),
                "oldest_pending": ensure_utc(oldest).isoformat() if oldest else None,
            }
        finally:
            db.close()

    def reset_failed(self) -> int:
        """Failed (and stuck processing) entries back to pending."""
        db = self.session_factory()
        try:
            rowcount = db.execute(
                update(ProcessingQueue)
                .where(ProcessingQueue.status.in_(("failed", "processing")))
                .values(status="pending", last_error=None, processed_at=None)
            ).rowcount
            db.commit()
            return rowcount
        finally:
            db.close()

    def cleanup_queue(self, days: int = 7) -> int:
        """Remove completed entries processed more than `days` ago."""
        cutoff = utc_now() - timedelta(days=days)
        db = self.session_factory()
        try:
            rowcount = db.execute(
                delete(ProcessingQueue).where(
                    ProcessingQueue.status == "completed",
                    ProcessingQueue.processed_at < cutoff,
                )
            ).rowcount
            db.commit()
            logger.info(f"[Queue] Cleaned up {rowcount} completed entries older than {days} days")
            return rowcount
        finally:
            db.close()

    def get_failed_items(self, limit: int = 50) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = (
                db.query(ProcessingQueue)
                .filter(ProcessingQueue.status == "failed")
                .order_by(ProcessingQueue.processed_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {"tmdb_id": r.tmdb_id, "last_error": r.last_error,
                 "processed_at": ensure_utc(r.processed_at).isoformat() if r.processed_at else None}
                for r in rows
            ]
        finally:
            db.close()
