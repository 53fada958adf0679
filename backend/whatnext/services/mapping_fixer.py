"""
mapping_fixer.py

Repairs movies whose vector made it into the index but whose row never got
its vector_id (e.g. the invocation was evicted between the upsert and the
database write). The id is re-derived from tmdb_id and only written when the
index really holds that vector, so running the fix twice changes nothing.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update

from whatnext.core.database import SessionLocal
from whatnext.models import Movie
from whatnext.services.movie_state import vector_id_for
from whatnext.utils.timezone import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SCAN_LIMIT = 5000


class VectorMappingFixer:
    def __init__(self, store, session_factory=None, batch_size: int = 100):
        self.store = store
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size

    def _unmapped_ids(self, limit: int) -> List[int]:
        db = self.session_factory()
        try:
            return [
                r.tmdb_id for r in db.query(Movie.tmdb_id)
                .filter(Movie.vector_id.is_(None))
                .order_by(Movie.id)
                .limit(limit)
            ]
        finally:
            db.close()

    async def fix_mappings(self, tmdb_ids: Optional[List[int]] = None) -> Dict[str, Any]:
        ids = [int(i) for i in tmdb_ids] if tmdb_ids else self._unmapped_ids(DEFAULT_SCAN_LIMIT)
        summary = {"total": len(ids), "fixed": 0, "missing_vectors": 0, "errors": []}

        for start in range(0, len(ids), self.batch_size):
            batch = ids[start:start + self.batch_size]
            present = await asyncio.to_thread(self.store.fetch, [vector_id_for(i) for i in batch])
            for tmdb_id in batch:
                vector_id = vector_id_for(tmdb_id)
                if vector_id not in present:
                    summary["missing_vectors"] += 1
                    continue
                db = self.session_factory()
                try:
                    now = utc_now()
                    rowcount = db.execute(
                        update(Movie)
                        .where(Movie.tmdb_id == tmdb_id, Movie.vector_id.is_(None))
                        .values(vector_id=vector_id, processing_status="completed",
                                last_error=None, embedded_at=now, updated_at=now)
                    ).rowcount
                    db.commit()
                    summary["fixed"] += rowcount
                except Exception as e:
                    db.rollback()
                    logger.error(f"[MappingFix] Failed to fix {tmdb_id}: {e}")
                    summary["errors"].append(f"{tmdb_id}: {e}")
                finally:
                    db.close()

        logger.info(
            f"[MappingFix] Fixed {summary['fixed']}/{summary['total']} "
            f"({summary['missing_vectors']} without a vector in the index)"
        )
        return summary

    def get_fix_status(self) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            total = db.query(func.count(Movie.id)).scalar() or 0
            mapped = db.query(func.count(Movie.id)).filter(Movie.vector_id.isnot(None)).scalar() or 0
            completed_unmapped = db.query(func.count(Movie.id)).filter(
                Movie.processing_status == "completed", Movie.vector_id.is_(None)
            ).scalar() or 0
        finally:
            db.close()
        return {
            "total_movies": total,
            "with_vector_id": mapped,
            "without_vector_id": total - mapped,
            "completed_without_vector_id": completed_unmapped,
            "needs_fix": completed_unmapped > 0,
        }

    def verify_fix(self, tmdb_ids: List[int]) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            rows = []
            for tmdb_id in tmdb_ids:
                movie = db.query(Movie).filter(Movie.tmdb_id == int(tmdb_id)).first()
                rows.append({
                    "tmdb_id": int(tmdb_id),
                    "found": movie is not None,
                    "vector_id": movie.vector_id if movie else None,
                    "processing_status": movie.processing_status if movie else None,
                    "correct": bool(movie and movie.vector_id == vector_id_for(movie.tmdb_id)),
                })
            return rows
        finally:
            db.close()
