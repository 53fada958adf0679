"""
vector_index.py

Upload, query and delete movie vectors, keeping the movies table in step.

Uploads go out in batches of VECTOR_BATCH_SIZE. A failed batch is split in
half and each half retried, recursively, until it succeeds or a batch at or
below VECTOR_MIN_BATCH_SIZE fails, at which point its movies are marked
failed. Each movie whose vector landed gets vector_id + 'completed' in a
single UPDATE.
"""
import asyncio
import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from whatnext.core.config import settings
from whatnext.core.database import SessionLocal
from whatnext.models import Movie
from whatnext.services.daily_metrics import increment_daily_metrics
from whatnext.services.embeddings import MovieEmbedding
from whatnext.services.faiss_store import FaissVectorStore, StoredVector, VectorMatch
from whatnext.services.movie_state import mark_completed, mark_failed, reset_to_pending, tmdb_id_from_vector_id

logger = logging.getLogger(__name__)


class VectorIndexService:
    def __init__(
        self,
        store=None,
        session_factory=None,
        batch_size: Optional[int] = None,
        min_batch_size: Optional[int] = None,
    ):
        self.store = store or FaissVectorStore()
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.vector_batch_size
        self.min_batch_size = min_batch_size or settings.vector_min_batch_size

    async def upload_embeddings(self, embeddings: List[MovieEmbedding]) -> Dict[str, Any]:
        """
        Returns {"uploaded": n, "failed_ids": [...]}.

        Only batches above min_batch_size are halved on failure. Pipeline
        sub-batches are smaller than that, so a failed upsert fails them
        outright; those movies are marked failed and picked up again by
        reprocess_failed_movies.
        """
        uploaded, failed_ids = 0, []
        for start in range(0, len(embeddings), self.batch_size):
            ok, failed = await self._upload_batch(embeddings[start:start + self.batch_size])
            uploaded += ok
            failed_ids.extend(failed)
        if uploaded:
            increment_daily_metrics(self.session_factory, vectors_uploaded=uploaded)
        return {"uploaded": uploaded, "failed_ids": failed_ids}

    async def _upload_batch(self, batch: List[MovieEmbedding]) -> tuple:
        try:
            await asyncio.to_thread(self.store.upsert, batch)
        except Exception as e:
            if len(batch) > self.min_batch_size:
                chunk = max(self.min_batch_size, math.ceil(len(batch) / 2))
                logger.warning(f"[VectorIndex] Upsert of {len(batch)} failed ({e}); retrying in chunks of {chunk}")
                uploaded, failed_ids = 0, []
                for start in range(0, len(batch), chunk):
                    ok, failed = await self._upload_batch(batch[start:start + chunk])
                    uploaded += ok
                    failed_ids.extend(failed)
                return uploaded, failed_ids

            logger.error(f"[VectorIndex] Upsert of {len(batch)} failed at minimum batch size: {e}")
            failed_ids = []
            for embedding in batch:
                tmdb_id = tmdb_id_from_vector_id(embedding.id)
                if tmdb_id is not None:
                    mark_failed(self.session_factory, tmdb_id, f"Vector upload failed: {e}")
                    failed_ids.append(tmdb_id)
            increment_daily_metrics(self.session_factory, errors_count=len(batch))
            return 0, failed_ids

        for embedding in batch:
            tmdb_id = tmdb_id_from_vector_id(embedding.id)
            if tmdb_id is not None:
                mark_completed(self.session_factory, tmdb_id)
        logger.info(f"[VectorIndex] Uploaded {len(batch)} vectors")
        return len(batch), []

    async def query_vectors(self, vector: List[float], top_k: int = 10, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        return await asyncio.to_thread(self.store.query, vector, top_k, filter)

    async def get_vector_by_id(self, vector_id: str) -> Optional[StoredVector]:
        found = await asyncio.to_thread(self.store.fetch, [vector_id])
        return found.get(vector_id)

    async def delete_vectors(self, vector_ids: List[str]) -> int:
        """Remove vectors and put their movies back to pending."""
        deleted = await asyncio.to_thread(self.store.delete, vector_ids)
        for vector_id in vector_ids:
            tmdb_id = tmdb_id_from_vector_id(vector_id)
            if tmdb_id is not None:
                reset_to_pending(self.session_factory, tmdb_id)
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        index_info = await asyncio.to_thread(self.store.describe)
        db = self.session_factory()
        try:
            counts = dict(
                db.query(Movie.processing_status, func.count(Movie.id))
                .group_by(Movie.processing_status).all()
            )
        finally:
            db.close()
        return {
            "total_vectors": index_info.get("total_vectors", 0),
            "dimension": index_info.get("dimension"),
            "completed_movies": counts.get("completed", 0),
            "failed_movies": counts.get("failed", 0),
            "pending_movies": counts.get("pending", 0),
            "processing_movies": counts.get("processing", 0),
        }
