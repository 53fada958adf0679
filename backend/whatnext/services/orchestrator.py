"""
orchestrator.py

Runs the pipeline TMDB fetch -> curation -> embedding -> vector upload.

Work selection, in order:
  - explicit ids (admin runs); also recorded in the queue so a cut-short run resumes
  - pending queue entries, highest priority first, then oldest
  - fresh trending + popular ids from TMDB that aren't in the catalog yet

Design notes:
  - Movies are handled in small sub-batches. After each one the orchestrator
    checks the TMDB limiter and the invocation time budget and stops early
    with a partial result instead of running over.
  - Every state change is written as it happens (movie status, queue entry),
    so an evicted invocation leaves exact progress behind.
  - One movie failing never aborts the rest of the batch.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from whatnext.core.config import settings
from whatnext.core.database import SessionLocal
from whatnext.core.errors import ProviderError, ProviderRateLimited
from whatnext.models import Movie
from whatnext.services.curator import EVALUATION_ERROR, CuratorService
from whatnext.services.daily_metrics import get_daily_metrics, increment_daily_metrics
from whatnext.services.embeddings import EmbeddingService
from whatnext.services.movie_state import (
    exhausted_ids, mark_failed, mark_processing, reset_to_pending, tmdb_id_from_vector_id,
)
from whatnext.services.queue_service import QueueService
from whatnext.services.rate_limit import RateLimitExceeded
from whatnext.services.tmdb_client import TMDBClient, extract_movie_fields, to_movie_record
from whatnext.services.vector_index import VectorIndexService
from whatnext.utils.timezone import utc_now

logger = logging.getLogger(__name__)

# Display-only columns refreshed by enrichment; pipeline state is never touched
ENRICH_FIELDS = (
    "imdb_id", "tagline", "homepage", "poster_path", "backdrop_path", "trailer_key",
    "cast", "crew", "director", "streaming_providers", "watch_links",
    "collection_id", "collection_name",
)


@dataclass
class ProcessingResult:
    source: str = "none"
    movies_processed: int = 0
    embeddings_created: int = 0
    vectors_uploaded: int = 0
    skipped: int = 0
    rejected: int = 0
    duplicates: int = 0
    queued: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    stopped_early: bool = False
    stop_reason: Optional[str] = None
    duration_ms: int = 0

    def stop(self, reason: str) -> None:
        self.stopped_early = True
        self.stop_reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VectorizationOrchestrator:
    def __init__(
        self,
        tmdb_client: TMDBClient,
        curator: CuratorService,
        embedding_service: EmbeddingService,
        vector_index: VectorIndexService,
        queue: Optional[QueueService] = None,
        session_factory=None,
        max_movies: Optional[int] = None,
        sub_batch_size: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.tmdb = tmdb_client
        self.curator = curator
        self.embeddings = embedding_service
        self.vector_index = vector_index
        self.session_factory = session_factory or SessionLocal
        self.queue = queue or QueueService(self.session_factory)
        self.max_movies = max_movies or settings.max_daily_new_movies
        self.sub_batch_size = sub_batch_size or settings.processing_sub_batch_size
        self.time_budget_seconds = time_budget_seconds or settings.invocation_time_budget_seconds
        self.clock = clock

    async def process_movies(self, movie_ids: Optional[List[int]] = None, source: Optional[str] = None) -> ProcessingResult:
        started = self.clock()
        result = ProcessingResult()
        ids, result.source = await self._select_work(movie_ids, result)
        if source:
            result.source = source
        ids = ids[:self.max_movies]
        exhausted = exhausted_ids(self.session_factory, ids, settings.max_processing_attempts)
        if exhausted:
            for tmdb_id in exhausted:
                self.queue.mark_entry(tmdb_id, "failed", "Max processing attempts reached")
            result.skipped += len(exhausted)
            ids = [i for i in ids if i not in exhausted]
        logger.info(f"[Orchestrator] Processing {len(ids)} movies from {result.source}")

        for offset in range(0, len(ids), self.sub_batch_size):
            await self._process_sub_batch(ids[offset:offset + self.sub_batch_size], result)
            if result.stopped_early:
                break
            if offset + self.sub_batch_size < len(ids):
                reason = await self._stop_reason(started)
                if reason:
                    result.stop(reason)
                    logger.warning(f"[Orchestrator] Stopping early after {offset + self.sub_batch_size} movies: {reason}")
                    break

        result.duration_ms = int((self.clock() - started) * 1000)
        increment_daily_metrics(self.session_factory, movies_processed=result.movies_processed)
        logger.info(
            f"[Orchestrator] Done in {result.duration_ms}ms: processed={result.movies_processed} "
            f"embedded={result.embeddings_created} uploaded={result.vectors_uploaded} "
            f"rejected={result.rejected} duplicates={result.duplicates} failed={result.failed}"
        )
        return result

    async def _select_work(self, movie_ids: Optional[List[int]], result: ProcessingResult) -> Tuple[List[int], str]:
        if movie_ids:
            ids = list(dict.fromkeys(int(i) for i in movie_ids))
            self.queue.add_to_queue(ids)
            return ids, "manual"

        pending = self.queue.get_next_batch(self.max_movies)
        if pending:
            return pending, "queue"

        try:
            discovered = await self.tmdb.fetch_trending_movies("week")
            discovered += await self.tmdb.fetch_popular_movies(1)
        except (RateLimitExceeded, ProviderRateLimited) as e:
            result.stop("rate_limited")
            result.errors.append(f"discovery: {e}")
            return [], "tmdb_discover"
        except ProviderError as e:
            logger.error(f"[Orchestrator] Discovery failed: {e}")
            result.errors.append(f"discovery: {e}")
            return [], "tmdb_discover"
        fresh = [i for i in dict.fromkeys(discovered) if not self._movie_exists(i)]
        return fresh, "tmdb_discover"

    def _movie_exists(self, tmdb_id: int) -> bool:
        db = self.session_factory()
        try:
            return db.query(Movie.id).filter(Movie.tmdb_id == tmdb_id).first() is not None
        finally:
            db.close()

    async def _stop_reason(self, started: float) -> Optional[str]:
        if self.clock() - started >= self.time_budget_seconds:
            return "time_budget"
        if await self.tmdb.get_remaining_capacity() <= 0:
            return "rate_limit_capacity"
        return None

    async def _process_sub_batch(self, tmdb_ids: List[int], result: ProcessingResult) -> None:
        accepted: List[Dict[str, Any]] = []
        for tmdb_id in tmdb_ids:
            try:
                candidate = await self._curate(tmdb_id, result)
            except (RateLimitExceeded, ProviderRateLimited) as e:
                # Leave this and the remaining ids pending for the next invocation
                logger.warning(f"[Orchestrator] Rate limited at movie {tmdb_id}: {e}")
                result.stop("rate_limited")
                break
            except ProviderError as e:
                self._fail(tmdb_id, str(e), result)
                continue
            except Exception as e:
                logger.exception(f"[Orchestrator] Unexpected error on movie {tmdb_id}")
                self._fail(tmdb_id, f"Unexpected error: {e}", result)
                continue
            if candidate is not None:
                accepted.append(candidate)

        if accepted:
            await self._vectorize(accepted, result)

    async def _curate(self, tmdb_id: int, result: ProcessingResult) -> Optional[Dict[str, Any]]:
        candidate = await self.tmdb.fetch_movie(tmdb_id)
        result.movies_processed += 1
        if candidate is None:
            result.skipped += 1
            self.queue.mark_entry(tmdb_id, "completed", "Filtered, not found or already completed")
            return None

        decision = self.curator.evaluate_movie(candidate, result.source)
        if decision.metadata.get("reason_code") == EVALUATION_ERROR:
            # Not a curation verdict; retried like any other failure
            self._fail(tmdb_id, decision.reason, result, title=candidate.get("title"))
            return None
        if decision.action == "duplicate":
            result.duplicates += 1
            self.queue.mark_entry(tmdb_id, "completed", decision.reason)
            return None
        if decision.action == "reject":
            result.rejected += 1
            self.queue.mark_entry(tmdb_id, "completed", decision.reason)
            return None
        if decision.action == "queue" and result.source == "tmdb_discover":
            # Deferred once; when it comes back through the queue it proceeds
            self.queue.add_to_queue([tmdb_id], priority=int(decision.metadata.get("priority", 0)))
            result.queued += 1
            return None

        self._save_candidate(candidate)
        return candidate

    def _save_candidate(self, candidate: Dict[str, Any]) -> None:
        record = to_movie_record(candidate)
        record.update(processing_status="pending", vector_id=None, last_error=None)
        db = self.session_factory()
        try:
            movie = db.query(Movie).filter(Movie.tmdb_id == candidate["tmdb_id"]).first()
            if movie is None:
                db.add(Movie(**record))
            else:
                for key, value in record.items():
                    setattr(movie, key, value)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _vectorize(self, candidates: List[Dict[str, Any]], result: ProcessingResult) -> None:
        for candidate in candidates:
            mark_processing(self.session_factory, candidate["tmdb_id"])

        batch = await self.embeddings.generate_embeddings(candidates)
        result.embeddings_created += len(batch.embeddings)
        result.errors.extend(batch.errors)
        for tmdb_id in batch.failed_ids:
            result.failed += 1
            self.queue.mark_entry(tmdb_id, "failed", "Embedding failed")
        if batch.deferred_ids:
            for tmdb_id in batch.deferred_ids:
                reset_to_pending(self.session_factory, tmdb_id)
            self.queue.add_to_queue(batch.deferred_ids)
            result.stop("rate_limited")

        if not batch.embeddings:
            return
        upload = await self.vector_index.upload_embeddings(batch.embeddings)
        result.vectors_uploaded += upload["uploaded"]
        failed = set(upload["failed_ids"])
        for embedding in batch.embeddings:
            tmdb_id = tmdb_id_from_vector_id(embedding.id)
            if tmdb_id in failed:
                result.failed += 1
                result.errors.append(f"{tmdb_id}: vector upload failed")
                self.queue.mark_entry(tmdb_id, "failed", "Vector upload failed")
            else:
                self.queue.mark_entry(tmdb_id, "completed")

    def _fail(self, tmdb_id: int, error: str, result: ProcessingResult, title: Optional[str] = None) -> None:
        result.failed += 1
        result.errors.append(f"{tmdb_id}: {error}")
        mark_failed(self.session_factory, tmdb_id, error, title=title)
        self.queue.mark_entry(tmdb_id, "failed", error)
        increment_daily_metrics(self.session_factory, errors_count=1)

    async def reprocess_failed_movies(self) -> ProcessingResult:
        """Resubmit failed movies that still have attempts left."""
        db = self.session_factory()
        try:
            ids = [
                r.tmdb_id for r in db.query(Movie.tmdb_id)
                .filter(Movie.processing_status == "failed", Movie.processing_attempts < settings.max_processing_attempts)
                .order_by(Movie.processing_attempts, Movie.updated_at)
                .limit(self.max_movies)
            ]
        finally:
            db.close()
        if not ids:
            logger.info("[Orchestrator] No failed movies eligible for reprocessing")
            return ProcessingResult(source="reprocess")
        logger.info(f"[Orchestrator] Reprocessing {len(ids)} failed movies")
        return await self.process_movies(ids, source="reprocess")

    async def enrich_existing_movies(self, limit: int = 50) -> Dict[str, Any]:
        """Backfill display metadata for completed movies missing poster, cast or director."""
        db = self.session_factory()
        try:
            ids = [
                r.tmdb_id for r in db.query(Movie.tmdb_id)
                .filter(
                    Movie.processing_status == "completed",
                    (Movie.poster_path.is_(None)) | (Movie.cast.is_(None)) | (Movie.director.is_(None)),
                )
                .order_by(Movie.popularity.desc())
                .limit(limit)
            ]
        finally:
            db.close()

        summary = {"checked": len(ids), "enriched": 0, "errors": [], "stopped_early": False}
        for tmdb_id in ids:
            try:
                raw = await self.tmdb.fetch_movie_details(tmdb_id)
            except (RateLimitExceeded, ProviderRateLimited):
                summary["stopped_early"] = True
                break
            except ProviderError as e:
                summary["errors"].append(f"{tmdb_id}: {e}")
                continue
            if raw is None:
                continue
            record = to_movie_record(extract_movie_fields(raw))
            db = self.session_factory()
            try:
                db.query(Movie).filter(Movie.tmdb_id == tmdb_id).update(
                    {k: record.get(k) for k in ENRICH_FIELDS}, synchronize_session=False
                )
                db.commit()
                summary["enriched"] += 1
            finally:
                db.close()
        logger.info(f"[Orchestrator] Enriched {summary['enriched']}/{summary['checked']} movies")
        return summary

    async def get_processing_stats(self) -> Dict[str, Any]:
        return {
            "vectors": await self.vector_index.get_stats(),
            "queue": self.queue.get_queue_stats(),
            "today": get_daily_metrics(self.session_factory),
            "rate_limits": {
                "tmdb": await self.tmdb.rate_limiter.get_status(),
                "embeddings": await self.embeddings.rate_limiter.get_status(),
            },
            "generated_at": utc_now().isoformat(),
        }
