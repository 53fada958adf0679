import asyncio
import json
import unittest
from unittest import mock

import httpx
import numpy as np

from fakes import FakeClock, FakeRedis, FakeVectorStore, make_session_factory
from whatnext.core.errors import ProviderError
from whatnext.models import Movie, ProcessingQueue
from whatnext.services.curator import CuratorService
from whatnext.services.embeddings import EmbeddingService
from whatnext.services.orchestrator import VectorizationOrchestrator
from whatnext.services.queue_service import QueueService
from whatnext.services.rate_limit import RateLimitConfig, RateLimitExceeded, RateLimiter
from whatnext.services.vector_index import VectorIndexService


def candidate(tmdb_id, genre=("Crime", 80), **overrides):
    movie = {
        "tmdb_id": tmdb_id,
        "title": f"Film {tmdb_id}",
        "release_date": "1972-03-14",
        "year": 1972,
        "runtime": 150,
        "vote_count": 20000,
        "vote_average": 8.7,
        "popularity": 120.0,
        "original_language": "en",
        "overview": "A crime saga.",
        "genres": [{"id": genre[1], "name": genre[0]}],
        "keywords": ["family"],
        "production_countries": ["United States of America"],
        "spoken_languages": ["en"],
        "cast": [],
        "crew": [],
        "streaming_providers": [],
        "watch_links": {},
    }
    movie.update(overrides)
    return movie


class FakeTMDB:
    def __init__(self, movies=None, errors=None, discover=(), clock=None, tick=0.0):
        self.movies = movies or {}
        self.errors = errors or {}
        self.discover = list(discover)
        self.clock = clock
        self.tick = tick
        self.fetched = []
        self.rate_limiter = RateLimiter("tmdb", RateLimitConfig(10), redis=FakeRedis(), clock=FakeClock())

    async def fetch_movie(self, tmdb_id):
        self.fetched.append(tmdb_id)
        if self.clock:
            self.clock.advance(self.tick)
        if tmdb_id in self.errors:
            raise self.errors[tmdb_id]
        movie = self.movies.get(tmdb_id)
        return dict(movie) if movie else None

    async def fetch_trending_movies(self, time_window="week"):
        return list(self.discover)

    async def fetch_popular_movies(self, page=1):
        return []

    async def get_remaining_capacity(self):
        return 10


class StubEncoder:
    def encode_texts(self, texts, batch_size=64):
        return np.asarray([[1.0, float(len(t) % 7), 0.5] for t in texts], dtype=np.float32)


class TestOrchestrator(unittest.TestCase):
    def setUp(self):
        self.factory = make_session_factory()
        self.store = FakeVectorStore()
        self.queue = QueueService(self.factory)

    def build(self, tmdb, embeddings=None, **kwargs):
        embeddings = embeddings or EmbeddingService(
            rate_limiter=RateLimiter("embeddings", RateLimitConfig(100), redis=FakeRedis(), clock=FakeClock()),
            session_factory=self.factory,
            provider="local",
            local_encoder=StubEncoder(),
            batch_size=10,
        )
        return VectorizationOrchestrator(
            tmdb_client=tmdb,
            curator=CuratorService(session_factory=self.factory, current_year=2025),
            embedding_service=embeddings,
            vector_index=VectorIndexService(store=self.store, session_factory=self.factory, batch_size=10, min_batch_size=1),
            queue=self.queue,
            session_factory=self.factory,
            max_movies=kwargs.pop("max_movies", 50),
            sub_batch_size=kwargs.pop("sub_batch_size", 10),
            time_budget_seconds=kwargs.pop("time_budget_seconds", 25),
            **kwargs,
        )

    def movie_states(self):
        db = self.factory()
        try:
            return {m.tmdb_id: (m.processing_status, m.vector_id) for m in db.query(Movie)}
        finally:
            db.close()

    def movie_row(self, tmdb_id):
        db = self.factory()
        try:
            movie = db.query(Movie).filter_by(tmdb_id=tmdb_id).one()
            return movie.processing_status, movie.processing_attempts, movie.last_error
        finally:
            db.close()

    def queue_states(self):
        db = self.factory()
        try:
            return {q.tmdb_id: q.status for q in db.query(ProcessingQueue)}
        finally:
            db.close()

    def test_manual_run_end_to_end(self):
        tmdb = FakeTMDB(movies={
            1: candidate(1),
            2: candidate(2),
            3: candidate(3, vote_count=50),
        })
        result = asyncio.run(self.build(tmdb).process_movies([1, 2, 3, 4]))

        self.assertEqual(result.source, "manual")
        self.assertEqual(result.movies_processed, 4)
        self.assertEqual(result.embeddings_created, 2)
        self.assertEqual(result.vectors_uploaded, 2)
        self.assertEqual(result.rejected, 1)
        self.assertEqual(result.skipped, 1)
        self.assertFalse(result.stopped_early)

        self.assertEqual(self.movie_states(), {1: ("completed", "movie_1"), 2: ("completed", "movie_2")})
        self.assertEqual(set(self.store.vectors), {"movie_1", "movie_2"})
        self.assertEqual(set(self.queue_states().values()), {"completed"})

    def test_second_run_does_not_duplicate(self):
        tmdb = FakeTMDB(movies={1: candidate(1)})
        orchestrator = self.build(tmdb)
        asyncio.run(orchestrator.process_movies([1]))
        result = asyncio.run(orchestrator.process_movies([1]))
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(len(self.store.vectors), 1)

    def test_rate_limit_stops_and_leaves_rest_pending(self):
        tmdb = FakeTMDB(
            movies={i: candidate(i) for i in range(1, 6)},
            errors={3: RateLimitExceeded("Rate limit exceeded for tmdb", service="tmdb")},
        )
        result = asyncio.run(self.build(tmdb).process_movies([1, 2, 3, 4, 5]))

        self.assertTrue(result.stopped_early)
        self.assertEqual(result.stop_reason, "rate_limited")
        self.assertEqual(tmdb.fetched, [1, 2, 3])
        self.assertEqual(result.vectors_uploaded, 2)
        queue = self.queue_states()
        self.assertEqual([queue[i] for i in (3, 4, 5)], ["pending", "pending", "pending"])
        self.assertEqual(self.queue.get_next_batch(10), [3, 4, 5])

    def test_time_budget_stops_between_sub_batches(self):
        clock = FakeClock(now=0.0)
        tmdb = FakeTMDB(movies={i: candidate(i) for i in range(1, 5)}, clock=clock, tick=3.0)
        orchestrator = self.build(tmdb, sub_batch_size=2, time_budget_seconds=5, clock=clock)
        result = asyncio.run(orchestrator.process_movies([1, 2, 3, 4]))

        self.assertEqual(result.stop_reason, "time_budget")
        self.assertEqual(result.vectors_uploaded, 2)
        self.assertEqual(result.duration_ms, 6000)

    def test_provider_error_fails_one_movie_only(self):
        tmdb = FakeTMDB(
            movies={1: candidate(1), 3: candidate(3)},
            errors={2: ProviderError("tmdb", "upstream error", 502)},
        )
        orchestrator = self.build(tmdb)
        result = asyncio.run(orchestrator.process_movies([1, 2, 3]))
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.vectors_uploaded, 2)
        self.assertIn("2: tmdb: upstream error (HTTP 502)", result.errors)
        self.assertEqual(self.queue_states()[2], "failed")
        self.assertEqual(self.movie_row(2), ("failed", 1, "tmdb: upstream error (HTTP 502)"))

        # The fetch failure is on record, so reprocessing retries it
        del tmdb.errors[2]
        tmdb.movies[2] = candidate(2)
        tmdb.fetched.clear()
        result = asyncio.run(orchestrator.reprocess_failed_movies())
        self.assertEqual(tmdb.fetched, [2])
        self.assertEqual(result.vectors_uploaded, 1)
        self.assertEqual(self.movie_states()[2], ("completed", "movie_2"))
        self.assertEqual(self.movie_row(2)[1], 1)

    def test_attempts_are_capped(self):
        tmdb = FakeTMDB(errors={42: ProviderError("tmdb", "upstream error", 502)})
        orchestrator = self.build(tmdb)
        for _ in range(5):
            asyncio.run(orchestrator.process_movies([42]))
            self.queue.reset_failed()

        self.assertEqual(tmdb.fetched, [42, 42, 42])
        self.assertEqual(self.movie_row(42)[:2], ("failed", 3))
        result = asyncio.run(orchestrator.process_movies([42]))
        self.assertEqual(result.skipped, 1)
        self.assertEqual(self.queue_states()[42], "failed")
        result = asyncio.run(orchestrator.reprocess_failed_movies())
        self.assertEqual(result.movies_processed, 0)
        self.assertEqual(len(tmdb.fetched), 3)

    def test_curation_error_is_a_failure_not_a_rejection(self):
        tmdb = FakeTMDB(movies={1: candidate(1)})
        orchestrator = self.build(tmdb)
        with mock.patch.object(CuratorService, "_is_classic", side_effect=RuntimeError("db connection reset")):
            result = asyncio.run(orchestrator.process_movies([1]))

        self.assertEqual(result.rejected, 0)
        self.assertEqual(result.failed, 1)
        self.assertEqual(self.queue_states()[1], "failed")
        status, attempts, error = self.movie_row(1)
        self.assertEqual((status, attempts), ("failed", 1))
        self.assertIn("db connection reset", error)

        result = asyncio.run(orchestrator.reprocess_failed_movies())
        self.assertEqual(result.vectors_uploaded, 1)
        self.assertEqual(self.movie_states()[1], ("completed", "movie_1"))

    def test_embedding_rate_limit_requeues_deferred(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"index": i, "embedding": [1.0, 0.0]} for i in range(len(body["input"]))]})

        embeddings = EmbeddingService(
            rate_limiter=RateLimiter("embeddings", RateLimitConfig(1), redis=FakeRedis(), clock=FakeClock()),
            session_factory=self.factory,
            batch_size=1,
            provider="openai",
            transport=httpx.MockTransport(handler),
        )
        tmdb = FakeTMDB(movies={i: candidate(i) for i in (1, 2, 3)})
        result = asyncio.run(self.build(tmdb, embeddings=embeddings).process_movies([1, 2, 3]))

        self.assertEqual(result.stop_reason, "rate_limited")
        self.assertEqual(result.vectors_uploaded, 1)
        states = self.movie_states()
        self.assertEqual(states[1], ("completed", "movie_1"))
        self.assertEqual(states[2], ("pending", None))
        self.assertEqual(self.queue.get_next_batch(10), [2, 3])

    def test_discovery_defers_overrepresented_genre(self):
        db = self.factory()
        for i in range(100, 110):
            db.add(Movie(tmdb_id=i, title=f"Drama {i}", genres=json.dumps([{"id": 18, "name": "Drama"}]),
                         processing_status="completed", vector_id=f"movie_{i}"))
        db.commit()
        db.close()

        tmdb = FakeTMDB(movies={7: candidate(7, genre=("Drama", 18))}, discover=[7, 100])
        orchestrator = self.build(tmdb)
        result = asyncio.run(orchestrator.process_movies())
        self.assertEqual(result.source, "tmdb_discover")
        self.assertEqual(tmdb.fetched, [7])
        self.assertEqual(result.queued, 1)
        self.assertEqual(self.queue.get_next_batch(10), [7])

        # Second pass comes from the queue and goes through
        result = asyncio.run(orchestrator.process_movies())
        self.assertEqual(result.source, "queue")
        self.assertEqual(result.vectors_uploaded, 1)
        self.assertEqual(self.movie_states()[7], ("completed", "movie_7"))

    def test_reprocess_failed_movies(self):
        db = self.factory()
        db.add(Movie(tmdb_id=1, title="Film 1", processing_status="failed", processing_attempts=1))
        db.add(Movie(tmdb_id=2, title="Film 2", processing_status="failed", processing_attempts=3))
        db.commit()
        db.close()

        tmdb = FakeTMDB(movies={1: candidate(1), 2: candidate(2)})
        result = asyncio.run(self.build(tmdb).reprocess_failed_movies())
        self.assertEqual(result.source, "reprocess")
        self.assertEqual(tmdb.fetched, [1])
        self.assertEqual(self.movie_states()[1], ("completed", "movie_1"))
        self.assertEqual(self.movie_states()[2], ("failed", None))

    def test_processing_stats(self):
        tmdb = FakeTMDB(movies={1: candidate(1)})
        orchestrator = self.build(tmdb)
        asyncio.run(orchestrator.process_movies([1]))
        stats = asyncio.run(orchestrator.get_processing_stats())
        self.assertEqual(stats["vectors"]["total_vectors"], 1)
        self.assertEqual(stats["today"]["movies_processed"], 1)
        self.assertEqual(stats["today"]["vectors_uploaded"], 1)
        self.assertEqual(set(stats["rate_limits"]), {"tmdb", "embeddings"})


if __name__ == "__main__":
    unittest.main()
