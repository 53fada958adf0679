import asyncio
import unittest

from fakes import FakeVectorStore, make_session_factory
from whatnext.models import Movie
from whatnext.services.embeddings import MovieEmbedding
from whatnext.services.vector_index import VectorIndexService


def seed(factory, ids, status="processing"):
    db = factory()
    for i in ids:
        db.add(Movie(tmdb_id=i, title=f"Movie {i}", processing_status=status))
    db.commit()
    db.close()


def embeddings(ids):
    return [MovieEmbedding(id=f"movie_{i}", values=[1.0, float(i)], metadata={"tmdb_id": i}) for i in ids]


def statuses(factory):
    db = factory()
    try:
        return {m.tmdb_id: (m.processing_status, m.vector_id) for m in db.query(Movie)}
    finally:
        db.close()


class TestVectorIndexService(unittest.TestCase):
    def setUp(self):
        self.factory = make_session_factory()

    def test_upload_marks_completed_with_vector_id(self):
        seed(self.factory, [1, 2, 3])
        store = FakeVectorStore()
        service = VectorIndexService(store=store, session_factory=self.factory, batch_size=2, min_batch_size=1)
        result = asyncio.run(service.upload_embeddings(embeddings([1, 2, 3])))

        self.assertEqual(result, {"uploaded": 3, "failed_ids": []})
        self.assertEqual(store.upsert_calls, [["movie_1", "movie_2"], ["movie_3"]])
        self.assertEqual(statuses(self.factory)[2], ("completed", "movie_2"))

    def test_failed_batch_is_split_until_minimum(self):
        ids = list(range(1, 9))
        seed(self.factory, ids)
        # Any batch containing movie 5 is rejected
        store = FakeVectorStore(fail_when=lambda batch: any(v.id == "movie_5" for v in batch))
        service = VectorIndexService(store=store, session_factory=self.factory, batch_size=8, min_batch_size=2)
        result = asyncio.run(service.upload_embeddings(embeddings(ids)))

        self.assertEqual(result["uploaded"], 6)
        self.assertEqual(sorted(result["failed_ids"]), [5, 6])
        self.assertEqual([len(c) for c in store.upsert_calls], [8, 4, 4, 2, 2])

        state = statuses(self.factory)
        self.assertEqual(state[5], ("failed", None))
        self.assertEqual(state[6], ("failed", None))
        self.assertEqual(state[7], ("completed", "movie_7"))

    def test_batch_below_floor_fails_without_splitting(self):
        ids = list(range(1, 11))
        seed(self.factory, ids)
        store = FakeVectorStore(fail_when=lambda batch: True)
        service = VectorIndexService(store=store, session_factory=self.factory, batch_size=500, min_batch_size=50)
        result = asyncio.run(service.upload_embeddings(embeddings(ids)))

        self.assertEqual(result, {"uploaded": 0, "failed_ids": ids})
        self.assertEqual(len(store.upsert_calls), 1)
        db = self.factory()
        try:
            self.assertEqual({(m.processing_status, m.processing_attempts) for m in db.query(Movie)}, {("failed", 1)})
        finally:
            db.close()

    def test_delete_resets_movies(self):
        seed(self.factory, [1])
        store = FakeVectorStore()
        service = VectorIndexService(store=store, session_factory=self.factory, batch_size=10, min_batch_size=1)
        asyncio.run(service.upload_embeddings(embeddings([1])))
        self.assertEqual(asyncio.run(service.delete_vectors(["movie_1"])), 1)
        self.assertEqual(statuses(self.factory)[1], ("pending", None))

    def test_query_and_stats(self):
        seed(self.factory, [1, 2])
        store = FakeVectorStore()
        service = VectorIndexService(store=store, session_factory=self.factory, batch_size=10, min_batch_size=1)
        asyncio.run(service.upload_embeddings(embeddings([1, 2])))

        matches = asyncio.run(service.query_vectors([0.0, 1.0], top_k=1))
        self.assertEqual(matches[0].id, "movie_2")
        self.assertEqual(asyncio.run(service.get_vector_by_id("movie_1")).values, [1.0, 1.0])
        self.assertIsNone(asyncio.run(service.get_vector_by_id("movie_99")))

        stats = asyncio.run(service.get_stats())
        self.assertEqual(stats["total_vectors"], 2)
        self.assertEqual(stats["completed_movies"], 2)


if __name__ == "__main__":
    unittest.main()
