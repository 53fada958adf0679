import tempfile
from contextlib import contextmanager
import unittest

from whatnext.services.faiss_store import FaissVectorStore, matches_filter


def vec(id, values, **metadata):
    return {"id": id, "values": values, "metadata": metadata}


class TestMatchesFilter(unittest.TestCase):
    def test_operators(self):
        meta = {"year": 1999, "language": "en", "rating": 8.0}
        self.assertTrue(matches_filter(meta, None))
        self.assertTrue(matches_filter(meta, {"year": {"$gte": 1990, "$lte": 2000}}))
        self.assertFalse(matches_filter(meta, {"year": {"$lte": 1990}}))
        self.assertTrue(matches_filter(meta, {"language": {"$in": ["en", "fr"]}}))
        self.assertFalse(matches_filter(meta, {"language": "fr"}))
        self.assertFalse(matches_filter(meta, {"runtime": {"$lte": 120}}))

    def test_unknown_operator(self):
        with self.assertRaises(ValueError):
            matches_filter({"year": 1999}, {"year": {"$ne": 2000}})


class TestFaissVectorStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = FaissVectorStore(index_dir=self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_upsert_is_idempotent(self):
        self.store.upsert([vec("movie_1", [1.0, 0.0, 0.0], year=1999)])
        self.store.upsert([vec("movie_1", [0.0, 1.0, 0.0], year=2000)])
        self.assertEqual(self.store.describe()["total_vectors"], 1)

        stored = self.store.fetch(["movie_1"])["movie_1"]
        self.assertEqual(stored.metadata, {"year": 2000})
        self.assertAlmostEqual(stored.values[1], 1.0, places=5)

    def test_query_ranks_by_cosine(self):
        self.store.upsert([
            vec("movie_1", [1.0, 0.0], year=1990),
            vec("movie_2", [0.7, 0.7], year=2005),
            vec("movie_3", [0.0, 1.0], year=2010),
        ])
        matches = self.store.query([2.0, 0.0], top_k=2)
        self.assertEqual([m.id for m in matches], ["movie_1", "movie_2"])
        self.assertAlmostEqual(matches[0].score, 1.0, places=4)

        filtered = self.store.query([1.0, 0.0], top_k=5, filter={"year": {"$gte": 2000}})
        self.assertEqual([m.id for m in filtered], ["movie_2", "movie_3"])

    def test_delete(self):
        self.store.upsert([vec("movie_1", [1.0, 0.0]), vec("movie_2", [0.0, 1.0])])
        self.assertEqual(self.store.delete(["movie_1", "movie_404"]), 1)
        self.assertEqual(self.store.fetch(["movie_1", "movie_2"]).keys(), {"movie_2"})

    def test_non_movie_ids_supported(self):
        self.store.upsert([vec("custom-vector", [1.0, 0.0])])
        self.assertIn("custom-vector", self.store.fetch(["custom-vector"]))

    def test_other_instance_sees_writes(self):
        self.store.upsert([vec("movie_7", [1.0, 0.0], title="Seven")])
        other = FaissVectorStore(index_dir=self.tmp.name)
        self.assertEqual(other.describe()["total_vectors"], 1)
        self.assertEqual(other.query([1.0, 0.0], top_k=1)[0].metadata, {"title": "Seven"})

    def test_reads_finish_before_lock_release(self):
        self.store.upsert([vec("movie_1", [1.0, 0.0], year=1990), vec("movie_2", [0.0, 1.0], year=2000)])
        real_lock = self.store._lock

        @contextmanager
        def lock_then_swap(exclusive):
            with real_lock(exclusive):
                yield
            # Another thread reloading right after release
            self.store._index = None
            self.store._entries = {}
            self.store._by_key = {}

        self.store._lock = lock_then_swap
        self.assertEqual([m.id for m in self.store.query([1.0, 0.0], top_k=1)], ["movie_1"])
        self.assertEqual(self.store.fetch(["movie_2"]).keys(), {"movie_2"})
        self.assertEqual(self.store.describe()["total_vectors"], 2)

    def test_dimension_mismatch(self):
        self.store.upsert([vec("movie_1", [1.0, 0.0])])
        with self.assertRaises(ValueError):
            self.store.upsert([vec("movie_2", [1.0, 0.0, 0.0])])

    def test_empty_store(self):
        self.assertEqual(self.store.query([1.0, 0.0]), [])
        self.assertEqual(self.store.fetch(["movie_1"]), {})
        self.assertEqual(self.store.describe()["total_vectors"], 0)


if __name__ == "__main__":
    unittest.main()
