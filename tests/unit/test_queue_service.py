import unittest
from datetime import timedelta

from fakes import make_session_factory
from whatnext.models import Movie, ProcessingQueue
from whatnext.services.queue_service import QueueService
from whatnext.utils.timezone import utc_now


class TestQueueService(unittest.TestCase):
    def setUp(self):
        self.factory = make_session_factory()
        self.queue = QueueService(self.factory)

    def test_add_skips_existing(self):
        self.assertEqual(self.queue.add_to_queue([1, 2]), {"added": 2, "skipped": 0})
        self.assertEqual(self.queue.add_to_queue([2, 3]), {"added": 1, "skipped": 1})

    def test_next_batch_orders_by_priority_then_insertion(self):
        self.queue.add_to_queue([10, 11])
        self.queue.add_to_queue([20], priority=5)
        self.queue.add_to_queue([12])
        self.assertEqual(self.queue.get_next_batch(3), [20, 10, 11])
        self.assertEqual(self.queue.get_next_batch(10), [20, 10, 11, 12])

    def test_next_batch_skips_and_closes_completed_movies(self):
        db = self.factory()
        db.add(Movie(tmdb_id=1, title="Done", processing_status="completed", vector_id="movie_1"))
        db.add(Movie(tmdb_id=2, title="Failed", processing_status="failed"))
        db.commit()
        db.close()
        self.queue.add_to_queue([1, 2, 3])

        self.assertEqual(self.queue.get_next_batch(10), [2, 3])
        stats = self.queue.get_queue_stats()
        self.assertEqual((stats["pending"], stats["completed"]), (2, 1))

    def test_mark_and_reset_failed(self):
        self.queue.add_to_queue([1, 2])
        self.queue.mark_entry(1, "failed", "boom")
        self.assertEqual(self.queue.get_next_batch(10), [2])
        failed = self.queue.get_failed_items()
        self.assertEqual(failed[0]["tmdb_id"], 1)
        self.assertEqual(failed[0]["last_error"], "boom")

        self.assertEqual(self.queue.reset_failed(), 1)
        self.assertEqual(self.queue.get_next_batch(10), [1, 2])

    def test_clear_queue(self):
        self.queue.add_to_queue([1, 2, 3])
        self.queue.mark_entry(3, "completed")
        self.assertEqual(self.queue.clear_queue("completed"), {"before": 3, "after": 2, "removed": 1})
        self.assertEqual(self.queue.clear_queue("all"), {"before": 2, "after": 0, "removed": 2})
        with self.assertRaises(ValueError):
            self.queue.clear_queue("everything")

    def test_cleanup_removes_old_completed(self):
        self.queue.add_to_queue([1, 2, 3])
        self.queue.mark_entry(1, "completed")
        self.queue.mark_entry(2, "completed")
        db = self.factory()
        db.query(ProcessingQueue).filter(ProcessingQueue.tmdb_id == 1).update(
            {"processed_at": utc_now() - timedelta(days=10)}
        )
        db.commit()
        db.close()

        self.assertEqual(self.queue.cleanup_queue(days=7), 1)
        self.assertEqual(self.queue.get_queue_stats()["total"], 2)


if __name__ == "__main__":
    unittest.main()
