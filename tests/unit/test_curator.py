import json
import unittest
from unittest import mock

from fakes import make_session_factory
from whatnext.models import CurationLog, DuplicateMapping, Movie, MovieSource, QualityMetrics, RejectionLog
from whatnext.services.curator import CuratorService, MIN_OVERALL_SCORE, calculate_quality_score

GODFATHER = {
    "tmdb_id": 238,
    "title": "The Godfather",
    "release_date": "1972-03-14",
    "vote_count": 20000,
    "vote_average": 8.7,
    "popularity": 120.0,
    "genres": [{"id": 18, "name": "Drama"}, {"id": 80, "name": "Crime"}],
}


def add_completed(factory, tmdb_id, title, year, genres=None):
    db = factory()
    db.add(Movie(
        tmdb_id=tmdb_id,
        title=title,
        year=year,
        genres=json.dumps(genres or []),
        processing_status="completed",
        vector_id=f"movie_{tmdb_id}",
    ))
    db.commit()
    db.close()


class TestQualityScore(unittest.TestCase):
    def test_score_stays_in_range_for_tiny_counts(self):
        breakdown = calculate_quality_score({"vote_count": 1, "vote_average": 0, "release_date": "2000-01-01"}, 2025)
        self.assertEqual(breakdown.vote_confidence, 0.0)
        self.assertGreaterEqual(breakdown.overall_score, 0)
        self.assertLessEqual(breakdown.overall_score, 100)

        zero = calculate_quality_score({"vote_count": 0, "vote_average": None}, 2025)
        self.assertGreaterEqual(zero.overall_score, 0)

    def test_classic_membership_gives_full_cultural_score(self):
        movie = {"vote_count": 600, "vote_average": 7.1, "release_date": "1957-04-10"}
        self.assertEqual(calculate_quality_score(movie, 2025).cultural_score, 0.0)
        self.assertEqual(calculate_quality_score(movie, 2025, is_classic=True).cultural_score, 1.0)
        popular = dict(movie, vote_count=15000)
        self.assertEqual(calculate_quality_score(popular, 2025).cultural_score, 0.5)

    def test_documentary_diversity_bonus(self):
        doc = calculate_quality_score({"genres": [{"id": 99, "name": "Documentary"}]}, 2025)
        animation = calculate_quality_score({"genre_ids": [16]}, 2025)
        self.assertAlmostEqual(doc.diversity_score, 10 / 15)
        self.assertAlmostEqual(animation.diversity_score, 5 / 15)


class TestCuratorService(unittest.TestCase):
    def setUp(self):
        self.factory = make_session_factory()
        self.curator = CuratorService(session_factory=self.factory, current_year=2025)

    def test_recent_movie_rejected_for_age(self):
        decision = self.curator.evaluate_movie(
            {"tmdb_id": 9001, "title": "Brand New", "year": 2024, "vote_count": 100, "vote_average": 9.5}
        )
        self.assertEqual(decision.action, "reject")
        self.assertIn("Too recent", decision.reason)

        db = self.factory()
        rejection = db.query(RejectionLog).filter_by(tmdb_id=9001).one()
        self.assertEqual(rejection.rejection_reason, "too_recent")
        db.close()

    def test_classic_from_1957_accepted(self):
        db = self.factory()
        db.add(MovieSource(tmdb_id=389, source_name="afi_top_100"))
        db.commit()
        db.close()

        decision = self.curator.evaluate_movie(
            {"tmdb_id": 389, "title": "12 Angry Men", "year": 1957, "vote_count": 600, "vote_average": 7.1}
        )
        self.assertEqual(decision.action, "accept")
        self.assertEqual(decision.metadata["era"], "pre-1970")
        self.assertGreaterEqual(decision.score, MIN_OVERALL_SCORE)

    def test_existing_movie_is_duplicate_before_scoring(self):
        add_completed(self.factory, 238, "The Godfather", 1972)
        with mock.patch("whatnext.services.curator.calculate_quality_score") as scorer:
            decision = self.curator.evaluate_movie(dict(GODFATHER, vote_count=1, vote_average=1.0))
        self.assertEqual(decision.action, "duplicate")
        self.assertEqual(decision.reason, "Already in database")
        scorer.assert_not_called()

    def test_remake_detected(self):
        add_completed(self.factory, 1, "Scarface", 1932)
        decision = self.curator.evaluate_movie(
            {"tmdb_id": 111, "title": "scarface", "year": 1983, "vote_count": 9000, "vote_average": 8.2}
        )
        self.assertEqual(decision.action, "duplicate")
        self.assertEqual(decision.metadata["match_type"], "remake")
        self.assertEqual(decision.metadata["match_confidence"], 0.85)

        db = self.factory()
        mapping = db.query(DuplicateMapping).one()
        self.assertEqual((mapping.primary_tmdb_id, mapping.duplicate_tmdb_id), (1, 111))
        db.close()

    def test_exact_title_and_year_match(self):
        add_completed(self.factory, 10, "The Godfather", 1972)
        with mock.patch("whatnext.services.curator.calculate_quality_score") as scorer:
            decision = self.curator.evaluate_movie(GODFATHER)
        self.assertEqual(decision.action, "duplicate")
        self.assertEqual(decision.metadata["match_type"], "exact")
        self.assertEqual(decision.metadata["primary_tmdb_id"], 10)
        scorer.assert_not_called()

    def test_failed_rows_are_not_duplicate_primaries(self):
        db = self.factory()
        db.add(Movie(tmdb_id=10, title="The Godfather", year=1972, processing_status="failed", processing_attempts=1))
        db.commit()
        db.close()
        decision = self.curator.evaluate_movie(GODFATHER)
        self.assertEqual(decision.action, "accept")

    def test_accept_saves_metrics_and_log(self):
        decision = self.curator.evaluate_movie(GODFATHER, source="tmdb_discover")
        self.assertEqual(decision.action, "accept")
        self.assertEqual(decision.metadata["criteria_used"], {"min_votes": 1000, "min_rating": 7.0})

        db = self.factory()
        self.assertEqual(db.get(QualityMetrics, 238).overall_score, decision.score)
        log = db.query(CurationLog).one()
        self.assertEqual((log.action, log.source), ("accept", "tmdb_discover"))
        db.close()

    def test_low_score_rejected(self):
        decision = self.curator.evaluate_movie(
            {"tmdb_id": 5, "title": "Obscure", "year": 1957, "vote_count": 600, "vote_average": 7.1}
        )
        self.assertEqual(decision.action, "reject")
        self.assertEqual(decision.metadata["reason_code"], "low_quality_score")
        self.assertLess(decision.score, MIN_OVERALL_SCORE)

    def test_overrepresented_genre_is_queued(self):
        for i in range(10):
            add_completed(self.factory, 1000 + i, f"Drama {i}", 1990, [{"id": 18, "name": "Drama"}])
        decision = self.curator.evaluate_movie(GODFATHER)
        self.assertEqual(decision.action, "queue")
        self.assertEqual(decision.metadata["genre"], "Drama")
        self.assertEqual(decision.metadata["priority"], int(round(decision.score)))

    def test_bad_input_is_reported_as_rejection(self):
        decision = self.curator.evaluate_movie(dict(GODFATHER, vote_count="lots"))
        self.assertEqual(decision.action, "reject")
        self.assertTrue(decision.reason.startswith("Evaluation error"))
        self.assertEqual(decision.metadata["reason_code"], "evaluation_error")

    def test_stats_and_suggestions(self):
        self.curator.evaluate_movie(GODFATHER)
        self.curator.evaluate_movie({"tmdb_id": 9001, "title": "Brand New", "year": 2024, "vote_count": 1, "vote_average": 9})
        stats = self.curator.get_stats(7)
        self.assertEqual(stats["total_evaluated"], 2)
        self.assertEqual(stats["accepted"], 1)
        self.assertEqual(stats["rejected"], 1)
        self.assertEqual(stats["by_reason"], {"too_recent": 1})

        suggestions = self.curator.get_suggestions()
        self.assertEqual(suggestions["total_movies"], 0)
        self.assertEqual(len(suggestions["underrepresented_genres"]), 6)
        self.assertIn("1950s", suggestions["missing_decades"])


if __name__ == "__main__":
    unittest.main()
