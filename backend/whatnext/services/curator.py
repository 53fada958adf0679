"""
curator.py

Decides whether a candidate movie belongs in the catalog.

Checks run in a fixed order and stop at the first decisive outcome:
  1. existence       - tmdb_id already curated -> duplicate
  2. duplicates      - same title and year (exact) or same title, other year (remake) -> duplicate
  3. era criteria    - age, vote and rating thresholds for the release era -> reject
  4. quality score   - weighted 0-100 composite below MIN_OVERALL_SCORE -> reject
  5. genre balance   - dominant genre already over its target share -> queue
  6. otherwise       -> accept

Every decision is appended to curation_log; rejections also go to
rejection_log with the numbers that caused them.
"""
from __future__ import annotations

import json
import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_

from whatnext.core.database import SessionLocal
from whatnext.models import (
    CurationLog, DuplicateMapping, Movie, MovieSource, QualityMetrics, RejectionLog, SourceCollection,
)
from whatnext.services.era_criteria import check_era_criteria, extract_year
from whatnext.utils.timezone import utc_now

logger = logging.getLogger(__name__)

MIN_OVERALL_SCORE = 60.0
REMAKE_CONFIDENCE = 0.85
EVALUATION_ERROR = "evaluation_error"
EXACT_CONFIDENCE = 1.0

SCORE_WEIGHTS = {
    "rating": 0.40,
    "votes": 0.20,
    "age": 0.15,
    "cultural": 0.15,
    "diversity": 0.05,
    "popularity": 0.05,
}

# Raw diversity bonus per TMDB genre id, normalized over GENRE_DIVERSITY_CAP
GENRE_DIVERSITY_BONUS = {99: 10, 16: 5}  # Documentary, Animation
GENRE_DIVERSITY_CAP = 15.0

GENRE_TARGETS = {
    "Drama": 0.25,
    "Comedy": 0.15,
    "Action": 0.15,
    "Thriller": 0.12,
    "Romance": 0.10,
    "Horror": 0.08,
}
GENRE_OVERREPRESENTATION_FACTOR = 1.2

TMDB_GENRE_NAMES = {
    28: "Action", 12: "Adventure", 16: "Animation", 35: "Comedy", 80: "Crime",
    99: "Documentary", 18: "Drama", 10751: "Family", 14: "Fantasy", 36: "History",
    27: "Horror", 10402: "Music", 9648: "Mystery", 10749: "Romance",
    878: "Science Fiction", 10770: "TV Movie", 53: "Thriller", 10752: "War", 37: "Western",
}

SUGGESTION_DECADES = range(1920, 2020, 10)


@dataclass
class QualityBreakdown:
    """Component scores are on a 0-1 scale; overall_score is 0-100."""
    rating_score: float
    vote_confidence: float
    longevity_score: float
    cultural_score: float
    diversity_score: float
    popularity_score: float
    overall_score: float


@dataclass
class CurationDecision:
    action: str  # accept | reject | duplicate | queue
    reason: str
    score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "reason": self.reason, "score": self.score, "metadata": self.metadata}


def movie_id(movie: Dict[str, Any]) -> Optional[int]:
    value = movie.get("tmdb_id", movie.get("id"))
    return int(value) if value is not None else None


def _genres(movie: Dict[str, Any]) -> List[Dict[str, Any]]:
    genres = movie.get("genres")
    if isinstance(genres, str):
        genres = json.loads(genres or "[]")
    if genres:
        result = []
        for g in genres:
            if isinstance(g, dict):
                result.append({"id": g.get("id"), "name": g.get("name") or TMDB_GENRE_NAMES.get(g.get("id"))})
            else:
                result.append({"id": None, "name": str(g)})
        return result
    return [{"id": gid, "name": TMDB_GENRE_NAMES.get(gid)} for gid in movie.get("genre_ids") or []]


def _tiered(value: float, tiers) -> float:
    for threshold, score in tiers:
        if value > threshold:
            return score
    return 0.2


def calculate_quality_score(movie: Dict[str, Any], current_year: int, is_classic: bool = False) -> QualityBreakdown:
    rating = max(0.0, min(10.0, float(movie.get("vote_average") or 0)))
    votes = int(movie.get("vote_count") or 0)
    popularity = float(movie.get("popularity") or 0)
    year = extract_year(movie)

    rating_score = rating / 10
    # log10(1) == 0; guard the log for zero/negative counts
    vote_confidence = min(1.0, math.log10(votes) / 5) if votes > 0 else 0.0

    age = current_year - year if year else 0
    longevity_score = _tiered(age, ((50, 1.0), (30, 0.8), (20, 0.6), (10, 0.4)))

    if is_classic:
        cultural_score = 1.0
    elif votes > 10000:
        cultural_score = 0.5
    else:
        cultural_score = 0.0

    raw_bonus = sum(GENRE_DIVERSITY_BONUS.get(g["id"], 0) for g in _genres(movie))
    diversity_score = min(1.0, raw_bonus / GENRE_DIVERSITY_CAP)

    popularity_score = _tiered(popularity, ((100, 1.0), (50, 0.8), (20, 0.6), (10, 0.4))) if popularity > 0 else 0.0

    total = (
        rating_score * 100 * SCORE_WEIGHTS["rating"]
        + vote_confidence * 100 * SCORE_WEIGHTS["votes"]
        + longevity_score * 100 * SCORE_WEIGHTS["age"]
        + cultural_score * 100 * SCORE_WEIGHTS["cultural"]
        + diversity_score * 100 * SCORE_WEIGHTS["diversity"]
        + popularity_score * 100 * SCORE_WEIGHTS["popularity"]
    )
    overall = round(max(0.0, min(100.0, total)), 1)
    return QualityBreakdown(
        rating_score=rating_score,
        vote_confidence=vote_confidence,
        longevity_score=longevity_score,
        cultural_score=cultural_score,
        diversity_score=diversity_score,
        popularity_score=popularity_score,
        overall_score=overall,
    )


class CuratorService:
    def __init__(self, session_factory=None, current_year: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self._current_year = current_year

    @property
    def current_year(self) -> int:
        return self._current_year or utc_now().year

    def evaluate_movie(self, movie_data: Dict[str, Any], source: str = "manual") -> CurationDecision:
        db = self.session_factory()
        try:
            decision = self._evaluate(db, movie_data, source)
            db.add(CurationLog(
                tmdb_id=movie_id(movie_data) or 0,
                action=decision.action,
                reason=decision.reason,
                source=source,
                quality_score=decision.score,
                details=json.dumps(decision.metadata, default=str),
            ))
            db.commit()
            logger.info(f"[Curator] {movie_data.get('title')!r} ({source}) -> {decision.action}: {decision.reason}")
            return decision
        except Exception as e:
            db.rollback()
            logger.exception(f"[Curator] Evaluation failed for {movie_data.get('title')!r}")
            return CurationDecision("reject", f"Evaluation error: {e}", metadata={"reason_code": EVALUATION_ERROR})
        finally:
            db.close()

    def _evaluate(self, db, movie: Dict[str, Any], source: str) -> CurationDecision:
        tmdb_id = movie_id(movie)
        if tmdb_id is None:
            return CurationDecision("reject", "Missing movie id")
        title = (movie.get("title") or "").strip()
        year = extract_year(movie)

        existing = db.query(Movie.id).filter(
            Movie.tmdb_id == tmdb_id, Movie.processing_status == "completed"
        ).first()
        if existing:
            return CurationDecision("duplicate", "Already in database", metadata={"match_type": "existing"})

        duplicate = self._find_duplicate(db, tmdb_id, title, year)
        if duplicate:
            return duplicate

        era_check = check_era_criteria(year, movie.get("vote_count"), movie.get("vote_average"), self.current_year)
        if not era_check.passed:
            self._log_rejection(db, movie, source, era_check.reason_code, era_check.reason, {
                "era": era_check.era.label if era_check.era else None,
                "min_votes": era_check.era.min_votes if era_check.era else None,
                "min_rating": era_check.era.min_rating if era_check.era else None,
            })
            return CurationDecision("reject", era_check.reason, metadata={"reason_code": era_check.reason_code})

        breakdown = calculate_quality_score(movie, self.current_year, self._is_classic(db, tmdb_id))
        score = breakdown.overall_score
        if score < MIN_OVERALL_SCORE:
            reason = f"Quality score too low ({score} < {MIN_OVERALL_SCORE})"
            self._log_rejection(db, movie, source, "low_quality_score", reason, asdict(breakdown))
            return CurationDecision("reject", reason, score, {"reason_code": "low_quality_score"})

        era = era_check.era
        metadata = {
            "era": era.label,
            "criteria_used": {"min_votes": era.min_votes, "min_rating": era.min_rating},
            "quality_breakdown": asdict(breakdown),
        }
        self._save_quality_metrics(db, tmdb_id, breakdown)

        overrepresented = self._overrepresented_genre(db, movie)
        if overrepresented:
            genre, share, target = overrepresented
            metadata.update({"priority": int(round(score)), "genre": genre, "genre_share": round(share, 3)})
            return CurationDecision(
                "queue",
                f"Genre '{genre}' over-represented ({share:.0%} vs target {target:.0%})",
                score,
                metadata,
            )

        return CurationDecision("accept", f"Meets {era.label} criteria with score {score}", score, metadata)

    def _find_duplicate(self, db, tmdb_id: int, title: str, year: Optional[int]) -> Optional[CurationDecision]:
        if not title or not year:
            return None
        same_title = db.query(Movie).filter(
            func.lower(Movie.title) == title.lower(),
            Movie.tmdb_id != tmdb_id,
            Movie.processing_status == "completed",
        )
        match = same_title.filter(Movie.year == year).first()
        match_type, confidence = "exact", EXACT_CONFIDENCE
        if match is None:
            match = same_title.order_by(Movie.year).first()
            match_type, confidence = "remake", REMAKE_CONFIDENCE
        if match is None:
            return None

        already = db.query(DuplicateMapping.id).filter(
            DuplicateMapping.primary_tmdb_id == match.tmdb_id,
            DuplicateMapping.duplicate_tmdb_id == tmdb_id,
        ).first()
        if not already:
            db.add(DuplicateMapping(
                primary_tmdb_id=match.tmdb_id,
                duplicate_tmdb_id=tmdb_id,
                match_type=match_type,
                match_confidence=confidence,
                primary_title=match.title,
                duplicate_title=title,
                primary_year=match.year,
                duplicate_year=year,
            ))
        if match_type == "exact":
            reason = f"Exact match with {match.tmdb_id} ('{match.title}', {match.year})"
        else:
            reason = f"Possible remake of {match.tmdb_id} ('{match.title}', {match.year})"
        return CurationDecision("duplicate", reason, metadata={
            "match_type": match_type,
            "match_confidence": confidence,
            "primary_tmdb_id": match.tmdb_id,
        })

    def _is_classic(self, db, tmdb_id: int) -> bool:
        return db.query(MovieSource.id).join(
            SourceCollection, SourceCollection.name == MovieSource.source_name
        ).filter(
            MovieSource.tmdb_id == tmdb_id, SourceCollection.is_classic.is_(True)
        ).first() is not None

    def _overrepresented_genre(self, db, movie: Dict[str, Any]):
        """(genre, share, target) when the candidate's first targeted genre exceeds target x 1.2."""
        dominant = next((g["name"] for g in _genres(movie) if g["name"] in GENRE_TARGETS), None)
        if not dominant:
            return None
        total = db.query(func.count(Movie.id)).filter(Movie.processing_status == "completed").scalar() or 0
        if not total:
            return None
        in_genre = self._count_genre(db, dominant)
        share = in_genre / total
        target = GENRE_TARGETS[dominant]
        if share > target * GENRE_OVERREPRESENTATION_FACTOR:
            return dominant, share, target
        return None

    def _count_genre(self, db, genre: str) -> int:
        return db.query(func.count(Movie.id)).filter(
            Movie.processing_status == "completed",
            Movie.genres.like(f'%"{genre}"%'),
        ).scalar() or 0

    def _save_quality_metrics(self, db, tmdb_id: int, breakdown: QualityBreakdown) -> None:
        db.merge(QualityMetrics(
            tmdb_id=tmdb_id,
            rating_score=breakdown.rating_score,
            vote_confidence=breakdown.vote_confidence,
            longevity_score=breakdown.longevity_score,
            cultural_score=breakdown.cultural_score,
            diversity_score=breakdown.diversity_score,
            popularity_score=breakdown.popularity_score,
            overall_score=breakdown.overall_score,
            calculated_at=utc_now(),
        ))

    def _log_rejection(self, db, movie: Dict[str, Any], source: str, reason_code: str, reason: str, details: Dict) -> None:
        db.add(RejectionLog(
            tmdb_id=movie_id(movie),
            title=movie.get("title"),
            year=extract_year(movie),
            rejection_reason=reason_code,
            rejection_details=json.dumps({"reason": reason, **details}, default=str),
            vote_average=movie.get("vote_average"),
            vote_count=movie.get("vote_count"),
            popularity=movie.get("popularity"),
            runtime=movie.get("runtime"),
            source=source,
        ))

    def get_stats(self, days: int = 7) -> Dict[str, Any]:
        since = utc_now() - timedelta(days=days)
        db = self.session_factory()
        try:
            by_action = dict(
                db.query(CurationLog.action, func.count(CurationLog.id))
                .filter(CurationLog.created_at >= since)
                .group_by(CurationLog.action).all()
            )
            average_score = db.query(func.avg(CurationLog.quality_score)).filter(
                CurationLog.created_at >= since, CurationLog.action == "accept"
            ).scalar()
            by_source = dict(
                db.query(CurationLog.source, func.count(CurationLog.id))
                .filter(CurationLog.created_at >= since)
                .group_by(CurationLog.source).all()
            )
            by_reason = dict(
                db.query(RejectionLog.rejection_reason, func.count(RejectionLog.id))
                .filter(RejectionLog.attempted_at >= since)
                .group_by(RejectionLog.rejection_reason).all()
            )
            return {
                "period_days": days,
                "total_evaluated": sum(by_action.values()),
                "accepted": by_action.get("accept", 0),
                "rejected": by_action.get("reject", 0),
                "duplicates": by_action.get("duplicate", 0),
                "queued": by_action.get("queue", 0),
                "average_score": round(float(average_score), 1) if average_score is not None else None,
                "by_source": by_source,
                "by_reason": by_reason,
            }
        finally:
            db.close()

    def get_suggestions(self) -> Dict[str, Any]:
        """Coverage gaps in the completed catalog."""
        db = self.session_factory()
        try:
            completed = Movie.processing_status == "completed"
            total = db.query(func.count(Movie.id)).filter(completed).scalar() or 0

            underrepresented = []
            for genre, target in GENRE_TARGETS.items():
                share = self._count_genre(db, genre) / total if total else 0.0
                if share < target:
                    underrepresented.append({
                        "genre": genre,
                        "current_share": round(share, 3),
                        "target_share": target,
                    })

            decade_counts = Counter(
                (year // 10) * 10 for (year,) in db.query(Movie.year).filter(completed, Movie.year.isnot(None))
            )
            missing_decades = [
                f"{decade}s" for decade in SUGGESTION_DECADES
                if not total or decade_counts.get(decade, 0) / total < 0.02
            ]

            low_quality = (
                db.query(Movie.tmdb_id, Movie.title, Movie.year, Movie.vote_average, QualityMetrics.overall_score)
                .outerjoin(QualityMetrics, QualityMetrics.tmdb_id == Movie.tmdb_id)
                .filter(completed, or_(QualityMetrics.overall_score < 50, Movie.vote_average < 6.5))
                .order_by(Movie.vote_average)
                .limit(10)
                .all()
            )
            return {
                "total_movies": total,
                "underrepresented_genres": underrepresented,
                "missing_decades": missing_decades,
                "low_quality_to_remove": [
                    {"tmdb_id": r.tmdb_id, "title": r.title, "year": r.year,
                     "vote_average": r.vote_average, "quality_score": r.overall_score}
                    for r in low_quality
                ],
            }
        finally:
            db.close()
