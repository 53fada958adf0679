"""
Preference-vector recommendations.

Reference titles are resolved to vectors (stored vector first, otherwise a
fresh embedding of "Movie: {title}") and combined into one query vector:

    sum(v_i * w_i) / sum(|w_i|)    loved 1.0, liked 0.6, disliked -0.5

Disliked titles pull the query away from themselves. When nothing resolves,
results come from a plain relational query ordered by popularity and rating.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from whatnext.core.config import settings
from whatnext.core.database import SessionLocal
from whatnext.core.errors import ProviderError
from whatnext.models import Movie, MovieFeedback
from whatnext.services.embeddings import EmbeddingService
from whatnext.services.movie_state import tmdb_id_from_vector_id
from whatnext.services.rate_limit import RateLimitExceeded
from whatnext.services.vector_index import VectorIndexService
from whatnext.utils.timezone import utc_now

logger = logging.getLogger(__name__)

# (preference field, weight, max titles used)
REFERENCE_WEIGHTS = (
    ("loved", 1.0, 5),
    ("liked", 0.6, 5),
    ("disliked", -0.5, 3),
)
FALLBACK_SIMILARITY = 0.5
MAX_QUERY_K = 30


@dataclass
class UserPreferences:
    loved: List[str] = field(default_factory=list)
    liked: List[str] = field(default_factory=list)
    disliked: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    min_year: Optional[int] = None
    max_year: Optional[int] = None
    max_runtime: Optional[int] = None
    min_rating: Optional[float] = None
    languages: List[str] = field(default_factory=list)


def compute_weighted_average(vectors: Sequence[Sequence[float]], weights: Sequence[float]) -> Optional[np.ndarray]:
    """sum(v * w) / sum(|w|); None when there is nothing to average."""
    if not vectors:
        return None
    mat = np.asarray(vectors, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    total_weight = np.abs(w).sum()
    if total_weight == 0:
        return None
    return (mat * w[:, None]).sum(axis=0) / total_weight


def build_filter(prefs: UserPreferences) -> Optional[Dict[str, Any]]:
    """Vector-metadata filter for the user's hard constraints."""
    year: Dict[str, Any] = {}
    if prefs.min_year:
        year["$gte"] = prefs.min_year
    if prefs.max_year:
        year["$lte"] = prefs.max_year
    filter: Dict[str, Any] = {}
    if year:
        filter["year"] = year
    if prefs.max_runtime:
        filter["runtime"] = {"$lte": prefs.max_runtime}
    if prefs.min_rating:
        filter["rating"] = {"$gte": prefs.min_rating}
    if prefs.languages:
        filter["language"] = {"$in": list(prefs.languages)}
    return filter or None


def format_movie(movie: Movie, similarity: Optional[float] = None) -> Dict[str, Any]:
    genres = json.loads(movie.genres or "[]")
    return {
        "tmdb_id": movie.tmdb_id,
        "title": movie.title,
        "year": movie.year,
        "overview": movie.overview,
        "genres": [g.get("name") if isinstance(g, dict) else g for g in genres],
        "runtime": movie.runtime,
        "vote_average": movie.vote_average,
        "vote_count": movie.vote_count,
        "popularity": movie.popularity,
        "original_language": movie.original_language,
        "poster_path": movie.poster_path,
        "director": movie.director,
        "trailer_key": movie.trailer_key,
        "streaming_providers": json.loads(movie.streaming_providers or "[]"),
        "similarity": similarity,
    }


class RecommendationService:
    def __init__(
        self,
        vector_index: VectorIndexService,
        embedding_service: EmbeddingService,
        session_factory=None,
        similarity_threshold: Optional[float] = None,
    ):
        self.vector_index = vector_index
        self.embeddings = embedding_service
        self.session_factory = session_factory or SessionLocal
        self.similarity_threshold = settings.similarity_threshold if similarity_threshold is None else similarity_threshold

    async def get_movie_vector_by_title(self, title: str) -> Optional[tuple]:
        """(vector, vector_id or None) for a title, or None if it can't be resolved."""
        db = self.session_factory()
        try:
            row = (
                db.query(Movie.tmdb_id, Movie.vector_id)
                .filter(func.lower(Movie.title) == title.strip().lower(), Movie.vector_id.isnot(None))
                .order_by(Movie.popularity.desc())
                .first()
            )
        finally:
            db.close()

        if row:
            stored = await self.vector_index.get_vector_by_id(row.vector_id)
            if stored is not None:
                self.track_feedback(row.tmdb_id, "queried")
                return stored.values, row.vector_id

        try:
            return await self.embeddings.generate_single_embedding(f"Movie: {title}"), None
        except (ProviderError, RateLimitExceeded) as e:
            logger.warning(f"[Recommend] Could not embed reference title {title!r}: {e}")
            return None

    async def build_user_vector(self, prefs: UserPreferences) -> tuple:
        """(query vector or None, vector ids of resolved reference movies)."""
        vectors, weights, reference_ids = [], [], []
        for field_name, weight, cap in REFERENCE_WEIGHTS:
            for title in getattr(prefs, field_name)[:cap]:
                resolved = await self.get_movie_vector_by_title(title)
                if resolved is None:
                    continue
                vector, vector_id = resolved
                vectors.append(vector)
                weights.append(weight)
                if vector_id:
                    reference_ids.append(vector_id)
        return compute_weighted_average(vectors, weights), reference_ids

    async def get_recommendations(self, prefs: UserPreferences, top_k: int = 10) -> Dict[str, Any]:
        user_vector, reference_ids = await self.build_user_vector(prefs)
        if user_vector is None:
            logger.info("[Recommend] No reference vectors resolved, using relational fallback")
            return {"recommendations": self.fallback_recommendations(prefs, top_k), "method": "fallback"}

        matches = await self.vector_index.query_vectors(
            user_vector.tolist(), min(top_k * 2, MAX_QUERY_K), build_filter(prefs)
        )
        excluded = set(reference_ids)
        kept = [m for m in matches if m.score >= self.similarity_threshold and m.id not in excluded][:top_k]
        return {"recommendations": self._hydrate(kept), "method": "vector"}

    def _hydrate(self, matches) -> List[Dict[str, Any]]:
        results = []
        db = self.session_factory()
        try:
            for match in matches:
                tmdb_id = tmdb_id_from_vector_id(match.id)
                movie = db.query(Movie).filter(Movie.tmdb_id == tmdb_id).first() if tmdb_id else None
                if movie is not None:
                    results.append(format_movie(movie, round(match.score, 4)))
                else:
                    results.append({**match.metadata, "similarity": round(match.score, 4)})
        finally:
            db.close()
        return results

    def fallback_recommendations(self, prefs: UserPreferences, limit: int = 10) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            query = db.query(Movie).filter(Movie.processing_status == "completed")
            if prefs.genres:
                query = query.filter(or_(*[Movie.genres.like(f'%"{g}"%') for g in prefs.genres]))
            if prefs.min_year:
                query = query.filter(Movie.year >= prefs.min_year)
            if prefs.max_year:
                query = query.filter(Movie.year <= prefs.max_year)
            if prefs.max_runtime:
                query = query.filter(Movie.runtime <= prefs.max_runtime)
            if prefs.min_rating:
                query = query.filter(Movie.vote_average >= prefs.min_rating)
            if prefs.languages:
                query = query.filter(Movie.original_language.in_(prefs.languages))
            movies = query.order_by(Movie.popularity.desc(), Movie.vote_average.desc()).limit(limit).all()
            return [format_movie(m, FALLBACK_SIMILARITY) for m in movies]
        finally:
            db.close()

    async def search_movies(self, query: str, limit: int = 20) -> Dict[str, Any]:
        """Semantic search, falling back to a title/overview text match when embedding or the index fails."""
        try:
            vector = await self.embeddings.generate_single_embedding(query)
            matches = await self.vector_index.query_vectors(vector, limit)
            return {"results": self._hydrate(matches), "method": "vector"}
        except (ProviderError, RateLimitExceeded, ValueError) as e:
            logger.warning(f"[Search] Vector search failed, using text search: {e}")

        pattern = f"%{query.strip().lower()}%"
        db = self.session_factory()
        try:
            movies = (
                db.query(Movie)
                .filter(
                    Movie.processing_status == "completed",
                    or_(func.lower(Movie.title).like(pattern), func.lower(Movie.overview).like(pattern)),
                )
                .order_by(Movie.popularity.desc())
                .limit(limit)
                .all()
            )
            return {"results": [format_movie(m) for m in movies], "method": "text"}
        finally:
            db.close()

    def track_feedback(self, tmdb_id: int, feedback_type: str) -> None:
        bump = (
            update(MovieFeedback)
            .where(MovieFeedback.tmdb_id == tmdb_id, MovieFeedback.feedback_type == feedback_type)
            .values(count=MovieFeedback.count + 1, last_feedback_at=utc_now())
        )
        db = self.session_factory()
        try:
            if db.execute(bump).rowcount == 0:
                db.add(MovieFeedback(tmdb_id=tmdb_id, feedback_type=feedback_type, count=1))
                try:
                    db.commit()
                    return
                except IntegrityError:
                    db.rollback()
                    db.execute(bump)
            db.commit()
        finally:
            db.close()
