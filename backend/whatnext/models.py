"""
models.py

SQLAlchemy models for the curated movie catalog, the processing queue,
curation audit tables and daily pipeline metrics.
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Date, Float, Text,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import declarative_base
from whatnext.utils.timezone import utc_now

Base = declarative_base()

PROCESSING_STATUSES = ("pending", "processing", "completed", "failed")
QUEUE_STATUSES = ("pending", "processing", "completed", "failed")


class Movie(Base):
    """
    One row per catalog entry.

    `vector_id` is set exactly when `processing_status` is 'completed' and is
    always `movie_{tmdb_id}`; both columns are written by a single UPDATE.
    """
    __tablename__ = "movies"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, unique=True, index=True)
    imdb_id = Column(String, nullable=True)
    title = Column(String, nullable=False, index=True)
    original_title = Column(String, nullable=True)
    overview = Column(Text, nullable=True)
    tagline = Column(Text, nullable=True)
    release_date = Column(String, nullable=True)  # YYYY-MM-DD as delivered by TMDB
    year = Column(Integer, nullable=True, index=True)
    runtime = Column(Integer, nullable=True)
    vote_average = Column(Float, nullable=True)
    vote_count = Column(Integer, nullable=True)
    popularity = Column(Float, nullable=True)
    original_language = Column(String, nullable=True)
    release_status = Column(String, nullable=True)  # TMDB 'Released', 'Post Production', ...
    budget = Column(BigInteger, nullable=True)
    revenue = Column(BigInteger, nullable=True)
    homepage = Column(String, nullable=True)

    # JSON-encoded lists
    genres = Column(Text, nullable=True)  # [{"id": 18, "name": "Drama"}, ...]
    keywords = Column(Text, nullable=True)
    production_countries = Column(Text, nullable=True)
    spoken_languages = Column(Text, nullable=True)
    cast = Column(Text, nullable=True)
    crew = Column(Text, nullable=True)
    streaming_providers = Column(Text, nullable=True)
    watch_links = Column(Text, nullable=True)

    director = Column(String, nullable=True)
    poster_path = Column(String, nullable=True)
    backdrop_path = Column(String, nullable=True)
    trailer_key = Column(String, nullable=True)
    collection_id = Column(Integer, nullable=True)
    collection_name = Column(String, nullable=True)

    # Pipeline state
    processing_status = Column(String, nullable=False, default="pending", index=True)
    vector_id = Column(String, nullable=True, unique=True)
    processing_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    embedded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_movies_processing_status",
        ),
        CheckConstraint(
            "(processing_status = 'completed' AND vector_id IS NOT NULL) OR "
            "(processing_status <> 'completed' AND vector_id IS NULL)",
            name="ck_movies_vector_id_completed",
        ),
        Index("ix_movies_status_attempts", "processing_status", "processing_attempts"),
        {"comment": "Curated movie catalog with vectorization state"},
    )


class ProcessingQueue(Base):
    """
    Work not yet folded into a Movie's status. One entry per tmdb_id; processed
    entries are marked completed and only removed by explicit clear/cleanup.
    """
    __tablename__ = "processing_queue"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, unique=True, index=True)
    priority = Column(Integer, nullable=False, default=0)  # higher = processed first
    status = Column(String, nullable=False, default="pending", index=True)
    last_error = Column(Text, nullable=True)
    added_at = Column(DateTime, default=utc_now, index=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_processing_queue_status_priority", "status", "priority", "added_at"),
    )


class CurationLog(Base):
    """Append-only record of every Curator decision."""
    __tablename__ = "curation_log"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # accept | reject | duplicate | queue
    reason = Column(Text, nullable=True)
    source = Column(String, nullable=True, index=True)  # tmdb_discover | queue | manual | ...
    quality_score = Column(Float, nullable=True)
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=utc_now, index=True)


class RejectionLog(Base):
    """Metrics that caused a rejection, kept for threshold tuning."""
    __tablename__ = "rejection_log"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    title = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    rejection_reason = Column(String, nullable=False, index=True)
    rejection_details = Column(Text, nullable=True)
    vote_average = Column(Float, nullable=True)
    vote_count = Column(Integer, nullable=True)
    popularity = Column(Float, nullable=True)
    runtime = Column(Integer, nullable=True)
    source = Column(String, nullable=True)
    attempted_at = Column(DateTime, default=utc_now)


class DuplicateMapping(Base):
    __tablename__ = "duplicate_mappings"

    id = Column(Integer, primary_key=True)
    primary_tmdb_id = Column(Integer, nullable=False, index=True)  # already in movies
    duplicate_tmdb_id = Column(Integer, nullable=False, index=True)
    match_type = Column(String, nullable=False)  # exact | remake
    match_confidence = Column(Float, nullable=False)
    primary_title = Column(String, nullable=True)
    duplicate_title = Column(String, nullable=True)
    primary_year = Column(Integer, nullable=True)
    duplicate_year = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint("primary_tmdb_id", "duplicate_tmdb_id", name="uq_duplicate_mapping"),
    )


class QualityMetrics(Base):
    """Latest composite score snapshot per movie; overwritten on recalculation."""
    __tablename__ = "quality_metrics"

    tmdb_id = Column(Integer, primary_key=True)
    rating_score = Column(Float, nullable=False, default=0.0)
    vote_confidence = Column(Float, nullable=False, default=0.0)
    longevity_score = Column(Float, nullable=False, default=0.0)
    cultural_score = Column(Float, nullable=False, default=0.0)
    diversity_score = Column(Float, nullable=False, default=0.0)
    popularity_score = Column(Float, nullable=False, default=0.0)
    overall_score = Column(Float, nullable=False, index=True)
    score_version = Column(String, default="1.0")
    calculated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class DailyMetrics(Base):
    """One aggregation row per calendar day (UTC); counters are bumped in place."""
    __tablename__ = "daily_metrics"

    date = Column(Date, primary_key=True)
    movies_processed = Column(Integer, nullable=False, default=0)
    embeddings_created = Column(Integer, nullable=False, default=0)
    vectors_uploaded = Column(Integer, nullable=False, default=0)
    tmdb_requests = Column(Integer, nullable=False, default=0)
    openai_requests = Column(Integer, nullable=False, default=0)
    openai_tokens = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)


class SourceCollection(Base):
    """Recognized collections (AFI Top 100, Criterion, ...) used for the cultural bonus."""
    __tablename__ = "source_collections"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True)  # afi_top_100 | criterion_collection | oscar_winners
    display_name = Column(String, nullable=True)
    is_classic = Column(Boolean, nullable=False, default=True)


class MovieSource(Base):
    __tablename__ = "movie_sources"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    source_name = Column(String, nullable=False, index=True)
    added_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint("tmdb_id", "source_name", name="uq_movie_source"),
    )


class MovieFeedback(Base):
    __tablename__ = "movie_feedback"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    feedback_type = Column(String, nullable=False)  # queried | recommended | clicked ...
    count = Column(Integer, nullable=False, default=0)
    last_feedback_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("tmdb_id", "feedback_type", name="uq_movie_feedback"),
    )
