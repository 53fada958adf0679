from sqlalchemy.orm import sessionmaker
from sqlalchemy import create_engine, text
import asyncio
import logging

from whatnext.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Local runs: one connection shared across threads
        return {"connect_args": {"check_same_thread": False}}
    # pool_pre_ping: verify connections before using them
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Recognized classic collections; membership gives the full cultural bonus
DEFAULT_SOURCE_COLLECTIONS = [
    ("afi_top_100", "AFI's 100 Years...100 Movies"),
    ("criterion_collection", "The Criterion Collection"),
    ("oscar_winners", "Academy Award Best Picture Winners"),
]


def seed_source_collections(db) -> int:
    """Insert the default collections that are missing. Returns how many were added."""
    from whatnext.models import SourceCollection

    existing = {name for (name,) in db.query(SourceCollection.name).all()}
    added = 0
    for name, display_name in DEFAULT_SOURCE_COLLECTIONS:
        if name in existing:
            continue
        db.add(SourceCollection(name=name, display_name=display_name, is_classic=True))
        added += 1
    if added:
        db.commit()
    return added


def create_schema(bind=None, session_factory=None) -> None:
    from whatnext.models import Base

    Base.metadata.create_all(bind=bind or engine)
    db = (session_factory or SessionLocal)()
    try:
        seed_source_collections(db)
    finally:
        db.close()


async def init_db():
    loop = asyncio.get_running_loop()

    # Several uvicorn workers may start at once; serialize DDL on Postgres
    def _create_with_lock():
        if engine.dialect.name != "postgresql":
            create_schema()
            return
        LOCK_KEY = 582911734
        with engine.connect() as conn:
            conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": LOCK_KEY})
            try:
                create_schema()
            finally:
                conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": LOCK_KEY})
                conn.commit()

    await loop.run_in_executor(None, _create_with_lock)
    logger.info("Database schema ready")
