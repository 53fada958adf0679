"""
daily_metrics.py

Per-day pipeline counters. Each bump is a single `UPDATE ... SET col = col + n`
so concurrent invocations never lose increments; the row for a new day is
created on first use.
"""
import logging
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from whatnext.core.database import SessionLocal
from whatnext.models import DailyMetrics
from whatnext.utils.timezone import utc_today

logger = logging.getLogger(__name__)

METRIC_FIELDS = (
    "movies_processed",
    "embeddings_created",
    "vectors_uploaded",
    "tmdb_requests",
    "openai_requests",
    "openai_tokens",
    "errors_count",
)


def increment_daily_metrics(session_factory=None, day: Optional[date] = None, **deltas: int) -> None:
    """Add `deltas` to today's counters. Metrics are best-effort: failures are logged, not raised."""
    unknown = set(deltas) - set(METRIC_FIELDS)
    if unknown:
        raise ValueError(f"Unknown daily metric(s): {', '.join(sorted(unknown))}")
    deltas = {k: int(v) for k, v in deltas.items() if v}
    if not deltas:
        return

    day = day or utc_today()
    table = DailyMetrics.__table__
    bump = update(table).where(table.c.date == day).values(
        **{name: table.c[name] + amount for name, amount in deltas.items()}
    )

    db = (session_factory or SessionLocal)()
    try:
        if db.execute(bump).rowcount == 0:
            try:
                db.execute(insert(table).values(date=day, **deltas))
            except IntegrityError:
                # Another invocation created today's row first
                db.rollback()
                db.execute(bump)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"[Metrics] Failed to record {deltas}: {e}")
    finally:
        db.close()


def get_daily_metrics(session_factory=None, day: Optional[date] = None) -> Dict[str, Any]:
    day = day or utc_today()
    db = (session_factory or SessionLocal)()
    try:
        row = db.execute(select(DailyMetrics).where(DailyMetrics.date == day)).scalar_one_or_none()
        metrics = {name: (getattr(row, name) if row else 0) for name in METRIC_FIELDS}
        metrics["date"] = day.isoformat()
        return metrics
    finally:
        db.close()
