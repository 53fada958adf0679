#!/usr/bin/env python
"""Queue TMDB top-rated movies for the pipeline.

Usage: python -m whatnext.scripts.seed_top_rated --pages 5 --priority 10

Ids are only queued; the scheduled pipeline run (or /process-queue) curates
and vectorizes them within the usual rate and time limits.
"""
import argparse
import asyncio
import logging

from whatnext.core.errors import ProviderError
from whatnext.services.queue_service import QueueService
from whatnext.services.rate_limit import RateLimitExceeded
from whatnext.services.tmdb_client import TMDBClient
from whatnext.utils.logger import setup_logging

logger = logging.getLogger(__name__)


async def seed_top_rated(pages: int, priority: int = 0, tmdb_client=None, queue=None) -> dict:
    tmdb_client = tmdb_client or TMDBClient()
    queue = queue or QueueService()
    totals = {"pages": 0, "added": 0, "skipped": 0}
    for page in range(1, pages + 1):
        try:
            ids = await tmdb_client.fetch_top_rated_movies(page)
        except (RateLimitExceeded, ProviderError) as e:
            logger.warning(f"[Seed] Stopped at page {page}: {e}")
            break
        if not ids:
            break
        result = queue.add_to_queue(ids, priority=priority)
        totals["pages"] += 1
        totals["added"] += result["added"]
        totals["skipped"] += result["skipped"]
    return totals


def main():
    parser = argparse.ArgumentParser(description="Queue TMDB top-rated movies")
    parser.add_argument("--pages", type=int, default=5)
    parser.add_argument("--priority", type=int, default=0)
    args = parser.parse_args()

    setup_logging()
    totals = asyncio.run(seed_top_rated(args.pages, args.priority))
    print(f"Queued {totals['added']} movies from {totals['pages']} pages ({totals['skipped']} already queued)")


if __name__ == "__main__":
    main()
