"""
TMDB client for the curation pipeline.
- Async httpx client; every request goes through the `tmdb` rate limiter.
- A 429 from TMDB raises ProviderRateLimited right away; nothing here sleeps.
- Hard admission filters (adult/video, age, era thresholds, runtime) run
  before anything is returned, so rejected candidates never reach the DB.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from redis.exceptions import RedisError

from whatnext.core.config import settings
from whatnext.core.database import SessionLocal
from whatnext.core.errors import ProviderError, ProviderRateLimited
from whatnext.core.redis_client import get_redis
from whatnext.models import Movie
from whatnext.services.daily_metrics import increment_daily_metrics
from whatnext.services.era_criteria import check_era_criteria, extract_year, runtime_ok
from whatnext.services.rate_limit import RateLimiter
from whatnext.utils.timezone import utc_now

TMDB_BASE = "https://api.themoviedb.org/3"
APPEND_TO_RESPONSE = "keywords,credits,videos,watch/providers"
STREAMING_REGIONS = ("US", "GB", "CA", "AU")
KEY_CREW_JOBS = ("Producer", "Writer", "Screenplay", "Original Music Composer", "Director of Photography")

logger = logging.getLogger(__name__)


async def get_tmdb_api_key() -> Optional[str]:
    """TMDB key from Redis-backed runtime settings, falling back to the environment."""
    try:
        key = await get_redis().get("settings:global:tmdb_api_key")
        if key:
            return key
    except RedisError as e:
        logger.debug(f"TMDB key lookup in Redis failed, using environment: {e}")
    return settings.tmdb_api_key or None


def check_hard_filters(raw: Dict[str, Any], current_year: int) -> Optional[str]:
    """Return the rejection reason, or None when the candidate is admissible."""
    if raw.get("adult"):
        return "adult content"
    if raw.get("video"):
        return "video release"
    year = extract_year(raw)
    era_check = check_era_criteria(year, raw.get("vote_count"), raw.get("vote_average"), current_year)
    if not era_check.passed:
        return era_check.reason
    if not runtime_ok(year, raw.get("runtime")):
        return f"runtime {raw.get('runtime')} outside 60-240 minutes"
    return None


def _pick_trailer(videos: List[Dict]) -> Optional[str]:
    youtube_trailers = [v for v in videos if v.get("site") == "YouTube" and v.get("type") == "Trailer"]
    for video in youtube_trailers:
        if video.get("official"):
            return video.get("key")
    return youtube_trailers[0].get("key") if youtube_trailers else None


def _extract_streaming(raw: Dict[str, Any]) -> tuple:
    results = (raw.get("watch/providers") or {}).get("results") or {}
    providers: List[Dict] = []
    links: Dict[str, str] = {}
    seen = set()
    for region in STREAMING_REGIONS:
        region_data = results.get(region)
        if not region_data:
            continue
        if region_data.get("link"):
            links[region] = region_data["link"]
        offers = [(p, "flatrate") for p in region_data.get("flatrate") or []]
        offers += [(p, "rent") for p in (region_data.get("rent") or [])[:2]]
        for provider, offer_type in offers:
            key = f"{provider.get('provider_id')}-{offer_type}"
            if key in seen:
                continue
            seen.add(key)
            providers.append({
                "provider_id": provider.get("provider_id"),
                "provider_name": provider.get("provider_name"),
                "logo_path": provider.get("logo_path"),
                "type": offer_type,
                "region": region,
            })
    return providers, links


def extract_movie_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a TMDB /movie response (with appended credits, keywords, videos
    and watch providers) into a candidate dict. Lists stay as Python lists;
    `to_movie_record` encodes them for storage."""
    credits = raw.get("credits") or {}
    crew = credits.get("crew") or []
    director = next((c.get("name") for c in crew if c.get("job") == "Director"), None)
    key_crew = [
        {"name": c.get("name"), "job": c.get("job")}
        for c in crew if c.get("job") in KEY_CREW_JOBS
    ][:5]
    cast = [
        {"id": c.get("id"), "name": c.get("name"), "character": c.get("character"), "profile_path": c.get("profile_path")}
        for c in (credits.get("cast") or [])[:10]
    ]
    keywords = [k.get("name") for k in (raw.get("keywords") or {}).get("keywords", []) if isinstance(k, dict)]
    streaming_providers, watch_links = _extract_streaming(raw)
    collection = raw.get("belongs_to_collection") or {}

    return {
        "tmdb_id": raw.get("id"),
        "imdb_id": raw.get("imdb_id"),
        "title": raw.get("title") or raw.get("original_title") or "",
        "original_title": raw.get("original_title"),
        "overview": raw.get("overview") or "",
        "tagline": raw.get("tagline") or "",
        "release_date": raw.get("release_date"),
        "year": extract_year(raw),
        "runtime": raw.get("runtime"),
        "vote_average": raw.get("vote_average"),
        "vote_count": raw.get("vote_count"),
        "popularity": raw.get("popularity"),
        "original_language": raw.get("original_language"),
        "release_status": raw.get("status"),
        "budget": raw.get("budget") or 0,
        "revenue": raw.get("revenue") or 0,
        "homepage": raw.get("homepage") or "",
        "genres": [{"id": g.get("id"), "name": g.get("name")} for g in raw.get("genres") or [] if isinstance(g, dict)],
        "keywords": keywords,
        "production_countries": [pc.get("name") for pc in raw.get("production_countries") or [] if isinstance(pc, dict)],
        "spoken_languages": [sl.get("iso_639_1") for sl in raw.get("spoken_languages") or [] if isinstance(sl, dict)],
        "cast": cast,
        "crew": key_crew,
        "director": director,
        "poster_path": raw.get("poster_path"),
        "backdrop_path": raw.get("backdrop_path"),
        "trailer_key": _pick_trailer((raw.get("videos") or {}).get("results") or []),
        "collection_id": collection.get("id"),
        "collection_name": collection.get("name"),
        "streaming_providers": streaming_providers,
        "watch_links": watch_links,
    }


JSON_COLUMNS = (
    "genres", "keywords", "production_countries", "spoken_languages",
    "cast", "crew", "streaming_providers", "watch_links",
)


def to_movie_record(candidate: Dict[str, Any]) -> Dict[str, Any]:
    """Column values for the movies table; list/dict fields are JSON-encoded."""
    record = {}
    for column in Movie.__table__.columns.keys():
        if column in candidate:
            value = candidate[column]
            record[column] = json.dumps(value) if column in JSON_COLUMNS and value is not None else value
    return record


def process_movie(raw: Dict[str, Any], current_year: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Apply the hard filters; return the normalized candidate or None if rejected."""
    current_year = current_year or utc_now().year
    reason = check_hard_filters(raw, current_year)
    if reason:
        logger.debug(f"[TMDB] Filtered {raw.get('id')} '{raw.get('title')}': {reason}")
        return None
    return extract_movie_fields(raw)


class TMDBClient:
    """Rate-limited TMDB access for the pipeline."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session_factory=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        current_year: Optional[int] = None,
        base_url: str = TMDB_BASE,
    ):
        self.api_key = api_key
        self.rate_limiter = rate_limiter or RateLimiter("tmdb")
        self.session_factory = session_factory or SessionLocal
        self.transport = transport
        self.current_year = current_year
        self.base_url = base_url.rstrip("/")

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        api_key = self.api_key or await get_tmdb_api_key()
        if not api_key:
            raise ProviderError("tmdb", "TMDB API key not configured")
        query = {"api_key": api_key, **(params or {})}

        async def make_request():
            # Only admitted calls count as requests
            increment_daily_metrics(self.session_factory, tmdb_requests=1)
            async with httpx.AsyncClient(timeout=settings.tmdb_timeout_seconds, transport=self.transport) as client:
                return await client.get(f"{self.base_url}{path}", params=query)

        try:
            resp = await self.rate_limiter.execute(make_request)
        except httpx.HTTPError as e:
            raise ProviderError("tmdb", f"Request to {path} failed: {e}") from e

        if resp.status_code == 429:
            raise ProviderRateLimited("tmdb", "Rate limited by TMDB API")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ProviderError("tmdb", f"TMDB API error for {path}", resp.status_code)
        return resp.json()

    def _is_completed(self, tmdb_id: int) -> bool:
        db = self.session_factory()
        try:
            status = db.query(Movie.processing_status).filter(Movie.tmdb_id == tmdb_id).scalar()
            return status == "completed"
        finally:
            db.close()

    async def fetch_movie_details(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        """Raw TMDB details with credits, keywords, videos and providers appended (no filtering)."""
        return await self._get(f"/movie/{tmdb_id}", {"append_to_response": APPEND_TO_RESPONSE})

    async def fetch_movie(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one candidate. None when already completed, unknown to TMDB, or filtered out."""
        if self._is_completed(tmdb_id):
            logger.debug(f"[TMDB] Movie {tmdb_id} already completed, skipping")
            return None
        raw = await self.fetch_movie_details(tmdb_id)
        if raw is None:
            logger.info(f"[TMDB] Movie {tmdb_id} not found")
            return None
        return process_movie(raw, self.current_year)

    async def _fetch_id_list(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[int]:
        data = await self._get(path, params) or {}
        return [
            m["id"] for m in data.get("results", [])
            if m.get("id") and not m.get("adult") and not m.get("video")
        ]

    async def fetch_trending_movies(self, time_window: str = "week") -> List[int]:
        return await self._fetch_id_list(f"/trending/movie/{time_window}")

    async def fetch_popular_movies(self, page: int = 1) -> List[int]:
        return await self._fetch_id_list("/movie/popular", {"page": page})

    async def fetch_top_rated_movies(self, page: int = 1) -> List[int]:
        return await self._fetch_id_list("/movie/top_rated", {"page": page})

    async def get_remaining_capacity(self) -> int:
        return await self.rate_limiter.get_remaining_capacity()
