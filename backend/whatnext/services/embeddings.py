"""
Embedding generation for curated movies.

- Builds one deterministic text per movie and embeds it in batches
  (one provider call per batch, routed through the `embeddings` limiter).
- Providers: any OpenAI-compatible /embeddings endpoint over httpx, or a
  local sentence-transformers model.
- A failed batch marks all of its movies 'failed' and is not retried here;
  the reprocess job picks failed movies up later. A rate-limit decline stops
  the run and leaves the remaining movies untouched for the next invocation.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
import numpy as np

from whatnext.core.config import settings
from whatnext.core.database import SessionLocal
from whatnext.core.errors import ProviderError, ProviderRateLimited
from whatnext.services.daily_metrics import increment_daily_metrics
from whatnext.services.movie_state import mark_failed, vector_id_for
from whatnext.services.rate_limit import RateLimiter, RateLimitExceeded

try:
    from sentence_transformers import SentenceTransformer
except ImportError:
    SentenceTransformer = None

logger = logging.getLogger(__name__)


@dataclass
class MovieEmbedding:
    id: str
    values: List[float]
    metadata: Dict[str, Any]


@dataclass
class EmbeddingBatchResult:
    embeddings: List[MovieEmbedding] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)
    deferred_ids: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    rate_limited: bool = False


def _as_list(value) -> List:
    if isinstance(value, str):
        return json.loads(value or "[]")
    return list(value or [])


def _genre_names(movie: Dict[str, Any]) -> List[str]:
    return [g.get("name") if isinstance(g, dict) else str(g) for g in _as_list(movie.get("genres"))]


def create_embedding_text(movie: Dict[str, Any]) -> str:
    genres = ", ".join(n for n in _genre_names(movie) if n)
    countries = ", ".join(_as_list(movie.get("production_countries")))
    keywords = ", ".join(_as_list(movie.get("keywords"))[:15])
    lines = [
        f"Title: {movie.get('title')}",
        f"Year: {movie.get('year') or 'Unknown'}",
        f"Genres: {genres or 'Unknown'}",
        f"Runtime: {movie.get('runtime') or 'Unknown'} minutes",
        f"Rating: {movie.get('vote_average')}/10 ({movie.get('vote_count')} votes)",
        f"Language: {movie.get('original_language') or 'Unknown'}",
        f"Countries: {countries or 'Unknown'}",
        f"Plot: {movie.get('overview') or 'No overview available'}",
        f"Keywords: {keywords or 'None'}",
        f"Popularity Score: {movie.get('popularity')}",
    ]
    return "\n".join(lines)


def build_vector_metadata(movie: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "tmdb_id": movie.get("tmdb_id"),
        "title": movie.get("title"),
        "year": movie.get("year"),
        "genres": _genre_names(movie),
        "rating": movie.get("vote_average"),
        "runtime": movie.get("runtime"),
        "language": movie.get("original_language"),
        "popularity": movie.get("popularity"),
        "vote_count": movie.get("vote_count"),
        "keywords": _as_list(movie.get("keywords"))[:10],
        "overview_snippet": (movie.get("overview") or "")[:200],
    }


class LocalEncoder:
    """sentence-transformers model, loaded on first use (CPU)."""

    def __init__(self, model_name: str = None):
        self.model_name = model_name or settings.local_embedding_model
        self._model = None

    def _ensure_model(self):
        if self._model is None:
            if SentenceTransformer is None:
                raise ImportError("sentence-transformers not installed")
            self._model = SentenceTransformer(self.model_name, device="cpu")

    def encode_texts(self, texts: List[str], batch_size: int = 64) -> np.ndarray:
        self._ensure_model()
        embs = self._model.encode(texts, batch_size=batch_size, show_progress_bar=False,
                                  convert_to_numpy=True, normalize_embeddings=True)
        return embs.astype(np.float32)


class EmbeddingService:
    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        session_factory=None,
        batch_size: Optional[int] = None,
        provider: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        local_encoder: Optional[LocalEncoder] = None,
    ):
        self.rate_limiter = rate_limiter or RateLimiter("embeddings")
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.embedding_batch_size
        self.provider = provider or settings.embedding_provider
        self.transport = transport
        self._local_encoder = local_encoder

    async def _request_openai(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        headers = {"Content-Type": "application/json"}
        if settings.embedding_api_key:
            headers["Authorization"] = f"Bearer {settings.embedding_api_key}"
        try:
            async with httpx.AsyncClient(timeout=settings.embedding_timeout_seconds, transport=self.transport) as client:
                resp = await client.post(
                    f"{settings.embedding_api_base.rstrip('/')}/embeddings",
                    json={"model": settings.embedding_model, "input": texts},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise ProviderError("embeddings", f"Embedding request failed: {e}") from e

        if resp.status_code == 429:
            raise ProviderRateLimited("embeddings", "Rate limited by embedding provider")
        if resp.status_code >= 400:
            try:
                message = resp.json().get("error", {}).get("message") or resp.text
            except ValueError:
                message = resp.text
            raise ProviderError("embeddings", f"Embedding API error: {message}", resp.status_code)

        payload = resp.json()
        data = sorted(payload.get("data", []), key=lambda d: d.get("index", 0))
        if len(data) != len(texts):
            raise ProviderError("embeddings", f"Expected {len(texts)} embeddings, got {len(data)}")
        tokens = int((payload.get("usage") or {}).get("total_tokens", 0))
        return [d["embedding"] for d in data], tokens

    async def _embed(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        if self.provider == "local":
            if self._local_encoder is None:
                self._local_encoder = LocalEncoder()
            return self._local_encoder.encode_texts(texts).tolist(), 0
        return await self.rate_limiter.execute(lambda: self._request_openai(texts))

    async def generate_embeddings(self, movies: List[Dict[str, Any]]) -> EmbeddingBatchResult:
        result = EmbeddingBatchResult()
        for start in range(0, len(movies), self.batch_size):
            batch = movies[start:start + self.batch_size]
            ids = [m["tmdb_id"] for m in batch]
            if result.rate_limited:
                result.deferred_ids.extend(ids)
                continue

            texts = [create_embedding_text(m) for m in batch]
            try:
                vectors, tokens = await self._embed(texts)
            except (RateLimitExceeded, ProviderRateLimited) as e:
                logger.warning(f"[Embeddings] Rate limited, deferring {len(movies) - start} movies: {e}")
                result.rate_limited = True
                result.deferred_ids.extend(ids)
                continue
            except ProviderError as e:
                logger.error(f"[Embeddings] Batch of {len(batch)} failed: {e}")
                for tmdb_id in ids:
                    mark_failed(self.session_factory, tmdb_id, str(e))
                result.failed_ids.extend(ids)
                result.errors.append(str(e))
                increment_daily_metrics(self.session_factory, errors_count=len(ids))
                continue

            for movie, values in zip(batch, vectors):
                result.embeddings.append(MovieEmbedding(
                    id=vector_id_for(movie["tmdb_id"]),
                    values=list(values),
                    metadata=build_vector_metadata(movie),
                ))
            increment_daily_metrics(
                self.session_factory,
                embeddings_created=len(batch),
                openai_requests=1 if self.provider != "local" else 0,
                openai_tokens=tokens,
            )
            logger.info(f"[Embeddings] Embedded {len(batch)} movies ({tokens} tokens)")
        return result

    async def generate_single_embedding(self, text: str) -> List[float]:
        vectors, tokens = await self._embed([text])
        increment_daily_metrics(
            self.session_factory,
            openai_requests=1 if self.provider != "local" else 0,
            openai_tokens=tokens,
        )
        return list(vectors[0])
