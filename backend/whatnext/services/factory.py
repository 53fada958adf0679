"""Service wiring shared by the API and Celery tasks."""
from functools import lru_cache

from whatnext.services.curator import CuratorService
from whatnext.services.embeddings import EmbeddingService
from whatnext.services.faiss_store import FaissVectorStore
from whatnext.services.mapping_fixer import VectorMappingFixer
from whatnext.services.orchestrator import VectorizationOrchestrator
from whatnext.services.queue_service import QueueService
from whatnext.services.recommendations import RecommendationService
from whatnext.services.tmdb_client import TMDBClient
from whatnext.services.vector_index import VectorIndexService


@lru_cache(maxsize=1)
def get_vector_store() -> FaissVectorStore:
    # One in-memory index per process; it reloads itself when another process writes
    return FaissVectorStore()


def build_vector_index() -> VectorIndexService:
    return VectorIndexService(store=get_vector_store())


def build_orchestrator() -> VectorizationOrchestrator:
    return VectorizationOrchestrator(
        tmdb_client=TMDBClient(),
        curator=CuratorService(),
        embedding_service=EmbeddingService(),
        vector_index=build_vector_index(),
        queue=QueueService(),
    )


def build_recommendation_service() -> RecommendationService:
    return RecommendationService(vector_index=build_vector_index(), embedding_service=EmbeddingService())


def build_mapping_fixer() -> VectorMappingFixer:
    return VectorMappingFixer(store=get_vector_store())
