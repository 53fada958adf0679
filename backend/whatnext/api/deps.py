"""FastAPI dependencies; tests swap these through app.dependency_overrides."""
from whatnext.services.curator import CuratorService
from whatnext.services.factory import (
    build_mapping_fixer, build_orchestrator, build_recommendation_service, get_vector_store,
)
from whatnext.services.queue_service import QueueService


def get_orchestrator():
    return build_orchestrator()


def get_recommendation_service():
    return build_recommendation_service()


def get_curator():
    return CuratorService()


def get_queue_service():
    return QueueService()


def get_mapping_fixer():
    return build_mapping_fixer()


def get_store():
    return get_vector_store()


def get_process_dispatcher():
    """Callable that schedules a background pipeline run and returns its task id."""
    from whatnext.services.tasks import process_movies_task

    def dispatch(movie_ids):
        return process_movies_task.delay(movie_ids).id
    return dispatch
