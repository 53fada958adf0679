from celery import Celery
from whatnext.core.config import settings

celery_app = Celery(
    "whatnext",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["whatnext.services.tasks"]
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_prefetch_multiplier=1,    # one pipeline run at a time per worker
    worker_max_tasks_per_child=100,
    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # RedBeat keeps the schedule in Redis so several beat hosts don't double-fire
    beat_scheduler='redbeat.schedulers:RedBeatScheduler',
    redbeat_redis_url=settings.redis_url,
    redbeat_key_prefix='whatnext:beat:',

    task_routes={
        'whatnext.services.tasks.process_pending_movies': {'queue': 'vectorize'},
        'whatnext.services.tasks.process_movies_task': {'queue': 'vectorize'},
        'whatnext.services.tasks.reprocess_failed_movies': {'queue': 'vectorize'},
        'whatnext.services.tasks.cleanup_processing_queue': {'queue': 'maintenance'},
    },

    # Scheduled re-invocation: each run does a bounded slice of work and exits
    beat_schedule={
        "process-pending-movies": {
            "task": "whatnext.services.tasks.process_pending_movies",
            "schedule": settings.process_schedule_seconds,
        },
        "reprocess-failed-movies": {
            "task": "whatnext.services.tasks.reprocess_failed_movies",
            "schedule": settings.reprocess_schedule_seconds,
        },
        "cleanup-processing-queue": {
            "task": "whatnext.services.tasks.cleanup_processing_queue",
            "schedule": settings.cleanup_schedule_seconds,
            "kwargs": {"days": 7},
        },
    },
    timezone="UTC",
)
