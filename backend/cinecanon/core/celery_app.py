from celery import Celery

from cinecanon.core.config import settings
from cinecanon.utils import logger as _logger  # noqa: F401  configures the cinecanon logger

celery_app = Celery(
    "cinecanon",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["cinecanon.services.tasks"]
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,  # Restart worker after 100 tasks to bound memory
    worker_prefetch_multiplier=1,    # One recomputation at a time per worker process
    task_compression='gzip',
    result_compression='gzip',

    # Connection settings
    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # RedBeat scheduler configuration
    beat_scheduler='redbeat.schedulers:RedBeatScheduler',
    redbeat_redis_url=settings.redis_url,
    redbeat_key_prefix='cinecanon:beat:',

    task_routes={
        'cinecanon.services.tasks.run_prediction_refresh': {'queue': 'predictions'},
        'cinecanon.services.tasks.warm_validation_cache': {'queue': 'predictions'},
        'cinecanon.services.tasks.check_prediction_staleness': {'queue': 'maintenance'},
        'cinecanon.services.tasks.prune_staleness_ledger': {'queue': 'maintenance'},
    },

    beat_schedule={
        "check-prediction-staleness": {
            "task": "cinecanon.services.tasks.check_prediction_staleness",
            "schedule": 60 * 60,  # hourly
        },
        "prune-staleness-ledger": {
            "task": "cinecanon.services.tasks.prune_staleness_ledger",
            "schedule": 60 * 60 * 24,  # daily
            "kwargs": {"days": settings.ledger_retention_days}
        },
    },
    timezone="UTC",
)

celery_app.conf.worker_send_task_events = True
celery_app.conf.task_send_sent_event = True
