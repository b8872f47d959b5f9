"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for periodic tasks.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers use the same
# DATABASE_URL as the API server
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

from config import settings

logger = logging.getLogger(__name__)

REDIS_URL: str = settings.REDIS_URL

# Create Celery app
celery_app = Celery(
    "dealflow",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "workers.tasks.sync",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes max per task
    task_soft_time_limit=25 * 60,  # Soft limit at 25 minutes

    # Result settings
    result_expires=60 * 60 * 24,  # Results expire after 24 hours

    # Each worker process creates its own connection pool
    worker_prefetch_multiplier=1,  # One task at a time per worker
    worker_concurrency=2,

    # Queue configuration
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    # Route tasks to specific queues
    task_routes={
        "workers.tasks.sync.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Hourly sync for every connection - runs at the top of every hour
    "hourly-sync-all-connections": {
        "task": "workers.tasks.sync.sync_all_connections",
        "schedule": crontab(minute=0),  # Every hour at :00
        "options": {"queue": "sync"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release database connections when a worker process shuts down."""
    from models.database import dispose_engine
    dispose_engine()
    logger.info("Database connections cleaned up on worker shutdown")
