"""
Celery configuration for background tasks.
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.core.config import settings
from app.core.logging import setup_logging

# Create Celery instance
celery_app = Celery(
    "inkstory",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task routing
    task_routes={
        "app.tasks.process_next_scene": {"queue": "writing"},
        "app.tasks.send_completion_email": {"queue": "notifications"},
    },
    # One tick is a single scene: LLM timeout times the retry ceiling plus backoff
    task_time_limit=1800,
    task_soft_time_limit=1500,
    # A tick that dies with its worker is redelivered; the scene claim keeps it exclusive
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Result backend settings
    result_expires=86400,  # Results expire after 24 hours
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the application's logging config instead of Celery's default."""
    setup_logging()
