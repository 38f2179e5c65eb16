"""Celery application configuration."""

from celery import Celery

from src.config import get_settings

settings = get_settings()

app = Celery(
    "receipt_pipeline",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["src.tasks.receipt_processing"],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,  # a crashed worker hands the job to another one
    worker_prefetch_multiplier=1,
    task_time_limit=300,  # 5 minutes max per attempt
    task_soft_time_limit=240,  # 4 minutes soft limit
)
