"""
Celery application for the ledger export worker.

Redis is both broker and result backend. With CELERY_TASK_ALWAYS_EAGER
the tasks run inline in the calling process and never touch Redis.

Run a worker with:
    celery -A bistro.celery_worker worker --loglevel=info
"""

from celery import Celery

from bistro.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bistro",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["bistro.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,

    # One export at a time per process; the ledger file lock does the rest
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # A lost worker must not lose an export
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    broker_connection_retry_on_startup=True,

    task_always_eager=settings.celery_task_always_eager,
    task_store_eager_result=False,
)
