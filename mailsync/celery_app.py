from celery import Celery
from kombu import Queue

from mailsync.config import settings

# Create Celery app
celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["mailsync.tasks.sync_tasks"]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.celery_task_timeout,
    task_soft_time_limit=settings.celery_task_timeout - 30,
    # A task is acknowledged only once it returns, so a killed worker's sync is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_queues=(
        Queue(settings.sync_queue_high),
        Queue(settings.sync_queue_normal),
    ),
    task_default_queue=settings.sync_queue_normal,
    task_routes={
        "mailsync.tasks.sync_tasks.renew_watch": {"queue": settings.sync_queue_high},
        "mailsync.tasks.sync_tasks.*": {"queue": settings.sync_queue_normal},
    },
    result_expires=3600,  # 1 hour
)

# Task retry configuration
celery_app.conf.task_default_retry_delay = 60  # 1 minute
celery_app.conf.task_max_retries = settings.sync_task_max_retries

# Periodic task schedule (Celery Beat)
celery_app.conf.beat_schedule = {
    'periodic-mail-sync': {
        'task': 'mailsync.tasks.sync_tasks.periodic_sync_scheduler',
        'schedule': 60.0,  # Every minute; per-account intervals decide who is due
        'options': {'queue': settings.sync_queue_normal}
    },
    'renew-expiring-watches': {
        'task': 'mailsync.tasks.sync_tasks.renew_expiring_watches',
        'schedule': 3600.0,  # Run every hour
        'options': {'queue': settings.sync_queue_normal}
    },
    'recover-stale-leases': {
        'task': 'mailsync.tasks.sync_tasks.recover_stale_leases',
        'schedule': 300.0,  # Run every 5 minutes
        'options': {'queue': settings.sync_queue_normal}
    },
    'purge-deleted-messages': {
        'task': 'mailsync.tasks.sync_tasks.purge_deleted_messages',
        'schedule': 86400.0,  # Daily
        'options': {'queue': settings.sync_queue_normal}
    },
}

if __name__ == "__main__":
    celery_app.start()
