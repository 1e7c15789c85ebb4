from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger

from escrowhouse.common.logging import setup_logging
from escrowhouse.config import settings

app = Celery(
    "escrowhouse",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "escrowhouse.tasks.escrow_tasks.*": {"queue": "escrow"},
    },
    beat_schedule={
        "check-milestone-deadlines": {
            "task": "escrowhouse.tasks.escrow_tasks.check_milestone_deadlines",
            "schedule": crontab(minute="*/5"),
        },
        "check-dispute-deadlines": {
            "task": "escrowhouse.tasks.escrow_tasks.check_dispute_deadlines",
            "schedule": crontab(minute="*/5"),
        },
        "retry-mediator-assignments": {
            "task": "escrowhouse.tasks.escrow_tasks.retry_mediator_assignments",
            "schedule": crontab(minute="*/15"),
        },
        "reconcile-ledger": {
            "task": "escrowhouse.tasks.escrow_tasks.reconcile_ledger",
            "schedule": crontab(minute="*/10"),
        },
    },
)


@after_setup_logger.connect
def _configure_logging(**kwargs):
    setup_logging()


app.autodiscover_tasks(["escrowhouse.tasks.escrow_tasks"])
