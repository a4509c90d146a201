"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_process_init

from app.core.config import settings
from app.core.logging import configure_logging

# Create Celery application
celery_app = Celery(
    "finops_autopilot",
    broker=str(settings.CELERY_BROKER_URL),
    backend=str(settings.CELERY_RESULT_BACKEND),
    include=["app.workers.tasks"],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max per task
    task_soft_time_limit=270,
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    worker_max_tasks_per_child=500,
    beat_schedule_filename="/tmp/celerybeat-schedule",  # Celery Beat schedule file
)


# Celery Beat schedule
# A cycle that outlives its interval makes the next one a no-op (reentrancy guard)
celery_app.conf.beat_schedule = {
    "run-agent-cycle": {
        "task": "app.workers.tasks.run_agent_cycle",
        "schedule": settings.AGENT_CYCLE_INTERVAL_SECONDS,
        "options": {"expires": settings.AGENT_CYCLE_INTERVAL_SECONDS},
    },
}


@worker_process_init.connect
def init_worker_process(**kwargs: object) -> None:
    """Configure logging and error tracking in each worker process."""
    from app.main import init_sentry

    configure_logging()
    init_sentry()


if __name__ == "__main__":
    celery_app.start()
