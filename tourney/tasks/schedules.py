"""Celery Beat schedule configuration.

Tasks:
- Every minute: tournament lifecycle tick
"""

from celery.schedules import crontab


CELERY_BEAT_SCHEDULE = {
    # Start/cancel due tournaments, resume refunds and prize payouts
    "tournament-lifecycle-tick": {
        "task": "tourney.tasks.lifecycle.run_lifecycle_tick_task",
        "schedule": crontab(minute="*"),
        "options": {"queue": "lifecycle", "expires": 55},
    },
}


# Task routing configuration
CELERY_TASK_ROUTES = {
    "tourney.tasks.lifecycle.*": {"queue": "lifecycle"},
}
