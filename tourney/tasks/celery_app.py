"""Celery application for the tournament lifecycle worker.

Broker and result store live on the configured Redis server, on their own
logical databases so they never share keys with the lock manager. Only
REDIS_URL and APP_ENV are read here; the database settings are loaded by the
task itself.
"""

import os

from celery import Celery

from tourney.tasks.schedules import CELERY_BEAT_SCHEDULE, CELERY_TASK_ROUTES

BROKER_DB = 1
RESULT_DB = 2


def _redis_db_url(redis_url: str, db: int) -> str:
    base, _, _ = redis_url.rpartition("/")
    return f"{base}/{db}"


def create_celery_app() -> Celery:
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    app = Celery(
        "tourney_tasks",
        broker=_redis_db_url(redis_url, BROKER_DB),
        backend=_redis_db_url(redis_url, RESULT_DB),
        include=["tourney.tasks.lifecycle"],
    )
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_routes=CELERY_TASK_ROUTES,
        beat_schedule=CELERY_BEAT_SCHEDULE,
        # 틱이 중간에 죽어도 다음 틱이 이어서 처리한다
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        result_expires=3600,
    )
    if os.getenv("APP_ENV", "development") == "development":
        app.conf.task_eager_propagates = True
    return app


celery_app = create_celery_app()
