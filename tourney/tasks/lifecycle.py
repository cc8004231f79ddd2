"""Tournament lifecycle tick task.

Scheduled every minute by Celery Beat. Each run is bounded and resumable,
so an overlapping or retried tick never double-charges or double-pays.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from tourney.config import get_settings
from tourney.logging_config import bind_context, clear_context, configure_logging
from tourney.tasks.celery_app import celery_app
from tourney.utils.errors import LockAcquisitionError

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="tourney.tasks.lifecycle.run_lifecycle_tick_task",
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(LockAcquisitionError,),
    retry_backoff=True,
)
def run_lifecycle_tick_task(self, now_iso: Optional[str] = None) -> dict:
    """Run one lifecycle tick.

    Args:
        now_iso: Optional ISO timestamp to tick at (backfills, manual runs).
                 Defaults to the current time.

    Returns:
        Tick report as a dict
    """
    logger.info(f"Starting lifecycle tick (attempt {self.request.retries + 1})")

    now = datetime.fromisoformat(now_iso) if now_iso else None
    result = asyncio.run(_run_tick(now, self.request.id))

    logger.info(
        f"Lifecycle tick complete: started={len(result['started'])} "
        f"canceled={len(result['canceled'])} errors={len(result['errors'])}"
    )
    return result


async def _run_tick(now: Optional[datetime] = None, task_id: Optional[str] = None) -> dict:
    from tourney.tournament.engine import TournamentEngine

    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.json_logs,
        app_env=settings.app_env,
    )

    bind_context(celery_task_id=task_id)
    engine = TournamentEngine.from_settings(settings)
    try:
        report = await engine.run_lifecycle_tick(now)
        return report.to_dict()
    finally:
        await engine.close()
        clear_context()
