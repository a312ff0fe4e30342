import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from .. import database
from . import match_timer

logger = logging.getLogger(__name__)


def sweep_once() -> match_timer.SweepResult:
    with database.SessionLocal() as db:
        return match_timer.sweep_expirations(db)


async def run_expiry_sweeps(interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_in_threadpool(sweep_once)
        except Exception:
            # The sweep already rolled back; try again next tick.
            logger.exception("[scheduler] expiry sweep failed")
            continue
        logger.debug("[scheduler] sweep done, expired=%s", result.expired)


def start_expiry_scheduler(interval_seconds: float) -> asyncio.Task | None:
    if interval_seconds <= 0:
        logger.info("[scheduler] expiry sweep disabled")
        return None
    logger.info("[scheduler] expiry sweep every %ss", interval_seconds)
    return asyncio.get_running_loop().create_task(run_expiry_sweeps(interval_seconds))
