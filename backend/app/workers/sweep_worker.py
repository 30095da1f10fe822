"""In-process sweep task for dedup keys and idle sessions.

WHAT:
    Background asyncio task that calls FunnelBridge.sweep() every
    SWEEP_INTERVAL_SECONDS.

WHY:
    - The dedup cache only purges on admit; a quiet process would otherwise
      keep yesterday's keys
    - Session records are only removed by this sweep
    - Both stores live in this process's memory, so an external job runner
      (separate process) cannot reach them

USAGE:
    Started/stopped by app.main on FastAPI startup/shutdown.
"""

import asyncio
import logging
from typing import Optional

from app.services.funnel_bridge import FunnelBridge

logger = logging.getLogger(__name__)


async def run_sweeps(bridge: FunnelBridge, interval_seconds: float) -> None:
    """Sweep forever until cancelled."""
    logger.info(f"[SWEEP] Started (every {interval_seconds}s)")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = bridge.sweep()
        except Exception:
            logger.exception("[SWEEP] Sweep failed")
            continue
        logger.info(
            f"[SWEEP] Removed {removed['sessions']} session(s), {removed['dedup_keys']} dedup key(s)",
            extra=removed,
        )


def start_sweeper(bridge: FunnelBridge, interval_seconds: float) -> asyncio.Task:
    return asyncio.create_task(run_sweeps(bridge, interval_seconds), name="funnel-sweeper")


async def stop_sweeper(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info("[SWEEP] Stopped")
