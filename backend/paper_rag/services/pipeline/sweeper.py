"""Periodic eviction of stale paper indexes."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger("uvicorn.error")


async def run_sweep_loop(service, interval_sec: float, stop_event: asyncio.Event) -> None:
    """
    Call `service.sweep_stale_entries()` every `interval_sec` until stopped.

    A failed sweep is logged and retried on the next tick.
    """
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_sec)
            return
        except asyncio.TimeoutError:
            pass

        try:
            result = await service.sweep_stale_entries()
            logger.info("paper-index-sweep-tick scanned=%d cleaned=%d", result.scanned, result.cleaned)
        except Exception:
            logger.exception("paper-index-sweep-tick-failed")
