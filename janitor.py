#!/usr/bin/env python3
"""
Background pruning of the subscription graph.

Runs on its own slow cadence next to the scheduler. Each sweep drops chats
that reported permanent delivery failures and feeds that have been left
without subscribers for longer than the grace period.
"""

import asyncio
import time

from config import Config, get_logger
from models import StateStore, SweepReport
from telemetry import trace_span
from utils import format_duration

logger = get_logger("janitor")


class Janitor:
    def __init__(self, config: Config, store: StateStore, clock=time.time):
        self.config = config
        self.store = store
        self.clock = clock

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweep every JANITOR_INTERVAL seconds until stop_event is set."""
        logger.info(
            f"🧹 Janitor started (every {format_duration(self.config.JANITOR_INTERVAL)}, "
            f"grace {format_duration(self.config.JANITOR_GRACE)})"
        )
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.JANITOR_INTERVAL)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.sweep(self.clock())
            except Exception as e:
                logger.error(f"💥 Janitor sweep failed: {e}")
        logger.info("Janitor stopped")

    @trace_span("janitor.sweep", tracer_name="janitor")
    async def sweep(self, now: float) -> SweepReport:
        report: SweepReport = await self.store.execute('sweep', now=now, grace=self.config.JANITOR_GRACE)
        if report.chats_removed or report.feeds_removed:
            logger.info(
                f"Sweep removed {len(report.chats_removed)} undeliverable chats and "
                f"{len(report.feeds_removed)} orphaned feeds"
            )
            for url in report.feeds_removed:
                logger.debug(f"Removed orphaned feed {url}")
        else:
            logger.debug("Sweep found nothing to prune")
        return report
