"""
Scheduler for unattended operation of the auto-tagging pipeline.
"""

import asyncio
from datetime import datetime
from typing import Optional

import pytz
from croniter import croniter

from .logging import get_logger
from .service import AutoTaggerService


class Scheduler:
    """Queues untagged media and drains the queue on a cron schedule."""

    def __init__(self, service: AutoTaggerService, poll_interval: float = 60.0):
        self.logger = get_logger("scheduler")
        self.service = service
        self.cron_schedule = service.settings.cron_schedule
        self.timezone = pytz.timezone(service.settings.timezone)
        self.enabled = service.settings.enable_scheduler
        self.poll_interval = poll_interval
        self.running = False
        self.last_run_time: Optional[datetime] = None

    def _get_next_run_time(self, now: Optional[datetime] = None) -> datetime:
        """Get the next scheduled run time based on cron expression."""
        now = now or datetime.now(self.timezone)
        return croniter(self.cron_schedule, now).get_next(datetime)

    def _should_run_now(self, now: Optional[datetime] = None) -> bool:
        """Check if it's time to run based on the cron schedule."""
        now = now or datetime.now(self.timezone)

        # Never run: catch up if the last scheduled time was within a day
        if self.last_run_time is None:
            last_scheduled = croniter(self.cron_schedule, now).get_prev(datetime)
            return (now - last_scheduled).total_seconds() <= 86400

        next_after_last_run = croniter(self.cron_schedule, self.last_run_time).get_next(datetime)
        return now >= next_after_last_run

    async def run_cycle(self) -> int:
        """Queue untagged media and process until the queue is empty."""
        self.last_run_time = datetime.now(self.timezone)
        self.logger.info("🚀 Starting scheduled processing cycle")

        queued = self.service.queue_untagged()
        status = self.service.get_status()
        if status.pending == 0:
            self.logger.info("✅ Nothing pending, skipping run")
            return queued

        result = await self.service.start()
        if not result.success:
            self.logger.error(f"❌ Scheduled run refused: {result.error}")
            return queued

        await self.service.wait_idle()
        self.logger.info(f"🎉 Scheduled cycle finished ({queued} newly queued)")
        return queued

    async def _scheduler_loop(self):
        """Main scheduler loop."""
        while self.running:
            try:
                if self._should_run_now():
                    await self.run_cycle()
                    self.logger.info(f"⏭️  Next scheduled run: {self._get_next_run_time().isoformat()}")
            except Exception as e:
                self.logger.error(f"Error in scheduler loop: {e}")
            await asyncio.sleep(self.poll_interval)

    async def start(self):
        """Start the scheduler, or run a single cycle when scheduling is disabled."""
        if not self.enabled:
            self.logger.info("Scheduler disabled, running a single processing session")
            await self.run_cycle()
            return

        self.running = True
        self.logger.info(
            f"⏰ Scheduler started - Schedule: {self.cron_schedule}, Timezone: {self.timezone.zone}, "
            f"Next run: {self._get_next_run_time().isoformat()}"
        )
        await self._scheduler_loop()

    def stop(self):
        """Stop the scheduler."""
        self.logger.info("Stopping scheduler")
        self.running = False
