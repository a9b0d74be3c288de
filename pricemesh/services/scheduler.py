"""
Maintenance scheduler.
Runs the rate-limiter pump and reaper, the deduplicator reaper and the
cache maintenance pass with APScheduler.
"""

from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from pricemesh.services.cache import TieredCache
from pricemesh.services.deduplicator import RequestDeduplicator
from pricemesh.services.rate_limiter import SlidingWindowRateLimiter
from pricemesh.utils import safe_func_wrapper


class MaintenanceScheduler:
    """Background workers with explicit start and stop."""

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        deduplicator: RequestDeduplicator,
        cache: TieredCache,
        pump_interval: float = 0.1,
        queue_reap_interval: float = 10.0,
        dedup_reap_interval: float = 60.0,
        cache_maintenance_interval: float = 600.0,
    ):
        self.scheduler = AsyncIOScheduler()
        self.rate_limiter = rate_limiter
        self.deduplicator = deduplicator
        self.cache = cache
        self.intervals = {
            "rate_limiter_pump": pump_interval,
            "rate_limiter_reaper": queue_reap_interval,
            "dedup_reaper": dedup_reap_interval,
            "cache_maintenance": cache_maintenance_interval,
        }
        self._is_running = False

    async def pump_job(self) -> None:
        await self.rate_limiter.pump()

    @safe_func_wrapper
    async def queue_reaper_job(self) -> None:
        await self.rate_limiter.reap_expired()

    @safe_func_wrapper
    async def dedup_reaper_job(self) -> None:
        await self.deduplicator.reap_expired()

    @safe_func_wrapper
    async def cache_maintenance_job(self) -> None:
        await self.cache.remove_expired()

    def _jobs(self) -> dict[str, Any]:
        return {
            "rate_limiter_pump": self.pump_job,
            "rate_limiter_reaper": self.queue_reaper_job,
            "dedup_reaper": self.dedup_reaper_job,
            "cache_maintenance": self.cache_maintenance_job,
        }

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if self._is_running:
            logger.warning("Maintenance scheduler is already running")
            return

        for job_id, func in self._jobs().items():
            self.scheduler.add_job(
                func,
                trigger="interval",
                seconds=self.intervals[job_id],
                id=job_id,
                name=job_id.replace("_", " ").title(),
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Maintenance scheduler started: "
            + ", ".join(f"{k} every {v}s" for k, v in self.intervals.items())
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            logger.warning("Maintenance scheduler is not running")
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Maintenance scheduler stopped")

    def is_running(self) -> bool:
        return self._is_running

    async def run_now(self) -> dict[str, int]:
        """Run every maintenance pass once (manual trigger)."""
        logger.info("Manual maintenance triggered")
        return {
            "released": await self.rate_limiter.pump(),
            "queue_timeouts": await self.rate_limiter.reap_expired(),
            "dedup_reaped": await self.deduplicator.reap_expired(),
            "cache_expired": await self.cache.remove_expired(),
        }
