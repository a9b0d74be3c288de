"""
QuotaGovernor - Hard daily and monthly budget for live backend calls.

Independent of per-second rate limits: once the daily counter reaches its
limit, or monthly utilization crosses the hard-stop percentage, every live
call is refused until the budget resets. Fallback mode refuses everything
so only cached results are served.

Counters are persisted through the datastore so a restart does not hand
out a fresh daily budget.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Callable

from loguru import logger

from pricemesh.datastore.engine import Database
from pricemesh.datastore.repositories import MonthlyUsageRepository, QuotaStateRepository
from pricemesh.services.errors import QuotaExceededError

DEFAULT_DENIED_PURPOSES = frozenset({"health_check"})


def month_key(day: date) -> str:
    return day.strftime("%Y-%m")


class MonthlyUsageTracker:
    """Cumulative live calls in the current calendar month."""

    def __init__(
        self,
        monthly_limit: int = 5000,
        database: Database | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.monthly_limit = monthly_limit
        self._database = database
        self._today = today
        self._month = month_key(today())
        self._count = 0

    async def load(self) -> None:
        self._month = month_key(self._today())
        if self._database is None:
            return
        async with self._database.session() as session:
            self._count = await MonthlyUsageRepository(session).get_count(self._month)

    @property
    def count(self) -> int:
        self._roll_month()
        return self._count

    def utilization_percent(self) -> float:
        if self.monthly_limit <= 0:
            return 100.0
        return self.count / self.monthly_limit * 100

    async def record(self) -> None:
        self._roll_month()
        self._count += 1
        if self._database is not None:
            async with self._database.session() as session:
                await MonthlyUsageRepository(session).set_count(self._month, self._count)

    def _roll_month(self) -> None:
        current = month_key(self._today())
        if current != self._month:
            logger.info(f"Monthly usage rolled over from {self._month} to {current}")
            self._month = current
            self._count = 0


@dataclass
class QuotaState:
    """Snapshot of the governor."""

    daily_count: int
    daily_limit: int
    last_reset_date: date
    monthly_utilization_percent: float
    hard_stop_percent: float
    protection_enabled: bool
    fallback_mode_enabled: bool

    @property
    def daily_usage_percent(self) -> float:
        if self.daily_limit <= 0:
            return 100.0
        return self.daily_count / self.daily_limit * 100

    @property
    def can_make_requests(self) -> bool:
        if self.fallback_mode_enabled:
            return False
        if not self.protection_enabled:
            return True
        return (
            self.daily_count < self.daily_limit
            and self.monthly_utilization_percent < self.hard_stop_percent
        )

    @property
    def status_message(self) -> str:
        if self.fallback_mode_enabled:
            return "Fallback mode active - using cached data"
        if not self.can_make_requests:
            if self.daily_count >= self.daily_limit:
                return f"Daily limit reached ({self.daily_count}/{self.daily_limit})"
            return (
                f"Monthly quota at {int(self.monthly_utilization_percent)}% "
                "- requests blocked"
            )
        return (
            f"{self.daily_count}/{self.daily_limit} requests today, "
            f"{int(self.monthly_utilization_percent)}% monthly"
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_reset_date"] = self.last_reset_date.isoformat()
        data["can_make_requests"] = self.can_make_requests
        data["status_message"] = self.status_message
        return data


class QuotaGovernor:
    """
    Gatekeeper for live backend calls.

    Usage:
        governor = QuotaGovernor(daily_limit=200, database=db)
        await governor.load()

        await governor.check("search")   # raises QuotaExceededError
        ...
        await governor.record_request()
    """

    def __init__(
        self,
        daily_limit: int = 200,
        hard_stop_percent: float = 90.0,
        monthly: MonthlyUsageTracker | None = None,
        database: Database | None = None,
        protection_enabled: bool = True,
        fallback_mode_enabled: bool = False,
        denied_purposes: frozenset[str] = DEFAULT_DENIED_PURPOSES,
        today: Callable[[], date] = date.today,
        name: str = "default",
    ):
        self.daily_limit = daily_limit
        self.hard_stop_percent = hard_stop_percent
        self.monthly = monthly or MonthlyUsageTracker(database=database, today=today)
        self.denied_purposes = denied_purposes
        self.name = name
        self._database = database
        self._today = today
        self._daily_count = 0
        self._last_reset_date = today()
        self._protection_enabled = protection_enabled
        self._fallback_mode_enabled = fallback_mode_enabled
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Restore persisted counters and flags."""
        await self.monthly.load()
        if self._database is None:
            return

        async with self._database.session() as session:
            row = await QuotaStateRepository(session).get(self.name)
        if row is None:
            return

        async with self._lock:
            self._daily_count = row.daily_count
            self._last_reset_date = row.last_reset_date
            self._protection_enabled = row.protection_enabled
            self._fallback_mode_enabled = row.fallback_mode_enabled
            await self._roll_day()
        logger.info(
            f"Quota state loaded: {self._daily_count}/{self.daily_limit} today"
            f"{' (fallback mode)' if self._fallback_mode_enabled else ''}"
        )

    async def check(self, purpose: str = "search") -> None:
        """
        Raise if a live call for ``purpose`` is not allowed.

        Raises:
            QuotaExceededError: With the refusing reason
        """
        if purpose in self.denied_purposes:
            raise QuotaExceededError(
                "purpose_denied",
                f"'{purpose}' calls never spend quota",
                retry_hint="This purpose is always served without live calls.",
            )

        async with self._lock:
            if self._fallback_mode_enabled:
                raise QuotaExceededError(
                    "fallback_mode",
                    "live calls are disabled",
                    retry_hint="Disable fallback mode to allow live calls.",
                )

            if not self._protection_enabled:
                return

            await self._roll_day()

            if self._daily_count >= self.daily_limit:
                raise QuotaExceededError(
                    "daily_limit",
                    f"{self._daily_count}/{self.daily_limit} requests today",
                    retry_hint="The daily budget resets at midnight.",
                )

            utilization = self.monthly.utilization_percent()
            if utilization >= self.hard_stop_percent:
                raise QuotaExceededError(
                    "monthly_hard_stop",
                    f"monthly quota at {int(utilization)}%",
                    retry_hint="The monthly budget resets on the first of the month.",
                )

    async def can_make_request(self, purpose: str = "search") -> bool:
        try:
            await self.check(purpose)
        except QuotaExceededError as e:
            logger.info(f"Quota protection refused '{purpose}': {e}")
            return False
        return True

    async def record_request(self) -> None:
        """Count one live backend call."""
        async with self._lock:
            await self._roll_day()
            self._daily_count += 1
            await self.monthly.record()
            await self._persist()
            count = self._daily_count

        logger.debug(f"Quota: request {count}/{self.daily_limit} today")
        if count == self.daily_limit:
            logger.warning(f"Daily quota limit reached ({count}/{self.daily_limit})")

    async def status(self) -> QuotaState:
        async with self._lock:
            await self._roll_day()
            return QuotaState(
                daily_count=self._daily_count,
                daily_limit=self.daily_limit,
                last_reset_date=self._last_reset_date,
                monthly_utilization_percent=self.monthly.utilization_percent(),
                hard_stop_percent=self.hard_stop_percent,
                protection_enabled=self._protection_enabled,
                fallback_mode_enabled=self._fallback_mode_enabled,
            )

    async def enable_fallback_mode(self) -> None:
        async with self._lock:
            self._fallback_mode_enabled = True
            await self._persist()
        logger.warning("Fallback mode ENABLED - serving cached data only")

    async def disable_fallback_mode(self) -> None:
        async with self._lock:
            self._fallback_mode_enabled = False
            await self._persist()
        logger.info("Fallback mode DISABLED - live calls allowed within limits")

    async def set_protection(self, enabled: bool) -> None:
        async with self._lock:
            self._protection_enabled = enabled
            await self._persist()
        logger.info(f"Quota protection {'ENABLED' if enabled else 'DISABLED'}")

    async def reset_daily_counter(self) -> None:
        async with self._lock:
            self._daily_count = 0
            self._last_reset_date = self._today()
            await self._persist()
        logger.info(f"Daily quota reset to 0/{self.daily_limit}")

    async def _roll_day(self) -> None:
        """Reset the daily counter when the calendar date has changed."""
        today = self._today()
        if today != self._last_reset_date:
            self._daily_count = 0
            self._last_reset_date = today
            await self._persist()
            logger.info(f"New day {today.isoformat()}, daily quota reset")

    async def _persist(self) -> None:
        if self._database is None:
            return
        async with self._database.session() as session:
            await QuotaStateRepository(session).save(
                self.name,
                daily_count=self._daily_count,
                last_reset_date=self._last_reset_date,
                protection_enabled=self._protection_enabled,
                fallback_mode_enabled=self._fallback_mode_enabled,
            )
