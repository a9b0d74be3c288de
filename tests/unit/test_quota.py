"""Unit tests for the quota governor."""

from datetime import date

import pytest

from pricemesh.datastore.engine import Database
from pricemesh.services.errors import QuotaExceededError
from pricemesh.services.quota import MonthlyUsageTracker, QuotaGovernor


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'quota.db'}"


class TestDailyLimit:

    @pytest.mark.asyncio
    async def test_refuses_after_limit_until_next_day(self, calendar):
        governor = QuotaGovernor(daily_limit=5, today=calendar)

        for _ in range(5):
            await governor.check("search")
            await governor.record_request()

        with pytest.raises(QuotaExceededError) as exc_info:
            await governor.check("search")
        assert exc_info.value.reason == "daily_limit"
        assert exc_info.value.retry_hint

        calendar.next_day()
        await governor.check("search")
        assert (await governor.status()).daily_count == 0

    @pytest.mark.asyncio
    async def test_can_make_request_reports_refusal(self, calendar):
        governor = QuotaGovernor(daily_limit=1, today=calendar)
        assert await governor.can_make_request()

        await governor.record_request()

        assert not await governor.can_make_request()

    @pytest.mark.asyncio
    async def test_reset_daily_counter(self, calendar):
        governor = QuotaGovernor(daily_limit=1, today=calendar)
        await governor.record_request()

        await governor.reset_daily_counter()

        await governor.check()


class TestMonthlyHardStop:

    @pytest.mark.asyncio
    async def test_refuses_at_hard_stop_percent(self, calendar):
        monthly = MonthlyUsageTracker(monthly_limit=10, today=calendar)
        governor = QuotaGovernor(
            daily_limit=100, hard_stop_percent=90.0, monthly=monthly, today=calendar
        )

        for _ in range(8):
            await governor.record_request()
        await governor.check()

        await governor.record_request()
        with pytest.raises(QuotaExceededError) as exc_info:
            await governor.check()
        assert exc_info.value.reason == "monthly_hard_stop"

    @pytest.mark.asyncio
    async def test_month_rollover_resets_usage(self):
        calendar_day = [date(2024, 6, 30)]
        monthly = MonthlyUsageTracker(monthly_limit=10, today=lambda: calendar_day[0])
        for _ in range(5):
            await monthly.record()
        assert monthly.utilization_percent() == 50.0

        calendar_day[0] = date(2024, 7, 1)

        assert monthly.count == 0


class TestModes:

    @pytest.mark.asyncio
    async def test_fallback_mode_refuses_everything(self, calendar):
        governor = QuotaGovernor(today=calendar)
        await governor.enable_fallback_mode()

        with pytest.raises(QuotaExceededError) as exc_info:
            await governor.check()
        assert exc_info.value.reason == "fallback_mode"

        await governor.disable_fallback_mode()
        await governor.check()

    @pytest.mark.asyncio
    async def test_health_checks_never_spend_quota(self, calendar):
        governor = QuotaGovernor(today=calendar)

        with pytest.raises(QuotaExceededError) as exc_info:
            await governor.check("health_check")
        assert exc_info.value.reason == "purpose_denied"

    @pytest.mark.asyncio
    async def test_protection_off_ignores_limits(self, calendar):
        governor = QuotaGovernor(daily_limit=1, protection_enabled=False, today=calendar)
        await governor.record_request()
        await governor.record_request()

        await governor.check()
        assert (await governor.status()).can_make_requests

    @pytest.mark.asyncio
    async def test_status_snapshot(self, calendar):
        governor = QuotaGovernor(daily_limit=4, today=calendar)
        await governor.record_request()

        state = await governor.status()

        assert state.daily_usage_percent == 25.0
        assert state.can_make_requests
        assert state.status_message == "1/4 requests today, 0% monthly"
        data = state.to_dict()
        assert data["last_reset_date"] == "2024-06-01"
        assert data["can_make_requests"] is True

    @pytest.mark.asyncio
    async def test_status_message_when_blocked(self, calendar):
        governor = QuotaGovernor(daily_limit=1, today=calendar)
        await governor.record_request()

        state = await governor.status()

        assert not state.can_make_requests
        assert state.status_message == "Daily limit reached (1/1)"


class TestPersistence:

    @pytest.mark.asyncio
    async def test_counters_survive_restart(self, database_url, calendar):
        db = Database(database_url)
        await db.init()
        try:
            first = QuotaGovernor(daily_limit=3, database=db, today=calendar)
            await first.load()
            for _ in range(3):
                await first.record_request()

            second = QuotaGovernor(daily_limit=3, database=db, today=calendar)
            await second.load()

            with pytest.raises(QuotaExceededError):
                await second.check()
            assert second.monthly.count == 3
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_stale_day_is_reset_on_load(self, database_url, calendar):
        db = Database(database_url)
        await db.init()
        try:
            first = QuotaGovernor(daily_limit=3, database=db, today=calendar)
            for _ in range(3):
                await first.record_request()

            calendar.next_day()
            second = QuotaGovernor(daily_limit=3, database=db, today=calendar)
            await second.load()

            await second.check()
            assert (await second.status()).last_reset_date == date(2024, 6, 2)
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_persisted_flags_override_constructor(self, database_url, calendar):
        db = Database(database_url)
        await db.init()
        try:
            first = QuotaGovernor(database=db, today=calendar)
            await first.enable_fallback_mode()

            second = QuotaGovernor(database=db, fallback_mode_enabled=False, today=calendar)
            await second.load()

            assert not await second.can_make_request()
        finally:
            await db.close()
