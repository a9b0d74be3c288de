"""
Repository layer wrapping data access.
"""

from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricemesh.datastore.models import MonthlyUsageDB, QuotaStateDB


class QuotaStateRepository:
    """Quota state repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, name: str) -> QuotaStateDB | None:
        result = await self.session.execute(
            select(QuotaStateDB).where(QuotaStateDB.name == name)
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        name: str,
        daily_count: int,
        last_reset_date: date,
        protection_enabled: bool,
        fallback_mode_enabled: bool,
    ) -> QuotaStateDB:
        """Insert or update the state row for ``name``."""
        row = await self.get(name)
        if row is None:
            row = QuotaStateDB(name=name, last_reset_date=last_reset_date)
            self.session.add(row)
        row.daily_count = daily_count
        row.last_reset_date = last_reset_date
        row.protection_enabled = protection_enabled
        row.fallback_mode_enabled = fallback_mode_enabled
        await self.session.flush()
        return row


class MonthlyUsageRepository:
    """Monthly usage repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_count(self, month: str) -> int:
        result = await self.session.execute(
            select(MonthlyUsageDB.request_count).where(MonthlyUsageDB.month == month)
        )
        return result.scalar_one_or_none() or 0

    async def set_count(self, month: str, count: int) -> None:
        result = await self.session.execute(
            select(MonthlyUsageDB).where(MonthlyUsageDB.month == month)
        )
        row = result.scalar_one_or_none()
        if row is None:
            self.session.add(MonthlyUsageDB(month=month, request_count=count))
        else:
            row.request_count = count
        await self.session.flush()
