"""
Database models.
SQLAlchemy 2.0 declarative mapping.
"""

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Integer, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""

    pass


class QuotaStateDB(Base):
    """Daily quota counters, one row per governor name."""

    __tablename__ = "quota_state"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    daily_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reset_date: Mapped[date] = mapped_column(Date, nullable=False)
    protection_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fallback_mode_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<QuotaState(name={self.name}, daily_count={self.daily_count})>"


class MonthlyUsageDB(Base):
    """Cumulative live calls per calendar month."""

    __tablename__ = "monthly_usage"

    month: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<MonthlyUsage(month={self.month}, count={self.request_count})>"
