from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PeriodType(str, Enum):
    week = "week"
    month = "month"
    year = "year"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


BUDGET_PERIOD_FOR = {
    PeriodType.week: BudgetPeriod.weekly,
    PeriodType.month: BudgetPeriod.monthly,
    PeriodType.year: BudgetPeriod.yearly,
}


class FilterMode(str, Enum):
    all = "all"
    include = "include"
    exclude = "exclude"


class ViewScope(str, Enum):
    personal = "personal"
    family = "family"


class SyncAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Bill(Base):
    """Server copy of a bill. Timestamps come from the client, except synced_at."""

    __tablename__ = "bills"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    account: Mapped[Optional[str]] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_family_bill: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_bills_user_date", "user_id", "date"),
        Index("ix_bills_user_synced", "user_id", "synced_at"),
    )


class PeriodBudget(Base, TimestampMixin):
    __tablename__ = "period_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    period: Mapped[BudgetPeriod] = mapped_column(SAEnum(BudgetPeriod), nullable=False)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    filter_mode: Mapped[FilterMode] = mapped_column(
        SAEnum(FilterMode), default=FilterMode.all, nullable=False
    )
    categories_json: Mapped[Optional[str]] = mapped_column(Text)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "period", name="uq_period_budget_user_period"),
        Index("ix_period_budgets_user_synced", "user_id", "synced_at"),
    )


class DataVersion(Base, TimestampMixin):
    __tablename__ = "data_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details_json: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_sync_logs_user_created", "user_id", "created_at"),)
