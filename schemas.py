import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from models import BudgetPeriod, FilterMode, SyncAction


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BillRecord(WireModel):
    id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal
    category: str = Field(..., min_length=1, max_length=100)
    date: dt.date
    merchant: Optional[str] = Field(default=None, max_length=200)
    account: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None
    is_family_bill: bool = False
    created_at: datetime
    updated_at: datetime
    is_deleted: bool = False
    synced_at: Optional[datetime] = None

    @field_validator("date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        # Clients send full ISO timestamps for the bill date.
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        return value

    @field_validator("created_at", "updated_at", "synced_at")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)

    @field_serializer("amount")
    def _amount_as_number(self, value: Decimal) -> float:
        return float(value)


class BillRef(WireModel):
    """Minimal payload accepted for delete operations."""

    id: str = Field(..., min_length=1, max_length=64)
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class SyncOperationIn(WireModel):
    # Validated per operation by SyncService so one bad row can't sink the batch.
    action: str
    bill: dict[str, Any] = Field(default_factory=dict)


class SyncOperation(WireModel):
    action: SyncAction
    bill: BillRecord


class SyncUploadIn(WireModel):
    bills: list[SyncOperationIn] = Field(default_factory=list)


class SyncUploadOut(WireModel):
    success: bool = True
    uploaded: int


class SyncDownloadOut(WireModel):
    success: bool = True
    bills: list[BillRecord]


class SyncStatsOut(WireModel):
    bill_count: int
    tombstone_count: int
    budget_count: int = 0
    last_sync_at: Optional[datetime] = None


class PeriodBudgetBody(WireModel):
    amount: Optional[Decimal] = Field(default=None, ge=0)
    filter_mode: FilterMode = FilterMode.all
    categories: list[str] = Field(default_factory=list)

    @field_serializer("amount")
    def _amount_as_number(self, value: Optional[Decimal]) -> Optional[float]:
        return None if value is None else float(value)


class PeriodBudgetIn(PeriodBudgetBody):
    period: BudgetPeriod


class Insight(WireModel):
    id: str
    title: str
    description: str
    severity: Literal["info", "warn", "critical"] = "info"
    recommended_action: Optional[str] = None


class BudgetRecord(PeriodBudgetIn):
    """A period budget as it travels through sync; the newer updated_at wins."""

    updated_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    @field_validator("updated_at", "synced_at")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class BudgetUploadIn(WireModel):
    # Raw dicts, validated one by one like bill operations.
    budgets: list[dict[str, Any]] = Field(default_factory=list)


class BudgetDownloadOut(WireModel):
    success: bool = True
    budgets: list[BudgetRecord]


class SyncRoundIn(WireModel):
    bills: list[SyncOperationIn] = Field(default_factory=list)
    budgets: list[dict[str, Any]] = Field(default_factory=list)
    last_sync: Optional[datetime] = None


class SyncRoundOut(WireModel):
    success: bool = True
    uploaded_bills: int
    uploaded_budgets: int
    bills: list[BillRecord]
    budgets: list[BudgetRecord]
