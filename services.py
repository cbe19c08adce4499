from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError
from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    BUDGET_PERIOD_FOR,
    Bill,
    BudgetPeriod,
    DataVersion,
    FilterMode,
    PeriodBudget,
    PeriodType,
    SyncAction,
    SyncLog,
    ViewScope,
    utcnow,
)
from periods import resolve_selector
from reports import InsightProvider, Report, build_report
from schemas import (
    BillRecord,
    BillRef,
    BudgetRecord,
    PeriodBudgetIn,
    SyncOperationIn,
    SyncStatsOut,
)

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def amount_to_cents(amount: Decimal) -> int:
    return int(
        (Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def cents_to_amount(cents: int) -> Decimal:
    return Decimal(cents) / 100


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def record_from_bill(bill: Bill) -> BillRecord:
    return BillRecord(
        id=bill.id,
        amount=cents_to_amount(bill.amount_cents),
        category=bill.category,
        date=bill.date,
        merchant=bill.merchant,
        account=bill.account,
        notes=bill.notes,
        is_family_bill=bill.is_family_bill,
        created_at=bill.created_at,
        updated_at=bill.updated_at,
        is_deleted=bill.is_deleted,
        synced_at=bill.synced_at,
    )


def apply_record(bill: Bill, record: BillRecord) -> None:
    bill.amount_cents = amount_to_cents(record.amount)
    bill.category = record.category
    bill.date = record.date
    bill.merchant = record.merchant
    bill.account = record.account
    bill.notes = record.notes
    bill.is_family_bill = record.is_family_bill
    bill.created_at = record.created_at
    bill.updated_at = record.updated_at


class DataVersionService:
    """Monotonic per-user counter that report caches key their validity on."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _row(self) -> Optional[DataVersion]:
        return self.session.scalar(
            select(DataVersion).where(DataVersion.user_id == self.user_id)
        )

    def current(self) -> int:
        row = self._row()
        return row.version if row else 1

    def bump(self) -> int:
        row = self._row()
        if not row:
            row = DataVersion(user_id=self.user_id, version=1)
            self.session.add(row)
        row.version += 1
        self.session.commit()
        return row.version


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def _to_schema(row: PeriodBudget) -> PeriodBudgetIn:
        categories = json.loads(row.categories_json) if row.categories_json else []
        return PeriodBudgetIn(
            period=row.period,
            amount=None if row.amount_cents is None else cents_to_amount(row.amount_cents),
            filter_mode=row.filter_mode,
            categories=categories,
        )

    @staticmethod
    def to_record(row: PeriodBudget) -> BudgetRecord:
        return BudgetRecord(
            period=row.period,
            amount=None if row.amount_cents is None else cents_to_amount(row.amount_cents),
            filter_mode=row.filter_mode,
            categories=json.loads(row.categories_json) if row.categories_json else [],
            updated_at=row.updated_at,
            synced_at=row.synced_at,
        )

    def get_row(self, period: BudgetPeriod) -> Optional[PeriodBudget]:
        return self.session.scalar(
            select(PeriodBudget).where(
                PeriodBudget.user_id == self.user_id, PeriodBudget.period == period
            )
        )

    def get_all(self) -> list[PeriodBudgetIn]:
        rows = self.session.scalars(
            select(PeriodBudget)
            .where(PeriodBudget.user_id == self.user_id)
            .order_by(PeriodBudget.id)
        ).all()
        return [self._to_schema(row) for row in rows]

    def get_for_period(self, period: BudgetPeriod) -> Optional[PeriodBudgetIn]:
        row = self.get_row(period)
        return self._to_schema(row) if row else None

    def write(
        self,
        data: PeriodBudgetIn,
        now: datetime,
        updated_at: Optional[datetime] = None,
    ) -> PeriodBudget:
        """Stage a budget change without committing it."""
        if data.filter_mode != FilterMode.all and not data.categories:
            raise ValueError("Choose at least one category for this filter")

        categories = sorted({c.strip() for c in data.categories if c.strip()})
        row = self.get_row(data.period)
        if not row:
            row = PeriodBudget(user_id=self.user_id, period=data.period)
            self.session.add(row)
        row.amount_cents = None if data.amount is None else amount_to_cents(data.amount)
        row.filter_mode = data.filter_mode
        row.categories_json = json.dumps(categories) if categories else None
        if updated_at is not None:
            row.updated_at = updated_at
        row.synced_at = now
        return row

    def upsert(self, data: PeriodBudgetIn) -> PeriodBudgetIn:
        row = self.write(data, utcnow())
        self.session.commit()
        self.session.refresh(row)

        DataVersionService(self.session, self.user_id).bump()
        logger.info(
            f"budget_upsert: user_id={self.user_id} period={data.period.value} "
            f"filter_mode={data.filter_mode.value}"
        )
        return self._to_schema(row)


class SyncService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _log(self, operation: str, status: str, details: dict[str, Any]) -> None:
        self.session.add(
            SyncLog(
                user_id=self.user_id,
                operation=operation,
                status=status,
                details_json=json.dumps(details),
            )
        )
        self.session.commit()

    def _owned(self, bill_id: str) -> Optional[Bill]:
        bill = self.session.get(Bill, bill_id)
        if bill is not None and bill.user_id != self.user_id:
            raise ValueError("Bill belongs to another user")
        return bill

    def _apply(self, op: SyncOperationIn, now: datetime) -> bool:
        """Apply one operation; returns whether anything was written."""
        action = SyncAction(op.action)
        if action == SyncAction.delete:
            ref = BillRef.model_validate(op.bill)
            bill = self._owned(ref.id)
            if bill is None:
                return False
            bill.is_deleted = True
            bill.updated_at = max(now, ref.updated_at or now)
            bill.synced_at = now
            return True

        record = BillRecord.model_validate(op.bill)
        bill = self._owned(record.id)
        if bill is None:
            bill = Bill(id=record.id, user_id=self.user_id)
            self.session.add(bill)
        apply_record(bill, record)
        bill.is_deleted = False
        bill.synced_at = now
        return True

    def upload(self, operations: Iterable[Union[SyncOperationIn, dict]]) -> int:
        uploaded = 0
        failed = 0
        changed = False
        for index, raw in enumerate(operations):
            action = None
            try:
                op = (
                    raw
                    if isinstance(raw, SyncOperationIn)
                    else SyncOperationIn.model_validate(raw)
                )
                action = op.action
                changed = self._apply(op, utcnow()) or changed
                self.session.commit()
                uploaded += 1
            except (ValueError, ValidationError, SQLAlchemyError) as exc:
                self.session.rollback()
                failed += 1
                logger.warning(
                    f"sync_upload_op_failed: user_id={self.user_id} index={index} "
                    f"action={action} error={exc}"
                )

        if changed:
            DataVersionService(self.session, self.user_id).bump()
        self._log(
            "upload",
            "success" if not failed else "partial",
            {"uploaded": uploaded, "failed": failed},
        )
        logger.info(
            f"sync_upload: user_id={self.user_id} uploaded={uploaded} failed={failed}"
        )
        return uploaded

    def download(self, last_sync: Optional[datetime] = None) -> list[BillRecord]:
        stmt = select(Bill).where(Bill.user_id == self.user_id)
        if last_sync is not None:
            last_sync = _naive_utc(last_sync)
            stmt = stmt.where(Bill.synced_at > last_sync)
        rows = self.session.scalars(
            stmt.order_by(Bill.synced_at.desc(), Bill.id)
        ).all()
        records = [record_from_bill(row) for row in rows]
        self._log(
            "download",
            "success",
            {
                "count": len(records),
                "last_sync": last_sync.isoformat() if last_sync else None,
            },
        )
        logger.info(
            f"sync_download: user_id={self.user_id} count={len(records)} "
            f"last_sync={last_sync}"
        )
        return records

    def _apply_budget(self, record: BudgetRecord, now: datetime) -> bool:
        """Write one synced budget unless the stored copy is newer."""
        budgets = BudgetService(self.session, self.user_id)
        row = budgets.get_row(record.period)
        if (
            row is not None
            and record.updated_at is not None
            and row.updated_at > record.updated_at
        ):
            return False
        budgets.write(record, now, updated_at=record.updated_at or now)
        return True

    def upload_budgets(self, budgets: Iterable[Union[BudgetRecord, dict]]) -> int:
        uploaded = 0
        stale = 0
        failed = 0
        for index, raw in enumerate(budgets):
            try:
                record = (
                    raw
                    if isinstance(raw, BudgetRecord)
                    else BudgetRecord.model_validate(raw)
                )
                if not self._apply_budget(record, utcnow()):
                    stale += 1
                    logger.info(
                        f"sync_budget_stale: user_id={self.user_id} "
                        f"period={record.period.value}"
                    )
                    continue
                self.session.commit()
                uploaded += 1
            except (ValueError, ValidationError, SQLAlchemyError) as exc:
                self.session.rollback()
                failed += 1
                logger.warning(
                    f"sync_budget_op_failed: user_id={self.user_id} index={index} "
                    f"error={exc}"
                )

        if uploaded:
            DataVersionService(self.session, self.user_id).bump()
        self._log(
            "budget_upload",
            "success" if not failed else "partial",
            {"uploaded": uploaded, "stale": stale, "failed": failed},
        )
        logger.info(
            f"sync_budget_upload: user_id={self.user_id} uploaded={uploaded} "
            f"stale={stale} failed={failed}"
        )
        return uploaded

    def download_budgets(
        self, last_sync: Optional[datetime] = None
    ) -> list[BudgetRecord]:
        stmt = select(PeriodBudget).where(PeriodBudget.user_id == self.user_id)
        if last_sync is not None:
            last_sync = _naive_utc(last_sync)
            stmt = stmt.where(PeriodBudget.synced_at > last_sync)
        rows = self.session.scalars(
            stmt.order_by(PeriodBudget.synced_at.desc(), PeriodBudget.id)
        ).all()
        records = [BudgetService.to_record(row) for row in rows]
        self._log("budget_download", "success", {"count": len(records)})
        return records

    def stats(self) -> SyncStatsOut:
        live, tombstones = self.session.execute(
            select(
                func.coalesce(func.sum(case((Bill.is_deleted.is_(False), 1), else_=0)), 0),
                func.coalesce(func.sum(case((Bill.is_deleted.is_(True), 1), else_=0)), 0),
            ).where(Bill.user_id == self.user_id)
        ).one()
        budget_count = self.session.scalar(
            select(func.count(PeriodBudget.id)).where(
                PeriodBudget.user_id == self.user_id
            )
        )
        last_sync_at = self.session.scalar(
            select(func.max(SyncLog.created_at)).where(SyncLog.user_id == self.user_id)
        )
        return SyncStatsOut(
            bill_count=int(live),
            tombstone_count=int(tombstones),
            budget_count=int(budget_count or 0),
            last_sync_at=last_sync_at,
        )

    def cleanup_logs(self, retention_days: Optional[int] = None) -> int:
        if retention_days is None:
            retention_days = get_settings().sync_log_retention_days
        cutoff = utcnow() - timedelta(days=retention_days)
        result = self.session.execute(
            delete(SyncLog).where(SyncLog.created_at < cutoff)
        )
        self.session.commit()
        return result.rowcount or 0


class ReportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def bills_between(
        self, start: date, end: date, view_scope: ViewScope = ViewScope.personal
    ) -> list[BillRecord]:
        stmt = select(Bill).where(
            Bill.user_id == self.user_id,
            Bill.is_deleted.is_(False),
            Bill.date.between(start, end),
        )
        if view_scope == ViewScope.family:
            stmt = stmt.where(Bill.is_family_bill.is_(True))
        rows = self.session.scalars(stmt.order_by(Bill.date, Bill.id)).all()
        return [record_from_bill(row) for row in rows]

    def build(
        self,
        period_type: PeriodType,
        view_scope: ViewScope,
        selector_id: Optional[str] = None,
        *,
        data_version: Optional[int] = None,
        cash_balance: Decimal = Decimal("0"),
        total_income: Optional[Decimal] = None,
        insight_provider: Optional[InsightProvider] = None,
        today: Optional[date] = None,
    ) -> Report:
        selector, selectors = resolve_selector(period_type, selector_id, today=today)
        bills = self.bills_between(selector.start, selector.end, view_scope)
        budget = BudgetService(self.session, self.user_id).get_for_period(
            BUDGET_PERIOD_FOR[period_type]
        )
        if data_version is None:
            data_version = DataVersionService(self.session, self.user_id).current()
        logger.info(
            f"report_build: user_id={self.user_id} period_type={period_type.value} "
            f"scope={view_scope.value} selector={selector.id} bills={len(bills)}"
        )
        return build_report(
            bills,
            budget,
            period_type=period_type,
            view_scope=view_scope,
            selector=selector,
            selectors=selectors,
            data_version=data_version,
            cash_balance=cash_balance,
            total_income=total_income,
            insight_provider=insight_provider,
        )
