"""Client side of bill and budget synchronisation.

``reconcile`` is pure and decides what the local store should hold after a
sync. ``SyncReconciler`` drives a round trip against the server through
``SyncClient`` and keeps the offline bill and budget queues and the download
watermark between runs. Budgets are few per user, so they are always
downloaded in full.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

import httpx

from config import get_settings
from models import BudgetPeriod, SyncAction, utcnow
from schemas import BillRecord, BudgetRecord, SyncOperation

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/sync/bills"
BUDGET_SYNC_PATH = "/api/sync/budgets"


class SyncStrategy(str, Enum):
    merge = "merge"
    clear_and_download = "clear_and_download"
    push_and_override = "push_and_override"


class SyncError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncAuthError(SyncError):
    pass


def _ordered(bills: Iterable[BillRecord]) -> list[BillRecord]:
    return sorted(bills, key=lambda b: (b.date, b.updated_at, b.id), reverse=True)


def _tombstone(bill: BillRecord, now: datetime) -> BillRecord:
    stamp = max(now, bill.updated_at)
    return bill.model_copy(update={"is_deleted": True, "updated_at": stamp})


def reconcile(
    strategy: SyncStrategy,
    local: Iterable[BillRecord],
    remote: Iterable[BillRecord],
    *,
    now: Optional[datetime] = None,
) -> list[BillRecord]:
    """Combine the local and remote bill sets according to ``strategy``.

    merge keeps the union and resolves collisions by the later ``updated_at``;
    on a tie the local copy stays. clear_and_download returns the remote set
    as is. push_and_override keeps every local record and turns remote-only
    records into tombstones, so uploading the result leaves the server equal
    to the local snapshot.
    """
    local = list(local)
    remote = list(remote)

    if strategy == SyncStrategy.clear_and_download:
        return _ordered(remote)

    merged = {bill.id: bill for bill in local}
    if strategy == SyncStrategy.push_and_override:
        now = now or utcnow()
        for bill in remote:
            if bill.id not in merged and not bill.is_deleted:
                merged[bill.id] = _tombstone(bill, now)
        return _ordered(merged.values())

    for bill in remote:
        current = merged.get(bill.id)
        if current is None or bill.updated_at > current.updated_at:
            merged[bill.id] = bill
    return _ordered(merged.values())


class SyncClient:
    """Thin httpx wrapper around the server's sync endpoints."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        base_url = base_url or settings.sync_base_url
        if not base_url:
            raise ValueError("Sync base URL is not configured")
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout if timeout is not None else settings.sync_timeout_secs,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SyncClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise SyncError(f"Sync request failed: {exc}") from exc
        if resp.status_code == 401:
            raise SyncAuthError("Sync token was rejected", status_code=401)
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SyncError(
                f"Sync request failed with status {resp.status_code}",
                status_code=resp.status_code,
            ) from exc
        try:
            body = resp.json()
        except ValueError as exc:
            raise SyncError("Sync response was not JSON") from exc
        if not isinstance(body, dict) or not body.get("success"):
            raise SyncError("Sync response reported failure", status_code=resp.status_code)
        return body

    def upload(self, operations: Iterable[SyncOperation]) -> int:
        payload = [
            {
                "action": op.action.value,
                "bill": op.bill.model_dump(mode="json", by_alias=True),
            }
            for op in operations
        ]
        if not payload:
            return 0
        body = self._request("POST", SYNC_PATH, json={"bills": payload})
        return int(body.get("uploaded", 0))

    def download(self, last_sync: Optional[datetime] = None) -> list[BillRecord]:
        params = {}
        if last_sync is not None:
            params["lastSync"] = last_sync.isoformat()
        body = self._request("GET", SYNC_PATH, params=params)
        return [BillRecord.model_validate(item) for item in body.get("bills", [])]

    def upload_budgets(self, budgets: Iterable[BudgetRecord]) -> int:
        payload = [b.model_dump(mode="json", by_alias=True) for b in budgets]
        if not payload:
            return 0
        body = self._request("POST", BUDGET_SYNC_PATH, json={"budgets": payload})
        return int(body.get("uploaded", 0))

    def download_budgets(self) -> list[BudgetRecord]:
        body = self._request("GET", BUDGET_SYNC_PATH)
        return [BudgetRecord.model_validate(item) for item in body.get("budgets", [])]


@dataclass
class SyncResult:
    bills: list[BillRecord]
    uploaded: int = 0
    downloaded: int = 0
    strategy: SyncStrategy = SyncStrategy.merge
    budgets: list[BudgetRecord] = field(default_factory=list)
    uploaded_budgets: int = 0


class SyncReconciler:
    def __init__(self, client: SyncClient, last_sync: Optional[datetime] = None) -> None:
        self.client = client
        self.last_sync = last_sync
        self._queue: list[SyncOperation] = []
        self._budgets: dict[BudgetPeriod, BudgetRecord] = {}

    @property
    def pending(self) -> tuple[SyncOperation, ...]:
        return tuple(self._queue)

    def record(self, action: SyncAction, bill: BillRecord) -> None:
        """Queue a local change made while offline."""
        self._queue.append(SyncOperation(action=SyncAction(action), bill=bill))

    @property
    def pending_budgets(self) -> tuple[BudgetRecord, ...]:
        return tuple(self._budgets.values())

    def record_budget(self, budget: BudgetRecord) -> None:
        """Queue an offline budget edit; the latest edit per period wins."""
        if budget.updated_at is None:
            budget = budget.model_copy(update={"updated_at": utcnow()})
        self._budgets[budget.period] = budget

    def _advance_watermark(self, bills: Iterable[BillRecord]) -> None:
        stamps = [b.synced_at for b in bills if b.synced_at is not None]
        if not stamps:
            return
        newest = max(stamps)
        if self.last_sync is None or newest > self.last_sync:
            self.last_sync = newest

    def _sync_budgets(self, strategy: SyncStrategy) -> tuple[int, list[BudgetRecord]]:
        uploaded = 0
        if strategy == SyncStrategy.clear_and_download:
            self._budgets.clear()
        elif self._budgets:
            pending = list(self._budgets.values())
            if strategy == SyncStrategy.push_and_override:
                # Restamped so the server keeps them over anything it holds.
                now = utcnow()
                pending = [
                    b.model_copy(update={"updated_at": max(now, b.updated_at)})
                    for b in pending
                ]
            uploaded = self.client.upload_budgets(pending)
            self._budgets.clear()
        return uploaded, self.client.download_budgets()

    def sync(self, strategy: SyncStrategy, local: Iterable[BillRecord]) -> SyncResult:
        strategy = SyncStrategy(strategy)
        local = list(local)
        logger.info(
            f"sync_start: strategy={strategy.value} local={len(local)} "
            f"pending={len(self._queue)}"
        )

        if strategy == SyncStrategy.clear_and_download:
            self._queue.clear()
            remote = self.client.download()
            self.last_sync = None
            self._advance_watermark(remote)
            result = SyncResult(
                bills=reconcile(strategy, local, remote),
                downloaded=len(remote),
                strategy=strategy,
            )
        elif strategy == SyncStrategy.push_and_override:
            remote = self.client.download()
            self._advance_watermark(remote)
            merged = reconcile(strategy, local, remote)
            operations = [
                SyncOperation(
                    action=SyncAction.delete if bill.is_deleted else SyncAction.update,
                    bill=bill,
                )
                for bill in merged
            ]
            uploaded = self.client.upload(operations)
            self._queue.clear()
            local_ids = {bill.id for bill in local}
            result = SyncResult(
                bills=[bill for bill in merged if bill.id in local_ids],
                uploaded=uploaded,
                downloaded=len(remote),
                strategy=strategy,
            )
        else:
            uploaded = 0
            if self._queue:
                uploaded = self.client.upload(self._queue)
                self._queue.clear()
            remote = self.client.download(self.last_sync)
            self._advance_watermark(remote)
            result = SyncResult(
                bills=reconcile(strategy, local, remote),
                uploaded=uploaded,
                downloaded=len(remote),
                strategy=strategy,
            )

        result.uploaded_budgets, result.budgets = self._sync_budgets(strategy)
        logger.info(
            f"sync_done: strategy={strategy.value} uploaded={result.uploaded} "
            f"downloaded={result.downloaded} bills={len(result.bills)}"
        )
        return result
