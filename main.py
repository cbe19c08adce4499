import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Union

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy.orm import Session

from auth import require_user
from database import SessionLocal, get_db
from models import BudgetPeriod, PeriodType, ViewScope
from periods import default_selector_id, generate_period_selectors, resolve_selector
from report_cache import ReportCacheCoordinator, ReportCacheRegistry
from reports import Report, report_payload
from scheduler import SchedulerManager
from schemas import (
    BudgetDownloadOut,
    BudgetUploadIn,
    PeriodBudgetBody,
    PeriodBudgetIn,
    SyncDownloadOut,
    SyncOperationIn,
    SyncRoundIn,
    SyncRoundOut,
    SyncStatsOut,
    SyncUploadIn,
    SyncUploadOut,
)
from services import BudgetService, DataVersionService, ReportService, SyncService

logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    import tomllib

    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Bill Insights", version=APP_VERSION)
# Report builds run outside the request and open their own sessions.
app.state.session_factory = SessionLocal
app.state.insight_provider = None

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    scheduler_manager.stop()
    await app.state.report_caches.close()


def _report_builder(target: FastAPI, user_id: int):
    async def build(
        period_type: PeriodType,
        view_scope: ViewScope,
        selector_id: str,
        data_version: int,
        force_refresh: bool,
    ) -> Report:
        def run() -> Report:
            with target.state.session_factory() as session:
                return ReportService(session, user_id).build(
                    period_type,
                    view_scope,
                    selector_id,
                    data_version=data_version,
                    insight_provider=target.state.insight_provider,
                )

        return await asyncio.to_thread(run)

    return build


app.state.report_caches = ReportCacheRegistry(
    lambda user_id: ReportCacheCoordinator(_report_builder(app, user_id))
)


async def report_cache_for(request: Request, user_id: int) -> ReportCacheCoordinator:
    return await request.app.state.report_caches.acquire(user_id)


def _period_type(value: str) -> PeriodType:
    try:
        return PeriodType(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid period type") from exc


def _view_scope(value: str) -> ViewScope:
    try:
        return ViewScope(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid view scope") from exc


@app.post("/api/sync/bills", response_model=SyncUploadOut)
def api_sync_upload(
    payload: Union[list[SyncOperationIn], SyncUploadIn] = Body(...),
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    operations = payload if isinstance(payload, list) else payload.bills
    try:
        uploaded = SyncService(db, user_id).upload(operations)
    except Exception as exc:
        logger.exception("Error uploading bills")
        raise HTTPException(status_code=500, detail="Failed to upload bills") from exc
    return SyncUploadOut(uploaded=uploaded)


@app.get("/api/sync/bills", response_model=SyncDownloadOut)
def api_sync_download(
    last_sync: Optional[datetime] = Query(default=None, alias="lastSync"),
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    try:
        bills = SyncService(db, user_id).download(last_sync)
    except Exception as exc:
        logger.exception("Error downloading bills")
        raise HTTPException(status_code=500, detail="Failed to download bills") from exc
    return SyncDownloadOut(bills=bills)


@app.post("/api/sync/budgets", response_model=SyncUploadOut)
def api_sync_budgets_upload(
    payload: Union[list[dict[str, Any]], BudgetUploadIn] = Body(...),
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    budgets = payload if isinstance(payload, list) else payload.budgets
    try:
        uploaded = SyncService(db, user_id).upload_budgets(budgets)
    except Exception as exc:
        logger.exception("Error uploading budgets")
        raise HTTPException(status_code=500, detail="Failed to upload budgets") from exc
    return SyncUploadOut(uploaded=uploaded)


@app.get("/api/sync/budgets", response_model=BudgetDownloadOut)
def api_sync_budgets_download(
    last_sync: Optional[datetime] = Query(default=None, alias="lastSync"),
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    try:
        budgets = SyncService(db, user_id).download_budgets(last_sync)
    except Exception as exc:
        logger.exception("Error downloading budgets")
        raise HTTPException(status_code=500, detail="Failed to download budgets") from exc
    return BudgetDownloadOut(budgets=budgets)


@app.post("/api/sync", response_model=SyncRoundOut)
def api_sync_round(
    payload: SyncRoundIn,
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Upload bills and budgets, then return everything changed since lastSync."""
    service = SyncService(db, user_id)
    try:
        uploaded_bills = service.upload(payload.bills)
        uploaded_budgets = service.upload_budgets(payload.budgets)
        bills = service.download(payload.last_sync)
        budgets = service.download_budgets(payload.last_sync)
    except Exception as exc:
        logger.exception("Error running sync")
        raise HTTPException(status_code=500, detail="Sync operation failed") from exc
    return SyncRoundOut(
        uploaded_bills=uploaded_bills,
        uploaded_budgets=uploaded_budgets,
        bills=bills,
        budgets=budgets,
    )


@app.get("/api/sync/stats", response_model=SyncStatsOut)
def api_sync_stats(
    user_id: int = Depends(require_user), db: Session = Depends(get_db)
):
    return SyncService(db, user_id).stats()


@app.get("/api/budgets", response_model=list[PeriodBudgetIn])
def api_budgets(user_id: int = Depends(require_user), db: Session = Depends(get_db)):
    return BudgetService(db, user_id).get_all()


@app.put("/api/budgets/{period}", response_model=PeriodBudgetIn)
def api_budget_upsert(
    period: BudgetPeriod,
    data: PeriodBudgetBody,
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    budget = PeriodBudgetIn(
        period=period,
        amount=data.amount,
        filter_mode=data.filter_mode,
        categories=data.categories,
    )
    try:
        return BudgetService(db, user_id).upsert(budget)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/data-version")
def api_data_version(
    user_id: int = Depends(require_user), db: Session = Depends(get_db)
):
    return {"dataVersion": DataVersionService(db, user_id).current()}


@app.get("/api/reports/periods")
def api_report_periods(
    period_type: str = Query(default="month", alias="periodType"),
    user_id: int = Depends(require_user),
):
    pt = _period_type(period_type)
    return {
        "periodType": pt.value,
        "periods": [
            {
                "id": s.id,
                "label": s.label,
                "startDate": s.start.isoformat(),
                "endDate": s.end.isoformat(),
            }
            for s in generate_period_selectors(pt)
        ],
    }


@app.get("/api/reports")
async def api_reports(
    request: Request,
    period_type: str = Query(default="month", alias="periodType"),
    view_scope: str = Query(default="personal", alias="viewScope"),
    period_id: Optional[str] = Query(default=None, alias="periodId"),
    force_refresh: bool = Query(default=False, alias="forceRefresh"),
    user_id: int = Depends(require_user),
    db: Session = Depends(get_db),
):
    pt = _period_type(period_type)
    scope = _view_scope(view_scope)
    selector, _ = resolve_selector(pt, period_id or default_selector_id(pt))
    data_version = DataVersionService(db, user_id).current()

    coordinator = await report_cache_for(request, user_id)
    report = await coordinator.get(pt, scope, selector.id, data_version, force_refresh)
    payload = report_payload(report)
    payload["loadState"] = coordinator.state.value
    return payload
