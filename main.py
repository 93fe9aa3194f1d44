import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from materializer import Materializer, StateSweeper, SyncError
from models import EventState
from periods import Window, resolve_window
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    EventIn,
    EventOut,
    IncomeRuleIn,
    RecurringRuleIn,
    SyncReportOut,
)
from services import (
    CategoryService,
    EventService,
    IncomeRuleService,
    RecurringRuleService,
    SummaryService,
)
from stores import EventFilters

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Projections")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def window_from_request(request: Request) -> Window:
    try:
        return resolve_window(
            request.query_params.get("month"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def as_of_from_request(request: Request) -> Optional[date]:
    raw = request.query_params.get("as_of")
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


ACTIVE_VALUES = {"true": True, "1": True, "false": False, "0": False}


def sync_before_read(
    db: Session, owner_id: int, window: Window, as_of: Optional[date]
) -> None:
    """Bring a stale window up to date before it is read.

    A window another request is already syncing is served as stored.
    """
    max_age = timedelta(seconds=get_settings().sync_max_age_secs)
    try:
        Materializer(db).ensure_synced(
            owner_id, window, max_age=max_age, as_of=as_of, commit=True
        )
    except SyncError as exc:
        logger.warning(
            f"read_sync_skipped: owner={owner_id} "
            f"window={window.start}..{window.end} {exc}",
            extra={"owner_id": owner_id},
        )


def rule_payload(rule) -> dict[str, object]:
    spec = rule.frequency_spec()
    return {
        "id": rule.id,
        "category_id": rule.category_id,
        "description": rule.description,
        "amount_cents": rule.amount_cents,
        "frequency": rule.frequency.value,
        "frequency_valid": spec is not None,
        "day_of_month": rule.day_of_month,
        "day_of_week": rule.day_of_week,
        "month_of_year": rule.month_of_year,
        "month_day_policy": rule.month_day_policy.value,
        "second_day_of_month": rule.second_day_of_month,
        "anchor_date": rule.anchor_date.isoformat() if rule.anchor_date else None,
        "is_active": rule.is_active,
        "tags": [tag.name for tag in rule.tags],
    }


@app.post("/api/owners/{owner_id}/categories", status_code=201)
def create_category(owner_id: int, data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db, owner_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "id": category.id,
        "name": category.name,
        "monthly_budget_cents": category.monthly_budget_cents,
    }


@app.get("/api/owners/{owner_id}/rules")
def list_rules(owner_id: int, db: Session = Depends(get_db)):
    rules = RecurringRuleService(db, owner_id).list()
    return {"items": [rule_payload(rule) for rule in rules]}


@app.post("/api/owners/{owner_id}/rules", status_code=201)
def create_rule(owner_id: int, data: RecurringRuleIn, db: Session = Depends(get_db)):
    try:
        rule = RecurringRuleService(db, owner_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return rule_payload(rule)


@app.put("/api/owners/{owner_id}/rules/{rule_id}")
def update_rule(
    owner_id: int, rule_id: int, data: RecurringRuleIn, db: Session = Depends(get_db)
):
    try:
        rule = RecurringRuleService(db, owner_id).update(rule_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_payload(rule)


@app.post("/api/owners/{owner_id}/rules/{rule_id}/active")
def set_rule_active(
    owner_id: int, rule_id: int, request: Request, db: Session = Depends(get_db)
):
    raw = request.query_params.get("value", "true").strip().lower()
    if raw not in ACTIVE_VALUES:
        raise HTTPException(status_code=400, detail="value must be true or false")
    is_active = ACTIVE_VALUES[raw]
    try:
        rule = RecurringRuleService(db, owner_id).set_active(rule_id, is_active)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_payload(rule)


@app.get("/api/owners/{owner_id}/rules/statistics")
def rule_statistics(owner_id: int, db: Session = Depends(get_db)):
    return RecurringRuleService(db, owner_id).get_statistics()


@app.post("/api/owners/{owner_id}/income", status_code=201)
def create_income(owner_id: int, data: IncomeRuleIn, db: Session = Depends(get_db)):
    try:
        income = IncomeRuleService(db, owner_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": income.id, "source": income.source, "is_active": income.is_active}


@app.post("/api/owners/{owner_id}/sync", response_model=SyncReportOut)
def sync_window(owner_id: int, request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    as_of = as_of_from_request(request)
    try:
        report = Materializer(db).sync(owner_id, window, as_of=as_of, commit=True)
    except SyncError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SyncReportOut.model_validate(report)


@app.post("/api/owners/{owner_id}/sync/schedule", status_code=202)
def schedule_sync(owner_id: int, request: Request):
    window = window_from_request(request)
    job_id = scheduler_manager.trigger_sync(owner_id, window)
    return JSONResponse(
        status_code=202,
        content={
            "job_id": job_id,
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
        },
    )


@app.post("/api/owners/{owner_id}/sweep")
def sweep(owner_id: int, request: Request, db: Session = Depends(get_db)):
    as_of = as_of_from_request(request)
    settled = StateSweeper(db).sweep(owner_id, as_of)
    db.commit()
    return {"settled": settled}


@app.get("/api/owners/{owner_id}/events", response_model=list[EventOut])
def list_events(owner_id: int, request: Request, db: Session = Depends(get_db)):
    window = window_from_request(request)
    state_param = request.query_params.get("state")
    category_param = request.query_params.get("category")
    try:
        state = EventState(state_param) if state_param else None
        category_id = int(category_param) if category_param else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    filters = EventFilters(state=state, category_id=category_id)
    sync_before_read(db, owner_id, window, as_of_from_request(request))
    events = EventService(db, owner_id).query_events(window, filters)
    return [EventOut.model_validate(event) for event in events]


@app.post("/api/owners/{owner_id}/events", status_code=201, response_model=EventOut)
def create_event(owner_id: int, data: EventIn, db: Session = Depends(get_db)):
    try:
        event = EventService(db, owner_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return EventOut.model_validate(event)


@app.delete("/api/owners/{owner_id}/events/{event_id}", status_code=204)
def delete_event(owner_id: int, event_id: int, db: Session = Depends(get_db)):
    try:
        EventService(db, owner_id).delete(event_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/owners/{owner_id}/summary")
def month_summary(owner_id: int, request: Request, db: Session = Depends(get_db)):
    if "start" in request.query_params or "end" in request.query_params:
        raise HTTPException(
            status_code=400,
            detail="Summary covers one calendar month; use month=YYYY-MM",
        )
    window = window_from_request(request)
    as_of = as_of_from_request(request)
    sync_before_read(db, owner_id, window, as_of)
    summary = SummaryService(db, owner_id).month_summary(
        window.start.year, window.start.month, as_of=as_of
    )
    db.commit()
    return {
        "window_start": summary.window.start.isoformat(),
        "window_end": summary.window.end.isoformat(),
        "as_of": summary.as_of.isoformat(),
        "categories": [
            {
                "category_id": row.category_id,
                "name": row.name,
                "budget_cents": row.budget_cents,
                "actual_cents": row.actual_cents,
                "projected_cents": row.projected_cents,
                "remaining_cents": row.remaining_cents,
            }
            for row in summary.categories
        ],
        "by_tag": summary.by_tag,
        "actual_cents": summary.actual_cents,
        "projected_cents": summary.projected_cents,
        "budget_cents": summary.budget_cents,
        "gross_income_cents": summary.gross_income_cents,
        "net_income_cents": summary.net_income_cents,
        "cashflow_cents": summary.cashflow_cents,
    }
