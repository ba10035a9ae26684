from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from balances import cents_to_amount
from config import get_settings
from database import SessionLocal
from periods import Period, resolve_projection_window
from projection import Projection
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    BalanceAlertOut,
    ProjectionOut,
    ProjectionPointOut,
    TransactionEditIn,
    TransactionIn,
    TransactionOut,
)
from services import (
    NotFoundError,
    ProjectionService,
    RecurrenceRuleService,
    TransactionService,
)


app = FastAPI(title="Recurring Ledger")


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


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def window_from_request(request: Request) -> Period:
    try:
        return resolve_projection_window(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
            today=local_today(),
            default_days=get_settings().projection_days,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def projection_payload(projection: Projection) -> ProjectionOut:
    return ProjectionOut(
        start=projection.start,
        end=projection.end,
        starting_balance=cents_to_amount(projection.starting_balance_cents),
        final_balance=cents_to_amount(projection.final_balance_cents),
        first_negative_date=projection.first_negative_date,
        points=[
            ProjectionPointOut(date=point.date, balance=cents_to_amount(point.balance_cents))
            for point in projection.points
        ],
    )


@app.get("/api/projection", response_model=ProjectionOut)
def api_projection(
    request: Request,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    window = window_from_request(request)
    try:
        projection = ProjectionService(db).project(window, account_id=account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return projection_payload(projection)


@app.get("/api/projection/alert", response_model=Optional[BalanceAlertOut])
def api_projection_alert(db: Session = Depends(get_db)):
    alert = ProjectionService(db).alert()
    if alert is None:
        return None
    return BalanceAlertOut(
        first_negative_date=alert.first_negative_date,
        days_until=alert.days_until,
        projected_balance=cents_to_amount(alert.projected_balance_cents),
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: int, payload: TransactionEditIn, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).update(transaction_id, payload.data, payload.scope)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions/{transaction_id}/toggle-paid", response_model=TransactionOut)
def api_toggle_paid(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).toggle_paid(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/recurrence-rules/{rule_id}/extend")
def api_extend_rule(
    rule_id: str, horizon_months: Optional[int] = None, db: Session = Depends(get_db)
):
    try:
        created = RecurrenceRuleService(db).extend(rule_id, horizon_months)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"rule_id": rule_id, "created": created}


@app.post("/api/recurrence-rules/{rule_id}/deactivate")
def api_deactivate_rule(
    rule_id: str, cancel_pending: bool = False, db: Session = Depends(get_db)
):
    try:
        rule = RecurrenceRuleService(db).deactivate(rule_id, cancel_pending=cancel_pending)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"rule_id": rule.id, "active": rule.active}
