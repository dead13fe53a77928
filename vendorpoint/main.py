from __future__ import annotations

from datetime import date
from typing import Callable, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from vendorpoint import bookings, costs, ledger, receipts, reconciliation, recurrence
from vendorpoint.auth import Portal, Principal, require_capability
from vendorpoint.clock import Clock, system_clock, today
from vendorpoint.config import configure_logging
from vendorpoint.db import SessionLocal
from vendorpoint.errors import LedgerError
from vendorpoint.models import Booking, Cost, OrderSource, Receipt, Wallet, WalletTransaction
from vendorpoint.schemas import (
    BookingCreate,
    CostCreate,
    CostReopen,
    PostingCreate,
    ReceiptCreate,
    TickRequest,
    TransferCreate,
    WalletCreate,
)

configure_logging()

app = FastAPI(title="Vendorpoint Ledger")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_clock() -> Clock:
    return system_clock


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _money(value) -> Optional[str]:
    return str(ledger.to_money(value)) if value is not None else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _wallet_data(wallet: Wallet, balance=None) -> dict:
    return {
        "wallet_id": wallet.id,
        "client_id": wallet.client_id,
        "name": wallet.name,
        "wallet_type": wallet.wallet_type.value,
        "currency": wallet.currency,
        "balance": _money(wallet.balance if balance is None else balance),
        "color": wallet.color,
        "description": wallet.description,
        "is_default": wallet.is_default,
        "is_active": wallet.is_active,
    }


def _entry_data(entry: WalletTransaction) -> dict:
    return {
        "entry_id": entry.id,
        "wallet_id": entry.wallet_id,
        "transaction_type": entry.transaction_type.value,
        "amount": _money(entry.amount),
        "currency": entry.currency,
        "category": entry.category,
        "description": entry.description,
        "source_ref": entry.reference_number,
        "created_at": _iso(entry.created_at),
    }


def _cost_data(cost: Cost) -> dict:
    return {
        "cost_id": cost.id,
        "client_id": cost.client_id,
        "wallet_id": cost.wallet_id,
        "title": cost.title,
        "amount": _money(cost.amount),
        "currency": cost.currency,
        "category": cost.category,
        "payment_method": cost.payment_method,
        "status": cost.status.value,
        "due_date": _iso(cost.due_date),
        "reference_number": cost.reference_number,
        "is_recurring": cost.is_recurring,
        "recurrence_type": cost.recurrence_type.value if cost.recurrence_type else None,
        "recurrence_end_date": _iso(cost.recurrence_end_date),
        "parent_cost_id": cost.parent_cost_id,
        "last_generated_date": _iso(cost.last_generated_date),
        "paid_at": _iso(cost.paid_at),
    }


def _receipt_data(receipt: Receipt) -> dict:
    return {
        "receipt_id": receipt.id,
        "receipt_number": receipt.receipt_number,
        "client_id": receipt.client_id,
        "customer_name": receipt.customer_name,
        "customer_email": receipt.customer_email,
        "customer_phone": receipt.customer_phone,
        "customer_address": receipt.customer_address,
        "total_amount": _money(receipt.total_amount),
        "total": _money(receipt.total),
        "currency": receipt.currency,
        "payment_method": receipt.payment_method,
        "order_status": receipt.order_status.value,
        "source": receipt.source.value,
        "completed_at": _iso(receipt.completed_at),
        "cancelled_at": _iso(receipt.cancelled_at),
    }


def _booking_data(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "client_id": booking.client_id,
        "customer_id": booking.customer_id,
        "service_id": booking.service_id,
        "staff_id": booking.staff_id,
        "booking_date": booking.booking_date.isoformat(),
        "booking_time": booking.booking_time,
        "status": booking.status,
        "is_recurring": booking.is_recurring,
        "recurring_pattern": booking.recurring_pattern.value if booking.recurring_pattern else None,
        "recurring_end_date": _iso(booking.recurring_end_date),
        "parent_booking_id": booking.parent_booking_id,
        "last_generated_date": _iso(booking.last_generated_date),
    }


def _stats_data(stats: dict) -> dict:
    return {key: _money(value) if not isinstance(value, (int, dict)) else value for key, value in stats.items()}


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}, "meta": _meta()},
    )


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.post("/api/v1/wallets", tags=["Wallets"])
def create_wallet(
    payload: WalletCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="wallet.write")),
) -> dict:
    wallet = ledger.create_wallet(
        db,
        payload.client_id,
        payload.name,
        wallet_type=payload.wallet_type,
        currency=payload.currency,
        initial_balance=payload.initial_balance,
        color=payload.color,
        description=payload.description,
        is_default=payload.is_default,
        clock=clock,
    )
    return {"data": _wallet_data(wallet), "meta": _meta()}


@app.get("/api/v1/wallets/{wallet_id}", tags=["Wallets"])
def get_wallet(
    wallet_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(permission="wallet.read")),
) -> dict:
    verified = ledger.balance(db, wallet_id)
    wallet = db.get(Wallet, wallet_id)
    return {"data": _wallet_data(wallet, balance=verified), "meta": _meta()}


@app.delete("/api/v1/wallets/{wallet_id}", tags=["Wallets"])
def deactivate_wallet(
    wallet_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="wallet.write")),
) -> dict:
    wallet = ledger.deactivate_wallet(db, wallet_id, clock=clock)
    return {"data": _wallet_data(wallet), "meta": _meta()}


@app.get("/api/v1/wallets/{wallet_id}/entries", tags=["Wallets"])
def list_wallet_entries(
    wallet_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(permission="wallet.read")),
) -> dict:
    rows = ledger.entries(db, wallet_id, limit=limit + 1, cursor=cursor)
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return {"data": [_entry_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/wallets/{wallet_id}/entries", tags=["Wallets"])
def post_wallet_entry(
    wallet_id: int,
    payload: PostingCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="wallet.post")),
) -> dict:
    entry_id = ledger.post(
        db,
        wallet_id,
        payload.amount,
        payload.source_ref,
        currency=payload.currency,
        category=payload.category,
        description=payload.description,
        clock=clock,
    )
    return {
        "data": {"entry_id": entry_id, "wallet_id": wallet_id, "balance": _money(ledger.balance(db, wallet_id))},
        "meta": _meta(),
    }


@app.post("/api/v1/wallet-transfers", tags=["Wallets"])
def transfer_between_wallets(
    payload: TransferCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="wallet.post")),
) -> dict:
    out_entry, in_entry = ledger.transfer(
        db,
        payload.from_wallet_id,
        payload.to_wallet_id,
        payload.amount,
        reference=payload.reference,
        description=payload.description,
        clock=clock,
    )
    return {"data": {"out": _entry_data(out_entry), "in": _entry_data(in_entry)}, "meta": _meta()}


@app.get("/api/v1/clients/{client_id}/wallet-stats", tags=["Wallets"])
def get_wallet_stats(
    client_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(permission="wallet.read")),
) -> dict:
    return {"data": _stats_data(ledger.wallet_stats(db, client_id)), "meta": _meta()}


@app.post("/api/v1/costs", tags=["Costs"])
def create_cost(
    payload: CostCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="cost.write")),
) -> dict:
    cost_id = costs.record_cost(db, payload, clock=clock)
    return {"data": _cost_data(costs.get_cost(db, cost_id)), "meta": _meta()}


@app.post("/api/v1/costs/sweep-overdue", tags=["Costs"])
def sweep_overdue_costs(
    as_of: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="cost.write")),
) -> dict:
    as_of = as_of or today(clock)
    moved = costs.sweep_overdue(db, as_of, clock=clock)
    return {"data": {"as_of": as_of.isoformat(), "overdue_cost_ids": moved}, "meta": _meta()}


@app.get("/api/v1/costs/{cost_id}", tags=["Costs"])
def get_cost(
    cost_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(any_of=("cost.read", "cost.write"))),
) -> dict:
    return {"data": _cost_data(costs.get_cost(db, cost_id)), "meta": _meta()}


@app.post("/api/v1/costs/{cost_id}/pay", tags=["Costs"])
def pay_cost(
    cost_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="cost.write")),
) -> dict:
    entry_id = costs.mark_paid(db, cost_id, clock=clock)
    return {"data": {"entry_id": entry_id, **_cost_data(costs.get_cost(db, cost_id))}, "meta": _meta()}


@app.post("/api/v1/costs/{cost_id}/reopen", tags=["Costs"])
def reopen_cost(
    cost_id: int,
    payload: CostReopen,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="cost.write")),
) -> dict:
    cost = costs.reopen(db, cost_id, payload.due_date, clock=clock)
    return {"data": _cost_data(cost), "meta": _meta()}


@app.post("/api/v1/costs/{cost_id}/expand", tags=["Costs"])
def expand_cost(
    cost_id: int,
    as_of: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="cost.write")),
) -> dict:
    created = recurrence.expand(db, costs.get_cost(db, cost_id), as_of or today(clock), clock=clock)
    return {"data": [_cost_data(row) for row in created], "meta": _meta()}


@app.get("/api/v1/clients/{client_id}/cost-stats", tags=["Costs"])
def get_cost_stats(
    client_id: int,
    category: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(any_of=("cost.read", "cost.write"))),
) -> dict:
    stats = costs.cost_stats(db, client_id, category=category)
    by_status = {
        status: {"count": values["count"], "total": _money(values["total"])}
        for status, values in stats["by_status"].items()
    }
    by_category = {name: _money(total) for name, total in stats["by_category"].items()}
    return {"data": {"by_status": by_status, "by_category": by_category}, "meta": _meta()}


@app.post("/api/v1/receipts", tags=["Receipts"])
def create_receipt(
    payload: ReceiptCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="receipt.write")),
) -> dict:
    receipt = receipts.create(db, payload, clock=clock)
    return {"data": _receipt_data(receipt), "meta": _meta()}


@app.post("/api/v1/public/receipts", tags=["Receipts"])
def create_public_receipt(
    payload: ReceiptCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> dict:
    # website checkout: no staff session behind it, so never attributed to a client
    payload = payload.model_copy(update={"source": OrderSource.WEBSITE, "client_id": None})
    receipt = receipts.create(db, payload, clock=clock)
    return {"data": _receipt_data(receipt), "meta": _meta()}


@app.get("/api/v1/receipts/{receipt_id}", tags=["Receipts"])
def get_receipt(
    receipt_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(any_of=("receipt.read", "receipt.write"))),
) -> dict:
    return {"data": _receipt_data(receipts.get_receipt(db, receipt_id)), "meta": _meta()}


@app.post("/api/v1/receipts/{receipt_id}/complete", tags=["Receipts"])
def complete_receipt(
    receipt_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="receipt.write")),
) -> dict:
    entry_id = reconciliation.complete_receipt(db, receipt_id, clock=clock)
    return {
        "data": {"entry_id": entry_id, **_receipt_data(receipts.get_receipt(db, receipt_id))},
        "meta": _meta(),
    }


@app.post("/api/v1/receipts/{receipt_id}/cancel", tags=["Receipts"])
def cancel_receipt(
    receipt_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="receipt.write")),
) -> dict:
    receipt = receipts.cancel(db, receipt_id, clock=clock)
    return {"data": _receipt_data(receipt), "meta": _meta()}


@app.get("/api/v1/order-stats", tags=["Receipts"])
def get_order_stats(
    client_id: Optional[int] = Query(default=None),
    source: Optional[OrderSource] = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(any_of=("receipt.read", "receipt.write"))),
) -> dict:
    return {"data": _stats_data(receipts.order_stats(db, client_id=client_id, source=source)), "meta": _meta()}


@app.post("/api/v1/bookings", tags=["Bookings"])
def create_booking(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="booking.write")),
) -> dict:
    booking = bookings.create_booking(db, payload, clock=clock)
    return {"data": _booking_data(booking), "meta": _meta()}


@app.get("/api/v1/bookings/{booking_id}", tags=["Bookings"])
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_capability(any_of=("booking.read", "booking.write"))),
) -> dict:
    return {"data": _booking_data(bookings.get_booking(db, booking_id)), "meta": _meta()}


@app.post("/api/v1/bookings/{booking_id}/expand", tags=["Bookings"])
def expand_booking(
    booking_id: int,
    as_of: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(require_capability(permission="booking.write")),
) -> dict:
    created = recurrence.expand(db, bookings.get_booking(db, booking_id), as_of or today(clock), clock=clock)
    return {"data": [_booking_data(row) for row in created], "meta": _meta()}


@app.post("/api/v1/reconciliation/tick", tags=["Reconciliation"])
def run_tick(
    payload: TickRequest,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
    principal: Principal = Depends(
        require_capability(portal=Portal.ADMIN, permission="reconciliation.run")
    ),
) -> dict:
    report = reconciliation.tick(
        session_factory, as_of=payload.as_of, clock=clock, max_workers=payload.max_workers
    )
    warnings = [f"{f.entity} {f.entity_id}: {f.code}" for f in report.failures]
    return {"data": report.to_dict(), "meta": _meta(warnings=warnings)}
