"""Receipt / order state machine shared by the POS and the public website.

``pending`` is the only non-terminal state: it moves to ``completed`` (which
books revenue through the reconciliation coordinator) or to ``cancelled``.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from vendorpoint.clock import Clock, system_clock
from vendorpoint.config import settings
from vendorpoint.db import unit_of_work
from vendorpoint.errors import (
    AmbiguousCustomer,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    TotalMismatch,
)
from vendorpoint.ledger import ZERO, default_wallet, house_wallet, to_money
from vendorpoint.locks import locks
from vendorpoint.models import Client, OrderSource, OrderStatus, Receipt, Wallet
from vendorpoint.schemas import ReceiptCreate

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ("customer_name", "customer_email", "customer_phone", "customer_address")


def receipt_key(receipt_id: int) -> tuple[str, int]:
    return ("receipts", receipt_id)


def receipt_reference(receipt_id: int) -> str:
    return f"receipt:{receipt_id}"


def _filled(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def check_customer(payload: ReceiptCreate) -> None:
    has_client = payload.client_id is not None
    has_contact = any(_filled(getattr(payload, name)) for name in CONTACT_FIELDS)
    if has_client and has_contact:
        raise AmbiguousCustomer("an order belongs to a client or to a public buyer, not both")
    if not has_client and not _filled(payload.customer_name):
        raise AmbiguousCustomer("an order without a client needs the buyer's name")


def set_total(receipt: Receipt, amount: Any) -> None:
    """The one writer of a receipt's total; keeps the legacy column in step."""
    total = to_money(amount)
    if total < ZERO:
        raise InvalidAmount("receipt total cannot be negative")
    receipt.total_amount = total
    receipt.total = total


def check_totals(receipt: Receipt) -> None:
    if to_money(receipt.total) != to_money(receipt.total_amount):
        raise TotalMismatch(
            f"receipt {receipt.id} total {receipt.total} differs from total_amount {receipt.total_amount}"
        )


def _receipt_number(db: Session, now: datetime) -> str:
    prefix = f"R{now:%Y%m%d}"
    last = db.execute(
        select(Receipt.receipt_number)
        .where(Receipt.receipt_number.like(f"{prefix}%"))
        .order_by(Receipt.receipt_number.desc())
        .limit(1)
    ).scalar_one_or_none()
    sequence = int(last[-4:]) + 1 if last else 1
    return f"{prefix}{sequence:04d}"


def create(db: Session, payload: ReceiptCreate, clock: Clock = system_clock) -> Receipt:
    check_customer(payload)
    if payload.client_id is not None and db.get(Client, payload.client_id) is None:
        raise NotFound(f"client {payload.client_id} not found")
    now = clock.now()
    receipt = Receipt(
        client_id=payload.client_id,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        customer_address=payload.customer_address,
        subtotal=to_money(payload.subtotal),
        tax=to_money(payload.tax),
        discount=to_money(payload.discount),
        currency=(payload.currency or settings.default_currency).upper(),
        payment_method=payload.payment_method,
        order_status=OrderStatus.PENDING,
        source=payload.source,
        notes=payload.notes,
        created_at=now,
    )
    set_total(receipt, payload.total)
    with unit_of_work(db):
        receipt.receipt_number = _receipt_number(db, now)
        db.add(receipt)
    logger.info(
        "created %s receipt %s for %s",
        receipt.source.value,
        receipt.receipt_number,
        "a public buyer" if receipt.is_anonymous else f"client {receipt.client_id}",
    )
    return receipt


def get_receipt(db: Session, receipt_id: int, fresh: bool = False) -> Receipt:
    receipt = db.get(Receipt, receipt_id, populate_existing=fresh)
    if receipt is None:
        raise NotFound(f"receipt {receipt_id} not found")
    return receipt


def check_pending(receipt: Receipt, target: OrderStatus) -> None:
    if receipt.order_status is not OrderStatus.PENDING:
        raise InvalidTransition(
            f"receipt {receipt.id} is {receipt.order_status.value}; cannot move to {target.value}"
        )


def resolve_wallet(db: Session, receipt: Receipt, clock: Clock = system_clock) -> Wallet:
    """Client orders credit the client's default wallet, public ones the house wallet."""
    if receipt.is_anonymous:
        return house_wallet(db, clock=clock)
    return default_wallet(db, receipt.client_id)


def mark_completed(receipt: Receipt, clock: Clock = system_clock) -> None:
    check_pending(receipt, OrderStatus.COMPLETED)
    now = clock.now()
    receipt.order_status = OrderStatus.COMPLETED
    receipt.completed_at = now
    receipt.updated_at = now


def cancel(db: Session, receipt_id: int, clock: Clock = system_clock) -> Receipt:
    with locks.hold(receipt_key(receipt_id)):
        with unit_of_work(db):
            receipt = get_receipt(db, receipt_id, fresh=True)
            check_pending(receipt, OrderStatus.CANCELLED)
            now = clock.now()
            receipt.order_status = OrderStatus.CANCELLED
            receipt.cancelled_at = now
            receipt.updated_at = now
    logger.info("cancelled receipt %s", receipt_id)
    return receipt


def order_stats(
    db: Session, client_id: Optional[int] = None, source: Optional[OrderSource] = None
) -> dict:
    query = select(
        Receipt.order_status, func.count(), func.coalesce(func.sum(Receipt.total_amount), 0)
    )
    if client_id is not None:
        query = query.where(Receipt.client_id == client_id)
    if source is not None:
        query = query.where(Receipt.source == source)
    rows = {
        status: (count, to_money(total))
        for status, count, total in db.execute(query.group_by(Receipt.order_status)).all()
    }
    pending_count, expected = rows.get(OrderStatus.PENDING, (0, ZERO))
    completed_count, collected = rows.get(OrderStatus.COMPLETED, (0, ZERO))
    cancelled_count, _ = rows.get(OrderStatus.CANCELLED, (0, ZERO))
    return {
        "pending_orders": pending_count,
        "completed_orders": completed_count,
        "cancelled_orders": cancelled_count,
        "expected_cash": expected,
        "collected_cash": collected,
    }
