import logging
from datetime import date
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from vendorpoint.clock import Clock, system_clock
from vendorpoint.config import settings
from vendorpoint.db import unit_of_work
from vendorpoint.errors import (
    AlreadySettled,
    InvalidTransition,
    NotFound,
    UnknownWallet,
)
from vendorpoint.ledger import append_entry, default_wallet, to_money, wallet_key
from vendorpoint.locks import locks
from vendorpoint.models import Client, Cost, CostStatus, Wallet, WalletTransaction
from vendorpoint.recurrence import check_recurrence
from vendorpoint.schemas import CostCreate

logger = logging.getLogger(__name__)


def cost_key(cost_id: int) -> tuple[str, int]:
    return ("costs", cost_id)


def cost_reference(cost_id: int) -> str:
    return f"cost:{cost_id}"


def _reference_number() -> str:
    return f"COST-{uuid4().hex[:12].upper()}"


def get_cost(db: Session, cost_id: int) -> Cost:
    cost = db.get(Cost, cost_id)
    if cost is None:
        raise NotFound(f"cost {cost_id} not found")
    return cost


def designated_wallet(db: Session, cost: Cost) -> Wallet:
    if cost.wallet_id is None:
        return default_wallet(db, cost.client_id)
    wallet = db.get(Wallet, cost.wallet_id)
    if wallet is None or not wallet.is_active or wallet.client_id != cost.client_id:
        raise UnknownWallet(f"wallet {cost.wallet_id} is not an active wallet of client {cost.client_id}")
    return wallet


def _settle(db: Session, cost: Cost, wallet_id: int, clock: Clock) -> WalletTransaction:
    entry = append_entry(
        db,
        wallet_id,
        -cost.amount,
        cost_reference(cost.id),
        currency=cost.currency,
        category="cost",
        description=cost.title,
        clock=clock,
    )
    now = clock.now()
    cost.status = CostStatus.PAID
    cost.paid_at = now
    cost.updated_at = now
    return entry


def record_cost(db: Session, payload: CostCreate, clock: Clock = system_clock) -> int:
    """Record a cost; one recorded as already paid is settled in the same unit."""
    check_recurrence(
        payload.is_recurring,
        payload.recurrence_type,
        payload.due_date,
        payload.recurrence_end_date,
    )
    if payload.status is CostStatus.OVERDUE:
        raise InvalidTransition("a new cost starts pending or paid")
    if db.get(Client, payload.client_id) is None:
        raise NotFound(f"client {payload.client_id} not found")
    cost = Cost(
        client_id=payload.client_id,
        wallet_id=payload.wallet_id,
        title=payload.title,
        amount=to_money(payload.amount),
        currency=(payload.currency or settings.default_currency).upper(),
        category=payload.category,
        payment_method=payload.payment_method,
        status=CostStatus.PENDING,
        due_date=payload.due_date,
        description=payload.description,
        reference_number=_reference_number(),
        is_recurring=payload.is_recurring,
        recurrence_type=payload.recurrence_type,
        recurrence_end_date=payload.recurrence_end_date,
        created_at=clock.now(),
    )
    if payload.status is CostStatus.PAID:
        wallet = designated_wallet(db, cost)
        with locks.hold(wallet_key(wallet.id)):
            with unit_of_work(db):
                db.add(cost)
                db.flush()
                _settle(db, cost, wallet.id, clock)
    else:
        with unit_of_work(db):
            db.add(cost)
    logger.info("recorded cost %s (%s) for client %s", cost.id, cost.status.value, cost.client_id)
    return cost.id


def mark_paid(db: Session, cost_id: int, clock: Clock = system_clock) -> int:
    """Settle a pending or overdue cost against its wallet; returns the entry id."""
    cost = get_cost(db, cost_id)
    with locks.hold(cost_key(cost_id)):
        db.refresh(cost)
        if cost.status is CostStatus.PAID:
            raise AlreadySettled(f"cost {cost_id} is already paid")
        wallet = designated_wallet(db, cost)
        with locks.hold(wallet_key(wallet.id)):
            with unit_of_work(db):
                entry = _settle(db, cost, wallet.id, clock)
    logger.info("cost %s paid from wallet %s", cost_id, wallet.id)
    return entry.id


def overdue_candidates(db: Session, as_of: date) -> list[int]:
    return db.execute(
        select(Cost.id)
        .where(
            Cost.status == CostStatus.PENDING,
            Cost.due_date.is_not(None),
            Cost.due_date < as_of,
        )
        .order_by(Cost.id)
    ).scalars().all()


def mark_overdue(db: Session, cost_id: int, clock: Clock = system_clock) -> bool:
    """Flip one cost to overdue if it is still pending; False when it was not."""
    with locks.hold(cost_key(cost_id)):
        with unit_of_work(db):
            result = db.execute(
                update(Cost)
                .where(Cost.id == cost_id, Cost.status == CostStatus.PENDING)
                .values(status=CostStatus.OVERDUE, updated_at=clock.now())
                .execution_options(synchronize_session="fetch")
            )
    return bool(result.rowcount)


def sweep_overdue(db: Session, as_of: date, clock: Clock = system_clock) -> list[int]:
    """Move pending costs due before ``as_of`` to overdue; returns the ids moved."""
    moved = [
        cost_id
        for cost_id in overdue_candidates(db, as_of)
        if mark_overdue(db, cost_id, clock=clock)
    ]
    if moved:
        logger.info("marked %d costs overdue as of %s", len(moved), as_of)
    return moved


def reopen(db: Session, cost_id: int, due_date: date, clock: Clock = system_clock) -> Cost:
    """Correct an overdue cost back to pending with a new due date."""
    cost = get_cost(db, cost_id)
    with locks.hold(cost_key(cost_id)):
        with unit_of_work(db):
            db.refresh(cost)
            if cost.status is not CostStatus.OVERDUE:
                raise InvalidTransition(f"cost {cost_id} is {cost.status.value}, not overdue")
            cost.status = CostStatus.PENDING
            cost.due_date = due_date
            cost.updated_at = clock.now()
    return cost


def cost_stats(db: Session, client_id: int, category: Optional[str] = None) -> dict:
    query = select(Cost.status, func.count(), func.coalesce(func.sum(Cost.amount), 0)).where(
        Cost.client_id == client_id
    )
    if category is not None:
        query = query.where(Cost.category == category)
    by_status = {
        status.value: {"count": count, "total": to_money(total)}
        for status, count, total in db.execute(query.group_by(Cost.status)).all()
    }
    by_category = {
        name: to_money(total)
        for name, total in db.execute(
            select(Cost.category, func.coalesce(func.sum(Cost.amount), 0))
            .where(Cost.client_id == client_id)
            .group_by(Cost.category)
            .order_by(Cost.category)
        ).all()
    }
    return {"by_status": by_status, "by_category": by_category}
