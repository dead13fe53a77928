"""Wallet ledger.

Balances are a cache over ``wallet_transactions``: every change to a wallet's
balance goes through :func:`append_entry`, which inserts the entry and then
recomputes the balance from the full entry set in the same transaction.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vendorpoint.clock import Clock, system_clock
from vendorpoint.config import settings
from vendorpoint.db import unit_of_work
from vendorpoint.errors import (
    BalanceDrift,
    CurrencyMismatch,
    DuplicatePosting,
    InsufficientFunds,
    InvalidAmount,
    NotFound,
    UnknownWallet,
    WalletNotEmpty,
)
from vendorpoint.locks import locks
from vendorpoint.models import Client, TransactionType, Wallet, WalletTransaction, WalletType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


HOUSE_WALLET_KEY = ("wallet", "house")


def wallet_key(wallet_id: int) -> tuple[str, int]:
    return ("wallet", wallet_id)


def _entries_total(db: Session, wallet_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.wallet_id == wallet_id
        )
    ).scalar_one()
    return to_money(total)


def _active_wallet(db: Session, wallet_id: int) -> Wallet:
    wallet = db.get(Wallet, wallet_id, populate_existing=True, with_for_update=True)
    if wallet is None or not wallet.is_active:
        raise UnknownWallet(f"wallet {wallet_id} does not exist or is inactive")
    return wallet


def reference_exists(db: Session, source_ref: str) -> bool:
    found = db.execute(
        select(WalletTransaction.id).where(WalletTransaction.reference_number == source_ref)
    ).first()
    return found is not None


def append_entry(
    db: Session,
    wallet_id: int,
    amount: Any,
    source_ref: str,
    *,
    currency: Optional[str] = None,
    category: str = "general",
    description: Optional[str] = None,
    transaction_type: Optional[TransactionType] = None,
    clock: Clock = system_clock,
) -> WalletTransaction:
    """Add one entry and refresh the cached balance without committing.

    Callers hold the wallet lock and own the surrounding unit of work.
    """
    amount = to_money(amount)
    if amount == ZERO:
        raise InvalidAmount("ledger entries must be non-zero")
    wallet = _active_wallet(db, wallet_id)
    if currency is not None and currency.upper() != wallet.currency:
        raise CurrencyMismatch(
            f"entry currency {currency.upper()} does not match wallet currency {wallet.currency}"
        )
    if reference_exists(db, source_ref):
        raise DuplicatePosting(f"{source_ref} is already posted")
    if transaction_type is None:
        transaction_type = TransactionType.CREDIT if amount > 0 else TransactionType.DEBIT

    now = clock.now()
    entry = WalletTransaction(
        client_id=wallet.client_id,
        wallet_id=wallet.id,
        transaction_type=transaction_type,
        amount=amount,
        currency=wallet.currency,
        category=category,
        description=description,
        reference_number=source_ref,
        created_at=now,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as exc:
        # another wallet's lock holder won the race for this reference
        raise DuplicatePosting(f"{source_ref} is already posted") from exc
    wallet.balance = _entries_total(db, wallet.id)
    wallet.updated_at = now
    db.flush()
    logger.info(
        "posted %s %s to wallet %s (%s), balance %s",
        amount,
        wallet.currency,
        wallet.id,
        source_ref,
        wallet.balance,
    )
    return entry


def post(
    db: Session,
    wallet_id: int,
    amount: Any,
    source_ref: str,
    *,
    currency: Optional[str] = None,
    category: str = "general",
    description: Optional[str] = None,
    clock: Clock = system_clock,
) -> int:
    with locks.hold(wallet_key(wallet_id)):
        with unit_of_work(db):
            entry = append_entry(
                db,
                wallet_id,
                amount,
                source_ref,
                currency=currency,
                category=category,
                description=description,
                clock=clock,
            )
    return entry.id


def balance(db: Session, wallet_id: int) -> Decimal:
    """Return the cached balance, checked against the wallet's entries.

    Both values come from one statement so a concurrent posting is seen either
    completely or not at all.
    """
    entries_total = (
        select(func.coalesce(func.sum(WalletTransaction.amount), 0))
        .where(WalletTransaction.wallet_id == Wallet.id)
        .scalar_subquery()
    )
    row = db.execute(
        select(Wallet.balance, entries_total).where(Wallet.id == wallet_id)
    ).first()
    if row is None:
        raise UnknownWallet(f"wallet {wallet_id} does not exist")
    cached, summed = to_money(row[0]), to_money(row[1])
    if cached != summed:
        logger.error("wallet %s balance %s drifted from entries %s", wallet_id, cached, summed)
        raise BalanceDrift(f"wallet {wallet_id} balance {cached} != entries {summed}")
    return cached


def entries(db: Session, wallet_id: int, limit: int = 50, cursor: Optional[int] = None) -> list[WalletTransaction]:
    query = db.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet_id)
    if cursor is not None:
        query = query.filter(WalletTransaction.id > cursor)
    return query.order_by(WalletTransaction.id).limit(limit).all()


def create_wallet(
    db: Session,
    client_id: Optional[int],
    name: str,
    *,
    wallet_type: WalletType = WalletType.CUSTOM,
    currency: Optional[str] = None,
    initial_balance: Any = 0,
    color: Optional[str] = None,
    description: Optional[str] = None,
    is_default: bool = False,
    clock: Clock = system_clock,
) -> Wallet:
    """Create a wallet; an initial balance is booked as an opening entry."""
    if client_id is not None and db.get(Client, client_id) is None:
        raise NotFound(f"client {client_id} not found")
    with unit_of_work(db):
        if is_default and client_id is not None:
            db.execute(
                update(Wallet).where(Wallet.client_id == client_id).values(is_default=False)
            )
        wallet = Wallet(
            client_id=client_id,
            name=name,
            balance=ZERO,
            wallet_type=wallet_type,
            currency=(currency or settings.default_currency).upper(),
            color=color or "#10B981",
            description=description,
            is_default=is_default,
            is_active=True,
            created_at=clock.now(),
        )
        db.add(wallet)
        db.flush()
        opening = to_money(initial_balance)
        if opening != ZERO:
            append_entry(
                db,
                wallet.id,
                opening,
                f"opening:{wallet.id}",
                category="opening",
                description="Opening balance",
                clock=clock,
            )
    logger.info("created wallet %s for client %s", wallet.id, client_id)
    return wallet


def deactivate_wallet(db: Session, wallet_id: int, clock: Clock = system_clock) -> Wallet:
    with locks.hold(wallet_key(wallet_id)):
        with unit_of_work(db):
            wallet = _active_wallet(db, wallet_id)
            if wallet.balance > ZERO:
                raise WalletNotEmpty(f"wallet {wallet_id} still holds {wallet.balance}")
            wallet.is_active = False
            wallet.is_default = False
            wallet.updated_at = clock.now()
    logger.info("deactivated wallet %s", wallet_id)
    return wallet


def transfer(
    db: Session,
    from_wallet_id: int,
    to_wallet_id: int,
    amount: Any,
    *,
    reference: Optional[str] = None,
    description: Optional[str] = None,
    clock: Clock = system_clock,
) -> tuple[WalletTransaction, WalletTransaction]:
    amount = to_money(amount)
    if amount <= ZERO:
        raise InvalidAmount("transfer amount must be positive")
    if from_wallet_id == to_wallet_id:
        raise InvalidAmount("cannot transfer to the same wallet")
    reference = reference or uuid4().hex[:12].upper()
    with locks.hold(wallet_key(from_wallet_id), wallet_key(to_wallet_id)):
        with unit_of_work(db):
            source = _active_wallet(db, from_wallet_id)
            target = _active_wallet(db, to_wallet_id)
            if source.currency != target.currency:
                raise CurrencyMismatch(
                    f"cannot transfer {source.currency} into a {target.currency} wallet"
                )
            if source.balance < amount:
                raise InsufficientFunds(f"wallet {from_wallet_id} holds {source.balance}")
            out_entry = append_entry(
                db,
                source.id,
                -amount,
                f"transfer:{reference}:out",
                category="transfer",
                description=description,
                transaction_type=TransactionType.TRANSFER,
                clock=clock,
            )
            in_entry = append_entry(
                db,
                target.id,
                amount,
                f"transfer:{reference}:in",
                category="transfer",
                description=description,
                transaction_type=TransactionType.TRANSFER,
                clock=clock,
            )
    return out_entry, in_entry


def default_wallet(db: Session, client_id: int) -> Wallet:
    wallet = db.execute(
        select(Wallet)
        .where(Wallet.client_id == client_id, Wallet.is_active.is_(True))
        .order_by(Wallet.is_default.desc(), Wallet.id)
        .limit(1)
    ).scalar_one_or_none()
    if wallet is None:
        raise UnknownWallet(f"client {client_id} has no active wallet")
    return wallet


def _find_house_wallet(db: Session) -> Optional[Wallet]:
    return db.execute(
        select(Wallet)
        .where(Wallet.wallet_type == WalletType.HOUSE, Wallet.is_active.is_(True))
        .order_by(Wallet.id)
        .limit(1)
    ).scalar_one_or_none()


def house_wallet(db: Session, create: bool = True, clock: Clock = system_clock) -> Wallet:
    """Wallet collecting orders from anonymous website buyers.

    Lookup and creation happen under one lock and the new wallet is committed
    before the lock is released, so concurrent callers all get the same row.
    Across processes the partial unique index on active house wallets decides
    the winner and the loser re-reads.
    """
    with locks.hold(HOUSE_WALLET_KEY):
        wallet = _find_house_wallet(db)
        if wallet is not None:
            return wallet
        if not create:
            raise UnknownWallet("no active house wallet")
        wallet = Wallet(
            client_id=None,
            name=settings.house_wallet_name,
            balance=ZERO,
            wallet_type=WalletType.HOUSE,
            currency=settings.default_currency.upper(),
            is_active=True,
            created_at=clock.now(),
        )
        try:
            with unit_of_work(db):
                db.add(wallet)
        except IntegrityError:
            wallet = _find_house_wallet(db)
            if wallet is None:
                raise
            return wallet
    logger.info("created house wallet %s", wallet.id)
    return wallet


def wallet_stats(db: Session, client_id: int) -> dict:
    total_balance = db.execute(
        select(func.coalesce(func.sum(Wallet.balance), 0)).where(
            Wallet.client_id == client_id, Wallet.is_active.is_(True)
        )
    ).scalar_one()
    credits = db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.client_id == client_id,
            WalletTransaction.transaction_type == TransactionType.CREDIT,
        )
    ).scalar_one()
    debits = db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.client_id == client_id,
            WalletTransaction.transaction_type == TransactionType.DEBIT,
        )
    ).scalar_one()
    credits, debits = to_money(credits), abs(to_money(debits))
    return {
        "total_balance": to_money(total_balance),
        "total_revenue": credits,
        "total_expenses": debits,
        "net_balance": credits - debits,
    }
