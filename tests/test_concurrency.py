import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from vendorpoint import costs, ledger, reconciliation, receipts, recurrence
from vendorpoint.errors import DuplicatePosting, InvalidTransition, LedgerError
from vendorpoint.models import Client, Cost, RecurrencePattern, Wallet, WalletTransaction, WalletType
from vendorpoint.schemas import CostCreate, ReceiptCreate


def _race(count: int, target):
    """Run ``target(i)`` in ``count`` threads released together."""
    barrier = threading.Barrier(count)
    results, errors = [], []

    def run(i: int) -> None:
        barrier.wait()
        try:
            results.append(target(i))
        except LedgerError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors


def _house_wallet_count(session_factory) -> int:
    with session_factory() as db:
        return db.execute(
            select(func.count()).select_from(Wallet).where(Wallet.wallet_type == WalletType.HOUSE)
        ).scalar_one()


def test_parallel_public_orders_share_one_house_wallet(file_session_factory, clock) -> None:
    with file_session_factory() as db:
        receipt_ids = [
            receipts.create(db, ReceiptCreate(customer_name=name, total=total), clock=clock).id
            for name, total in (("Alice", Decimal("50")), ("Bob", Decimal("30")))
        ]

    def complete(i: int) -> int:
        with file_session_factory() as db:
            return reconciliation.complete_receipt(db, receipt_ids[i], clock=clock)

    results, errors = _race(2, complete)

    assert errors == []
    assert len(results) == 2
    assert _house_wallet_count(file_session_factory) == 1
    with file_session_factory() as db:
        house = ledger.house_wallet(db, create=False)
        assert ledger.balance(db, house.id) == Decimal("80.00")


def test_second_active_house_wallet_is_refused(db, clock) -> None:
    ledger.house_wallet(db, clock=clock)
    db.add(
        Wallet(
            client_id=None,
            name="Another till",
            wallet_type=WalletType.HOUSE,
            currency="EGP",
            is_active=True,
            created_at=clock.now(),
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()


def test_house_wallet_rereads_after_losing_the_insert(db, clock, monkeypatch) -> None:
    existing_id = ledger.house_wallet(db, clock=clock).id
    real_find = ledger._find_house_wallet
    calls = []

    def stale_first(session):
        calls.append(session)
        return None if len(calls) == 1 else real_find(session)

    monkeypatch.setattr(ledger, "_find_house_wallet", stale_first)

    assert ledger.house_wallet(db, clock=clock).id == existing_id
    assert len(calls) == 2


def test_concurrent_completions_of_one_receipt_have_one_winner(file_session_factory, clock) -> None:
    with file_session_factory() as db:
        receipt_id = receipts.create(
            db, ReceiptCreate(customer_name="Alice", total=Decimal("50")), clock=clock
        ).id

    def complete(_: int) -> int:
        with file_session_factory() as db:
            return reconciliation.complete_receipt(db, receipt_id, clock=clock)

    results, errors = _race(2, complete)

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], (InvalidTransition, DuplicatePosting))
    with file_session_factory() as db:
        posted = db.execute(
            select(func.count())
            .select_from(WalletTransaction)
            .where(WalletTransaction.reference_number == receipts.receipt_reference(receipt_id))
        ).scalar_one()
    assert posted == 1


def test_concurrent_expansions_never_duplicate_occurrences(file_session_factory, clock) -> None:
    with file_session_factory() as db:
        client = Client(name="Nile Bakery", created_at=clock.now())
        db.add(client)
        db.commit()
        rent_id = costs.record_cost(
            db,
            CostCreate(
                client_id=client.id,
                title="Rent",
                amount=Decimal("100"),
                category="rent",
                due_date=date(2024, 1, 31),
                is_recurring=True,
                recurrence_type=RecurrencePattern.MONTHLY,
                recurrence_end_date=date(2024, 4, 30),
            ),
            clock=clock,
        )

    def expand(_: int) -> int:
        with file_session_factory() as db:
            return len(recurrence.expand(db, db.get(Cost, rent_id), date(2024, 4, 15), clock=clock))

    results, errors = _race(4, expand)

    assert errors == []
    assert sorted(results) == [0, 0, 0, 2]
    with file_session_factory() as db:
        dates = db.execute(
            select(Cost.due_date).where(Cost.parent_cost_id == rent_id).order_by(Cost.due_date)
        ).scalars().all()
    assert dates == [date(2024, 2, 29), date(2024, 3, 31)]
