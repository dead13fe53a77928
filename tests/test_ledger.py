from decimal import Decimal

import pytest
from sqlalchemy import update

from vendorpoint import ledger
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
from vendorpoint.models import TransactionType, Wallet, WalletType


def _wallet(db, client_id, clock, **kwargs):
    kwargs.setdefault("currency", "EGP")
    return ledger.create_wallet(db, client_id, kwargs.pop("name", "Drawer"), clock=clock, **kwargs)


def test_balance_is_sum_of_entries(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock)
    ledger.post(db, wallet.id, Decimal("100.00"), "sale:1", clock=clock)
    ledger.post(db, wallet.id, Decimal("-30.25"), "refund:1", clock=clock)
    ledger.post(db, wallet.id, "12.5", "sale:2", clock=clock)

    assert ledger.balance(db, wallet.id) == Decimal("82.25")
    amounts = [e.amount for e in ledger.entries(db, wallet.id)]
    assert sum(amounts) == Decimal("82.25")


def test_opening_balance_is_an_entry(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock, initial_balance=Decimal("250"))

    rows = ledger.entries(db, wallet.id)
    assert [(r.reference_number, r.category) for r in rows] == [(f"opening:{wallet.id}", "opening")]
    assert ledger.balance(db, wallet.id) == Decimal("250.00")


def test_create_wallet_for_missing_client(db, clock) -> None:
    with pytest.raises(NotFound):
        _wallet(db, 999, clock)


def test_duplicate_posting_leaves_balance_unchanged(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock)
    ledger.post(db, wallet.id, Decimal("40"), "receipt:7", clock=clock)

    with pytest.raises(DuplicatePosting):
        ledger.post(db, wallet.id, Decimal("40"), "receipt:7", clock=clock)

    assert ledger.balance(db, wallet.id) == Decimal("40.00")
    assert len(ledger.entries(db, wallet.id)) == 1


def test_zero_amount_rejected(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock)
    with pytest.raises(InvalidAmount):
        ledger.post(db, wallet.id, 0, "noop:1", clock=clock)


def test_currency_mismatch(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock)
    with pytest.raises(CurrencyMismatch):
        ledger.post(db, wallet.id, Decimal("5"), "sale:usd", currency="USD", clock=clock)
    assert ledger.entries(db, wallet.id) == []


def test_unknown_and_inactive_wallet(db, clock, make_client) -> None:
    with pytest.raises(UnknownWallet):
        ledger.post(db, 4242, Decimal("1"), "sale:x", clock=clock)

    wallet = _wallet(db, make_client(), clock)
    ledger.deactivate_wallet(db, wallet.id, clock=clock)
    with pytest.raises(UnknownWallet):
        ledger.post(db, wallet.id, Decimal("1"), "sale:y", clock=clock)


def test_deactivate_refuses_positive_balance(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock, initial_balance=Decimal("10"))
    with pytest.raises(WalletNotEmpty):
        ledger.deactivate_wallet(db, wallet.id, clock=clock)
    assert db.get(Wallet, wallet.id).is_active


def test_drift_is_detected(db, clock, make_client) -> None:
    wallet = _wallet(db, make_client(), clock, initial_balance=Decimal("10"))
    db.execute(update(Wallet).where(Wallet.id == wallet.id).values(balance=Decimal("999")))
    db.commit()

    with pytest.raises(BalanceDrift):
        ledger.balance(db, wallet.id)


def test_transfer_moves_money_between_wallets(db, clock, make_client) -> None:
    client_id = make_client()
    source = _wallet(db, client_id, clock, name="Cash", initial_balance=Decimal("100"))
    target = _wallet(db, client_id, clock, name="Bank")

    out_entry, in_entry = ledger.transfer(db, source.id, target.id, Decimal("40"), reference="T1", clock=clock)

    assert out_entry.transaction_type is TransactionType.TRANSFER
    assert out_entry.reference_number == "transfer:T1:out"
    assert in_entry.reference_number == "transfer:T1:in"
    assert ledger.balance(db, source.id) == Decimal("60.00")
    assert ledger.balance(db, target.id) == Decimal("40.00")

    with pytest.raises(InsufficientFunds):
        ledger.transfer(db, source.id, target.id, Decimal("100"), clock=clock)
    with pytest.raises(DuplicatePosting):
        ledger.transfer(db, source.id, target.id, Decimal("1"), reference="T1", clock=clock)
    assert ledger.balance(db, source.id) == Decimal("60.00")


def test_transfer_across_currencies_rejected(db, clock, make_client) -> None:
    client_id = make_client()
    source = _wallet(db, client_id, clock, initial_balance=Decimal("100"))
    target = _wallet(db, client_id, clock, currency="USD")
    with pytest.raises(CurrencyMismatch):
        ledger.transfer(db, source.id, target.id, Decimal("10"), clock=clock)


def test_default_wallet_prefers_flagged_wallet(db, clock, make_client) -> None:
    client_id = make_client()
    _wallet(db, client_id, clock, name="First")
    flagged = _wallet(db, client_id, clock, name="Main", is_default=True)
    assert ledger.default_wallet(db, client_id).id == flagged.id


def test_house_wallet_created_once(db, clock) -> None:
    first = ledger.house_wallet(db, clock=clock)
    db.commit()
    second = ledger.house_wallet(db, clock=clock)

    assert first.id == second.id
    assert first.wallet_type is WalletType.HOUSE
    assert first.client_id is None
    with pytest.raises(UnknownWallet):
        ledger.default_wallet(db, 12345)


def test_wallet_stats(db, clock, make_client) -> None:
    client_id = make_client()
    wallet = _wallet(db, client_id, clock, initial_balance=Decimal("100"))
    ledger.post(db, wallet.id, Decimal("-30"), "cost:1", clock=clock)

    stats = ledger.wallet_stats(db, client_id)
    assert stats == {
        "total_balance": Decimal("70.00"),
        "total_revenue": Decimal("100.00"),
        "total_expenses": Decimal("30.00"),
        "net_balance": Decimal("70.00"),
    }
