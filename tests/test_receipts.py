from datetime import datetime, timezone
from decimal import Decimal

import pytest

from vendorpoint import ledger, receipts, reconciliation
from vendorpoint.errors import AmbiguousCustomer, InvalidTransition, TotalMismatch, UnknownWallet
from vendorpoint.models import OrderSource, OrderStatus, WalletType
from vendorpoint.schemas import ReceiptCreate


def test_public_order_with_buyer_name_succeeds(db, clock) -> None:
    receipt = receipts.create(
        db,
        ReceiptCreate(customer_name="Alice", total=Decimal("50"), source=OrderSource.WEBSITE),
        clock=clock,
    )

    assert receipt.order_status is OrderStatus.PENDING
    assert receipt.is_anonymous
    assert receipt.total == receipt.total_amount == Decimal("50.00")
    assert receipt.receipt_number == "R202401150001"


def test_receipt_numbers_follow_a_daily_sequence(db, clock) -> None:
    first = receipts.create(db, ReceiptCreate(customer_name="A", total=Decimal("1")), clock=clock)
    second = receipts.create(db, ReceiptCreate(customer_name="B", total=Decimal("2")), clock=clock)
    assert (first.receipt_number, second.receipt_number) == ("R202401150001", "R202401150002")

    clock.advance_to(datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc))
    next_day = receipts.create(db, ReceiptCreate(customer_name="C", total=Decimal("3")), clock=clock)
    assert next_day.receipt_number == "R202401160001"


def test_receipt_needs_exactly_one_kind_of_customer(db, clock, make_client) -> None:
    with pytest.raises(AmbiguousCustomer):
        receipts.create(db, ReceiptCreate(total=Decimal("50")), clock=clock)
    with pytest.raises(AmbiguousCustomer):
        receipts.create(
            db,
            ReceiptCreate(client_id=make_client(), customer_name="Alice", total=Decimal("50")),
            clock=clock,
        )


def test_complete_client_receipt_credits_default_wallet(db, clock, make_client) -> None:
    client_id = make_client()
    wallet = ledger.create_wallet(db, client_id, "Till", is_default=True, clock=clock)
    receipt = receipts.create(db, ReceiptCreate(client_id=client_id, total=Decimal("80")), clock=clock)

    entry_id = reconciliation.complete_receipt(db, receipt.id, clock=clock)

    done = receipts.get_receipt(db, receipt.id)
    assert done.order_status is OrderStatus.COMPLETED
    assert done.completed_at is not None
    assert ledger.balance(db, wallet.id) == Decimal("80.00")
    [entry] = ledger.entries(db, wallet.id)
    assert entry.id == entry_id
    assert entry.reference_number == receipts.receipt_reference(receipt.id)
    assert entry.category == "revenue"


def test_public_receipt_lands_in_house_wallet(db, clock) -> None:
    receipt = receipts.create(db, ReceiptCreate(customer_name="Alice", total=Decimal("50")), clock=clock)

    reconciliation.complete_receipt(db, receipt.id, clock=clock)

    house = ledger.house_wallet(db, create=False)
    assert house.wallet_type is WalletType.HOUSE
    assert ledger.balance(db, house.id) == Decimal("50.00")


def test_terminal_states_reject_transitions(db, clock) -> None:
    completed = receipts.create(db, ReceiptCreate(customer_name="A", total=Decimal("5")), clock=clock)
    reconciliation.complete_receipt(db, completed.id, clock=clock)
    with pytest.raises(InvalidTransition):
        reconciliation.complete_receipt(db, completed.id, clock=clock)
    with pytest.raises(InvalidTransition):
        receipts.cancel(db, completed.id, clock=clock)

    cancelled = receipts.cancel(
        db,
        receipts.create(db, ReceiptCreate(customer_name="B", total=Decimal("5")), clock=clock).id,
        clock=clock,
    )
    assert cancelled.order_status is OrderStatus.CANCELLED
    with pytest.raises(InvalidTransition):
        reconciliation.complete_receipt(db, cancelled.id, clock=clock)

    house = ledger.house_wallet(db, create=False)
    assert ledger.balance(db, house.id) == Decimal("5.00")


def test_diverging_totals_block_completion(db, clock) -> None:
    receipt = receipts.create(db, ReceiptCreate(customer_name="A", total=Decimal("50")), clock=clock)
    receipt.total = Decimal("60")
    db.commit()

    with pytest.raises(TotalMismatch):
        reconciliation.complete_receipt(db, receipt.id, clock=clock)
    assert receipts.get_receipt(db, receipt.id, fresh=True).order_status is OrderStatus.PENDING


def test_client_without_wallet_keeps_receipt_pending(db, clock, make_client) -> None:
    receipt = receipts.create(db, ReceiptCreate(client_id=make_client(), total=Decimal("9")), clock=clock)

    with pytest.raises(UnknownWallet):
        reconciliation.complete_receipt(db, receipt.id, clock=clock)
    assert receipts.get_receipt(db, receipt.id, fresh=True).order_status is OrderStatus.PENDING


def test_order_stats(db, clock) -> None:
    done = receipts.create(db, ReceiptCreate(customer_name="A", total=Decimal("30")), clock=clock)
    reconciliation.complete_receipt(db, done.id, clock=clock)
    receipts.create(db, ReceiptCreate(customer_name="B", total=Decimal("20")), clock=clock)
    receipts.create(
        db, ReceiptCreate(customer_name="C", total=Decimal("15"), source=OrderSource.WEBSITE), clock=clock
    )

    stats = receipts.order_stats(db)
    assert stats["pending_orders"] == 2
    assert stats["completed_orders"] == 1
    assert stats["expected_cash"] == Decimal("35.00")
    assert stats["collected_cash"] == Decimal("30.00")
    assert receipts.order_stats(db, source=OrderSource.WEBSITE)["pending_orders"] == 1
