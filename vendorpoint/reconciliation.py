"""Reconciliation coordinator.

Keeps receipts, costs and recurring series consistent with the wallet ledger:

* :func:`complete_receipt` flips a receipt to ``completed`` and books its
  revenue in one transaction, under the receipt and wallet locks.
* :func:`tick` is the scheduled sweep. It expands every recurring booking and
  cost, settles the recurring costs that have come due (the root's own due
  date included), then marks the remaining late costs overdue. One entity
  failing never stops the others.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from vendorpoint import costs, ledger, receipts, recurrence
from vendorpoint.clock import Clock, system_clock, today
from vendorpoint.config import settings
from vendorpoint.db import unit_of_work
from vendorpoint.locks import locks
from vendorpoint.models import Booking, Cost, CostStatus, OrderStatus

logger = logging.getLogger(__name__)


def complete_receipt(db: Session, receipt_id: int, clock: Clock = system_clock) -> int:
    """Complete a pending receipt and credit its wallet; returns the entry id."""
    with locks.hold(receipts.receipt_key(receipt_id)):
        receipt = receipts.get_receipt(db, receipt_id, fresh=True)
        receipts.check_pending(receipt, OrderStatus.COMPLETED)
        receipts.check_totals(receipt)
        wallet = receipts.resolve_wallet(db, receipt, clock=clock)
        with locks.hold(ledger.wallet_key(wallet.id)):
            with unit_of_work(db):
                receipts.mark_completed(receipt, clock=clock)
                entry = ledger.append_entry(
                    db,
                    wallet.id,
                    receipt.total_amount,
                    receipts.receipt_reference(receipt.id),
                    currency=receipt.currency,
                    category="revenue",
                    description=f"Receipt {receipt.receipt_number}",
                    clock=clock,
                )
    logger.info("completed receipt %s into wallet %s", receipt_id, wallet.id)
    return entry.id


@dataclass
class SweepFailure:
    entity: str
    entity_id: int
    code: str
    message: str


@dataclass
class SweepReport:
    as_of: date
    overdue_cost_ids: list[int] = field(default_factory=list)
    generated_booking_ids: list[int] = field(default_factory=list)
    generated_cost_ids: list[int] = field(default_factory=list)
    settled_cost_ids: list[int] = field(default_factory=list)
    failures: list[SweepFailure] = field(default_factory=list)
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        data = asdict(self)
        data["as_of"] = self.as_of.isoformat()
        return data


@dataclass
class _RootOutcome:
    generated: list[int] = field(default_factory=list)
    settled: list[int] = field(default_factory=list)
    failures: list[SweepFailure] = field(default_factory=list)
    skipped: bool = False


def _failure(entity: str, entity_id: int, exc: Exception) -> SweepFailure:
    return SweepFailure(
        entity=entity,
        entity_id=entity_id,
        code=getattr(exc, "code", "unexpected_error"),
        message=str(exc),
    )


def _recurring_roots(db: Session) -> list[tuple[str, int]]:
    booking_ids = db.execute(
        select(Booking.id)
        .where(Booking.is_recurring.is_(True), Booking.parent_booking_id.is_(None))
        .order_by(Booking.id)
    ).scalars().all()
    cost_ids = db.execute(
        select(Cost.id)
        .where(Cost.is_recurring.is_(True), Cost.parent_cost_id.is_(None))
        .order_by(Cost.id)
    ).scalars().all()
    return [("booking", i) for i in booking_ids] + [("cost", i) for i in cost_ids]


def _settles_on(root: Cost, as_of: date) -> bool:
    return (
        root.status in (CostStatus.PENDING, CostStatus.OVERDUE)
        and root.due_date is not None
        and root.due_date <= as_of
    )


def _process_root(
    session_factory: Callable[[], Session],
    kind: str,
    root_id: int,
    as_of: date,
    clock: Clock,
    stop: Optional[threading.Event],
) -> _RootOutcome:
    outcome = _RootOutcome()
    if stop is not None and stop.is_set():
        outcome.skipped = True
        return outcome
    model = Booking if kind == "booking" else Cost
    with session_factory() as db:
        try:
            root = db.get(model, root_id)
            created = recurrence.expand(db, root, as_of, clock=clock)
            outcome.generated = [row.id for row in created]
        except Exception as exc:
            logger.warning("sweep: %s %s failed to expand: %s", kind, root_id, exc)
            outcome.failures.append(_failure(kind, root_id, exc))
            return outcome
        if kind == "cost":
            due = [root.id] if _settles_on(root, as_of) else []
            for cost_id in due + outcome.generated:
                try:
                    costs.mark_paid(db, cost_id, clock=clock)
                    outcome.settled.append(cost_id)
                except Exception as exc:
                    logger.warning("sweep: cost %s could not be settled: %s", cost_id, exc)
                    outcome.failures.append(_failure("cost", cost_id, exc))
    return outcome


def tick(
    session_factory: Callable[[], Session],
    as_of: Optional[date] = None,
    clock: Clock = system_clock,
    max_workers: Optional[int] = None,
    stop: Optional[threading.Event] = None,
) -> SweepReport:
    """Run one scheduled sweep.

    Each recurring root is handled in its own session and commits on its own,
    so work finished before a failure or a ``stop`` request stays committed.
    Roots run in parallel up to ``max_workers``; the per-entity lock keeps a
    single root from being expanded twice at once.
    """
    as_of = as_of or today(clock)
    report = SweepReport(as_of=as_of)
    with session_factory() as db:
        roots = _recurring_roots(db)

    workers = max_workers or settings.sweep_max_workers
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(_process_root, session_factory, kind, root_id, as_of, clock, stop): (kind, root_id)
            for kind, root_id in roots
        }
        for future in as_completed(futures):
            kind, root_id = futures[future]
            outcome = future.result()
            if outcome.skipped:
                report.stopped = True
                continue
            if kind == "booking":
                report.generated_booking_ids.extend(outcome.generated)
            else:
                report.generated_cost_ids.extend(outcome.generated)
                report.settled_cost_ids.extend(outcome.settled)
            report.failures.extend(outcome.failures)

    # after settlement, so a recurring cost paid above is never flagged overdue
    with session_factory() as db:
        for cost_id in costs.overdue_candidates(db, as_of):
            if stop is not None and stop.is_set():
                report.stopped = True
                break
            try:
                if costs.mark_overdue(db, cost_id, clock=clock):
                    report.overdue_cost_ids.append(cost_id)
            except Exception as exc:
                logger.warning("sweep: cost %s could not be marked overdue: %s", cost_id, exc)
                report.failures.append(_failure("cost", cost_id, exc))

    for ids in (report.generated_booking_ids, report.generated_cost_ids, report.settled_cost_ids):
        ids.sort()
    logger.info(
        "sweep as of %s: %d overdue, %d bookings, %d costs generated, %d settled, %d failures%s",
        as_of,
        len(report.overdue_cost_ids),
        len(report.generated_booking_ids),
        len(report.generated_cost_ids),
        len(report.settled_cost_ids),
        len(report.failures),
        " (stopped)" if report.stopped else "",
    )
    return report
