"""Recurrence generator for bookings and costs.

A recurring root row owns its pattern, end date and a ``last_generated_date``
watermark. Every generated occurrence points straight at the root, so the
parent/child tree is always one level deep.
"""

import calendar
import logging
from datetime import date, timedelta
from typing import Iterator, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from vendorpoint.clock import Clock, system_clock
from vendorpoint.db import unit_of_work
from vendorpoint.errors import InvalidRecurrence
from vendorpoint.locks import locks
from vendorpoint.models import Booking, Cost, CostStatus, RecurrencePattern

logger = logging.getLogger(__name__)

Recurring = Union[Booking, Cost]


def add_months(anchor: date, months: int) -> date:
    """Same day-of-month ``months`` later, clamped to the month's last day."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor.day, last_day))


def nth_occurrence(anchor: date, pattern: RecurrencePattern, n: int) -> date:
    if pattern is RecurrencePattern.WEEKLY:
        return anchor + timedelta(days=7 * n)
    if pattern is RecurrencePattern.BIWEEKLY:
        return anchor + timedelta(days=14 * n)
    if pattern is RecurrencePattern.MONTHLY:
        # always from the anchor, so the 31st comes back after a short month
        return add_months(anchor, n)
    raise InvalidRecurrence(f"unsupported recurrence pattern {pattern!r}")


def occurrence_dates(
    anchor: date,
    pattern: RecurrencePattern,
    after: date,
    as_of: date,
    end_date: Optional[date] = None,
) -> Iterator[date]:
    """Yield occurrence dates in ``(after, min(as_of, end_date)]``."""
    limit = as_of if end_date is None else min(as_of, end_date)
    n = 1
    while True:
        current = nth_occurrence(anchor, pattern, n)
        if current > limit:
            return
        if current > after:
            yield current
        n += 1


def check_recurrence(
    is_recurring: bool,
    pattern: Optional[RecurrencePattern],
    anchor: Optional[date],
    end_date: Optional[date],
) -> None:
    if is_recurring and pattern is None:
        raise InvalidRecurrence("a recurring entry needs a recurrence pattern")
    if not is_recurring and (pattern is not None or end_date is not None):
        raise InvalidRecurrence("recurrence settings given for a non-recurring entry")
    if is_recurring and anchor is None:
        raise InvalidRecurrence("a recurring entry needs a start date")
    if end_date is not None and anchor is not None and end_date < anchor:
        raise InvalidRecurrence("recurrence ends before it starts")


def recurrence_key(entity: Recurring) -> tuple[str, int]:
    return (entity.__tablename__, entity.id)


def root_of(db: Session, entity: Recurring) -> Recurring:
    if entity.parent_id is None:
        return entity
    parent = db.get(type(entity), entity.parent_id)
    if parent is None:
        raise InvalidRecurrence(f"{entity.__tablename__} {entity.id} points at a missing root")
    if parent.parent_id is not None:
        raise InvalidRecurrence(
            f"{entity.__tablename__} {entity.id} is linked to a generated occurrence"
        )
    return parent


def _latest_child_date(db: Session, root: Recurring) -> Optional[date]:
    if isinstance(root, Booking):
        stmt = select(func.max(Booking.booking_date)).where(Booking.parent_booking_id == root.id)
    else:
        stmt = select(func.max(Cost.due_date)).where(Cost.parent_cost_id == root.id)
    return db.execute(stmt).scalar_one()


def _spawn(root: Recurring, when: date, clock: Clock) -> Recurring:
    now = clock.now()
    if isinstance(root, Booking):
        return Booking(
            client_id=root.client_id,
            customer_id=root.customer_id,
            service_id=root.service_id,
            staff_id=root.staff_id,
            booking_date=when,
            booking_time=root.booking_time,
            duration=root.duration,
            price=root.price,
            status="pending",
            notes=root.notes,
            is_recurring=False,
            parent_booking_id=root.id,
            created_at=now,
        )
    return Cost(
        client_id=root.client_id,
        wallet_id=root.wallet_id,
        title=root.title,
        amount=root.amount,
        currency=root.currency,
        category=root.category,
        payment_method=root.payment_method,
        status=CostStatus.PENDING,
        due_date=when,
        description=root.description,
        reference_number=f"{root.reference_number}-{when:%Y%m%d}",
        is_recurring=False,
        parent_cost_id=root.id,
        created_at=now,
    )


def expand(
    db: Session, entity: Recurring, as_of: date, clock: Clock = system_clock
) -> list[Recurring]:
    """Materialize the occurrences of ``entity``'s root that are due by ``as_of``.

    Occurrences already generated (tracked by the root's watermark) are never
    produced again, so calling this twice with the same ``as_of`` is a no-op.
    """
    root = root_of(db, entity)
    with locks.hold(recurrence_key(root)):
        with unit_of_work(db):
            # re-read inside the lock so a concurrent expansion's watermark is seen
            db.refresh(root, with_for_update=True)
            if not root.is_recurring:
                raise InvalidRecurrence(f"{root.__tablename__} {root.id} is not recurring")
            check_recurrence(root.is_recurring, root.pattern, root.anchor_date, root.end_date)
            after = root.last_generated_date or root.anchor_date
            latest_child = _latest_child_date(db, root)
            if latest_child is not None and latest_child > after:
                after = latest_child
            created = [
                _spawn(root, when, clock)
                for when in occurrence_dates(
                    root.anchor_date, root.pattern, after, as_of, root.end_date
                )
            ]
            if created:
                db.add_all(created)
                root.last_generated_date = created[-1].anchor_date
                db.flush()
    if created:
        logger.info(
            "generated %d occurrences of %s %s up to %s",
            len(created),
            root.__tablename__,
            root.id,
            as_of,
        )
    return created
