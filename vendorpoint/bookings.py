import logging

from sqlalchemy.orm import Session

from vendorpoint.clock import Clock, system_clock
from vendorpoint.db import unit_of_work
from vendorpoint.errors import NotFound
from vendorpoint.ledger import to_money
from vendorpoint.models import Booking, Client
from vendorpoint.recurrence import check_recurrence
from vendorpoint.schemas import BookingCreate

logger = logging.getLogger(__name__)


def get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound(f"booking {booking_id} not found")
    return booking


def create_booking(db: Session, payload: BookingCreate, clock: Clock = system_clock) -> Booking:
    """Record a booking; a recurring one becomes the root of its series."""
    check_recurrence(
        payload.is_recurring,
        payload.recurring_pattern,
        payload.booking_date,
        payload.recurring_end_date,
    )
    if db.get(Client, payload.client_id) is None:
        raise NotFound(f"client {payload.client_id} not found")
    booking = Booking(
        client_id=payload.client_id,
        customer_id=payload.customer_id,
        service_id=payload.service_id,
        staff_id=payload.staff_id,
        booking_date=payload.booking_date,
        booking_time=payload.booking_time,
        duration=payload.duration,
        price=to_money(payload.price) if payload.price is not None else None,
        status="pending",
        notes=payload.notes,
        is_recurring=payload.is_recurring,
        recurring_pattern=payload.recurring_pattern,
        recurring_end_date=payload.recurring_end_date,
        created_at=clock.now(),
    )
    with unit_of_work(db):
        db.add(booking)
    logger.info("created booking %s (recurring=%s)", booking.id, booking.is_recurring)
    return booking
