from __future__ import annotations

import os
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from .domain import ServiceType
from .models import Booking, Payment

# How many times booking creation re-allocates a reference after losing an
# insert race on the unique booking_reference constraint.
REFERENCE_RETRIES = int(os.getenv("REFERENCE_RETRIES", "5"))

PREFIX_BY_SERVICE: dict[ServiceType, str] = {
    ServiceType.TOURS: "ST",
    ServiceType.CAR_RENTAL: "CR",
    ServiceType.FLIGHT: "FL",
    ServiceType.HOTEL: "HT",
    ServiceType.TRANSFER: "TR",
    ServiceType.CRUISE: "CS",
    ServiceType.TRANSPORT: "TP",
    ServiceType.VISA: "VS",
}


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def format_booking_reference(service_type: ServiceType, now: datetime, sequence: int) -> str:
    return f"{PREFIX_BY_SERVICE[service_type]}-{now:%Y%m}-{sequence:04d}"


def generate_booking_reference(s: Session, service_type, now: datetime) -> str:
    """
    {prefix}-{YYYYMM}-{NNNN}, numbered per service type within the calendar month.

    The count is a starting point only: deleted bookings leave gaps, so the
    sequence is advanced past references that are already taken. Concurrent
    creators can still pick the same number; the unique constraint on
    booking_reference catches that at insert time.
    """
    service = ServiceType(service_type)
    start, end = month_bounds(now)
    count = (
        s.query(func.count(Booking.id))
        .filter(Booking.service_type == service.value)
        .filter(Booking.created_at >= start)
        .filter(Booking.created_at < end)
        .scalar()
    )
    sequence = int(count or 0) + 1
    while True:
        ref = format_booking_reference(service, now, sequence)
        if s.query(Booking.id).filter(Booking.booking_reference == ref).first() is None:
            return ref
        sequence += 1


def next_payment_sequence(s: Session, booking_id: str) -> int:
    # Caller holds the booking row lock.
    count = s.query(func.count(Payment.id)).filter(Payment.booking_id == booking_id).scalar()
    return int(count or 0) + 1


def generate_payment_reference(booking_reference: str, sequence: int) -> str:
    return f"{booking_reference}-P{sequence}"
