from __future__ import annotations

import logging
from decimal import Decimal
from uuid import uuid4

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import domain
from .commission import quote_commission
from .db import lock_booking, session, unit_of_work
from .domain import BookingSource, BookingStatus, LedgerContext, PaymentStatus, ServiceType
from .errors import GuardViolation, IntegrityDefect, NotFound, ValidationFailed
from .models import Booking, CarRentalBookingDetail, TourBookingDetail
from .money import ZERO, to_money
from .references import REFERENCE_RETRIES, generate_booking_reference
from .schemas import BookingCreate, BookingPricingUpdate

logger = logging.getLogger(__name__)

PRICING_FIELDS = ("selling_price", "additional_charges", "discount_amount")


def _validate_new_booking(payload: BookingCreate, original_price: Decimal | None) -> None:
    if original_price is None:
        raise ValidationFailed("original_price is required when no catalog package price is available")
    if payload.service_date and payload.service_end_date and payload.service_end_date < payload.service_date:
        raise ValidationFailed("service_end_date must not be before service_date")
    if payload.booking_source == BookingSource.AGENT and not payload.agent_id:
        raise ValidationFailed("Agent bookings require agent_id")
    if payload.allow_partial_payment and payload.minimum_payment_amount is None:
        raise ValidationFailed("minimum_payment_amount is required when partial payments are allowed")
    if payload.service_type != ServiceType.TOURS and payload.tour_details is not None:
        raise ValidationFailed("tour_details only apply to TOURS bookings")
    if payload.service_type != ServiceType.CAR_RENTAL and payload.car_rental_details is not None:
        raise ValidationFailed("car_rental_details only apply to CAR_RENTAL bookings")


def _build_booking(s: Session, payload: BookingCreate, original_price: Decimal, ctx: LedgerContext) -> Booking:
    booking = Booking(
        id=str(uuid4()),
        service_type=payload.service_type.value,
        booking_reference=generate_booking_reference(s, payload.service_type, ctx.now),
        booking_source=payload.booking_source.value,
        customer_id=payload.customer_id,
        agent_id=payload.agent_id,
        booked_by=ctx.actor_id,
        tour_package_id=payload.tour_package_id,
        car_rental_package_id=payload.car_rental_package_id,
        customer_name=payload.customer_name.strip(),
        customer_email=payload.customer_email.strip().lower(),
        customer_phone=payload.customer_phone,
        customer_passport_number=payload.customer_passport_number,
        special_requirements=payload.special_requirements,
        adults=payload.adults,
        children=payload.children,
        original_price=to_money(original_price),
        selling_price=to_money(payload.selling_price if payload.selling_price is not None else original_price),
        agent_discount_percent=to_money(payload.agent_discount_percent) if payload.agent_discount_percent is not None else None,
        agent_cost_price=to_money(payload.agent_cost_price) if payload.agent_cost_price is not None else None,
        additional_charges=to_money(payload.additional_charges),
        discount_amount=to_money(payload.discount_amount),
        paid_amount=ZERO,
        allow_partial_payment=payload.allow_partial_payment,
        minimum_payment_amount=to_money(payload.minimum_payment_amount) if payload.minimum_payment_amount is not None else None,
        service_date=payload.service_date,
        service_end_date=payload.service_end_date,
        status=domain.ENTRY_STATUS_BY_SOURCE[payload.booking_source].value,
        payment_status=PaymentStatus.PENDING.value,
        admin_override_payment=payload.admin_override_payment,
        payment_notes=payload.payment_notes,
        internal_notes=payload.internal_notes,
        booking_details=payload.booking_details,
        payments=[],
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    domain.reprice(booking)
    return booking


def _apply_agent_commission(s: Session, booking: Booking) -> None:
    if not booking.agent_id or booking.agent_cost_price is not None:
        return
    quote = quote_commission(s, booking.service_type, booking.agent_id)
    if booking.agent_discount_percent is None:
        booking.agent_discount_percent = quote.percent
    booking.agent_cost_price = domain.agent_cost_price(booking.original_price, quote)


def run_post_create(s: Session, booking: Booking, payload: BookingCreate) -> None:
    """
    Creation side effects beyond reference and pricing.

    Every tour booking gets a detail row (defaults filled in) so detail
    screens never see a missing record; car rentals get their rental window.
    Both detail relationships end up assigned (possibly to None) so the
    returned booking can be read after its session closes.
    """
    _apply_agent_commission(s, booking)

    tour = car = None
    if booking.service_type == ServiceType.TOURS.value:
        given = payload.tour_details.model_dump(exclude_none=True) if payload.tour_details else {}
        tour = TourBookingDetail(
            id=str(uuid4()),
            tour_package_id=booking.tour_package_id,
            **{**domain.TOUR_DETAIL_DEFAULTS, **given},
        )
    elif booking.service_type == ServiceType.CAR_RENTAL.value:
        given = payload.car_rental_details
        pickup = (given.pickup_date if given else None) or booking.service_date
        ret = (given.return_date if given else None) or booking.service_end_date
        car = CarRentalBookingDetail(
            id=str(uuid4()),
            car_rental_package_id=booking.car_rental_package_id,
            pickup_date=pickup,
            return_date=ret,
            rental_days=domain.rental_days(pickup, ret),
        )
    booking.tour_details = tour
    booking.car_rental_details = car


def create_booking(engine: Engine, payload: BookingCreate, ctx: LedgerContext, *, catalog_price: Decimal | None = None) -> Booking:
    original_price = payload.original_price if payload.original_price is not None else catalog_price
    _validate_new_booking(payload, original_price)

    for attempt in range(1, REFERENCE_RETRIES + 1):
        try:
            with unit_of_work(engine) as s:
                booking = _build_booking(s, payload, original_price, ctx)
                s.add(booking)
                run_post_create(s, booking, payload)
            logger.info("Booking %s created (status=%s, final=%s)", booking.booking_reference, booking.status, booking.final_amount)
            return booking
        except IntegrityError as e:
            # Another writer took the same reference between our count and insert.
            logger.warning("Booking reference collision on attempt %s/%s: %s", attempt, REFERENCE_RETRIES, e.orig)
    raise IntegrityDefect(f"Could not allocate a unique {payload.service_type.value} booking reference after {REFERENCE_RETRIES} attempts")


def get_booking(engine: Engine, booking_id: str) -> Booking:
    with session(engine) as s:
        booking = s.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
    return booking


def _transition(booking: Booking, target: BookingStatus, ctx: LedgerContext) -> None:
    if not domain.can_transition_booking(booking.status, target):
        raise GuardViolation(f"Booking {booking.booking_reference} cannot move from {booking.status} to {target.value}")
    booking.status = target.value
    booking.updated_at = ctx.now


def confirm_booking(engine: Engine, booking_id: str, ctx: LedgerContext) -> Booking:
    with unit_of_work(engine) as s:
        booking = lock_booking(s, booking_id)
        _transition(booking, BookingStatus.CONFIRMED, ctx)
    return booking


def cancel_booking(engine: Engine, booking_id: str, ctx: LedgerContext, reason: str | None = None) -> Booking:
    with unit_of_work(engine) as s:
        booking = lock_booking(s, booking_id)
        if not domain.can_cancel(booking, ctx.today):
            raise GuardViolation(
                f"Booking {booking.booking_reference} cannot be cancelled (status={booking.status}, service_date={booking.service_date})"
            )
        _transition(booking, BookingStatus.CANCELLED, ctx)
        if reason:
            note = f"[{ctx.now:%Y-%m-%d %H:%M}] Cancelled: {reason}"
            booking.internal_notes = f"{booking.internal_notes}\n{note}" if booking.internal_notes else note
    return booking


def complete_booking(engine: Engine, booking_id: str, ctx: LedgerContext) -> Booking:
    with unit_of_work(engine) as s:
        booking = lock_booking(s, booking_id)
        _transition(booking, BookingStatus.COMPLETED, ctx)
    return booking


def update_financials(engine: Engine, booking_id: str, changes: BookingPricingUpdate, ctx: LedgerContext) -> Booking:
    data = changes.model_dump(exclude_unset=True)
    if not data:
        raise ValidationFailed("No changes supplied")

    with unit_of_work(engine) as s:
        booking = lock_booking(s, booking_id)
        if not domain.can_modify(booking, ctx.today):
            raise GuardViolation(
                f"Booking {booking.booking_reference} can no longer be modified (status={booking.status}, service_date={booking.service_date})"
            )

        for field in PRICING_FIELDS:
            if data.get(field) is not None:
                setattr(booking, field, to_money(data[field]))
        if data.get("allow_partial_payment") is not None:
            booking.allow_partial_payment = data["allow_partial_payment"]
        if "minimum_payment_amount" in data:
            amt = data["minimum_payment_amount"]
            booking.minimum_payment_amount = to_money(amt) if amt is not None else None
        for field in ("payment_notes", "internal_notes"):
            if field in data:
                setattr(booking, field, data[field])

        if booking.allow_partial_payment and booking.minimum_payment_amount is None:
            raise ValidationFailed("minimum_payment_amount is required when partial payments are allowed")

        if any(data.get(f) is not None for f in PRICING_FIELDS):
            domain.reprice(booking)
            if booking.payment_status != PaymentStatus.REFUNDED.value:
                booking.payment_status = domain.derive_payment_status(booking.final_amount, booking.paid_amount).value
        booking.updated_at = ctx.now
    return booking
