from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum

from .errors import ValidationFailed
from .money import ZERO, clamp_zero, percent_of, ratio_percent, to_money

logger = logging.getLogger(__name__)


class ServiceType(str, Enum):
    TOURS = "TOURS"
    CAR_RENTAL = "CAR_RENTAL"
    FLIGHT = "FLIGHT"
    HOTEL = "HOTEL"
    TRANSFER = "TRANSFER"
    CRUISE = "CRUISE"
    TRANSPORT = "TRANSPORT"
    VISA = "VISA"


class BookingSource(str, Enum):
    ADMIN_POS = "admin_pos"
    AGENT = "agent"
    WEBSITE = "website"
    MOBILE_APP = "mobile_app"


class BookingStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Booking-level payment classification."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    ADVANCE = "advance_payment"
    PARTIAL = "partial_payment"
    FULL = "full_payment"
    REFUND = "refund"


class PayerType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    ADMIN = "admin"


class TransactionStatus(str, Enum):
    """Status of a single payment attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    # Manual / POS
    CASH = "cash"
    CARD_TERMINAL = "card_terminal"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    # International
    STRIPE = "stripe"
    PAYPAL = "paypal"
    RAZORPAY = "razorpay"
    # Bangladesh
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    UPAY = "upay"
    SSLCOMMERZ = "sslcommerz"
    AAMARPAY = "aamarpay"
    PORTWALLET = "portwallet"
    SHURJOPAY = "shurjopay"
    # Malaysia
    MAYBANK2U = "maybank2u"
    CIMB_CLICKS = "cimb_clicks"
    PUBLIC_BANK = "public_bank"
    HONG_LEONG_BANK = "hong_leong_bank"
    RHB_BANK = "rhb_bank"
    ALLIANCE_BANK = "alliance_bank"
    AFFIN_BANK = "affin_bank"
    BANK_ISLAM = "bank_islam"
    MUAMALAT_BANK = "muamalat_bank"
    TOUCH_N_GO = "touch_n_go"
    GRABPAY = "grabpay"
    BOOST = "boost"
    FPX = "fpx"
    SENANGPAY = "senangpay"
    BILLPLZ = "billplz"
    IPAY88 = "ipay88"
    MOLPAY = "molpay"
    # Other
    ADJUSTMENT = "adjustment"


MANUAL_METHODS = frozenset(
    {PaymentMethod.CASH, PaymentMethod.CARD_TERMINAL, PaymentMethod.BANK_TRANSFER, PaymentMethod.CHEQUE, PaymentMethod.ADJUSTMENT}
)

TERMINAL_BOOKING_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# Allowed payment-attempt transitions. Terminal statuses have no outgoing edges.
PAYMENT_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.DRAFT: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Online channels start as drafts until staff confirm them.
ENTRY_STATUS_BY_SOURCE: dict[BookingSource, BookingStatus] = {
    BookingSource.ADMIN_POS: BookingStatus.CONFIRMED,
    BookingSource.AGENT: BookingStatus.CONFIRMED,
    BookingSource.WEBSITE: BookingStatus.DRAFT,
    BookingSource.MOBILE_APP: BookingStatus.DRAFT,
}

# Children are billed at 70% of the adult rate when a package has no child price.
CHILD_RATE = Decimal("0.70")


@dataclass(frozen=True)
class LedgerContext:
    """Acting principal and clock for a single mutation."""

    actor_id: str | None
    now: datetime

    @property
    def today(self) -> date:
        return self.now.date()


def now_context(actor_id: str | None = None) -> LedgerContext:
    return LedgerContext(actor_id=actor_id, now=datetime.now(tz=timezone.utc))


# ----------------------------
# Pricing
# ----------------------------


def calculate_final_amount(selling_price, additional_charges, discount_amount) -> Decimal:
    return clamp_zero(to_money(selling_price) + to_money(additional_charges) - to_money(discount_amount))


def refresh_due(booking) -> Decimal:
    raw = to_money(booking.final_amount) - to_money(booking.paid_amount)
    if raw < ZERO:
        logger.warning(
            "Booking %s is overpaid by %s (final=%s paid=%s)",
            booking.booking_reference,
            -raw,
            booking.final_amount,
            booking.paid_amount,
        )
    booking.due_amount = clamp_zero(raw)
    return booking.due_amount


def reprice(booking) -> None:
    """Recompute final_amount and due_amount against the current paid_amount."""
    booking.final_amount = calculate_final_amount(booking.selling_price, booking.additional_charges, booking.discount_amount)
    refresh_due(booking)


@dataclass(frozen=True)
class CatalogPackage:
    package_id: str
    currency: str
    base_price_adult: Decimal | None = None
    base_price_child: Decimal | None = None
    daily_price: Decimal | None = None


def rental_days(start: date | None, end: date | None) -> int:
    if start is None or end is None:
        return 1
    return max(1, (end - start).days)


def price_from_catalog(pkg: CatalogPackage, adults: int, children: int, start: date | None = None, end: date | None = None) -> Decimal:
    if pkg.daily_price is not None:
        return to_money(to_money(pkg.daily_price) * rental_days(start, end))
    if pkg.base_price_adult is None:
        raise ValidationFailed(f"Catalog package {pkg.package_id} has no price")
    adult = to_money(pkg.base_price_adult)
    child = to_money(pkg.base_price_child) if pkg.base_price_child is not None else to_money(adult * CHILD_RATE)
    return to_money(adult * adults + child * children)


# ----------------------------
# Payment status
# ----------------------------


def derive_payment_status(final_amount, paid_amount) -> PaymentStatus:
    final = to_money(final_amount)
    paid = to_money(paid_amount)
    if paid >= final and final > ZERO:
        return PaymentStatus.PAID
    if paid > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def apply_completed_payment(booking, payment, now: datetime) -> bool:
    """
    Fold a completed payment into its booking.

    Returns False when the payment was already applied. Refund payments flag
    the booking as refunded and leave paid_amount alone.
    """
    if TransactionStatus(payment.status) != TransactionStatus.COMPLETED:
        raise ValidationFailed(f"Payment {payment.payment_reference} is not completed")
    if payment.booking_id != booking.id:
        raise ValidationFailed(f"Payment {payment.payment_reference} does not belong to booking {booking.booking_reference}")
    if payment.ledger_applied_at is not None:
        return False

    if PaymentType(payment.payment_type) == PaymentType.REFUND:
        booking.payment_status = PaymentStatus.REFUNDED.value
    else:
        booking.paid_amount = to_money(booking.paid_amount) + to_money(payment.amount)
        refresh_due(booking)
        if booking.payment_status != PaymentStatus.REFUNDED.value:
            booking.payment_status = derive_payment_status(booking.final_amount, booking.paid_amount).value
    payment.ledger_applied_at = now
    return True


def can_transition_payment(current, target) -> bool:
    return TransactionStatus(target) in PAYMENT_TRANSITIONS[TransactionStatus(current)]


def payment_is_terminal(payment) -> bool:
    return not PAYMENT_TRANSITIONS[TransactionStatus(payment.status)]


def payment_can_be_edited(payment) -> bool:
    return TransactionStatus(payment.status) not in {TransactionStatus.COMPLETED, TransactionStatus.REFUNDED}


def payment_can_be_cancelled(payment) -> bool:
    return TransactionStatus(payment.status) in {TransactionStatus.PENDING, TransactionStatus.PROCESSING}


def is_live_refund(payment) -> bool:
    return PaymentType(payment.payment_type) == PaymentType.REFUND and TransactionStatus(payment.status) not in {
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }


def can_refund(payment, booking, existing_refunds) -> bool:
    if TransactionStatus(payment.status) != TransactionStatus.COMPLETED:
        return False
    if PaymentType(payment.payment_type) == PaymentType.REFUND:
        return False
    if to_money(payment.amount) <= ZERO:
        return False
    if not is_refundable(booking):
        return False
    return not any(r.refund_of_id == payment.id and is_live_refund(r) for r in existing_refunds)


# ----------------------------
# Booking guards
# ----------------------------


def can_make_payment(booking) -> bool:
    return (
        booking.status != BookingStatus.CANCELLED.value
        and booking.payment_status != PaymentStatus.PAID.value
        and to_money(booking.due_amount) > ZERO
    )


def can_cancel(booking, today: date) -> bool:
    if BookingStatus(booking.status) in TERMINAL_BOOKING_STATUSES:
        return False
    return booking.service_date is None or booking.service_date > today


def can_modify(booking, today: date) -> bool:
    if BookingStatus(booking.status) in TERMINAL_BOOKING_STATUSES:
        return False
    return booking.service_date is None or (booking.service_date - today).days > 1


def is_refundable(booking) -> bool:
    return (
        to_money(booking.paid_amount) > ZERO
        and booking.status == BookingStatus.CANCELLED.value
        and booking.payment_status != PaymentStatus.REFUNDED.value
    )


def can_transition_booking(current, target) -> bool:
    return BookingStatus(target) in BOOKING_TRANSITIONS[BookingStatus(current)]


def minimum_payment_required(booking) -> Decimal:
    if not booking.allow_partial_payment:
        return to_money(booking.due_amount)
    return to_money(booking.minimum_payment_amount or ZERO)


# ----------------------------
# Read-only projections
# ----------------------------


def total_passengers(booking) -> int:
    return int(booking.adults or 0) + int(booking.children or 0)


def remaining_amount(booking) -> Decimal:
    return clamp_zero(to_money(booking.final_amount) - to_money(booking.paid_amount))


def duration_days(booking) -> int | None:
    if booking.service_date is None:
        return None
    if booking.service_end_date is None:
        return 1
    return max(1, (booking.service_end_date - booking.service_date).days + 1)


def status_label(booking, today: date) -> str:
    status = BookingStatus(booking.status)
    if status == BookingStatus.CANCELLED:
        return "Cancelled"
    if status == BookingStatus.COMPLETED:
        return "Completed"
    if booking.service_date is None:
        return "Active"
    if booking.service_date == today:
        return "Today"
    if booking.service_date > today:
        return "Upcoming"
    return "Past Due"


def payment_progress(booking) -> Decimal:
    final = to_money(booking.final_amount)
    if final <= ZERO:
        return Decimal("100.00")
    return ratio_percent(to_money(booking.paid_amount), final)


# ----------------------------
# Commission
# ----------------------------


@dataclass(frozen=True)
class CommissionQuote:
    percent: Decimal | None = None
    fixed_amount: Decimal | None = None


def commission_for(amount, quote: CommissionQuote) -> Decimal:
    if quote.percent is not None:
        return percent_of(amount, quote.percent)
    if quote.fixed_amount is not None:
        return to_money(quote.fixed_amount)
    return ZERO


def agent_cost_price(original_price, quote: CommissionQuote) -> Decimal:
    return clamp_zero(to_money(original_price) - commission_for(original_price, quote))


# ----------------------------
# Service detail defaults
# ----------------------------

TOUR_DETAIL_DEFAULTS = {
    "pickup_time": time(8, 0),
    "room_type": "twin",
    "meal_plan": "breakfast",
    "guide_language": "English",
}

ROOM_TYPE_LABELS = {
    "single": "Single Room",
    "twin": "Twin Sharing",
    "triple": "Triple Sharing",
    "family": "Family Room",
}

MEAL_PLAN_LABELS = {
    "no_meals": "No Meals",
    "breakfast": "Breakfast Only",
    "half_board": "Half Board (Breakfast + Dinner)",
    "full_board": "Full Board (All Meals)",
}


def room_type_label(room_type: str) -> str:
    return ROOM_TYPE_LABELS.get(room_type, (room_type or "").capitalize())


def meal_plan_label(meal_plan: str) -> str:
    return MEAL_PLAN_LABELS.get(meal_plan, (meal_plan or "").capitalize())


def tour_summary(detail) -> str:
    parts: list[str] = []
    if detail.pickup_location:
        parts.append(f"Pickup: {detail.pickup_location}")
    if detail.pickup_time:
        parts.append(f"Time: {detail.pickup_time.strftime('%I:%M %p').lstrip('0')}")
    parts.append(f"Room: {room_type_label(detail.room_type)}")
    parts.append(f"Meals: {meal_plan_label(detail.meal_plan)}")
    if detail.guide_language and detail.guide_language != "English":
        parts.append(f"Guide: {detail.guide_language}")
    return " | ".join(parts)
