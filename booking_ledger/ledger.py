from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import domain
from .db import lock_booking, session, unit_of_work
from .domain import LedgerContext, MANUAL_METHODS, PayerType, PaymentMethod, PaymentType, TransactionStatus
from .errors import ConcurrencyConflict, GuardViolation, NotFound, ValidationFailed
from .models import Booking, Payment
from .money import ZERO, to_money
from .references import generate_payment_reference, next_payment_sequence
from .schemas import GatewayCallback, PaymentCreate, RefundCreate

logger = logging.getLogger(__name__)


def _default_payment_type(booking: Booking, amount: Decimal) -> PaymentType:
    if amount >= to_money(booking.due_amount):
        return PaymentType.FULL
    if to_money(booking.paid_amount) == ZERO:
        return PaymentType.ADVANCE
    return PaymentType.PARTIAL


def _check_ledger(s: Session, booking: Booking) -> None:
    """paid_amount is kept incrementally; compare it with the payment rows it came from."""
    s.flush()
    applied = (
        s.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.booking_id == booking.id)
        .filter(Payment.ledger_applied_at.isnot(None))
        .filter(Payment.payment_type != PaymentType.REFUND.value)
        .scalar()
    )
    if to_money(applied) != to_money(booking.paid_amount):
        logger.error(
            "Ledger drift on booking %s: paid_amount=%s but applied payments sum to %s",
            booking.booking_reference,
            booking.paid_amount,
            applied,
        )


def _new_payment(s: Session, booking: Booking, ctx: LedgerContext, **fields) -> Payment:
    sequence = next_payment_sequence(s, booking.id)
    payment = Payment(
        id=str(uuid4()),
        booking_id=booking.id,
        payment_sequence=sequence,
        payment_reference=generate_payment_reference(booking.booking_reference, sequence),
        processed_by=ctx.actor_id,
        created_at=ctx.now,
        updated_at=ctx.now,
        **fields,
    )
    booking.payments.append(payment)
    return payment


def _complete(s: Session, booking: Booking, payment: Payment, ctx: LedgerContext) -> bool:
    applied = domain.apply_completed_payment(booking, payment, ctx.now)
    if applied:
        booking.updated_at = ctx.now
        logger.info(
            "Payment %s applied: booking %s paid=%s due=%s status=%s",
            payment.payment_reference,
            booking.booking_reference,
            booking.paid_amount,
            booking.due_amount,
            booking.payment_status,
        )
        _check_ledger(s, booking)
    return applied


@contextmanager
def _appending(engine: Engine) -> Iterator[Session]:
    """
    Unit of work that inserts a payment row.

    Two writers that read the same payment count (the row lock is a no-op on
    SQLite) both try to insert the same (booking_id, payment_sequence); the
    unique constraint rejects the loser, which is reported as a retryable
    conflict. Nothing from the losing transaction is kept.
    """
    try:
        with unit_of_work(engine) as s:
            yield s
    except IntegrityError as e:
        logger.warning("Payment sequence race lost: %s", e.orig)
        raise ConcurrencyConflict("Another payment was recorded on this booking at the same time; retry") from e


def record_payment(engine: Engine, booking_id: str, payload: PaymentCreate, ctx: LedgerContext) -> tuple[Payment, Booking]:
    """
    Append a payment attempt to a booking's ledger.

    Manual/POS methods default to completed and are applied immediately;
    gateway methods start pending and complete through a callback.
    """
    if payload.payment_type == PaymentType.REFUND:
        raise ValidationFailed("Refunds are requested against a completed payment, not recorded directly")
    if payload.admin_override and not (payload.override_reason or "").strip():
        raise ValidationFailed("override_reason is required for admin overrides")

    amount = to_money(payload.amount)
    with _appending(engine) as s:
        booking = lock_booking(s, booking_id)
        if not domain.can_make_payment(booking):
            raise GuardViolation(
                f"Booking {booking.booking_reference} cannot accept payments "
                f"(status={booking.status}, payment_status={booking.payment_status}, due={booking.due_amount})"
            )

        if not payload.admin_override:
            minimum = domain.minimum_payment_required(booking)
            if amount < minimum:
                raise ValidationFailed(f"Minimum payment for booking {booking.booking_reference} is {minimum}")
            if amount > to_money(booking.due_amount):
                raise ValidationFailed(f"Amount {amount} exceeds the due amount {booking.due_amount}")

        status = payload.status
        if status is None:
            status = TransactionStatus.COMPLETED.value if payload.payment_method in MANUAL_METHODS else TransactionStatus.PENDING.value

        payment = _new_payment(
            s,
            booking,
            ctx,
            payment_type=(payload.payment_type or _default_payment_type(booking, amount)).value,
            payer_type=payload.payer_type.value,
            payer_id=payload.payer_id,
            amount=amount,
            currency=payload.currency.upper(),
            payment_method=payload.payment_method.value,
            gateway_transaction_id=payload.gateway_transaction_id,
            gateway_reference=payload.gateway_reference,
            status=status,
            receipt_number=payload.receipt_number,
            terminal_id=payload.terminal_id,
            payment_details=payload.payment_details,
            notes=payload.notes,
            admin_override=payload.admin_override,
            override_reason=payload.override_reason,
            payment_date=payload.payment_date or ctx.now,
        )
        if status == TransactionStatus.COMPLETED.value:
            _complete(s, booking, payment, ctx)
    return payment, booking


def _load_for_update(s: Session, payment_id: str) -> tuple[Payment, Booking]:
    payment = s.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    booking = lock_booking(s, payment.booking_id)
    # Re-read under the booking lock so a racing completion is visible.
    s.refresh(payment)
    return payment, booking


def _move(s: Session, booking: Booking, payment: Payment, target: TransactionStatus, ctx: LedgerContext, failure_reason: str | None) -> bool:
    if payment.status == target.value:
        # Repeated delivery of the same status (gateway retries) is a no-op.
        return False
    if not domain.can_transition_payment(payment.status, target):
        raise GuardViolation(f"Payment {payment.payment_reference} cannot move from {payment.status} to {target.value}")

    payment.status = target.value
    payment.updated_at = ctx.now
    if target == TransactionStatus.FAILED:
        payment.failure_reason = failure_reason or "Payment failed"
        logger.info("Payment %s failed: %s", payment.payment_reference, payment.failure_reason)
    if target == TransactionStatus.COMPLETED:
        return _complete(s, booking, payment, ctx)
    return False


def transition_payment(
    engine: Engine,
    payment_id: str,
    target,
    ctx: LedgerContext,
    *,
    failure_reason: str | None = None,
) -> tuple[Payment, Booking, bool]:
    """Move a payment along pending -> processing -> completed/failed/cancelled. Returns whether it was applied."""
    target = TransactionStatus(target)
    with unit_of_work(engine) as s:
        payment, booking = _load_for_update(s, payment_id)
        applied = _move(s, booking, payment, target, ctx, failure_reason)
    return payment, booking, applied


def apply_gateway_callback(engine: Engine, payment_id: str, update: GatewayCallback, ctx: LedgerContext) -> tuple[Payment, Booking, bool]:
    target = TransactionStatus(update.status)
    with unit_of_work(engine) as s:
        payment, booking = _load_for_update(s, payment_id)
        if domain.payment_is_terminal(payment):
            if payment.status != target.value:
                raise GuardViolation(f"Payment {payment.payment_reference} is already {payment.status}")
            # Gateway redelivery of the final status; the settled row stays as it is.
            logger.info("Duplicate %s callback for payment %s ignored", target.value, payment.payment_reference)
            return payment, booking, False
        if update.gateway_reference:
            payment.gateway_reference = update.gateway_reference
        if update.gateway_transaction_id:
            payment.gateway_transaction_id = update.gateway_transaction_id
        if update.response is not None:
            payment.gateway_response = update.response
        payment.gateway_callback_at = update.callback_at or ctx.now
        applied = _move(s, booking, payment, target, ctx, update.failure_reason)
    return payment, booking, applied


def refunds_for(s: Session, payment_id: str) -> list[Payment]:
    return s.query(Payment).filter(Payment.refund_of_id == payment_id).all()


def request_refund(engine: Engine, payment_id: str, payload: RefundCreate, ctx: LedgerContext) -> tuple[Payment, Booking]:
    """Create a refund-type payment against a completed payment of a cancelled booking."""
    with _appending(engine) as s:
        source, booking = _load_for_update(s, payment_id)
        if not domain.can_refund(source, booking, refunds_for(s, source.id)):
            raise GuardViolation(
                f"Payment {source.payment_reference} is not refundable "
                f"(payment status={source.status}, booking status={booking.status}, payment_status={booking.payment_status})"
            )
        amount = to_money(payload.amount if payload.amount is not None else source.amount)
        if amount > to_money(source.amount):
            raise ValidationFailed(f"Refund {amount} exceeds the original payment {source.amount}")

        refund = _new_payment(
            s,
            booking,
            ctx,
            payment_type=PaymentType.REFUND.value,
            payer_type=PayerType.ADMIN.value,
            payer_id=ctx.actor_id,
            amount=amount,
            currency=source.currency,
            payment_method=(payload.payment_method or PaymentMethod(source.payment_method)).value,
            status=payload.status,
            notes=payload.notes,
            refund_of_id=source.id,
            payment_date=ctx.now,
        )
        if payload.status == TransactionStatus.COMPLETED.value:
            _complete(s, booking, refund, ctx)
    return refund, booking


def get_payment(engine: Engine, payment_id: str) -> Payment:
    with session(engine) as s:
        payment = s.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
    return payment


def list_payments(engine: Engine, booking_id: str) -> list[Payment]:
    """Newest first; payment_sequence keeps creation order."""
    with session(engine) as s:
        if s.get(Booking, booking_id) is None:
            raise NotFound("Booking not found")
        return (
            s.query(Payment)
            .filter(Payment.booking_id == booking_id)
            .order_by(Payment.payment_sequence.desc())
            .all()
        )
