from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from . import catalog, commission, domain, events, ledger, lifecycle
from .db import get_engine, session
from .domain import BookingSource, PaymentType, ServiceType
from .errors import ConcurrencyConflict, LedgerError, ValidationFailed
from .models import Booking, Payment
from .money import to_money
from .schemas import (
    BookingCreate,
    BookingOut,
    BookingPricingUpdate,
    CancelRequest,
    CarRentalDetailsOut,
    CommissionQuoteOut,
    CommissionRuleIn,
    CommissionRuleOut,
    GatewayCallback,
    LedgerOut,
    PaymentCreate,
    PaymentOut,
    PaymentTransition,
    PricingBreakdown,
    RefundCreate,
    StatementOut,
    TourDetailsOut,
)
from .security import context_for, require_roles

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Booking & Payment Ledger Service",
    version="0.1.0",
    description="Reservation lifecycle, multi-payment ledger, refunds and agent commission rules for the travel agency backend.",
)


@app.exception_handler(LedgerError)
async def _ledger_error(_request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "retryable": exc.retryable})


def _tour_out(detail) -> TourDetailsOut | None:
    if detail is None:
        return None
    return TourDetailsOut(
        pickup_location=detail.pickup_location,
        pickup_time=detail.pickup_time,
        drop_location=detail.drop_location,
        room_type=detail.room_type,
        room_type_label=domain.room_type_label(detail.room_type),
        meal_plan=detail.meal_plan,
        meal_plan_label=domain.meal_plan_label(detail.meal_plan),
        guide_language=detail.guide_language,
        emergency_contact=detail.emergency_contact,
        tour_notes=detail.tour_notes,
        summary=domain.tour_summary(detail),
    )


def _booking_out(b: Booking, today: date) -> BookingOut:
    car = b.car_rental_details
    return BookingOut(
        id=b.id,
        booking_reference=b.booking_reference,
        service_type=b.service_type,
        booking_source=b.booking_source,
        status=b.status,
        payment_status=b.payment_status,
        customer_id=b.customer_id,
        agent_id=b.agent_id,
        booked_by=b.booked_by,
        tour_package_id=b.tour_package_id,
        car_rental_package_id=b.car_rental_package_id,
        customer_name=b.customer_name,
        customer_email=b.customer_email,
        customer_phone=b.customer_phone,
        adults=b.adults,
        children=b.children,
        original_price=b.original_price,
        selling_price=b.selling_price,
        agent_discount_percent=b.agent_discount_percent,
        agent_cost_price=b.agent_cost_price,
        additional_charges=b.additional_charges,
        discount_amount=b.discount_amount,
        final_amount=b.final_amount,
        paid_amount=b.paid_amount,
        due_amount=b.due_amount,
        allow_partial_payment=b.allow_partial_payment,
        minimum_payment_amount=b.minimum_payment_amount,
        service_date=b.service_date,
        service_end_date=b.service_end_date,
        created_at=b.created_at,
        updated_at=b.updated_at,
        total_passengers=domain.total_passengers(b),
        remaining_amount=domain.remaining_amount(b),
        duration_days=domain.duration_days(b),
        payment_progress=domain.payment_progress(b),
        status_label=domain.status_label(b, today),
        minimum_payment_required=domain.minimum_payment_required(b),
        can_make_payment=domain.can_make_payment(b),
        can_cancel=domain.can_cancel(b, today),
        can_modify=domain.can_modify(b, today),
        is_refundable=domain.is_refundable(b),
        tour_details=_tour_out(b.tour_details),
        car_rental_details=(
            CarRentalDetailsOut(pickup_date=car.pickup_date, return_date=car.return_date, rental_days=car.rental_days) if car else None
        ),
    )


def _payment_out(p: Payment) -> PaymentOut:
    return PaymentOut(
        id=p.id,
        booking_id=p.booking_id,
        payment_sequence=p.payment_sequence,
        payment_reference=p.payment_reference,
        payment_type=p.payment_type,
        payer_type=p.payer_type,
        payer_id=p.payer_id,
        amount=p.amount,
        currency=p.currency,
        payment_method=p.payment_method,
        status=p.status,
        failure_reason=p.failure_reason,
        gateway_reference=p.gateway_reference,
        gateway_transaction_id=p.gateway_transaction_id,
        receipt_number=p.receipt_number,
        terminal_id=p.terminal_id,
        admin_override=p.admin_override,
        override_reason=p.override_reason,
        refund_of_id=p.refund_of_id,
        processed_by=p.processed_by,
        payment_date=p.payment_date,
        gateway_callback_at=p.gateway_callback_at,
        created_at=p.created_at,
        can_be_edited=domain.payment_can_be_edited(p),
        can_be_cancelled=domain.payment_can_be_cancelled(p),
    )


async def _publish_settlement(payment: Payment, booking: Booking, applied: bool) -> None:
    if not applied:
        return
    key = "payment.refunded" if payment.payment_type == PaymentType.REFUND.value else "payment.completed"
    await events.publish(key, events.payment_payload(payment, booking))


@app.get("/health")
def health():
    return {"status": "ok"}


# ----------------------------
# Bookings
# ----------------------------


async def _catalog_price(payload: BookingCreate) -> Decimal | None:
    if payload.original_price is not None:
        return None
    package_id = payload.tour_package_id or payload.car_rental_package_id
    if not package_id:
        raise ValidationFailed("original_price is required when no tour or car rental package is given")
    pkg = await catalog.fetch_package(payload.service_type, package_id)
    return domain.price_from_catalog(pkg, payload.adults, payload.children, payload.service_date, payload.service_end_date)


@app.post("/bookings", response_model=BookingOut)
async def create_booking(
    payload: BookingCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("guest", "agent", "staff", "admin")),
):
    if principal.get("role") == "guest" and payload.booking_source not in {BookingSource.WEBSITE, BookingSource.MOBILE_APP}:
        raise HTTPException(status_code=403, detail="Guests can only book through the website or mobile app")

    ctx = context_for(principal)
    booking = lifecycle.create_booking(engine, payload, ctx, catalog_price=await _catalog_price(payload))
    await events.publish("booking.created", events.booking_payload(booking))
    return _booking_out(booking, ctx.today)


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("guest", "agent", "staff", "admin")),
):
    ctx = context_for(principal)
    return _booking_out(lifecycle.get_booking(engine, booking_id), ctx.today)


@app.patch("/bookings/{booking_id}/pricing", response_model=BookingOut)
def update_booking_pricing(
    booking_id: str,
    payload: BookingPricingUpdate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("staff", "admin")),
):
    ctx = context_for(principal)
    return _booking_out(lifecycle.update_financials(engine, booking_id, payload, ctx), ctx.today)


@app.post("/bookings/{booking_id}/confirm", response_model=BookingOut)
async def confirm_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("staff", "admin")),
):
    ctx = context_for(principal)
    booking = lifecycle.confirm_booking(engine, booking_id, ctx)
    await events.publish("booking.confirmed", events.booking_payload(booking))
    return _booking_out(booking, ctx.today)


@app.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    engine=Depends(get_engine),
    principal=Depends(require_roles("agent", "staff", "admin")),
):
    ctx = context_for(principal)
    booking = lifecycle.cancel_booking(engine, booking_id, ctx, reason=payload.reason)
    await events.publish("booking.cancelled", {**events.booking_payload(booking), "reason": payload.reason})
    return _booking_out(booking, ctx.today)


@app.post("/bookings/{booking_id}/complete", response_model=BookingOut)
async def complete_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("staff", "admin")),
):
    ctx = context_for(principal)
    booking = lifecycle.complete_booking(engine, booking_id, ctx)
    await events.publish("booking.completed", events.booking_payload(booking))
    return _booking_out(booking, ctx.today)


@app.get("/bookings/{booking_id}/payments", response_model=list[PaymentOut])
def list_booking_payments(
    booking_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("guest", "agent", "staff", "admin")),
):
    return [_payment_out(p) for p in ledger.list_payments(engine, booking_id)]


@app.post("/bookings/{booking_id}/payments", response_model=LedgerOut)
async def record_payment(
    booking_id: str,
    payload: PaymentCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("agent", "staff", "admin")),
):
    if payload.admin_override and principal.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Only admins can override payment rules")

    ctx = context_for(principal)
    payment, booking = ledger.record_payment(engine, booking_id, payload, ctx)
    await events.publish("payment.recorded", events.payment_payload(payment, booking))
    await _publish_settlement(payment, booking, payment.ledger_applied_at is not None)
    return LedgerOut(booking=_booking_out(booking, ctx.today), payment=_payment_out(payment))


@app.get("/bookings/{booking_id}/statement", response_model=StatementOut)
def booking_statement(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("agent", "staff", "admin")),
):
    """Read-only view consumed by receipt rendering."""
    ctx = context_for(principal)
    b = lifecycle.get_booking(engine, booking_id)
    pricing = PricingBreakdown(
        original_price=b.original_price,
        selling_price=b.selling_price,
        additional_charges=b.additional_charges,
        discount_amount=b.discount_amount,
        final_amount=b.final_amount,
        paid_amount=b.paid_amount,
        due_amount=b.due_amount,
    )
    if b.agent_id:
        cost = to_money(b.agent_cost_price if b.agent_cost_price is not None else b.original_price)
        pricing.agent_commission_percent = to_money(b.agent_discount_percent)
        pricing.agent_cost_price = cost
        pricing.commission_amount = to_money(b.original_price) - cost
    return StatementOut(
        booking=_booking_out(b, ctx.today),
        pricing=pricing,
        payments=[_payment_out(p) for p in b.payments],
    )


# ----------------------------
# Payments
# ----------------------------


@app.get("/payments/{payment_id}", response_model=PaymentOut)
def get_payment(
    payment_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("agent", "staff", "admin")),
):
    return _payment_out(ledger.get_payment(engine, payment_id))


@app.post("/payments/{payment_id}/transition", response_model=LedgerOut)
async def transition_payment(
    payment_id: str,
    payload: PaymentTransition,
    engine=Depends(get_engine),
    principal=Depends(require_roles("staff", "admin")),
):
    ctx = context_for(principal)
    payment, booking, applied = ledger.transition_payment(engine, payment_id, payload.status, ctx, failure_reason=payload.failure_reason)
    await _publish_settlement(payment, booking, applied)
    return LedgerOut(booking=_booking_out(booking, ctx.today), payment=_payment_out(payment))


@app.post("/payments/{payment_id}/callback", response_model=LedgerOut)
async def gateway_callback(
    payment_id: str,
    payload: GatewayCallback,
    engine=Depends(get_engine),
    principal=Depends(require_roles("gateway", "admin")),
):
    ctx = context_for(principal)
    payment, booking, applied = ledger.apply_gateway_callback(engine, payment_id, payload, ctx)
    await _publish_settlement(payment, booking, applied)
    return LedgerOut(booking=_booking_out(booking, ctx.today), payment=_payment_out(payment))


@app.post("/payments/{payment_id}/refund", response_model=LedgerOut)
async def refund_payment(
    payment_id: str,
    payload: RefundCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("staff", "admin")),
):
    ctx = context_for(principal)
    refund, booking = ledger.request_refund(engine, payment_id, payload, ctx)
    await events.publish("payment.recorded", events.payment_payload(refund, booking))
    await _publish_settlement(refund, booking, refund.ledger_applied_at is not None)
    return LedgerOut(booking=_booking_out(booking, ctx.today), payment=_payment_out(refund))


# ----------------------------
# Commission rules
# ----------------------------


def _rule_out(r) -> CommissionRuleOut:
    return CommissionRuleOut(
        id=r.id,
        service=r.service,
        agent_id=r.agent_id,
        commission_percent=r.commission_percent,
        commission_amount=r.commission_amount,
        updated_at=r.updated_at,
    )


@app.get("/commissions", response_model=list[CommissionRuleOut])
def list_commission_rules(
    service: ServiceType | None = None,
    agent_id: str | None = None,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("staff", "admin")),
):
    with session(engine) as s:
        rows = commission.list_rules(s, service_type=service, agent_id=agent_id)
    return [_rule_out(r) for r in rows]


@app.post("/commissions", response_model=CommissionRuleOut)
def upsert_commission_rule(
    payload: CommissionRuleIn,
    engine=Depends(get_engine),
    principal=Depends(require_roles("admin")),
):
    ctx = context_for(principal)
    with session(engine) as s:
        rule = commission.upsert_rule(
            s,
            service_type=payload.service,
            agent_id=payload.agent_id,
            percent=payload.commission_percent,
            amount=payload.commission_amount,
            ctx=ctx,
        )
        try:
            s.commit()
        except IntegrityError:
            # A concurrent request created the same (service, agent) rule first.
            s.rollback()
            raise ConcurrencyConflict("Commission rule was created concurrently; retry")
    return _rule_out(rule)


@app.delete("/commissions/{rule_id}")
def delete_commission_rule(
    rule_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("admin")),
):
    with session(engine) as s:
        commission.delete_rule(s, rule_id)
        s.commit()
    return {"status": "deleted"}


@app.get("/commissions/quote", response_model=CommissionQuoteOut)
def quote_commission(
    service: ServiceType,
    agent_id: str | None = None,
    original_price: Decimal | None = None,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("agent", "staff", "admin")),
):
    with session(engine) as s:
        quote = commission.quote_commission(s, service, agent_id)
    out = CommissionQuoteOut(service=service, agent_id=agent_id, percent=quote.percent, fixed_amount=quote.fixed_amount)
    if original_price is not None:
        out.original_price = to_money(original_price)
        out.commission = domain.commission_for(original_price, quote)
        out.agent_cost_price = domain.agent_cost_price(original_price, quote)
    return out
