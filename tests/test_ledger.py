from datetime import timedelta
from decimal import Decimal

import pytest

from booking_ledger import ledger, lifecycle
from booking_ledger.db import session
from booking_ledger.domain import LedgerContext
from booking_ledger.errors import ConcurrencyConflict, GuardViolation, NotFound, ValidationFailed
from booking_ledger.models import Booking, Payment
from booking_ledger.schemas import BookingCreate, BookingPricingUpdate, GatewayCallback, PaymentCreate, RefundCreate


def _new_booking(engine, ctx, **overrides) -> Booking:
    fields = dict(
        service_type="TOURS",
        customer_name="Rahim Uddin",
        customer_email="Rahim@example.com",
        adults=2,
        original_price=Decimal("15000"),
        selling_price=Decimal("15000"),
        allow_partial_payment=True,
        minimum_payment_amount=Decimal("1000"),
    )
    fields.update(overrides)
    return lifecycle.create_booking(engine, BookingCreate(**fields), ctx)


def _pay(engine, ctx, booking_id, amount, method="cash", **extra):
    return ledger.record_payment(engine, booking_id, PaymentCreate(amount=Decimal(amount), payment_method=method, **extra), ctx)


def test_scenarios_a_through_c(engine, ctx):
    b = _new_booking(engine, ctx)
    assert b.final_amount == Decimal("15000.00")
    assert b.due_amount == Decimal("15000.00")
    assert b.payment_status == "pending"

    p1, b = _pay(engine, ctx, b.id, "5000")
    assert p1.status == "completed"
    assert p1.payment_type == "advance_payment"
    assert (b.paid_amount, b.due_amount, b.payment_status) == (Decimal("5000.00"), Decimal("10000.00"), "partial")

    p2, b = _pay(engine, ctx, b.id, "10000")
    assert p2.payment_type == "full_payment"
    assert (b.paid_amount, b.due_amount, b.payment_status) == (Decimal("15000.00"), Decimal("0.00"), "paid")

    with pytest.raises(GuardViolation):
        _pay(engine, ctx, b.id, "100")


def test_payment_references_and_sequences_are_contiguous(engine, ctx):
    b = _new_booking(engine, ctx)
    refs = []
    for amount in ("1000", "2000", "3000"):
        p, _ = _pay(engine, ctx, b.id, amount)
        refs.append((p.payment_sequence, p.payment_reference))
    assert refs == [
        (1, f"{b.booking_reference}-P1"),
        (2, f"{b.booking_reference}-P2"),
        (3, f"{b.booking_reference}-P3"),
    ]
    listed = ledger.list_payments(engine, b.id)
    assert [p.payment_sequence for p in listed] == [3, 2, 1]


def test_gateway_payment_applies_only_on_completion(engine, ctx):
    b = _new_booking(engine, ctx)
    p, b = _pay(engine, ctx, b.id, "5000", method="bkash")
    assert p.status == "pending"
    assert b.paid_amount == Decimal("0.00")

    p, b, applied = ledger.apply_gateway_callback(engine, p.id, GatewayCallback(status="processing", gateway_reference="BK-778"), ctx)
    assert applied is False
    assert p.gateway_reference == "BK-778"
    assert b.paid_amount == Decimal("0.00")

    p, b, applied = ledger.apply_gateway_callback(engine, p.id, GatewayCallback(status="completed"), ctx)
    assert applied is True
    assert b.paid_amount == Decimal("5000.00")
    assert p.gateway_callback_at is not None

    # Gateway retries the same notification.
    p, b, applied = ledger.apply_gateway_callback(engine, p.id, GatewayCallback(status="completed"), ctx)
    assert applied is False
    assert b.paid_amount == Decimal("5000.00")


def test_duplicate_callback_leaves_settled_payment_untouched(engine, ctx):
    b = _new_booking(engine, ctx)
    p, _ = _pay(engine, ctx, b.id, "5000", method="sslcommerz")
    ledger.apply_gateway_callback(
        engine, p.id, GatewayCallback(status="completed", gateway_reference="GW-1", response={"val_id": "a1"}), ctx
    )

    later = LedgerContext(actor_id="gateway", now=ctx.now + timedelta(minutes=5))
    p, b, applied = ledger.apply_gateway_callback(
        engine, p.id, GatewayCallback(status="completed", gateway_reference="GW-2", response={"val_id": "b2"}), later
    )
    assert applied is False
    assert b.paid_amount == Decimal("5000.00")

    stored = ledger.get_payment(engine, p.id)
    assert stored.gateway_reference == "GW-1"
    assert stored.gateway_response == {"val_id": "a1"}

    with pytest.raises(GuardViolation):
        ledger.apply_gateway_callback(engine, p.id, GatewayCallback(status="failed", gateway_reference="GW-3"), later)
    assert ledger.get_payment(engine, p.id).gateway_reference == "GW-1"


def test_losing_the_payment_sequence_race_is_a_retryable_conflict(engine, ctx, monkeypatch):
    b = _new_booking(engine, ctx)
    _pay(engine, ctx, b.id, "5000")

    # A second writer that counted payments before the first one committed.
    monkeypatch.setattr(ledger, "next_payment_sequence", lambda s, booking_id: 1)
    with pytest.raises(ConcurrencyConflict) as exc:
        _pay(engine, ctx, b.id, "2000")
    assert exc.value.retryable is True

    listed = ledger.list_payments(engine, b.id)
    assert [p.payment_sequence for p in listed] == [1]
    assert lifecycle.get_booking(engine, b.id).paid_amount == Decimal("5000.00")


def test_completed_payment_cannot_fail_afterwards(engine, ctx):
    b = _new_booking(engine, ctx)
    p, _ = _pay(engine, ctx, b.id, "5000")
    with pytest.raises(GuardViolation):
        ledger.transition_payment(engine, p.id, "failed", ctx, failure_reason="chargeback")


def test_failed_payment_records_reason_and_leaves_booking_untouched(engine, ctx):
    b = _new_booking(engine, ctx)
    p, _ = _pay(engine, ctx, b.id, "5000", method="stripe")
    p, b, applied = ledger.transition_payment(engine, p.id, "failed", ctx, failure_reason="card declined")
    assert applied is False
    assert p.failure_reason == "card declined"
    assert b.paid_amount == Decimal("0.00")
    assert b.payment_status == "pending"


def test_minimum_payment_rules(engine, ctx):
    b = _new_booking(engine, ctx)
    with pytest.raises(ValidationFailed):
        _pay(engine, ctx, b.id, "500")
    with pytest.raises(ValidationFailed):
        _pay(engine, ctx, b.id, "20000")

    full_only = _new_booking(engine, ctx, allow_partial_payment=False, minimum_payment_amount=None)
    with pytest.raises(ValidationFailed):
        _pay(engine, ctx, full_only.id, "5000")
    p, b2 = _pay(engine, ctx, full_only.id, "15000")
    assert b2.payment_status == "paid"


def test_admin_override_needs_reason_and_skips_minimum(engine, ctx):
    b = _new_booking(engine, ctx)
    with pytest.raises(ValidationFailed):
        _pay(engine, ctx, b.id, "100", admin_override=True)
    p, b = _pay(engine, ctx, b.id, "100", admin_override=True, override_reason="goodwill deposit")
    assert p.admin_override is True
    assert b.paid_amount == Decimal("100.00")


def test_scenario_e_cancel_then_refund(engine, ctx):
    b = _new_booking(engine, ctx)
    p, b = _pay(engine, ctx, b.id, "5000")

    with pytest.raises(GuardViolation):
        ledger.request_refund(engine, p.id, RefundCreate(), ctx)

    b = lifecycle.cancel_booking(engine, b.id, ctx, reason="customer request")
    assert b.status == "cancelled"
    assert "customer request" in b.internal_notes

    refund, b = ledger.request_refund(engine, p.id, RefundCreate(), ctx)
    assert refund.payment_type == "refund"
    assert refund.refund_of_id == p.id
    assert refund.amount == Decimal("5000.00")
    assert refund.payment_sequence == 2
    assert b.payment_status == "partial"

    # Only one live refund per source payment.
    with pytest.raises(GuardViolation):
        ledger.request_refund(engine, p.id, RefundCreate(), ctx)

    refund, b, applied = ledger.transition_payment(engine, refund.id, "completed", ctx)
    assert applied is True
    assert b.payment_status == "refunded"
    assert b.paid_amount == Decimal("5000.00")

    with session(engine) as s:
        original = s.get(Payment, p.id)
        assert original.status == "completed"


def test_refund_larger_than_source_is_rejected(engine, ctx):
    b = _new_booking(engine, ctx)
    p, _ = _pay(engine, ctx, b.id, "5000")
    lifecycle.cancel_booking(engine, b.id, ctx)
    with pytest.raises(ValidationFailed):
        ledger.request_refund(engine, p.id, RefundCreate(amount=Decimal("6000")), ctx)


def test_cancelled_booking_rejects_new_payments(engine, ctx):
    b = _new_booking(engine, ctx)
    lifecycle.cancel_booking(engine, b.id, ctx)
    with pytest.raises(GuardViolation):
        _pay(engine, ctx, b.id, "5000")


def test_refund_cannot_be_recorded_directly(engine, ctx):
    b = _new_booking(engine, ctx)
    with pytest.raises(ValidationFailed):
        _pay(engine, ctx, b.id, "5000", payment_type="refund")


def test_repricing_after_partial_payment(engine, ctx):
    b = _new_booking(engine, ctx)
    _, b = _pay(engine, ctx, b.id, "5000")

    b = lifecycle.update_financials(engine, b.id, BookingPricingUpdate(additional_charges=Decimal("1500")), ctx)
    assert b.final_amount == Decimal("16500.00")
    assert b.due_amount == Decimal("11500.00")
    assert b.paid_amount == Decimal("5000.00")

    b = lifecycle.update_financials(engine, b.id, BookingPricingUpdate(discount_amount=Decimal("11500")), ctx)
    assert b.final_amount == Decimal("5000.00")
    assert b.due_amount == Decimal("0.00")
    assert b.payment_status == "paid"


def test_modification_closes_a_day_before_service(engine, ctx):
    b = _new_booking(engine, ctx, service_date=ctx.today + timedelta(days=1))
    with pytest.raises(GuardViolation):
        lifecycle.update_financials(engine, b.id, BookingPricingUpdate(discount_amount=Decimal("100")), ctx)


def test_paid_amount_never_decreases(engine, ctx):
    b = _new_booking(engine, ctx)
    seen = [b.paid_amount]
    for amount in ("2000", "3000"):
        _, b = _pay(engine, ctx, b.id, amount)
        seen.append(b.paid_amount)
    p, _ = _pay(engine, ctx, b.id, "1000", method="nagad")
    _, b, _ = ledger.transition_payment(engine, p.id, "cancelled", ctx)
    seen.append(b.paid_amount)
    assert seen == sorted(seen)
    assert seen[-1] == Decimal("5000.00")


def test_unknown_payment_and_booking(engine, ctx):
    with pytest.raises(NotFound):
        ledger.transition_payment(engine, "nope", "completed", ctx)
    with pytest.raises(NotFound):
        ledger.list_payments(engine, "nope")


def test_actor_is_recorded_on_payment(engine, ctx):
    b = _new_booking(engine, ctx)
    cashier = LedgerContext(actor_id="cashier-7", now=ctx.now)
    p, _ = _pay(engine, cashier, b.id, "5000")
    assert p.processed_by == "cashier-7"
