from __future__ import annotations

import os
from datetime import date, datetime, time
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from .domain import BookingSource, PayerType, PaymentMethod, PaymentType, ServiceType

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "BDT")


class TourDetailsIn(BaseModel):
    pickup_location: str | None = None
    pickup_time: time | None = None
    drop_location: str | None = None
    room_type: Literal["single", "twin", "triple", "family"] | None = None
    meal_plan: Literal["no_meals", "breakfast", "half_board", "full_board"] | None = None
    guide_language: str | None = None
    emergency_contact: str | None = None
    tour_notes: str | None = None


class CarRentalDetailsIn(BaseModel):
    pickup_date: date | None = None
    return_date: date | None = None


class BookingCreate(BaseModel):
    service_type: ServiceType
    booking_source: BookingSource = BookingSource.ADMIN_POS

    customer_id: str | None = None
    agent_id: str | None = None
    tour_package_id: str | None = None
    car_rental_package_id: str | None = None

    customer_name: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    customer_phone: str | None = None
    customer_passport_number: str | None = None
    special_requirements: str | None = None

    adults: int = Field(default=1, ge=1)
    children: int = Field(default=0, ge=0)

    original_price: Decimal | None = Field(default=None, ge=0, description="Resolved from the catalog when omitted")
    selling_price: Decimal | None = Field(default=None, ge=0, description="Defaults to original_price")
    agent_discount_percent: Decimal | None = Field(default=None, ge=0, le=100)
    agent_cost_price: Decimal | None = Field(default=None, ge=0)
    additional_charges: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)

    allow_partial_payment: bool = False
    minimum_payment_amount: Decimal | None = Field(default=None, ge=0)

    service_date: date | None = None
    service_end_date: date | None = None

    admin_override_payment: bool = False
    payment_notes: str | None = None
    internal_notes: str | None = None
    booking_details: dict | None = None

    tour_details: TourDetailsIn | None = None
    car_rental_details: CarRentalDetailsIn | None = None


class BookingPricingUpdate(BaseModel):
    selling_price: Decimal | None = Field(default=None, ge=0)
    additional_charges: Decimal | None = Field(default=None, ge=0)
    discount_amount: Decimal | None = Field(default=None, ge=0)
    allow_partial_payment: bool | None = None
    minimum_payment_amount: Decimal | None = Field(default=None, ge=0)
    payment_notes: str | None = None
    internal_notes: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class TourDetailsOut(BaseModel):
    pickup_location: str | None
    pickup_time: time | None
    drop_location: str | None
    room_type: str
    room_type_label: str
    meal_plan: str
    meal_plan_label: str
    guide_language: str
    emergency_contact: str | None
    tour_notes: str | None
    summary: str


class CarRentalDetailsOut(BaseModel):
    pickup_date: date | None
    return_date: date | None
    rental_days: int


class BookingOut(BaseModel):
    id: str
    booking_reference: str
    service_type: ServiceType
    booking_source: BookingSource
    status: str
    payment_status: str

    customer_id: str | None
    agent_id: str | None
    booked_by: str | None
    tour_package_id: str | None
    car_rental_package_id: str | None

    customer_name: str
    customer_email: str
    customer_phone: str | None
    adults: int
    children: int

    original_price: Decimal
    selling_price: Decimal
    agent_discount_percent: Decimal | None
    agent_cost_price: Decimal | None
    additional_charges: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    paid_amount: Decimal
    due_amount: Decimal
    allow_partial_payment: bool
    minimum_payment_amount: Decimal | None

    service_date: date | None
    service_end_date: date | None
    created_at: datetime
    updated_at: datetime

    total_passengers: int
    remaining_amount: Decimal
    duration_days: int | None
    payment_progress: Decimal
    status_label: str
    minimum_payment_required: Decimal

    can_make_payment: bool
    can_cancel: bool
    can_modify: bool
    is_refundable: bool

    tour_details: TourDetailsOut | None = None
    car_rental_details: CarRentalDetailsOut | None = None


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_method: PaymentMethod
    payer_type: PayerType = PayerType.CUSTOMER
    payer_id: str | None = None
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)
    payment_type: PaymentType | None = Field(default=None, description="Derived from the amount when omitted")
    status: Literal["pending", "processing", "completed"] | None = Field(
        default=None,
        description="Defaults to completed for manual/POS methods, pending for gateways",
    )
    gateway_transaction_id: str | None = None
    gateway_reference: str | None = None
    receipt_number: str | None = None
    terminal_id: str | None = None
    payment_details: str | None = None
    notes: str | None = None
    admin_override: bool = False
    override_reason: str | None = None
    payment_date: datetime | None = None


class PaymentTransition(BaseModel):
    status: Literal["processing", "completed", "failed", "cancelled"]
    failure_reason: str | None = None


class GatewayCallback(BaseModel):
    """Normalized status update forwarded by a gateway adapter."""

    status: Literal["processing", "completed", "failed", "cancelled"]
    gateway_reference: str | None = None
    gateway_transaction_id: str | None = None
    callback_at: datetime | None = None
    failure_reason: str | None = None
    response: dict | None = None


class RefundCreate(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, description="Defaults to the full source payment amount")
    payment_method: PaymentMethod | None = None
    status: Literal["pending", "completed"] = "pending"
    notes: str | None = None


class PaymentOut(BaseModel):
    id: str
    booking_id: str
    payment_sequence: int
    payment_reference: str
    payment_type: str
    payer_type: str
    payer_id: str | None
    amount: Decimal
    currency: str
    payment_method: str
    status: str
    failure_reason: str | None
    gateway_reference: str | None
    gateway_transaction_id: str | None
    receipt_number: str | None
    terminal_id: str | None
    admin_override: bool
    override_reason: str | None
    refund_of_id: str | None
    processed_by: str | None
    payment_date: datetime
    gateway_callback_at: datetime | None
    created_at: datetime
    can_be_edited: bool
    can_be_cancelled: bool


class LedgerOut(BaseModel):
    booking: BookingOut
    payment: PaymentOut


class CommissionRuleIn(BaseModel):
    service: ServiceType
    agent_id: str | None = Field(default=None, description="Omit for the default rule applying to all agents")
    commission_percent: Decimal | None = Field(default=None, ge=0, le=100)
    commission_amount: Decimal | None = Field(default=None, ge=0)


class CommissionRuleOut(BaseModel):
    id: str
    service: ServiceType
    agent_id: str | None
    commission_percent: Decimal | None
    commission_amount: Decimal | None
    updated_at: datetime


class CommissionQuoteOut(BaseModel):
    service: ServiceType
    agent_id: str | None
    percent: Decimal | None
    fixed_amount: Decimal | None
    original_price: Decimal | None = None
    commission: Decimal | None = None
    agent_cost_price: Decimal | None = None


class PricingBreakdown(BaseModel):
    original_price: Decimal
    selling_price: Decimal
    additional_charges: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    paid_amount: Decimal
    due_amount: Decimal
    agent_commission_percent: Decimal | None = None
    agent_cost_price: Decimal | None = None
    commission_amount: Decimal | None = None


class StatementOut(BaseModel):
    booking: BookingOut
    pricing: PricingBreakdown
    payments: list[PaymentOut]
