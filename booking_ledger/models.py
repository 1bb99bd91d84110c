from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Time, UniqueConstraint, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

Money = Numeric(12, 2, asdecimal=True)


class Base(DeclarativeBase):
    pass


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    service_type: Mapped[str] = mapped_column(String, index=True)  # ServiceType
    booking_reference: Mapped[str] = mapped_column(String, unique=True, index=True)
    booking_source: Mapped[str] = mapped_column(String, default="admin_pos")

    customer_id: Mapped[str | None] = mapped_column(String, index=True)
    agent_id: Mapped[str | None] = mapped_column(String, index=True)
    booked_by: Mapped[str | None] = mapped_column(String)

    tour_package_id: Mapped[str | None] = mapped_column(String, index=True)
    car_rental_package_id: Mapped[str | None] = mapped_column(String, index=True)

    customer_name: Mapped[str] = mapped_column(String)
    customer_email: Mapped[str] = mapped_column(String, index=True)
    customer_phone: Mapped[str | None] = mapped_column(String)
    customer_passport_number: Mapped[str | None] = mapped_column(String)
    special_requirements: Mapped[str | None] = mapped_column(Text)

    adults: Mapped[int] = mapped_column(Integer, default=1)
    children: Mapped[int] = mapped_column(Integer, default=0)

    original_price: Mapped[Decimal] = mapped_column(Money)
    selling_price: Mapped[Decimal] = mapped_column(Money)
    agent_discount_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2, asdecimal=True))
    agent_cost_price: Mapped[Decimal | None] = mapped_column(Money)
    additional_charges: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    # Derived; written only by domain.reprice / domain.apply_completed_payment.
    final_amount: Mapped[Decimal] = mapped_column(Money)
    paid_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    due_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))

    allow_partial_payment: Mapped[bool] = mapped_column(Boolean, default=False)
    minimum_payment_amount: Mapped[Decimal | None] = mapped_column(Money)

    service_date: Mapped[date | None] = mapped_column(Date, index=True)
    service_end_date: Mapped[date | None] = mapped_column(Date)

    status: Mapped[str] = mapped_column(String, index=True)  # draft|confirmed|completed|cancelled
    payment_status: Mapped[str] = mapped_column(String, index=True, default="pending")  # pending|partial|paid|refunded

    admin_override_payment: Mapped[bool] = mapped_column(Boolean, default=False)
    payment_notes: Mapped[str | None] = mapped_column(Text)
    internal_notes: Mapped[str | None] = mapped_column(Text)
    booking_details: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    payments: Mapped[list[Payment]] = relationship(
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="Payment.payment_sequence",
        lazy="selectin",
    )
    tour_details: Mapped[TourBookingDetail | None] = relationship(back_populates="booking", cascade="all, delete-orphan", lazy="selectin")
    car_rental_details: Mapped[CarRentalBookingDetail | None] = relationship(back_populates="booking", cascade="all, delete-orphan", lazy="selectin")

    # Lost updates on the booking row raise StaleDataError on flush.
    __mapper_args__ = {"version_id_col": version}


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("booking_id", "payment_sequence", name="uq_payments_booking_sequence"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    payment_sequence: Mapped[int] = mapped_column(Integer)

    payment_type: Mapped[str] = mapped_column(String)  # advance_payment|partial_payment|full_payment|refund
    payer_type: Mapped[str] = mapped_column(String)  # customer|agent|admin
    payer_id: Mapped[str | None] = mapped_column(String)

    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3), default="BDT")
    payment_method: Mapped[str] = mapped_column(String, index=True)

    gateway_transaction_id: Mapped[str | None] = mapped_column(String)
    gateway_reference: Mapped[str | None] = mapped_column(String, index=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON)

    payment_reference: Mapped[str] = mapped_column(String, unique=True, index=True)
    status: Mapped[str] = mapped_column(String, index=True)  # pending|processing|completed|failed|cancelled|refunded
    failure_reason: Mapped[str | None] = mapped_column(Text)

    receipt_number: Mapped[str | None] = mapped_column(String)
    terminal_id: Mapped[str | None] = mapped_column(String)
    payment_details: Mapped[str | None] = mapped_column(Text)  # mobile number, account details, etc.
    notes: Mapped[str | None] = mapped_column(Text)

    admin_override: Mapped[bool] = mapped_column(Boolean, default=False)
    override_reason: Mapped[str | None] = mapped_column(Text)

    refund_of_id: Mapped[str | None] = mapped_column(ForeignKey("payments.id"), index=True)

    processed_by: Mapped[str | None] = mapped_column(String)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    gateway_callback_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Set once, when the payment is folded into the booking totals.
    ledger_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    booking: Mapped[Booking] = relationship(back_populates="payments")


class TourBookingDetail(Base):
    __tablename__ = "tour_booking_details"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), unique=True)
    tour_package_id: Mapped[str | None] = mapped_column(String, index=True)

    pickup_location: Mapped[str | None] = mapped_column(String)
    pickup_time: Mapped[time | None] = mapped_column(Time)
    drop_location: Mapped[str | None] = mapped_column(String)
    room_type: Mapped[str] = mapped_column(String, default="twin")  # single|twin|triple|family
    meal_plan: Mapped[str] = mapped_column(String, default="breakfast")  # no_meals|breakfast|half_board|full_board
    guide_language: Mapped[str] = mapped_column(String, default="English")
    emergency_contact: Mapped[str | None] = mapped_column(String)
    tour_notes: Mapped[str | None] = mapped_column(Text)

    booking: Mapped[Booking] = relationship(back_populates="tour_details")


class CarRentalBookingDetail(Base):
    __tablename__ = "car_rental_booking_details"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), unique=True)
    car_rental_package_id: Mapped[str | None] = mapped_column(String, index=True)

    pickup_date: Mapped[date | None] = mapped_column(Date)
    return_date: Mapped[date | None] = mapped_column(Date)
    rental_days: Mapped[int] = mapped_column(Integer, default=1)

    booking: Mapped[Booking] = relationship(back_populates="car_rental_details")


class AgentCommission(Base):
    """
    Commission rule for a service type.

    agent_id = NULL is the default for every agent without a rule of their own.
    NULLs are distinct in a unique constraint, so the default rule gets its own
    partial unique index on service.
    """

    __tablename__ = "agent_commissions"
    __table_args__ = (
        UniqueConstraint("service", "agent_id", name="uq_agent_commissions_service_agent"),
        Index(
            "uq_agent_commissions_service_default",
            "service",
            unique=True,
            sqlite_where=text("agent_id IS NULL"),
            postgresql_where=text("agent_id IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    service: Mapped[str] = mapped_column(String, index=True)
    agent_id: Mapped[str | None] = mapped_column(String, index=True)

    commission_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2, asdecimal=True))
    commission_amount: Mapped[Decimal | None] = mapped_column(Money)

    created_by: Mapped[str | None] = mapped_column(String)
    updated_by: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
