# src/infrastructure/db/models.py

from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.db.session import Base
from src.domain.state_machine import (
    ActorRole,
    AvailabilityStatus,
    BookingItemStatus,
    BookingStatus,
    ConnectOnboardingStatus,
    InvoiceStatus,
    OfferEventType,
    OfferPaymentStatus,
    OfferStatus,
    PaymentOutcome,
    PayoutStatus,
    RequestClosedReason,
    RequestStatus,
)


def _uuid() -> str:
    return str(uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _status_enum(enum_cls: type[PyEnum], name: str) -> Enum:
    # Persist the lowercase values so conditional SQL updates read naturally.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class ServiceRequest(Base):
    """
    Customer ask for one or more service categories.
    Status only moves forward; the request row is the lock for its offers.
    """

    __tablename__ = "service_requests"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    selected_categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    budget_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    response_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        _status_enum(RequestStatus, "request_status"),
        nullable=False,
        default=RequestStatus.OPEN,
    )
    closed_reason: Mapped[RequestClosedReason | None] = mapped_column(
        _status_enum(RequestClosedReason, "request_closed_reason"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("budget_cents > 0", name="ck_request_budget_positive"),
        Index("ix_service_requests_status_expires_at", "status", "expires_at"),
    )


class VendorOffer(Base):
    __tablename__ = "vendor_offers"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("service_requests.id"),
        nullable=False,
        index=True,
    )
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[OfferStatus] = mapped_column(
        _status_enum(OfferStatus, "offer_status"),
        nullable=False,
        default=OfferStatus.PENDING,
    )
    payment_status: Mapped[OfferPaymentStatus] = mapped_column(
        _status_enum(OfferPaymentStatus, "offer_payment_status"),
        nullable=False,
        default=OfferPaymentStatus.UNPAID,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("request_id", "vendor_id", name="uq_offer_request_vendor"),
        CheckConstraint("price_cents > 0", name="ck_offer_price_positive"),
        # Backstop for the request lock: one accepted offer per request.
        Index(
            "uq_offer_one_accepted_per_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
    )


class Listing(Base):
    """A vendor's bookable service or venue."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("base_price_cents > 0", name="ck_listing_price_positive"),
    )


class Booking(Base):
    """
    Aggregate over booking items for one event.
    Status is a projection of item statuses and the agreement block.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _status_enum(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.DRAFT,
    )
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    agreement_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    customer_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    customer_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    customer_accepted_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vendor_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    vendor_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    vendor_accepted_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    cancelled_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        onupdate=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("agreement_version > 0", name="ck_booking_agreement_version_positive"),
    )


class BookingItem(Base):
    __tablename__ = "booking_items"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
        index=True,
    )
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("listings.id"),
        nullable=False,
    )
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    current_offer_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    latest_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    final_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[BookingItemStatus] = mapped_column(
        _status_enum(BookingItemStatus, "booking_item_status"),
        nullable=False,
        default=BookingItemStatus.REQUESTED,
    )
    last_negotiation_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("current_offer_version > 0", name="ck_item_offer_version_positive"),
        CheckConstraint("latest_price_cents > 0", name="ck_item_price_positive"),
        CheckConstraint(
            "(status = 'agreed') = (final_price_cents IS NOT NULL)",
            name="ck_item_final_price_only_when_agreed",
        ),
    )


class OfferEvent(Base):
    """Append-only negotiation log; never updated or deleted."""

    __tablename__ = "offer_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
        index=True,
    )
    booking_item_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("booking_items.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_role: Mapped[ActorRole] = mapped_column(
        _status_enum(ActorRole, "offer_actor_role"),
        nullable=False,
    )
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[OfferEventType] = mapped_column(
        _status_enum(OfferEventType, "offer_event_type"),
        nullable=False,
    )
    offer_version: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "booking_item_id",
            "offer_version",
            "type",
            name="uq_offer_event_item_version_type",
        ),
        UniqueConstraint(
            "booking_item_id",
            "sequence",
            name="uq_offer_event_item_sequence",
        ),
    )


class AgreementSignature(Base):
    __tablename__ = "agreement_signatures"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
        index=True,
    )
    actor_role: Mapped[ActorRole] = mapped_column(
        _status_enum(ActorRole, "signature_actor_role"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agreement_version: Mapped[int] = mapped_column(Integer, nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "booking_id",
            "actor_id",
            "agreement_version",
            name="uq_agreement_signature_actor_version",
        ),
    )


class VendorCompliance(Base):
    __tablename__ = "vendor_compliance"

    vendor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    admin_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contract_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contract_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contract_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contract_accepted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contract_accepted_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    training_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    training_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    connect_onboarding_status: Mapped[ConnectOnboardingStatus] = mapped_column(
        _status_enum(ConnectOnboardingStatus, "connect_onboarding_status"),
        nullable=False,
        default=ConnectOnboardingStatus.NOT_STARTED,
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pending_requirements: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    can_publish: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        onupdate=_utc_now,
        nullable=False,
    )


class VendorDocument(Base):
    __tablename__ = "vendor_documents"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    booking_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=True,
        index=True,
    )
    request_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("service_requests.id"),
        nullable=True,
    )
    offer_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("vendor_offers.id"),
        nullable=True,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="EUR")
    status: Mapped[InvoiceStatus] = mapped_column(
        _status_enum(InvoiceStatus, "invoice_status"),
        nullable=False,
        default=InvoiceStatus.DRAFT,
    )
    session_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("session_ref", name="uq_invoice_session_ref"),
        CheckConstraint("amount_cents > 0", name="ck_invoice_amount_positive"),
        CheckConstraint(
            "(booking_id IS NOT NULL) OR (offer_id IS NOT NULL)",
            name="ck_invoice_has_subject",
        ),
    )


class PaymentEvent(Base):
    """Deduplication ledger for processor events (at-least-once delivery)."""

    __tablename__ = "payment_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    external_event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    session_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[PaymentOutcome] = mapped_column(
        _status_enum(PaymentOutcome, "payment_outcome"),
        nullable=False,
    )
    invoice_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("invoices.id"),
        nullable=False,
    )
    payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[str] = mapped_column(String(16), nullable=False, default="applied")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_payment_event_external_id"),
    )


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    invoice_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("invoices.id"),
        nullable=False,
    )
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    request_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    vendor_net_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        _status_enum(PayoutStatus, "payout_status"),
        nullable=False,
        default=PayoutStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("invoice_id", "vendor_id", name="uq_payout_invoice_vendor"),
        CheckConstraint("gross_cents >= 0", name="ck_payout_gross_nonnegative"),
        CheckConstraint(
            "vendor_net_cents = gross_cents - platform_fee_cents",
            name="ck_payout_net_matches_fee",
        ),
    )


class AvailabilityDay(Base):
    """Sparse calendar: a missing row means the date is available."""

    __tablename__ = "availability_days"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[AvailabilityStatus] = mapped_column(
        _status_enum(AvailabilityStatus, "availability_status"),
        nullable=False,
        default=AvailabilityStatus.AVAILABLE,
    )
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        onupdate=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("resource_id", "day", name="uq_availability_resource_day"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_log"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_uuid,
    )
    admin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_admin_audit_action_created_at", "action", "created_at"),
    )
