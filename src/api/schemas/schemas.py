from datetime import date, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# -----------------------------
# Requests and offers
# -----------------------------
class ServiceRequestCreate(BaseModel):
    categories: list[str] = Field(min_length=1)
    budget_cents: int = Field(gt=0)
    response_hours: int | None = None
    customer_phone: str | None = None


class OfferCreate(BaseModel):
    price_cents: int = Field(gt=0)
    message: str | None = Field(default=None, max_length=2000)


class OfferStatusUpdate(BaseModel):
    status: Literal["accepted", "declined", "ignored"]


class OfferResponse(BaseModel):
    id: str
    request_id: str
    vendor_id: str
    price_cents: int
    message: str
    status: str
    payment_status: str
    created_at: datetime
    paid_at: datetime | None = None


class ServiceRequestResponse(BaseModel):
    id: str
    customer_email: str
    selected_categories: list[str]
    budget_cents: int
    response_hours: int
    status: str
    closed_reason: str | None = None
    created_at: datetime
    expires_at: datetime
    closed_at: datetime | None = None
    offers: list[OfferResponse] = Field(default_factory=list)


# -----------------------------
# Listings
# -----------------------------
class ListingCreate(BaseModel):
    category: str
    title: str
    base_price_cents: int = Field(gt=0)
    description: str | None = None


class ListingResponse(BaseModel):
    id: str
    vendor_id: str
    category: str
    title: str
    description: str | None = None
    base_price_cents: int
    is_published: bool
    published_at: datetime | None = None


# -----------------------------
# Booking thread
# -----------------------------
class OfferBreakdown(BaseModel):
    model_config = ConfigDict(extra="forbid")

    travel_fee_cents: int | None = Field(default=None, ge=0)
    extra_hours: float | None = Field(default=None, ge=0)
    equipment_fee_cents: int | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=500)


class BookingItemCreate(BaseModel):
    service_id: str
    is_required: bool = False
    price_cents: int | None = Field(default=None, gt=0)
    breakdown: OfferBreakdown | None = None


class BookingCreate(BaseModel):
    event_date: date
    items: list[BookingItemCreate] = Field(min_length=1)


class CounterOfferRequest(BaseModel):
    price_cents: int = Field(gt=0)
    reason: str = Field(min_length=1, max_length=1000)
    breakdown: OfferBreakdown | None = None


class AcceptOfferRequest(BaseModel):
    offer_version: int = Field(gt=0)


class DeclineOfferRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class AgreementAcceptRequest(BaseModel):
    agreement_version: int = Field(gt=0)


class CancelBookingRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class OfferEventResponse(BaseModel):
    id: str
    sequence: int
    actor_role: str
    actor_id: str | None = None
    type: str
    offer_version: int
    price_cents: int | None = None
    reason: str | None = None
    breakdown: OfferBreakdown | None = None
    created_at: datetime


class _BookingItemFields(BaseModel):
    id: str
    vendor_id: str
    service_id: str
    is_required: bool
    current_offer_version: int
    latest_price_cents: int
    last_negotiation_at: datetime
    can_counter: bool = False
    can_accept: bool = False
    can_decline: bool = False
    events: list[OfferEventResponse] = Field(default_factory=list)


class OpenBookingItemResponse(_BookingItemFields):
    status: Literal["requested", "countered"]


class AgreedBookingItemResponse(_BookingItemFields):
    status: Literal["agreed"]
    final_price_cents: int


class ClosedBookingItemResponse(_BookingItemFields):
    status: Literal["declined", "expired", "cancelled"]


BookingItemResponse = Annotated[
    Union[OpenBookingItemResponse, AgreedBookingItemResponse, ClosedBookingItemResponse],
    Field(discriminator="status"),
]


class AgreementResponse(BaseModel):
    agreement_version: int
    customer_accepted: bool
    customer_accepted_at: datetime | None = None
    vendor_accepted: bool
    vendor_accepted_at: datetime | None = None
    can_sign: bool = False


class BookingResponse(BaseModel):
    id: str
    customer_id: str
    event_date: date
    status: str
    total_cents: int
    final_cents: int | None = None
    agreement: AgreementResponse
    items: list[BookingItemResponse] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime | None = None


class BookingSummaryResponse(BaseModel):
    id: str
    customer_id: str
    event_date: date
    status: str
    total_cents: int
    final_cents: int | None = None


# -----------------------------
# Compliance
# -----------------------------
class ContractAcceptRequest(BaseModel):
    contract_version: str = Field(min_length=1, max_length=32)


class SuspendVendorRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class PayoutAccountStatusRequest(BaseModel):
    charges_enabled: bool
    payouts_enabled: bool
    pending_requirements: list[str] = Field(default_factory=list)


class VendorDocumentCreate(BaseModel):
    kind: str = Field(min_length=1, max_length=64)
    url: str = Field(min_length=1, max_length=1024)


class VendorDocumentResponse(BaseModel):
    id: str
    vendor_id: str
    kind: str
    url: str
    uploaded_at: datetime


class ComplianceResponse(BaseModel):
    vendor_id: str
    admin_approved: bool
    contract_accepted: bool
    contract_version: str | None = None
    training_completed: bool
    connect_onboarding_status: str
    charges_enabled: bool
    payouts_enabled: bool
    pending_requirements: list[str]
    can_publish: bool
    missing: list[str]


# -----------------------------
# Payments and payouts
# -----------------------------
class CheckoutRequest(BaseModel):
    booking_id: str | None = None
    request_id: str | None = None
    offer_id: str | None = None
    success_ref: str
    cancel_ref: str


class InvoiceResponse(BaseModel):
    id: str
    booking_id: str | None = None
    request_id: str | None = None
    offer_id: str | None = None
    amount_cents: int
    currency: str
    status: str
    session_ref: str | None = None
    issued_at: datetime | None = None
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    refunded_at: datetime | None = None


class PaymentEventResult(BaseModel):
    result: str
    invoice_id: str | None = None
    invoice_status: str | None = None


class PayoutResponse(BaseModel):
    id: str
    invoice_id: str
    booking_id: str | None = None
    request_id: str | None = None
    vendor_id: str
    gross_cents: int
    platform_fee_cents: int
    vendor_net_cents: int
    status: str
    attempts: int
    released_at: datetime | None = None


class PayoutReleaseResponse(BaseModel):
    result: str
    payout: PayoutResponse


class PayoutSummaryResponse(BaseModel):
    vendor_id: str
    pending_cents: int
    paid_cents: int
    failed_cents: int
    payouts: list[PayoutResponse]


# -----------------------------
# Availability
# -----------------------------
class CalendarDayResponse(BaseModel):
    day: date
    status: str
    booking_id: str | None = None


# -----------------------------
# Operations
# -----------------------------
class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str


class AuditLogResponse(BaseModel):
    id: str
    admin_id: str
    action: str
    target_id: str | None = None
    meta: str | None = None
    created_at: datetime


class SweepResponse(BaseModel):
    expired_requests: int
    expired_items: int
    released_payouts: int
    deferred_payouts: int
