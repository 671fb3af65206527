# src/application/payment_service.py

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
import logging
import os
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from src.application.flow_mode import SIMPLE_FLOW, STRUCTURED_FLOW, ensure_flow_enabled
from src.domain.actors import Actor
from src.domain.clock import utc_now
from src.domain.exceptions import (
    ActorMismatchError,
    CheckoutNotAllowedError,
    InvoiceAlreadyOpenError,
    NotFoundError,
    UnavailableError,
    ValidationFailedError,
)
from src.domain.fees import split_payout
from src.domain.state_machine import (
    ActorRole,
    BookingItemStatus,
    BookingStatus,
    InvoiceStateMachine,
    InvoiceStatus,
    OfferPaymentStateMachine,
    OfferPaymentStatus,
    OfferStatus,
    PaymentOutcome,
    PayoutStateMachine,
    PayoutStatus,
)
from src.infrastructure.db.models import Invoice, Payout, VendorOffer
from src.infrastructure.payments.gateway import PaymentGateway
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.compliance_repository import ComplianceRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.payment_repository import OPEN_INVOICE_STATUSES, PaymentRepository
from src.infrastructure.repositories.request_repository import RequestRepository


logger = logging.getLogger(__name__)

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "EUR")
PLATFORM_COMMISSION_PERCENT = Decimal(os.getenv("PLATFORM_COMMISSION_PERCENT", "15"))

APPLIED = "applied"
IGNORED = "ignored"
ALREADY_PROCESSED = "already_processed"
RELEASED = "released"
DEFERRED = "deferred"


class CheckoutSubject(NamedTuple):
    amount_cents: int
    booking_id: str | None
    request_id: str | None
    offer_id: str | None


class PaymentApplication(NamedTuple):
    result: str
    invoice: Invoice | None


class PayoutRelease(NamedTuple):
    result: str
    payout: Payout


class PayoutSummary(NamedTuple):
    vendor_id: str
    pending_cents: int
    paid_cents: int
    failed_cents: int
    payouts: list[Payout]


class PaymentService:
    """
    Invoices and payouts. Processor events arrive at least once and in any
    order; each one is applied exactly once under the invoice row lock.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway | None = None,
        flow_mode: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        commission_percent: Decimal = PLATFORM_COMMISSION_PERCENT,
        currency: str = PAYMENT_CURRENCY,
    ):
        self.db = db
        self.gateway = gateway
        self.flow_mode = flow_mode
        self.clock = clock
        self.commission_percent = commission_percent
        self.currency = currency
        self.payment_repository = PaymentRepository(db)
        self.booking_repository = BookingRepository(db)
        self.request_repository = RequestRepository(db)
        self.compliance_repository = ComplianceRepository(db)
        self.outbox_repository = OutboxRepository(db)

    # -----------------------------
    # Checkout
    # -----------------------------
    def open_checkout(
        self,
        actor: Actor,
        success_ref: str,
        cancel_ref: str,
        booking_id: str | None = None,
        request_id: str | None = None,
        offer_id: str | None = None,
    ) -> Invoice:
        if self.gateway is None:
            raise UnavailableError("No payment gateway configured")
        if bool(booking_id) == bool(request_id and offer_id):
            raise ValidationFailedError("Checkout needs either a booking or a request offer")

        subject = self._checkout_subject(actor, booking_id, request_id, offer_id, lock=False)

        # No row lock is held across the processor call.
        try:
            session_ref = self.gateway.create_checkout_session(
                amount_cents=subject.amount_cents,
                currency=self.currency,
                success_ref=success_ref,
                cancel_ref=cancel_ref,
                metadata={
                    "receipt": subject.booking_id or subject.offer_id,
                    "booking_id": subject.booking_id or "",
                    "request_id": subject.request_id or "",
                    "offer_id": subject.offer_id or "",
                },
            )
        except UnavailableError:
            logger.warning(
                "Checkout session could not be created. booking_id=%s offer_id=%s",
                subject.booking_id,
                subject.offer_id,
            )
            raise

        subject = self._checkout_subject(actor, booking_id, request_id, offer_id, lock=True)
        now = self.clock()
        for previous in self._invoices_for(subject, lock=True):
            if previous.status == InvoiceStatus.FAILED:
                InvoiceStateMachine.validate_transition(previous.status, InvoiceStatus.VOID)
                previous.status = InvoiceStatus.VOID
                previous.voided_at = now

        invoice = self.payment_repository.add_invoice(
            Invoice(
                booking_id=subject.booking_id,
                request_id=subject.request_id,
                offer_id=subject.offer_id,
                amount_cents=subject.amount_cents,
                currency=self.currency,
                status=InvoiceStatus.ISSUED,
                session_ref=session_ref,
                issued_at=now,
                created_at=now,
            )
        )

        if subject.offer_id:
            offer = self.request_repository.get_offer_by_id(subject.offer_id)
            OfferPaymentStateMachine.validate_transition(offer.payment_status, OfferPaymentStatus.PENDING)
            offer.payment_status = OfferPaymentStatus.PENDING

        logger.info(
            "Checkout opened. invoice_id=%s session_ref=%s amount_cents=%s",
            invoice.id,
            session_ref,
            invoice.amount_cents,
        )
        return invoice

    # -----------------------------
    # Processor events
    # -----------------------------
    def apply_payment_event(
        self,
        external_event_id: str,
        session_ref: str,
        outcome: PaymentOutcome,
        payload_hash: str | None = None,
    ) -> PaymentApplication:
        invoice = self.payment_repository.lock_invoice_by_session(session_ref)
        if not invoice:
            # Nothing recorded; the processor redelivers and a later attempt can match.
            raise NotFoundError("invoice", session_ref)

        if self.payment_repository.get_event(external_event_id):
            logger.warning(
                "Duplicate payment event ignored. external_event_id=%s session_ref=%s",
                external_event_id,
                session_ref,
            )
            return PaymentApplication(ALREADY_PROCESSED, invoice)

        if outcome == PaymentOutcome.SUCCEEDED:
            result = self._apply_success(invoice)
        elif outcome == PaymentOutcome.FAILED:
            result = self._apply_failure(invoice)
        elif outcome == PaymentOutcome.REFUNDED:
            result = self._apply_refund(invoice)
        else:
            raise ValidationFailedError(f"Unknown payment outcome: {outcome}")

        self.payment_repository.record_event(
            external_event_id=external_event_id,
            session_ref=session_ref,
            outcome=outcome,
            invoice_id=invoice.id,
            result=result,
            payload_hash=payload_hash,
        )
        logger.info(
            "Payment event %s. external_event_id=%s invoice_id=%s outcome=%s invoice_status=%s",
            result,
            external_event_id,
            invoice.id,
            outcome.value,
            invoice.status.value,
        )
        return PaymentApplication(result, invoice)

    # -----------------------------
    # Payouts
    # -----------------------------
    def release_payout(self, payout_id: str) -> PayoutRelease:
        payout = self.payment_repository.lock_payout(payout_id)
        if not payout:
            raise NotFoundError("payout", payout_id)
        if payout.status == PayoutStatus.PAID:
            return PayoutRelease(ALREADY_PROCESSED, payout)
        PayoutStateMachine.validate_transition(payout.status, PayoutStatus.PAID)

        now = self.clock()
        payout.attempts += 1
        payout.last_attempt_at = now

        compliance = self.compliance_repository.get(payout.vendor_id)
        if not compliance or not compliance.payouts_enabled:
            logger.warning(
                "Payout deferred; vendor payouts not enabled. payout_id=%s vendor_id=%s attempts=%s",
                payout.id,
                payout.vendor_id,
                payout.attempts,
            )
            return PayoutRelease(DEFERRED, payout)

        payout.status = PayoutStatus.PAID
        payout.released_at = now
        self.outbox_repository.add_event(
            aggregate_type="payout",
            aggregate_id=payout.id,
            event_type="PAYOUT_RELEASED",
            payload={
                "payout_id": payout.id,
                "vendor_id": payout.vendor_id,
                "invoice_id": payout.invoice_id,
                "vendor_net_cents": payout.vendor_net_cents,
                "currency": self.currency,
            },
            dedupe_key=f"payout:{payout.id}:released",
        )
        logger.info(
            "Payout released. payout_id=%s vendor_id=%s vendor_net_cents=%s",
            payout.id,
            payout.vendor_id,
            payout.vendor_net_cents,
        )
        return PayoutRelease(RELEASED, payout)

    def release_pending_payouts(self, vendor_id: str | None = None) -> list[PayoutRelease]:
        return [
            self.release_payout(payout_id)
            for payout_id in self.payment_repository.list_pending_payout_ids(vendor_id)
        ]

    # -----------------------------
    # Reads
    # -----------------------------
    def get_invoice(self, invoice_id: str, actor: Actor) -> Invoice:
        invoice = self.payment_repository.get_invoice(invoice_id)
        if not invoice:
            raise NotFoundError("invoice", invoice_id)
        self._ensure_invoice_reader(invoice, actor)
        return invoice

    def list_invoices_for_booking(self, booking_id: str, actor: Actor) -> list[Invoice]:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("booking", booking_id)
        if not actor.is_admin and actor.actor_id != booking.customer_id:
            raise ActorMismatchError("Only the booking's customer can see its invoices")
        return self.payment_repository.list_invoices_for_booking(booking_id)

    def payout_summary(self, vendor_id: str, actor: Actor) -> PayoutSummary:
        if not actor.is_admin and not (
            actor.role == ActorRole.VENDOR and actor.actor_id == vendor_id
        ):
            raise ActorMismatchError("Vendors can only see their own payouts")

        payouts = self.payment_repository.list_payouts_for_vendor(vendor_id)
        totals = defaultdict(int)
        for payout in payouts:
            totals[payout.status] += payout.vendor_net_cents
        return PayoutSummary(
            vendor_id=vendor_id,
            pending_cents=totals[PayoutStatus.PENDING],
            paid_cents=totals[PayoutStatus.PAID],
            failed_cents=totals[PayoutStatus.FAILED],
            payouts=payouts,
        )

    # -----------------------------
    # Internals
    # -----------------------------
    def _checkout_subject(
        self,
        actor: Actor,
        booking_id: str | None,
        request_id: str | None,
        offer_id: str | None,
        lock: bool,
    ) -> CheckoutSubject:
        if booking_id:
            ensure_flow_enabled(STRUCTURED_FLOW, self.flow_mode)
            booking = (
                self.booking_repository.lock_booking(booking_id)
                if lock
                else self.booking_repository.get_by_id(booking_id)
            )
            if not booking:
                raise NotFoundError("booking", booking_id)
            if actor.role != ActorRole.CUSTOMER or actor.actor_id != booking.customer_id:
                raise ActorMismatchError("Only the booking's customer can pay for it")
            if booking.status != BookingStatus.ACCEPTED or not booking.final_cents:
                raise CheckoutNotAllowedError("Both parties must accept the agreement before checkout")
            subject = CheckoutSubject(booking.final_cents, booking.id, None, None)
        else:
            ensure_flow_enabled(SIMPLE_FLOW, self.flow_mode)
            request = (
                self.request_repository.lock_request(request_id)
                if lock
                else self.request_repository.get_by_id(request_id)
            )
            if not request:
                raise NotFoundError("request", request_id)
            offer = self.request_repository.get_offer(request_id, offer_id)
            if not offer:
                raise NotFoundError("offer", offer_id)
            if not actor.is_admin and not (
                actor.role == ActorRole.CUSTOMER
                and actor.email
                and actor.email.strip().lower() == request.customer_email.lower()
            ):
                raise ActorMismatchError("Only the request's customer can pay for an offer")
            if offer.status != OfferStatus.ACCEPTED:
                raise CheckoutNotAllowedError("Only an accepted offer can be paid")
            subject = CheckoutSubject(offer.price_cents, None, request.id, offer.id)

        for invoice in self._invoices_for(subject, lock=lock):
            if invoice.status in OPEN_INVOICE_STATUSES:
                raise InvoiceAlreadyOpenError(
                    f"Invoice {invoice.id} is already {invoice.status.value}"
                )
            if invoice.status == InvoiceStatus.REFUNDED:
                raise CheckoutNotAllowedError("This purchase was refunded and cannot be paid again")
        return subject

    def _invoices_for(self, subject: CheckoutSubject, lock: bool = False) -> list[Invoice]:
        # Locked reads refresh rows a concurrent webhook may have settled.
        if subject.booking_id:
            if lock:
                return self.payment_repository.lock_invoices_for_booking(subject.booking_id)
            return self.payment_repository.list_invoices_for_booking(subject.booking_id)
        if lock:
            return self.payment_repository.lock_invoices_for_offer(subject.offer_id)
        return self.payment_repository.list_invoices_for_offer(subject.offer_id)

    def _apply_success(self, invoice: Invoice) -> str:
        if not InvoiceStateMachine.can_transition(invoice.status, InvoiceStatus.PAID):
            if invoice.status == InvoiceStatus.VOID:
                logger.warning(
                    "Payment succeeded on a void invoice; needs manual refund. invoice_id=%s",
                    invoice.id,
                )
            return IGNORED

        now = self.clock()
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = now
        payouts = self._create_payouts(invoice)

        offer = self._invoice_offer(invoice)
        if offer:
            OfferPaymentStateMachine.validate_transition(offer.payment_status, OfferPaymentStatus.PAID)
            offer.payment_status = OfferPaymentStatus.PAID
            offer.paid_at = now

        self.outbox_repository.add_event(
            aggregate_type="invoice",
            aggregate_id=invoice.id,
            event_type="INVOICE_PAID",
            payload={
                "invoice_id": invoice.id,
                "booking_id": invoice.booking_id,
                "offer_id": invoice.offer_id,
                "amount_cents": invoice.amount_cents,
                "currency": invoice.currency,
                "payout_ids": [payout.id for payout in payouts],
            },
            dedupe_key=f"invoice:{invoice.id}:paid",
        )
        return APPLIED

    def _apply_failure(self, invoice: Invoice) -> str:
        # A failure never overrides a success that was already applied.
        if invoice.status != InvoiceStatus.ISSUED:
            return IGNORED

        invoice.status = InvoiceStatus.FAILED
        invoice.failed_at = self.clock()
        offer = self._invoice_offer(invoice)
        if offer and OfferPaymentStateMachine.can_transition(offer.payment_status, OfferPaymentStatus.FAILED):
            offer.payment_status = OfferPaymentStatus.FAILED
        return APPLIED

    def _apply_refund(self, invoice: Invoice) -> str:
        if not InvoiceStateMachine.can_transition(invoice.status, InvoiceStatus.REFUNDED):
            return IGNORED

        invoice.status = InvoiceStatus.REFUNDED
        invoice.refunded_at = self.clock()
        for payout in self.payment_repository.list_payouts_for_invoice(invoice.id):
            if payout.status == PayoutStatus.PENDING:
                payout.status = PayoutStatus.FAILED
            elif payout.status == PayoutStatus.PAID:
                logger.warning(
                    "Refund after payout release; recover from vendor. payout_id=%s vendor_id=%s",
                    payout.id,
                    payout.vendor_id,
                )
        return APPLIED

    def _create_payouts(self, invoice: Invoice) -> list[Payout]:
        gross_by_vendor: dict[str, int] = defaultdict(int)
        if invoice.booking_id:
            for item in self.booking_repository.list_items(invoice.booking_id):
                if item.status == BookingItemStatus.AGREED:
                    gross_by_vendor[item.vendor_id] += item.final_price_cents
        else:
            offer = self._invoice_offer(invoice)
            gross_by_vendor[offer.vendor_id] += invoice.amount_cents

        payouts = []
        for vendor_id in sorted(gross_by_vendor):
            split = split_payout(gross_by_vendor[vendor_id], self.commission_percent)
            payouts.append(
                self.payment_repository.add_payout(
                    Payout(
                        invoice_id=invoice.id,
                        booking_id=invoice.booking_id,
                        request_id=invoice.request_id,
                        vendor_id=vendor_id,
                        gross_cents=split.gross_cents,
                        platform_fee_cents=split.platform_fee_cents,
                        vendor_net_cents=split.vendor_net_cents,
                        status=PayoutStatus.PENDING,
                        attempts=0,
                        created_at=self.clock(),
                    )
                )
            )
        logger.info("Queued %s payouts for invoice_id=%s", len(payouts), invoice.id)
        return payouts

    def _invoice_offer(self, invoice: Invoice) -> VendorOffer | None:
        if not invoice.offer_id:
            return None
        return self.request_repository.get_offer_by_id(invoice.offer_id)

    def _ensure_invoice_reader(self, invoice: Invoice, actor: Actor) -> None:
        if actor.is_admin:
            return
        if invoice.booking_id:
            booking = self.booking_repository.get_by_id(invoice.booking_id)
            if booking and actor.actor_id == booking.customer_id:
                return
        if invoice.request_id:
            request = self.request_repository.get_by_id(invoice.request_id)
            if request and actor.email and actor.email.strip().lower() == request.customer_email.lower():
                return
        raise ActorMismatchError("Only the paying customer can see this invoice")
