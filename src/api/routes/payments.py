import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from src.api.dependencies import get_admin, get_db, get_gateway, get_principal
from src.api.schemas.schemas import (
    CheckoutRequest,
    InvoiceResponse,
    PaymentEventResult,
    PayoutReleaseResponse,
    PayoutResponse,
    PayoutSummaryResponse,
)
from src.application.payment_service import IGNORED, PaymentService
from src.domain.actors import Actor
from src.infrastructure.db.models import Invoice, Payout
from src.infrastructure.payments.gateway import PaymentGateway


router = APIRouter(tags=["payments"])
logger = logging.getLogger(__name__)


async def _raw_body(request: Request) -> bytes:
    # Signatures are computed over the exact bytes the processor sent.
    return await request.body()


def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        booking_id=invoice.booking_id,
        request_id=invoice.request_id,
        offer_id=invoice.offer_id,
        amount_cents=invoice.amount_cents,
        currency=invoice.currency,
        status=invoice.status.value,
        session_ref=invoice.session_ref,
        issued_at=invoice.issued_at,
        paid_at=invoice.paid_at,
        failed_at=invoice.failed_at,
        refunded_at=invoice.refunded_at,
    )


def _payout_response(payout: Payout) -> PayoutResponse:
    return PayoutResponse(
        id=payout.id,
        invoice_id=payout.invoice_id,
        booking_id=payout.booking_id,
        request_id=payout.request_id,
        vendor_id=payout.vendor_id,
        gross_cents=payout.gross_cents,
        platform_fee_cents=payout.platform_fee_cents,
        vendor_net_cents=payout.vendor_net_cents,
        status=payout.status.value,
        attempts=payout.attempts,
        released_at=payout.released_at,
    )


@router.post("/checkout", response_model=InvoiceResponse)
def open_checkout(
    payload: CheckoutRequest,
    principal: Actor = Depends(get_principal),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    invoice = PaymentService(db, gateway=gateway).open_checkout(
        actor=principal,
        success_ref=payload.success_ref,
        cancel_ref=payload.cancel_ref,
        booking_id=payload.booking_id,
        request_id=payload.request_id,
        offer_id=payload.offer_id,
    )
    return _invoice_response(invoice)


@router.post("/payments/webhook", response_model=PaymentEventResult)
def payment_webhook(
    body: bytes = Depends(_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    gateway.verify_webhook_signature(body, x_razorpay_signature)
    notification = gateway.parse_webhook_event(body, x_razorpay_event_id)
    if notification is None:
        return PaymentEventResult(result=IGNORED)

    application = PaymentService(db, gateway=gateway).apply_payment_event(
        external_event_id=notification.external_event_id,
        session_ref=notification.session_ref,
        outcome=notification.outcome,
        payload_hash=notification.payload_hash,
    )
    invoice = application.invoice
    return PaymentEventResult(
        result=application.result,
        invoice_id=invoice.id if invoice else None,
        invoice_status=invoice.status.value if invoice else None,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
def get_invoice(
    invoice_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return _invoice_response(PaymentService(db).get_invoice(invoice_id, principal))


@router.get("/bookings/{booking_id}/invoices", response_model=list[InvoiceResponse])
def list_booking_invoices(
    booking_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    invoices = PaymentService(db).list_invoices_for_booking(booking_id, principal)
    return [_invoice_response(invoice) for invoice in invoices]


@router.get("/vendors/{vendor_id}/payouts", response_model=PayoutSummaryResponse)
def vendor_payouts(
    vendor_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    summary = PaymentService(db).payout_summary(vendor_id, principal)
    return PayoutSummaryResponse(
        vendor_id=summary.vendor_id,
        pending_cents=summary.pending_cents,
        paid_cents=summary.paid_cents,
        failed_cents=summary.failed_cents,
        payouts=[_payout_response(payout) for payout in summary.payouts],
    )


@router.post("/payouts/{payout_id}/release", response_model=PayoutReleaseResponse)
def release_payout(
    payout_id: str,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    release = PaymentService(db).release_payout(payout_id)
    logger.info(
        "Manual payout release. payout_id=%s result=%s admin_id=%s",
        payout_id,
        release.result,
        admin.actor_id,
    )
    return PayoutReleaseResponse(result=release.result, payout=_payout_response(release.payout))
