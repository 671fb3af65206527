# src/infrastructure/repositories/payment_repository.py

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.domain.exceptions import ConflictError
from src.domain.state_machine import InvoiceStatus, PaymentOutcome, PayoutStatus
from src.infrastructure.db.models import Invoice, PaymentEvent, Payout


OPEN_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED, InvoiceStatus.PAID)


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    # -----------------------------
    # Invoices
    # -----------------------------
    def get_invoice(self, invoice_id: str) -> Invoice | None:
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_invoice_by_session(self, session_ref: str) -> Invoice | None:
        stmt = (
            select(Invoice)
            .where(Invoice.session_ref == session_ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_invoices_for_booking(self, booking_id: str) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.booking_id == booking_id)
            .order_by(Invoice.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_invoices_for_offer(self, offer_id: str) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.offer_id == offer_id)
            .order_by(Invoice.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def lock_invoices_for_booking(self, booking_id: str) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.booking_id == booking_id)
            .order_by(Invoice.created_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def lock_invoices_for_offer(self, offer_id: str) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.offer_id == offer_id)
            .order_by(Invoice.created_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.db.add(invoice)
        self.db.flush()
        return invoice

    # -----------------------------
    # Processed payment events
    # -----------------------------
    def get_event(self, external_event_id: str) -> PaymentEvent | None:
        stmt = select(PaymentEvent).where(
            PaymentEvent.external_event_id == external_event_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def record_event(
        self,
        external_event_id: str,
        session_ref: str,
        outcome: PaymentOutcome,
        invoice_id: str,
        result: str,
        payload_hash: str | None = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            external_event_id=external_event_id,
            session_ref=session_ref,
            outcome=outcome,
            invoice_id=invoice_id,
            result=result,
            payload_hash=payload_hash,
        )
        self.db.add(event)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # Same event id delivered against two invoices at once.
            raise ConflictError(
                f"Payment event {external_event_id} was recorded concurrently"
            ) from exc
        return event

    # -----------------------------
    # Payouts
    # -----------------------------
    def lock_payout(self, payout_id: str) -> Payout | None:
        stmt = select(Payout).where(Payout.id == payout_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_payouts_for_invoice(self, invoice_id: str) -> list[Payout]:
        stmt = (
            select(Payout)
            .where(Payout.invoice_id == invoice_id)
            .order_by(Payout.vendor_id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_payouts_for_vendor(self, vendor_id: str) -> list[Payout]:
        stmt = (
            select(Payout)
            .where(Payout.vendor_id == vendor_id)
            .order_by(Payout.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_pending_payout_ids(self, vendor_id: str | None = None) -> list[str]:
        stmt = select(Payout.id).where(Payout.status == PayoutStatus.PENDING)
        if vendor_id:
            stmt = stmt.where(Payout.vendor_id == vendor_id)
        stmt = stmt.order_by(Payout.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def add_payout(self, payout: Payout) -> Payout:
        self.db.add(payout)
        self.db.flush()
        return payout
