# tests/integration/test_payment_service.py

import pytest
from sqlalchemy import func, select, update

from src.application.booking_service import BookingService
from src.application.compliance_service import ComplianceService
from src.application.payment_service import (
    ALREADY_PROCESSED,
    APPLIED,
    DEFERRED,
    IGNORED,
    RELEASED,
    PaymentService,
)
from src.application.request_service import RequestService
from src.domain.actors import Actor
from src.domain.exceptions import (
    ActorMismatchError,
    CheckoutNotAllowedError,
    InvalidStateError,
    InvoiceAlreadyOpenError,
    NotFoundError,
    UnavailableError,
)
from src.domain.state_machine import (
    ActorRole,
    BookingStatus,
    InvoiceStatus,
    OfferPaymentStatus,
    OfferStatus,
    PaymentOutcome,
    PayoutStatus,
)
from src.infrastructure.db.models import Invoice, PaymentEvent, Payout
from src.infrastructure.repositories.payment_repository import PaymentRepository


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _checkout(db, clock, gateway, customer, booking_id):
    invoice = PaymentService(db, gateway=gateway, clock=clock).open_checkout(
        customer,
        success_ref="https://app.example/bookings/ok",
        cancel_ref="https://app.example/bookings/cancel",
        booking_id=booking_id,
    )
    db.commit()
    return invoice


def _settle_before_lock(monkeypatch, db, method_name, invoice):
    """Mark the invoice paid on the connection just before the locked read runs."""
    original = getattr(PaymentRepository, method_name)

    def settled_concurrently(self, *args):
        db.connection().execute(
            update(Invoice).where(Invoice.id == invoice.id).values(status=InvoiceStatus.PAID)
        )
        return original(self, *args)

    monkeypatch.setattr(PaymentRepository, method_name, settled_concurrently)


# ---------------------
# CHECKOUT
# ---------------------

def test_checkout_waits_for_the_agreement(db, clock, gateway, customer, open_booking):
    setup = open_booking()

    with pytest.raises(CheckoutNotAllowedError):
        _checkout(db, clock, gateway, customer, setup.booking.id)
    assert gateway.sessions == []


def test_checkout_issues_one_invoice(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()

    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)

    assert invoice.status == InvoiceStatus.ISSUED
    assert invoice.amount_cents == 340000
    assert invoice.session_ref == gateway.sessions[0]["session_ref"]
    assert gateway.sessions[0]["metadata"]["booking_id"] == setup.booking.id

    with pytest.raises(InvoiceAlreadyOpenError):
        _checkout(db, clock, gateway, customer, setup.booking.id)


def test_only_the_booking_customer_pays(db, clock, gateway, accepted_booking):
    setup = accepted_booking()
    stranger = Actor("customer-2", ActorRole.CUSTOMER)

    with pytest.raises(ActorMismatchError):
        _checkout(db, clock, gateway, stranger, setup.booking.id)


def test_processor_outage_leaves_no_invoice(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    gateway.fail_next = True

    with pytest.raises(UnavailableError):
        _checkout(db, clock, gateway, customer, setup.booking.id)
    db.rollback()

    assert _count(db, Invoice) == 0
    assert _checkout(db, clock, gateway, customer, setup.booking.id).status == InvoiceStatus.ISSUED


# ---------------------
# PROCESSOR EVENTS
# ---------------------

def test_duplicate_success_creates_payouts_once(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    service = PaymentService(db, clock=clock)

    first = service.apply_payment_event("evt_1", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()
    replay = service.apply_payment_event("evt_1", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()
    second_success = service.apply_payment_event("evt_2", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    assert first.result == APPLIED
    assert replay.result == ALREADY_PROCESSED
    assert second_success.result == IGNORED
    assert invoice.status == InvoiceStatus.PAID
    assert _count(db, PaymentEvent) == 2

    payouts = {payout.vendor_id: payout for payout in service.payment_repository.list_payouts_for_invoice(invoice.id)}
    assert set(payouts) == {"vendor-venue", "vendor-dj"}
    assert payouts["vendor-venue"].gross_cents == 250000
    assert payouts["vendor-venue"].platform_fee_cents == 37500
    assert payouts["vendor-venue"].vendor_net_cents == 212500
    assert payouts["vendor-dj"].vendor_net_cents == 76500


def test_late_success_after_failure_is_applied(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    service = PaymentService(db, clock=clock)

    assert service.apply_payment_event("evt_fail", invoice.session_ref, PaymentOutcome.FAILED).result == APPLIED
    db.commit()
    assert invoice.status == InvoiceStatus.FAILED

    assert service.apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED).result == APPLIED
    db.commit()
    assert invoice.status == InvoiceStatus.PAID


def test_failure_never_overrides_success(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    service = PaymentService(db, clock=clock)

    service.apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()
    late_failure = service.apply_payment_event("evt_fail", invoice.session_ref, PaymentOutcome.FAILED)
    db.commit()

    assert late_failure.result == IGNORED
    assert invoice.status == InvoiceStatus.PAID


def test_failed_invoice_is_voided_on_retry(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    failed = _checkout(db, clock, gateway, customer, setup.booking.id)
    PaymentService(db, clock=clock).apply_payment_event("evt_fail", failed.session_ref, PaymentOutcome.FAILED)
    db.commit()

    retry = _checkout(db, clock, gateway, customer, setup.booking.id)

    assert failed.status == InvoiceStatus.VOID
    assert retry.status == InvoiceStatus.ISSUED
    assert retry.session_ref != failed.session_ref


def test_retry_sees_a_success_that_landed_during_checkout(
    db, clock, gateway, customer, accepted_booking, monkeypatch
):
    setup = accepted_booking()
    failed = _checkout(db, clock, gateway, customer, setup.booking.id)
    PaymentService(db, clock=clock).apply_payment_event("evt_fail", failed.session_ref, PaymentOutcome.FAILED)
    db.commit()
    _settle_before_lock(monkeypatch, db, "lock_invoices_for_booking", failed)

    with pytest.raises(InvoiceAlreadyOpenError):
        _checkout(db, clock, gateway, customer, setup.booking.id)

    assert failed.status == InvoiceStatus.PAID
    assert failed.voided_at is None
    assert _count(db, Invoice) == 1
    db.rollback()


def test_unknown_session_records_nothing(db, clock):
    with pytest.raises(NotFoundError):
        PaymentService(db, clock=clock).apply_payment_event("evt_x", "order_missing", PaymentOutcome.SUCCEEDED)
    db.rollback()

    assert _count(db, PaymentEvent) == 0


def test_refund_cancels_pending_payouts(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    service = PaymentService(db, clock=clock)
    service.apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    assert service.apply_payment_event("evt_refund", invoice.session_ref, PaymentOutcome.REFUNDED).result == APPLIED
    db.commit()

    assert invoice.status == InvoiceStatus.REFUNDED
    assert {payout.status for payout in service.payment_repository.list_payouts_for_invoice(invoice.id)} == {
        PayoutStatus.FAILED
    }
    with pytest.raises(CheckoutNotAllowedError):
        _checkout(db, clock, gateway, customer, setup.booking.id)


# ---------------------
# PAYOUTS
# ---------------------

def test_payouts_release_once(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    service = PaymentService(db, clock=clock)
    service.apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    releases = service.release_pending_payouts()
    db.commit()
    assert [release.result for release in releases] == [RELEASED, RELEASED]

    again = service.release_payout(releases[0].payout.id)
    assert again.result == ALREADY_PROCESSED
    assert service.release_pending_payouts() == []


def test_payout_waits_for_payout_account(db, clock, gateway, admin, customer, accepted_booking):
    setup = accepted_booking()
    compliance = ComplianceService(db, clock=clock)
    compliance.apply_payout_account_status("vendor-dj", charges_enabled=True, payouts_enabled=False)
    db.commit()

    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    service = PaymentService(db, clock=clock)
    service.apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    results = {release.payout.vendor_id: release for release in service.release_pending_payouts()}
    db.commit()
    assert results["vendor-venue"].result == RELEASED
    assert results["vendor-dj"].result == DEFERRED
    assert results["vendor-dj"].payout.attempts == 1

    update = compliance.apply_payout_account_status("vendor-dj", charges_enabled=True, payouts_enabled=True)
    db.commit()

    assert update.payouts_enabled_now
    assert update.released_payouts == 1
    summary = service.payout_summary("vendor-dj", Actor("vendor-dj", ActorRole.VENDOR))
    assert summary.paid_cents == 76500
    assert summary.pending_cents == 0


def test_vendors_only_see_their_own_payouts(db, clock):
    with pytest.raises(ActorMismatchError):
        PaymentService(db, clock=clock).payout_summary("vendor-dj", Actor("vendor-venue", ActorRole.VENDOR))


# ---------------------
# BOOKING CLOSE-OUT
# ---------------------

def test_paid_booking_completes_and_cannot_be_cancelled(db, clock, gateway, admin, customer, accepted_booking):
    setup = accepted_booking()
    bookings = BookingService(db, clock=clock)

    with pytest.raises(InvalidStateError):
        bookings.complete_booking(setup.booking.id, admin)
    db.rollback()

    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    PaymentService(db, clock=clock).apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    with pytest.raises(InvalidStateError):
        bookings.cancel_booking(setup.booking.id, customer)
    db.rollback()

    completed = bookings.complete_booking(setup.booking.id, admin)
    db.commit()
    assert completed.status == BookingStatus.COMPLETED


def test_cancelling_booking_voids_open_invoice(db, clock, gateway, customer, accepted_booking):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)

    BookingService(db, clock=clock).cancel_booking(setup.booking.id, customer)
    db.commit()
    late = PaymentService(db, clock=clock).apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    assert invoice.status == InvoiceStatus.VOID
    assert late.result == IGNORED
    assert _count(db, Payout) == 0


def test_cancel_sees_a_payment_that_landed_first(db, clock, gateway, customer, accepted_booking, monkeypatch):
    setup = accepted_booking()
    invoice = _checkout(db, clock, gateway, customer, setup.booking.id)
    assert invoice.status == InvoiceStatus.ISSUED
    _settle_before_lock(monkeypatch, db, "lock_invoices_for_booking", invoice)

    with pytest.raises(InvalidStateError):
        BookingService(db, clock=clock).cancel_booking(setup.booking.id, customer)

    assert invoice.status == InvoiceStatus.PAID
    assert invoice.voided_at is None
    assert setup.booking.status == BookingStatus.ACCEPTED
    db.rollback()


# ---------------------
# SINGLE-VENDOR OFFERS
# ---------------------

def test_accepted_offer_is_paid_through_the_ledger(db, clock, gateway, customer, compliant_vendor):
    requests = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    request = requests.create_request(customer, ["catering"], 50000)
    offer = requests.submit_offer(request.id, vendor, 45000, "Buffet for 80 guests")
    db.commit()

    payments = PaymentService(db, gateway=gateway, clock=clock)
    with pytest.raises(CheckoutNotAllowedError):
        payments.open_checkout(customer, "ok", "cancel", request_id=request.id, offer_id=offer.id)
    db.rollback()

    requests.set_offer_status(request.id, offer.id, OfferStatus.ACCEPTED, customer)
    db.commit()

    invoice = payments.open_checkout(customer, "ok", "cancel", request_id=request.id, offer_id=offer.id)
    db.commit()
    assert offer.payment_status == OfferPaymentStatus.PENDING

    payments.apply_payment_event("evt_offer", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    db.commit()

    assert offer.payment_status == OfferPaymentStatus.PAID
    payout = payments.payment_repository.list_payouts_for_invoice(invoice.id)[0]
    assert payout.vendor_id == "vendor-a"
    assert payout.platform_fee_cents == 6750
    assert payout.vendor_net_cents == 38250
