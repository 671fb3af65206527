# tests/integration/test_sweep_service.py

from src.application.compliance_service import ComplianceService
from src.application.payment_service import PaymentService
from src.application.request_service import RequestService
from src.application.sweep_service import SweepReport, SweepService
from src.domain.state_machine import BookingItemStatus, PaymentOutcome


def test_empty_sweep_reports_nothing(db, clock):
    assert SweepService(db, clock=clock).run() == SweepReport(0, 0, 0, 0)


def test_sweep_handles_every_timed_step(db, clock, gateway, customer, accepted_booking):
    paid = accepted_booking()
    invoice = PaymentService(db, gateway=gateway, clock=clock).open_checkout(
        customer, "ok", "cancel", booking_id=paid.booking.id
    )
    db.commit()
    PaymentService(db, clock=clock).apply_payment_event("evt_ok", invoice.session_ref, PaymentOutcome.SUCCEEDED)
    ComplianceService(db, clock=clock).apply_payout_account_status(
        "vendor-dj", charges_enabled=True, payouts_enabled=False
    )
    RequestService(db, clock=clock).create_request(customer, ["dj"], 30000, response_hours=1)
    db.commit()

    clock.advance(days=30)
    report = SweepService(db, clock=clock).run()
    db.commit()

    assert report.expired_requests == 1
    assert report.released_payouts == 1
    assert report.deferred_payouts == 1
    assert report.expired_items == 0
    assert SweepService(db, clock=clock).run() == SweepReport(0, 0, 0, 1)


def test_sweep_expires_quiet_negotiations(db, clock, open_booking):
    setup = open_booking()

    clock.advance(days=30)
    report = SweepService(db, clock=clock).run()
    db.commit()

    assert report.expired_items == 2
    assert setup.venue_item.status == BookingItemStatus.EXPIRED
    assert setup.dj_item.status == BookingItemStatus.EXPIRED
