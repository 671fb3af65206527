# tests/integration/test_request_service.py

import json

import pytest

from src.application.request_service import MAX_RESPONSE_HOURS, RequestService
from src.domain.actors import Actor
from src.domain.exceptions import (
    ActorMismatchError,
    DeadlinePassedError,
    DuplicateOfferError,
    FlowDisabledError,
    RequestAlreadyClosedError,
    RequestNotOpenError,
    ValidationFailedError,
    VendorNotCompliantError,
)
from src.domain.state_machine import (
    ActorRole,
    OfferStatus,
    RequestClosedReason,
    RequestStatus,
)
from src.infrastructure.db.session import get_db_session
from src.infrastructure.repositories.outbox_repository import OutboxRepository


# ---------------------
# OPENING REQUESTS
# ---------------------

def test_request_window_is_clamped(db, clock, customer):
    service = RequestService(db, clock=clock)

    long_request = service.create_request(customer, ["Catering", "catering", "DJ"], 50000, response_hours=500)
    short_request = service.create_request(customer, ["dj"], 50000, response_hours=0)

    assert long_request.response_hours == MAX_RESPONSE_HOURS
    assert long_request.selected_categories == ["catering", "dj"]
    assert short_request.response_hours == 1
    assert long_request.status == RequestStatus.OPEN


def test_request_needs_customer_with_email(db, clock):
    service = RequestService(db, clock=clock)

    with pytest.raises(ActorMismatchError):
        service.create_request(Actor("vendor-a", ActorRole.VENDOR), ["dj"], 1000)
    with pytest.raises(ValidationFailedError):
        service.create_request(Actor("customer-2", ActorRole.CUSTOMER), ["dj"], 1000)


def test_legacy_flow_can_be_switched_off(db, clock, customer):
    with pytest.raises(FlowDisabledError):
        RequestService(db, flow_mode="structured", clock=clock).create_request(customer, ["dj"], 1000)


# ---------------------
# OFFERS
# ---------------------

def test_first_accept_closes_request_and_ignores_siblings(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor_a = compliant_vendor("vendor-a")
    vendor_b = compliant_vendor("vendor-b")

    request = service.create_request(customer, ["catering"], budget_cents=50000)
    offer_a = service.submit_offer(request.id, vendor_a, 45000, "Buffet for 80 guests")
    offer_b = service.submit_offer(request.id, vendor_b, 48000, "Plated dinner, three courses")
    db.commit()

    service.set_offer_status(request.id, offer_a.id, OfferStatus.ACCEPTED, customer)
    db.commit()

    with pytest.raises(RequestAlreadyClosedError):
        service.set_offer_status(request.id, offer_b.id, OfferStatus.ACCEPTED, customer)
    db.rollback()

    reloaded = service.get_request(request.id)
    assert reloaded.request.status == RequestStatus.CLOSED
    assert reloaded.request.closed_reason == RequestClosedReason.OFFER_ACCEPTED
    assert {offer.vendor_id: offer.status for offer in reloaded.offers} == {
        "vendor-a": OfferStatus.ACCEPTED,
        "vendor-b": OfferStatus.IGNORED,
    }

    events = OutboxRepository(db).list_events("PENDING", 10)
    closed = [event for event in events if event.event_type == "REQUEST_CLOSED"]
    assert len(closed) == 1
    assert json.loads(closed[0].payload)["accepted_offer_id"] == offer_a.id


def test_declined_offer_leaves_request_open(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor_a = compliant_vendor("vendor-a")
    vendor_b = compliant_vendor("vendor-b")
    request = service.create_request(customer, ["dj"], 30000)
    offer_a = service.submit_offer(request.id, vendor_a, 29000, None)
    offer_b = service.submit_offer(request.id, vendor_b, 27000, None)
    db.commit()

    service.set_offer_status(request.id, offer_a.id, OfferStatus.DECLINED, customer)
    db.commit()
    accepted = service.set_offer_status(request.id, offer_b.id, OfferStatus.ACCEPTED, customer)
    db.commit()

    assert accepted.status == OfferStatus.ACCEPTED
    assert offer_a.status == OfferStatus.DECLINED


def test_only_the_requesting_customer_decides(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    request = service.create_request(customer, ["dj"], 30000)
    offer = service.submit_offer(request.id, vendor, 29000, None)
    db.commit()

    stranger = Actor("customer-2", ActorRole.CUSTOMER, email="someone@example.org")
    with pytest.raises(ActorMismatchError):
        service.set_offer_status(request.id, offer.id, OfferStatus.ACCEPTED, stranger)


def test_one_offer_per_vendor(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    request = service.create_request(customer, ["dj"], 30000)
    service.submit_offer(request.id, vendor, 29000, None)
    db.commit()

    with pytest.raises(DuplicateOfferError):
        service.submit_offer(request.id, vendor, 28000, "cheaper now")


def test_non_compliant_vendor_cannot_respond(db, clock, customer):
    service = RequestService(db, clock=clock)
    request = service.create_request(customer, ["dj"], 30000)
    db.commit()

    with pytest.raises(VendorNotCompliantError) as excinfo:
        service.submit_offer(request.id, Actor("vendor-new", ActorRole.VENDOR), 29000, None)
    assert "admin_approved" in excinfo.value.missing


def test_offer_message_is_moderated(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    request = service.create_request(customer, ["dj"], 30000)
    db.commit()

    with pytest.raises(ValidationFailedError):
        service.submit_offer(request.id, vendor, 29000, "Call me on +49 170 1234567")


# ---------------------
# DEADLINES
# ---------------------

def test_late_offer_expires_the_request(db, clock, session_factory, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    request = service.create_request(customer, ["dj"], 30000, response_hours=2)
    db.commit()

    clock.advance(hours=3)
    with pytest.raises(DeadlinePassedError) as excinfo:
        with get_db_session(session_factory) as session:
            RequestService(session, clock=clock).submit_offer(request.id, vendor, 29000, None)
    assert excinfo.value.keeps_changes

    db.refresh(request)
    assert request.status == RequestStatus.EXPIRED
    assert request.closed_reason == RequestClosedReason.TIME_LIMIT


def test_expiry_is_left_to_the_callers_transaction(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    request = service.create_request(customer, ["dj"], 30000, response_hours=2)
    offer = service.submit_offer(request.id, vendor, 29000, None)
    db.commit()

    clock.advance(hours=3)
    with pytest.raises(DeadlinePassedError):
        service.set_offer_status(request.id, offer.id, OfferStatus.ACCEPTED, customer)
    assert request.status == RequestStatus.EXPIRED
    assert offer.status == OfferStatus.IGNORED
    db.rollback()

    db.refresh(request)
    db.refresh(offer)
    assert request.status == RequestStatus.OPEN
    assert offer.status == OfferStatus.PENDING


def test_other_errors_roll_the_unit_of_work_back(db, clock, session_factory, customer):
    with pytest.raises(ValidationFailedError):
        with get_db_session(session_factory) as session:
            service = RequestService(session, clock=clock)
            service.create_request(customer, ["dj"], 30000)
            service.create_request(customer, [" "], 30000)

    assert RequestService(db, clock=clock).list_open_for_category("dj") == []


def test_sweep_expires_only_overdue_requests(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor = compliant_vendor("vendor-a")
    short = service.create_request(customer, ["dj"], 30000, response_hours=1)
    long = service.create_request(customer, ["dj"], 30000, response_hours=72)
    offer = service.submit_offer(short.id, vendor, 29000, None)
    db.commit()

    clock.advance(hours=2)
    assert service.list_open_for_category("dj") == [long]

    expired = service.expire_stale_requests()
    db.commit()

    assert expired == [short.id]
    assert service.expire_stale_requests() == []
    assert service.get_request(short.id).request.status == RequestStatus.EXPIRED
    assert service.get_request(long.id).request.status == RequestStatus.OPEN
    assert offer.status == OfferStatus.IGNORED


def test_cancelled_request_takes_no_offers(db, clock, customer, compliant_vendor):
    service = RequestService(db, clock=clock)
    vendor_a = compliant_vendor("vendor-a")
    vendor_b = compliant_vendor("vendor-b")
    request = service.create_request(customer, ["dj"], 30000)
    offer = service.submit_offer(request.id, vendor_a, 29000, None)
    db.commit()

    cancelled = service.cancel_request(request.id, customer)
    db.commit()

    assert cancelled.closed_reason == RequestClosedReason.CUSTOMER_CANCELLED
    assert offer.status == OfferStatus.IGNORED
    with pytest.raises(RequestNotOpenError):
        service.submit_offer(request.id, vendor_b, 25000, None)
