# tests/conftest.py

import itertools
import json
import os
from datetime import date, datetime, timedelta, timezone
from typing import NamedTuple

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.api.dependencies import get_db, get_gateway
from src.application.booking_service import BookingService, ItemDraft
from src.application.compliance_service import ComplianceService
from src.application.listing_service import ListingService
from src.domain.actors import Actor
from src.domain.exceptions import UnavailableError, WebhookSignatureError
from src.domain.state_machine import ActorRole
from src.infrastructure.db.models import Base, Booking, BookingItem
from src.infrastructure.db.session import get_db_session
from src.infrastructure.payments.gateway import RazorpayGateway
from src.main import app


ADMIN = Actor(actor_id="admin-1", role=ActorRole.ADMIN)
CUSTOMER = Actor(actor_id="customer-1", role=ActorRole.CUSTOMER, email="anna@example.org")
EVENT_DAY = date(2026, 9, 12)
VALID_SIGNATURE = "valid-signature"


class FrozenClock:
    """Test clock; services call it like utc_now."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(RazorpayGateway):
    """Razorpay event parsing with the network calls replaced."""

    def __init__(self):
        super().__init__(key_id="rzp_test_key", key_secret="secret", webhook_secret="whsec")
        self._counter = itertools.count(1)
        self.sessions = []
        self.fail_next = False

    def create_checkout_session(self, amount_cents, currency, success_ref, cancel_ref, metadata):
        if self.fail_next:
            self.fail_next = False
            raise UnavailableError("Payment processor is unavailable. Please retry.")
        session_ref = f"order_test_{next(self._counter)}"
        self.sessions.append(
            {
                "session_ref": session_ref,
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": metadata,
            }
        )
        return session_ref

    def verify_webhook_signature(self, body, signature):
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid webhook signature")


def razorpay_event_body(event_type: str, order_id: str) -> bytes:
    if event_type == "order.paid":
        payload = {"order": {"entity": {"id": order_id, "status": "paid"}}}
    else:
        payload = {"payment": {"entity": {"id": f"pay_{order_id}", "order_id": order_id}}}
    return json.dumps({"event": event_type, "payload": payload}).encode("utf-8")


@pytest.fixture
def webhook_body():
    return razorpay_event_body


@pytest.fixture
def admin():
    return ADMIN


@pytest.fixture
def customer():
    return CUSTOMER


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def compliant_vendor(db):
    """Factory: passes every compliance step for a vendor and commits."""

    def _make(vendor_id: str) -> Actor:
        service = ComplianceService(db)
        service.record_admin_approval(vendor_id, ADMIN)
        service.record_contract_acceptance(vendor_id, ADMIN, contract_version="2024-01")
        service.record_training_completion(vendor_id, ADMIN)
        service.apply_payout_account_status(vendor_id, charges_enabled=True, payouts_enabled=True)
        db.commit()
        return Actor(actor_id=vendor_id, role=ActorRole.VENDOR)

    return _make


@pytest.fixture
def published_listing(db, compliant_vendor):
    """Factory: a compliant vendor with one published listing."""

    def _make(vendor_id: str, category: str = "venue", price_cents: int = 100000):
        vendor = compliant_vendor(vendor_id)
        service = ListingService(db)
        listing = service.create_listing(
            vendor,
            category=category,
            title=f"{vendor_id} {category}",
            base_price_cents=price_cents,
        )
        service.publish_listing(listing.id, vendor)
        db.commit()
        return listing

    return _make


class BookingSetup(NamedTuple):
    booking: Booking
    venue_item: BookingItem
    dj_item: BookingItem
    venue_vendor: Actor
    dj_vendor: Actor


@pytest.fixture
def event_day():
    return EVENT_DAY


@pytest.fixture
def open_booking(db, clock, published_listing):
    """Factory: a pending booking with a required venue and an optional DJ."""

    def _make() -> BookingSetup:
        venue = published_listing("vendor-venue", "venue", 250000)
        dj = published_listing("vendor-dj", "dj", 90000)
        service = BookingService(db, clock=clock)
        booking = service.create_booking(
            CUSTOMER,
            EVENT_DAY,
            [ItemDraft(venue.id, is_required=True), ItemDraft(dj.id)],
        )
        db.commit()
        items = {item.vendor_id: item for item in service.booking_repository.list_items(booking.id)}
        return BookingSetup(
            booking=booking,
            venue_item=items["vendor-venue"],
            dj_item=items["vendor-dj"],
            venue_vendor=Actor(actor_id="vendor-venue", role=ActorRole.VENDOR),
            dj_vendor=Actor(actor_id="vendor-dj", role=ActorRole.VENDOR),
        )

    return _make


@pytest.fixture
def accepted_booking(db, clock, open_booking):
    """Factory: both items agreed at list price and the agreement signed by everyone."""

    def _make() -> BookingSetup:
        setup = open_booking()
        service = BookingService(db, clock=clock)
        booking_id = setup.booking.id
        service.accept_offer(booking_id, setup.venue_item.id, setup.venue_vendor, 1)
        db.commit()
        service.accept_offer(booking_id, setup.dj_item.id, setup.dj_vendor, 1)
        db.commit()
        version = setup.booking.agreement_version
        for signer in (CUSTOMER, setup.venue_vendor, setup.dj_vendor):
            service.accept_agreement(booking_id, signer, version)
            db.commit()
        return setup

    return _make


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        with get_db_session(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def _headers(actor_id: str, role: str, email: str | None = None) -> dict:
        values = {"X-Actor-Id": actor_id, "X-Actor-Role": role}
        if email:
            values["X-Actor-Email"] = email
        return values

    return _headers
