# src/application/request_service.py

from datetime import datetime, timedelta
import logging
import os
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from src.application.flow_mode import SIMPLE_FLOW, ensure_flow_enabled
from src.domain.actors import Actor
from src.domain.clock import as_utc, utc_now
from src.domain.compliance import ensure_can_publish
from src.domain.exceptions import (
    ActorMismatchError,
    DeadlinePassedError,
    DuplicateOfferError,
    NotFoundError,
    RequestAlreadyClosedError,
    RequestExpiredError,
    RequestNotOpenError,
    ValidationFailedError,
    VendorNotCompliantError,
)
from src.domain.moderation import assert_no_contact_info, normalize_optional_text
from src.domain.state_machine import (
    ActorRole,
    OfferStateMachine,
    OfferStatus,
    RequestClosedReason,
    RequestStateMachine,
    RequestStatus,
)
from src.infrastructure.db.models import ServiceRequest, VendorOffer
from src.infrastructure.repositories.compliance_repository import ComplianceRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.request_repository import RequestRepository


logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_HOURS = int(os.getenv("DEFAULT_RESPONSE_HOURS", "48"))
MAX_RESPONSE_HOURS = int(os.getenv("MAX_RESPONSE_HOURS", "168"))
MAX_OFFER_MESSAGE_LENGTH = 2000


def clamp_response_hours(value: int | None) -> int:
    if value is None:
        return DEFAULT_RESPONSE_HOURS
    return max(1, min(int(value), MAX_RESPONSE_HOURS))


def normalize_categories(categories: list[str]) -> list[str]:
    seen: list[str] = []
    for category in categories:
        name = (category or "").strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


class RequestWithOffers(NamedTuple):
    request: ServiceRequest
    offers: list[VendorOffer]


class RequestService:
    """
    Single-vendor flow: a customer request collects competing vendor offers.

    Callers own the transaction. A request found past its deadline is expired
    in the session and DeadlinePassedError is raised; the error sets
    keeps_changes so the unit of work commits the expiry instead of rolling
    it back.
    """

    def __init__(
        self,
        db: Session,
        flow_mode: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.flow_mode = flow_mode
        self.clock = clock
        self.request_repository = RequestRepository(db)
        self.compliance_repository = ComplianceRepository(db)
        self.outbox_repository = OutboxRepository(db)

    def create_request(
        self,
        customer: Actor,
        categories: list[str],
        budget_cents: int,
        response_hours: int | None = None,
        customer_phone: str | None = None,
    ) -> ServiceRequest:
        ensure_flow_enabled(SIMPLE_FLOW, self.flow_mode)
        customer.require_role(ActorRole.CUSTOMER)
        if not customer.email:
            raise ValidationFailedError("A customer email is required to open a request")

        selected = normalize_categories(categories)
        if not selected:
            raise ValidationFailedError("Select at least one service category")
        if budget_cents <= 0:
            raise ValidationFailedError("Budget must be a positive amount")

        hours = clamp_response_hours(response_hours)
        now = self.clock()
        request = self.request_repository.create_request(
            customer_email=customer.email.strip().lower(),
            customer_phone=normalize_optional_text(customer_phone, max_length=64),
            categories=selected,
            budget_cents=budget_cents,
            response_hours=hours,
            created_at=now,
            expires_at=now + timedelta(hours=hours),
        )
        logger.info(
            "Request opened. request_id=%s categories=%s response_hours=%s",
            request.id,
            ",".join(selected),
            hours,
        )
        return request

    def submit_offer(
        self,
        request_id: str,
        vendor: Actor,
        price_cents: int,
        message: str | None,
    ) -> VendorOffer:
        ensure_flow_enabled(SIMPLE_FLOW, self.flow_mode)
        vendor.require_role(ActorRole.VENDOR)
        ensure_can_publish(
            vendor.actor_id,
            self.compliance_repository.get(vendor.actor_id),
            error_cls=VendorNotCompliantError,
        )
        if price_cents <= 0:
            raise ValidationFailedError("Offer price must be a positive amount")
        text = normalize_optional_text(message, max_length=MAX_OFFER_MESSAGE_LENGTH) or ""
        assert_no_contact_info(text)

        request = self._lock_request(request_id)
        if self._expire_if_due(request):
            raise DeadlinePassedError(f"Response deadline for request {request_id} has passed")
        if request.status != RequestStatus.OPEN:
            raise RequestNotOpenError(f"Request {request_id} is {request.status.value}")
        if self.request_repository.find_vendor_offer(request_id, vendor.actor_id):
            raise DuplicateOfferError(f"Vendor {vendor.actor_id} already sent an offer for this request")

        offer = self.request_repository.add_offer(
            request_id=request_id,
            vendor_id=vendor.actor_id,
            price_cents=price_cents,
            message=text,
        )
        logger.info(
            "Offer submitted. request_id=%s offer_id=%s vendor_id=%s price_cents=%s",
            request_id,
            offer.id,
            vendor.actor_id,
            price_cents,
        )
        return offer

    def set_offer_status(
        self,
        request_id: str,
        offer_id: str,
        target_status: OfferStatus,
        actor: Actor,
    ) -> VendorOffer:
        ensure_flow_enabled(SIMPLE_FLOW, self.flow_mode)
        if target_status == OfferStatus.PENDING:
            raise ValidationFailedError("Offers cannot be moved back to pending")

        request = self._lock_request(request_id)
        self._ensure_owner(request, actor)
        offer = self.request_repository.get_offer(request_id, offer_id)
        if not offer:
            raise NotFoundError("offer", offer_id)

        if self._expire_if_due(request):
            raise DeadlinePassedError(f"Response deadline for request {request_id} has passed")
        if request.status == RequestStatus.EXPIRED:
            raise RequestExpiredError(f"Request {request_id} has expired")

        if target_status == OfferStatus.ACCEPTED:
            return self._accept_offer(request, offer, actor)

        OfferStateMachine.validate_transition(offer.status, target_status)
        offer.status = target_status
        logger.info(
            "Offer %s. request_id=%s offer_id=%s actor_id=%s",
            target_status.value,
            request_id,
            offer_id,
            actor.actor_id,
        )
        return offer

    def cancel_request(self, request_id: str, actor: Actor) -> ServiceRequest:
        ensure_flow_enabled(SIMPLE_FLOW, self.flow_mode)
        request = self._lock_request(request_id)
        self._ensure_owner(request, actor)
        if self._expire_if_due(request):
            raise DeadlinePassedError(f"Response deadline for request {request_id} has passed")
        if request.status != RequestStatus.OPEN:
            raise RequestNotOpenError(f"Request {request_id} is {request.status.value}")

        self._close(request, RequestStatus.CANCELLED, RequestClosedReason.CUSTOMER_CANCELLED)
        ignored = self.request_repository.ignore_pending_offers(request_id)
        logger.info("Request cancelled. request_id=%s ignored_offers=%s", request_id, ignored)
        return request

    def expire_stale_requests(self, now: datetime | None = None) -> list[str]:
        expired_ids = self.request_repository.expire_stale(now or self.clock())
        if expired_ids:
            logger.info("Expired %s stale requests", len(expired_ids))
        return expired_ids

    # -----------------------------
    # Reads
    # -----------------------------
    def get_request(self, request_id: str) -> RequestWithOffers:
        request = self.request_repository.get_by_id(request_id)
        if not request:
            raise NotFoundError("request", request_id)
        return RequestWithOffers(request, self.request_repository.list_offers(request_id))

    def list_for_customer(self, customer_email: str) -> list[ServiceRequest]:
        return self.request_repository.list_by_customer(customer_email.strip().lower())

    def list_open_for_category(self, category: str | None = None) -> list[ServiceRequest]:
        """Vendor inbox. Requests past their deadline are hidden until the sweep expires them."""
        now = self.clock()
        wanted = (category or "").strip().lower()
        return [
            request
            for request in self.request_repository.list_open()
            if as_utc(request.expires_at) > now
            and (not wanted or wanted in request.selected_categories)
        ]

    # -----------------------------
    # Internals
    # -----------------------------
    def _accept_offer(
        self,
        request: ServiceRequest,
        offer: VendorOffer,
        actor: Actor,
    ) -> VendorOffer:
        if request.status == RequestStatus.CLOSED:
            raise RequestAlreadyClosedError(f"Request {request.id} already has an accepted offer")
        if request.status != RequestStatus.OPEN:
            raise RequestNotOpenError(f"Request {request.id} is {request.status.value}")

        OfferStateMachine.validate_transition(offer.status, OfferStatus.ACCEPTED)
        offer.status = OfferStatus.ACCEPTED
        self.db.flush()
        ignored = self.request_repository.ignore_pending_offers(request.id, except_offer_id=offer.id)
        self._close(request, RequestStatus.CLOSED, RequestClosedReason.OFFER_ACCEPTED)

        self.outbox_repository.add_event(
            aggregate_type="service_request",
            aggregate_id=request.id,
            event_type="REQUEST_CLOSED",
            payload={
                "request_id": request.id,
                "accepted_offer_id": offer.id,
                "vendor_id": offer.vendor_id,
                "price_cents": offer.price_cents,
                "ignored_offers": ignored,
            },
            dedupe_key=f"service_request:{request.id}:closed",
        )
        logger.info(
            "Offer accepted; request closed. request_id=%s offer_id=%s actor_id=%s ignored_offers=%s",
            request.id,
            offer.id,
            actor.actor_id,
            ignored,
        )
        return offer

    def _close(
        self,
        request: ServiceRequest,
        to_status: RequestStatus,
        reason: RequestClosedReason,
    ) -> None:
        RequestStateMachine.validate_transition(request.status, to_status)
        request.status = to_status
        request.closed_reason = reason
        request.closed_at = self.clock()

    def _expire_if_due(self, request: ServiceRequest) -> bool:
        if request.status != RequestStatus.OPEN:
            return False
        now = self.clock()
        if now <= as_utc(request.expires_at):
            return False

        RequestStateMachine.validate_transition(request.status, RequestStatus.EXPIRED)
        request.status = RequestStatus.EXPIRED
        request.closed_reason = RequestClosedReason.TIME_LIMIT
        request.closed_at = now
        for offer in self.request_repository.list_offers(request.id):
            if offer.status == OfferStatus.PENDING:
                offer.status = OfferStatus.IGNORED
        logger.info("Request expired on access. request_id=%s", request.id)
        return True

    def _lock_request(self, request_id: str) -> ServiceRequest:
        request = self.request_repository.lock_request(request_id)
        if not request:
            raise NotFoundError("request", request_id)
        return request

    @staticmethod
    def _ensure_owner(request: ServiceRequest, actor: Actor) -> None:
        if actor.is_admin:
            return
        if (
            actor.role == ActorRole.CUSTOMER
            and actor.email
            and actor.email.strip().lower() == request.customer_email.lower()
        ):
            return
        raise ActorMismatchError("Only the customer who opened the request can decide on its offers")
