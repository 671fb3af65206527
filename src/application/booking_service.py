# src/application/booking_service.py

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
import os
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from src.application.availability_service import AvailabilityService
from src.application.flow_mode import STRUCTURED_FLOW, ensure_flow_enabled
from src.domain.actors import Actor, SYSTEM_ACTOR
from src.domain.clock import as_utc, utc_now
from src.domain.compliance import ensure_can_publish
from src.domain.exceptions import (
    ActorMismatchError,
    BookingNotNegotiableError,
    ConflictError,
    InvalidStateError,
    ItemNotNegotiableError,
    NotFoundError,
    NotYourTurnError,
    StaleAgreementVersionError,
    StaleOfferVersionError,
    ValidationFailedError,
)
from src.domain.moderation import assert_no_contact_info, normalize_optional_text
from src.domain.negotiation import (
    NEGOTIATING_ROLES,
    PriceBreakdown,
    accepted_event_type,
    breakdown_payload,
    can_actor_accept,
    can_actor_counter,
    countered_event_type,
    last_proposal_type,
    project_booking_status,
    ready_for_agreement,
    required_items,
)
from src.domain.state_machine import (
    ActorRole,
    BookingItemStateMachine,
    BookingItemStatus,
    BookingStateMachine,
    BookingStatus,
    InvoiceStateMachine,
    InvoiceStatus,
    OfferEventType,
)
from src.infrastructure.db.models import Booking, BookingItem, OfferEvent
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.compliance_repository import ComplianceRepository
from src.infrastructure.repositories.listing_repository import ListingRepository
from src.infrastructure.repositories.outbox_repository import AuditRepository, OutboxRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)

NEGOTIATION_TIMEOUT_HOURS = int(os.getenv("NEGOTIATION_TIMEOUT_HOURS", "48"))
MAX_REASON_LENGTH = 1000


class ItemDraft(NamedTuple):
    service_id: str
    is_required: bool = False
    price_cents: int | None = None
    breakdown: PriceBreakdown | None = None


class ItemPermissions(NamedTuple):
    can_counter: bool
    can_accept: bool
    can_decline: bool


@dataclass
class BookingThread:
    booking: Booking
    items: list[BookingItem]
    events: dict[str, list[OfferEvent]] = field(default_factory=dict)
    permissions: dict[str, ItemPermissions] = field(default_factory=dict)
    can_sign_agreement: bool = False


class BookingService:
    """Application service coordinating the multi-item booking thread."""

    def __init__(
        self,
        db: Session,
        flow_mode: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        negotiation_timeout_hours: int = NEGOTIATION_TIMEOUT_HOURS,
    ):
        self.db = db
        self.flow_mode = flow_mode
        self.clock = clock
        self.negotiation_timeout = timedelta(hours=negotiation_timeout_hours)
        self.booking_repository = BookingRepository(db)
        self.listing_repository = ListingRepository(db)
        self.compliance_repository = ComplianceRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.outbox_repository = OutboxRepository(db)
        self.audit_repository = AuditRepository(db)
        self.availability = AvailabilityService(db)

    def create_booking(
        self,
        customer: Actor,
        event_date: date,
        items: list[ItemDraft],
    ) -> Booking:
        ensure_flow_enabled(STRUCTURED_FLOW, self.flow_mode)
        customer.require_role(ActorRole.CUSTOMER)
        if not items:
            raise ValidationFailedError("A booking needs at least one item")
        service_ids = [draft.service_id for draft in items]
        if len(set(service_ids)) != len(service_ids):
            raise ValidationFailedError("Each service can only be booked once per booking")
        breakdowns = [breakdown_payload(draft.breakdown) for draft in items]

        now = self.clock()
        booking = self.booking_repository.create_booking(
            customer_id=customer.actor_id,
            event_date=event_date,
        )

        total = 0
        for draft, breakdown in zip(items, breakdowns):
            listing = self.listing_repository.get_by_id(draft.service_id)
            if not listing:
                raise NotFoundError("listing", draft.service_id)
            if not listing.is_published:
                raise InvalidStateError(f"Listing {listing.id} is not published")

            price = draft.price_cents if draft.price_cents is not None else listing.base_price_cents
            if price <= 0:
                raise ValidationFailedError("Item price must be a positive amount")

            self.availability.mark_tentative(listing.id, event_date)
            item = self.booking_repository.add_item(
                booking_id=booking.id,
                vendor_id=listing.vendor_id,
                service_id=listing.id,
                is_required=draft.is_required,
                price_cents=price,
                now=now,
            )
            self.booking_repository.append_event(
                item=item,
                actor_role=ActorRole.CUSTOMER,
                actor_id=customer.actor_id,
                event_type=OfferEventType.REQUEST_CREATED,
                offer_version=item.current_offer_version,
                price_cents=price,
                breakdown=breakdown,
                now=now,
            )
            total += price

        booking.total_cents = total
        self._transition(booking, BookingStatus.PENDING)
        logger.info(
            "Booking created. booking_id=%s customer_id=%s items=%s total_cents=%s",
            booking.id,
            customer.actor_id,
            len(items),
            total,
        )
        return booking

    def counter_offer(
        self,
        booking_id: str,
        item_id: str,
        actor: Actor,
        price_cents: int,
        reason: str | None,
        breakdown: PriceBreakdown | None = None,
    ) -> BookingItem:
        booking, item = self._lock_negotiable_item(booking_id, item_id, actor)

        reason = normalize_optional_text(reason, max_length=MAX_REASON_LENGTH)
        if not reason:
            raise ValidationFailedError("A counter-offer needs a reason")
        assert_no_contact_info(reason)
        if price_cents <= 0:
            raise ValidationFailedError("Counter price must be a positive amount")
        breakdown = breakdown_payload(breakdown)
        if actor.role == ActorRole.VENDOR:
            ensure_can_publish(actor.actor_id, self.compliance_repository.get(actor.actor_id))

        if not can_actor_counter(self._last_proposal(item), actor.role):
            raise NotYourTurnError("Wait for the other party to respond before countering again")

        now = self.clock()
        BookingItemStateMachine.validate_transition(item.status, BookingItemStatus.COUNTERED)
        item.status = BookingItemStatus.COUNTERED
        item.current_offer_version += 1
        item.latest_price_cents = price_cents
        item.last_negotiation_at = now
        self.booking_repository.append_event(
            item=item,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            event_type=countered_event_type(actor.role),
            offer_version=item.current_offer_version,
            price_cents=price_cents,
            reason=reason,
            breakdown=breakdown,
            now=now,
        )

        items = self.booking_repository.list_items(booking.id)
        booking.total_cents = sum(entry.latest_price_cents for entry in items)
        self._reproject(booking, items)
        logger.info(
            "Item countered. booking_id=%s item_id=%s role=%s version=%s price_cents=%s",
            booking.id,
            item.id,
            actor.role.value,
            item.current_offer_version,
            price_cents,
        )
        return item

    def accept_offer(
        self,
        booking_id: str,
        item_id: str,
        actor: Actor,
        expected_offer_version: int,
    ) -> BookingItem:
        booking, item = self._lock_negotiable_item(booking_id, item_id, actor)

        if expected_offer_version != item.current_offer_version:
            raise StaleOfferVersionError(
                expected=expected_offer_version,
                current=item.current_offer_version,
            )
        if actor.role == ActorRole.VENDOR:
            ensure_can_publish(actor.actor_id, self.compliance_repository.get(actor.actor_id))
        if not can_actor_accept(self._last_proposal(item), actor.role):
            raise NotYourTurnError("You cannot accept your own proposal")

        now = self.clock()
        BookingItemStateMachine.validate_transition(item.status, BookingItemStatus.AGREED)
        item.status = BookingItemStatus.AGREED
        item.final_price_cents = item.latest_price_cents
        item.last_negotiation_at = now
        self.booking_repository.append_event(
            item=item,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            event_type=accepted_event_type(actor.role),
            offer_version=item.current_offer_version,
            price_cents=item.final_price_cents,
            now=now,
        )

        self._terms_changed(booking)
        self._reproject(booking, self.booking_repository.list_items(booking.id))
        logger.info(
            "Item agreed. booking_id=%s item_id=%s version=%s final_price_cents=%s",
            booking.id,
            item.id,
            item.current_offer_version,
            item.final_price_cents,
        )
        return item

    def decline_offer(
        self,
        booking_id: str,
        item_id: str,
        actor: Actor,
        reason: str | None = None,
    ) -> BookingItem:
        booking, item = self._lock_negotiable_item(booking_id, item_id, actor)
        reason = normalize_optional_text(reason, max_length=MAX_REASON_LENGTH)
        assert_no_contact_info(reason)

        now = self.clock()
        BookingItemStateMachine.validate_transition(item.status, BookingItemStatus.DECLINED)
        item.status = BookingItemStatus.DECLINED
        item.last_negotiation_at = now
        self.booking_repository.append_event(
            item=item,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            event_type=OfferEventType.DECLINED,
            offer_version=item.current_offer_version,
            reason=reason,
            now=now,
        )

        items = self.booking_repository.list_items(booking.id)
        if item in required_items(items):
            # Without a required item the rest of the thread is moot.
            for other in items:
                if other.id != item.id and BookingItemStateMachine.is_negotiable(other.status):
                    other.status = BookingItemStatus.CANCELLED
                    other.last_negotiation_at = now

        self._terms_changed(booking)
        self._reproject(booking, items)
        logger.info(
            "Item declined. booking_id=%s item_id=%s role=%s booking_status=%s",
            booking.id,
            item.id,
            actor.role.value,
            booking.status.value,
        )
        return item

    def accept_agreement(
        self,
        booking_id: str,
        actor: Actor,
        agreement_version: int,
        ip: str | None = None,
    ) -> Booking:
        booking = self._lock_booking(booking_id)
        if not BookingStateMachine.is_negotiating(booking.status):
            raise BookingNotNegotiableError(f"Booking {booking_id} is {booking.status.value}")

        items = self.booking_repository.list_items(booking.id)
        if not ready_for_agreement(items):
            raise InvalidStateError("Agreement can be signed once every item is settled")
        if agreement_version != booking.agreement_version:
            raise StaleAgreementVersionError(
                expected=agreement_version,
                current=booking.agreement_version,
            )

        agreed_vendors = {
            item.vendor_id for item in items if item.status == BookingItemStatus.AGREED
        }
        if actor.role == ActorRole.CUSTOMER:
            if actor.actor_id != booking.customer_id:
                raise ActorMismatchError("Only the booking's customer can sign for the customer")
        elif actor.role == ActorRole.VENDOR:
            if actor.actor_id not in agreed_vendors:
                raise ActorMismatchError("Only vendors with agreed items can sign this booking")
        else:
            raise ActorMismatchError("Only the customer and the vendors sign an agreement")

        signatures = self.booking_repository.list_signatures(booking.id, booking.agreement_version)
        if any(signature.actor_id == actor.actor_id for signature in signatures):
            raise ConflictError("Agreement already signed at this version")

        now = self.clock()
        signer_ip = ip or actor.ip
        self.booking_repository.add_signature(
            booking_id=booking.id,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            agreement_version=booking.agreement_version,
            ip=signer_ip,
            now=now,
        )

        if actor.role == ActorRole.CUSTOMER:
            booking.customer_accepted = True
            booking.customer_accepted_at = now
            booking.customer_accepted_ip = signer_ip
        else:
            signed_vendors = {
                signature.actor_id
                for signature in signatures
                if signature.actor_role == ActorRole.VENDOR
            }
            signed_vendors.add(actor.actor_id)
            if agreed_vendors <= signed_vendors:
                booking.vendor_accepted = True
                booking.vendor_accepted_at = now
                booking.vendor_accepted_ip = signer_ip

        self._reproject(booking, items)
        if booking.status == BookingStatus.ACCEPTED:
            self._finalize(booking, items)
        return booking

    def expire_inactive_items(self, now: datetime | None = None) -> int:
        """
        Expires items whose negotiation went quiet. Each item is re-checked
        under the booking lock, so a response that commits first wins.
        """
        now = now or self.clock()
        cutoff = now - self.negotiation_timeout

        stale_by_booking: dict[str, list[str]] = defaultdict(list)
        for item in self.booking_repository.find_stale_items(cutoff):
            stale_by_booking[item.booking_id].append(item.id)

        expired = 0
        for booking_id, item_ids in stale_by_booking.items():
            booking = self.booking_repository.lock_booking(booking_id)
            if not booking or not BookingStateMachine.is_negotiating(booking.status):
                continue

            changed = False
            for item_id in item_ids:
                item = self.booking_repository.lock_item(booking_id, item_id)
                if not item or not BookingItemStateMachine.is_negotiable(item.status):
                    continue
                if as_utc(item.last_negotiation_at) >= cutoff:
                    continue

                item.status = BookingItemStatus.EXPIRED
                self.booking_repository.append_event(
                    item=item,
                    actor_role=SYSTEM_ACTOR.role,
                    actor_id=SYSTEM_ACTOR.actor_id,
                    event_type=OfferEventType.EXPIRED,
                    offer_version=item.current_offer_version,
                    reason=f"No response within {int(self.negotiation_timeout.total_seconds() // 3600)} hours",
                    now=now,
                )
                expired += 1
                changed = True

            if changed:
                self._terms_changed(booking)
                self._reproject(booking, self.booking_repository.list_items(booking_id))

        if expired:
            logger.info("Expired %s inactive booking items", expired)
        return expired

    def cancel_booking(
        self,
        booking_id: str,
        actor: Actor,
        reason: str | None = None,
    ) -> Booking:
        booking = self._lock_booking(booking_id)
        if not actor.is_admin and not (
            actor.role == ActorRole.CUSTOMER and actor.actor_id == booking.customer_id
        ):
            raise ActorMismatchError("Only the customer or an admin can cancel a booking")

        invoices = self.payment_repository.lock_invoices_for_booking(booking.id)
        if any(invoice.status in (InvoiceStatus.PAID, InvoiceStatus.REFUNDED) for invoice in invoices):
            raise InvalidStateError("Paid bookings cannot be cancelled")

        was_accepted = booking.status == BookingStatus.ACCEPTED
        self._transition(booking, BookingStatus.CANCELLED)
        booking.cancelled_reason = normalize_optional_text(reason)

        now = self.clock()
        items = self.booking_repository.list_items(booking.id)
        for item in items:
            if BookingItemStateMachine.is_negotiable(item.status):
                item.status = BookingItemStatus.CANCELLED
                item.last_negotiation_at = now
            elif was_accepted and item.status == BookingItemStatus.AGREED:
                self.availability.release_booking(item.service_id, booking.event_date, booking.id)

        for invoice in invoices:
            if InvoiceStateMachine.can_transition(invoice.status, InvoiceStatus.VOID):
                invoice.status = InvoiceStatus.VOID
                invoice.voided_at = now

        if actor.is_admin:
            self.audit_repository.record(
                admin_id=actor.actor_id,
                action="booking_cancelled",
                target_id=booking.id,
                meta={"reason": booking.cancelled_reason},
            )
        logger.info("Booking cancelled. booking_id=%s actor_id=%s", booking.id, actor.actor_id)
        return booking

    def complete_booking(self, booking_id: str, actor: Actor) -> Booking:
        actor.require_role(ActorRole.ADMIN)
        booking = self._lock_booking(booking_id)
        invoices = self.payment_repository.lock_invoices_for_booking(booking.id)
        if not any(invoice.status == InvoiceStatus.PAID for invoice in invoices):
            raise InvalidStateError("Only paid bookings can be completed")

        self._transition(booking, BookingStatus.COMPLETED)
        booking.completed_at = self.clock()
        self.audit_repository.record(
            admin_id=actor.actor_id,
            action="booking_completed",
            target_id=booking.id,
        )
        return booking

    # -----------------------------
    # Reads
    # -----------------------------
    def get_thread(self, booking_id: str, actor: Actor) -> BookingThread:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("booking", booking_id)
        items = self.booking_repository.list_items(booking.id)
        self._ensure_participant(booking, items, actor)

        events: dict[str, list[OfferEvent]] = defaultdict(list)
        for event in self.booking_repository.list_booking_events(booking.id):
            events[event.booking_item_id].append(event)

        negotiating = BookingStateMachine.is_negotiating(booking.status)
        permissions = {}
        for item in items:
            is_party = self._is_item_party(booking, item, actor)
            open_item = negotiating and is_party and BookingItemStateMachine.is_negotiable(item.status)
            last_proposal = last_proposal_type([event.type for event in events[item.id]])
            permissions[item.id] = ItemPermissions(
                can_counter=open_item and can_actor_counter(last_proposal, actor.role),
                can_accept=open_item and can_actor_accept(last_proposal, actor.role),
                can_decline=open_item,
            )

        return BookingThread(
            booking=booking,
            items=items,
            events=dict(events),
            permissions=permissions,
            can_sign_agreement=self._can_sign(booking, items, actor),
        )

    def list_for_customer(self, customer_id: str) -> list[Booking]:
        return self.booking_repository.list_for_customer(customer_id)

    def list_for_vendor(self, vendor_id: str) -> list[Booking]:
        return self.booking_repository.list_for_vendor(vendor_id)

    # -----------------------------
    # Internals
    # -----------------------------
    def _lock_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.lock_booking(booking_id)
        if not booking:
            raise NotFoundError("booking", booking_id)
        return booking

    def _lock_negotiable_item(
        self,
        booking_id: str,
        item_id: str,
        actor: Actor,
    ) -> tuple[Booking, BookingItem]:
        ensure_flow_enabled(STRUCTURED_FLOW, self.flow_mode)
        if actor.role not in NEGOTIATING_ROLES:
            raise ActorMismatchError("Only the customer and the vendor negotiate an item")

        booking = self._lock_booking(booking_id)
        item = self.booking_repository.lock_item(booking_id, item_id)
        if not item:
            raise NotFoundError("booking item", item_id)
        if not self._is_item_party(booking, item, actor):
            raise ActorMismatchError("You are not a party to this booking item")
        if not BookingStateMachine.is_negotiating(booking.status):
            raise BookingNotNegotiableError(f"Booking {booking_id} is {booking.status.value}")
        if not BookingItemStateMachine.is_negotiable(item.status):
            raise ItemNotNegotiableError(f"Item {item_id} is {item.status.value}")
        return booking, item

    def _last_proposal(self, item: BookingItem) -> OfferEventType | None:
        return last_proposal_type([event.type for event in self.booking_repository.list_events(item.id)])

    def _terms_changed(self, booking: Booking) -> None:
        # Signatures bind one version of the terms; any settled item starts a new one.
        booking.agreement_version += 1
        booking.customer_accepted = False
        booking.customer_accepted_at = None
        booking.customer_accepted_ip = None
        booking.vendor_accepted = False
        booking.vendor_accepted_at = None
        booking.vendor_accepted_ip = None

    def _reproject(self, booking: Booking, items: list[BookingItem]) -> None:
        new_status = project_booking_status(
            booking.status,
            items,
            customer_accepted=booking.customer_accepted,
            vendor_accepted=booking.vendor_accepted,
        )
        if new_status != booking.status:
            self._transition(booking, new_status)

    def _finalize(self, booking: Booking, items: list[BookingItem]) -> None:
        agreed = [item for item in items if item.status == BookingItemStatus.AGREED]
        booking.final_cents = sum(item.final_price_cents for item in agreed)
        for item in agreed:
            self.availability.confirm_booking(item.service_id, booking.event_date, booking.id)

        self.outbox_repository.add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_ACCEPTED",
            payload={
                "booking_id": booking.id,
                "customer_id": booking.customer_id,
                "vendor_ids": sorted({item.vendor_id for item in agreed}),
                "final_cents": booking.final_cents,
                "event_date": booking.event_date.isoformat(),
            },
            dedupe_key=f"booking:{booking.id}:accepted",
        )
        logger.info(
            "Booking accepted. booking_id=%s final_cents=%s agreement_version=%s",
            booking.id,
            booking.final_cents,
            booking.agreement_version,
        )

    def _can_sign(self, booking: Booking, items: list[BookingItem], actor: Actor) -> bool:
        if not BookingStateMachine.is_negotiating(booking.status) or not ready_for_agreement(items):
            return False
        signatures = self.booking_repository.list_signatures(booking.id, booking.agreement_version)
        if any(signature.actor_id == actor.actor_id for signature in signatures):
            return False
        if actor.role == ActorRole.CUSTOMER:
            return actor.actor_id == booking.customer_id
        if actor.role == ActorRole.VENDOR:
            return any(
                item.vendor_id == actor.actor_id and item.status == BookingItemStatus.AGREED
                for item in items
            )
        return False

    @staticmethod
    def _is_item_party(booking: Booking, item: BookingItem, actor: Actor) -> bool:
        if actor.role == ActorRole.CUSTOMER:
            return actor.actor_id == booking.customer_id
        if actor.role == ActorRole.VENDOR:
            return actor.actor_id == item.vendor_id
        return False

    @staticmethod
    def _ensure_participant(booking: Booking, items: list[BookingItem], actor: Actor) -> None:
        if actor.is_admin or actor.role == ActorRole.SYSTEM:
            return
        if actor.role == ActorRole.CUSTOMER and actor.actor_id == booking.customer_id:
            return
        if actor.role == ActorRole.VENDOR and any(item.vendor_id == actor.actor_id for item in items):
            return
        raise ActorMismatchError("You are not a party to this booking")

    def _transition(self, booking: Booking, to_status: BookingStatus) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        self.booking_repository.update_status(booking, to_status)
