# src/infrastructure/repositories/booking_repository.py

from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy import func, select

from src.infrastructure.db.models import (
    AgreementSignature,
    Booking,
    BookingItem,
    OfferEvent,
)
from src.domain.state_machine import (
    ActorRole,
    BookingItemStatus,
    BookingStatus,
    OfferEventType,
)


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_booking(
        self,
        booking_id: str,
    ) -> Booking | None:
        """
        SELECT ... FOR UPDATE
        Every item mutation re-projects the booking, so the booking row
        is the single writer lock for its items.
        """
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def create_booking(
        self,
        customer_id: str,
        event_date: date,
    ) -> Booking:

        booking = Booking(
            customer_id=customer_id,
            event_date=event_date,
            status=BookingStatus.DRAFT,
            agreement_version=1,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:

        booking.status = new_status

    def list_for_customer(self, customer_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.customer_id == customer_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_vendor(self, vendor_id: str) -> list[Booking]:
        booking_ids = select(BookingItem.booking_id).where(BookingItem.vendor_id == vendor_id)
        stmt = (
            select(Booking)
            .where(Booking.id.in_(booking_ids))
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Items
    # -----------------------------
    def add_item(
        self,
        booking_id: str,
        vendor_id: str,
        service_id: str,
        is_required: bool,
        price_cents: int,
        now: datetime,
    ) -> BookingItem:
        item = BookingItem(
            booking_id=booking_id,
            vendor_id=vendor_id,
            service_id=service_id,
            is_required=is_required,
            current_offer_version=1,
            latest_price_cents=price_cents,
            status=BookingItemStatus.REQUESTED,
            last_negotiation_at=now,
            created_at=now,
        )
        self.db.add(item)
        self.db.flush()
        return item

    def list_items(self, booking_id: str) -> list[BookingItem]:
        stmt = (
            select(BookingItem)
            .where(BookingItem.booking_id == booking_id)
            .order_by(BookingItem.created_at, BookingItem.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def lock_item(self, booking_id: str, item_id: str) -> BookingItem | None:
        stmt = (
            select(BookingItem)
            .where(BookingItem.id == item_id)
            .where(BookingItem.booking_id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find_stale_items(self, cutoff: datetime) -> list[BookingItem]:
        stmt = (
            select(BookingItem)
            .where(
                BookingItem.status.in_(
                    [BookingItemStatus.REQUESTED, BookingItemStatus.COUNTERED]
                )
            )
            .where(BookingItem.last_negotiation_at < cutoff)
        )
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Offer events (append-only)
    # -----------------------------
    def list_events(self, booking_item_id: str) -> list[OfferEvent]:
        stmt = (
            select(OfferEvent)
            .where(OfferEvent.booking_item_id == booking_item_id)
            .order_by(OfferEvent.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_booking_events(self, booking_id: str) -> list[OfferEvent]:
        stmt = (
            select(OfferEvent)
            .where(OfferEvent.booking_id == booking_id)
            .order_by(OfferEvent.booking_item_id, OfferEvent.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def append_event(
        self,
        item: BookingItem,
        actor_role: ActorRole,
        event_type: OfferEventType,
        offer_version: int,
        now: datetime,
        actor_id: str | None = None,
        price_cents: int | None = None,
        reason: str | None = None,
        breakdown: dict[str, Any] | None = None,
    ) -> OfferEvent:
        last_sequence = self.db.execute(
            select(func.max(OfferEvent.sequence)).where(
                OfferEvent.booking_item_id == item.id
            )
        ).scalar_one()

        event = OfferEvent(
            booking_id=item.booking_id,
            booking_item_id=item.id,
            sequence=(last_sequence or 0) + 1,
            actor_role=actor_role,
            actor_id=actor_id,
            type=event_type,
            offer_version=offer_version,
            price_cents=price_cents,
            reason=reason,
            breakdown=breakdown,
            created_at=now,
        )
        self.db.add(event)
        self.db.flush()
        return event

    # -----------------------------
    # Agreement sign-off
    # -----------------------------
    def add_signature(
        self,
        booking_id: str,
        actor_role: ActorRole,
        actor_id: str,
        agreement_version: int,
        ip: str | None,
        now: datetime,
    ) -> AgreementSignature:
        signature = AgreementSignature(
            booking_id=booking_id,
            actor_role=actor_role,
            actor_id=actor_id,
            agreement_version=agreement_version,
            ip=ip,
            signed_at=now,
        )
        self.db.add(signature)
        self.db.flush()
        return signature

    def list_signatures(
        self,
        booking_id: str,
        agreement_version: int,
    ) -> list[AgreementSignature]:
        stmt = (
            select(AgreementSignature)
            .where(AgreementSignature.booking_id == booking_id)
            .where(AgreementSignature.agreement_version == agreement_version)
            .order_by(AgreementSignature.signed_at)
        )
        return list(self.db.execute(stmt).scalars().all())
