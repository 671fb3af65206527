from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.dependencies import get_admin, get_db, get_principal
from src.api.schemas.schemas import (
    AcceptOfferRequest,
    AgreementAcceptRequest,
    AgreementResponse,
    BookingCreate,
    BookingResponse,
    BookingSummaryResponse,
    CancelBookingRequest,
    CounterOfferRequest,
    DeclineOfferRequest,
    OfferBreakdown,
)
from src.application.booking_service import BookingService, BookingThread, ItemDraft
from src.domain.actors import Actor
from src.domain.negotiation import PriceBreakdown
from src.domain.state_machine import ActorRole, BookingItemStatus
from src.infrastructure.db.models import Booking


router = APIRouter(tags=["bookings"])


def _price_breakdown(breakdown: OfferBreakdown | None) -> PriceBreakdown | None:
    if breakdown is None:
        return None
    return PriceBreakdown(**breakdown.model_dump())


def _thread_response(thread: BookingThread) -> BookingResponse:
    booking = thread.booking
    items = []
    for item in thread.items:
        permissions = thread.permissions[item.id]
        data = {
            "id": item.id,
            "vendor_id": item.vendor_id,
            "service_id": item.service_id,
            "is_required": item.is_required,
            "status": item.status.value,
            "current_offer_version": item.current_offer_version,
            "latest_price_cents": item.latest_price_cents,
            "last_negotiation_at": item.last_negotiation_at,
            "can_counter": permissions.can_counter,
            "can_accept": permissions.can_accept,
            "can_decline": permissions.can_decline,
            "events": [
                {
                    "id": event.id,
                    "sequence": event.sequence,
                    "actor_role": event.actor_role.value,
                    "actor_id": event.actor_id,
                    "type": event.type.value,
                    "offer_version": event.offer_version,
                    "price_cents": event.price_cents,
                    "reason": event.reason,
                    "breakdown": event.breakdown,
                    "created_at": event.created_at,
                }
                for event in thread.events.get(item.id, [])
            ],
        }
        if item.status == BookingItemStatus.AGREED:
            data["final_price_cents"] = item.final_price_cents
        items.append(data)

    return BookingResponse(
        id=booking.id,
        customer_id=booking.customer_id,
        event_date=booking.event_date,
        status=booking.status.value,
        total_cents=booking.total_cents,
        final_cents=booking.final_cents,
        agreement=AgreementResponse(
            agreement_version=booking.agreement_version,
            customer_accepted=booking.customer_accepted,
            customer_accepted_at=booking.customer_accepted_at,
            vendor_accepted=booking.vendor_accepted,
            vendor_accepted_at=booking.vendor_accepted_at,
            can_sign=thread.can_sign_agreement,
        ),
        items=items,
        created_at=booking.created_at,
        completed_at=booking.completed_at,
    )


def _summary(booking: Booking) -> BookingSummaryResponse:
    return BookingSummaryResponse(
        id=booking.id,
        customer_id=booking.customer_id,
        event_date=booking.event_date,
        status=booking.status.value,
        total_cents=booking.total_cents,
        final_cents=booking.final_cents,
    )


def _read_back(db: Session, booking_id: str, principal: Actor) -> BookingResponse:
    db.flush()
    return _thread_response(BookingService(db).get_thread(booking_id, principal))


@router.post("/bookings", response_model=BookingResponse)
def create_booking(
    payload: BookingCreate,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    booking = BookingService(db).create_booking(
        customer=principal,
        event_date=payload.event_date,
        items=[
            ItemDraft(
                service_id=item.service_id,
                is_required=item.is_required,
                price_cents=item.price_cents,
                breakdown=_price_breakdown(item.breakdown),
            )
            for item in payload.items
        ],
    )
    return _read_back(db, booking.id, principal)


@router.get("/bookings", response_model=list[BookingSummaryResponse])
def list_bookings(
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    service = BookingService(db)
    if principal.role == ActorRole.VENDOR:
        bookings = service.list_for_vendor(principal.actor_id)
    else:
        bookings = service.list_for_customer(principal.actor_id)
    return [_summary(booking) for booking in bookings]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return _thread_response(BookingService(db).get_thread(booking_id, principal))


@router.post("/bookings/{booking_id}/items/{item_id}/counter", response_model=BookingResponse)
def counter_offer(
    booking_id: str,
    item_id: str,
    payload: CounterOfferRequest,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    BookingService(db).counter_offer(
        booking_id=booking_id,
        item_id=item_id,
        actor=principal,
        price_cents=payload.price_cents,
        reason=payload.reason,
        breakdown=_price_breakdown(payload.breakdown),
    )
    return _read_back(db, booking_id, principal)


@router.post("/bookings/{booking_id}/items/{item_id}/accept", response_model=BookingResponse)
def accept_offer(
    booking_id: str,
    item_id: str,
    payload: AcceptOfferRequest,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    BookingService(db).accept_offer(
        booking_id=booking_id,
        item_id=item_id,
        actor=principal,
        expected_offer_version=payload.offer_version,
    )
    return _read_back(db, booking_id, principal)


@router.post("/bookings/{booking_id}/items/{item_id}/decline", response_model=BookingResponse)
def decline_offer(
    booking_id: str,
    item_id: str,
    payload: DeclineOfferRequest,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    BookingService(db).decline_offer(
        booking_id=booking_id,
        item_id=item_id,
        actor=principal,
        reason=payload.reason,
    )
    return _read_back(db, booking_id, principal)


@router.post("/bookings/{booking_id}/agreement/accept", response_model=BookingResponse)
def accept_agreement(
    booking_id: str,
    payload: AgreementAcceptRequest,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    BookingService(db).accept_agreement(
        booking_id=booking_id,
        actor=principal,
        agreement_version=payload.agreement_version,
    )
    return _read_back(db, booking_id, principal)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingSummaryResponse)
def cancel_booking(
    booking_id: str,
    payload: CancelBookingRequest,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    booking = BookingService(db).cancel_booking(booking_id, principal, reason=payload.reason)
    return _summary(booking)


@router.post("/bookings/{booking_id}/complete", response_model=BookingSummaryResponse)
def complete_booking(
    booking_id: str,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    booking = BookingService(db).complete_booking(booking_id, admin)
    return _summary(booking)
