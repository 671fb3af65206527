from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.dependencies import get_db, get_principal
from src.api.schemas.schemas import CalendarDayResponse, ListingCreate, ListingResponse
from src.application.availability_service import AvailabilityService, CalendarDay
from src.application.listing_service import ListingService
from src.domain.actors import Actor
from src.infrastructure.db.models import Listing


router = APIRouter(tags=["listings"])


def _listing_response(listing: Listing) -> ListingResponse:
    return ListingResponse(
        id=listing.id,
        vendor_id=listing.vendor_id,
        category=listing.category,
        title=listing.title,
        description=listing.description,
        base_price_cents=listing.base_price_cents,
        is_published=listing.is_published,
        published_at=listing.published_at,
    )


def _day_response(entry: CalendarDay) -> CalendarDayResponse:
    return CalendarDayResponse(
        day=entry.day,
        status=entry.status.value,
        booking_id=entry.booking_id,
    )


@router.post("/listings", response_model=ListingResponse)
def create_listing(
    payload: ListingCreate,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    listing = ListingService(db).create_listing(
        vendor=principal,
        category=payload.category,
        title=payload.title,
        base_price_cents=payload.base_price_cents,
        description=payload.description,
    )
    return _listing_response(listing)


@router.get("/listings", response_model=list[ListingResponse])
def list_listings(
    category: str | None = None,
    db: Session = Depends(get_db),
):
    return [_listing_response(item) for item in ListingService(db).list_published(category)]


@router.get("/listings/{listing_id}", response_model=ListingResponse)
def get_listing(listing_id: str, db: Session = Depends(get_db)):
    return _listing_response(ListingService(db).get_listing(listing_id))


@router.get("/vendors/{vendor_id}/listings", response_model=list[ListingResponse])
def list_vendor_listings(vendor_id: str, db: Session = Depends(get_db)):
    return [_listing_response(item) for item in ListingService(db).list_for_vendor(vendor_id)]


@router.post("/listings/{listing_id}/publish", response_model=ListingResponse)
def publish_listing(
    listing_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return _listing_response(ListingService(db).publish_listing(listing_id, principal))


@router.post("/listings/{listing_id}/unpublish", response_model=ListingResponse)
def unpublish_listing(
    listing_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return _listing_response(ListingService(db).unpublish_listing(listing_id, principal))


# -----------------------------
# Availability calendar
# -----------------------------
@router.get("/listings/{listing_id}/calendar", response_model=list[CalendarDayResponse])
def get_calendar(
    listing_id: str,
    start: date,
    end: date,
    db: Session = Depends(get_db),
):
    days = AvailabilityService(db).list_calendar(listing_id, start, end)
    return [_day_response(entry) for entry in days]


@router.post("/listings/{listing_id}/calendar/{day}/block", response_model=CalendarDayResponse)
def block_date(
    listing_id: str,
    day: date,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return _day_response(AvailabilityService(db).block_date(listing_id, day, principal))


@router.post("/listings/{listing_id}/calendar/{day}/release", response_model=CalendarDayResponse)
def release_date(
    listing_id: str,
    day: date,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return _day_response(AvailabilityService(db).release_date(listing_id, day, principal))
