# src/application/availability_service.py

from datetime import date, timedelta
import logging
from typing import NamedTuple

from sqlalchemy.orm import Session

from src.domain.actors import Actor
from src.domain.exceptions import (
    ActorMismatchError,
    DateUnavailableError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from src.domain.state_machine import ActorRole, AvailabilityStatus
from src.infrastructure.repositories.availability_repository import AvailabilityRepository
from src.infrastructure.repositories.listing_repository import ListingRepository


logger = logging.getLogger(__name__)

MAX_CALENDAR_DAYS = 366


class CalendarDay(NamedTuple):
    day: date
    status: AvailabilityStatus
    booking_id: str | None


class AvailabilityService:
    """
    Sparse per-resource calendar. Every (resource, date) key is locked on
    its own; no operation spans resources.
    """

    def __init__(self, db: Session):
        self.db = db
        self.availability_repository = AvailabilityRepository(db)
        self.listing_repository = ListingRepository(db)

    def is_available(self, resource_id: str, day: date) -> bool:
        entry = self.availability_repository.get_day(resource_id, day)
        return entry is None or entry.status == AvailabilityStatus.AVAILABLE

    def mark_tentative(self, resource_id: str, day: date) -> None:
        # Tentative holds are not stored; they only refuse blocked dates.
        entry = self.availability_repository.lock_day(resource_id, day)
        if entry and entry.status == AvailabilityStatus.BLOCKED:
            raise DateUnavailableError(resource_id, day)

    def confirm_booking(
        self,
        resource_id: str,
        day: date,
        booking_id: str | None = None,
    ) -> None:
        entry = self.availability_repository.lock_or_create_day(resource_id, day)
        if entry.status == AvailabilityStatus.BLOCKED:
            if booking_id and entry.booking_id == booking_id:
                return
            raise DateUnavailableError(resource_id, day)

        entry.status = AvailabilityStatus.BLOCKED
        entry.booking_id = booking_id
        logger.info(
            "Date confirmed. resource_id=%s day=%s booking_id=%s",
            resource_id,
            day.isoformat(),
            booking_id,
        )

    def release_booking(self, resource_id: str, day: date, booking_id: str) -> bool:
        entry = self.availability_repository.lock_day(resource_id, day)
        if not entry or entry.booking_id != booking_id:
            return False
        entry.status = AvailabilityStatus.AVAILABLE
        entry.booking_id = None
        return True

    def block_date(self, resource_id: str, day: date, actor: Actor) -> CalendarDay:
        self._ensure_manager(resource_id, actor)
        entry = self.availability_repository.lock_or_create_day(resource_id, day)
        if entry.status == AvailabilityStatus.BLOCKED and entry.booking_id:
            raise DateUnavailableError(resource_id, day)
        entry.status = AvailabilityStatus.BLOCKED
        return CalendarDay(entry.day, entry.status, entry.booking_id)

    def release_date(self, resource_id: str, day: date, actor: Actor) -> CalendarDay:
        self._ensure_manager(resource_id, actor)
        entry = self.availability_repository.lock_day(resource_id, day)
        if not entry:
            return CalendarDay(day, AvailabilityStatus.AVAILABLE, None)
        if entry.booking_id:
            raise InvalidStateError(
                f"Date {day.isoformat()} is held by booking {entry.booking_id}; cancel the booking instead"
            )
        entry.status = AvailabilityStatus.AVAILABLE
        return CalendarDay(entry.day, entry.status, None)

    def list_calendar(self, resource_id: str, start: date, end: date) -> list[CalendarDay]:
        if end < start:
            raise ValidationFailedError("Calendar end date is before its start date")
        if (end - start).days >= MAX_CALENDAR_DAYS:
            raise ValidationFailedError("Calendar range is limited to one year")

        stored = {
            entry.day: entry
            for entry in self.availability_repository.list_range(resource_id, start, end)
        }
        days = []
        current = start
        while current <= end:
            entry = stored.get(current)
            if entry:
                days.append(CalendarDay(current, entry.status, entry.booking_id))
            else:
                days.append(CalendarDay(current, AvailabilityStatus.AVAILABLE, None))
            current += timedelta(days=1)
        return days

    def _ensure_manager(self, resource_id: str, actor: Actor) -> None:
        listing = self.listing_repository.get_by_id(resource_id)
        if not listing:
            raise NotFoundError("listing", resource_id)
        if actor.is_admin:
            return
        if actor.role == ActorRole.VENDOR and actor.actor_id == listing.vendor_id:
            return
        raise ActorMismatchError("Only the owning vendor or an admin can manage this calendar")
