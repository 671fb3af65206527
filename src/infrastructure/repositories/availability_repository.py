# src/infrastructure/repositories/availability_repository.py

from datetime import date

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import AvailabilityDay
from src.domain.state_machine import AvailabilityStatus


class AvailabilityRepository:

    def __init__(self, db: Session):
        self.db = db

    def lock_day(self, resource_id: str, day: date) -> AvailabilityDay | None:
        """
        SELECT ... FOR UPDATE
        Scoped to one (resource, date) key; resources never lock each other.
        """
        stmt = (
            select(AvailabilityDay)
            .where(AvailabilityDay.resource_id == resource_id)
            .where(AvailabilityDay.day == day)
            .with_for_update()
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_or_create_day(self, resource_id: str, day: date) -> AvailabilityDay:
        entry = self.lock_day(resource_id, day)
        if entry:
            return entry

        # Concurrent inserts collide on uq_availability_resource_day.
        entry = AvailabilityDay(
            resource_id=resource_id,
            day=day,
            status=AvailabilityStatus.AVAILABLE,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_day(self, resource_id: str, day: date) -> AvailabilityDay | None:
        stmt = (
            select(AvailabilityDay)
            .where(AvailabilityDay.resource_id == resource_id)
            .where(AvailabilityDay.day == day)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_range(self, resource_id: str, start: date, end: date) -> list[AvailabilityDay]:
        stmt = (
            select(AvailabilityDay)
            .where(AvailabilityDay.resource_id == resource_id)
            .where(AvailabilityDay.day >= start)
            .where(AvailabilityDay.day <= end)
            .order_by(AvailabilityDay.day)
        )
        return list(self.db.execute(stmt).scalars().all())
