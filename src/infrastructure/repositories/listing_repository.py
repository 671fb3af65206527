# src/infrastructure/repositories/listing_repository.py

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.infrastructure.db.models import Listing


class ListingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, listing_id: str) -> Listing | None:
        stmt = select(Listing).where(Listing.id == listing_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_listing(self, listing_id: str) -> Listing | None:
        stmt = select(Listing).where(Listing.id == listing_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def create_listing(
        self,
        vendor_id: str,
        category: str,
        title: str,
        base_price_cents: int,
        description: str | None = None,
    ) -> Listing:
        listing = Listing(
            vendor_id=vendor_id,
            category=category,
            title=title,
            description=description,
            base_price_cents=base_price_cents,
            is_published=False,
        )
        self.db.add(listing)
        self.db.flush()
        return listing

    def list_by_vendor(self, vendor_id: str) -> list[Listing]:
        stmt = (
            select(Listing)
            .where(Listing.vendor_id == vendor_id)
            .order_by(Listing.title)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_published(self, category: str | None = None) -> list[Listing]:
        stmt = select(Listing).where(Listing.is_published.is_(True))
        if category:
            stmt = stmt.where(Listing.category == category)
        stmt = stmt.order_by(Listing.category, Listing.title)
        return list(self.db.execute(stmt).scalars().all())
