# src/application/listing_service.py

from datetime import datetime
import logging
from typing import Callable

from sqlalchemy.orm import Session

from src.domain.actors import Actor
from src.domain.clock import utc_now
from src.domain.compliance import ensure_can_publish
from src.domain.exceptions import ActorMismatchError, NotFoundError, ValidationFailedError
from src.domain.moderation import assert_no_contact_info, normalize_optional_text
from src.domain.state_machine import ActorRole
from src.infrastructure.db.models import Listing
from src.infrastructure.repositories.compliance_repository import ComplianceRepository
from src.infrastructure.repositories.listing_repository import ListingRepository


logger = logging.getLogger(__name__)


class ListingService:

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.listing_repository = ListingRepository(db)
        self.compliance_repository = ComplianceRepository(db)

    def create_listing(
        self,
        vendor: Actor,
        category: str,
        title: str,
        base_price_cents: int,
        description: str | None = None,
    ) -> Listing:
        vendor.require_role(ActorRole.VENDOR)
        category = normalize_optional_text(category, max_length=64)
        title = normalize_optional_text(title, max_length=128)
        if not category or not title:
            raise ValidationFailedError("Category and title are required")
        if base_price_cents <= 0:
            raise ValidationFailedError("Base price must be a positive amount")
        description = normalize_optional_text(description, max_length=4000)
        assert_no_contact_info(title)
        assert_no_contact_info(description)

        return self.listing_repository.create_listing(
            vendor_id=vendor.actor_id,
            category=category.lower(),
            title=title,
            base_price_cents=base_price_cents,
            description=description,
        )

    def publish_listing(self, listing_id: str, actor: Actor) -> Listing:
        listing = self._lock_owned(listing_id, actor)
        # Publishing goes through the same gate as responding to customers.
        ensure_can_publish(listing.vendor_id, self.compliance_repository.get(listing.vendor_id))
        if not listing.is_published:
            listing.is_published = True
            listing.published_at = self.clock()
            logger.info("Listing published. listing_id=%s vendor_id=%s", listing.id, listing.vendor_id)
        return listing

    def unpublish_listing(self, listing_id: str, actor: Actor) -> Listing:
        listing = self._lock_owned(listing_id, actor)
        listing.is_published = False
        listing.published_at = None
        return listing

    def get_listing(self, listing_id: str) -> Listing:
        listing = self.listing_repository.get_by_id(listing_id)
        if not listing:
            raise NotFoundError("listing", listing_id)
        return listing

    def list_published(self, category: str | None = None) -> list[Listing]:
        return self.listing_repository.list_published(
            category.strip().lower() if category else None
        )

    def list_for_vendor(self, vendor_id: str) -> list[Listing]:
        return self.listing_repository.list_by_vendor(vendor_id)

    def _lock_owned(self, listing_id: str, actor: Actor) -> Listing:
        listing = self.listing_repository.lock_listing(listing_id)
        if not listing:
            raise NotFoundError("listing", listing_id)
        if not actor.is_admin and not (
            actor.role == ActorRole.VENDOR and actor.actor_id == listing.vendor_id
        ):
            raise ActorMismatchError("Only the owning vendor or an admin can change this listing")
        return listing
