# src/infrastructure/repositories/request_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.domain.state_machine import (
    OfferStatus,
    RequestClosedReason,
    RequestStatus,
)
from src.infrastructure.db.models import ServiceRequest, VendorOffer


class RequestRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, request_id: str) -> ServiceRequest | None:
        stmt = select(ServiceRequest).where(ServiceRequest.id == request_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_request(self, request_id: str) -> ServiceRequest | None:
        """
        SELECT ... FOR UPDATE
        Serializes every offer decision on this request.
        """
        stmt = (
            select(ServiceRequest)
            .where(ServiceRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def create_request(
        self,
        customer_email: str,
        categories: list[str],
        budget_cents: int,
        response_hours: int,
        created_at: datetime,
        expires_at: datetime,
        customer_phone: str | None = None,
    ) -> ServiceRequest:
        request = ServiceRequest(
            customer_email=customer_email,
            customer_phone=customer_phone,
            selected_categories=categories,
            budget_cents=budget_cents,
            response_hours=response_hours,
            status=RequestStatus.OPEN,
            created_at=created_at,
            expires_at=expires_at,
        )
        self.db.add(request)
        self.db.flush()
        return request

    def list_by_customer(self, customer_email: str) -> list[ServiceRequest]:
        stmt = (
            select(ServiceRequest)
            .where(ServiceRequest.customer_email == customer_email)
            .order_by(ServiceRequest.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_open(self) -> list[ServiceRequest]:
        stmt = (
            select(ServiceRequest)
            .where(ServiceRequest.status == RequestStatus.OPEN)
            .order_by(ServiceRequest.expires_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_offer(self, request_id: str, offer_id: str) -> VendorOffer | None:
        stmt = (
            select(VendorOffer)
            .where(VendorOffer.id == offer_id)
            .where(VendorOffer.request_id == request_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_offer_by_id(self, offer_id: str) -> VendorOffer | None:
        stmt = select(VendorOffer).where(VendorOffer.id == offer_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_vendor_offer(self, request_id: str, vendor_id: str) -> VendorOffer | None:
        stmt = (
            select(VendorOffer)
            .where(VendorOffer.request_id == request_id)
            .where(VendorOffer.vendor_id == vendor_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_offers(self, request_id: str) -> list[VendorOffer]:
        stmt = (
            select(VendorOffer)
            .where(VendorOffer.request_id == request_id)
            .order_by(VendorOffer.created_at, VendorOffer.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_offer(
        self,
        request_id: str,
        vendor_id: str,
        price_cents: int,
        message: str,
    ) -> VendorOffer:
        offer = VendorOffer(
            request_id=request_id,
            vendor_id=vendor_id,
            price_cents=price_cents,
            message=message,
            status=OfferStatus.PENDING,
        )
        self.db.add(offer)
        self.db.flush()
        return offer

    def ignore_pending_offers(self, request_id: str, except_offer_id: str | None = None) -> int:
        stmt = (
            update(VendorOffer)
            .where(VendorOffer.request_id == request_id)
            .where(VendorOffer.status == OfferStatus.PENDING)
        )
        if except_offer_id:
            stmt = stmt.where(VendorOffer.id != except_offer_id)
        stmt = stmt.values(status=OfferStatus.IGNORED).execution_options(
            synchronize_session="fetch"
        )
        return self.db.execute(stmt).rowcount

    def expire_stale(self, now: datetime) -> list[str]:
        """
        Conditional on status = open, so an accept that committed first wins.
        Returns the ids that this pass expired.
        """
        candidates = list(
            self.db.execute(
                select(ServiceRequest.id)
                .where(ServiceRequest.status == RequestStatus.OPEN)
                .where(ServiceRequest.expires_at < now)
            ).scalars().all()
        )
        if not candidates:
            return []

        self.db.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id.in_(candidates))
            .where(ServiceRequest.status == RequestStatus.OPEN)
            .values(
                status=RequestStatus.EXPIRED,
                closed_at=now,
                closed_reason=RequestClosedReason.TIME_LIMIT,
            )
            .execution_options(synchronize_session="fetch")
        )
        expired_ids = list(
            self.db.execute(
                select(ServiceRequest.id)
                .where(ServiceRequest.id.in_(candidates))
                .where(ServiceRequest.status == RequestStatus.EXPIRED)
            ).scalars().all()
        )
        if expired_ids:
            self.db.execute(
                update(VendorOffer)
                .where(VendorOffer.request_id.in_(expired_ids))
                .where(VendorOffer.status == OfferStatus.PENDING)
                .values(status=OfferStatus.IGNORED)
                .execution_options(synchronize_session="fetch")
            )
        return expired_ids
