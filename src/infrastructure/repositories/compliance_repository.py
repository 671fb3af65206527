# src/infrastructure/repositories/compliance_repository.py

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.domain.state_machine import ConnectOnboardingStatus
from src.infrastructure.db.models import VendorCompliance, VendorDocument


class ComplianceRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(self, vendor_id: str) -> VendorCompliance | None:
        stmt = select(VendorCompliance).where(VendorCompliance.vendor_id == vendor_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_or_create(self, vendor_id: str) -> VendorCompliance:
        """
        SELECT ... FOR UPDATE on the vendor's row, creating it on first use.
        """
        stmt = (
            select(VendorCompliance)
            .where(VendorCompliance.vendor_id == vendor_id)
            .with_for_update()
        )
        record = self.db.execute(stmt).scalar_one_or_none()
        if record:
            return record

        # A concurrent first insert fails on the primary key and surfaces
        # as a retryable conflict at the API edge.
        record = VendorCompliance(
            vendor_id=vendor_id,
            connect_onboarding_status=ConnectOnboardingStatus.NOT_STARTED,
            pending_requirements=[],
        )
        self.db.add(record)
        self.db.flush()
        return record

    def add_document(self, vendor_id: str, kind: str, url: str) -> VendorDocument:
        document = VendorDocument(vendor_id=vendor_id, kind=kind, url=url)
        self.db.add(document)
        self.db.flush()
        return document

    def list_documents(self, vendor_id: str) -> list[VendorDocument]:
        stmt = (
            select(VendorDocument)
            .where(VendorDocument.vendor_id == vendor_id)
            .order_by(VendorDocument.uploaded_at)
        )
        return list(self.db.execute(stmt).scalars().all())
