# src/application/compliance_service.py

from datetime import datetime
import logging
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from src.application.payment_service import RELEASED, PaymentService
from src.domain.actors import Actor
from src.domain.clock import utc_now
from src.domain.compliance import (
    can_publish,
    ensure_can_publish,
    missing_requirements,
    onboarding_status,
)
from src.domain.exceptions import (
    ActorMismatchError,
    PublishingBlockedError,
    ValidationFailedError,
)
from src.domain.moderation import normalize_optional_text
from src.domain.state_machine import ActorRole
from src.infrastructure.db.models import VendorCompliance, VendorDocument
from src.infrastructure.repositories.compliance_repository import ComplianceRepository
from src.infrastructure.repositories.outbox_repository import AuditRepository


logger = logging.getLogger(__name__)


class ComplianceStatus(NamedTuple):
    vendor_id: str
    record: VendorCompliance | None
    missing: list[str]
    can_publish: bool


class PayoutAccountUpdate(NamedTuple):
    record: VendorCompliance
    payouts_enabled_now: bool
    released_payouts: int


class ComplianceService:
    """
    Per-vendor checklist. The stored can_publish flag is recomputed
    from the checklist after every mutation.
    """

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.compliance_repository = ComplianceRepository(db)
        self.audit_repository = AuditRepository(db)

    def get_status(self, vendor_id: str) -> ComplianceStatus:
        record = self.compliance_repository.get(vendor_id)
        missing = missing_requirements(record)
        return ComplianceStatus(vendor_id, record, missing, not missing)

    def ensure_can_publish(
        self,
        vendor_id: str,
        error_cls: type[PublishingBlockedError] = PublishingBlockedError,
    ) -> None:
        ensure_can_publish(vendor_id, self.compliance_repository.get(vendor_id), error_cls=error_cls)

    def record_contract_acceptance(
        self,
        vendor_id: str,
        actor: Actor,
        contract_version: str,
        ip: str | None = None,
    ) -> VendorCompliance:
        self._ensure_vendor_or_admin(vendor_id, actor)
        version = normalize_optional_text(contract_version, max_length=32)
        if not version:
            raise ValidationFailedError("A contract version is required")

        record = self.compliance_repository.lock_or_create(vendor_id)
        record.contract_accepted = True
        record.contract_version = version
        record.contract_accepted_at = self.clock()
        record.contract_accepted_by = actor.actor_id
        record.contract_accepted_ip = ip or actor.ip
        self._refresh(record)
        if actor.is_admin:
            self._audit(actor, "contract_accepted", vendor_id, {"contract_version": version})
        logger.info("Contract accepted. vendor_id=%s version=%s", vendor_id, version)
        return record

    def record_training_completion(self, vendor_id: str, actor: Actor) -> VendorCompliance:
        actor.require_role(ActorRole.ADMIN)
        record = self.compliance_repository.lock_or_create(vendor_id)
        record.training_completed = True
        record.training_completed_at = self.clock()
        self._refresh(record)
        self._audit(actor, "training_completed", vendor_id)
        return record

    def record_admin_approval(self, vendor_id: str, actor: Actor) -> VendorCompliance:
        actor.require_role(ActorRole.ADMIN)
        record = self.compliance_repository.lock_or_create(vendor_id)
        record.admin_approved = True
        record.admin_approved_at = self.clock()
        self._refresh(record)
        self._audit(actor, "vendor_approved", vendor_id)
        logger.info("Vendor approved. vendor_id=%s admin_id=%s", vendor_id, actor.actor_id)
        return record

    def revoke_admin_approval(
        self,
        vendor_id: str,
        actor: Actor,
        reason: str | None = None,
    ) -> VendorCompliance:
        actor.require_role(ActorRole.ADMIN)
        record = self.compliance_repository.lock_or_create(vendor_id)
        record.admin_approved = False
        record.admin_approved_at = None
        self._refresh(record)
        self._audit(
            actor,
            "vendor_suspended",
            vendor_id,
            {"reason": normalize_optional_text(reason)},
        )
        logger.warning("Vendor suspended. vendor_id=%s admin_id=%s", vendor_id, actor.actor_id)
        return record

    def apply_payout_account_status(
        self,
        vendor_id: str,
        charges_enabled: bool,
        payouts_enabled: bool,
        pending_requirements: list[str] | None = None,
    ) -> PayoutAccountUpdate:
        """Mirrors the payout-account provider's view of the vendor."""
        record = self.compliance_repository.lock_or_create(vendor_id)
        was_enabled = record.payouts_enabled
        requirements = [item for item in (pending_requirements or []) if item]

        record.charges_enabled = charges_enabled
        record.payouts_enabled = payouts_enabled
        record.pending_requirements = requirements
        record.connect_onboarding_status = onboarding_status(
            charges_enabled,
            payouts_enabled,
            requirements,
        )
        self._refresh(record)
        logger.info(
            "Payout account updated. vendor_id=%s status=%s payouts_enabled=%s",
            vendor_id,
            record.connect_onboarding_status.value,
            payouts_enabled,
        )
        released = 0
        if payouts_enabled and not was_enabled:
            releases = PaymentService(self.db, clock=self.clock).release_pending_payouts(vendor_id)
            released = sum(1 for release in releases if release.result == RELEASED)
        return PayoutAccountUpdate(record, payouts_enabled and not was_enabled, released)

    def record_document(
        self,
        vendor_id: str,
        actor: Actor,
        kind: str,
        url: str,
    ) -> VendorDocument:
        self._ensure_vendor_or_admin(vendor_id, actor)
        kind = normalize_optional_text(kind, max_length=64)
        url = normalize_optional_text(url, max_length=1024)
        if not kind or not url:
            raise ValidationFailedError("Document kind and url are required")
        return self.compliance_repository.add_document(vendor_id, kind, url)

    def list_documents(self, vendor_id: str) -> list[VendorDocument]:
        return self.compliance_repository.list_documents(vendor_id)

    def _refresh(self, record: VendorCompliance) -> None:
        record.can_publish = can_publish(record)
        record.updated_at = self.clock()

    def _audit(
        self,
        actor: Actor,
        action: str,
        vendor_id: str,
        meta: dict | None = None,
    ) -> None:
        self.audit_repository.record(
            admin_id=actor.actor_id,
            action=action,
            target_id=vendor_id,
            meta=meta,
        )

    @staticmethod
    def _ensure_vendor_or_admin(vendor_id: str, actor: Actor) -> None:
        if actor.is_admin:
            return
        if actor.role == ActorRole.VENDOR and actor.actor_id == vendor_id:
            return
        raise ActorMismatchError("Only the vendor or an admin can change this vendor's records")
