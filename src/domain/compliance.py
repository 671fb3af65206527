# src/domain/compliance.py

from typing import Protocol, Sequence

from src.domain.exceptions import PublishingBlockedError
from src.domain.state_machine import ConnectOnboardingStatus


COMPLIANCE_REQUIREMENTS = (
    "admin_approved",
    "contract_accepted",
    "training_completed",
    "payouts_enabled",
)


class ComplianceLike(Protocol):
    vendor_id: str
    admin_approved: bool
    contract_accepted: bool
    training_completed: bool
    payouts_enabled: bool


def missing_requirements(record: ComplianceLike | None) -> list[str]:
    if record is None:
        return list(COMPLIANCE_REQUIREMENTS)
    return [name for name in COMPLIANCE_REQUIREMENTS if not getattr(record, name)]


def can_publish(record: ComplianceLike | None) -> bool:
    """The single gate for publishing listings and responding to customers."""
    return not missing_requirements(record)


def ensure_can_publish(
    vendor_id: str,
    record: ComplianceLike | None,
    error_cls: type[PublishingBlockedError] = PublishingBlockedError,
) -> None:
    missing = missing_requirements(record)
    if missing:
        raise error_cls(vendor_id=vendor_id, missing=missing)


def onboarding_status(
    charges_enabled: bool,
    payouts_enabled: bool,
    pending_requirements: Sequence[str],
) -> ConnectOnboardingStatus:
    if charges_enabled and payouts_enabled and not pending_requirements:
        return ConnectOnboardingStatus.COMPLETE
    if charges_enabled or payouts_enabled or pending_requirements:
        return ConnectOnboardingStatus.PENDING
    return ConnectOnboardingStatus.NOT_STARTED
