from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.dependencies import get_admin, get_db, get_principal
from src.api.schemas.schemas import (
    ComplianceResponse,
    ContractAcceptRequest,
    PayoutAccountStatusRequest,
    SuspendVendorRequest,
    VendorDocumentCreate,
    VendorDocumentResponse,
)
from src.application.compliance_service import ComplianceService
from src.domain.actors import Actor
from src.domain.exceptions import ActorMismatchError
from src.domain.state_machine import ActorRole, ConnectOnboardingStatus
from src.infrastructure.db.models import VendorDocument


router = APIRouter(tags=["compliance"])


def _compliance_response(service: ComplianceService, vendor_id: str) -> ComplianceResponse:
    service.db.flush()
    status_ = service.get_status(vendor_id)
    record = status_.record
    return ComplianceResponse(
        vendor_id=vendor_id,
        admin_approved=bool(record and record.admin_approved),
        contract_accepted=bool(record and record.contract_accepted),
        contract_version=record.contract_version if record else None,
        training_completed=bool(record and record.training_completed),
        connect_onboarding_status=(
            record.connect_onboarding_status.value
            if record
            else ConnectOnboardingStatus.NOT_STARTED.value
        ),
        charges_enabled=bool(record and record.charges_enabled),
        payouts_enabled=bool(record and record.payouts_enabled),
        pending_requirements=list(record.pending_requirements) if record else [],
        can_publish=status_.can_publish,
        missing=status_.missing,
    )


def _document_response(document: VendorDocument) -> VendorDocumentResponse:
    return VendorDocumentResponse(
        id=document.id,
        vendor_id=document.vendor_id,
        kind=document.kind,
        url=document.url,
        uploaded_at=document.uploaded_at,
    )


def _ensure_reader(vendor_id: str, principal: Actor) -> None:
    if principal.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return
    if principal.role == ActorRole.VENDOR and principal.actor_id == vendor_id:
        return
    raise ActorMismatchError("Vendors can only see their own compliance records")


@router.get("/vendors/{vendor_id}/compliance", response_model=ComplianceResponse)
def get_compliance(
    vendor_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _ensure_reader(vendor_id, principal)
    return _compliance_response(ComplianceService(db), vendor_id)


@router.post("/vendors/{vendor_id}/compliance/contract", response_model=ComplianceResponse)
def accept_contract(
    vendor_id: str,
    payload: ContractAcceptRequest,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    service = ComplianceService(db)
    service.record_contract_acceptance(vendor_id, principal, payload.contract_version)
    return _compliance_response(service, vendor_id)


@router.post("/vendors/{vendor_id}/compliance/training", response_model=ComplianceResponse)
def complete_training(
    vendor_id: str,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    service = ComplianceService(db)
    service.record_training_completion(vendor_id, admin)
    return _compliance_response(service, vendor_id)


@router.post("/vendors/{vendor_id}/compliance/approve", response_model=ComplianceResponse)
def approve_vendor(
    vendor_id: str,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    service = ComplianceService(db)
    service.record_admin_approval(vendor_id, admin)
    return _compliance_response(service, vendor_id)


@router.post("/vendors/{vendor_id}/compliance/suspend", response_model=ComplianceResponse)
def suspend_vendor(
    vendor_id: str,
    payload: SuspendVendorRequest,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    service = ComplianceService(db)
    service.revoke_admin_approval(vendor_id, admin, reason=payload.reason)
    return _compliance_response(service, vendor_id)


@router.post("/vendors/{vendor_id}/compliance/payout-account", response_model=ComplianceResponse)
def update_payout_account(
    vendor_id: str,
    payload: PayoutAccountStatusRequest,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    """Push from the payout-account provider, relayed by a trusted system actor."""
    service = ComplianceService(db)
    service.apply_payout_account_status(
        vendor_id,
        charges_enabled=payload.charges_enabled,
        payouts_enabled=payload.payouts_enabled,
        pending_requirements=payload.pending_requirements,
    )
    return _compliance_response(service, vendor_id)


@router.post("/vendors/{vendor_id}/documents", response_model=VendorDocumentResponse)
def upload_document(
    vendor_id: str,
    payload: VendorDocumentCreate,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    document = ComplianceService(db).record_document(vendor_id, principal, payload.kind, payload.url)
    return _document_response(document)


@router.get("/vendors/{vendor_id}/documents", response_model=list[VendorDocumentResponse])
def list_documents(
    vendor_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    _ensure_reader(vendor_id, principal)
    return [_document_response(item) for item in ComplianceService(db).list_documents(vendor_id)]
