from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.dependencies import get_db, get_principal
from src.api.schemas.schemas import (
    OfferCreate,
    OfferResponse,
    OfferStatusUpdate,
    ServiceRequestCreate,
    ServiceRequestResponse,
)
from src.application.request_service import RequestService
from src.domain.actors import Actor
from src.domain.state_machine import ActorRole, OfferStatus
from src.infrastructure.db.models import ServiceRequest, VendorOffer


router = APIRouter(tags=["requests"])


def _offer_response(offer: VendorOffer) -> OfferResponse:
    return OfferResponse(
        id=offer.id,
        request_id=offer.request_id,
        vendor_id=offer.vendor_id,
        price_cents=offer.price_cents,
        message=offer.message,
        status=offer.status.value,
        payment_status=offer.payment_status.value,
        created_at=offer.created_at,
        paid_at=offer.paid_at,
    )


def _request_response(
    request: ServiceRequest,
    offers: list[VendorOffer] | None = None,
) -> ServiceRequestResponse:
    return ServiceRequestResponse(
        id=request.id,
        customer_email=request.customer_email,
        selected_categories=list(request.selected_categories),
        budget_cents=request.budget_cents,
        response_hours=request.response_hours,
        status=request.status.value,
        closed_reason=request.closed_reason.value if request.closed_reason else None,
        created_at=request.created_at,
        expires_at=request.expires_at,
        closed_at=request.closed_at,
        offers=[_offer_response(offer) for offer in offers or []],
    )


@router.post("/requests", response_model=ServiceRequestResponse)
def create_request(
    payload: ServiceRequestCreate,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    request = RequestService(db).create_request(
        customer=principal,
        categories=payload.categories,
        budget_cents=payload.budget_cents,
        response_hours=payload.response_hours,
        customer_phone=payload.customer_phone,
    )
    return _request_response(request)


@router.get("/requests/mine", response_model=list[ServiceRequestResponse])
def list_my_requests(
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    if not principal.email:
        return []
    return [_request_response(item) for item in RequestService(db).list_for_customer(principal.email)]


@router.get("/requests/open", response_model=list[ServiceRequestResponse])
def list_open_requests(
    category: str | None = None,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    return [_request_response(item) for item in RequestService(db).list_open_for_category(category)]


@router.get("/requests/{request_id}", response_model=ServiceRequestResponse)
def get_request(
    request_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    request, offers = RequestService(db).get_request(request_id)
    if principal.role == ActorRole.VENDOR:
        # Vendors never see competing offers.
        offers = [offer for offer in offers if offer.vendor_id == principal.actor_id]
    return _request_response(request, offers)


@router.post("/requests/{request_id}/offers", response_model=OfferResponse)
def submit_offer(
    request_id: str,
    payload: OfferCreate,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    offer = RequestService(db).submit_offer(
        request_id=request_id,
        vendor=principal,
        price_cents=payload.price_cents,
        message=payload.message,
    )
    return _offer_response(offer)


@router.patch("/requests/{request_id}/offers/{offer_id}", response_model=OfferResponse)
def set_offer_status(
    request_id: str,
    offer_id: str,
    payload: OfferStatusUpdate,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    offer = RequestService(db).set_offer_status(
        request_id=request_id,
        offer_id=offer_id,
        target_status=OfferStatus(payload.status),
        actor=principal,
    )
    return _offer_response(offer)


@router.post("/requests/{request_id}/cancel", response_model=ServiceRequestResponse)
def cancel_request(
    request_id: str,
    principal: Actor = Depends(get_principal),
    db: Session = Depends(get_db),
):
    service = RequestService(db)
    service.cancel_request(request_id, principal)
    db.flush()
    request, offers = service.get_request(request_id)
    return _request_response(request, offers)
