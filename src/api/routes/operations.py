from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from src.api.dependencies import get_admin, get_db
from src.api.schemas.schemas import AuditLogResponse, OutboxEventResponse, SweepResponse
from src.application.sweep_service import SweepService
from src.domain.actors import Actor
from src.infrastructure.db.models import OutboxEvent
from src.infrastructure.repositories.outbox_repository import AuditRepository, OutboxRepository


router = APIRouter(tags=["operations"])


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Marketplace Negotiation Engine is running"}


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_events(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    repository = OutboxRepository(db)
    item = repository.get_event(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )
    return _outbox_response(repository.mark_published(item))


@router.get("/admin/audit-log", response_model=list[AuditLogResponse])
def list_audit_log(
    limit: int = 100,
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    entries = AuditRepository(db).list_entries(max(1, min(limit, 500)))
    return [
        AuditLogResponse(
            id=entry.id,
            admin_id=entry.admin_id,
            action=entry.action,
            target_id=entry.target_id,
            meta=entry.meta,
            created_at=entry.created_at,
        )
        for entry in entries
    ]


@router.post("/maintenance/sweep", response_model=SweepResponse)
def run_sweep(
    admin: Actor = Depends(get_admin),
    db: Session = Depends(get_db),
):
    report = SweepService(db).run()
    return SweepResponse(**report._asdict())
