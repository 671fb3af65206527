# src/api/dependencies.py

from fastapi import Depends, Header, HTTPException, Request, status

from src.domain.actors import Actor
from src.domain.state_machine import ActorRole
from src.infrastructure.db.session import get_db_session
from src.infrastructure.payments.gateway import PaymentGateway, get_payment_gateway


def get_db():
    with get_db_session() as db:
        yield db


def get_principal(
    request: Request,
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_email: str | None = Header(default=None),
) -> Actor:
    """
    Principal asserted by the upstream gateway after token verification.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id or X-Actor-Role header",
        )
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown actor role: {x_actor_role}",
        ) from exc

    return Actor(
        actor_id=x_actor_id.strip(),
        role=role,
        email=x_actor_email.strip().lower() if x_actor_email else None,
        ip=request.client.host if request.client else None,
    )


def get_admin(principal: Actor = Depends(get_principal)) -> Actor:
    if principal.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()
