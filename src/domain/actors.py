# src/domain/actors.py

from dataclasses import dataclass

from src.domain.exceptions import ActorMismatchError
from src.domain.state_machine import ActorRole


@dataclass(frozen=True)
class Actor:
    """Authenticated principal passed explicitly into every operation."""

    actor_id: str
    role: ActorRole
    email: str | None = None
    ip: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    def require_role(self, *roles: ActorRole) -> None:
        if self.role not in roles:
            allowed = ", ".join(role.value for role in roles)
            raise ActorMismatchError(
                f"Role {self.role.value} is not allowed here; expected one of: {allowed}"
            )


SYSTEM_ACTOR = Actor(actor_id="system", role=ActorRole.SYSTEM)
