from fastapi import Depends, Header
from pydantic import BaseModel

from escrowhouse.common.enums import ActorRole, PartyRole
from escrowhouse.common.exceptions import PermissionDeniedError
from escrowhouse.core.engine import EscrowEngine, get_engine
from escrowhouse.db.models import Milestone


class Actor(BaseModel):
    """Caller identity, as asserted by the upstream gateway."""

    ref: str
    role: ActorRole

    @property
    def party(self) -> PartyRole:
        if self.role == ActorRole.HOMEOWNER:
            return PartyRole.HOMEOWNER
        if self.role == ActorRole.CONTRACTOR:
            return PartyRole.CONTRACTOR
        raise PermissionDeniedError("Only the homeowner or the contractor can do this")


def get_escrow_engine() -> EscrowEngine:
    return get_engine()


async def get_actor(
    x_actor_ref: str = Header(..., description="Authenticated caller reference"),
    x_actor_role: ActorRole = Header(..., description="homeowner | contractor | mediator | admin | system"),
) -> Actor:
    if not x_actor_ref.strip():
        raise PermissionDeniedError("Missing caller reference")
    return Actor(ref=x_actor_ref, role=x_actor_role)


def require_role(*roles: ActorRole):
    async def role_checker(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise PermissionDeniedError(
                f"This action requires one of the following roles: {', '.join(r.value for r in roles)}"
            )
        return actor

    return role_checker


def ensure_party(milestone: Milestone, actor: Actor) -> PartyRole:
    """Check the caller is the homeowner or contractor named on the milestone."""
    party = actor.party
    expected = milestone.homeowner_ref if party == PartyRole.HOMEOWNER else milestone.contractor_ref
    if actor.ref != expected:
        raise PermissionDeniedError(f"You are not the {party.value} on this milestone")
    return party
