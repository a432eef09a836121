"""Caller identity forwarded by the upstream gateway.

Authentication happens before requests reach this service. The gateway
forwards the authenticated caller as ``X-Actor-Id`` and ``X-Actor-Role``;
dealer and technician callers must map to an active profile.
"""

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.party import ActorRole, PartyStatus, UserType
from app.services.trust import get_party


@dataclass(frozen=True)
class Actor:
    actor_id: uuid.UUID
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SUPER_ADMIN)

    @property
    def user_type(self) -> UserType | None:
        if self.role == ActorRole.DEALER:
            return UserType.DEALER
        if self.role == ActorRole.TECHNICIAN:
            return UserType.TECHNICIAN
        return None


SYSTEM_ACTOR = Actor(actor_id=uuid.UUID(int=0), role=ActorRole.SYSTEM)


def parse_actor_headers(actor_id: str | None, role: str | None) -> Actor:
    if not actor_id or not role:
        raise HTTPException(status_code=401, detail="Missing actor headers")
    try:
        return Actor(actor_id=uuid.UUID(actor_id), role=ActorRole(role.lower()))
    except ValueError:
        raise HTTPException(status_code=401, detail="Malformed actor headers")


async def get_actor(request: Request, db: AsyncSession = Depends(get_db)) -> Actor:
    """Resolve the calling actor; dealers and technicians must be active."""
    actor = parse_actor_headers(
        request.headers.get("X-Actor-Id"), request.headers.get("X-Actor-Role")
    )
    if actor.user_type is not None:
        party = await get_party(db, actor.actor_id, actor.user_type)
        if party is None:
            raise HTTPException(status_code=403, detail=f"{actor.role.value.title()} profile not found")
        if party.status != PartyStatus.ACTIVE:
            raise HTTPException(status_code=403, detail="Account is suspended")
    return actor


def require_roles(*roles: ActorRole):  # type: ignore[no-untyped-def]
    """Dependency factory restricting a route to the given roles."""

    async def _check(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail="Not permitted for this role")
        return actor

    return _check
