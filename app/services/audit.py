"""Append-only audit trail for job transitions and money movement."""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditLog
from app.models.party import ActorRole


async def log_audit(
    db: AsyncSession,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: uuid.UUID | None = None,
    actor_role: ActorRole = ActorRole.SYSTEM,
    amount: int | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    entry = AuditLog(
        audit_id=uuid.uuid4(),
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role.value,
        amount=amount,
        metadata_=metadata,
    )
    db.add(entry)
