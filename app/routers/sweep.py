"""Internal trigger for the background sweep."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, require_roles
from app.database import get_db
from app.models.party import ActorRole
from app.services.sweep import run_background_sweep

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/sweep")
async def trigger_sweep(
    actor: Actor = Depends(require_roles(ActorRole.SYSTEM, ActorRole.ADMIN, ActorRole.SUPER_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Run every due deadline transition now. Safe to call repeatedly."""
    report = await run_background_sweep(db)
    return report.to_dict()
