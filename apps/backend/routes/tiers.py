from fastapi import APIRouter, Depends

from apps.backend.services.container import EngineContainer, get_container
from apps.backend.utils.envelope import ok

router = APIRouter(prefix="/tiers", tags=["tiers"])


@router.get("/{venue_id}/{patron_id}")
async def get_tier(venue_id: str, patron_id: str, explain: bool = False, container: EngineContainer = Depends(get_container)):
    status = await container.tier_service.get_patron_tier_state(venue_id, patron_id, explain=explain)
    return ok(status.to_dict())


@router.post("/{venue_id}/{patron_id}/reevaluate")
async def reevaluate(venue_id: str, patron_id: str, container: EngineContainer = Depends(get_container)):
    result = await container.tier_service.reevaluate_patron(venue_id, patron_id)
    return ok(result.to_dict())


@router.post("/{venue_id}/{patron_id}/reset")
async def reset(venue_id: str, patron_id: str, container: EngineContainer = Depends(get_container)):
    result = await container.tier_service.reset_patron_tier(venue_id, patron_id)
    return ok(result.to_dict())
