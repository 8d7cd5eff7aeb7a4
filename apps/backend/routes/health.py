from fastapi import APIRouter, Depends

from apps.backend.services.container import EngineContainer, get_container
from apps.backend.utils.settings import settings

from .health_checks.engine_healthcheck import engine_healthcheck


router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_root():
    return {"ok": True, "version": settings.NIGHTLIFE_VERSION}


@router.get("/engine")
async def health_engine(container: EngineContainer = Depends(get_container)):
    return await engine_healthcheck(container)
