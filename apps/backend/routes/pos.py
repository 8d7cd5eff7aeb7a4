from datetime import datetime, timedelta
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator

from apps.backend.services.container import EngineContainer, get_container
from apps.backend.services.errors import ConfigError
from apps.backend.services.pos.connectors import normalize_provider
from apps.backend.utils.clock import utcnow
from apps.backend.utils.envelope import ok

router = APIRouter(prefix="/pos", tags=["pos"])


class CredentialsIn(BaseModel):
    api_key: str
    location_id: str
    environment: Literal["PRODUCTION", "SANDBOX"] = "PRODUCTION"
    webhook_secret: Optional[str] = None


class ConnectIn(BaseModel):
    venue_id: str
    provider: str
    credentials: CredentialsIn
    sync_interval_ms: Optional[int] = Field(default=None, ge=60_000)


class ValidateIn(BaseModel):
    provider: str
    credentials: CredentialsIn


class SyncIn(BaseModel):
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _range(self):
        if self.to_date is not None and self.from_date is None:
            raise ValueError("to_date requires from_date")
        return self


class PatronLinkIn(BaseModel):
    venue_id: str
    provider: str
    customer_ref: str
    patron_id: str


def _provider_or_none(provider: Optional[str]) -> Optional[str]:
    if provider is None:
        return None
    try:
        return normalize_provider(provider)
    except ValueError as e:
        raise ConfigError(str(e))


@router.post("/connect")
async def connect(inb: ConnectIn, container: EngineContainer = Depends(get_container)):
    integration = await container.orchestrator.connect(
        inb.venue_id,
        inb.provider,
        inb.credentials.model_dump(),
        sync_interval_ms=inb.sync_interval_ms,
    )
    return ok(integration.to_public_dict(), status=201)


@router.post("/disconnect/{venue_id}")
async def disconnect(venue_id: str, provider: Optional[str] = None, container: EngineContainer = Depends(get_container)):
    integrations = await container.orchestrator.disconnect(venue_id, provider)
    return ok([i.to_public_dict() for i in integrations])


@router.post("/validate")
async def validate(inb: ValidateIn, container: EngineContainer = Depends(get_container)):
    result = await container.orchestrator.validate_credentials(inb.provider, inb.credentials.model_dump())
    return ok(result)


@router.get("/status/{venue_id}")
async def status(venue_id: str, container: EngineContainer = Depends(get_container)):
    integrations = await container.orchestrator.get_status(venue_id)
    stats = await container.tier_service.get_integration_stats(venue_id)
    return ok({"integrations": integrations, "stats": stats})


@router.post("/sync/{venue_id}")
async def sync(venue_id: str, inb: Optional[SyncIn] = None, container: EngineContainer = Depends(get_container)):
    """
    Without a body: one cycle from the sync cursor. With from_date: a
    backfill of [from_date, to_date or now) that leaves the cursor alone.
    """
    since = inb.from_date if inb is not None else None
    until = inb.to_date if inb is not None else None
    results = await container.orchestrator.sync_venue(venue_id, since=since, until=until)
    return ok([r.to_dict() for r in results])


@router.get("/transactions/{venue_id}")
async def transactions(
    venue_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    provider: Optional[str] = None,
    status: Optional[Literal["sale", "reversal"]] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    container: EngineContainer = Depends(get_container),
):
    events, total = await container.ledger.list_venue_events(
        venue_id,
        limit=limit,
        offset=offset,
        provider=_provider_or_none(provider),
        since=start_date,
        until=end_date,
        kind=status,
    )
    meta: Dict[str, Any] = {"total": total, "limit": limit, "offset": offset, "has_more": offset + len(events) < total}
    return ok([e.to_dict() for e in events], meta=meta)


@router.get("/revenue/{venue_id}")
async def revenue(
    venue_id: str,
    period: Literal["day", "week", "month"] = "day",
    days: int = Query(30, ge=1, le=366),
    provider: Optional[str] = None,
    container: EngineContainer = Depends(get_container),
):
    since = utcnow() - timedelta(days=days)
    buckets = await container.ledger.revenue_by_period(
        venue_id, since=since, period=period, provider=_provider_or_none(provider)
    )
    return ok(buckets, meta={"period": period, "days": days})


@router.post("/patron-links")
async def link_patron(inb: PatronLinkIn, container: EngineContainer = Depends(get_container)):
    provider = _provider_or_none(inb.provider)
    await container.tier_service.link_patron(inb.venue_id, provider, inb.customer_ref, inb.patron_id)
    return ok(inb.model_dump() | {"provider": provider}, status=201)
