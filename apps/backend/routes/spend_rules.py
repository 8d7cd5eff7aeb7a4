from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from apps.backend.services.container import EngineContainer, get_container
from apps.backend.utils.envelope import ok

router = APIRouter(prefix="/pos/rules", tags=["spend-rules"])


class LiveTimeWindowIn(BaseModel):
    start_time: str
    end_time: str


class SpendRuleIn(BaseModel):
    threshold: Optional[int] = None
    tier_unlocked: Optional[str] = None
    server_access_level: Optional[str] = None
    is_live_only: Optional[bool] = None
    live_time_window: Optional[LiveTimeWindowIn] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None
    performer_id: Optional[str] = None


@router.get("/{venue_id}")
async def list_rules(venue_id: str, container: EngineContainer = Depends(get_container)):
    rules = await container.tier_service.list_spend_rules(venue_id)
    return ok([r.to_dict() for r in rules], meta={"count": len(rules)})


@router.post("/{venue_id}")
async def create_rule(venue_id: str, inb: SpendRuleIn, container: EngineContainer = Depends(get_container)):
    rule = await container.tier_service.upsert_spend_rule(venue_id, inb.model_dump(exclude_none=True))
    return ok(rule.to_dict(), status=201)


@router.patch("/{venue_id}/{rule_id}")
async def update_rule(venue_id: str, rule_id: str, inb: SpendRuleIn, container: EngineContainer = Depends(get_container)):
    rule = await container.tier_service.upsert_spend_rule(venue_id, inb.model_dump(exclude_unset=True), rule_id=rule_id)
    return ok(rule.to_dict())


@router.delete("/{venue_id}/{rule_id}")
async def delete_rule(venue_id: str, rule_id: str, container: EngineContainer = Depends(get_container)):
    await container.tier_service.delete_spend_rule(venue_id, rule_id)
    return ok({"deleted": rule_id})


@router.post("/{venue_id}/{rule_id}/toggle")
async def toggle_rule(venue_id: str, rule_id: str, container: EngineContainer = Depends(get_container)):
    rule = await container.tier_service.toggle_spend_rule(venue_id, rule_id)
    return ok(rule.to_dict())
