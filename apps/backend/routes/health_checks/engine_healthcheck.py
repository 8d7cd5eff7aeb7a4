from __future__ import annotations

from typing import Any, Dict

from apps.backend.services.container import EngineContainer


async def engine_healthcheck(container: EngineContainer) -> Dict[str, Any]:
    repo = container.repo
    checks: Dict[str, Any] = {"ledger": False, "rules": False, "tier_state": False, "integrations": False}

    try:
        events, _ = await repo.list_venue_events("__health__", limit=1)
        if isinstance(events, list):
            checks["ledger"] = True
    except Exception as e:
        checks["ledger_error"] = str(e)

    try:
        rules = await repo.list_rules("__health__")
        if isinstance(rules, list):
            checks["rules"] = True
    except Exception as e:
        checks["rules_error"] = str(e)

    try:
        await repo.get_tier_state("__health__", "__health__")
        checks["tier_state"] = True
    except Exception as e:
        checks["tier_state_error"] = str(e)

    try:
        integrations = await repo.list_integrations()
        checks["integrations"] = True
        checks["connected"] = sum(1 for i in integrations if i.is_connected)
        checks["in_error"] = sum(1 for i in integrations if i.status == "ERROR")
    except Exception as e:
        checks["integrations_error"] = str(e)

    scheduler = container.scheduler
    checks["scheduler_running"] = bool(scheduler is not None and scheduler.scheduler.running)

    core = ("ledger", "rules", "tier_state", "integrations")
    return {"ok": all(checks[k] for k in core), "checks": checks}
