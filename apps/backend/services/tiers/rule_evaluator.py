"""
Rule Evaluator (Canonical)
==========================

Purpose:
- Pick the single applicable spend rule for an aggregate at a moment.
- Deterministic: same rule set + same spend + same moment => same rule.
- Produces explanation payloads for admin dashboards and audits.

Selection:
- Only active rules whose threshold <= lifetime spend.
- Live-only rules only while their window contains venue-local time.
- Winner: highest tier, then highest priority, then lowest threshold,
  then lowest id.
- None is a valid outcome (no tier).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from apps.backend.services.tiers.models import SpendAggregate
from apps.backend.services.tiers.repositories.interfaces import EngineRepository
from apps.backend.services.tiers.spend_policy import SpendRule, VenueRuleSet, rule_sort_key


def _candidate_status(rule: SpendRule, spend: int, local_now: datetime) -> Optional[str]:
    """
    None when the rule is eligible, otherwise the reason it is not.
    """
    if not rule.is_active:
        return "inactive"
    if rule.threshold > spend:
        return "below_threshold"
    if not rule.is_live_at(local_now):
        return "outside_live_window"
    return None


def select_rule(rule_set: VenueRuleSet, lifetime_spend: int, now: datetime) -> Optional[SpendRule]:
    """
    Pure selection over a snapshot.
    """
    local_now = rule_set.local_time(now)
    eligible = [r for r in rule_set.rules if _candidate_status(r, lifetime_spend, local_now) is None]
    if not eligible:
        return None
    return sorted(eligible, key=rule_sort_key)[0]


class RuleEvaluator:
    def __init__(self, repo: EngineRepository, *, default_timezone: str = "UTC") -> None:
        self.repo = repo
        self.default_timezone = default_timezone

    async def load_rule_set(self, venue_id: str) -> VenueRuleSet:
        """
        Immutable snapshot taken per evaluation; later edits do not affect it.
        """
        rules = await self.repo.list_rules(venue_id)
        tz = await self.repo.venue_timezone(venue_id, self.default_timezone)
        return VenueRuleSet(venue_id=venue_id, timezone=tz, rules=tuple(rules))

    async def evaluate(self, venue_id: str, aggregate: SpendAggregate, now: datetime) -> Optional[SpendRule]:
        rule_set = await self.load_rule_set(venue_id)
        return select_rule(rule_set, int(aggregate.lifetime_spend), now)

    async def explain(self, venue_id: str, aggregate: SpendAggregate, now: datetime) -> Dict[str, Any]:
        """
        Every rule of the venue, in winner order, with why it did or did not
        apply.
        """
        rule_set = await self.load_rule_set(venue_id)
        spend = int(aggregate.lifetime_spend)
        local_now = rule_set.local_time(now)
        winner = select_rule(rule_set, spend, now)

        candidates: List[Dict[str, Any]] = []
        for rule in sorted(rule_set.rules, key=rule_sort_key):
            status = _candidate_status(rule, spend, local_now)
            if status is None:
                status = "selected" if winner is not None and rule.id == winner.id else "outranked"
            candidates.append(
                {
                    "rule_id": rule.id,
                    "tier_unlocked": rule.tier_unlocked,
                    "server_access_level": rule.server_access_level,
                    "threshold": rule.threshold,
                    "priority": rule.priority,
                    "is_live_only": rule.is_live_only,
                    "status": status,
                    "amount_to_threshold": max(0, rule.threshold - spend),
                }
            )

        if winner is None:
            message = "No active spend rule applies at this spend level and time."
        else:
            message = (
                f"Lifetime spend of {spend} meets the {winner.threshold} threshold "
                f"for {winner.tier_unlocked} ({winner.server_access_level})."
            )
            if winner.is_live_only:
                message += " This grant holds only while the live window is open."

        return {
            "venue_id": venue_id,
            "lifetime_spend": spend,
            "venue_local_time": local_now.strftime("%H:%M"),
            "timezone": rule_set.timezone,
            "selected_rule_id": None if winner is None else winner.id,
            "candidates": candidates,
            "message": message,
        }
