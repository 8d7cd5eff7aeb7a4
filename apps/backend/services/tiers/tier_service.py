"""
Tier Service (Canonical Integration Layer)
==========================================

Purpose:
- Orchestrate ledger + aggregator + rule evaluator + tier state machine
  with a repository.
- Venue-management operations (spend rules, patron tier state, patron
  links) for the routes.
- Keep routes thin. Keep domain logic in canonical modules.

Concurrency:
- Evaluation for one (venue_id, patron_id) is serialized with an
  asyncio.Lock; different patrons run concurrently. Locks are weakly
  held, so idle patrons cost nothing.

No HTTP here. Routes should call this.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from apps.backend.services.errors import NotFoundError
from apps.backend.services.tiers.models import PatronTierState, SpendAggregate
from apps.backend.services.tiers.repositories.interfaces import EngineRepository
from apps.backend.services.tiers.rule_evaluator import RuleEvaluator
from apps.backend.services.tiers.spend_aggregator import SpendAggregator
from apps.backend.services.tiers.spend_policy import SpendRule, validate_rule
from apps.backend.services.tiers.tier_state_machine import TierStateMachine, TierTransition
from apps.backend.services.tiers.transaction_ledger import TransactionLedger
from apps.backend.utils.clock import utcnow

log = logging.getLogger("nightlife.tiers")


@dataclass(frozen=True)
class PatronStatus:
    state: PatronTierState
    aggregate: SpendAggregate
    explanation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "tier_state": self.state.to_dict(),
            "spend": self.aggregate.to_dict(),
        }
        if self.explanation is not None:
            out["explanation"] = self.explanation
        return out


class TierService:
    def __init__(
        self,
        repo: EngineRepository,
        ledger: TransactionLedger,
        aggregator: SpendAggregator,
        evaluator: RuleEvaluator,
        state_machine: TierStateMachine,
    ) -> None:
        self.repo = repo
        self.ledger = ledger
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.state_machine = state_machine
        # Entries go away once no evaluation holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, venue_id: str, patron_id: str) -> asyncio.Lock:
        key = (venue_id, patron_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # -----------------------------
    # Evaluation
    # -----------------------------
    async def reevaluate_patron(
        self, venue_id: str, patron_id: str, now: Optional[datetime] = None
    ) -> TierTransition:
        """
        Recompute spend from the ledger, pick the matching rule and apply it.
        Also the audit/repair path.
        """
        now = now or utcnow()
        async with self._lock_for(venue_id, patron_id):
            aggregate = await self.aggregator.recompute(venue_id, patron_id, now=now)
            matched = await self.evaluator.evaluate(venue_id, aggregate, now)
            return await self.state_machine.apply(venue_id, patron_id, matched, now)

    async def reevaluate_venue(self, venue_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Re-run evaluation for every known patron of the venue so live-only
        grants regress when their window closes, even without new spend.
        """
        now = now or utcnow()
        patrons = await self.repo.list_venue_patrons(venue_id)
        results = await asyncio.gather(
            *(self.reevaluate_patron(venue_id, p, now) for p in patrons),
            return_exceptions=True,
        )

        counts: Dict[str, int] = {}
        failed = 0
        for patron_id, res in zip(patrons, results):
            if isinstance(res, Exception):
                failed += 1
                log.error(f"[TIERS] reevaluation failed venue={venue_id} patron={patron_id}: {res}")
                continue
            counts[res.kind] = counts.get(res.kind, 0) + 1
        return {"venue_id": venue_id, "patrons": len(patrons), "transitions": counts, "failed": failed}

    # -----------------------------
    # Spend rules
    # -----------------------------
    async def list_spend_rules(self, venue_id: str) -> List[SpendRule]:
        rules = await self.repo.list_rules(venue_id)
        return sorted(rules, key=lambda r: (-int(r.priority), int(r.threshold), r.id))

    async def upsert_spend_rule(
        self, venue_id: str, data: Dict[str, Any], rule_id: Optional[str] = None
    ) -> SpendRule:
        """
        Create (rule_id None) or partially update a rule. Raises ConfigError
        on invalid or ambiguous rules, NotFoundError for an unknown rule_id.
        """
        existing = await self.repo.list_rules(venue_id)
        if rule_id is None:
            rule = SpendRule.from_dict({**(data or {}), "id": None, "venue_id": venue_id, "stats": None})
        else:
            current = next((r for r in existing if r.id == rule_id), None)
            if current is None:
                raise NotFoundError("Spend rule not found")
            rule = current.merged(data or {})

        validate_rule(rule, existing)
        saved = await self.repo.save_rule(rule)
        log.info(f"[RULES] saved rule {saved.id} venue={venue_id} tier={saved.tier_unlocked} threshold={saved.threshold}")
        return saved

    async def delete_spend_rule(self, venue_id: str, rule_id: str) -> None:
        if not await self.repo.delete_rule(venue_id, rule_id):
            raise NotFoundError("Spend rule not found")
        log.info(f"[RULES] deleted rule {rule_id} venue={venue_id}")

    async def toggle_spend_rule(self, venue_id: str, rule_id: str) -> SpendRule:
        rule = await self.repo.get_rule(venue_id, rule_id)
        if rule is None:
            raise NotFoundError("Spend rule not found")
        return await self.upsert_spend_rule(venue_id, {"is_active": not rule.is_active}, rule_id=rule_id)

    # -----------------------------
    # Patron tier state
    # -----------------------------
    async def get_patron_tier_state(
        self, venue_id: str, patron_id: str, *, explain: bool = False, now: Optional[datetime] = None
    ) -> PatronStatus:
        state = await self.state_machine.load_state(venue_id, patron_id)
        aggregate = await self.repo.get_aggregate(venue_id, patron_id)
        if aggregate is None:
            aggregate = SpendAggregate(venue_id=venue_id, patron_id=patron_id)

        explanation = None
        if explain:
            explanation = await self.evaluator.explain(venue_id, aggregate, now or utcnow())
        return PatronStatus(state=state, aggregate=aggregate, explanation=explanation)

    async def reset_patron_tier(self, venue_id: str, patron_id: str, now: Optional[datetime] = None) -> TierTransition:
        async with self._lock_for(venue_id, patron_id):
            return await self.state_machine.reset(venue_id, patron_id, now)

    async def link_patron(self, venue_id: str, provider: str, customer_ref: str, patron_id: str) -> None:
        await self.repo.link_patron(venue_id, provider, customer_ref, patron_id)

    # -----------------------------
    # Integration stats
    # -----------------------------
    async def get_integration_stats(self, venue_id: str, provider: Optional[str] = None) -> Dict[str, Any]:
        stats = await self.ledger.venue_stats(venue_id, provider)
        return {"venue_id": venue_id, "provider": provider, **stats.to_dict()}
