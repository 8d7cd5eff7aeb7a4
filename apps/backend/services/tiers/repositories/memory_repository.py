"""
In-memory engine repository.

Same contract as the Supabase adapter. Rows are kept in their serialized
form so both adapters round-trip through the same to_dict/from_dict code.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from apps.backend.services.sync.integration import POSIntegration
from apps.backend.services.tiers.models import PatronTierState, SpendAggregate, TransactionEvent
from apps.backend.services.tiers.repositories.interfaces import EngineRepository, EventKind
from apps.backend.services.tiers.spend_policy import SpendRule
from apps.backend.utils.clock import as_utc, parse_datetime, to_iso, utcnow
from apps.backend.utils.encryption import CredentialCipher


class InMemoryEngineRepository(EngineRepository):
    def __init__(self, cipher: Optional[CredentialCipher] = None) -> None:
        self.cipher = cipher or CredentialCipher.ephemeral()
        self._events: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._seq = 0
        self._seq_lock = asyncio.Lock()
        self._aggregates: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._rules: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._tier_states: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._integrations: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._patron_links: Dict[Tuple[str, str, str], str] = {}
        self._timezones: Dict[str, str] = {}

    # -----------------------------
    # Ledger
    # -----------------------------
    async def insert_event(self, event: TransactionEvent) -> Optional[TransactionEvent]:
        async with self._seq_lock:
            if event.dedup_key in self._events:
                return None
            self._seq += 1
            row = event.to_dict()
            row["seq"] = self._seq
            self._events[event.dedup_key] = row
        return TransactionEvent.from_dict(row)

    async def get_event(self, venue_id: str, source_provider: str, external_id: str) -> Optional[TransactionEvent]:
        row = self._events.get((venue_id, source_provider, external_id))
        return None if row is None else TransactionEvent.from_dict(row)

    async def sum_reversals(self, venue_id: str, source_provider: str, original_external_id: str) -> int:
        return sum(
            abs(int(r["amount"]))
            for r in self._events.values()
            if r["venue_id"] == venue_id
            and r["source_provider"] == source_provider
            and r.get("reversal_of") == original_external_id
        )

    async def list_patron_events(
        self, venue_id: str, patron_id: str, *, after_seq: Optional[int] = None, limit: int = 500
    ) -> List[TransactionEvent]:
        rows = [
            r
            for r in self._events.values()
            if r["venue_id"] == venue_id
            and r.get("patron_id") == patron_id
            and (after_seq is None or r["seq"] > after_seq)
        ]
        rows.sort(key=lambda r: r["seq"])
        return [TransactionEvent.from_dict(r) for r in rows[:limit]]

    async def list_venue_events(
        self,
        venue_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        provider: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        kind: Optional[EventKind] = None,
    ) -> Tuple[List[TransactionEvent], int]:
        def keep(r: Dict[str, Any]) -> bool:
            if r["venue_id"] != venue_id or (provider is not None and r["source_provider"] != provider):
                return False
            if kind is not None and bool(r.get("reversal_of")) != (kind == "reversal"):
                return False
            occurred = parse_datetime(r["occurred_at"])
            if since is not None and occurred < as_utc(since):
                return False
            return until is None or occurred <= as_utc(until)

        rows = [r for r in self._events.values() if keep(r)]
        rows.sort(key=lambda r: (parse_datetime(r["occurred_at"]), r["seq"]), reverse=True)
        page = rows[offset: offset + limit]
        return [TransactionEvent.from_dict(r) for r in page], len(rows)

    async def venue_revenue(self, venue_id: str, provider: Optional[str] = None) -> Tuple[int, int]:
        count = 0
        total = 0
        for r in self._events.values():
            if r["venue_id"] != venue_id or (provider is not None and r["source_provider"] != provider):
                continue
            total += int(r["amount"])
            if not r.get("reversal_of"):
                count += 1
        return count, total

    async def list_venue_patrons(self, venue_id: str) -> List[str]:
        patrons = {r["patron_id"] for r in self._events.values() if r["venue_id"] == venue_id and r.get("patron_id")}
        patrons.update(p for (v, p) in self._tier_states if v == venue_id)
        return sorted(patrons)

    # -----------------------------
    # Aggregates
    # -----------------------------
    async def save_aggregate(self, aggregate: SpendAggregate) -> None:
        self._aggregates[(aggregate.venue_id, aggregate.patron_id)] = aggregate.to_dict()

    async def get_aggregate(self, venue_id: str, patron_id: str) -> Optional[SpendAggregate]:
        row = self._aggregates.get((venue_id, patron_id))
        return None if row is None else SpendAggregate.from_dict(row)

    # -----------------------------
    # Spend rules
    # -----------------------------
    async def list_rules(self, venue_id: str) -> List[SpendRule]:
        return [SpendRule.from_dict(r) for (v, _), r in self._rules.items() if v == venue_id]

    async def get_rule(self, venue_id: str, rule_id: str) -> Optional[SpendRule]:
        row = self._rules.get((venue_id, rule_id))
        return None if row is None else SpendRule.from_dict(row)

    async def save_rule(self, rule: SpendRule) -> SpendRule:
        self._rules[(rule.venue_id, rule.id)] = rule.to_dict()
        return rule

    async def delete_rule(self, venue_id: str, rule_id: str) -> bool:
        return self._rules.pop((venue_id, rule_id), None) is not None

    async def record_rule_trigger(self, venue_id: str, rule_id: str, *, new_patron: bool) -> None:
        row = self._rules.get((venue_id, rule_id))
        if row is None:
            return
        stats = dict(row.get("stats") or {})
        stats["times_triggered"] = int(stats.get("times_triggered") or 0) + 1
        stats["last_triggered_at"] = to_iso(utcnow())
        if new_patron:
            stats["patrons_unlocked"] = int(stats.get("patrons_unlocked") or 0) + 1
        row["stats"] = stats

    # -----------------------------
    # Tier state
    # -----------------------------
    async def get_tier_state(self, venue_id: str, patron_id: str) -> Optional[PatronTierState]:
        row = self._tier_states.get((venue_id, patron_id))
        return None if row is None else PatronTierState.from_dict(row)

    async def save_tier_state(self, state: PatronTierState) -> None:
        self._tier_states[(state.venue_id, state.patron_id)] = state.to_dict()

    async def list_live_grants(self) -> List[Tuple[str, str]]:
        return sorted(key for key, row in self._tier_states.items() if row.get("granted_live_only"))

    # -----------------------------
    # Integrations
    # -----------------------------
    async def get_integration(self, venue_id: str, provider: str) -> Optional[POSIntegration]:
        row = self._integrations.get((venue_id, provider))
        return None if row is None else POSIntegration.from_dict(row, self.cipher)

    async def list_integrations(self, venue_id: Optional[str] = None) -> List[POSIntegration]:
        return [
            POSIntegration.from_dict(r, self.cipher)
            for (v, _), r in sorted(self._integrations.items())
            if venue_id is None or v == venue_id
        ]

    async def save_integration(self, integration: POSIntegration) -> None:
        self._integrations[(integration.venue_id, integration.provider)] = integration.to_dict(self.cipher)

    # -----------------------------
    # Patron links / venue settings
    # -----------------------------
    async def resolve_patron(self, venue_id: str, provider: str, customer_ref: str) -> Optional[str]:
        return self._patron_links.get((venue_id, provider, customer_ref))

    async def link_patron(self, venue_id: str, provider: str, customer_ref: str, patron_id: str) -> None:
        self._patron_links[(venue_id, provider, customer_ref)] = patron_id

    async def get_venue_timezone(self, venue_id: str) -> Optional[str]:
        return self._timezones.get(venue_id)

    async def set_venue_timezone(self, venue_id: str, timezone: str) -> None:
        self._timezones[venue_id] = timezone
