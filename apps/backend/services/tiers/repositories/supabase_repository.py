"""
Engine Repository (Supabase/Postgres Adapter)
=============================================

Expected tables (canonical names):

1) public.transaction_events
   - seq bigserial primary key
   - external_id text, venue_id text, source_provider text
   - patron_id text null, customer_ref text null
   - amount bigint, currency text default 'USD'
   - occurred_at timestamptz, received_at timestamptz
   - reversal_of text null
   - meta jsonb default '{}'::jsonb
   UNIQUE (venue_id, source_provider, external_id)

2) public.spend_aggregates        PRIMARY KEY (venue_id, patron_id)
3) public.spend_rules             PRIMARY KEY (id); live_time_window/stats jsonb
4) public.patron_tier_state       PRIMARY KEY (venue_id, patron_id); unlocked_rule_ids jsonb
5) public.pos_integrations        PRIMARY KEY (venue_id, provider); nested jsonb
6) public.patron_links            PRIMARY KEY (venue_id, provider, customer_ref)
7) public.venue_settings          PRIMARY KEY (venue_id); timezone text

supabase-py is synchronous; methods stay async to match the contract.

PostgREST caps every response at its max-rows setting, so scans that must
see every row go through _select_all(), which pages with range().
pos_integrations.credentials holds Fernet ciphertext, never plaintext.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from apps.backend.services.sync.integration import POSIntegration
from apps.backend.services.tiers.models import PatronTierState, SpendAggregate, TransactionEvent
from apps.backend.services.tiers.repositories.interfaces import EngineRepository, EventKind
from apps.backend.services.tiers.spend_policy import SpendRule
from apps.backend.utils.clock import to_iso, utcnow
from apps.backend.utils.encryption import CredentialCipher

log = logging.getLogger("nightlife.repository")

# PostgREST's default max-rows
SCAN_PAGE_SIZE = 1000


def _rows(r: Any) -> List[Dict[str, Any]]:
    data = getattr(r, "data", None) or []
    if isinstance(data, dict):
        return [data]
    return [x for x in data if isinstance(x, dict)]


def _first(r: Any) -> Optional[Dict[str, Any]]:
    rows = _rows(r)
    return rows[0] if rows else None


class SupabaseEngineRepository(EngineRepository):
    def __init__(
        self,
        supabase_client: Any,
        cipher: CredentialCipher,
        *,
        scan_page_size: int = SCAN_PAGE_SIZE,
        table_events: str = "transaction_events",
        table_aggregates: str = "spend_aggregates",
        table_rules: str = "spend_rules",
        table_tier_state: str = "patron_tier_state",
        table_integrations: str = "pos_integrations",
        table_patron_links: str = "patron_links",
        table_venue_settings: str = "venue_settings",
    ) -> None:
        self.sb = supabase_client
        self.cipher = cipher
        self.scan_page_size = max(1, int(scan_page_size))
        self.table_events = table_events
        self.table_aggregates = table_aggregates
        self.table_rules = table_rules
        self.table_tier_state = table_tier_state
        self.table_integrations = table_integrations
        self.table_patron_links = table_patron_links
        self.table_venue_settings = table_venue_settings

    def _select_all(self, build: Callable[[], Any], order_by: str) -> List[Dict[str, Any]]:
        """
        Every row of the query built by `build`, one range() page at a time.
        The builder is rebuilt per page; postgrest builders are not reusable.
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = _rows(build().order(order_by).range(offset, offset + self.scan_page_size - 1).execute())
            rows.extend(page)
            if len(page) < self.scan_page_size:
                return rows
            offset += self.scan_page_size

    # -----------------------------
    # Ledger
    # -----------------------------
    async def insert_event(self, event: TransactionEvent) -> Optional[TransactionEvent]:
        payload = event.to_dict()
        payload.pop("seq", None)
        r = (
            self.sb.table(self.table_events)
            .upsert(payload, on_conflict="venue_id,source_provider,external_id", ignore_duplicates=True)
            .execute()
        )
        row = _first(r)
        if row is None:
            # ON CONFLICT DO NOTHING returns no row
            return None
        return TransactionEvent.from_dict(row)

    async def get_event(self, venue_id: str, source_provider: str, external_id: str) -> Optional[TransactionEvent]:
        r = (
            self.sb.table(self.table_events)
            .select("*")
            .eq("venue_id", venue_id)
            .eq("source_provider", source_provider)
            .eq("external_id", external_id)
            .limit(1)
            .execute()
        )
        row = _first(r)
        return None if row is None else TransactionEvent.from_dict(row)

    async def sum_reversals(self, venue_id: str, source_provider: str, original_external_id: str) -> int:
        rows = self._select_all(
            lambda: self.sb.table(self.table_events)
            .select("seq,amount")
            .eq("venue_id", venue_id)
            .eq("source_provider", source_provider)
            .eq("reversal_of", original_external_id),
            "seq",
        )
        return sum(abs(int(row.get("amount") or 0)) for row in rows)

    async def list_patron_events(
        self, venue_id: str, patron_id: str, *, after_seq: Optional[int] = None, limit: int = 500
    ) -> List[TransactionEvent]:
        q = (
            self.sb.table(self.table_events)
            .select("*")
            .eq("venue_id", venue_id)
            .eq("patron_id", patron_id)
        )
        if after_seq is not None:
            q = q.gt("seq", after_seq)
        r = q.order("seq", desc=False).limit(limit).execute()
        return [TransactionEvent.from_dict(row) for row in _rows(r)]

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
        q = self.sb.table(self.table_events).select("*", count="exact").eq("venue_id", venue_id)
        if provider:
            q = q.eq("source_provider", provider)
        if since is not None:
            q = q.gte("occurred_at", to_iso(since))
        if until is not None:
            q = q.lte("occurred_at", to_iso(until))
        if kind == "sale":
            q = q.is_("reversal_of", "null")
        elif kind == "reversal":
            q = q.not_.is_("reversal_of", "null")
        r = q.order("occurred_at", desc=True).range(offset, offset + limit - 1).execute()
        total = getattr(r, "count", None)
        events = [TransactionEvent.from_dict(row) for row in _rows(r)]
        return events, int(total if total is not None else len(events))

    async def venue_revenue(self, venue_id: str, provider: Optional[str] = None) -> Tuple[int, int]:
        def build():
            q = self.sb.table(self.table_events).select("seq,amount,reversal_of").eq("venue_id", venue_id)
            return q.eq("source_provider", provider) if provider else q

        rows = self._select_all(build, "seq")
        total = sum(int(row.get("amount") or 0) for row in rows)
        count = sum(1 for row in rows if not row.get("reversal_of"))
        return count, total

    async def list_venue_patrons(self, venue_id: str) -> List[str]:
        rows = self._select_all(
            lambda: self.sb.table(self.table_events)
            .select("seq,patron_id")
            .eq("venue_id", venue_id)
            .not_.is_("patron_id", "null"),
            "seq",
        )
        patrons = {row["patron_id"] for row in rows if row.get("patron_id")}
        rows = self._select_all(
            lambda: self.sb.table(self.table_tier_state).select("patron_id").eq("venue_id", venue_id),
            "patron_id",
        )
        patrons.update(row["patron_id"] for row in rows if row.get("patron_id"))
        return sorted(patrons)

    # -----------------------------
    # Aggregates
    # -----------------------------
    async def save_aggregate(self, aggregate: SpendAggregate) -> None:
        self.sb.table(self.table_aggregates).upsert(aggregate.to_dict(), on_conflict="venue_id,patron_id").execute()

    async def get_aggregate(self, venue_id: str, patron_id: str) -> Optional[SpendAggregate]:
        r = (
            self.sb.table(self.table_aggregates)
            .select("*")
            .eq("venue_id", venue_id)
            .eq("patron_id", patron_id)
            .limit(1)
            .execute()
        )
        row = _first(r)
        return None if row is None else SpendAggregate.from_dict(row)

    # -----------------------------
    # Spend rules
    # -----------------------------
    async def list_rules(self, venue_id: str) -> List[SpendRule]:
        r = self.sb.table(self.table_rules).select("*").eq("venue_id", venue_id).execute()
        return [SpendRule.from_dict(row) for row in _rows(r)]

    async def get_rule(self, venue_id: str, rule_id: str) -> Optional[SpendRule]:
        r = self.sb.table(self.table_rules).select("*").eq("venue_id", venue_id).eq("id", rule_id).limit(1).execute()
        row = _first(r)
        return None if row is None else SpendRule.from_dict(row)

    async def save_rule(self, rule: SpendRule) -> SpendRule:
        self.sb.table(self.table_rules).upsert(rule.to_dict(), on_conflict="id").execute()
        return rule

    async def delete_rule(self, venue_id: str, rule_id: str) -> bool:
        r = self.sb.table(self.table_rules).delete().eq("venue_id", venue_id).eq("id", rule_id).execute()
        return bool(_rows(r))

    async def record_rule_trigger(self, venue_id: str, rule_id: str, *, new_patron: bool) -> None:
        # Read-modify-write; counters are informational only.
        r = self.sb.table(self.table_rules).select("stats").eq("venue_id", venue_id).eq("id", rule_id).limit(1).execute()
        row = _first(r)
        if row is None:
            return
        stats = dict(row.get("stats") or {})
        stats["times_triggered"] = int(stats.get("times_triggered") or 0) + 1
        stats["last_triggered_at"] = to_iso(utcnow())
        if new_patron:
            stats["patrons_unlocked"] = int(stats.get("patrons_unlocked") or 0) + 1
        self.sb.table(self.table_rules).update({"stats": stats}).eq("venue_id", venue_id).eq("id", rule_id).execute()

    # -----------------------------
    # Tier state
    # -----------------------------
    async def get_tier_state(self, venue_id: str, patron_id: str) -> Optional[PatronTierState]:
        r = (
            self.sb.table(self.table_tier_state)
            .select("*")
            .eq("venue_id", venue_id)
            .eq("patron_id", patron_id)
            .limit(1)
            .execute()
        )
        row = _first(r)
        return None if row is None else PatronTierState.from_dict(row)

    async def save_tier_state(self, state: PatronTierState) -> None:
        self.sb.table(self.table_tier_state).upsert(state.to_dict(), on_conflict="venue_id,patron_id").execute()

    async def list_live_grants(self) -> List[Tuple[str, str]]:
        rows = self._select_all(
            lambda: self.sb.table(self.table_tier_state).select("venue_id,patron_id").eq("granted_live_only", True),
            # PostgREST takes a column list; the full key keeps pages stable
            "venue_id,patron_id",
        )
        return sorted((str(row["venue_id"]), str(row["patron_id"])) for row in rows)

    # -----------------------------
    # Integrations
    # -----------------------------
    async def get_integration(self, venue_id: str, provider: str) -> Optional[POSIntegration]:
        r = (
            self.sb.table(self.table_integrations)
            .select("*")
            .eq("venue_id", venue_id)
            .eq("provider", provider)
            .limit(1)
            .execute()
        )
        row = _first(r)
        return None if row is None else POSIntegration.from_dict(row, self.cipher)

    async def list_integrations(self, venue_id: Optional[str] = None) -> List[POSIntegration]:
        q = self.sb.table(self.table_integrations).select("*")
        if venue_id is not None:
            q = q.eq("venue_id", venue_id)
        return [POSIntegration.from_dict(row, self.cipher) for row in _rows(q.execute())]

    async def save_integration(self, integration: POSIntegration) -> None:
        self.sb.table(self.table_integrations).upsert(integration.to_dict(self.cipher), on_conflict="venue_id,provider").execute()

    # -----------------------------
    # Patron links / venue settings
    # -----------------------------
    async def resolve_patron(self, venue_id: str, provider: str, customer_ref: str) -> Optional[str]:
        r = (
            self.sb.table(self.table_patron_links)
            .select("patron_id")
            .eq("venue_id", venue_id)
            .eq("provider", provider)
            .eq("customer_ref", customer_ref)
            .limit(1)
            .execute()
        )
        row = _first(r)
        return None if row is None else row.get("patron_id")

    async def link_patron(self, venue_id: str, provider: str, customer_ref: str, patron_id: str) -> None:
        payload = {"venue_id": venue_id, "provider": provider, "customer_ref": customer_ref, "patron_id": patron_id}
        self.sb.table(self.table_patron_links).upsert(payload, on_conflict="venue_id,provider,customer_ref").execute()

    async def get_venue_timezone(self, venue_id: str) -> Optional[str]:
        r = self.sb.table(self.table_venue_settings).select("timezone").eq("venue_id", venue_id).limit(1).execute()
        row = _first(r)
        return None if row is None else row.get("timezone")

    async def set_venue_timezone(self, venue_id: str, timezone: str) -> None:
        payload = {"venue_id": venue_id, "timezone": timezone, "updated_at": to_iso(utcnow())}
        self.sb.table(self.table_venue_settings).upsert(payload, on_conflict="venue_id").execute()
        log.info(f"[REPO] venue {venue_id} timezone set to {timezone}")
