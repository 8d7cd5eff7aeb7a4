"""
Engine Repository contract
==========================

Everything the engine persists goes through this interface. Two adapters:
- SupabaseEngineRepository (production)
- InMemoryEngineRepository (tests / local dev)

Methods are async so the services never care which adapter is wired in.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from apps.backend.services.sync.integration import POSIntegration
from apps.backend.services.tiers.models import PatronTierState, SpendAggregate, TransactionEvent
from apps.backend.services.tiers.spend_policy import SpendRule

EventKind = Literal["sale", "reversal"]


class EngineRepository(ABC):
    # -----------------------------
    # Ledger
    # -----------------------------
    @abstractmethod
    async def insert_event(self, event: TransactionEvent) -> Optional[TransactionEvent]:
        """
        Insert unless (venue_id, source_provider, external_id) already exists.
        Returns the stored event with its assigned seq, or None on duplicate.
        """

    @abstractmethod
    async def get_event(self, venue_id: str, source_provider: str, external_id: str) -> Optional[TransactionEvent]:
        ...

    @abstractmethod
    async def sum_reversals(self, venue_id: str, source_provider: str, original_external_id: str) -> int:
        """Sum of absolute amounts already reversed against an original event."""

    @abstractmethod
    async def list_patron_events(
        self, venue_id: str, patron_id: str, *, after_seq: Optional[int] = None, limit: int = 500
    ) -> List[TransactionEvent]:
        """Ordered by seq ascending."""

    @abstractmethod
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
        """
        Newest first. Returns (page, total). since/until bound occurred_at,
        both inclusive.
        """

    @abstractmethod
    async def venue_revenue(self, venue_id: str, provider: Optional[str] = None) -> Tuple[int, int]:
        """(sale count, net revenue) for a venue."""

    @abstractmethod
    async def list_venue_patrons(self, venue_id: str) -> List[str]:
        ...

    # -----------------------------
    # Aggregates
    # -----------------------------
    @abstractmethod
    async def save_aggregate(self, aggregate: SpendAggregate) -> None:
        ...

    @abstractmethod
    async def get_aggregate(self, venue_id: str, patron_id: str) -> Optional[SpendAggregate]:
        ...

    # -----------------------------
    # Spend rules
    # -----------------------------
    @abstractmethod
    async def list_rules(self, venue_id: str) -> List[SpendRule]:
        ...

    @abstractmethod
    async def get_rule(self, venue_id: str, rule_id: str) -> Optional[SpendRule]:
        ...

    @abstractmethod
    async def save_rule(self, rule: SpendRule) -> SpendRule:
        ...

    @abstractmethod
    async def delete_rule(self, venue_id: str, rule_id: str) -> bool:
        ...

    @abstractmethod
    async def record_rule_trigger(self, venue_id: str, rule_id: str, *, new_patron: bool) -> None:
        """Bump times_triggered / last_triggered_at (and patrons_unlocked)."""

    # -----------------------------
    # Tier state
    # -----------------------------
    @abstractmethod
    async def get_tier_state(self, venue_id: str, patron_id: str) -> Optional[PatronTierState]:
        ...

    @abstractmethod
    async def save_tier_state(self, state: PatronTierState) -> None:
        ...

    @abstractmethod
    async def list_live_grants(self) -> List[Tuple[str, str]]:
        """(venue_id, patron_id) of every patron currently holding a live-only grant."""

    # -----------------------------
    # Integrations
    # -----------------------------
    @abstractmethod
    async def get_integration(self, venue_id: str, provider: str) -> Optional[POSIntegration]:
        ...

    @abstractmethod
    async def list_integrations(self, venue_id: Optional[str] = None) -> List[POSIntegration]:
        ...

    @abstractmethod
    async def save_integration(self, integration: POSIntegration) -> None:
        ...

    # -----------------------------
    # Patron links / venue settings
    # -----------------------------
    @abstractmethod
    async def resolve_patron(self, venue_id: str, provider: str, customer_ref: str) -> Optional[str]:
        ...

    @abstractmethod
    async def link_patron(self, venue_id: str, provider: str, customer_ref: str, patron_id: str) -> None:
        ...

    @abstractmethod
    async def get_venue_timezone(self, venue_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_venue_timezone(self, venue_id: str, timezone: str) -> None:
        ...

    async def venue_timezone(self, venue_id: str, default: str) -> str:
        return (await self.get_venue_timezone(venue_id)) or default
