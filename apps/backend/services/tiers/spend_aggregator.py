"""
Spend Aggregator
================

Full recompute of a patron's spend from the ledger. No increments: the
stored aggregate is overwritten with the fold result, so replaying or
re-ordering events always converges to the same numbers.

Lifetime spend never goes below zero (non-punitive).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from apps.backend.services.tiers.models import SpendAggregate, TransactionEvent
from apps.backend.services.tiers.repositories.interfaces import EngineRepository
from apps.backend.services.tiers.transaction_ledger import TransactionLedger
from apps.backend.utils.clock import as_utc, utcnow


@dataclass
class _SpendFold:
    net: int = 0
    window_net: int = 0
    count: int = 0
    last_event_at: Optional[datetime] = None

    def add(self, event: TransactionEvent, window_start: Optional[datetime]) -> None:
        amount = int(event.amount)
        self.net += amount
        self.count += 1
        occurred = as_utc(event.occurred_at)
        if window_start is not None and occurred >= window_start:
            self.window_net += amount
        if self.last_event_at is None or occurred > self.last_event_at:
            self.last_event_at = occurred


class SpendAggregator:
    def __init__(
        self,
        ledger: TransactionLedger,
        repo: EngineRepository,
        *,
        window_days: Optional[int] = None,
    ) -> None:
        self.ledger = ledger
        self.repo = repo
        self.window_days = window_days

    def _window_start(self, now: datetime) -> Optional[datetime]:
        if not self.window_days:
            return None
        return as_utc(now) - timedelta(days=int(self.window_days))

    @staticmethod
    def fold(
        venue_id: str,
        patron_id: str,
        events: Iterable[TransactionEvent],
        *,
        now: Optional[datetime] = None,
        window_start: Optional[datetime] = None,
    ) -> SpendAggregate:
        """
        Pure fold, usable without a repository.
        """
        acc = _SpendFold()
        for event in events:
            acc.add(event, window_start)
        return SpendAggregate(
            venue_id=venue_id,
            patron_id=patron_id,
            lifetime_spend=max(0, acc.net),
            window_spend=None if window_start is None else max(0, acc.window_net),
            last_event_at=acc.last_event_at,
            event_count=acc.count,
            computed_at=now or utcnow(),
        )

    async def recompute(self, venue_id: str, patron_id: str, now: Optional[datetime] = None) -> SpendAggregate:
        now = now or utcnow()
        window_start = self._window_start(now)

        acc = _SpendFold()
        async for event in self.ledger.query(venue_id, patron_id):
            acc.add(event, window_start)

        aggregate = SpendAggregate(
            venue_id=venue_id,
            patron_id=patron_id,
            lifetime_spend=max(0, acc.net),
            window_spend=None if window_start is None else max(0, acc.window_net),
            last_event_at=acc.last_event_at,
            event_count=acc.count,
            computed_at=as_utc(now),
        )
        await self.repo.save_aggregate(aggregate)
        return aggregate
