"""
Transaction Ledger (Canonical)
==============================

Purpose:
- Append-only record of POS transactions. Source of truth for spend.
- Idempotent: (venue_id, source_provider, external_id) is unique; a second
  append of the same key is a DUPLICATE no-op.
- Reversals (refunds/voids) are negative events pointing at the original.
  A reversal carrying a running total (REFUND_RUNNING_TOTAL) is stored as
  the part of that total not yet reversed; a total already covered is a
  DUPLICATE.

Design:
- Events are never mutated. Aggregates are derived from them.
- query() streams a patron's slice page by page, ordered by seq, and can be
  restarted from any seq.

Notes:
- The ledger does not resolve patrons from vendor customer refs; the sync
  orchestrator does that before appending.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Tuple

from apps.backend.services.errors import ValidationError
from apps.backend.services.tiers.models import PROVIDERS, REFUND_RUNNING_TOTAL, TransactionEvent
from apps.backend.services.tiers.repositories.interfaces import EngineRepository, EventKind
from apps.backend.utils.clock import as_utc

log = logging.getLogger("nightlife.ledger")

RejectReason = Literal["DUPLICATE", "INVALID"]

PERIODS = ("day", "week", "month")


def _period_key(moment: datetime, period: str) -> str:
    if period == "month":
        return moment.strftime("%Y-%m")
    if period == "week":
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    return moment.strftime("%Y-%m-%d")


@dataclass(frozen=True)
class AppendResult:
    accepted: bool
    reason: Optional[RejectReason] = None
    event: Optional[TransactionEvent] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "event": None if self.event is None else self.event.to_dict(),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class VenueStats:
    transaction_count: int
    total_revenue: int
    average_transaction: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_count": self.transaction_count,
            "total_revenue": self.total_revenue,
            "average_transaction": self.average_transaction,
        }


class TransactionLedger:
    def __init__(self, repo: EngineRepository, *, page_size: int = 500) -> None:
        self.repo = repo
        self.page_size = max(1, int(page_size))

    # -----------------------------
    # Validation
    # -----------------------------
    def validate_shape(self, event: TransactionEvent) -> None:
        """
        Checks that need no storage access.
        """
        if not event.external_id:
            raise ValidationError("external_id is required")
        if not event.venue_id:
            raise ValidationError("venue_id is required")
        if event.source_provider not in PROVIDERS:
            raise ValidationError(f"unknown source_provider: {event.source_provider}")
        if event.occurred_at is None:
            raise ValidationError("occurred_at is required")
        if not isinstance(event.amount, int) or isinstance(event.amount, bool):
            raise ValidationError("amount must be an integer in minor units")

        if event.reversal_of is None:
            if event.amount <= 0:
                raise ValidationError("amount must be positive unless the event is a reversal")
        else:
            if event.amount >= 0:
                raise ValidationError("reversal amount must be negative")
            if event.reversal_of == event.external_id:
                raise ValidationError("an event cannot reverse itself")

    async def _prepare_reversal(self, event: TransactionEvent) -> Optional[TransactionEvent]:
        """
        None when a running-total reversal is already covered.
        """
        original = await self.repo.get_event(event.venue_id, event.source_provider, event.reversal_of)
        if original is None:
            raise ValidationError(
                "reversal_of does not reference a known event",
                details={"reversal_of": event.reversal_of},
            )
        if original.is_reversal:
            raise ValidationError("cannot reverse a reversal")

        already = await self.repo.sum_reversals(event.venue_id, event.source_provider, original.external_id)
        running_total = (event.meta or {}).get(REFUND_RUNNING_TOTAL)
        if running_total is not None:
            delta = int(running_total) - int(already)
            if delta <= 0:
                return None
            event = replace(event, amount=-delta)

        remaining = int(original.amount) - int(already)
        if abs(event.amount) > remaining:
            raise ValidationError(
                "reversal exceeds the remaining amount of the original event",
                details={"original_amount": original.amount, "already_reversed": already},
            )

        # Refund payloads often omit the customer
        if event.patron_id is None and original.patron_id is not None:
            return event.with_patron(original.patron_id)
        return event

    # -----------------------------
    # Append
    # -----------------------------
    async def append(self, event: TransactionEvent) -> AppendResult:
        existing = await self.repo.get_event(event.venue_id, event.source_provider, event.external_id)
        if existing is not None:
            return AppendResult(accepted=False, reason="DUPLICATE", event=existing)

        try:
            self.validate_shape(event)
            prepared = await self._prepare_reversal(event) if event.is_reversal else event
        except ValidationError as e:
            log.warning(f"[LEDGER] rejected {event.source_provider}:{event.external_id} venue={event.venue_id}: {e.message}")
            return AppendResult(accepted=False, reason="INVALID", event=event, detail=e.message)
        if prepared is None:
            return AppendResult(accepted=False, reason="DUPLICATE", event=event)
        event = prepared

        stored = await self.repo.insert_event(event)
        if stored is None:
            # Lost a race with a concurrent append of the same key
            return AppendResult(accepted=False, reason="DUPLICATE", event=event)
        return AppendResult(accepted=True, event=stored)

    # -----------------------------
    # Query
    # -----------------------------
    async def query(
        self, venue_id: str, patron_id: str, since_seq: Optional[int] = None
    ) -> AsyncIterator[TransactionEvent]:
        """
        Lazily yields the patron's events in ledger order, strictly after
        `since_seq` when given.
        """
        cursor = since_seq
        while True:
            page = await self.repo.list_patron_events(venue_id, patron_id, after_seq=cursor, limit=self.page_size)
            for event in page:
                yield event
            if len(page) < self.page_size:
                return
            cursor = page[-1].seq

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
        if since is not None and until is not None and as_utc(since) > as_utc(until):
            raise ValidationError("start_date must not be after end_date")
        return await self.repo.list_venue_events(
            venue_id, limit=limit, offset=offset, provider=provider, since=since, until=until, kind=kind
        )

    async def revenue_by_period(
        self,
        venue_id: str,
        *,
        since: datetime,
        period: str = "day",
        provider: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Net revenue bucketed by day | week | month (UTC), oldest first.
        """
        if period not in PERIODS:
            raise ValidationError(f"period must be one of {', '.join(PERIODS)}")
        since = as_utc(since)

        buckets: Dict[str, Dict[str, Any]] = {}
        offset = 0
        while True:
            page, _ = await self.repo.list_venue_events(
                venue_id, limit=self.page_size, offset=offset, provider=provider, since=since
            )
            for event in page:
                occurred = as_utc(event.occurred_at)
                if occurred < since:
                    continue
                key = _period_key(occurred, period)
                bucket = buckets.setdefault(key, {"period": key, "revenue": 0, "transaction_count": 0})
                bucket["revenue"] += int(event.amount)
                if not event.is_reversal:
                    bucket["transaction_count"] += 1
            # newest first: once a page ends before `since`, the rest is older
            if len(page) < self.page_size or as_utc(page[-1].occurred_at) < since:
                break
            offset += self.page_size
        return [buckets[k] for k in sorted(buckets)]

    async def venue_stats(self, venue_id: str, provider: Optional[str] = None) -> VenueStats:
        count, total = await self.repo.venue_revenue(venue_id, provider)
        average = int(round(total / count)) if count else 0
        return VenueStats(transaction_count=count, total_revenue=total, average_transaction=average)
