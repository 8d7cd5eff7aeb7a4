"""
Engine Records (Canonical)
==========================

Immutable records shared by the ledger, aggregator and tier state machine.

- TransactionEvent: one POS sale or reversal, never mutated once stored.
- SpendAggregate: materialized view over a patron's ledger slice.
- PatronTierState: what a patron currently holds at a venue.

Amounts are integers in minor currency units (cents).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Tuple

from apps.backend.services.tiers.spend_policy import (
    DEFAULT_ACCESS_LEVEL,
    DEFAULT_TIER,
    LiveTimeWindow,
)
from apps.backend.utils.clock import parse_datetime, to_iso, utcnow


SourceProvider = Literal["TOAST", "SQUARE"]
PROVIDERS = ("TOAST", "SQUARE")

# meta key: the reversal states how much of the original is reversed in total
# so far; the ledger stores only the part not yet reversed.
REFUND_RUNNING_TOTAL = "refund_running_total"


@dataclass(frozen=True)
class TransactionEvent:
    """
    amount:
        + positive => sale
        + negative => reversal of `reversal_of` (refund / void)
    """
    external_id: str
    venue_id: str
    amount: int
    occurred_at: datetime
    source_provider: SourceProvider
    patron_id: Optional[str] = None  # None => anonymous
    received_at: datetime = field(default_factory=utcnow)
    reversal_of: Optional[str] = None

    customer_ref: Optional[str] = None
    currency: str = "USD"
    seq: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of is not None

    @property
    def dedup_key(self) -> tuple:
        return (self.venue_id, self.source_provider, self.external_id)

    def with_patron(self, patron_id: Optional[str]) -> "TransactionEvent":
        return replace(self, patron_id=patron_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "venue_id": self.venue_id,
            "patron_id": self.patron_id,
            "amount": int(self.amount),
            "occurred_at": to_iso(self.occurred_at),
            "received_at": to_iso(self.received_at),
            "source_provider": self.source_provider,
            "reversal_of": self.reversal_of,
            "customer_ref": self.customer_ref,
            "currency": self.currency,
            "seq": self.seq,
            "meta": self.meta or {},
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TransactionEvent":
        return TransactionEvent(
            external_id=str(data["external_id"]),
            venue_id=str(data["venue_id"]),
            amount=int(data["amount"]),
            occurred_at=parse_datetime(data["occurred_at"]),
            source_provider=str(data["source_provider"]).upper(),
            patron_id=data.get("patron_id"),
            received_at=parse_datetime(data.get("received_at")) or utcnow(),
            reversal_of=data.get("reversal_of"),
            customer_ref=data.get("customer_ref"),
            currency=str(data.get("currency") or "USD"),
            seq=None if data.get("seq") is None else int(data["seq"]),
            meta=data.get("meta") or {},
        )


@dataclass(frozen=True)
class SpendAggregate:
    venue_id: str
    patron_id: str
    lifetime_spend: int = 0
    window_spend: Optional[int] = None
    last_event_at: Optional[datetime] = None
    event_count: int = 0
    computed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue_id": self.venue_id,
            "patron_id": self.patron_id,
            "lifetime_spend": int(self.lifetime_spend),
            "window_spend": None if self.window_spend is None else int(self.window_spend),
            "last_event_at": to_iso(self.last_event_at),
            "event_count": int(self.event_count),
            "computed_at": to_iso(self.computed_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SpendAggregate":
        window = data.get("window_spend")
        return SpendAggregate(
            venue_id=str(data["venue_id"]),
            patron_id=str(data["patron_id"]),
            lifetime_spend=int(data.get("lifetime_spend") or 0),
            window_spend=None if window is None else int(window),
            last_event_at=parse_datetime(data.get("last_event_at")),
            event_count=int(data.get("event_count") or 0),
            computed_at=parse_datetime(data.get("computed_at")),
        )


@dataclass(frozen=True)
class PatronTierState:
    """
    Current grant plus the permanent floor.

    base_*: the highest tier unlocked by a non-live rule. A closed live
    window never drops the patron below it.
    """
    venue_id: str
    patron_id: str
    current_tier: str = DEFAULT_TIER
    current_access_level: str = DEFAULT_ACCESS_LEVEL
    unlocked_by_rule_id: Optional[str] = None
    unlocked_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None

    granted_live_only: bool = False
    granted_window: Optional[LiveTimeWindow] = None

    base_tier: str = DEFAULT_TIER
    base_access_level: str = DEFAULT_ACCESS_LEVEL
    base_rule_id: Optional[str] = None
    base_unlocked_at: Optional[datetime] = None

    # every rule that has ever granted this patron a tier; survives resets
    unlocked_rule_ids: Tuple[str, ...] = ()

    @staticmethod
    def initial(venue_id: str, patron_id: str) -> "PatronTierState":
        return PatronTierState(venue_id=venue_id, patron_id=patron_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue_id": self.venue_id,
            "patron_id": self.patron_id,
            "current_tier": self.current_tier,
            "current_access_level": self.current_access_level,
            "unlocked_by_rule_id": self.unlocked_by_rule_id,
            "unlocked_at": to_iso(self.unlocked_at),
            "last_evaluated_at": to_iso(self.last_evaluated_at),
            "granted_live_only": self.granted_live_only,
            "granted_window": None if self.granted_window is None else self.granted_window.to_dict(),
            "base_tier": self.base_tier,
            "base_access_level": self.base_access_level,
            "base_rule_id": self.base_rule_id,
            "base_unlocked_at": to_iso(self.base_unlocked_at),
            "unlocked_rule_ids": list(self.unlocked_rule_ids),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PatronTierState":
        return PatronTierState(
            venue_id=str(data["venue_id"]),
            patron_id=str(data["patron_id"]),
            current_tier=str(data.get("current_tier") or DEFAULT_TIER),
            current_access_level=str(data.get("current_access_level") or DEFAULT_ACCESS_LEVEL),
            unlocked_by_rule_id=data.get("unlocked_by_rule_id"),
            unlocked_at=parse_datetime(data.get("unlocked_at")),
            last_evaluated_at=parse_datetime(data.get("last_evaluated_at")),
            granted_live_only=bool(data.get("granted_live_only", False)),
            granted_window=LiveTimeWindow.from_dict(data.get("granted_window")),
            base_tier=str(data.get("base_tier") or DEFAULT_TIER),
            base_access_level=str(data.get("base_access_level") or DEFAULT_ACCESS_LEVEL),
            base_rule_id=data.get("base_rule_id"),
            base_unlocked_at=parse_datetime(data.get("base_unlocked_at")),
            unlocked_rule_ids=tuple(str(r) for r in data.get("unlocked_rule_ids") or ()),
        )
