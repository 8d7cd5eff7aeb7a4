"""
Spend Policy (Canonical)
========================

Single source of truth for venue spend rules.

Key requirements implemented:
- Tiers are ranked: NONE < GUEST < REGULAR < PLATINUM < WHALE.
- A rule maps a spend threshold (minor currency units) to a tier and a
  server access level.
- Live-only rules apply inside a recurring venue-local time window that may
  wrap midnight (e.g. 22:00 -> 02:00).
- Rule sets are immutable snapshots; edits apply to the next evaluation.

Non-goals:
- No DB access (pure domain rules).
- No HTTP / FastAPI logic.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from apps.backend.services.errors import ConfigError
from apps.backend.utils.clock import parse_datetime, to_iso, utcnow, venue_clock


TIER_ORDER: Tuple[str, ...] = ("NONE", "GUEST", "REGULAR", "PLATINUM", "WHALE")
UNLOCKABLE_TIERS: Tuple[str, ...] = TIER_ORDER[1:]
ACCESS_LEVELS: Tuple[str, ...] = ("PUBLIC_LOBBY", "INNER_CIRCLE")

DEFAULT_TIER = "NONE"
DEFAULT_ACCESS_LEVEL = "NONE"

MINUTES_PER_DAY = 24 * 60


def tier_rank(tier: str) -> int:
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        raise ValueError(f"unknown tier: {tier}")


def _parse_hhmm(value: Any) -> int:
    """
    "HH:MM" -> minutes since midnight.
    """
    text = str(value or "").strip()
    parts = text.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"time must be HH:MM, got {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"time out of range: {value!r}")
    return hours * 60 + minutes


@dataclass(frozen=True)
class LiveTimeWindow:
    """
    Recurring daily window in venue-local time. Both ends are inclusive at
    minute resolution. When end < start the window wraps midnight.
    """
    start_time: str
    end_time: str

    def __post_init__(self) -> None:
        _parse_hhmm(self.start_time)
        _parse_hhmm(self.end_time)

    @property
    def wraps_midnight(self) -> bool:
        return _parse_hhmm(self.end_time) < _parse_hhmm(self.start_time)

    def contains(self, moment: time) -> bool:
        current = moment.hour * 60 + moment.minute
        start = _parse_hhmm(self.start_time)
        end = _parse_hhmm(self.end_time)
        if start <= end:
            return start <= current <= end
        # 22:00 -> 02:00 spans two calendar days
        return current >= start or current <= end

    def to_dict(self) -> Dict[str, Any]:
        return {"start_time": self.start_time, "end_time": self.end_time}

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> Optional["LiveTimeWindow"]:
        if not isinstance(data, dict):
            return None
        start = data.get("start_time", data.get("startTime"))
        end = data.get("end_time", data.get("endTime"))
        if not start or not end:
            return None
        return LiveTimeWindow(start_time=str(start).strip(), end_time=str(end).strip())


@dataclass(frozen=True)
class RuleStats:
    times_triggered: int = 0
    last_triggered_at: Optional[datetime] = None
    patrons_unlocked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "times_triggered": int(self.times_triggered),
            "last_triggered_at": to_iso(self.last_triggered_at),
            "patrons_unlocked": int(self.patrons_unlocked),
        }


@dataclass(frozen=True)
class SpendRule:
    """
    Venue-owned configuration: once lifetime spend reaches `threshold`
    (minor units), `tier_unlocked` and `server_access_level` are granted.
    """
    id: str
    venue_id: str
    threshold: int
    tier_unlocked: str
    server_access_level: str
    is_live_only: bool = False
    live_time_window: Optional[LiveTimeWindow] = None
    priority: int = 0
    is_active: bool = True

    description: Optional[str] = None
    performer_id: Optional[str] = None
    stats: RuleStats = field(default_factory=RuleStats)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def rank(self) -> int:
        return tier_rank(self.tier_unlocked)

    def is_live_at(self, local_moment: datetime) -> bool:
        """
        Whether the rule is in effect at a venue-local moment. Non-live rules
        are always in effect.
        """
        if not self.is_live_only:
            return True
        if self.live_time_window is None:
            return False
        return self.live_time_window.contains(local_moment.time())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "venue_id": self.venue_id,
            "threshold": int(self.threshold),
            "tier_unlocked": self.tier_unlocked,
            "server_access_level": self.server_access_level,
            "is_live_only": self.is_live_only,
            "live_time_window": None if self.live_time_window is None else self.live_time_window.to_dict(),
            "priority": int(self.priority),
            "is_active": self.is_active,
            "description": self.description,
            "performer_id": self.performer_id,
            "stats": self.stats.to_dict(),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SpendRule":
        """
        Build a rule from a stored row or API payload. Shape problems surface
        as ConfigError; cross-rule checks live in validate_rule().
        """
        data = data or {}
        try:
            window = LiveTimeWindow.from_dict(data.get("live_time_window"))
        except ValueError as e:
            raise ConfigError(f"invalid live_time_window: {e}")

        stats_in = data.get("stats") if isinstance(data.get("stats"), dict) else {}
        try:
            threshold = int(data.get("threshold"))
            priority = int(data.get("priority") or 0)
        except (TypeError, ValueError):
            raise ConfigError("threshold and priority must be integers")

        return SpendRule(
            id=str(data.get("id") or uuid.uuid4()),
            venue_id=str(data.get("venue_id") or "").strip(),
            threshold=threshold,
            tier_unlocked=str(data.get("tier_unlocked") or "").strip().upper(),
            server_access_level=str(data.get("server_access_level") or "").strip().upper(),
            is_live_only=bool(data.get("is_live_only", False)),
            live_time_window=window,
            priority=priority,
            is_active=bool(data.get("is_active", True)),
            description=data.get("description"),
            performer_id=data.get("performer_id"),
            stats=RuleStats(
                times_triggered=int(stats_in.get("times_triggered") or 0),
                last_triggered_at=parse_datetime(stats_in.get("last_triggered_at")),
                patrons_unlocked=int(stats_in.get("patrons_unlocked") or 0),
            ),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )

    def merged(self, updates: Dict[str, Any]) -> "SpendRule":
        """
        Partial update (PATCH semantics). Identity and stats are preserved.
        """
        base = self.to_dict()
        for key, value in (updates or {}).items():
            if key in ("id", "venue_id", "stats", "created_at"):
                continue
            base[key] = value
        base["updated_at"] = to_iso(utcnow())
        return SpendRule.from_dict(base)


# -----------------------------
# Validation
# -----------------------------
def validate_rule(rule: SpendRule, existing: Iterable[SpendRule] = ()) -> SpendRule:
    """
    Reject malformed or ambiguous rules before they can reach the evaluator.
    """
    if not rule.venue_id:
        raise ConfigError("venue_id is required")
    if rule.threshold <= 0:
        raise ConfigError("threshold must be greater than 0")
    if rule.tier_unlocked not in UNLOCKABLE_TIERS:
        raise ConfigError(f"invalid tier. Must be one of {', '.join(UNLOCKABLE_TIERS)}")
    if rule.server_access_level not in ACCESS_LEVELS:
        raise ConfigError(f"invalid access level. Must be one of {', '.join(ACCESS_LEVELS)}")

    if rule.is_live_only:
        window = rule.live_time_window
        if window is None:
            raise ConfigError("live-only rules require live_time_window with start_time and end_time")
        if _parse_hhmm(window.start_time) == _parse_hhmm(window.end_time):
            raise ConfigError("live_time_window start_time and end_time must differ")

    if rule.is_active:
        for other in existing:
            if other.id == rule.id or not other.is_active or other.venue_id != rule.venue_id:
                continue
            if (
                other.threshold == rule.threshold
                and other.tier_unlocked == rule.tier_unlocked
                and other.priority == rule.priority
                and other.is_live_only == rule.is_live_only
            ):
                raise ConfigError(
                    "an active rule with the same threshold, tier and priority already exists",
                    details={"conflicting_rule_id": other.id},
                )
    return rule


# -----------------------------
# Rule set snapshot
# -----------------------------
def rule_sort_key(rule: SpendRule) -> Tuple[int, int, int, str]:
    """
    Winner first: highest tier, then highest priority, then the lowest
    threshold, then the lowest id as the tie-break of last resort.
    """
    return (-rule.rank, -int(rule.priority), int(rule.threshold), rule.id)


@dataclass(frozen=True)
class VenueRuleSet:
    venue_id: str
    timezone: str
    rules: Tuple[SpendRule, ...] = ()

    @property
    def active_rules(self) -> List[SpendRule]:
        return [r for r in self.rules if r.is_active]

    def local_time(self, now: datetime) -> datetime:
        return venue_clock(now, self.timezone)

    def with_rule(self, rule: SpendRule) -> "VenueRuleSet":
        others = tuple(r for r in self.rules if r.id != rule.id)
        return replace(self, rules=others + (rule,))
