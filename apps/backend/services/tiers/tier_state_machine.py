"""
Tier State Machine (Canonical)
==============================

Purpose:
- Turn "the rule that matches right now" into persisted patron tier state.
- Monotonic for permanent (non-live) grants: spend reversals never take a
  permanent tier away. Only an explicit admin reset does.
- Live-only grants regress once their window has closed, falling back to
  the best of the current match and the permanent floor.

Transitions:
- UPGRADED:    matched rule outranks the current tier.
- REANCHORED:  same tier, but the holding grant moves from a live rule to a
               permanent one (or to another open live rule). No event.
- DOWNGRADED:  live grant expired and nothing at its rank still matches.
- UNCHANGED:   everything else.
- RESET:       admin reset to NONE.

transition() is pure. apply() persists and publishes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from apps.backend.services.tiers.events import EventPublisher, TierDowngraded, TierUpgraded
from apps.backend.services.tiers.models import PatronTierState
from apps.backend.services.tiers.repositories.interfaces import EngineRepository
from apps.backend.services.tiers.spend_policy import (
    DEFAULT_ACCESS_LEVEL,
    DEFAULT_TIER,
    SpendRule,
    tier_rank,
)
from apps.backend.utils.clock import as_utc, utcnow, venue_clock

log = logging.getLogger("nightlife.tiers")

TransitionKind = Literal["UPGRADED", "DOWNGRADED", "REANCHORED", "UNCHANGED", "RESET"]


@dataclass(frozen=True)
class TierTransition:
    kind: TransitionKind
    previous: PatronTierState
    state: PatronTierState
    rule: Optional[SpendRule] = None

    @property
    def changed_tier(self) -> bool:
        return self.previous.current_tier != self.state.current_tier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "from_tier": self.previous.current_tier,
            "to_tier": self.state.current_tier,
            "rule_id": None if self.rule is None else self.rule.id,
            "state": self.state.to_dict(),
        }


def _grant(state: PatronTierState, rule: SpendRule, now: datetime, *, stamp: bool) -> PatronTierState:
    seen = state.unlocked_rule_ids
    if rule.id is not None and rule.id not in seen:
        seen = seen + (rule.id,)
    return replace(
        state,
        current_tier=rule.tier_unlocked,
        current_access_level=rule.server_access_level,
        unlocked_by_rule_id=rule.id,
        unlocked_at=now if stamp else state.unlocked_at,
        granted_live_only=rule.is_live_only,
        granted_window=rule.live_time_window if rule.is_live_only else None,
        unlocked_rule_ids=seen,
    )


def _fall_to_floor(state: PatronTierState, now: datetime) -> PatronTierState:
    return replace(
        state,
        current_tier=state.base_tier,
        current_access_level=state.base_access_level,
        unlocked_by_rule_id=state.base_rule_id,
        unlocked_at=state.base_unlocked_at if state.base_rule_id else now,
        granted_live_only=False,
        granted_window=None,
    )


def live_grant_closed(state: PatronTierState, local_now: datetime) -> bool:
    if not state.granted_live_only:
        return False
    if state.granted_window is None:
        return True
    return not state.granted_window.contains(local_now.time())


def transition(
    state: PatronTierState,
    matched: Optional[SpendRule],
    *,
    now: datetime,
    local_now: datetime,
) -> TierTransition:
    """
    Pure transition. `now` is stamped on the state; `local_now` is the same
    instant in venue-local time and is only used for window checks.
    """
    previous = state
    state = replace(state, last_evaluated_at=now)

    # The permanent floor only ever rises.
    if matched is not None and not matched.is_live_only and matched.rank > tier_rank(state.base_tier):
        state = replace(
            state,
            base_tier=matched.tier_unlocked,
            base_access_level=matched.server_access_level,
            base_rule_id=matched.id,
            base_unlocked_at=now,
        )

    current_rank = tier_rank(state.current_tier)
    closed = live_grant_closed(state, local_now)

    if matched is not None and matched.rank > current_rank:
        return TierTransition("UPGRADED", previous, _grant(state, matched, now, stamp=True), matched)

    if (
        matched is not None
        and state.granted_live_only
        and matched.rank == current_rank
        and (not matched.is_live_only or closed)
        and matched.id != state.unlocked_by_rule_id
    ):
        return TierTransition("REANCHORED", previous, _grant(state, matched, now, stamp=False), matched)

    if closed and (matched is None or matched.rank < current_rank):
        floor_rank = tier_rank(state.base_tier)
        if matched is not None and matched.rank >= floor_rank:
            fallen = _grant(state, matched, now, stamp=True)
        else:
            fallen = _fall_to_floor(state, now)
        return TierTransition("DOWNGRADED", previous, fallen, matched)

    return TierTransition("UNCHANGED", previous, state, matched)


class TierStateMachine:
    def __init__(
        self,
        repo: EngineRepository,
        publisher: EventPublisher,
        *,
        default_timezone: str = "UTC",
    ) -> None:
        self.repo = repo
        self.publisher = publisher
        self.default_timezone = default_timezone

    async def load_state(self, venue_id: str, patron_id: str) -> PatronTierState:
        state = await self.repo.get_tier_state(venue_id, patron_id)
        return state or PatronTierState.initial(venue_id, patron_id)

    async def apply(
        self,
        venue_id: str,
        patron_id: str,
        matched: Optional[SpendRule],
        now: Optional[datetime] = None,
    ) -> TierTransition:
        """
        Callers serialize apply() per (venue_id, patron_id).
        """
        now = now or utcnow()
        tz = await self.repo.venue_timezone(venue_id, self.default_timezone)
        local_now = venue_clock(now, tz)

        current = await self.load_state(venue_id, patron_id)
        result = transition(current, matched, now=as_utc(local_now), local_now=local_now)
        await self.repo.save_tier_state(result.state)

        if result.kind == "UPGRADED" and result.rule is not None:
            # a live rule re-granted on a later night is not a new patron
            first_time = result.rule.id not in (
                *current.unlocked_rule_ids, current.unlocked_by_rule_id, current.base_rule_id
            )
            await self.repo.record_rule_trigger(venue_id, result.rule.id, new_patron=first_time)
            log.info(
                f"[TIERS] upgrade venue={venue_id} patron={patron_id} "
                f"{current.current_tier} -> {result.state.current_tier} rule={result.rule.id}"
            )
            await self.publisher.publish(
                TierUpgraded(
                    venue_id=venue_id,
                    patron_id=patron_id,
                    from_tier=current.current_tier,
                    to_tier=result.state.current_tier,
                    access_level=result.state.current_access_level,
                    rule_id=result.rule.id,
                    live_only=result.rule.is_live_only,
                    occurred_at=as_utc(local_now),
                )
            )
        elif result.kind == "DOWNGRADED":
            log.info(
                f"[TIERS] live window closed venue={venue_id} patron={patron_id} "
                f"{current.current_tier} -> {result.state.current_tier}"
            )
            await self.publisher.publish(
                TierDowngraded(
                    venue_id=venue_id,
                    patron_id=patron_id,
                    from_tier=current.current_tier,
                    to_tier=result.state.current_tier,
                    access_level=result.state.current_access_level,
                    reason="LIVE_WINDOW_CLOSED",
                    occurred_at=as_utc(local_now),
                )
            )
        return result

    async def reset(self, venue_id: str, patron_id: str, now: Optional[datetime] = None) -> TierTransition:
        """
        Administrative reset to NONE, floor included.
        """
        now = as_utc(now or utcnow())
        current = await self.load_state(venue_id, patron_id)
        cleared = replace(
            PatronTierState.initial(venue_id, patron_id),
            last_evaluated_at=now,
            unlocked_rule_ids=current.unlocked_rule_ids,
        )
        await self.repo.save_tier_state(cleared)

        log.warning(f"[TIERS] admin reset venue={venue_id} patron={patron_id} from {current.current_tier}")
        await self.publisher.publish(
            TierDowngraded(
                venue_id=venue_id,
                patron_id=patron_id,
                from_tier=current.current_tier,
                to_tier=DEFAULT_TIER,
                access_level=DEFAULT_ACCESS_LEVEL,
                reason="ADMIN_RESET",
                occurred_at=now,
            )
        )
        return TierTransition("RESET", current, cleared, None)
