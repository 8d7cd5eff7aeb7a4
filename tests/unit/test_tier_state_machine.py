"""Tests for tier transitions: monotonic permanent grants, expiring live grants."""

from __future__ import annotations

from datetime import datetime

import pytest

from apps.backend.services.tiers.events import TierDowngraded, TierUpgraded
from apps.backend.services.tiers.models import PatronTierState
from apps.backend.services.tiers.spend_policy import LiveTimeWindow, SpendRule
from apps.backend.services.tiers.tier_state_machine import TierStateMachine, transition

LATE_NIGHT = datetime(2025, 6, 1, 23, 30)
NOON = datetime(2025, 6, 2, 12, 0)

REGULAR = SpendRule(
    id="regular", venue_id="venue-1", threshold=5_000, tier_unlocked="REGULAR", server_access_level="PUBLIC_LOBBY"
)
GUEST = SpendRule(
    id="guest", venue_id="venue-1", threshold=1_000, tier_unlocked="GUEST", server_access_level="PUBLIC_LOBBY"
)
PLATINUM_LIVE = SpendRule(
    id="platinum-live",
    venue_id="venue-1",
    threshold=10_000,
    tier_unlocked="PLATINUM",
    server_access_level="INNER_CIRCLE",
    is_live_only=True,
    live_time_window=LiveTimeWindow("22:00", "02:00"),
)
PLATINUM = SpendRule(
    id="platinum", venue_id="venue-1", threshold=25_000, tier_unlocked="PLATINUM", server_access_level="INNER_CIRCLE"
)


def step(state, matched, at):
    return transition(state, matched, now=at, local_now=at)


def fresh() -> PatronTierState:
    return PatronTierState.initial("venue-1", "patron-1")


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


class TestTransition:
    def test_first_permanent_unlock_raises_floor(self) -> None:
        result = step(fresh(), REGULAR, NOON)
        assert result.kind == "UPGRADED"
        assert result.state.current_tier == "REGULAR"
        assert result.state.base_tier == "REGULAR"
        assert result.state.unlocked_at == NOON
        assert result.state.last_evaluated_at == NOON

    def test_no_match_leaves_new_patron_at_none(self) -> None:
        result = step(fresh(), None, NOON)
        assert result.kind == "UNCHANGED"
        assert result.state.current_tier == "NONE"

    @pytest.mark.parametrize("matched", [None, GUEST])
    def test_permanent_tier_never_drops(self, matched) -> None:
        held = step(fresh(), REGULAR, NOON).state
        result = step(held, matched, LATE_NIGHT)
        assert result.kind == "UNCHANGED"
        assert result.state.current_tier == "REGULAR"
        assert not result.changed_tier

    def test_live_upgrade_keeps_permanent_floor(self) -> None:
        held = step(fresh(), REGULAR, NOON).state
        result = step(held, PLATINUM_LIVE, LATE_NIGHT)
        assert result.kind == "UPGRADED"
        assert result.state.current_tier == "PLATINUM"
        assert result.state.current_access_level == "INNER_CIRCLE"
        assert result.state.granted_live_only
        assert result.state.base_tier == "REGULAR"

    def test_live_grant_holds_while_window_open(self) -> None:
        live = step(step(fresh(), REGULAR, NOON).state, PLATINUM_LIVE, LATE_NIGHT).state
        result = step(live, REGULAR, datetime(2025, 6, 2, 1, 59))
        assert result.kind == "UNCHANGED"
        assert result.state.current_tier == "PLATINUM"

    def test_closed_window_falls_back_to_current_match(self) -> None:
        live = step(step(fresh(), REGULAR, NOON).state, PLATINUM_LIVE, LATE_NIGHT).state
        result = step(live, REGULAR, NOON)
        assert result.kind == "DOWNGRADED"
        assert result.state.current_tier == "REGULAR"
        assert result.state.current_access_level == "PUBLIC_LOBBY"
        assert not result.state.granted_live_only

    def test_closed_window_without_match_falls_to_floor(self) -> None:
        live = step(step(fresh(), REGULAR, NOON).state, PLATINUM_LIVE, LATE_NIGHT).state
        result = step(live, None, NOON)
        assert result.kind == "DOWNGRADED"
        assert result.state.current_tier == "REGULAR"
        assert result.state.unlocked_by_rule_id == "regular"

    def test_closed_window_with_no_floor_falls_to_none(self) -> None:
        live = step(fresh(), PLATINUM_LIVE, LATE_NIGHT).state
        result = step(live, None, NOON)
        assert result.kind == "DOWNGRADED"
        assert result.state.current_tier == "NONE"
        assert result.state.current_access_level == "NONE"

    def test_match_below_floor_still_falls_to_floor(self) -> None:
        live = step(step(fresh(), REGULAR, NOON).state, PLATINUM_LIVE, LATE_NIGHT).state
        result = step(live, GUEST, NOON)
        assert result.state.current_tier == "REGULAR"

    def test_permanent_rule_at_same_rank_reanchors_live_grant(self) -> None:
        live = step(step(fresh(), REGULAR, NOON).state, PLATINUM_LIVE, LATE_NIGHT).state
        result = step(live, PLATINUM, LATE_NIGHT)
        assert result.kind == "REANCHORED"
        assert result.state.current_tier == "PLATINUM"
        assert result.state.unlocked_by_rule_id == "platinum"
        assert not result.state.granted_live_only
        assert result.state.base_tier == "PLATINUM"

        # Once anchored to a permanent rule the window no longer matters
        later = step(result.state, None, NOON)
        assert later.kind == "UNCHANGED"
        assert later.state.current_tier == "PLATINUM"


# ---------------------------------------------------------------------------
# Persisting machine
# ---------------------------------------------------------------------------


@pytest.fixture
def machine(repo, publisher) -> TierStateMachine:
    return TierStateMachine(repo, publisher)


class TestTierStateMachine:
    async def test_upgrade_persists_records_trigger_and_publishes(self, machine, repo, published) -> None:
        await repo.save_rule(REGULAR)

        result = await machine.apply("venue-1", "patron-1", REGULAR, NOON)

        assert result.kind == "UPGRADED"
        stored = await repo.get_tier_state("venue-1", "patron-1")
        assert stored.current_tier == "REGULAR"
        rule = await repo.get_rule("venue-1", "regular")
        assert rule.stats.times_triggered == 1
        assert rule.stats.patrons_unlocked == 1
        assert len(published) == 1
        event = published[0]
        assert isinstance(event, TierUpgraded)
        assert (event.from_tier, event.to_tier, event.rule_id) == ("NONE", "REGULAR", "regular")

    async def test_unchanged_still_stamps_evaluation_without_events(self, machine, repo, published) -> None:
        await machine.apply("venue-1", "patron-1", REGULAR, NOON)
        published.clear()

        result = await machine.apply("venue-1", "patron-1", REGULAR, LATE_NIGHT)

        assert result.kind == "UNCHANGED"
        assert published == []
        stored = await repo.get_tier_state("venue-1", "patron-1")
        assert stored.last_evaluated_at.replace(tzinfo=None) == LATE_NIGHT

    async def test_window_close_publishes_downgrade(self, machine, published) -> None:
        await machine.apply("venue-1", "patron-1", REGULAR, NOON)
        await machine.apply("venue-1", "patron-1", PLATINUM_LIVE, LATE_NIGHT)
        published.clear()

        result = await machine.apply("venue-1", "patron-1", REGULAR, datetime(2025, 6, 2, 12, 0))

        assert result.kind == "DOWNGRADED"
        assert len(published) == 1
        event = published[0]
        assert isinstance(event, TierDowngraded)
        assert event.reason == "LIVE_WINDOW_CLOSED"
        assert (event.from_tier, event.to_tier) == ("PLATINUM", "REGULAR")

    async def test_admin_reset_clears_floor(self, machine, repo, published) -> None:
        await machine.apply("venue-1", "patron-1", REGULAR, NOON)
        published.clear()

        result = await machine.reset("venue-1", "patron-1")

        assert result.kind == "RESET"
        stored = await repo.get_tier_state("venue-1", "patron-1")
        assert stored.current_tier == "NONE"
        assert stored.base_tier == "NONE"
        assert published[0].reason == "ADMIN_RESET"
        assert published[0].from_tier == "REGULAR"

    async def test_failing_subscriber_does_not_break_apply(self, machine, publisher, repo) -> None:
        async def broken(event) -> None:
            raise RuntimeError("downstream offline")

        publisher.subscribe(broken)
        result = await machine.apply("venue-1", "patron-1", REGULAR, NOON)

        assert result.kind == "UPGRADED"
        assert (await repo.get_tier_state("venue-1", "patron-1")).current_tier == "REGULAR"
