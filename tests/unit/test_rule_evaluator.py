"""Tests for deterministic rule selection and explanations."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from apps.backend.services.tiers.models import SpendAggregate
from apps.backend.services.tiers.rule_evaluator import RuleEvaluator, select_rule
from apps.backend.services.tiers.spend_policy import LiveTimeWindow, SpendRule, VenueRuleSet

LATE_NIGHT = datetime(2025, 6, 1, 23, 30)
EARLY_MORNING = datetime(2025, 6, 2, 1, 30)
NOON = datetime(2025, 6, 2, 12, 0)


def make_rule(rule_id: str, threshold: int, tier: str, **kw) -> SpendRule:
    return SpendRule(
        id=rule_id,
        venue_id="venue-1",
        threshold=threshold,
        tier_unlocked=tier,
        server_access_level=kw.pop("access", "PUBLIC_LOBBY"),
        **kw,
    )


def live_rule(rule_id: str, threshold: int, tier: str, **kw) -> SpendRule:
    return make_rule(
        rule_id,
        threshold,
        tier,
        access="INNER_CIRCLE",
        is_live_only=True,
        live_time_window=LiveTimeWindow("22:00", "02:00"),
        **kw,
    )


def rule_set(*rules: SpendRule, tz: str = "UTC") -> VenueRuleSet:
    return VenueRuleSet(venue_id="venue-1", timezone=tz, rules=tuple(rules))


# ---------------------------------------------------------------------------
# select_rule
# ---------------------------------------------------------------------------


class TestSelectRule:
    def test_nothing_matches_below_every_threshold(self) -> None:
        rules = rule_set(make_rule("r1", 5_000, "GUEST"))
        assert select_rule(rules, 4_999, NOON) is None

    def test_threshold_is_inclusive(self) -> None:
        rules = rule_set(make_rule("r1", 5_000, "GUEST"))
        assert select_rule(rules, 5_000, NOON).id == "r1"

    def test_highest_tier_wins(self) -> None:
        rules = rule_set(
            make_rule("guest", 1_000, "GUEST"),
            make_rule("regular", 5_000, "REGULAR"),
            make_rule("whale", 100_000, "WHALE"),
        )
        assert select_rule(rules, 10_000, NOON).id == "regular"

    def test_priority_breaks_same_tier_ties(self) -> None:
        rules = rule_set(
            make_rule("low", 1_000, "REGULAR", priority=1),
            make_rule("high", 2_000, "REGULAR", priority=5),
        )
        assert select_rule(rules, 10_000, NOON).id == "high"

    def test_lower_threshold_then_id_break_remaining_ties(self) -> None:
        rules = rule_set(
            make_rule("b", 2_000, "REGULAR"),
            make_rule("c", 1_000, "REGULAR", access="INNER_CIRCLE"),
            make_rule("a", 1_000, "REGULAR"),
        )
        assert select_rule(rules, 10_000, NOON).id == "a"

    def test_inactive_rules_are_ignored(self) -> None:
        rules = rule_set(make_rule("r1", 1_000, "WHALE", is_active=False), make_rule("r2", 1_000, "GUEST"))
        assert select_rule(rules, 10_000, NOON).id == "r2"

    @pytest.mark.parametrize("moment", [LATE_NIGHT, EARLY_MORNING])
    def test_live_rule_applies_inside_wrapping_window(self, moment: datetime) -> None:
        rules = rule_set(make_rule("regular", 5_000, "REGULAR"), live_rule("platinum", 10_000, "PLATINUM"))
        assert select_rule(rules, 12_000, moment).id == "platinum"

    def test_live_rule_ignored_outside_window(self) -> None:
        rules = rule_set(make_rule("regular", 5_000, "REGULAR"), live_rule("platinum", 10_000, "PLATINUM"))
        assert select_rule(rules, 12_000, NOON).id == "regular"

    def test_window_is_read_in_venue_local_time(self) -> None:
        rules = rule_set(live_rule("platinum", 10_000, "PLATINUM"), tz="America/New_York")
        # 03:30 UTC is 23:30 the previous evening in New York (EDT)
        assert select_rule(rules, 12_000, datetime(2025, 7, 1, 3, 30, tzinfo=timezone.utc)).id == "platinum"
        assert select_rule(rules, 12_000, datetime(2025, 7, 1, 16, 0, tzinfo=timezone.utc)) is None

    def test_same_inputs_same_answer(self) -> None:
        rules = rule_set(
            make_rule("x", 1_000, "REGULAR"),
            make_rule("y", 1_000, "REGULAR", access="INNER_CIRCLE"),
        )
        picks = {select_rule(rules, 5_000, NOON).id for _ in range(10)}
        assert picks == {"x"}


# ---------------------------------------------------------------------------
# RuleEvaluator
# ---------------------------------------------------------------------------


class TestRuleEvaluator:
    async def test_evaluate_uses_stored_rules_and_venue_timezone(self, repo) -> None:
        await repo.save_rule(live_rule("platinum", 10_000, "PLATINUM"))
        await repo.set_venue_timezone("venue-1", "America/New_York")
        evaluator = RuleEvaluator(repo)
        aggregate = SpendAggregate(venue_id="venue-1", patron_id="p", lifetime_spend=12_000)

        matched = await evaluator.evaluate("venue-1", aggregate, datetime(2025, 7, 1, 3, 30, tzinfo=timezone.utc))
        assert matched.id == "platinum"

    async def test_default_timezone_applies_when_venue_has_none(self, repo) -> None:
        await repo.save_rule(live_rule("platinum", 10_000, "PLATINUM"))
        evaluator = RuleEvaluator(repo, default_timezone="America/New_York")
        aggregate = SpendAggregate(venue_id="venue-1", patron_id="p", lifetime_spend=12_000)

        assert await evaluator.evaluate("venue-1", aggregate, datetime(2025, 7, 1, 23, 30, tzinfo=timezone.utc)) is None

    async def test_explain_lists_every_rule_with_status(self, repo) -> None:
        await repo.save_rule(make_rule("guest", 1_000, "GUEST"))
        await repo.save_rule(make_rule("regular", 5_000, "REGULAR"))
        await repo.save_rule(live_rule("platinum", 10_000, "PLATINUM"))
        await repo.save_rule(make_rule("whale", 50_000, "WHALE"))
        await repo.save_rule(make_rule("off", 100, "WHALE", priority=9, is_active=False))
        aggregate = SpendAggregate(venue_id="venue-1", patron_id="p", lifetime_spend=12_000)

        explanation = await RuleEvaluator(repo).explain("venue-1", aggregate, NOON)
        statuses = {c["rule_id"]: c["status"] for c in explanation["candidates"]}

        assert explanation["selected_rule_id"] == "regular"
        assert explanation["venue_local_time"] == "12:00"
        assert statuses == {
            "off": "inactive",
            "whale": "below_threshold",
            "platinum": "outside_live_window",
            "regular": "selected",
            "guest": "outranked",
        }
        whale = next(c for c in explanation["candidates"] if c["rule_id"] == "whale")
        assert whale["amount_to_threshold"] == 38_000

    async def test_explain_without_match(self, repo) -> None:
        aggregate = SpendAggregate(venue_id="venue-1", patron_id="p", lifetime_spend=0)
        explanation = await RuleEvaluator(repo).explain("venue-1", aggregate, NOON)
        assert explanation["selected_rule_id"] is None
        assert explanation["candidates"] == []
        assert "No active spend rule" in explanation["message"]
