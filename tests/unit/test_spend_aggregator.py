"""Tests for full-recompute spend aggregation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import permutations

import pytest

from apps.backend.services.tiers.spend_aggregator import SpendAggregator
from apps.backend.services.tiers.transaction_ledger import TransactionLedger

NOW = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(repo) -> TransactionLedger:
    return TransactionLedger(repo, page_size=2)


@pytest.fixture
def aggregator(ledger, repo) -> SpendAggregator:
    return SpendAggregator(ledger, repo)


class TestFold:
    def test_order_does_not_change_the_result(self, make_event) -> None:
        events = [
            make_event("s1", 6_000),
            make_event("s2", 4_000),
            make_event("r1", -3_000, reversal_of="s1"),
        ]
        results = {
            (agg.lifetime_spend, agg.event_count, agg.last_event_at)
            for agg in (
                SpendAggregator.fold("venue-1", "patron-1", list(order), now=NOW) for order in permutations(events)
            )
        }
        assert results == {(7_000, 3, events[0].occurred_at)}

    def test_net_negative_spend_clamps_to_zero(self, make_event) -> None:
        agg = SpendAggregator.fold("venue-1", "patron-1", [make_event("r1", -500, reversal_of="x")], now=NOW)
        assert agg.lifetime_spend == 0

    def test_no_window_means_no_window_spend(self, make_event) -> None:
        agg = SpendAggregator.fold("venue-1", "patron-1", [make_event("s1", 100)], now=NOW)
        assert agg.window_spend is None

    def test_window_spend_counts_only_recent_events(self, make_event) -> None:
        events = [
            make_event("old", 1_000, occurred_at=NOW - timedelta(days=40)),
            make_event("new", 250, occurred_at=NOW - timedelta(days=2)),
        ]
        agg = SpendAggregator.fold(
            "venue-1", "patron-1", events, now=NOW, window_start=NOW - timedelta(days=30)
        )
        assert agg.lifetime_spend == 1_250
        assert agg.window_spend == 250


class TestRecompute:
    async def test_recompute_from_ledger_and_persist(self, aggregator, ledger, repo, make_event) -> None:
        for i in range(5):
            await ledger.append(make_event(f"s{i}", 1_000))
        await ledger.append(make_event("r1", -400, reversal_of="s0", patron_id=None))

        agg = await aggregator.recompute("venue-1", "patron-1", now=NOW)
        assert agg.lifetime_spend == 4_600
        assert agg.event_count == 6
        assert agg.computed_at == NOW
        assert await repo.get_aggregate("venue-1", "patron-1") == agg

    async def test_recompute_is_idempotent(self, aggregator, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 1_000))
        first = await aggregator.recompute("venue-1", "patron-1", now=NOW)
        second = await aggregator.recompute("venue-1", "patron-1", now=NOW)
        assert first == second

    async def test_anonymous_events_do_not_count(self, aggregator, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 1_000, patron_id=None))
        agg = await aggregator.recompute("venue-1", "patron-1", now=NOW)
        assert agg.lifetime_spend == 0
        assert agg.event_count == 0

    async def test_window_days_enables_window_spend(self, ledger, repo, make_event) -> None:
        aggregator = SpendAggregator(ledger, repo, window_days=7)
        await ledger.append(make_event("old", 1_000, occurred_at=NOW - timedelta(days=30)))
        await ledger.append(make_event("new", 300, occurred_at=NOW - timedelta(days=1)))

        agg = await aggregator.recompute("venue-1", "patron-1", now=NOW)
        assert agg.window_spend == 300
