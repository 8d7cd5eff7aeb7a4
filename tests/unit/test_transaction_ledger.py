"""Tests for the append-only transaction ledger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from apps.backend.services.errors import ValidationError
from apps.backend.services.tiers.models import REFUND_RUNNING_TOTAL
from apps.backend.services.tiers.transaction_ledger import TransactionLedger


@pytest.fixture
def ledger(repo) -> TransactionLedger:
    return TransactionLedger(repo, page_size=2)


async def collect(ledger: TransactionLedger, patron_id: str = "patron-1", since_seq=None):
    return [e async for e in ledger.query("venue-1", patron_id, since_seq)]


# ---------------------------------------------------------------------------
# Append
# ---------------------------------------------------------------------------


class TestAppend:
    async def test_accepts_sale_and_assigns_seq(self, ledger, make_event) -> None:
        result = await ledger.append(make_event("s1", 5_000))
        assert result.accepted
        assert result.reason is None
        assert result.event.seq == 1

    async def test_same_key_is_duplicate_noop(self, ledger, make_event) -> None:
        first = await ledger.append(make_event("s1", 5_000))
        second = await ledger.append(make_event("s1", 9_999))

        assert not second.accepted
        assert second.reason == "DUPLICATE"
        assert second.event.amount == 5_000
        assert second.event.seq == first.event.seq
        assert [e.external_id for e in await collect(ledger)] == ["s1"]

    async def test_same_external_id_from_other_provider_is_distinct(self, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 5_000, provider="SQUARE"))
        result = await ledger.append(make_event("s1", 5_000, provider="TOAST"))
        assert result.accepted

    @pytest.mark.parametrize("amount", [0, -100])
    async def test_sale_amount_must_be_positive(self, ledger, make_event, amount: int) -> None:
        result = await ledger.append(make_event("s1", amount))
        assert not result.accepted
        assert result.reason == "INVALID"
        assert "positive" in result.detail

    async def test_unknown_provider_is_invalid(self, ledger, make_event) -> None:
        result = await ledger.append(make_event("s1", 100, provider="CLOVER"))
        assert result.reason == "INVALID"

    async def test_reversal_requires_known_original(self, ledger, make_event) -> None:
        result = await ledger.append(make_event("r1", -100, reversal_of="missing"))
        assert result.reason == "INVALID"

    async def test_reversal_amount_must_be_negative(self, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 1_000))
        result = await ledger.append(make_event("r1", 100, reversal_of="s1"))
        assert result.reason == "INVALID"

    async def test_reversal_cannot_exceed_remaining_amount(self, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 1_000))
        assert (await ledger.append(make_event("r1", -600, reversal_of="s1"))).accepted

        over = await ledger.append(make_event("r2", -500, reversal_of="s1"))
        assert over.reason == "INVALID"
        assert (await ledger.append(make_event("r3", -400, reversal_of="s1"))).accepted

    async def test_reversal_of_reversal_rejected(self, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 1_000))
        await ledger.append(make_event("r1", -100, reversal_of="s1"))
        result = await ledger.append(make_event("r2", -50, reversal_of="r1"))
        assert result.reason == "INVALID"

    async def test_reversal_inherits_original_patron(self, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 1_000, patron_id="patron-9"))
        result = await ledger.append(make_event("r1", -300, reversal_of="s1", patron_id=None))
        assert result.accepted
        assert result.event.patron_id == "patron-9"

    async def test_running_total_reversal_stores_only_the_new_part(self, ledger, make_event) -> None:
        await ledger.append(make_event("chk-1", 10_000, provider="TOAST"))

        def running(total: int):
            return make_event(
                f"chk-1:refund:{total}", -total, provider="TOAST", reversal_of="chk-1", meta={REFUND_RUNNING_TOTAL: total}
            )

        first = await ledger.append(running(1_000))
        second = await ledger.append(running(4_000))
        stale = await ledger.append(running(3_000))

        assert first.event.amount == -1_000
        assert second.event.amount == -3_000
        assert stale.reason == "DUPLICATE"
        assert (await ledger.venue_stats("venue-1")).total_revenue == 6_000

    async def test_running_total_beyond_original_is_invalid(self, ledger, make_event) -> None:
        await ledger.append(make_event("chk-1", 1_000, provider="TOAST"))
        over = make_event(
            "chk-1:refund:1500", -1_500, provider="TOAST", reversal_of="chk-1", meta={REFUND_RUNNING_TOTAL: 1_500}
        )
        assert (await ledger.append(over)).reason == "INVALID"


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class TestQuery:
    async def test_streams_all_pages_in_seq_order(self, ledger, make_event) -> None:
        for i in range(5):
            await ledger.append(make_event(f"s{i}", 100 + i))
        await ledger.append(make_event("other", 100, patron_id="patron-2"))

        events = await collect(ledger)
        assert [e.external_id for e in events] == ["s0", "s1", "s2", "s3", "s4"]
        assert [e.seq for e in events] == sorted(e.seq for e in events)

    async def test_restartable_from_seq(self, ledger, make_event) -> None:
        for i in range(4):
            await ledger.append(make_event(f"s{i}", 100))
        events = await collect(ledger)

        rest = await collect(ledger, since_seq=events[1].seq)
        assert [e.external_id for e in rest] == ["s2", "s3"]

    async def test_unknown_patron_yields_nothing(self, ledger) -> None:
        assert await collect(ledger, patron_id="nobody") == []


# ---------------------------------------------------------------------------
# Venue reporting
# ---------------------------------------------------------------------------


class TestVenueReporting:
    async def test_venue_stats_nets_reversals(self, ledger, make_event) -> None:
        await ledger.append(make_event("s1", 10_000))
        await ledger.append(make_event("s2", 5_000, patron_id=None))
        await ledger.append(make_event("r1", -3_000, reversal_of="s1"))

        stats = await ledger.venue_stats("venue-1")
        assert stats.transaction_count == 2
        assert stats.total_revenue == 12_000
        assert stats.average_transaction == 6_000

    async def test_venue_stats_empty(self, ledger) -> None:
        stats = await ledger.venue_stats("venue-1")
        assert stats.to_dict() == {"transaction_count": 0, "total_revenue": 0, "average_transaction": 0}

    async def test_list_venue_events_newest_first_with_total(self, ledger, make_event) -> None:
        base = datetime(2025, 6, 1, 20, 0, tzinfo=timezone.utc)
        for i in range(3):
            await ledger.append(make_event(f"s{i}", 100, occurred_at=base + timedelta(hours=i)))

        page, total = await ledger.list_venue_events("venue-1", limit=2)
        assert total == 3
        assert [e.external_id for e in page] == ["s2", "s1"]

    async def test_list_venue_events_filters_by_kind_and_dates(self, ledger, make_event) -> None:
        base = datetime(2025, 6, 1, 20, 0, tzinfo=timezone.utc)
        await ledger.append(make_event("s1", 1_000, occurred_at=base))
        await ledger.append(make_event("s2", 2_000, occurred_at=base + timedelta(days=1)))
        await ledger.append(make_event("r1", -500, reversal_of="s2", occurred_at=base + timedelta(days=2)))

        sales, total = await ledger.list_venue_events("venue-1", kind="sale")
        assert total == 2
        assert [e.external_id for e in sales] == ["s2", "s1"]

        reversals, _ = await ledger.list_venue_events("venue-1", kind="reversal")
        assert [e.external_id for e in reversals] == ["r1"]

        window, total = await ledger.list_venue_events(
            "venue-1", since=base + timedelta(hours=1), until=base + timedelta(days=1)
        )
        assert total == 1
        assert [e.external_id for e in window] == ["s2"]

    async def test_list_venue_events_rejects_inverted_range(self, ledger) -> None:
        with pytest.raises(ValidationError):
            await ledger.list_venue_events(
                "venue-1", since=datetime(2025, 6, 2, tzinfo=timezone.utc), until=datetime(2025, 6, 1, tzinfo=timezone.utc)
            )

    async def test_revenue_by_day(self, ledger, make_event) -> None:
        day1 = datetime(2025, 6, 1, 23, 0, tzinfo=timezone.utc)
        day2 = datetime(2025, 6, 2, 1, 0, tzinfo=timezone.utc)
        await ledger.append(make_event("s1", 1_000, occurred_at=day1))
        await ledger.append(make_event("s2", 2_000, occurred_at=day2))
        await ledger.append(make_event("s3", 4_000, occurred_at=day2))
        await ledger.append(make_event("r1", -500, reversal_of="s3", occurred_at=day2))

        buckets = await ledger.revenue_by_period("venue-1", since=datetime(2025, 5, 1, tzinfo=timezone.utc))
        assert buckets == [
            {"period": "2025-06-01", "revenue": 1_000, "transaction_count": 1},
            {"period": "2025-06-02", "revenue": 5_500, "transaction_count": 2},
        ]

    async def test_revenue_ignores_events_before_since(self, ledger, make_event) -> None:
        await ledger.append(make_event("old", 1_000, occurred_at=datetime(2025, 1, 1, tzinfo=timezone.utc)))
        await ledger.append(make_event("new", 2_000, occurred_at=datetime(2025, 6, 1, tzinfo=timezone.utc)))

        buckets = await ledger.revenue_by_period(
            "venue-1", since=datetime(2025, 5, 1, tzinfo=timezone.utc), period="month"
        )
        assert buckets == [{"period": "2025-06", "revenue": 2_000, "transaction_count": 1}]

    async def test_revenue_rejects_unknown_period(self, ledger) -> None:
        with pytest.raises(ValidationError):
            await ledger.revenue_by_period("venue-1", since=datetime(2025, 1, 1), period="year")
