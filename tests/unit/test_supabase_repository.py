"""
Supabase adapter against a fake PostgREST client that caps every response
at max_rows, the way a real project does.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from apps.backend.services.errors import CredentialStoreError
from apps.backend.services.sync.integration import Credentials, POSIntegration
from apps.backend.services.tiers.models import PatronTierState
from apps.backend.services.tiers.repositories.supabase_repository import SupabaseEngineRepository
from apps.backend.utils.encryption import CredentialCipher

VENUE = "venue-1"


class FakeQuery:
    def __init__(self, db: "FakePostgrest", table: str) -> None:
        self.db = db
        self.table = table
        self.filters = []
        self.negate = False
        self.sort: List[str] = []
        self.window: Optional[tuple] = None
        self.cap: Optional[int] = None
        self.payload: Optional[Dict[str, Any]] = None
        self.conflict: List[str] = []

    def select(self, columns: str, count: Optional[str] = None) -> "FakeQuery":
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) == value)
        return self

    @property
    def not_(self) -> "FakeQuery":
        self.negate = True
        return self

    def is_(self, column: str, value: str) -> "FakeQuery":
        negate, self.negate = self.negate, False
        self.filters.append(lambda row: (row.get(column) is None) != negate)
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.sort = [c.split(".")[0] for c in column.split(",")]
        return self

    def range(self, start: int, end: int) -> "FakeQuery":
        self.window = (start, end)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self.cap = n
        return self

    def upsert(self, payload: Dict[str, Any], on_conflict: str = "", **kwargs: Any) -> "FakeQuery":
        self.payload = payload
        self.conflict = on_conflict.split(",") if on_conflict else []
        return self

    def execute(self) -> SimpleNamespace:
        rows = self.db.tables.setdefault(self.table, [])
        if self.payload is not None:
            rows[:] = [r for r in rows if any(r.get(c) != self.payload.get(c) for c in self.conflict)]
            rows.append(dict(self.payload))
            return SimpleNamespace(data=[self.payload], count=None)

        found = [r for r in rows if all(f(r) for f in self.filters)]
        if self.sort:
            found.sort(key=lambda r: tuple(r[c] for c in self.sort))
        if self.window is not None:
            self.db.ranges.append(self.window)
            found = found[self.window[0]: self.window[1] + 1]
        if self.cap is not None:
            found = found[: self.cap]
        return SimpleNamespace(data=found[: self.db.max_rows], count=None)


class FakePostgrest:
    def __init__(self, max_rows: int) -> None:
        self.max_rows = max_rows
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.ranges: List[tuple] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(CredentialCipher.generate_key())


@pytest.fixture
def sb() -> FakePostgrest:
    return FakePostgrest(max_rows=3)


@pytest.fixture
def repo(sb, cipher) -> SupabaseEngineRepository:
    return SupabaseEngineRepository(sb, cipher, scan_page_size=3)


def event_row(seq: int, amount: int, patron_id: Optional[str] = None, reversal_of: Optional[str] = None) -> dict:
    return {
        "seq": seq,
        "venue_id": VENUE,
        "source_provider": "SQUARE",
        "external_id": f"e{seq}",
        "amount": amount,
        "patron_id": patron_id,
        "reversal_of": reversal_of,
    }


class TestScans:
    async def test_revenue_reads_past_the_row_cap(self, repo, sb) -> None:
        sb.tables["transaction_events"] = [event_row(i, 1_000) for i in range(1, 8)]
        sb.tables["transaction_events"].append(event_row(8, -500, reversal_of="e1"))

        count, total = await repo.venue_revenue(VENUE)

        assert (count, total) == (7, 6_500)
        assert sb.ranges == [(0, 2), (3, 5), (6, 8)]

    async def test_venue_patrons_come_from_every_page(self, repo, sb) -> None:
        sb.tables["transaction_events"] = [event_row(i, 100, patron_id=f"p{i}") for i in range(1, 6)]
        sb.tables["transaction_events"].append(event_row(6, 100))
        sb.tables["patron_tier_state"] = [
            {"venue_id": VENUE, "patron_id": p} for p in ("p1", "q1", "q2", "q3")
        ]

        patrons = await repo.list_venue_patrons(VENUE)

        assert patrons == ["p1", "p2", "p3", "p4", "p5", "q1", "q2", "q3"]

    async def test_reversal_sum_spans_pages(self, repo, sb) -> None:
        sb.tables["transaction_events"] = [event_row(i, -100, reversal_of="e0") for i in range(1, 6)]
        assert await repo.sum_reversals(VENUE, "SQUARE", "e0") == 500

    async def test_live_grants_across_venues(self, repo, sb) -> None:
        for venue, patron, live in [
            ("v2", "a", True),
            (VENUE, "b", True),
            (VENUE, "c", False),
            (VENUE, "a", True),
            ("v3", "z", True),
        ]:
            await repo.save_tier_state(PatronTierState(venue_id=venue, patron_id=patron, granted_live_only=live))

        assert await repo.list_live_grants() == [("v2", "a"), ("v3", "z"), (VENUE, "a"), (VENUE, "b")]


class TestIntegrationCredentials:
    def integration(self) -> POSIntegration:
        return POSIntegration(
            venue_id=VENUE,
            provider="SQUARE",
            status="CONNECTED",
            credentials=Credentials(api_key="sq-token", location_id="loc-1", webhook_secret="whsec"),
        )

    async def test_row_holds_ciphertext(self, repo, sb) -> None:
        await repo.save_integration(self.integration())

        [row] = sb.tables["pos_integrations"]
        stored = row["credentials"]
        assert stored["api_key"] != "sq-token"
        assert stored["webhook_secret"] != "whsec"
        assert stored["location_id"] == "loc-1"

        loaded = await repo.get_integration(VENUE, "SQUARE")
        assert loaded.credentials.api_key == "sq-token"
        assert loaded.credentials.webhook_secret == "whsec"

    async def test_other_key_cannot_read_rows(self, repo, sb) -> None:
        await repo.save_integration(self.integration())
        stranger = SupabaseEngineRepository(sb, CredentialCipher(CredentialCipher.generate_key()))

        with pytest.raises(CredentialStoreError):
            await stranger.list_integrations(VENUE)
