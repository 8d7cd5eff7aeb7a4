"""Shared fixtures: in-memory engine, recording publisher and a scripted POS."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

import pytest

from apps.backend.services.container import EngineContainer, build_container
from apps.backend.services.errors import ConnectorError, ValidationError
from apps.backend.services.pos.base_connector import Location
from apps.backend.services.sync.integration import Credentials
from apps.backend.services.tiers.events import EngineEvent, EventPublisher
from apps.backend.services.tiers.models import TransactionEvent
from apps.backend.services.tiers.repositories.memory_repository import InMemoryEngineRepository
from apps.backend.utils.settings import Settings

VENUE = "venue-1"
LOCATION = "loc-1"
VALID_SIGNATURE = "valid-signature"


# ---------------------------------------------------------------------------
# Scripted POS
# ---------------------------------------------------------------------------


class FakePOS:
    """Provider state shared by every connector the factory hands out."""

    def __init__(self) -> None:
        self.locations: List[Location] = [
            Location(id=LOCATION, name="Main Room", merchant_name="Club Nova", currency="USD", timezone="UTC")
        ]
        self.transactions: List[TransactionEvent] = []
        self.list_error: Optional[ConnectorError] = None
        self.poll_error: Optional[ConnectorError] = None
        self.poll_since: List[datetime] = []
        self.poll_until: List[Optional[datetime]] = []
        self.skipped_per_poll = 0
        # awaited mid-poll, e.g. to disconnect while a cycle is running
        self.on_poll: Optional[Callable[[], Awaitable[None]]] = None
        self.opened = 0
        self.closed = 0

    def factory(self, provider: str, venue_id: str, credentials: Credentials) -> "FakeConnector":
        self.opened += 1
        return FakeConnector(self, provider, venue_id)


class FakeConnector:
    def __init__(self, pos: FakePOS, provider: str, venue_id: str) -> None:
        self.pos = pos
        self.provider = provider
        self.venue_id = venue_id
        self.skipped = 0

    async def list_locations(self) -> List[Location]:
        if self.pos.list_error is not None:
            raise self.pos.list_error
        return list(self.pos.locations)

    async def poll_transactions(
        self, location_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[TransactionEvent]:
        self.pos.poll_since.append(since)
        self.pos.poll_until.append(until)
        if self.pos.on_poll is not None:
            await self.pos.on_poll()
        if self.pos.poll_error is not None:
            raise self.pos.poll_error
        self.skipped = self.pos.skipped_per_poll
        return list(self.pos.transactions)

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str], url: str) -> bool:
        return signature == VALID_SIGNATURE

    def parse_webhook_payload(self, payload: bytes) -> List[TransactionEvent]:
        body = json.loads(payload or b"{}")
        if "events" not in body:
            raise ValidationError("missing events")
        return [
            TransactionEvent.from_dict({**e, "venue_id": self.venue_id, "source_provider": self.provider})
            for e in body["events"]
        ]

    async def aclose(self) -> None:
        self.pos.closed += 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> Settings:
    return Settings(
        STORAGE_BACKEND="memory",
        SYNC_SCHEDULER_ENABLED=False,
        DEFAULT_SYNC_INTERVAL_MS=60_000,
        SYNC_BACKOFF_CEILING_MS=600_000,
        MAX_CONSECUTIVE_FAILURES=3,
        CONNECTOR_TIMEOUT_SECONDS=5.0,
        SYNC_OVERLAP_SECONDS=300,
        INITIAL_SYNC_LOOKBACK_DAYS=7,
        LEDGER_PAGE_SIZE=500,
        SPEND_WINDOW_DAYS=None,
        DEFAULT_VENUE_TIMEZONE="UTC",
        PUBLIC_BASE_URL="https://api.example.test",
        NOTIFY_WEBHOOK_URL=None,
    )


@pytest.fixture
def repo() -> InMemoryEngineRepository:
    return InMemoryEngineRepository()


@pytest.fixture
def published() -> List[EngineEvent]:
    return []


@pytest.fixture
def publisher(published: List[EngineEvent]) -> EventPublisher:
    pub = EventPublisher()

    async def record(event: EngineEvent) -> None:
        published.append(event)

    pub.subscribe(record)
    return pub


@pytest.fixture
def fake_pos() -> FakePOS:
    return FakePOS()


@pytest.fixture
def container(config, repo, publisher, fake_pos) -> EngineContainer:
    return build_container(config, repo=repo, publisher=publisher, connector_factory=fake_pos.factory)


@pytest.fixture
def make_event() -> Callable[..., TransactionEvent]:
    def _make(
        external_id: str,
        amount: int,
        *,
        patron_id: Optional[str] = "patron-1",
        venue_id: str = VENUE,
        provider: str = "SQUARE",
        reversal_of: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        customer_ref: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> TransactionEvent:
        return TransactionEvent(
            external_id=external_id,
            venue_id=venue_id,
            amount=amount,
            occurred_at=occurred_at or datetime(2025, 6, 1, 22, 0, tzinfo=timezone.utc),
            source_provider=provider,
            patron_id=patron_id,
            reversal_of=reversal_of,
            customer_ref=customer_ref,
            meta=meta or {},
        )

    return _make


@pytest.fixture
def square_credentials() -> dict:
    return {"api_key": "sq-token", "location_id": LOCATION, "environment": "SANDBOX", "webhook_secret": "whsec"}


@pytest.fixture
def rule_payload() -> Callable[..., dict]:
    def _payload(threshold: int, tier: str, access: str = "PUBLIC_LOBBY", **extra: Any) -> dict:
        return {"threshold": threshold, "tier_unlocked": tier, "server_access_level": access, **extra}

    return _payload
