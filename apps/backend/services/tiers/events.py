"""
Engine notifications
====================

TierUpgraded / TierDowngraded / SyncCompleted are published after the state
they describe is persisted. Delivery is best-effort:

- Subscribers run in registration order.
- A failing subscriber is logged and skipped; it never breaks the publisher
  or the other subscribers.
- Nothing here writes engine state.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from apps.backend.utils.clock import to_iso, utcnow

log = logging.getLogger("nightlife.events")


@dataclass(frozen=True)
class TierUpgraded:
    venue_id: str
    patron_id: str
    from_tier: str
    to_tier: str
    access_level: str
    rule_id: Optional[str]
    live_only: bool
    occurred_at: datetime = field(default_factory=utcnow)
    event_type: str = "tier.upgraded"


@dataclass(frozen=True)
class TierDowngraded:
    venue_id: str
    patron_id: str
    from_tier: str
    to_tier: str
    access_level: str
    # LIVE_WINDOW_CLOSED | ADMIN_RESET
    reason: str
    occurred_at: datetime = field(default_factory=utcnow)
    event_type: str = "tier.downgraded"


@dataclass(frozen=True)
class SyncCompleted:
    venue_id: str
    provider: str
    status: str
    events_appended: int
    events_duplicate: int
    events_skipped: int
    events_failed: int
    occurred_at: datetime = field(default_factory=utcnow)
    event_type: str = "sync.completed"


EngineEvent = Union[TierUpgraded, TierDowngraded, SyncCompleted]
Subscriber = Callable[[EngineEvent], Awaitable[None]]


def event_to_dict(event: EngineEvent) -> Dict[str, Any]:
    out = asdict(event)
    out["occurred_at"] = to_iso(event.occurred_at)
    return out


class EventPublisher:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    async def publish(self, event: EngineEvent) -> Dict[str, Any]:
        notified = 0
        failures: List[Dict[str, str]] = []
        for handler in list(self._subscribers):
            name = getattr(handler, "__qualname__", str(handler))
            try:
                await handler(event)
                notified += 1
            except Exception as e:
                log.error(f"[EVENTS] subscriber {name} failed on {event.event_type}: {e}")
                failures.append({"handler": name, "error": str(e)})
        return {"event_type": event.event_type, "notified": notified, "failed": len(failures), "failures": failures}


# -----------------------------
# Built-in subscribers
# -----------------------------
async def log_event(event: EngineEvent) -> None:
    log.info(f"[EVENTS] {event.event_type} {event_to_dict(event)}")


class WebhookForwarder:
    """
    POSTs each event as JSON to a configured URL (downstream push delivery).
    """

    def __init__(self, url: str, *, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, event: EngineEvent) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            r = await client.post(self.url, json=event_to_dict(event))
            r.raise_for_status()


def build_publisher(notify_url: Optional[str] = None) -> EventPublisher:
    publisher = EventPublisher()
    publisher.subscribe(log_event)
    if notify_url:
        publisher.subscribe(WebhookForwarder(notify_url))
    return publisher
