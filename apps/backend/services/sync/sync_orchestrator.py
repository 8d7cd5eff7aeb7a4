"""
Sync Orchestrator
=================

Owns POS integration lifecycles and drives the pipeline:

    connector -> ledger -> aggregator -> rule evaluator -> tier state machine

Lifecycle:
- connect():    capability probe (list_locations) first; CONNECTED only on
                success. A failed probe leaves the integration DISCONNECTED
                and surfaces the provider's message verbatim.
- disconnect(): idempotent. An in-flight cycle finishes its batch but does
                not reschedule.
- run_sync_cycle(): drain queued webhooks, poll since last_sync_at, append
                each event on its own, re-evaluate affected patrons.

Failure policy:
- FAILED cycles back off: min(interval * 2^failures, ceiling).
- MAX_CONSECUTIVE_FAILURES failed cycles in a row => ERROR (reconnect).
- Connector failures never reach the tier engine.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from apps.backend.services.errors import (
    ConnectError,
    ConnectorError,
    IntegrationConflictError,
    IntegrationNotConnectedError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from apps.backend.services.pos.base_connector import POSConnector
from apps.backend.services.pos.connectors import build_connector, normalize_provider
from apps.backend.services.sync.integration import (
    DEFAULT_WEBHOOK_EVENTS,
    Credentials,
    POSIntegration,
    SyncConfig,
)
from apps.backend.services.tiers.events import EventPublisher, SyncCompleted
from apps.backend.services.tiers.models import TransactionEvent
from apps.backend.services.tiers.repositories.interfaces import EngineRepository
from apps.backend.services.tiers.tier_service import TierService
from apps.backend.services.tiers.transaction_ledger import TransactionLedger
from apps.backend.utils.clock import as_utc, to_iso, utcnow
from apps.backend.utils.settings import Settings

log = logging.getLogger("nightlife.sync")

ConnectorFactory = Callable[[str, str, Credentials], POSConnector]


@dataclass
class SyncResult:
    venue_id: str
    provider: str
    status: str = "SUCCESS"
    appended: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    patrons_evaluated: int = 0
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue_id": self.venue_id,
            "provider": self.provider,
            "status": self.status,
            "appended": self.appended,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "failed": self.failed,
            "patrons_evaluated": self.patrons_evaluated,
            "error": self.error,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
        }


class SyncOrchestrator:
    def __init__(
        self,
        repo: EngineRepository,
        ledger: TransactionLedger,
        tier_service: TierService,
        publisher: EventPublisher,
        config: Settings,
        *,
        connector_factory: Optional[ConnectorFactory] = None,
    ) -> None:
        self.repo = repo
        self.ledger = ledger
        self.tier_service = tier_service
        self.publisher = publisher
        self.config = config
        self.connector_factory = connector_factory or self._default_factory
        # Set by the container once the scheduler exists.
        self.scheduler: Optional[Any] = None

        self._webhook_queues: Dict[Tuple[str, str], Deque[TransactionEvent]] = {}
        # A lock lives only while a cycle holds or awaits it.
        self._cycle_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _default_factory(self, provider: str, venue_id: str, credentials: Credentials) -> POSConnector:
        return build_connector(provider, venue_id, credentials, timeout=self.config.CONNECTOR_TIMEOUT_SECONDS)

    def _cycle_lock(self, venue_id: str, provider: str) -> asyncio.Lock:
        key = (venue_id, provider)
        lock = self._cycle_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._cycle_locks[key] = lock
        return lock

    def _queue(self, venue_id: str, provider: str) -> Deque[TransactionEvent]:
        return self._webhook_queues.setdefault((venue_id, provider), deque())

    def webhook_url(self, venue_id: str, provider: str) -> str:
        base = (self.config.PUBLIC_BASE_URL or "").rstrip("/")
        return f"{base}/pos/webhooks/{provider.lower()}/{venue_id}"

    # ---------------------------------------------------------
    # Probe
    # ---------------------------------------------------------
    async def _probe(self, venue_id: str, provider: str, credentials: Credentials):
        """
        Returns the matching Location. Raises ConnectError with the
        provider's message on any failure.
        """
        if not credentials.api_key or not credentials.location_id:
            raise ConnectError("api_key and location_id are required")

        connector = self.connector_factory(provider, venue_id, credentials)
        try:
            locations = await asyncio.wait_for(connector.list_locations(), timeout=self.config.CONNECTOR_TIMEOUT_SECONDS)
        except ConnectorError as e:
            raise ConnectError(e.message, details={"provider": provider, "kind": e.kind})
        except asyncio.TimeoutError:
            raise ConnectError(f"{provider} did not respond in time", details={"provider": provider, "kind": "timeout"})
        finally:
            await connector.aclose()

        for location in locations:
            if location.id == credentials.location_id:
                return location
        raise ConnectError(
            f"Location {credentials.location_id} not found for these credentials",
            details={"provider": provider, "available": [loc.id for loc in locations]},
        )

    async def validate_credentials(self, provider: str, credentials: Dict[str, Any]) -> Dict[str, Any]:
        """
        Probe only; nothing is stored.
        """
        try:
            provider = normalize_provider(provider)
        except ValueError as e:
            raise ConnectError(str(e))
        creds = Credentials.from_dict(credentials or {})
        try:
            location = await self._probe("validate", provider, creds)
        except ConnectError as e:
            return {"valid": False, "provider": provider, "error": e.message}
        return {"valid": True, "provider": provider, "location": {"id": location.id, **location.to_metadata()}}

    # ---------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------
    async def connect(
        self,
        venue_id: str,
        provider: str,
        credentials: Dict[str, Any],
        *,
        sync_interval_ms: Optional[int] = None,
    ) -> POSIntegration:
        try:
            provider = normalize_provider(provider)
        except ValueError as e:
            raise ConnectError(str(e))

        existing = await self.repo.get_integration(venue_id, provider)
        # ERROR integrations reconnect through a fresh credential check.
        if existing is not None and existing.status in ("CONNECTED", "SYNCING"):
            raise IntegrationConflictError("POS integration already connected")

        creds = Credentials.from_dict(credentials or {})
        now = utcnow()
        try:
            location = await self._probe(venue_id, provider, creds)
        except ConnectError as e:
            failed = existing or POSIntegration(venue_id=venue_id, provider=provider)
            failed.status = "DISCONNECTED"
            failed.last_error = e.message
            await self.repo.save_integration(failed)
            log.warning(f"[SYNC] connect failed venue={venue_id} provider={provider}: {e.message}")
            raise

        integration = existing or POSIntegration(venue_id=venue_id, provider=provider)
        integration.status = "CONNECTED"
        integration.credentials = creds
        integration.metadata = {**location.to_metadata(), "webhook_url": self.webhook_url(venue_id, provider)}
        integration.sync_config = SyncConfig(
            enabled=True,
            interval_ms=int(sync_interval_ms or self.config.DEFAULT_SYNC_INTERVAL_MS),
            last_sync_at=integration.sync_config.last_sync_at,
            last_sync_status=integration.sync_config.last_sync_status,
        )
        integration.webhooks.enabled = bool(creds.webhook_secret)
        integration.webhooks.events = list(DEFAULT_WEBHOOK_EVENTS.get(provider, []))
        integration.connected_at = now
        integration.disconnected_at = None
        integration.last_error = None
        integration.consecutive_failures = 0
        integration.next_sync_at = now
        await self.repo.save_integration(integration)

        if location.timezone:
            await self.repo.set_venue_timezone(venue_id, location.timezone)

        if self.scheduler is not None:
            self.scheduler.schedule(integration)

        log.info(f"[SYNC] connected venue={venue_id} provider={provider} location={location.id}")
        return integration

    async def disconnect(self, venue_id: str, provider: Optional[str] = None) -> List[POSIntegration]:
        if provider is not None:
            try:
                provider = normalize_provider(provider)
            except ValueError:
                raise NotFoundError("POS integration not found")
            one = await self.repo.get_integration(venue_id, provider)
            integrations = [] if one is None else [one]
        else:
            integrations = await self.repo.list_integrations(venue_id)

        if not integrations:
            raise NotFoundError("POS integration not found")

        now = utcnow()
        for integration in integrations:
            if self.scheduler is not None:
                self.scheduler.unschedule(integration.venue_id, integration.provider)
            self._webhook_queues.pop((integration.venue_id, integration.provider), None)
            if integration.status == "DISCONNECTED":
                continue
            integration.status = "DISCONNECTED"
            integration.disconnected_at = now
            integration.next_sync_at = None
            integration.webhooks.enabled = False
            await self.repo.save_integration(integration)
            log.info(f"[SYNC] disconnected venue={venue_id} provider={integration.provider}")
        return integrations

    async def get_status(self, venue_id: str) -> List[Dict[str, Any]]:
        integrations = await self.repo.list_integrations(venue_id)
        if not integrations:
            raise NotFoundError("POS integration not found")
        return [i.to_public_dict() for i in integrations]

    # ---------------------------------------------------------
    # Sync cycle
    # ---------------------------------------------------------
    def next_delay_seconds(self, integration: POSIntegration) -> float:
        interval = int(integration.sync_config.interval_ms or self.config.DEFAULT_SYNC_INTERVAL_MS)
        delay_ms = min(interval * (2 ** int(integration.consecutive_failures)), int(self.config.SYNC_BACKOFF_CEILING_MS))
        return delay_ms / 1000.0

    def _poll_since(self, integration: POSIntegration, now: datetime) -> datetime:
        last = integration.sync_config.last_sync_at
        if last is None:
            return now - timedelta(days=int(self.config.INITIAL_SYNC_LOOKBACK_DAYS))
        return as_utc(last) - timedelta(seconds=int(self.config.SYNC_OVERLAP_SECONDS))

    async def _append_batch(
        self, integration: POSIntegration, events: Iterable[TransactionEvent], result: SyncResult
    ) -> Set[str]:
        """
        Appends each event on its own. Returns patrons with new ledger rows.
        """
        affected: Set[str] = set()
        for event in events:
            try:
                if event.patron_id is None and event.customer_ref:
                    patron_id = await self.repo.resolve_patron(integration.venue_id, integration.provider, event.customer_ref)
                    if patron_id:
                        event = event.with_patron(patron_id)
                res = await self.ledger.append(event)
            except Exception as e:
                result.failed += 1
                log.error(f"[SYNC] append failed {integration.key} event={event.external_id}: {e}")
                continue

            if res.accepted:
                result.appended += 1
                if res.event is not None and res.event.patron_id:
                    affected.add(res.event.patron_id)
            elif res.reason == "DUPLICATE":
                result.duplicates += 1
            else:
                result.skipped += 1
        return affected

    async def _reevaluate(self, venue_id: str, patrons: Set[str], now: datetime, result: SyncResult) -> None:
        ordered = sorted(patrons)
        outcomes = await asyncio.gather(
            *(self.tier_service.reevaluate_patron(venue_id, p, now) for p in ordered),
            return_exceptions=True,
        )
        for patron_id, outcome in zip(ordered, outcomes):
            if isinstance(outcome, Exception):
                result.failed += 1
                log.error(f"[SYNC] tier evaluation failed venue={venue_id} patron={patron_id}: {outcome}")
            else:
                result.patrons_evaluated += 1

    def drain_webhooks(self, venue_id: str, provider: str) -> List[TransactionEvent]:
        queue = self._queue(venue_id, provider)
        drained = list(queue)
        queue.clear()
        return drained

    async def run_sync_cycle(
        self,
        integration: POSIntegration,
        now: Optional[datetime] = None,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> SyncResult:
        """
        One cycle. An explicit `since` backfills [since, until) instead of
        polling from the cursor, and leaves last_sync_at where it was.
        """
        venue_id, provider = integration.venue_id, integration.provider
        async with self._cycle_lock(venue_id, provider):
            current = await self.repo.get_integration(venue_id, provider)
            if current is None or current.status not in ("CONNECTED", "SYNCING"):
                raise IntegrationNotConnectedError()

            now = as_utc(now or utcnow())
            result = SyncResult(venue_id=venue_id, provider=provider, started_at=now)
            current.status = "SYNCING"
            await self.repo.save_integration(current)

            finished = False
            try:
                connector_error: Optional[str] = None
                try:
                    events = self.drain_webhooks(venue_id, provider)

                    connector = self.connector_factory(provider, venue_id, current.credentials)
                    poll_from = as_utc(since) if since is not None else self._poll_since(current, now)
                    try:
                        polled = await asyncio.wait_for(
                            connector.poll_transactions(current.credentials.location_id, poll_from, until),
                            timeout=self.config.CONNECTOR_TIMEOUT_SECONDS,
                        )
                        events.extend(polled)
                    except ConnectorError as e:
                        connector_error = e.message
                    except asyncio.TimeoutError:
                        connector_error = f"{provider} poll timed out"
                    finally:
                        result.skipped += connector.skipped
                        await connector.aclose()

                    affected = await self._append_batch(current, events, result)
                    await self._reevaluate(venue_id, affected, now, result)
                    stats = await self.ledger.venue_stats(venue_id, provider)
                except Exception as e:
                    log.exception(f"[SYNC] cycle crashed {current.key}: {e}")
                    connector_error = connector_error or str(e)
                    stats = None

                if connector_error is not None:
                    result.status = "FAILED"
                    result.error = connector_error
                elif result.failed:
                    result.status = "PARTIAL"
                result.finished_at = utcnow()

                await self._finish_cycle(current, result, stats, now, advance_cursor=since is None)
                finished = True
            finally:
                if not finished:
                    await self._release_syncing(venue_id, provider)

        await self.publisher.publish(
            SyncCompleted(
                venue_id=venue_id,
                provider=provider,
                status=result.status,
                events_appended=result.appended,
                events_duplicate=result.duplicates,
                events_skipped=result.skipped,
                events_failed=result.failed,
            )
        )
        log.info(
            f"[SYNC] {venue_id}:{provider} {result.status} appended={result.appended} "
            f"dup={result.duplicates} skipped={result.skipped} failed={result.failed}"
        )
        return result

    async def _release_syncing(self, venue_id: str, provider: str) -> None:
        """
        The cycle died before it could record its outcome; put the row back
        to CONNECTED so the next cycle and restore() still pick it up.
        """
        try:
            latest = await self.repo.get_integration(venue_id, provider)
            if latest is not None and latest.status == "SYNCING":
                latest.status = "CONNECTED"
                await self.repo.save_integration(latest)
        except Exception as e:
            log.error(f"[SYNC] could not release SYNCING {venue_id}:{provider}: {e}")

    async def _finish_cycle(
        self, cycle_view: POSIntegration, result: SyncResult, stats: Any, now: datetime, *, advance_cursor: bool = True
    ) -> None:
        # Re-read: a disconnect may have landed while the batch was running.
        latest = await self.repo.get_integration(cycle_view.venue_id, cycle_view.provider) or cycle_view

        if stats is not None:
            latest.stats.transaction_count = stats.transaction_count
            latest.stats.total_revenue = stats.total_revenue
            latest.stats.average_transaction = stats.average_transaction
        latest.stats.events_skipped += result.skipped
        latest.sync_config.last_sync_status = result.status

        if result.status == "FAILED":
            latest.consecutive_failures += 1
            latest.last_error = result.error
        else:
            # Only a successful cursor poll moves the cursor forward.
            if advance_cursor:
                latest.sync_config.last_sync_at = now
            latest.consecutive_failures = 0
            latest.last_error = None

        if latest.status == "DISCONNECTED":
            latest.next_sync_at = None
        elif latest.consecutive_failures >= int(self.config.MAX_CONSECUTIVE_FAILURES):
            latest.status = "ERROR"
            latest.next_sync_at = None
            log.error(
                f"[SYNC] {latest.key} moved to ERROR after {latest.consecutive_failures} failed cycles: {latest.last_error}"
            )
        else:
            latest.status = "CONNECTED"
            latest.next_sync_at = now + timedelta(seconds=self.next_delay_seconds(latest))

        await self.repo.save_integration(latest)

    async def sync_venue(
        self,
        venue_id: str,
        now: Optional[datetime] = None,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SyncResult]:
        """
        Manual sync of every connected integration of a venue, optionally
        over an explicit [since, until) range.
        """
        if since is not None and until is not None and as_utc(since) > as_utc(until):
            raise ValidationError("from_date must not be after to_date")
        integrations = [i for i in await self.repo.list_integrations(venue_id) if i.is_connected]
        if not integrations:
            raise IntegrationNotConnectedError()
        return [await self.run_sync_cycle(i, now, since=since, until=until) for i in integrations]

    # ---------------------------------------------------------
    # Webhooks
    # ---------------------------------------------------------
    async def ingest_webhook(
        self,
        venue_id: str,
        provider: str,
        body: bytes,
        signature: Optional[str],
        url: str,
    ) -> Dict[str, Any]:
        """
        Verify, parse and enqueue. The ledger dedups against polling.
        """
        try:
            provider = normalize_provider(provider)
        except ValueError:
            raise NotFoundError("POS integration not found")

        integration = await self.repo.get_integration(venue_id, provider)
        if integration is None or integration.status == "DISCONNECTED" or not integration.webhooks.enabled:
            raise NotFoundError("POS integration not found")

        # Square signs the notification URL it was configured with, which can
        # differ from the URL seen behind a proxy.
        stored_url = str(integration.metadata.get("webhook_url") or "")
        signed_url = stored_url if stored_url.startswith("http") else url

        connector = self.connector_factory(provider, venue_id, integration.credentials)
        try:
            if not connector.verify_webhook_signature(body, signature, signed_url):
                log.warning(f"[WEBHOOK] bad signature venue={venue_id} provider={provider}")
                raise WebhookSignatureError()
            try:
                events = connector.parse_webhook_payload(body)
            except ValidationError as e:
                integration.stats.events_skipped += 1
                await self.repo.save_integration(integration)
                log.warning(f"[WEBHOOK] skipped malformed payload venue={venue_id} provider={provider}: {e.message}")
                return {"received": True, "status": "skipped", "reason": e.message}
        finally:
            await connector.aclose()

        self._queue(venue_id, provider).extend(events)
        return {"received": True, "status": "queued", "events": len(events)}

    async def process_webhook_queue(self, venue_id: str, provider: str, now: Optional[datetime] = None) -> SyncResult:
        """
        Background drain: appends queued webhook events and re-evaluates,
        without polling the provider.
        """
        async with self._cycle_lock(venue_id, provider):
            integration = await self.repo.get_integration(venue_id, provider)
            result = SyncResult(venue_id=venue_id, provider=provider)
            events = self.drain_webhooks(venue_id, provider)
            if integration is None or not events:
                result.finished_at = utcnow()
                return result
            now = as_utc(now or utcnow())
            affected = await self._append_batch(integration, events, result)
            await self._reevaluate(venue_id, affected, now, result)
            if result.skipped:
                integration.stats.events_skipped += result.skipped
                await self.repo.save_integration(integration)
            if result.failed:
                result.status = "PARTIAL"
            result.finished_at = utcnow()
            return result
