"""
POS connector contract
======================

Every provider adapter exposes the same four capabilities:

- list_locations()                       -> capability probe on connect
- poll_transactions(location_id, since, until=None) -> normalized TransactionEvents
- verify_webhook_signature(payload, signature, url)
- parse_webhook_payload(payload)         -> normalized TransactionEvents

Design goals (shared with the rest of the platform's REST clients):
- Plain REST over httpx, version-pinned per provider
- Centralized retry + rate-limit handling
- Provider error text is surfaced verbatim
- Failures are ConnectorError and never reach the tier engine
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from apps.backend.services.errors import ConnectorError, ValidationError
from apps.backend.services.sync.integration import Credentials
from apps.backend.services.tiers.models import TransactionEvent

log = logging.getLogger("nightlife.pos")


@dataclass(frozen=True)
class Location:
    id: str
    name: Optional[str] = None
    merchant_name: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "location_name": self.name,
            "merchant_name": self.merchant_name,
            "currency": self.currency,
            "timezone": self.timezone,
        }


def hmac_sha256_b64(secret: str, message: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode(), message, hashlib.sha256).digest()).decode()


class POSConnector(ABC):
    PROVIDER = ""
    TIMEOUT_SECONDS = 20.0
    MAX_RETRIES = 3
    RETRY_BACKOFF_SECONDS = 1.5

    def __init__(
        self,
        venue_id: str,
        credentials: Credentials,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not credentials.api_key or not credentials.location_id:
            raise ValueError(f"{self.PROVIDER} connector requires api_key and location_id")

        self.venue_id = venue_id
        self.credentials = credentials
        # malformed records dropped while polling
        self.skipped = 0
        self.timeout = timeout or self.TIMEOUT_SECONDS
        self.client = httpx.AsyncClient(
            base_url=self.base_url(),
            headers=self.default_headers(),
            timeout=self.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "POSConnector":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    # ---------------------------------------------------------
    # Provider specifics
    # ---------------------------------------------------------
    @abstractmethod
    def base_url(self) -> str:
        ...

    @abstractmethod
    def default_headers(self) -> Dict[str, str]:
        ...

    @abstractmethod
    def error_message(self, response: httpx.Response) -> str:
        """Provider's own error text, passed through verbatim."""

    @abstractmethod
    async def list_locations(self) -> List[Location]:
        ...

    @abstractmethod
    async def poll_transactions(
        self, location_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[TransactionEvent]:
        """
        Events in [since, until); until None means up to now.
        """
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str], url: str) -> bool:
        ...

    @abstractmethod
    def parse_webhook_payload(self, payload: bytes) -> List[TransactionEvent]:
        """
        May raise ValidationError for malformed bodies. Events the engine
        does not track (other topics) yield an empty list.
        """

    # ---------------------------------------------------------
    # Low-level request handler
    # ---------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Performs a REST request with retry + rate-limit awareness.
        Auth and other 4xx errors are not retried.
        """
        last_error: Optional[ConnectorError] = None

        for attempt in range(1, self.MAX_RETRIES + 1):
            try:
                response = await self.client.request(method, path, params=params, json=json)
            except httpx.TimeoutException as e:
                last_error = ConnectorError(f"{self.PROVIDER} request timed out: {e}", kind="timeout")
            except httpx.TransportError as e:
                last_error = ConnectorError(f"{self.PROVIDER} network error: {e}", kind="network")
            else:
                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                    last_error = ConnectorError(self.error_message(response), kind="rate_limit", provider_status=429)
                    if attempt < self.MAX_RETRIES:
                        await asyncio.sleep(float(retry_after) if retry_after else self.RETRY_BACKOFF_SECONDS)
                        continue
                    break

                if response.status_code in (401, 403):
                    raise ConnectorError(self.error_message(response), kind="auth", provider_status=response.status_code)

                if 400 <= response.status_code < 500:
                    raise ConnectorError(self.error_message(response), kind="http", provider_status=response.status_code)

                if response.status_code >= 500:
                    last_error = ConnectorError(self.error_message(response), kind="http", provider_status=response.status_code)
                else:
                    return response.json() if response.content else {}

            if attempt < self.MAX_RETRIES:
                log.warning(f"[POS] {self.PROVIDER} {method} {path} attempt {attempt} failed: {last_error.message}")
                await asyncio.sleep(self.RETRY_BACKOFF_SECONDS * attempt)

        raise last_error or ConnectorError(f"{self.PROVIDER} request failed after retries")

    async def get(self, path: str, *, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    def _collect(self, records: List[Dict[str, Any]], mapper: Callable[[Dict[str, Any]], Optional[TransactionEvent]]) -> List[TransactionEvent]:
        events: List[TransactionEvent] = []
        for record in records:
            try:
                event = mapper(record)
            except ValidationError as e:
                self.skipped += 1
                log.warning(f"[POS] {self.PROVIDER} skipped record venue={self.venue_id}: {e.message}")
                continue
            if event is not None:
                events.append(event)
        return events
