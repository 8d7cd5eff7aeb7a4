"""
POS Integration record
======================

One row per (venue_id, provider). Owned by the sync orchestrator; the
scheduler and routes only read it.

Credentials are never part of the public representation, and are stored
encrypted (api_key, webhook_secret).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from apps.backend.utils.clock import parse_datetime, to_iso
from apps.backend.utils.encryption import CredentialCipher

IntegrationStatus = Literal["DISCONNECTED", "CONNECTED", "SYNCING", "ERROR"]
SyncStatus = Literal["SUCCESS", "PARTIAL", "FAILED"]
Environment = Literal["PRODUCTION", "SANDBOX"]

DEFAULT_WEBHOOK_EVENTS = {
    "SQUARE": ["payment.created", "payment.updated", "refund.created", "refund.updated"],
    "TOAST": ["orders.updated"],
}


@dataclass
class Credentials:
    api_key: str
    location_id: str
    environment: Environment = "PRODUCTION"
    webhook_secret: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Credentials":
        env = str(data.get("environment") or "PRODUCTION").upper()
        return Credentials(
            api_key=str(data.get("api_key") or data.get("apiKey") or "").strip(),
            location_id=str(data.get("location_id") or data.get("locationId") or "").strip(),
            environment="SANDBOX" if env == "SANDBOX" else "PRODUCTION",
            webhook_secret=data.get("webhook_secret") or data.get("webhookSecret"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "api_key": self.api_key,
            "location_id": self.location_id,
            "environment": self.environment,
            "webhook_secret": self.webhook_secret,
        }

    def to_stored_dict(self, cipher: CredentialCipher) -> Dict[str, Any]:
        out = self.to_dict()
        out["api_key"] = cipher.encrypt(self.api_key)
        out["webhook_secret"] = cipher.encrypt(self.webhook_secret)
        return out

    @staticmethod
    def from_stored_dict(data: Dict[str, Any], cipher: CredentialCipher) -> "Credentials":
        creds = Credentials.from_dict(data)
        creds.api_key = cipher.decrypt(creds.api_key) or ""
        creds.webhook_secret = cipher.decrypt(creds.webhook_secret)
        return creds


@dataclass
class SyncConfig:
    enabled: bool = True
    interval_ms: int = 300_000
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "interval_ms": int(self.interval_ms),
            "last_sync_at": to_iso(self.last_sync_at),
            "last_sync_status": self.last_sync_status,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SyncConfig":
        return SyncConfig(
            enabled=bool(data.get("enabled", True)),
            interval_ms=int(data.get("interval_ms") or 300_000),
            last_sync_at=parse_datetime(data.get("last_sync_at")),
            last_sync_status=data.get("last_sync_status"),
        )


@dataclass
class IntegrationStats:
    transaction_count: int = 0
    total_revenue: int = 0
    average_transaction: int = 0
    events_skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_count": int(self.transaction_count),
            "total_revenue": int(self.total_revenue),
            "average_transaction": int(self.average_transaction),
            "events_skipped": int(self.events_skipped),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "IntegrationStats":
        return IntegrationStats(
            transaction_count=int(data.get("transaction_count") or 0),
            total_revenue=int(data.get("total_revenue") or 0),
            average_transaction=int(data.get("average_transaction") or 0),
            events_skipped=int(data.get("events_skipped") or 0),
        )


@dataclass
class WebhookConfig:
    enabled: bool = False
    events: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "events": list(self.events)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WebhookConfig":
        return WebhookConfig(enabled=bool(data.get("enabled", False)), events=list(data.get("events") or []))


@dataclass
class POSIntegration:
    venue_id: str
    provider: str
    status: IntegrationStatus = "DISCONNECTED"
    credentials: Optional[Credentials] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    sync_config: SyncConfig = field(default_factory=SyncConfig)
    stats: IntegrationStats = field(default_factory=IntegrationStats)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)

    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_sync_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.venue_id}:{self.provider}"

    @property
    def is_connected(self) -> bool:
        return self.status in ("CONNECTED", "SYNCING")

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "venue_id": self.venue_id,
            "provider": self.provider,
            "status": self.status,
            "metadata": dict(self.metadata),
            "sync_config": self.sync_config.to_dict(),
            "stats": self.stats.to_dict(),
            "webhooks": self.webhooks.to_dict(),
            "connected_at": to_iso(self.connected_at),
            "disconnected_at": to_iso(self.disconnected_at),
            "last_error": self.last_error,
            "consecutive_failures": int(self.consecutive_failures),
            "next_sync_at": to_iso(self.next_sync_at),
            "environment": None if self.credentials is None else self.credentials.environment,
        }

    def to_dict(self, cipher: CredentialCipher) -> Dict[str, Any]:
        out = self.to_public_dict()
        out.pop("environment", None)
        out["credentials"] = None if self.credentials is None else self.credentials.to_stored_dict(cipher)
        return out

    @staticmethod
    def from_dict(data: Dict[str, Any], cipher: CredentialCipher) -> "POSIntegration":
        creds = data.get("credentials")
        return POSIntegration(
            venue_id=str(data["venue_id"]),
            provider=str(data["provider"]).upper(),
            status=str(data.get("status") or "DISCONNECTED"),
            credentials=Credentials.from_stored_dict(creds, cipher) if isinstance(creds, dict) else None,
            metadata=dict(data.get("metadata") or {}),
            sync_config=SyncConfig.from_dict(data.get("sync_config") or {}),
            stats=IntegrationStats.from_dict(data.get("stats") or {}),
            webhooks=WebhookConfig.from_dict(data.get("webhooks") or {}),
            connected_at=parse_datetime(data.get("connected_at")),
            disconnected_at=parse_datetime(data.get("disconnected_at")),
            last_error=data.get("last_error"),
            consecutive_failures=int(data.get("consecutive_failures") or 0),
            next_sync_at=parse_datetime(data.get("next_sync_at")),
        )
