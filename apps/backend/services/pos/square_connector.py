"""
Square connector
================

REST v2, version pinned with the Square-Version header.

- Completed payments become sales.
- Completed refunds become reversals of their payment.
- Webhook signature: base64(HMAC-SHA256(signature_key, notification_url + body)),
  sent as x-square-hmacsha256-signature.
"""

from __future__ import annotations

import hmac
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from apps.backend.services.errors import ValidationError
from apps.backend.services.pos.base_connector import Location, POSConnector, hmac_sha256_b64
from apps.backend.services.tiers.models import TransactionEvent
from apps.backend.utils.clock import parse_datetime, to_iso, utcnow

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


class SquareConnector(POSConnector):
    PROVIDER = "SQUARE"
    API_VERSION = "2024-12-18"
    PAGE_LIMIT = 100

    def base_url(self) -> str:
        if self.credentials.environment == "SANDBOX":
            return "https://connect.squareupsandbox.com"
        return "https://connect.squareup.com"

    def default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Square-Version": self.API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def error_message(self, response: httpx.Response) -> str:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            errors = []
        if errors and isinstance(errors[0], dict):
            return str(errors[0].get("detail") or errors[0].get("code") or response.text)
        return response.text or f"Square API error ({response.status_code})"

    # ---------------------------------------------------------
    # Locations
    # ---------------------------------------------------------
    async def list_locations(self) -> List[Location]:
        data = await self.get("/v2/locations")
        out: List[Location] = []
        for loc in data.get("locations") or []:
            out.append(
                Location(
                    id=str(loc.get("id")),
                    name=loc.get("name"),
                    merchant_name=loc.get("business_name"),
                    currency=loc.get("currency"),
                    timezone=loc.get("timezone"),
                )
            )
        return out

    # ---------------------------------------------------------
    # Polling
    # ---------------------------------------------------------
    async def _paged(self, path: str, key: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            data = await self.get(path, params=page_params)
            items.extend(x for x in (data.get(key) or []) if isinstance(x, dict))
            cursor = data.get("cursor")
            if not cursor:
                return items

    async def poll_transactions(
        self, location_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[TransactionEvent]:
        params = {
            "location_id": location_id,
            "begin_time": to_iso(since),
            "sort_order": "ASC",
            "limit": self.PAGE_LIMIT,
        }
        if until is not None:
            params["end_time"] = to_iso(until)
        payments = await self._paged("/v2/payments", "payments", params)
        refunds = await self._paged("/v2/refunds", "refunds", params)
        # Sales first so refunds can find their original in the ledger
        return self._collect(payments, self._payment_to_event) + self._collect(refunds, self._refund_to_event)

    # ---------------------------------------------------------
    # Webhooks
    # ---------------------------------------------------------
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str], url: str) -> bool:
        secret = self.credentials.webhook_secret
        if not secret or not signature:
            return False
        expected = hmac_sha256_b64(secret, url.encode() + payload)
        return hmac.compare_digest(expected, signature)

    def parse_webhook_payload(self, payload: bytes) -> List[TransactionEvent]:
        try:
            body = json.loads(payload or b"{}")
        except ValueError as e:
            raise ValidationError(f"webhook body is not JSON: {e}")
        if not isinstance(body, dict):
            raise ValidationError("webhook body must be an object")

        kind = str(body.get("type") or "")
        obj = ((body.get("data") or {}).get("object")) or {}
        if kind.startswith("payment."):
            event = self._payment_to_event(obj.get("payment") or {})
        elif kind.startswith("refund."):
            event = self._refund_to_event(obj.get("refund") or {})
        else:
            return []
        return [] if event is None else [event]

    # ---------------------------------------------------------
    # Mapping
    # ---------------------------------------------------------
    def _payment_to_event(self, payment: Dict[str, Any]) -> Optional[TransactionEvent]:
        if payment.get("status") != "COMPLETED":
            return None
        if not payment.get("id"):
            raise ValidationError("payment without id")
        money = payment.get("amount_money") or {}
        try:
            return TransactionEvent(
                external_id=str(payment["id"]),
                venue_id=self.venue_id,
                amount=int(money.get("amount")),
                occurred_at=parse_datetime(payment.get("created_at")) or utcnow(),
                source_provider="SQUARE",
                customer_ref=payment.get("customer_id"),
                currency=str(money.get("currency") or "USD"),
                meta={
                    "order_id": payment.get("order_id"),
                    "location_id": payment.get("location_id"),
                    "source_type": payment.get("source_type"),
                },
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"malformed Square payment {payment.get('id')}: {e}")

    def _refund_to_event(self, refund: Dict[str, Any]) -> Optional[TransactionEvent]:
        if refund.get("status") != "COMPLETED":
            return None
        if not refund.get("id") or not refund.get("payment_id"):
            raise ValidationError("refund without id or payment_id")
        money = refund.get("amount_money") or {}
        try:
            return TransactionEvent(
                external_id=str(refund["id"]),
                venue_id=self.venue_id,
                amount=-abs(int(money.get("amount"))),
                occurred_at=parse_datetime(refund.get("created_at")) or utcnow(),
                source_provider="SQUARE",
                reversal_of=str(refund["payment_id"]),
                currency=str(money.get("currency") or "USD"),
                meta={"order_id": refund.get("order_id"), "reason": refund.get("reason")},
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"malformed Square refund {refund.get('id')}: {e}")
