"""
Toast connector
===============

Toast reports amounts in decimal dollars; the engine works in cents.

- Each closed check is one sale (external_id = check guid).
- Refunds are reported as a running total per check. Each new total is one
  reversal (external_id = "<check guid>:refund:<total cents>") carrying the
  total; the ledger appends only the part not yet reversed.
- A check voided after it closed keeps its sale and gets a reversal for the
  full amount, so a void seen after the sale nets to zero.
- Webhook signature: base64(HMAC-SHA256(secret, body)) in Toast-Signature.
"""

from __future__ import annotations

import hmac
import json
import re
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import httpx

from apps.backend.services.errors import ValidationError
from apps.backend.services.pos.base_connector import Location, POSConnector, hmac_sha256_b64, log
from apps.backend.services.tiers.models import REFUND_RUNNING_TOTAL, TransactionEvent
from apps.backend.utils.clock import as_utc, parse_datetime, utcnow

SIGNATURE_HEADER = "toast-signature"

_TZ_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def to_cents(value: Any) -> int:
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"invalid money amount: {value!r}")


def parse_toast_datetime(value: Any) -> Optional[datetime]:
    """
    Toast sends "2024-05-01T22:15:00.000+0000".
    """
    if not value:
        return None
    return parse_datetime(_TZ_NO_COLON.sub(r"\1:\2", str(value).strip()))


def format_toast_datetime(dt: datetime) -> str:
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.000+0000")


class ToastConnector(POSConnector):
    PROVIDER = "TOAST"
    PAGE_SIZE = 100
    # ordersBulk rejects ranges longer than one month
    MAX_RANGE = timedelta(days=30)

    def base_url(self) -> str:
        if self.credentials.environment == "SANDBOX":
            return "https://ws-sandbox-api.eng.toasttab.com"
        return "https://ws-api.toasttab.com"

    def default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Toast-Restaurant-External-ID": self.credentials.location_id,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            msg = body.get("message") or body.get("developerMessage") or body.get("error")
            if msg:
                return str(msg)
        return response.text or f"Toast API error ({response.status_code})"

    # ---------------------------------------------------------
    # Locations
    # ---------------------------------------------------------
    async def list_locations(self) -> List[Location]:
        """
        A Toast credential is scoped to one restaurant, so the probe returns
        exactly that restaurant.
        """
        guid = self.credentials.location_id
        data = await self.get(f"/restaurants/v1/restaurants/{guid}")
        general = data.get("general") or {}
        return [
            Location(
                id=str(data.get("guid") or guid),
                name=general.get("locationName") or general.get("name"),
                merchant_name=general.get("name"),
                currency=general.get("currencyCode"),
                timezone=general.get("timeZone"),
            )
        ]

    # ---------------------------------------------------------
    # Polling
    # ---------------------------------------------------------
    async def _orders_between(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        orders: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = await self.get(
                "/orders/v2/ordersBulk",
                params={
                    "startDate": format_toast_datetime(start),
                    "endDate": format_toast_datetime(end),
                    "page": page,
                    "pageSize": self.PAGE_SIZE,
                },
            )
            batch = [o for o in (batch or []) if isinstance(o, dict)]
            orders.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                return orders
            page += 1

    async def poll_transactions(
        self, location_id: str, since: datetime, until: Optional[datetime] = None
    ) -> List[TransactionEvent]:
        end = as_utc(until) if until is not None else utcnow()
        start = as_utc(since)

        orders: List[Dict[str, Any]] = []
        while start < end:
            chunk_end = min(start + self.MAX_RANGE, end)
            orders.extend(await self._orders_between(start, chunk_end))
            start = chunk_end

        sales: List[TransactionEvent] = []
        refunds: List[TransactionEvent] = []
        for order in orders:
            try:
                order_sales, order_refunds = self._order_to_events(order)
            except ValidationError as e:
                self.skipped += 1
                log.warning(f"[POS] TOAST skipped order {order.get('guid')} venue={self.venue_id}: {e.message}")
                continue
            sales.extend(order_sales)
            refunds.extend(order_refunds)
        return sales + refunds

    # ---------------------------------------------------------
    # Webhooks
    # ---------------------------------------------------------
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str], url: str) -> bool:
        secret = self.credentials.webhook_secret
        if not secret or not signature:
            return False
        return hmac.compare_digest(hmac_sha256_b64(secret, payload), signature)

    def parse_webhook_payload(self, payload: bytes) -> List[TransactionEvent]:
        try:
            body = json.loads(payload or b"{}")
        except ValueError as e:
            raise ValidationError(f"webhook body is not JSON: {e}")
        if not isinstance(body, dict):
            raise ValidationError("webhook body must be an object")

        order = (body.get("details") or {}).get("order")
        if not isinstance(order, dict):
            return []
        sales, refunds = self._order_to_events(order)
        return sales + refunds

    # ---------------------------------------------------------
    # Mapping
    # ---------------------------------------------------------
    def _order_to_events(self, order: Dict[str, Any]) -> Tuple[List[TransactionEvent], List[TransactionEvent]]:
        order_voided = bool(order.get("voided") or order.get("deleted"))

        sales: List[TransactionEvent] = []
        refunds: List[TransactionEvent] = []
        for check in order.get("checks") or []:
            if not isinstance(check, dict) or not check.get("closedDate"):
                continue
            guid = check.get("guid")
            if not guid:
                raise ValidationError("check without guid")

            occurred = parse_toast_datetime(check.get("closedDate")) or utcnow()
            customer = check.get("customer") or {}
            amount = to_cents(check.get("totalAmount"))
            if amount <= 0:
                continue

            sales.append(
                TransactionEvent(
                    external_id=str(guid),
                    venue_id=self.venue_id,
                    amount=amount,
                    occurred_at=occurred,
                    source_provider="TOAST",
                    customer_ref=customer.get("guid"),
                    meta={"order_guid": order.get("guid"), "display_number": check.get("displayNumber")},
                )
            )

            voided = order_voided or bool(check.get("voided") or check.get("deleted"))
            if voided:
                reversed_total = amount
                reversed_at = parse_toast_datetime(check.get("voidDate") or order.get("voidDate"))
            else:
                reversed_total, reversed_at = self._refund_total(check)
            if reversed_total <= 0:
                continue

            total = min(reversed_total, amount)
            refunds.append(
                TransactionEvent(
                    external_id=f"{guid}:refund:{total}",
                    venue_id=self.venue_id,
                    amount=-total,
                    occurred_at=reversed_at or occurred,
                    source_provider="TOAST",
                    reversal_of=str(guid),
                    meta={"order_guid": order.get("guid"), "voided": voided, REFUND_RUNNING_TOTAL: total},
                )
            )
        return sales, refunds

    def _refund_total(self, check: Dict[str, Any]) -> Tuple[int, Optional[datetime]]:
        """
        Sum of refunds across the check's payments, and the latest refund date.
        """
        refunded = 0
        refunded_at: Optional[datetime] = None
        for payment in check.get("payments") or []:
            refund = (payment or {}).get("refund") or {}
            if not refund.get("refundAmount"):
                continue
            refunded += to_cents(refund.get("refundAmount"))
            when = parse_toast_datetime(refund.get("refundDate"))
            if when is not None and (refunded_at is None or when > refunded_at):
                refunded_at = when
        return refunded, refunded_at
