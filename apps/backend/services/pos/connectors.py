from __future__ import annotations

from typing import Any, Dict, Type

from apps.backend.services.pos.base_connector import POSConnector
from apps.backend.services.pos.square_connector import SIGNATURE_HEADER as SQUARE_SIGNATURE_HEADER
from apps.backend.services.pos.square_connector import SquareConnector
from apps.backend.services.pos.toast_connector import SIGNATURE_HEADER as TOAST_SIGNATURE_HEADER
from apps.backend.services.pos.toast_connector import ToastConnector
from apps.backend.services.sync.integration import Credentials

CONNECTORS: Dict[str, Type[POSConnector]] = {
    "SQUARE": SquareConnector,
    "TOAST": ToastConnector,
}

SIGNATURE_HEADERS: Dict[str, str] = {
    "SQUARE": SQUARE_SIGNATURE_HEADER,
    "TOAST": TOAST_SIGNATURE_HEADER,
}


def normalize_provider(provider: str) -> str:
    value = str(provider or "").strip().upper()
    if value not in CONNECTORS:
        raise ValueError(f"Unsupported POS provider: {provider}")
    return value


def build_connector(provider: str, venue_id: str, credentials: Credentials, **kwargs: Any) -> POSConnector:
    return CONNECTORS[normalize_provider(provider)](venue_id, credentials, **kwargs)
