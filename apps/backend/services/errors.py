"""
Engine error taxonomy.

Every error carries a stable machine code and an HTTP status so routes can
map it to the response envelope without inspecting the type.
"""

from typing import Any, Optional


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, status_code: int = 400, details: Any = None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(EngineError):
    """Malformed transaction event. Logged and skipped, never retried."""

    code = "invalid_event"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, 400, details)


class ConfigError(EngineError):
    """Malformed or conflicting spend rule, rejected at upsert time."""

    code = "invalid_rule"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, 400, details)


class NotFoundError(EngineError):
    code = "not_found"

    def __init__(self, message: str):
        super().__init__(message, 404)


class IntegrationConflictError(EngineError):
    code = "integration_conflict"

    def __init__(self, message: str):
        super().__init__(message, 409)


class IntegrationNotConnectedError(EngineError):
    code = "integration_not_connected"

    def __init__(self, message: str = "POS integration not connected"):
        super().__init__(message, 400)


class WebhookSignatureError(EngineError):
    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, 401)


class ConnectorError(EngineError):
    """
    Transient failure talking to a POS provider.

    kind: auth | network | rate_limit | timeout | http
    """

    code = "connector_error"

    def __init__(self, message: str, kind: str = "http", provider_status: Optional[int] = None):
        super().__init__(message, 502)
        self.kind = kind
        self.provider_status = provider_status


class ConnectError(EngineError):
    """Capability probe failed while connecting an integration."""

    code = "connect_failed"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, 400, details)


class CredentialStoreError(EngineError):
    """POS credentials cannot be encrypted or decrypted with the configured key."""

    code = "credential_store_error"

    def __init__(self, message: str):
        super().__init__(message, 500)
