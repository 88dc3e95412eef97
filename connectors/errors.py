"""
Error taxonomy for the connect / callback / sync flows.

Every error carries a ``user_message`` that is safe to show to the end user
(or to put in a redirect URL) and an ``http_status`` used by the API layer.
The raw ``str(exc)`` may contain provider response bodies and is only logged.
"""

from __future__ import annotations

from typing import Optional


class IntegrationError(Exception):
    """Base class for all integration failures."""

    http_status: int = 500
    default_message: str = "Integration request failed"

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.default_message)
        self.user_message = user_message or self.default_message


class MissingParameter(IntegrationError):
    http_status = 400

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is required", user_message=f"{field} is required")
        self.field = field


class UnknownProvider(IntegrationError):
    http_status = 404

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"Unknown provider '{provider}'",
            user_message=f"Provider '{provider}' not found",
        )
        self.provider = provider


class InvalidState(IntegrationError):
    http_status = 400
    default_message = "Invalid state parameter"


class ProviderAuthorizationDenied(IntegrationError):
    http_status = 400
    default_message = "Authorization was denied"

    def __init__(self, error: str, description: Optional[str] = None) -> None:
        super().__init__(
            f"Provider returned error={error!r}",
            user_message=description or error,
        )
        self.error = error


class TokenExchangeFailure(IntegrationError):
    http_status = 502
    default_message = "Failed to complete connection"


class AccountInfoUnavailable(IntegrationError):
    http_status = 502
    default_message = "Account information unavailable"


class ConnectionExpired(IntegrationError):
    http_status = 409
    default_message = "Connection expired, please reconnect"


class SyncUnitFailure(IntegrationError):
    http_status = 502
    default_message = "Sync failed"

    def __init__(self, detail: str) -> None:
        # Per-unit messages end up in the sync response, so the detail is the message.
        super().__init__(detail, user_message=detail)


class ConnectionNotFound(IntegrationError):
    http_status = 404

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"No active {provider} connection",
            user_message=f"{provider} is not connected",
        )
        self.provider = provider


class InvalidConnectionState(IntegrationError):
    http_status = 409
    default_message = "Invalid connection state"


class UnsupportedOperation(IntegrationError):
    http_status = 400
    default_message = "Operation not supported for this provider"


class CalendarEventFailure(IntegrationError):
    http_status = 502
    default_message = "Calendar event request failed"

    def __init__(self, detail: str) -> None:
        # Reported per meeting, so the detail is the message.
        super().__init__(detail, user_message=detail)
