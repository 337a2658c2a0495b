from __future__ import annotations

from datetime import datetime


class GatewayError(Exception):
    """Base error for infergate."""

    code = "GatewayError"


class ProviderConfigError(GatewayError):
    """Missing or invalid provider configuration."""

    code = "ProviderConfigError"


class Unauthenticated(GatewayError):
    """Missing, malformed, unknown or revoked credential."""

    code = "Unauthenticated"


class MalformedRequest(GatewayError):
    """Request shape rejected before any business logic ran."""

    code = "MalformedRequest"

    def __init__(self, message: str, *, details: list | dict | None = None) -> None:
        super().__init__(message)
        self.details = details


class RateLimited(GatewayError):
    """Caller exceeded the per-user request ceiling for the rolling window."""

    code = "RateLimited"

    def __init__(self, message: str, *, retry_after_s: int, reset_at: datetime) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s
        self.reset_at = reset_at


class QuotaExceeded(GatewayError):
    """Tenant is over its monthly token budget."""

    code = "QuotaExceeded"

    def __init__(self, message: str, *, current: int, limit: int, reset_at: datetime) -> None:
        super().__init__(message)
        self.current = current
        self.limit = limit
        self.reset_at = reset_at


class UpstreamError(GatewayError):
    """Model provider call failed; never retried inside the gateway."""

    code = "UpstreamError"
    reason = "UpstreamError"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeout(UpstreamError):
    """Provider did not answer within the configured timeout."""

    reason = "UpstreamTimeout"


class UpstreamRejected(UpstreamError):
    """Provider answered with an error status (including its own 429)."""

    reason = "UpstreamRejected"


class UpstreamMalformedResponse(UpstreamError):
    """Provider payload could not be parsed into a completion."""

    reason = "UpstreamMalformedResponse"


class LedgerError(GatewayError):
    """Usage ledger storage failure."""

    code = "LedgerError"


class LedgerReadFailed(LedgerError):
    """Aggregate read failed; limiter/quota policy decides open or closed."""

    code = "LedgerUnavailable"


class LedgerWriteFailed(LedgerError):
    """Usage append failed; recovered locally, never surfaced to callers."""

    code = "LedgerWriteFailed"
