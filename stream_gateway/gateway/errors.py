"""Error taxonomy shared by the gateway server and its client.

Upstream failures carry an explicit ``status_code`` set by the transport
layer, so classification is a field comparison rather than message parsing.
"""

from __future__ import annotations

# Rate limit exceeded / service overloaded
TRANSIENT_STATUS_CODES = frozenset({429, 503})


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ClientInputError(GatewayError):
    """Malformed or missing request fields. Never retried."""

    status_code = 400


class UpstreamError(GatewayError):
    """A failure reported by the model provider or by the gateway."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES


class TransientUpstreamError(UpstreamError):
    """Rate-limit or overload signal; recovered by the retry policy."""


class RateLimitError(TransientUpstreamError):
    def __init__(self, message: str = "Rate limit exceeded", status_code: int = 429):
        super().__init__(message, status_code)


class ServiceOverloadedError(TransientUpstreamError):
    def __init__(self, message: str = "Service overloaded", status_code: int = 503):
        super().__init__(message, status_code)


class UpstreamFailure(UpstreamError):
    """Non-transient failure (bad model name, policy rejection, auth)."""


class DecodeError(GatewayError):
    """Terminal envelope present but not valid JSON."""


def error_from_status(status_code: int, message: str) -> UpstreamError:
    """Rebuild a typed upstream error from a status code."""
    if status_code == 429:
        return RateLimitError(message, status_code)
    if status_code == 503:
        return ServiceOverloadedError(message, status_code)
    return UpstreamFailure(message, status_code)
