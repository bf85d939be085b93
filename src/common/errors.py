"""Error taxonomy shared by the relay server and the client session layer.

Transport-level errors (establishment failures, lost sockets) close a session.
Content-level errors (malformed frames, tool dispatch failures) are handled
per frame and never tear a session down, with one exception: unbounded
carry-over growth in the stream parser is fatal.
"""


class RelayError(Exception):
    """Base exception for relay and session errors."""

    pass


class MicrophonePermissionError(RelayError, PermissionError):
    """Raised when the microphone cannot be acquired (denied or unavailable).

    Fatal to session start; the caller may retry by starting again.
    """

    pass


class TransportEstablishmentError(RelayError, ConnectionError):
    """Raised when an upstream or relay connection cannot be established."""

    pass


class ProtocolParseError(RelayError, ValueError):
    """Raised when the incremental stream cannot be parsed any further."""

    pass


class UpstreamError(RelayError):
    """Explicit error reported by the upstream AI provider.

    Attributes:
        code: Provider error code (e.g. "rate_limit_exceeded"), if known
        status: HTTP status code for request/response transports, if any
    """

    def __init__(self, message: str, code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class RateLimitError(UpstreamError):
    """Upstream signalled that the caller is over its request rate."""

    pass


class QuotaError(UpstreamError):
    """Upstream signalled that credits or quota are exhausted."""

    pass


def error_for_status(status: int, message: str) -> UpstreamError:
    """Map an HTTP error status to the matching upstream error.

    Args:
        status: HTTP status code returned by the upstream
        message: Human-readable error text

    Returns:
        RateLimitError for 429, QuotaError for 402, UpstreamError otherwise
    """
    if status == 429:
        return RateLimitError(message, code="rate_limit_exceeded", status=status)
    if status == 402:
        return QuotaError(message, code="payment_required", status=status)
    return UpstreamError(message, status=status)
