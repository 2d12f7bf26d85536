# stream_utils/parsing/errors.py

"""
Error taxonomy for the relay.

Terminal (propagated as an error envelope):
- UpstreamUnavailable: connection/network failure before streaming
- UpstreamHTTPError: non-2xx response from the provider

Recovered locally (logged, counted, never abort the stream):
- MalformedChunk: one event-stream line is not valid JSON
- ReferenceParseFailure: every extraction strategy failed for a reference block

Cancellation is not an error and has no exception type.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for relay and parser errors"""


class UpstreamUnavailable(RelayError):
    """The upstream service could not be reached"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class UpstreamHTTPError(RelayError):
    """The upstream answered with a non-2xx status"""

    def __init__(self, status_code: int, body: str = "", url: Optional[str] = None):
        super().__init__(f"External API error! status: {status_code}, message: {body}")
        self.status_code = status_code
        self.body = body
        self.url = url


class MalformedChunk(RelayError):
    """A single stream line failed to parse as JSON"""

    def __init__(self, line: str, reason: str = ""):
        super().__init__(f"Malformed stream line: {reason}")
        self.line = line
        self.reason = reason


class ReferenceParseFailure(RelayError):
    """All reference extraction strategies were exhausted for one block"""

    def __init__(self, payload: str):
        super().__init__("No reference records could be extracted from block")
        self.payload = payload


def error_envelope(exc: BaseException, error: str = "Internal server error") -> Dict[str, Any]:
    """Uniform `{error, details, timestamp}` body returned to the consumer"""
    return {
        "error": error,
        "details": str(exc),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def user_facing_message(exc: BaseException) -> str:
    """Readable message for the chat UI, keyed on the failure kind"""
    if isinstance(exc, UpstreamHTTPError):
        if exc.status_code == 404:
            return "The legal assistant service was not found, please check the service status."
        if exc.status_code >= 500:
            return "The legal assistant server is busy, please try again later."
        return f"The legal assistant rejected the request (HTTP {exc.status_code})."
    if isinstance(exc, UpstreamUnavailable):
        return "Network error, the legal assistant service could not be reached."
    return "The legal assistant service is temporarily unavailable, please try again later."
