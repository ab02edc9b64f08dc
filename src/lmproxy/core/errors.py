"""Error hierarchy for the gateway.

Each error carries the HTTP status it is answered with plus the fields the
protocol error bodies need (``error_type``, ``code``, ``param``). Protocol
modules render these into their own nesting; the route layer only picks
the status code.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        status_code: HTTP status the route layer answers with.
        error_type: Protocol-neutral category (``invalid_request_error``,
            ``authentication_error``, ``not_found_error``, ``api_error``).
        code: Machine-readable detail code, if any.
        param: Offending request parameter, if any.
    """

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        param: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.param = param
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message,
            "code": self.code,
            "param": self.param,
        }


class ValidationError(GatewayError):
    """400: Malformed or unsupported request shape."""

    status_code = 400
    error_type = "invalid_request_error"


class StatefulContinuationError(ValidationError):
    """400: The client referenced server-held state this gateway never keeps."""

    def __init__(self, param: str) -> None:
        super().__init__(
            f"{param} is not supported. This server is stateless. Please send "
            "full conversation history in the input array.",
            code="unsupported_parameter",
            param=param,
        )


class AuthError(GatewayError):
    """401: Missing or incorrect credential."""

    status_code = 401
    error_type = "authentication_error"


class NotFoundError(GatewayError):
    """404: Unknown model or endpoint."""

    status_code = 404
    error_type = "not_found_error"


class UpstreamError(GatewayError):
    """500: The backend failed during a call or a stream."""

    status_code = 500
    error_type = "api_error"


# ---------------------------------------------------------------------------
# HTTP status code mapping
# ---------------------------------------------------------------------------

_STATUS_TO_ERROR: dict[int, type[GatewayError]] = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
    422: ValidationError,
    500: UpstreamError,
    502: UpstreamError,
    503: UpstreamError,
    504: UpstreamError,
}


def error_from_status(status_code: int, message: str) -> GatewayError:
    """Create the GatewayError subclass matching an upstream HTTP status.

    Statuses without a dedicated class become an ``UpstreamError`` that
    keeps the original status code.

    Args:
        status_code: HTTP status code returned by the backend.
        message: Error message.

    Returns:
        An instance of the matching GatewayError subclass.
    """
    cls = _STATUS_TO_ERROR.get(status_code)
    if cls is None:
        return UpstreamError(message, status_code=status_code)
    return cls(message)
