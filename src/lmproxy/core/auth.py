"""Per-protocol API key matching.

Each wire protocol carries the client credential in a different place.
One matcher per protocol reads that location and compares it against the
configured secret in constant time. With no secret configured every
request is allowed.
"""

from __future__ import annotations

import copy
import enum
import hmac
import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)


class WireProtocol(str, enum.Enum):
    """The closed set of protocol families the gateway serves."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


_LABELS: dict[WireProtocol, str] = {
    WireProtocol.OPENAI: "OpenAI",
    WireProtocol.ANTHROPIC: "Anthropic",
    WireProtocol.GEMINI: "Gemini",
}

_REJECTION_BODIES: dict[WireProtocol, dict[str, Any]] = {
    WireProtocol.OPENAI: {
        "error": {
            "message": "Incorrect API key provided",
            "type": "invalid_request_error",
            "param": None,
            "code": "invalid_api_key",
        }
    },
    WireProtocol.ANTHROPIC: {
        "type": "error",
        "error": {
            "type": "authentication_error",
            "message": "Invalid API key",
        },
    },
    WireProtocol.GEMINI: {
        "error": {
            "code": 401,
            "message": "API key not valid. Please pass a valid API key.",
            "status": "UNAUTHENTICATED",
        }
    },
}


def constant_time_equal(provided: str, expected: str) -> bool:
    """Compare two secrets without leaking the first mismatching position."""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


class AuthMatcher:
    """Credential gate for one wire protocol.

    Args:
        protocol: Which protocol's credential location to read.
        secret: The configured API key, or ``None`` to allow everything.
    """

    def __init__(self, protocol: WireProtocol, secret: str | None) -> None:
        self.protocol = protocol
        self._secret = secret or None

    def extract(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> str | None:
        """Return the credential the client presented, if any.

        ``headers`` must be keyed by lower-case header name.
        """
        if self.protocol == WireProtocol.ANTHROPIC:
            return headers.get("x-api-key") or None
        if self.protocol == WireProtocol.OPENAI:
            auth = headers.get("authorization", "")
            if auth.startswith("Bearer "):
                return auth[len("Bearer "):] or None
            return None
        # Gemini: header first, then the ``key`` query parameter
        return headers.get("x-goog-api-key") or (query or {}).get("key") or None

    def is_authorized(
        self,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> bool:
        """Check the request credential against the configured secret."""
        if self._secret is None:
            return True

        provided = self.extract(headers, query)
        if provided is not None and constant_time_equal(provided, self._secret):
            return True

        logger.warning(
            "%s API authentication failed: %s",
            _LABELS[self.protocol],
            "invalid key" if provided else "missing key",
        )
        return False

    def rejection_body(self) -> dict[str, Any]:
        """The protocol-native 401 body."""
        return copy.deepcopy(_REJECTION_BODIES[self.protocol])


def build_matchers(secret: str | None) -> dict[WireProtocol, AuthMatcher]:
    """Create one matcher per protocol sharing the same secret."""
    return {protocol: AuthMatcher(protocol, secret) for protocol in WireProtocol}
