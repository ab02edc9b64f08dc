"""Namespaced identifier generation.

Every identifier the gateway mints has the form ``<prefix>_AM-<suffix>``.
Clients recognise the protocol-standard prefix (``resp``, ``msg``, ``fc``,
...); the ``AM-`` marker sits directly after it.
"""

from __future__ import annotations

import enum
import itertools
import secrets
import string
import threading
import time

_ALPHABET = string.ascii_lowercase + string.digits
_MARKER = "AM"

_counter = itertools.count()
_counter_lock = threading.Lock()


class IdNamespace(str, enum.Enum):
    """Wire prefixes for generated identifiers."""

    RESPONSE = "resp"
    CHAT_COMPLETION = "chatcmpl"
    MESSAGE = "msg"
    FUNCTION_CALL = "fc"
    CALL = "call"
    TOOL_USE = "toolu"


# Namespaces whose identifiers carry a millisecond timestamp.
_TIMESTAMPED = frozenset({IdNamespace.RESPONSE, IdNamespace.CHAT_COMPLETION})


def random_string(length: int) -> str:
    """Return ``length`` cryptographically random characters from ``[a-z0-9]``."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _sequence() -> str:
    with _counter_lock:
        n = next(_counter)
    digits = []
    while True:
        n, rem = divmod(n, len(_ALPHABET))
        digits.append(_ALPHABET[rem])
        if n == 0:
            break
    return "".join(reversed(digits))


def generate_id(namespace: IdNamespace) -> str:
    """Mint a new identifier in ``namespace``.

    The suffix combines a process-wide sequence number with random
    characters, so two calls never return the same string even within one
    millisecond.

    Args:
        namespace: Which wire prefix to use.

    Returns:
        ``resp_AM-<ms>-<rand>`` for timestamped namespaces,
        ``<prefix>_AM-<rand>`` otherwise.
    """
    seq = _sequence()
    if namespace in _TIMESTAMPED:
        ms = int(time.time() * 1000)
        return f"{namespace.value}_{_MARKER}-{ms}-{random_string(8)}{seq}"
    return f"{namespace.value}_{_MARKER}-{random_string(12)}{seq}"
