"""Content conversion shared by the protocol adapters.

Anything the backend cannot take natively degrades to a text part holding
the JSON of the original content, so every wire content item converts to
some part.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any

from lmproxy.core.errors import ValidationError
from lmproxy.core.models import DataPart, TextPart

logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r"^data:([\w.+-]+/[\w.+-]+);base64,(.*)$", re.DOTALL)

_SAMPLING_KEYS = ("temperature", "top_p", "stop")


def to_json_text(value: Any) -> str:
    """Serialize a value compactly the way clients send it."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def fallback_text(content: Any, reason: str = "unsupported content") -> TextPart:
    """Degrade unsupported content to a text part carrying its JSON."""
    kind = content.get("type", "?") if isinstance(content, dict) else type(content).__name__
    logger.warning("Degrading %s (%s) to text", reason, kind)
    return TextPart(text=to_json_text(content))


def stringify(value: Any) -> str:
    """Return strings unchanged and JSON-serialize everything else."""
    if isinstance(value, str):
        return value
    return to_json_text(value)


def decode_base64(mime_type: str, data: str) -> DataPart | None:
    """Decode base64 payload into a data part, ``None`` if undecodable."""
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return None
    return DataPart(mime_type=mime_type or "application/octet-stream", data=raw)


def parse_data_uri(url: str) -> DataPart | None:
    """Decode a ``data:<mime>;base64,<payload>`` URI, ``None`` otherwise."""
    match = _DATA_URI.match(url or "")
    if match is None:
        return None
    return decode_base64(match.group(1), match.group(2))


def encode_data(part: DataPart) -> str:
    return base64.b64encode(part.data).decode("ascii")


def sampling_options(body: dict[str, Any], *max_token_keys: str) -> dict[str, Any]:
    """Pick the sampling options the backend understands.

    Args:
        body: Wire request body.
        max_token_keys: Field names that carry the output token limit,
            checked in order.
    """
    options: dict[str, Any] = {}
    for key in max_token_keys:
        if body.get(key) is not None:
            options["max_tokens"] = body[key]
            break
    for key in _SAMPLING_KEYS:
        if body.get(key) is not None:
            options[key] = body[key]
    return options


# ---------------------------------------------------------------------------
# Request shape checks
# ---------------------------------------------------------------------------


def require_objects(
    value: Any, param: str, *, optional: bool = False
) -> list[dict[str, Any]]:
    """Check that ``value`` is an array of JSON objects.

    Args:
        value: The field taken from the request body.
        param: Dotted path of the field, reported back to the client.
        optional: Accept a missing (``None``) field as an empty array.

    Raises:
        ValidationError: If ``value`` is not an array or holds a non-object.
    """
    if value is None and optional:
        return []
    if not isinstance(value, list):
        raise ValidationError(
            f"{param}: Expected array, received {_type_name(value)}",
            code="invalid_type",
            param=param,
        )
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise ValidationError(
                f"{param}.{index}: Expected object, received {_type_name(item)}",
                code="invalid_type",
                param=f"{param}.{index}",
            )
    return value


def require_content(value: Any, param: str, *, optional: bool = False) -> None:
    """Check that ``value`` is a string or an array of content objects.

    Raises:
        ValidationError: If it is neither.
    """
    if value is None and optional:
        return
    if isinstance(value, str):
        return
    if not isinstance(value, list):
        raise ValidationError(
            f"{param}: Expected string or array, received {_type_name(value)}",
            code="invalid_type",
            param=param,
        )
    require_objects(value, param)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__
