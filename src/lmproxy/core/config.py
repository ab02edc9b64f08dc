"""Gateway configuration and model resolution.

The configuration is built once at startup and handed to the server,
the authentication matchers and the backend. Nothing mutates it after
construction.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv

from lmproxy.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 23333

_DATE_SUFFIX = re.compile(r"-\d{8}$")

BACKENDS = ("openai", "anthropic")


def parse_aliases(entries: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse ``pattern=model`` strings into an alias mapping.

    Raises:
        ValueError: If an entry has no ``=`` separator.
    """
    aliases: dict[str, str] = {}
    for entry in entries:
        pattern, sep, target = entry.partition("=")
        if not sep or not pattern.strip() or not target.strip():
            raise ValueError(f"Invalid model alias '{entry}', expected PATTERN=MODEL")
        aliases[pattern.strip()] = target.strip()
    return aliases


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class GatewayConfig:
    """Read-only settings for one gateway process.

    Attributes:
        api_key: Shared secret clients must present. ``None`` disables
            authentication for every protocol.
        host: Bind address.
        port: Bind port (``0`` picks a free port).
        models: Model identifiers clients may request. Empty accepts any.
        default_model: Used when a request names no model.
        model_aliases: ``fnmatch`` pattern to model identifier, checked
            when a requested model is not listed in ``models``.
        backend: Backend kind, ``"openai"`` or ``"anthropic"``.
        backend_base_url: Override for the backend SDK's base URL.
        backend_api_key: Credential for the backend. Falls back to the
            SDK's own environment variable when ``None``.
        request_timeout: Seconds to wait for a client's request line.
    """

    api_key: str | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    models: tuple[str, ...] = ()
    default_model: str | None = None
    model_aliases: dict[str, str] = field(default_factory=dict)
    backend: str = "openai"
    backend_base_url: str | None = None
    backend_api_key: str | None = None
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(
                f"Unknown backend '{self.backend}', expected one of {', '.join(BACKENDS)}"
            )

    @classmethod
    def from_env(cls, env_file: str | None = ".env", **overrides: Any) -> GatewayConfig:
        """Build a configuration from ``LMPROXY_*`` environment variables.

        Values in ``env_file`` are loaded first without overriding the
        process environment. Keyword overrides that are not ``None`` win
        over both.
        """
        if env_file:
            load_dotenv(env_file)

        env = os.environ
        values: dict[str, Any] = {
            "api_key": env.get("LMPROXY_API_KEY") or None,
            "host": env.get("LMPROXY_HOST", DEFAULT_HOST),
            "port": int(env.get("LMPROXY_PORT", DEFAULT_PORT)),
            "models": tuple(_split_csv(env.get("LMPROXY_MODELS"))),
            "default_model": env.get("LMPROXY_DEFAULT_MODEL") or None,
            "model_aliases": parse_aliases(_split_csv(env.get("LMPROXY_MODEL_ALIASES"))),
            "backend": env.get("LMPROXY_BACKEND", "openai"),
            "backend_base_url": env.get("LMPROXY_BACKEND_BASE_URL") or None,
            "backend_api_key": env.get("LMPROXY_BACKEND_API_KEY") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_key)

    def available_models(self) -> list[str]:
        """Return the advertised model list, default model first."""
        models = list(self.models)
        if self.default_model and self.default_model not in models:
            models.insert(0, self.default_model)
        return models

    def resolve_model(self, requested: str | None) -> str:
        """Map a client-supplied model name onto a backend model.

        Resolution order: exact match, match with a trailing ``-YYYYMMDD``
        date removed, alias pattern, then pass-through when no model list
        is configured.

        Raises:
            ValidationError: If no model is requested and there is no default.
            NotFoundError: If the model is not listed and no alias matches.
        """
        if not requested:
            if self.default_model:
                return self.default_model
            raise ValidationError(
                "model is required",
                code="missing_required_parameter",
                param="model",
            )

        if requested in self.models:
            return requested
        if not self.models:
            return self._apply_alias(requested)

        undated = _DATE_SUFFIX.sub("", requested)
        if undated in self.models:
            return undated

        aliased = self._apply_alias(requested)
        if aliased != requested:
            logger.debug("Model alias: %s -> %s", requested, aliased)
            return aliased

        raise NotFoundError(
            f"Model '{requested}' not found. Use /api/openai/v1/models to list "
            "available models and pass a valid model ID."
        )

    def _apply_alias(self, requested: str) -> str:
        for pattern, target in self.model_aliases.items():
            if fnmatch.fnmatchcase(requested, pattern):
                return target
        return requested
