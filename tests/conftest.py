"""Shared fixtures: a scripted backend and a running gateway server."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest
from dotenv import load_dotenv

from lmproxy.backends.base import BaseBackend
from lmproxy.core.config import GatewayConfig
from lmproxy.core.ids import IdNamespace
from lmproxy.core.models import (
    ChatRequest,
    End,
    StreamFragment,
    TextDelta,
    Usage,
)
from lmproxy.server import GatewayServer

# Local overrides for developers; tests never depend on its contents.
load_dotenv(".env.local")

TEST_API_KEY = "test-secret"
TEST_MODEL = "test-model"


def has_namespace(identifier: str, namespace: IdNamespace) -> bool:
    """True if ``identifier`` was minted by ``generate_id`` in ``namespace``."""
    return identifier.startswith(f"{namespace.value}_AM-")


class FakeBackend(BaseBackend):
    """Backend that replays a scripted list of fragments.

    Every request it receives is recorded in ``requests``. ``script`` may
    be replaced between calls; an ``Exception`` instance in the script is
    raised at that point of the stream.
    """

    def __init__(self, script: list[Any] | None = None, delay: float = 0.0) -> None:
        self.script: list[Any] = script or [TextDelta("Hello!"), End(Usage(5, 2))]
        self.delay = delay
        self.requests: list[ChatRequest] = []
        self.yielded = 0
        self.closed = 0

    def backend_name(self) -> str:
        return "fake"

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        self.requests.append(request)
        try:
            for fragment in self.script:
                await asyncio.sleep(self.delay)
                if isinstance(fragment, Exception):
                    raise fragment
                self.yielded += 1
                yield fragment
        finally:
            self.closed += 1


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        api_key=TEST_API_KEY,
        host="127.0.0.1",
        port=0,
        models=(TEST_MODEL, "other-model"),
        default_model=TEST_MODEL,
        model_aliases={"claude-*": TEST_MODEL, "gemini-*": TEST_MODEL},
        request_timeout=5.0,
    )


@pytest.fixture()
async def server(gateway_config: GatewayConfig, fake_backend: FakeBackend):
    """A GatewayServer bound to a free port, backed by the scripted backend."""
    srv = GatewayServer(gateway_config, fake_backend, host="127.0.0.1", port=0)
    await srv.start()
    yield srv
    await srv.stop()
