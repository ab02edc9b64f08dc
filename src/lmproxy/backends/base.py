"""Base protocol for chat-completion backends."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from lmproxy.core.models import (
    ChatRequest,
    CompletionResult,
    StreamFragment,
    estimate_tokens,
)
from lmproxy.streaming import FragmentCollector


@runtime_checkable
class ChatBackend(Protocol):
    """The single chat-completion capability every protocol is served by.

    ``stream`` yields fragments terminated by exactly one ``End`` or
    ``Failed``. Errors raised before the first fragment surface as
    ``GatewayError`` subclasses.
    """

    def backend_name(self) -> str:
        """Return the backend identifier (e.g. 'openai', 'anthropic')."""
        ...

    async def complete(self, request: ChatRequest) -> CompletionResult:
        """Run a completion and return the aggregate result."""
        ...

    def stream(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        """Run a completion, yielding fragments as they arrive."""
        ...

    async def count_tokens(self, text: str) -> int:
        """Estimate the token count of ``text`` for this backend."""
        ...


class BaseBackend:
    """Defaults shared by concrete backends.

    ``complete`` collects ``stream``; ``count_tokens`` uses a character
    based estimate.
    """

    def backend_name(self) -> str:
        return type(self).__name__

    def stream(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        raise NotImplementedError

    async def complete(self, request: ChatRequest) -> CompletionResult:
        return await FragmentCollector().collect(self.stream(request))

    async def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)
