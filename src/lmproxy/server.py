"""HTTP server exposing the backend through every supported wire protocol.

Uses only Python standard library (``asyncio``, ``http``, ``json``,
``urllib.parse``) for the transport. Each connection carries one request;
responses are sent with ``Connection: close``. Streaming responses are
written as server-sent events until the sequence completes or the client
goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field, replace
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from lmproxy.backends.base import ChatBackend
from lmproxy.core.auth import build_matchers
from lmproxy.core.config import GatewayConfig
from lmproxy.core.errors import GatewayError, UpstreamError, ValidationError
from lmproxy.core.models import ChatRequest
from lmproxy.protocols import ApiFormat, ResponseContext, get_adapter
from lmproxy.protocols.base import output_text_of
from lmproxy.streaming import (
    SequenceEvent,
    SequenceEventKind,
    StreamEncoder,
    WireEvent,
    run_sequence,
)

logger = logging.getLogger(__name__)

_GEMINI_PATH = re.compile(
    r"^/api/gemini/v1beta/models/(?P<model>[^/:]+):(?P<method>[A-Za-z]+)$"
)

_POST_ROUTES: dict[str, ApiFormat] = {
    "/api/openai/chat/completions": ApiFormat.OPENAI_CHAT,
    "/api/openai/v1/chat/completions": ApiFormat.OPENAI_CHAT,
    "/api/openai/v1/responses": ApiFormat.OPENAI_RESPONSES,
    "/api/anthropic/v1/messages": ApiFormat.ANTHROPIC,
}


@dataclass
class HttpRequest:
    """One parsed HTTP request.

    Attributes:
        method: HTTP method, upper case.
        path: Request path without the query string or trailing slash.
        query: Decoded query parameters (last value wins).
        headers: Header values keyed by lower-case name.
        body: Raw request body.
    """

    method: str
    path: str
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class EventStream:
    """A streaming route result; written as ``text/event-stream``."""

    events: AsyncGenerator[WireEvent, None]


RouteResult = tuple[HTTPStatus, str] | EventStream


def _json(status: HTTPStatus, payload: dict[str, Any]) -> tuple[HTTPStatus, str]:
    return status, json.dumps(payload)


class GatewayServer:
    """Async HTTP server wrapping a ChatBackend.

    Every protocol route authenticates with its own credential location,
    parses the body through the protocol adapter, resolves the model and
    calls the backend.

    Args:
        config: Read-only gateway settings.
        backend: The chat-completion backend all protocols share.
        host: Bind address; defaults to ``config.host``.
        port: Bind port; defaults to ``config.port``.
    """

    def __init__(
        self,
        config: GatewayConfig,
        backend: ChatBackend,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self._config = config
        self._backend = backend
        self._host = host if host is not None else config.host
        self._port = port if port is not None else config.port
        self._matchers = build_matchers(config.api_key)
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> None:
        """Start the HTTP server."""
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port
        )
        if self._port == 0:
            self._port = self._server.sockets[0].getsockname()[1]
        logger.info("Gateway listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def serve_forever(self) -> None:
        """Start (if needed) and serve until cancelled."""
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    # -----------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a single HTTP connection."""
        try:
            request = await self._read_request(reader)
            if request is None:
                return

            result = await self._route(request)
            if isinstance(result, EventStream):
                await self._send_stream(reader, writer, result)
            else:
                status, response_body = result
                await self._send_response(writer, status, response_body)
        except ConnectionError as exc:
            logger.debug("Client disconnected: %s", exc)
        except Exception as exc:
            logger.error("Connection handler error: %s", exc, exc_info=True)
            try:
                error_body = json.dumps({"error": "Internal server error"})
                await self._send_response(
                    writer, HTTPStatus.INTERNAL_SERVER_ERROR, error_body
                )
            except ConnectionError:
                pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _read_request(self, reader: asyncio.StreamReader) -> HttpRequest | None:
        """Parse an HTTP request from the stream.

        Returns:
            The request, or ``None`` if the connection closed or timed out
            before a request line arrived.
        """
        try:
            request_line_bytes = await asyncio.wait_for(
                reader.readline(), timeout=self._config.request_timeout
            )
        except (asyncio.TimeoutError, ConnectionError):
            return None

        request_line = request_line_bytes.decode("utf-8", errors="replace").strip()
        if not request_line:
            return None

        headers: dict[str, str] = {}
        while True:
            line = (await reader.readline()).decode("utf-8", errors="replace").strip()
            if not line:
                break
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        body = b""
        content_length = int(headers.get("content-length", "0"))
        if content_length > 0:
            body = await reader.readexactly(content_length)

        method, target, _ = request_line.split(" ", 2)
        url = urlsplit(target)
        return HttpRequest(
            method=method.upper(),
            path=url.path.rstrip("/") or "/",
            query=dict(parse_qsl(url.query)),
            headers=headers,
            body=body,
        )

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Write a JSON HTTP response to the stream."""
        response = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body.encode('utf-8'))}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    async def _send_stream(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        stream: EventStream,
    ) -> None:
        """Write an SSE response, stopping early if the client disconnects.

        The request has been read in full, so the reader only reaches EOF
        once the client goes away. A hang-up is noticed while the backend
        is still working on its next fragment, not on the next write.
        """
        head = (
            f"HTTP/1.1 {HTTPStatus.OK.value} {HTTPStatus.OK.phrase}\r\n"
            "Content-Type: text/event-stream\r\n"
            "Cache-Control: no-cache\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        events = stream.events
        pump = asyncio.create_task(self._pump_events(writer, head, events))
        hangup = asyncio.create_task(self._wait_for_hangup(reader))
        try:
            done, _ = await asyncio.wait(
                {pump, hangup}, return_when=asyncio.FIRST_COMPLETED
            )
            if pump in done:
                pump.result()
            else:
                logger.info("Client disconnected, stopping stream")
        finally:
            pump.cancel()
            hangup.cancel()
            await asyncio.gather(pump, hangup, return_exceptions=True)
            await events.aclose()

    @staticmethod
    async def _pump_events(
        writer: asyncio.StreamWriter,
        head: str,
        events: AsyncGenerator[WireEvent, None],
    ) -> None:
        writer.write(head.encode("utf-8"))
        await writer.drain()
        async for event in events:
            if writer.is_closing():
                logger.info("Client disconnected, stopping stream")
                return
            writer.write(event.to_sse().encode("utf-8"))
            await writer.drain()

    @staticmethod
    async def _wait_for_hangup(reader: asyncio.StreamReader) -> None:
        """Return once the client closes its side of the connection."""
        try:
            while await reader.read(1024):
                pass
        except ConnectionError:
            pass

    # -----------------------------------------------------------------
    # Routing
    # -----------------------------------------------------------------

    async def _route(self, request: HttpRequest) -> RouteResult:
        """Route an HTTP request to the appropriate handler.

        Returns:
            Either ``(HTTP status, JSON body)`` or an ``EventStream``.
        """
        method, path = request.method, request.path

        if method == "GET" and path == "/health":
            return _json(HTTPStatus.OK, {"status": "ok"})

        if method == "GET" and path == "/api/openai/v1/models":
            return self._handle_models(request)

        if method == "POST":
            api_format = _POST_ROUTES.get(path)
            if api_format is not None:
                return await self._handle_completion(request, api_format)

            if path == "/api/anthropic/v1/messages/count_tokens":
                return await self._handle_count_tokens(request, ApiFormat.ANTHROPIC)

            match = _GEMINI_PATH.match(path)
            if match:
                model, gemini_method = match.group("model"), match.group("method")
                if gemini_method == "generateContent":
                    return await self._handle_completion(
                        request, ApiFormat.GEMINI, path_model=model, stream=False
                    )
                if gemini_method == "streamGenerateContent":
                    return await self._handle_completion(
                        request, ApiFormat.GEMINI, path_model=model, stream=True
                    )
                if gemini_method == "countTokens":
                    return await self._handle_count_tokens(
                        request, ApiFormat.GEMINI, path_model=model
                    )

        return _json(HTTPStatus.NOT_FOUND, {"error": f"Not found: {method} {path}"})

    def _authorize(
        self, request: HttpRequest, api_format: ApiFormat
    ) -> tuple[HTTPStatus, str] | None:
        """Return a 401 result if the request's credential is rejected."""
        matcher = self._matchers[api_format.wire_protocol]
        if matcher.is_authorized(request.headers, request.query):
            return None
        return _json(HTTPStatus.UNAUTHORIZED, matcher.rejection_body())

    def _error(self, api_format: ApiFormat, error: GatewayError) -> tuple[HTTPStatus, str]:
        body = get_adapter(api_format).error_body(error)
        try:
            status = HTTPStatus(error.status_code)
        except ValueError:
            status = HTTPStatus.INTERNAL_SERVER_ERROR
        return _json(status, body)

    @staticmethod
    def _parse_body(request: HttpRequest) -> dict[str, Any]:
        """Decode the JSON request body.

        Raises:
            ValidationError: If the body is not a UTF-8 JSON object.
        """
        try:
            text = request.body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("Request body is not valid UTF-8") from exc
        try:
            data = json.loads(text or "{}")
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON body: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    # -----------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------

    async def _handle_completion(
        self,
        request: HttpRequest,
        api_format: ApiFormat,
        path_model: str | None = None,
        stream: bool | None = None,
    ) -> RouteResult:
        """Handle a generate request for any protocol."""
        rejected = self._authorize(request, api_format)
        if rejected is not None:
            return rejected

        adapter = get_adapter(api_format)
        label = request.path.removeprefix("/api/" + api_format.wire_protocol.value)
        try:
            body = self._parse_body(request)
            requested = path_model or body.get("model")
            chat_request = adapter.build_request(body, requested or "")
            chat_request = replace(
                chat_request, model=self._config.resolve_model(requested)
            )
        except GatewayError as exc:
            logger.warning("✕ %s | %s", label, exc.message)
            return self._error(api_format, exc)
        except Exception as exc:
            logger.warning("✕ %s | malformed request: %s", label, exc, exc_info=True)
            return self._error(api_format, ValidationError(f"Invalid request body: {exc}"))

        input_tokens = await self._backend.count_tokens(json.dumps(body))

        context = ResponseContext(
            model=requested or chat_request.model,
            body=body,
            input_tokens=input_tokens,
        )
        streaming = bool(body.get("stream")) if stream is None else stream
        logger.info(
            "→ %s%s | model: %s | input: %d",
            label,
            " (stream)" if streaming else "",
            chat_request.model,
            input_tokens,
        )
        logger.debug("Request body: %s", request.body.decode("utf-8", errors="replace"))

        if streaming:
            return EventStream(self._stream_events(chat_request, context, api_format, label))

        started = time.monotonic()
        try:
            result = await self._backend.complete(chat_request)
        except GatewayError as exc:
            logger.error("✕ %s | %s", label, exc.message)
            return self._error(api_format, exc)
        except Exception as exc:
            logger.error("✕ %s | %s", label, exc, exc_info=True)
            return self._error(api_format, UpstreamError(str(exc)))

        if result.is_empty:
            logger.warning("✕ %s | backend returned an empty completion", label)
        response = adapter.from_completion(result, context)
        usage = context.usage_for(result.usage, output_text_of(result))
        logger.info(
            "← %s | input: %d | output: %d | %.2fs",
            label,
            usage.input_tokens,
            usage.output_tokens,
            time.monotonic() - started,
        )
        return _json(HTTPStatus.OK, response)

    async def _stream_events(
        self,
        chat_request: ChatRequest,
        context: ResponseContext,
        api_format: ApiFormat,
        label: str,
    ) -> AsyncGenerator[WireEvent, None]:
        """Run the backend stream through the protocol's encoder."""
        adapter = get_adapter(api_format)
        encoder = _LoggingEncoder(adapter.stream_encoder(context), context, label)
        sequence = run_sequence(self._backend.stream(chat_request), encoder)
        try:
            async for event in sequence:
                yield event
        finally:
            await sequence.aclose()

    def _handle_models(self, request: HttpRequest) -> tuple[HTTPStatus, str]:
        """Handle GET /api/openai/v1/models."""
        rejected = self._authorize(request, ApiFormat.OPENAI_CHAT)
        if rejected is not None:
            return rejected
        data = [
            {
                "id": model,
                "object": "model",
                "created": 0,
                "owned_by": self._backend.backend_name(),
            }
            for model in self._config.available_models()
        ]
        return _json(HTTPStatus.OK, {"object": "list", "data": data})

    async def _handle_count_tokens(
        self,
        request: HttpRequest,
        api_format: ApiFormat,
        path_model: str | None = None,
    ) -> tuple[HTTPStatus, str]:
        """Handle the Anthropic and Gemini token counting endpoints."""
        rejected = self._authorize(request, api_format)
        if rejected is not None:
            return rejected
        try:
            body = self._parse_body(request)
            model = self._config.resolve_model(path_model or body.get("model"))
        except GatewayError as exc:
            return self._error(api_format, exc)
        except Exception as exc:
            logger.warning("✕ %s | malformed request: %s", request.path, exc, exc_info=True)
            return self._error(api_format, ValidationError(f"Invalid request body: {exc}"))

        tokens = await self._backend.count_tokens(json.dumps(body))
        logger.info("→ %s | model: %s | input: %d", request.path, model, tokens)
        if api_format == ApiFormat.GEMINI:
            return _json(HTTPStatus.OK, {"totalTokens": tokens})
        return _json(HTTPStatus.OK, {"input_tokens": tokens})


class _LoggingEncoder:
    """Wraps a stream encoder to log the completion summary line."""

    def __init__(self, inner: StreamEncoder, context: ResponseContext, label: str) -> None:
        self._inner = inner
        self._context = context
        self._label = label
        self._started = time.monotonic()

    def encode(self, event: SequenceEvent) -> list[WireEvent]:
        if event.kind == SequenceEventKind.COMPLETED and event.result is not None:
            usage = self._context.usage_for(event.usage, output_text_of(event.result))
            logger.info(
                "← %s (stream) | input: %d | output: %d | %.2fs",
                self._label,
                usage.input_tokens,
                usage.output_tokens,
                time.monotonic() - self._started,
            )
        elif event.kind == SequenceEventKind.FAILED:
            logger.error("✕ %s (stream) | %s", self._label, event.message)
        return self._inner.encode(event)
