"""Client-side JSON-RPC transport for the PHKVStorage console.

One transport instance owns one WebSocket connection and one request-id
space. Calls are correlated to responses by id; connection lifecycle is
reported to an injected observer.

Architecture:
- ConnectionObserver is the PROTOCOL consumers implement to follow the
  connection (connected / errored / disconnected)
- BaseRpcTransport owns the state machine, the pending-request table and
  the reader task; subclasses only move frames
- WebSocketRpcTransport talks to a real server, MockRpcTransport is
  in-memory for tests

Lifecycle is single-shot: uninit -> connecting -> open -> (error | closed).
A dropped socket is terminal; build a new transport to reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit, urlunsplit

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from ..protocol.errors import (
    JsonRpcErrorCode,
    RpcError,
    TransportClosedError,
    TransportError,
    TransportNotConnectedError,
)
from ..protocol.messages import JsonRpcRequest, JsonRpcResponse, RemoteMethod, RequestId

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:18759"
DEFAULT_WS_PATH = "/json_ws"

_WS_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

Frame = str | bytes


class TransportState(str, Enum):
    """Connection state machine."""

    UNINIT = "uninit"
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"


def derive_ws_url(base_url: str, path: str = DEFAULT_WS_PATH) -> str:
    """Turn the server's HTTP origin into its JSON-RPC WebSocket URL.

    The scheme is upgraded (http -> ws, https -> wss) and the path is
    replaced; query and fragment are dropped.

    Raises:
        ValueError: If the scheme is not http(s)/ws(s) or the host is missing
    """
    parts = urlsplit(base_url)
    scheme = _WS_SCHEMES.get(parts.scheme.lower())
    if scheme is None:
        raise ValueError(f"Unsupported URL scheme: {parts.scheme!r}")
    if not parts.netloc:
        raise ValueError(f"URL has no host: {base_url!r}")
    return urlunsplit((scheme, parts.netloc, path, "", ""))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: {raw!r}")


@dataclass
class ClientTransportConfig:
    """Configuration for client transports."""

    # Server origin; the WebSocket URL is derived from it
    base_url: str = DEFAULT_BASE_URL
    ws_path: str = DEFAULT_WS_PATH

    # Reject outstanding calls when the connection ends. When False they
    # never settle and stay in the pending table.
    reject_pending_on_disconnect: bool = True

    # The reference server only accepts integer ids
    numeric_request_ids: bool = False

    # Socket settings (seconds / bytes, None disables)
    open_timeout: float | None = 10.0
    ping_interval: float | None = 20.0
    ping_timeout: float | None = 20.0
    max_message_size: int | None = 2**20

    @property
    def ws_url(self) -> str:
        return derive_ws_url(self.base_url, self.ws_path)

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientTransportConfig:
        """Build config from PHKVS_CONSOLE_* environment variables.

        Keyword overrides win over the environment; None values are ignored.
        """
        config = cls(
            base_url=os.getenv("PHKVS_CONSOLE_URL") or DEFAULT_BASE_URL,
            numeric_request_ids=_env_flag("PHKVS_CONSOLE_NUMERIC_IDS", False),
            reject_pending_on_disconnect=_env_flag("PHKVS_CONSOLE_REJECT_PENDING", True),
        )
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise TypeError(f"Unknown config field: {key}")
            setattr(config, key, value)
        return config


@runtime_checkable
class ConnectionObserver(Protocol):
    """Receives connection lifecycle notifications.

    Callbacks run on the event loop and must not block. on_disconnect fires
    exactly once per connection, including after on_error.
    """

    def on_connect(self) -> None: ...

    def on_error(self, error: Exception) -> None: ...

    def on_disconnect(self) -> None: ...


class PendingRequestTable:
    """Outstanding calls keyed by request id.

    Keys are the string form of the id. Every key belongs to exactly one
    request that was sent and has not settled yet. Only touched from the
    event loop, so no locking.
    """

    def __init__(self) -> None:
        self._futures: dict[str, asyncio.Future[Any]] = {}

    def register(self, request_id: RequestId) -> asyncio.Future[Any]:
        key = str(request_id)
        if key in self._futures:
            raise KeyError(f"Duplicate request id: {key}")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._futures[key] = future
        return future

    def resolve(self, key: str, result: Any) -> bool:
        """Fulfil and remove an entry. Returns False if the id is unknown."""
        future = self._futures.pop(key, None)
        if future is None:
            return False
        if not future.done():
            future.set_result(result)
        return True

    def reject(self, key: str, error: BaseException) -> bool:
        """Fail and remove an entry. Returns False if the id is unknown."""
        future = self._futures.pop(key, None)
        if future is None:
            return False
        if not future.done():
            future.set_exception(error)
        return True

    def discard(self, request_id: RequestId) -> None:
        future = self._futures.pop(str(request_id), None)
        if future is not None and not future.done():
            future.cancel()

    def reject_all(self, error_factory: Callable[[str], BaseException]) -> int:
        """Fail every entry with a fresh error per key and empty the table."""
        entries = list(self._futures.items())
        self._futures.clear()
        for key, future in entries:
            if not future.done():
                future.set_exception(error_factory(key))
        return len(entries)

    def keys(self) -> list[str]:
        return list(self._futures)

    def __len__(self) -> int:
        return len(self._futures)

    def __contains__(self, request_id: object) -> bool:
        return str(request_id) in self._futures


class BaseRpcTransport(ABC):
    """Base class for JSON-RPC client transports.

    Provides:
    - State management and observer notification
    - Request id generation and the pending-request table
    - Background reader task routing responses to pending calls
    """

    def __init__(self, config: ClientTransportConfig):
        self.config = config
        self._state = TransportState.UNINIT
        self._observer: ConnectionObserver | None = None
        self._pending = PendingRequestTable()
        self._ids = itertools.count(1)
        self._reader_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TransportState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if transport is open."""
        return self._state == TransportState.OPEN

    @property
    def pending_count(self) -> int:
        """Number of calls sent and not yet settled."""
        return len(self._pending)

    async def connect(self, observer: ConnectionObserver | None = None) -> None:
        """Open the connection.

        Failures are reported through observer.on_error / on_disconnect,
        not raised. Check `is_connected` afterwards if you need to know.

        Raises:
            TransportError: If this transport was already connected once
        """
        async with self._lock:
            if self._state != TransportState.UNINIT:
                raise TransportError(
                    f"Transport already used (state={self._state.value}); create a new one"
                )

            self._observer = observer
            self._state = TransportState.CONNECTING
            try:
                await self._do_connect()
            except Exception as e:
                logger.error(f"{self.__class__.__name__} failed to connect: {e}")
                self._terminate(e)
                return

            self._state = TransportState.OPEN
            logger.info(f"{self.__class__.__name__} connected")
            self._notify("on_connect")

            # Start background reader
            self._reader_task = asyncio.create_task(self._read_loop())

    async def disconnect(self) -> None:
        """Close the connection. Safe to call more than once."""
        async with self._lock:
            if self._state != TransportState.OPEN:
                return

            # Cancel reader task
            reader, self._reader_task = self._reader_task, None
            if reader and reader is not asyncio.current_task():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader

            try:
                await self._do_disconnect()
            finally:
                self._terminate(None)

    async def call(self, method: str | RemoteMethod, params: dict[str, Any] | None = None) -> Any:
        """Invoke a remote method and wait for its result.

        Raises:
            TransportNotConnectedError: If the transport is not open
            TransportClosedError: If the frame could not be sent, or the
                connection ended first (when reject_pending_on_disconnect)
            RpcError: If the server answered with an error object
        """
        if self._state != TransportState.OPEN:
            raise TransportNotConnectedError(f"Transport not open (state={self._state.value})")

        request = JsonRpcRequest.create(method, params, self._next_id())
        future = self._pending.register(request.id)
        try:
            try:
                await self._do_send(request.to_frame())
            except TransportError:
                raise
            except Exception as e:
                raise TransportClosedError(f"Failed to send request {request.id}: {e}") from e
            return await future
        finally:
            # No-op when the response already removed the entry
            self._pending.discard(request.id)

    def _next_id(self) -> RequestId:
        value = next(self._ids)
        return value if self.config.numeric_request_ids else str(value)

    async def _read_loop(self) -> None:
        """Background task reading frames until the socket ends."""
        try:
            async for frame in self._receive_frames():
                self._handle_frame(frame)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Read loop error: {e}")
            self._terminate(e)
        else:
            self._terminate(None)

    def _handle_frame(self, frame: Frame) -> None:
        try:
            payload = json.loads(frame)
        except (ValueError, RecursionError) as e:
            logger.warning(f"Ignoring malformed frame: {e}")
            return

        # A JSON array is a batch of responses
        messages = payload if isinstance(payload, list) else [payload]
        for message in messages:
            self._dispatch(message)

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object message: {str(message)[:50]}")
            return
        try:
            response = JsonRpcResponse.model_validate(message)
        except ValidationError as e:
            # A bad reply to a known id still settles that call
            raw_id = message.get("id")
            error = RpcError(
                int(JsonRpcErrorCode.INVALID_REQUEST),
                f"Invalid response from server: {e.error_count()} validation error(s)",
                data=message,
            )
            if raw_id is not None and self._pending.reject(str(raw_id), error):
                logger.warning(f"Invalid response for request {raw_id}: {e}")
            else:
                logger.warning(f"Ignoring invalid response: {e}")
            return

        key = response.correlation_key
        if key is None:
            if response.error is not None:
                logger.warning(f"Server error without request id: {response.error.message}")
            else:
                logger.debug("Ignoring uncorrelated message")
            return

        if response.error is not None:
            matched = self._pending.reject(key, RpcError.from_error_object(response.error))
        else:
            matched = self._pending.resolve(key, response.result)
        if not matched:
            logger.debug(f"Ignoring response for unknown request id {key}")

    def _terminate(self, error: Exception | None) -> None:
        """Move to a terminal state and tell the observer. Runs once."""
        if self._state in (TransportState.ERROR, TransportState.CLOSED):
            return

        self._state = TransportState.ERROR if error is not None else TransportState.CLOSED
        if error is not None:
            self._notify("on_error", error)

        if self.config.reject_pending_on_disconnect:
            rejected = self._pending.reject_all(
                lambda key: TransportClosedError(f"Connection closed before response to request {key}")
            )
            if rejected:
                logger.warning(f"Rejected {rejected} pending request(s) on disconnect")
        elif len(self._pending):
            logger.warning(f"{len(self._pending)} pending request(s) will never settle")

        self._notify("on_disconnect")
        logger.info(f"{self.__class__.__name__} disconnected ({self._state.value})")

    def _notify(self, callback: str, *args: Any) -> None:
        if self._observer is None:
            return
        try:
            getattr(self._observer, callback)(*args)
        except Exception:
            logger.exception(f"Observer {callback} failed")

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_connect(self) -> None:
        """Implementation-specific connection logic."""
        ...

    @abstractmethod
    async def _do_disconnect(self) -> None:
        """Implementation-specific disconnection logic."""
        ...

    @abstractmethod
    async def _do_send(self, frame: str) -> None:
        """Implementation-specific send logic."""
        ...

    @abstractmethod
    def _receive_frames(self) -> AsyncIterator[Frame]:
        """Implementation-specific receive logic. Must be an async generator.

        Returning ends the connection cleanly; raising ends it with an error.
        """
        ...

    async def __aenter__(self) -> BaseRpcTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


class WebSocketRpcTransport(BaseRpcTransport):
    """Transport over a single WebSocket to the server's /json_ws endpoint.

    Wire format: one JSON-RPC object (or batch array) per text frame.
    """

    def __init__(self, config: ClientTransportConfig | None = None):
        super().__init__(config or ClientTransportConfig())
        self._ws: ClientConnection | None = None

    @property
    def url(self) -> str:
        return self.config.ws_url

    async def _do_connect(self) -> None:
        """Connect to WebSocket server."""
        self._ws = await ws_connect(
            self.url,
            open_timeout=self.config.open_timeout,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
            max_size=self.config.max_message_size,
        )
        logger.debug(f"WebSocket open: {self.url}")

    async def _do_disconnect(self) -> None:
        """Close WebSocket connection."""
        if self._ws:
            await self._ws.close()
            self._ws = None

    async def _do_send(self, frame: str) -> None:
        if not self._ws:
            raise TransportClosedError("WebSocket not connected")
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise TransportClosedError(f"WebSocket closed: {e}") from e

    async def _receive_frames(self) -> AsyncIterator[Frame]:
        """Yield frames until the socket closes.

        Iteration stops quietly on a normal close and raises
        ConnectionClosedError on an abnormal one.
        """
        if not self._ws:
            raise TransportClosedError("WebSocket not connected")

        async for data in self._ws:
            yield data


class MockRpcTransport(BaseRpcTransport):
    """Mock transport for testing.

    Records outgoing frames and replays canned replies per method. No
    actual I/O - everything is in-memory.

    Usage:
        transport = MockRpcTransport()
        transport.set_result("get_volumes_list", [])
        transport.set_error("store", -32000, "out of range")

        await transport.connect(observer)
        assert await transport.call("get_volumes_list") == []

        transport.inject_frame({"jsonrpc": "2.0", "id": "99", "result": 1})
        transport.simulate_close()
    """

    def __init__(self, config: ClientTransportConfig | None = None) -> None:
        super().__init__(config or ClientTransportConfig())
        self._responses: dict[str, dict[str, Any]] = {}
        self._sent_frames: list[str] = []
        self._inbound: asyncio.Queue[Frame | Exception | None] = asyncio.Queue()
        self.connect_error: Exception | None = None

    @property
    def sent_frames(self) -> list[str]:
        """Get all frames sent through this transport."""
        return self._sent_frames.copy()

    @property
    def sent_requests(self) -> list[dict[str, Any]]:
        """Sent frames decoded as JSON."""
        return [json.loads(frame) for frame in self._sent_frames]

    def set_result(self, method: str | RemoteMethod, result: Any) -> None:
        """Reply to every call of `method` with `result`."""
        self._responses[_method_name(method)] = {"result": result}

    def set_error(
        self, method: str | RemoteMethod, code: int, message: str, data: Any = None
    ) -> None:
        """Reply to every call of `method` with an error object."""
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        self._responses[_method_name(method)] = {"error": error}

    def inject_frame(self, frame: Frame | dict[str, Any] | list[Any]) -> None:
        """Deliver a raw inbound frame (dicts and lists are JSON-encoded)."""
        if isinstance(frame, (dict, list)):
            frame = json.dumps(frame)
        self._inbound.put_nowait(frame)

    def simulate_close(self) -> None:
        """End the connection cleanly from the server side."""
        self._inbound.put_nowait(None)

    def simulate_error(self, error: Exception | None = None) -> None:
        """End the connection with a socket error."""
        self._inbound.put_nowait(error or ConnectionResetError("Connection reset by peer"))

    def clear(self) -> None:
        """Clear recorded frames and canned replies."""
        self._sent_frames.clear()
        self._responses.clear()

    async def _do_connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def _do_disconnect(self) -> None:
        """No-op for mock."""
        pass

    async def _do_send(self, frame: str) -> None:
        """Record frame and queue canned reply."""
        self._sent_frames.append(frame)

        request = json.loads(frame)
        reply = self._responses.get(request.get("method", ""))
        if reply is not None:
            self.inject_frame({"jsonrpc": "2.0", "id": request.get("id"), **reply})

    async def _receive_frames(self) -> AsyncIterator[Frame]:
        """Yield injected frames until a close or error marker."""
        while True:
            item = await self._inbound.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


def _method_name(method: str | RemoteMethod) -> str:
    return method.value if isinstance(method, RemoteMethod) else method


# Factory functions


def create_websocket_transport(
    base_url: str | None = None,
    *,
    numeric_request_ids: bool | None = None,
    reject_pending_on_disconnect: bool | None = None,
) -> WebSocketRpcTransport:
    """Create a WebSocket transport for a server origin.

    Args:
        base_url: Server URL (http:// will be converted to ws://);
            defaults to PHKVS_CONSOLE_URL or DEFAULT_BASE_URL
        numeric_request_ids: Send integer ids instead of strings
        reject_pending_on_disconnect: Fail outstanding calls on disconnect

    Returns:
        WebSocketRpcTransport targeting <origin>/json_ws
    """
    config = ClientTransportConfig.from_env(
        base_url=base_url,
        numeric_request_ids=numeric_request_ids,
        reject_pending_on_disconnect=reject_pending_on_disconnect,
    )
    return WebSocketRpcTransport(config)


def create_mock_transport(config: ClientTransportConfig | None = None) -> MockRpcTransport:
    """Create a mock transport for testing."""
    return MockRpcTransport(config)
