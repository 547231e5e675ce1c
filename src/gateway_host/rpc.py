from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from gateway_host.errors import (
    ChannelClosedError,
    GatewayNotReadyError,
    RpcError,
    RpcTimeoutError,
    error_from_wire,
)
from gateway_host.supervisor import GatewayReady, GatewayState

LOGGER = logging.getLogger("gateway_host.rpc")

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
CLIENT_NAME = "gateway-host"
FRAME_REQUEST = "req"
FRAME_RESPONSE = "res"
FRAME_EVENT = "event"


def websocket_url(http_url: str) -> str:
    url = str(http_url or "").strip()
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def _preview(value: Any, limit: int = 400) -> str:
    text = str(value)
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


class GatewayRpcClient:
    """Request/response calls and push events over one authenticated websocket."""

    def __init__(
        self,
        url: str,
        token: str,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ):
        self.url = websocket_url(url)
        self.token = str(token or "")
        self.connect_timeout = float(connect_timeout)
        self.default_timeout = float(default_timeout)
        self._ws: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._subscribers: set[asyncio.Queue[dict[str, Any] | None]] = set()
        self._closed = False
        self.hello: dict[str, Any] = {}

    @classmethod
    def from_state(cls, state: GatewayState | None, **kwargs: Any) -> "GatewayRpcClient":
        if not isinstance(state, GatewayReady):
            kind = state.kind if state is not None else "none"
            raise GatewayNotReadyError(f"Gateway is not ready (state={kind}).", detail={"state": kind})
        return cls(state.url, state.token, **kwargs)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self) -> dict[str, Any]:
        if self.connected:
            return self.hello
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.connect_timeout, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise ChannelClosedError(f"Failed to connect to gateway at {self.url}: {exc}") from exc
        self._closed = False
        self._reader_task = asyncio.create_task(self._reader_loop(self._ws))
        hello = await self.request(
            "connect",
            {"client": {"name": CLIENT_NAME}, "auth": {"token": self.token}},
            timeout=self.connect_timeout,
        )
        self.hello = hello if isinstance(hello, dict) else {}
        LOGGER.debug("Connected to gateway url=%s", self.url)
        return self.hello

    async def close(self) -> None:
        ws = self._ws
        self._closed = True
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException):
                pass
        task = self._reader_task
        self._reader_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._fail_pending(ChannelClosedError("Gateway channel closed."))
        self._ws = None

    async def __aenter__(self) -> "GatewayRpcClient":
        await self.connect()
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    def subscribe(self) -> asyncio.Queue[dict[str, Any] | None]:
        listener: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._subscribers.add(listener)
        return listener

    def unsubscribe(self, listener: asyncio.Queue[dict[str, Any] | None]) -> None:
        self._subscribers.discard(listener)

    async def request(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        ws = self._ws
        if ws is None or self._closed:
            raise ChannelClosedError(f"Gateway channel is not connected (method={method}).")
        request_id = uuid.uuid4().hex
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        frame = {"type": FRAME_REQUEST, "id": request_id, "method": str(method), "params": params or {}}
        LOGGER.debug("Gateway request id=%s method=%s params=%s", request_id, method, _preview(params))
        wait_seconds = self.default_timeout if timeout is None else float(timeout)
        try:
            try:
                await ws.send(json.dumps(frame))
            except (ConnectionClosed, OSError) as exc:
                raise ChannelClosedError(f"Gateway channel closed while sending {method}.") from exc
            try:
                return await asyncio.wait_for(future, timeout=wait_seconds)
            except asyncio.TimeoutError as exc:
                raise RpcTimeoutError(
                    f"Gateway request {method} timed out after {wait_seconds:g}s.",
                    detail={"method": str(method), "timeout": wait_seconds},
                ) from exc
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, error: RpcError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _dispatch_event(self, frame: dict[str, Any]) -> None:
        event = {"event": str(frame.get("event") or ""), "payload": frame.get("payload"), "seq": frame.get("seq")}
        for listener in list(self._subscribers):
            listener.put_nowait(event)

    def _dispatch_response(self, frame: dict[str, Any]) -> None:
        request_id = str(frame.get("id") or "")
        future = self._pending.get(request_id)
        if future is None or future.done():
            LOGGER.debug("Dropping response for unknown request id=%s", request_id)
            return
        if frame.get("ok"):
            future.set_result(frame.get("payload"))
            return
        future.set_exception(error_from_wire(frame.get("error")))

    async def _reader_loop(self, ws: Any) -> None:
        try:
            async for message in ws:
                try:
                    frame = json.loads(message)
                except (TypeError, json.JSONDecodeError):
                    LOGGER.warning("Ignoring non-JSON gateway frame: %s", _preview(message, 200))
                    continue
                if not isinstance(frame, dict):
                    continue
                frame_type = str(frame.get("type") or "")
                if frame_type == FRAME_RESPONSE:
                    self._dispatch_response(frame)
                elif frame_type == FRAME_EVENT:
                    self._dispatch_event(frame)
        except ConnectionClosed as exc:
            LOGGER.debug("Gateway channel closed: %s", exc)
        finally:
            self._closed = True
            self._fail_pending(ChannelClosedError("Gateway channel closed."))
            for listener in list(self._subscribers):
                listener.put_nowait(None)
