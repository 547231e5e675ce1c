from __future__ import annotations

import asyncio
import hmac
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from gateway_host.config_store import CONFIG_FILE_NAME, ConfigStore
from gateway_host.errors import GatewayHostError, RpcError
from gateway_host.server import LOG_LEVEL_CHOICES, configure_logging, uvicorn_log_level
from gateway_host.supervisor import ENV_CONFIG_PATH, ENV_STATE_DIR, ENV_TOKEN

LOGGER = logging.getLogger("gateway_host.devgateway")

POLICY_VIOLATION_CLOSE_CODE = 1008
STREAM_DELAY_SECONDS = 0.02
OUTBOX_CLOSE = None
MODEL_CATALOGUE = [
    {
        "id": "anthropic/claude-sonnet-4",
        "name": "Claude Sonnet 4",
        "provider": "anthropic",
        "contextWindow": 200_000,
        "reasoning": True,
    },
    {
        "id": "openai/gpt-4.1-mini",
        "name": "GPT-4.1 mini",
        "provider": "openai",
        "contextWindow": 1_047_576,
        "reasoning": False,
    },
    {
        "id": "google/gemini-2.5-flash",
        "name": "Gemini 2.5 Flash",
        "provider": "google",
        "contextWindow": 1_048_576,
        "reasoning": True,
    },
]
REPLY_CHUNK_RE = re.compile(r"\S+\s*|\s+")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _reply_chunks(text: str) -> list[str]:
    return REPLY_CHUNK_RE.findall(text) or [text]


@dataclass(eq=False)
class GatewayConnection:
    outbox: asyncio.Queue[dict[str, Any] | None] = field(default_factory=asyncio.Queue)
    authenticated: bool = False


@dataclass
class ChatRun:
    run_id: str
    session_key: str
    aborted: bool = False


class DevGateway:
    """In-process gateway used for development and end-to-end tests."""

    def __init__(self, config_path: Path, token: str, stream_delay: float = STREAM_DELAY_SECONDS):
        self.store = ConfigStore(config_path)
        self.token = str(token or "")
        self.stream_delay = float(stream_delay)
        self.connections: set[GatewayConnection] = set()
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.runs: dict[str, ChatRun] = {}
        self._event_seq = 0
        self._run_tasks: set[asyncio.Task[None]] = set()

    def broadcast(self, event: str, payload: dict[str, Any]) -> None:
        self._event_seq += 1
        frame = {"type": "event", "event": event, "payload": payload, "seq": self._event_seq}
        for connection in list(self.connections):
            if connection.authenticated:
                connection.outbox.put_nowait(frame)

    def _check_token(self, params: dict[str, Any]) -> None:
        auth = params.get("auth")
        provided = str(auth.get("token") or "") if isinstance(auth, dict) else ""
        if not self.token or not hmac.compare_digest(provided, self.token):
            raise RpcError("Unauthorized: gateway token mismatch.", code="unauthorized")

    def _channels_status(self, params: dict[str, Any]) -> dict[str, Any]:
        channels = self.store.snapshot().config.get("channels")
        accounts: dict[str, list[dict[str, Any]]] = {}
        if isinstance(channels, dict):
            for name, channel in channels.items():
                if not isinstance(channel, dict):
                    continue
                configured = bool(channel.get("botToken") or channel.get("token"))
                accounts[str(name)] = [
                    {
                        "accountId": "default",
                        "enabled": bool(channel.get("enabled", False)),
                        "configured": configured,
                        "lastError": None if configured else "not configured",
                    }
                ]
        return {"ts": _iso_now(), "probe": bool(params.get("probe")), "channelAccounts": accounts}

    def _chat_history(self, params: dict[str, Any]) -> dict[str, Any]:
        session_key = str(params.get("sessionKey") or "main")
        try:
            limit = max(1, int(params.get("limit") or 200))
        except (TypeError, ValueError):
            limit = 200
        messages = self.history.get(session_key, [])
        return {"sessionKey": session_key, "messages": messages[-limit:]}

    def _chat_send(self, params: dict[str, Any]) -> dict[str, Any]:
        session_key = str(params.get("sessionKey") or "main")
        message = str(params.get("message") or "").strip()
        if not message:
            raise RpcError("message is required", code="invalid_request")
        run_id = str(params.get("idempotencyKey") or "") or uuid.uuid4().hex
        if run_id in self.runs:
            return {"runId": run_id, "status": "in_flight"}
        self.history.setdefault(session_key, []).append({"id": run_id + ":user", "role": "user", "content": message})
        run = ChatRun(run_id=run_id, session_key=session_key)
        self.runs[run_id] = run
        task = asyncio.create_task(self._stream_reply(run, f"Echo: {message}"))
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)
        return {"runId": run_id, "status": "started"}

    def _chat_abort(self, params: dict[str, Any]) -> dict[str, Any]:
        run = self.runs.get(str(params.get("runId") or ""))
        if run is None:
            return {"aborted": False}
        run.aborted = True
        return {"aborted": True}

    async def _stream_reply(self, run: ChatRun, reply: str) -> None:
        seq = 0
        try:
            for chunk in _reply_chunks(reply):
                await asyncio.sleep(self.stream_delay)
                if run.aborted:
                    seq += 1
                    self.broadcast(
                        "chat",
                        {"runId": run.run_id, "sessionKey": run.session_key, "seq": seq, "state": "aborted"},
                    )
                    return
                seq += 1
                self.broadcast(
                    "chat",
                    {
                        "runId": run.run_id,
                        "sessionKey": run.session_key,
                        "seq": seq,
                        "state": "delta",
                        "message": {"role": "assistant", "content": [{"type": "text", "text": chunk}]},
                    },
                )
            seq += 1
            message = {"role": "assistant", "content": [{"type": "text", "text": reply}]}
            self.history.setdefault(run.session_key, []).append({"id": run.run_id + ":assistant", **message})
            self.broadcast(
                "chat",
                {"runId": run.run_id, "sessionKey": run.session_key, "seq": seq, "state": "final", "message": message},
            )
        finally:
            self.runs.pop(run.run_id, None)

    def dispatch(self, method: str, params: dict[str, Any]) -> Any:
        if method == "config.get":
            return self.store.snapshot().payload()
        if method == "config.set":
            return self.store.set(params.get("raw")).payload()
        if method == "config.patch":
            return self.store.patch(params.get("baseHash"), params.get("raw"), str(params.get("note") or "")).payload()
        if method == "models.list":
            return {"models": [dict(model) for model in MODEL_CATALOGUE]}
        if method == "channels.status":
            return self._channels_status(params)
        if method == "chat.history":
            return self._chat_history(params)
        if method == "chat.send":
            return self._chat_send(params)
        if method == "chat.abort":
            return self._chat_abort(params)
        raise RpcError(f"Unknown method: {method}", code="unknown_method")

    async def handle_frame(self, connection: GatewayConnection, frame: Any) -> bool:
        """Handle one request frame. Returns False when the connection must close."""
        if not isinstance(frame, dict) or frame.get("type") != "req":
            return True
        request_id = str(frame.get("id") or "")
        method = str(frame.get("method") or "")
        params = frame.get("params") if isinstance(frame.get("params"), dict) else {}

        if not connection.authenticated:
            if method != "connect":
                connection.outbox.put_nowait(_error_frame(request_id, RpcError("connect required first.", code="unauthorized")))
                return False
            try:
                self._check_token(params)
            except GatewayHostError as exc:
                connection.outbox.put_nowait(_error_frame(request_id, exc))
                return False
            connection.authenticated = True
            connection.outbox.put_nowait(
                {"type": "res", "id": request_id, "ok": True, "payload": {"server": "devgateway", "ts": _iso_now()}}
            )
            return True

        try:
            try:
                result = self.dispatch(method, params)
            except OSError as exc:
                raise RpcError(f"{method} failed: {exc}", code="io_error") from exc
        except GatewayHostError as exc:
            LOGGER.debug("Request %s failed: %s", method, exc.message)
            connection.outbox.put_nowait(_error_frame(request_id, exc))
            return True
        connection.outbox.put_nowait({"type": "res", "id": request_id, "ok": True, "payload": result})
        return True


def _error_frame(request_id: str, error: GatewayHostError) -> dict[str, Any]:
    code = error.code if isinstance(error, RpcError) else error.kind
    return {
        "type": "res",
        "id": request_id,
        "ok": False,
        "error": {"code": code, "message": error.message, "details": error.detail},
    }


def create_app(gateway: DevGateway) -> FastAPI:
    app = FastAPI()

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "ts": _iso_now()}

    @app.websocket("/")
    async def ws_gateway(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = GatewayConnection()
        gateway.connections.add(connection)
        close_code: int | None = None

        async def send_frames() -> None:
            while True:
                frame = await connection.outbox.get()
                if frame is OUTBOX_CLOSE:
                    return
                await websocket.send_text(json.dumps(frame))

        async def receive_frames() -> None:
            nonlocal close_code
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    return
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    continue
                if not await gateway.handle_frame(connection, frame):
                    close_code = POLICY_VIOLATION_CLOSE_CODE
                    connection.outbox.put_nowait(OUTBOX_CLOSE)
                    return

        sender = asyncio.create_task(send_frames())
        receiver = asyncio.create_task(receive_frames())
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done and close_code is not None and not sender.done():
                await asyncio.wait({sender}, timeout=1.0)
            for task in pending:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, WebSocketDisconnect):
                    raise exc
            if close_code is not None:
                await websocket.close(code=close_code)
        except WebSocketDisconnect:
            pass
        finally:
            gateway.connections.discard(connection)
            if not sender.done():
                sender.cancel()
            if not receiver.done():
                receiver.cancel()

    return app


def _default_config_path() -> Path:
    explicit = str(os.environ.get(ENV_CONFIG_PATH) or "").strip()
    if explicit:
        return Path(explicit)
    state_dir = str(os.environ.get(ENV_STATE_DIR) or "").strip()
    if state_dir:
        return Path(state_dir) / CONFIG_FILE_NAME
    return Path.cwd() / CONFIG_FILE_NAME


@click.command(help="Run the reference local gateway.")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", required=True, type=int)
@click.option("--config-path", default=None, type=click.Path(dir_okay=False, path_type=Path), help="Gateway config file.")
@click.option("--token", default=None, help=f"Auth token (defaults to ${ENV_TOKEN}).")
@click.option("--stream-delay", default=STREAM_DELAY_SECONDS, show_default=True, type=float)
@click.option(
    "--log-level",
    default="info",
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
)
def main(host: str, port: int, config_path: Path | None, token: str | None, stream_delay: float, log_level: str) -> None:
    resolved_token = str(token or os.environ.get(ENV_TOKEN) or "").strip()
    if not resolved_token:
        raise click.ClickException(f"A gateway token is required (--token or ${ENV_TOKEN}).")
    configure_logging(log_level)
    gateway = DevGateway(config_path or _default_config_path(), resolved_token, stream_delay=stream_delay)
    LOGGER.info("Reference gateway listening host=%s port=%s config=%s", host, port, gateway.store.path)
    uvicorn.run(create_app(gateway), host=host, port=port, log_level=uvicorn_log_level(log_level))


if __name__ == "__main__":
    main()
