from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from gateway_host.auth_profiles import upsert_api_key_profile
from gateway_host.config_client import ConfigClient
from gateway_host.config_store import CONFIG_FILE_NAME
from gateway_host.errors import (
    ConfigConflictError,
    ConfigValidationError,
    GatewayHostError,
    GatewayNotReadyError,
    RpcError,
)
from gateway_host.exec_helper import HelperBinary
from gateway_host.rpc import GatewayRpcClient
from gateway_host.splash import CommandSplash, NullSplash, SplashPresenter
from gateway_host.supervisor import (
    DEFAULT_GATEWAY_PORT,
    DEFAULT_READY_TIMEOUT_SECONDS,
    GatewayLaunch,
    GatewayReady,
    GatewaySupervisor,
)

LOGGER = logging.getLogger("gateway_host")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
EVENT_TYPE_GATEWAY_STATE = "gateway_state"
HELPER_ACTIONS = ("check", "authorize", "status")

ENV_DATA_DIR = "GATEWAY_HOST_DATA_DIR"
ENV_GATEWAY_COMMAND = "GATEWAY_HOST_GATEWAY_COMMAND"
ENV_SPLASH_COMMAND = "GATEWAY_HOST_SPLASH_COMMAND"
ENV_LOG_LEVEL = "GATEWAY_HOST_LOG_LEVEL"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def configure_logging(level: str) -> None:
    normalized = normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def uvicorn_log_level(level: str) -> str:
    normalized = normalize_log_level(level)
    if normalized == "debug":
        return "info"
    return normalized


def _default_data_dir() -> Path:
    explicit = str(os.environ.get(ENV_DATA_DIR) or "").strip()
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".local" / "share" / "gateway-host"


def default_gateway_command() -> list[str]:
    return [sys.executable, "-m", "gateway_host.devgateway"]


def _parse_command(raw: str | None) -> list[str]:
    value = str(raw or "").strip()
    if not value:
        return []
    try:
        return shlex.split(value)
    except ValueError as exc:
        raise click.ClickException(f"Invalid command '{value}': {exc}") from exc


def parse_helpers(entries: tuple[str, ...] | list[str], cwd: Path | None = None) -> dict[str, HelperBinary]:
    helpers: dict[str, HelperBinary] = {}
    for entry in entries:
        name, sep, raw_path = str(entry).partition("=")
        name = name.strip()
        raw_path = raw_path.strip()
        if not sep or not name or not raw_path:
            raise click.ClickException(f"Invalid helper '{entry}'. Expected NAME=PATH.")
        if name in helpers:
            raise click.ClickException(f"Duplicate helper name '{name}'.")
        path = Path(raw_path).expanduser()
        helpers[name] = HelperBinary(
            name=name,
            path=path,
            cwd=cwd,
            prepare_hint=f"Build or install the {name} helper, then retry.",
        )
    return helpers


@dataclass
class HostSettings:
    data_dir: Path
    gateway_command: list[str]
    gateway_dir: Path
    preferred_port: int = DEFAULT_GATEWAY_PORT
    ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    splash_command: list[str] = field(default_factory=list)

    @property
    def state_dir(self) -> Path:
        return self.data_dir / "state"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME

    def launch(self) -> GatewayLaunch:
        return GatewayLaunch(
            command=list(self.gateway_command),
            cwd=self.gateway_dir,
            state_dir=self.state_dir,
            logs_dir=self.logs_dir,
            config_path=self.config_path,
            preferred_port=self.preferred_port,
            ready_timeout=self.ready_timeout,
        )

    def splash(self) -> SplashPresenter:
        if not self.splash_command:
            return NullSplash()
        return CommandSplash(self.splash_command, self.state_dir)


def _http_error(exc: GatewayHostError) -> HTTPException:
    if isinstance(exc, (ConfigConflictError, GatewayNotReadyError)):
        status_code = 409
    elif isinstance(exc, ConfigValidationError):
        status_code = 400
    elif isinstance(exc, RpcError):
        status_code = 502
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=exc.message)


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload.")
    return payload


def _state_frame(payload: dict[str, Any] | None) -> str:
    return json.dumps({"type": EVENT_TYPE_GATEWAY_STATE, "payload": payload, "sent_at": _iso_now()})


def create_app(
    supervisor: GatewaySupervisor,
    settings: HostSettings,
    helpers: dict[str, HelperBinary] | None = None,
) -> FastAPI:
    app = FastAPI()
    helper_map = dict(helpers or {})
    start_tasks: list[asyncio.Task[Any]] = []

    async def with_config_client(action: Any) -> Any:
        try:
            async with GatewayRpcClient.from_state(supervisor.state) as client:
                return await action(ConfigClient(client))
        except GatewayHostError as exc:
            raise _http_error(exc) from exc

    @app.on_event("startup")
    async def app_startup() -> None:
        LOGGER.info("Starting gateway command=%s", shlex.join(settings.gateway_command))
        start_tasks.append(asyncio.create_task(supervisor.start()))

    @app.on_event("shutdown")
    async def app_shutdown() -> None:
        for task in start_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*start_tasks, return_exceptions=True)
        try:
            force_killed = await supervisor.stop()
        except OSError as exc:
            LOGGER.error("Gateway shutdown failed: %s", exc)
            return
        if force_killed:
            LOGGER.warning("Gateway had to be killed during shutdown.")

    @app.get("/api/gateway")
    def api_gateway() -> dict[str, Any]:
        return {"state": supervisor.state_payload()}

    @app.websocket("/api/gateway/events")
    async def ws_gateway_events(websocket: WebSocket) -> None:
        listener = supervisor.attach_listener()
        await websocket.accept()
        LOGGER.debug("Gateway events websocket connected.")
        if listener.empty():
            await websocket.send_text(_state_frame(None))

        async def stream_states() -> None:
            while True:
                state = await listener.get()
                await websocket.send_text(_state_frame(state.payload()))

        async def consume_input() -> None:
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    return
                if not message:
                    continue
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict) and str(payload.get("type") or "") == "ping":
                    await websocket.send_text(
                        json.dumps({"type": "pong", "payload": {"at": _iso_now()}, "sent_at": _iso_now()})
                    )

        sender = asyncio.create_task(stream_states())
        receiver = asyncio.create_task(consume_input())
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            supervisor.detach_listener(listener)
            if not sender.done():
                sender.cancel()
            if not receiver.done():
                receiver.cancel()
            LOGGER.debug("Gateway events websocket disconnected.")

    @app.post("/api/gateway/retry")
    def api_gateway_retry(background_tasks: BackgroundTasks) -> dict[str, Any]:
        LOGGER.info("Gateway retry requested; relaunching host.")
        background_tasks.add_task(supervisor.restart)
        return {"restarting": True}

    @app.get("/api/config")
    async def api_config() -> dict[str, Any]:
        snapshot = await with_config_client(lambda config: config.get())
        return snapshot.payload()

    @app.post("/api/config/onboarding-defaults")
    async def api_onboarding_defaults() -> dict[str, Any]:
        state = supervisor.state
        if not isinstance(state, GatewayReady):
            raise _http_error(GatewayNotReadyError("Gateway is not ready."))
        result = await with_config_client(lambda config: config.ensure_onboarding_defaults(state.port, state.token))
        return {"result": result}

    @app.post("/api/auth/api-key")
    async def api_save_api_key(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        try:
            profile = upsert_api_key_profile(settings.state_dir, payload.get("provider"), payload.get("apiKey"))
        except GatewayHostError as exc:
            raise _http_error(exc) from exc

        configured = False
        if isinstance(supervisor.state, GatewayReady):
            await with_config_client(lambda config: config.enable_api_key_profile(profile["provider"]))
            configured = True
        return {"profile": profile, "configured": configured}

    @app.post("/api/helpers/{name}/{action}")
    async def api_helper_action(name: str, action: str) -> dict[str, Any]:
        helper = helper_map.get(name)
        if helper is None:
            raise HTTPException(status_code=404, detail=f"Unknown helper: {name}")
        if action not in HELPER_ACTIONS:
            raise HTTPException(status_code=400, detail=f"action must be one of: {', '.join(HELPER_ACTIONS)}.")
        LOGGER.info("Running helper %s action=%s", name, action)
        if action == "check":
            result = await asyncio.to_thread(helper.check)
        elif action == "status":
            result = await helper.status()
        else:
            result = await helper.authorize()
        if not result.ok:
            LOGGER.warning("Helper %s %s failed code=%s", name, action, result.code)
        return result.payload()

    return app


@click.command(help="Run the gateway host: supervise the local gateway and serve its control API.")
@click.option(
    "--data-dir",
    default=str(_default_data_dir()),
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for gateway state, config and logs.",
)
@click.option(
    "--gateway-command",
    default=lambda: os.environ.get(ENV_GATEWAY_COMMAND, ""),
    help="Command that starts the gateway (defaults to the bundled reference gateway).",
)
@click.option(
    "--gateway-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Working directory for the gateway process (defaults to the data dir).",
)
@click.option("--preferred-port", default=DEFAULT_GATEWAY_PORT, show_default=True, type=int)
@click.option("--ready-timeout", default=DEFAULT_READY_TIMEOUT_SECONDS, show_default=True, type=float)
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int)
@click.option("--helper", "helper_entries", multiple=True, help="Helper binary as NAME=PATH (repeatable).")
@click.option(
    "--splash-command",
    default=lambda: os.environ.get(ENV_SPLASH_COMMAND, ""),
    help="Command shown while the host relaunches.",
)
@click.option(
    "--log-level",
    default=os.environ.get(ENV_LOG_LEVEL, "info"),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Logging verbosity (applies to gateway host logs and Uvicorn).",
)
def main(
    data_dir: Path,
    gateway_command: str,
    gateway_dir: Path | None,
    preferred_port: int,
    ready_timeout: float,
    host: str,
    port: int,
    helper_entries: tuple[str, ...],
    splash_command: str,
    log_level: str,
) -> None:
    normalized_log_level = normalize_log_level(log_level)
    configure_logging(normalized_log_level)
    if ready_timeout <= 0:
        raise click.ClickException("--ready-timeout must be positive.")

    data_dir = Path(data_dir).expanduser()
    settings = HostSettings(
        data_dir=data_dir,
        gateway_command=_parse_command(gateway_command) or default_gateway_command(),
        gateway_dir=Path(gateway_dir) if gateway_dir else data_dir,
        preferred_port=preferred_port,
        ready_timeout=ready_timeout,
        host=host,
        port=port,
        splash_command=_parse_command(splash_command),
    )
    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise click.ClickException(f"Cannot create data dir {settings.data_dir}: {exc}") from exc
    helpers = parse_helpers(helper_entries, cwd=settings.gateway_dir)

    LOGGER.info(
        "Starting gateway host host=%s port=%s data_dir=%s log_level=%s",
        host,
        port,
        settings.data_dir,
        normalized_log_level,
    )
    supervisor = GatewaySupervisor(settings.launch(), splash=settings.splash())
    app = create_app(supervisor, settings, helpers)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
