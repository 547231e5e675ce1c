from __future__ import annotations

import asyncio
import logging
import os
import secrets
import shlex
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Awaitable, Callable, ClassVar, Union

from gateway_host.config_store import ensure_gateway_config_file, read_gateway_token
from gateway_host.errors import GatewayHostError, GatewaySpawnError
from gateway_host.exec_helper import signal_process_group
from gateway_host.net import LOOPBACK_HOST, TailBuffer, pick_port, wait_for_port_open
from gateway_host.splash import NullSplash, SplashPresenter

LOGGER = logging.getLogger("gateway_host.supervisor")

DEFAULT_GATEWAY_PORT = 18789
DEFAULT_READY_TIMEOUT_SECONDS = 30.0
STOP_GRACE_PERIOD_SECONDS = 1.5
KILL_WAIT_SECONDS = 5.0
OUTPUT_DRAIN_WAIT_SECONDS = 0.5
OUTPUT_TAIL_MAX_CHARS = 24_000
STATE_QUEUE_MAX = 64
GATEWAY_LOG_FILE_NAME = "gateway.log"

ENV_PORT = "GATEWAY_HOST_PORT"
ENV_TOKEN = "GATEWAY_HOST_TOKEN"
ENV_STATE_DIR = "GATEWAY_HOST_STATE_DIR"
ENV_CONFIG_PATH = "GATEWAY_HOST_CONFIG_PATH"
ENV_LOGS_DIR = "GATEWAY_HOST_LOGS_DIR"


@dataclass(frozen=True)
class GatewayStarting:
    kind: ClassVar[str] = "starting"
    port: int
    logs_dir: str
    token: str

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "port": self.port, "logsDir": self.logs_dir, "token": self.token}


@dataclass(frozen=True)
class GatewayReady:
    kind: ClassVar[str] = "ready"
    port: int
    logs_dir: str
    url: str
    token: str

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "port": self.port,
            "logsDir": self.logs_dir,
            "url": self.url,
            "token": self.token,
        }


@dataclass(frozen=True)
class GatewayFailed:
    kind: ClassVar[str] = "failed"
    port: int
    logs_dir: str
    token: str
    details: str

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "port": self.port,
            "logsDir": self.logs_dir,
            "token": self.token,
            "details": self.details,
        }


GatewayState = Union[GatewayStarting, GatewayReady, GatewayFailed]


@dataclass
class GatewayLaunch:
    command: list[str]
    cwd: Path
    state_dir: Path
    logs_dir: Path
    config_path: Path
    preferred_port: int = DEFAULT_GATEWAY_PORT
    host: str = LOOPBACK_HOST
    ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS
    env: dict[str, str] = field(default_factory=dict)


SpawnFn = Callable[..., Awaitable[Any]]


def _default_relaunch() -> None:
    LOGGER.info("Relaunching host process: %s", shlex.join([sys.executable, *sys.argv]))
    os.execv(sys.executable, [sys.executable, *sys.argv])


def _state_transition_allowed(current: GatewayState | None, new: GatewayState) -> bool:
    if isinstance(new, GatewayFailed):
        return True
    if isinstance(new, GatewayStarting):
        return current is None
    if isinstance(new, GatewayReady):
        return isinstance(current, GatewayStarting)
    return False


def _queue_put_latest(listener: asyncio.Queue[GatewayState], value: GatewayState) -> None:
    try:
        listener.put_nowait(value)
        return
    except asyncio.QueueFull:
        pass

    try:
        listener.get_nowait()
    except asyncio.QueueEmpty:
        return

    try:
        listener.put_nowait(value)
    except asyncio.QueueFull:
        return


class GatewaySupervisor:
    """Owns the single Gateway child process and its published state."""

    def __init__(
        self,
        launch: GatewayLaunch,
        *,
        splash: SplashPresenter | None = None,
        relaunch: Callable[[], None] | None = None,
        spawn: SpawnFn | None = None,
        grace_period: float = STOP_GRACE_PERIOD_SECONDS,
    ):
        self.launch = launch
        self.grace_period = float(grace_period)
        self._splash = splash or NullSplash()
        self._relaunch = relaunch or _default_relaunch
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._state: GatewayState | None = None
        self._listeners: set[asyncio.Queue[GatewayState]] = set()
        self._process: Any = None
        self._output_tail = TailBuffer(OUTPUT_TAIL_MAX_CHARS)
        self._drain_tasks: list[asyncio.Task[None]] = []
        self._exit_watch_task: asyncio.Task[None] | None = None
        self._log_fp: IO[str] | None = None
        self.exit_code: int | None = None
        self.last_error: GatewayHostError | None = None

    @property
    def state(self) -> GatewayState | None:
        return self._state

    @property
    def output_tail(self) -> str:
        return self._output_tail.read()

    def state_payload(self) -> dict[str, Any] | None:
        if self._state is None:
            return None
        return self._state.payload()

    def attach_listener(self) -> asyncio.Queue[GatewayState]:
        listener: asyncio.Queue[GatewayState] = asyncio.Queue(maxsize=STATE_QUEUE_MAX)
        if self._state is not None:
            listener.put_nowait(self._state)
        self._listeners.add(listener)
        return listener

    def detach_listener(self, listener: asyncio.Queue[GatewayState]) -> None:
        self._listeners.discard(listener)

    def _transition(self, new_state: GatewayState) -> None:
        if not _state_transition_allowed(self._state, new_state):
            current_kind = self._state.kind if self._state is not None else "none"
            raise RuntimeError(f"Illegal gateway state transition: {current_kind} -> {new_state.kind}")
        self._state = new_state
        LOGGER.info("Gateway state -> %s port=%s listeners=%d", new_state.kind, new_state.port, len(self._listeners))
        for listener in list(self._listeners):
            _queue_put_latest(listener, new_state)

    def _resolve_token(self) -> str:
        token = read_gateway_token(self.launch.config_path)
        if token:
            return token
        token = secrets.token_urlsafe(24)
        if ensure_gateway_config_file(self.launch.config_path, token):
            LOGGER.info("Created gateway config with a new token at %s", self.launch.config_path)
        return token

    def _child_env(self, port: int, token: str) -> dict[str, str]:
        env = dict(os.environ)
        env.update({str(key): str(value) for key, value in self.launch.env.items()})
        env[ENV_PORT] = str(port)
        env[ENV_TOKEN] = token
        env[ENV_STATE_DIR] = str(self.launch.state_dir)
        env[ENV_CONFIG_PATH] = str(self.launch.config_path)
        env[ENV_LOGS_DIR] = str(self.launch.logs_dir)
        return env

    def _child_command(self, port: int) -> list[str]:
        return [*[str(part) for part in self.launch.command], "--port", str(port)]

    def _call_splash(self, action: str) -> None:
        try:
            getattr(self._splash, action)()
        except Exception as exc:  # splash failures never change gateway state
            LOGGER.warning("Splash %s failed: %s", action, exc)

    async def _drain_output(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            self._output_tail.push(text)
            if self._log_fp is not None:
                try:
                    self._log_fp.write(text)
                    self._log_fp.flush()
                except (OSError, ValueError):
                    pass

    async def _settle_output(self, timeout: float) -> None:
        pending = [task for task in self._drain_tasks if not task.done()]
        if not pending:
            return
        await asyncio.wait(pending, timeout=timeout)

    def _close_log(self) -> None:
        fp = self._log_fp
        self._log_fp = None
        if fp is None:
            return
        try:
            fp.close()
        except OSError:
            pass

    def _failure_details(self, reason: str, command: list[str]) -> str:
        tail = self._output_tail.read().strip()
        return "\n".join(
            [
                reason,
                "",
                f"gatewayDir: {self.launch.cwd}",
                f"command: {shlex.join(command)}",
                "output (tail):",
                tail or "<empty>",
                "",
                f"See logs in: {self.launch.logs_dir}",
            ]
        )

    async def _watch_exit(self, process: Any) -> None:
        exit_code = await process.wait()
        self.exit_code = exit_code
        if self._process is process:
            LOGGER.warning("Gateway process exited after readiness with code %s; restart to recover.", exit_code)

    async def start(self) -> GatewayState:
        if self._state is not None:
            LOGGER.debug("Gateway supervisor already started state=%s", self._state.kind)
            return self._state

        self._call_splash("dismiss")
        launch = self.launch
        launch.state_dir.mkdir(parents=True, exist_ok=True)
        launch.logs_dir.mkdir(parents=True, exist_ok=True)
        logs_dir = str(launch.logs_dir)

        port = pick_port(launch.preferred_port, host=launch.host)
        token = self._resolve_token()
        command = self._child_command(port)
        self._transition(GatewayStarting(port=port, logs_dir=logs_dir, token=token))

        try:
            self._log_fp = (launch.logs_dir / GATEWAY_LOG_FILE_NAME).open("a", encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Cannot open gateway log file in %s: %s", launch.logs_dir, exc)

        LOGGER.info("Spawning gateway command=%s cwd=%s", shlex.join(command), launch.cwd)
        try:
            process = await self._spawn(
                *command,
                cwd=str(launch.cwd),
                env=self._child_env(port, token),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            self._close_log()
            self.last_error = GatewaySpawnError(f"Failed to start gateway process: {exc}", detail={"command": command})
            LOGGER.error("%s", self.last_error.message)
            details = self._failure_details(self.last_error.message, command)
            self._transition(GatewayFailed(port=port, logs_dir=logs_dir, token=token, details=details))
            return self._state  # type: ignore[return-value]

        self._process = process
        self._drain_tasks = [
            asyncio.create_task(self._drain_output(getattr(process, "stdout", None))),
            asyncio.create_task(self._drain_output(getattr(process, "stderr", None))),
        ]

        probe = asyncio.create_task(wait_for_port_open(launch.host, port, launch.ready_timeout))
        exited = asyncio.create_task(process.wait())
        done, _pending = await asyncio.wait({probe, exited}, return_when=asyncio.FIRST_COMPLETED)

        if probe in done and probe.result():
            exited.cancel()
            url = f"http://{launch.host}:{port}/"
            self._transition(GatewayReady(port=port, logs_dir=logs_dir, url=url, token=token))
            self._exit_watch_task = asyncio.create_task(self._watch_exit(process))
            return self._state  # type: ignore[return-value]

        if exited in done:
            probe.cancel()
            self.exit_code = exited.result()
            reason = f"Gateway process exited with code {self.exit_code} before opening port {port}."
        else:
            exited.cancel()
            reason = f"Gateway did not open the port within {launch.ready_timeout:g}s."
        await self._settle_output(OUTPUT_DRAIN_WAIT_SECONDS)
        details = self._failure_details(reason, command)
        self._transition(GatewayFailed(port=port, logs_dir=logs_dir, token=token, details=details))
        return self._state  # type: ignore[return-value]

    async def stop(self) -> bool:
        """Terminate, wait the grace period, and kill if still alive. Returns whether it killed."""
        process = self._process
        self._process = None
        if self._exit_watch_task is not None and not self._exit_watch_task.done():
            self._exit_watch_task.cancel()
        self._exit_watch_task = None
        if process is None:
            self._close_log()
            return False

        force_killed = False
        if process.returncode is None:
            LOGGER.info("Stopping gateway pid=%s", getattr(process, "pid", None))
            signal_process_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            except asyncio.TimeoutError:
                LOGGER.warning("Gateway did not exit within %.1fs; killing.", self.grace_period)
                force_killed = True
                signal_process_group(process, signal.SIGKILL)
                try:
                    await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    LOGGER.error("Gateway pid=%s still alive after kill.", getattr(process, "pid", None))
        self.exit_code = process.returncode
        await self._settle_output(OUTPUT_DRAIN_WAIT_SECONDS)
        for task in self._drain_tasks:
            if not task.done():
                task.cancel()
        self._drain_tasks = []
        self._close_log()
        return force_killed

    async def restart(self) -> None:
        await self.stop()
        self._call_splash("present")
        self._relaunch()

    def fail(self, reason: str) -> None:
        """Escalate an unrecoverable gateway problem to the process-wide failed state."""
        state = self._state
        if state is None:
            raise GatewayHostError("Gateway has not been started.")
        self._transition(
            GatewayFailed(port=state.port, logs_dir=state.logs_dir, token=state.token, details=str(reason))
        )
