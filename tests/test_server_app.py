from __future__ import annotations

import asyncio
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Any
from unittest.mock import patch

from click.testing import CliRunner
from fastapi import FastAPI
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import gateway_host.server as host_server
from gateway_host.auth_profiles import load_auth_profiles
from gateway_host.exec_helper import HelperBinary
from gateway_host.supervisor import GatewayFailed, GatewayReady, GatewayStarting


class StubSupervisor:
    def __init__(self, state: Any = None):
        self.state = state
        self.started = 0
        self.stopped = 0
        self.restarted = 0
        self.listeners: list[asyncio.Queue[Any]] = []

    def state_payload(self) -> dict[str, Any] | None:
        return self.state.payload() if self.state is not None else None

    def attach_listener(self) -> asyncio.Queue[Any]:
        listener: asyncio.Queue[Any] = asyncio.Queue()
        if self.state is not None:
            listener.put_nowait(self.state)
        self.listeners.append(listener)
        return listener

    def detach_listener(self, listener: asyncio.Queue[Any]) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def start(self) -> Any:
        self.started += 1
        self.state = GatewayStarting(port=18789, logs_dir="/logs", token="tok")
        return self.state

    async def stop(self) -> bool:
        self.stopped += 1
        return False

    async def restart(self) -> None:
        self.restarted += 1


def _settings(tmp_path: Path) -> host_server.HostSettings:
    return host_server.HostSettings(
        data_dir=tmp_path,
        gateway_command=["gateway"],
        gateway_dir=tmp_path,
    )


class HostSettingsTests(unittest.TestCase):
    def test_paths_derive_from_data_dir(self) -> None:
        settings = _settings(Path("/data"))

        self.assertEqual(settings.state_dir, Path("/data/state"))
        self.assertEqual(settings.logs_dir, Path("/data/logs"))
        self.assertEqual(settings.config_path, Path("/data/state/gateway.json"))
        launch = settings.launch()
        self.assertEqual(launch.command, ["gateway"])
        self.assertEqual(launch.preferred_port, 18789)
        self.assertEqual(launch.ready_timeout, 30.0)

    def test_parse_helpers(self) -> None:
        helpers = host_server.parse_helpers(("imsg=/opt/imsg",))
        self.assertEqual(helpers["imsg"].path, Path("/opt/imsg"))
        for entries in (("imsg",), ("=/opt/x",), ("a=/x", "a=/y")):
            with self.subTest(entries=entries):
                with self.assertRaises(host_server.click.ClickException):
                    host_server.parse_helpers(entries)

    def test_log_level_helpers(self) -> None:
        self.assertEqual(host_server.normalize_log_level("WARNING"), "warning")
        self.assertEqual(host_server.normalize_log_level("verbose"), "info")
        self.assertEqual(host_server.uvicorn_log_level("debug"), "info")
        self.assertEqual(host_server.uvicorn_log_level("error"), "error")


class HostAppTests(unittest.TestCase):
    def test_lifecycle_starts_and_stops_gateway(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            supervisor = StubSupervisor()
            app = host_server.create_app(supervisor, _settings(Path(tmp)))  # type: ignore[arg-type]

            with TestClient(app) as client:
                state = client.get("/api/gateway").json()["state"]

            self.assertEqual(supervisor.started, 1)
            self.assertEqual(supervisor.stopped, 1)
            self.assertEqual(state, {"kind": "starting", "port": 18789, "logsDir": "/logs", "token": "tok"})

    def test_state_is_null_before_start(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            app = host_server.create_app(StubSupervisor(), _settings(Path(tmp)))  # type: ignore[arg-type]
            client = TestClient(app)
            self.assertEqual(client.get("/api/gateway").json(), {"state": None})

    def test_events_socket_sends_current_state_and_answers_ping(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            ready = GatewayReady(port=18789, logs_dir="/logs", url="http://127.0.0.1:18789/", token="tok")
            supervisor = StubSupervisor(state=ready)
            app = host_server.create_app(supervisor, _settings(Path(tmp)))  # type: ignore[arg-type]
            client = TestClient(app)

            with client.websocket_connect("/api/gateway/events") as websocket:
                first = websocket.receive_json()
                websocket.send_json({"type": "ping"})
                pong = websocket.receive_json()

            self.assertEqual(first["type"], "gateway_state")
            self.assertEqual(first["payload"]["kind"], "ready")
            self.assertEqual(first["payload"]["url"], "http://127.0.0.1:18789/")
            self.assertEqual(pong["type"], "pong")

    def test_events_socket_sends_null_state_before_start(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            app = host_server.create_app(StubSupervisor(), _settings(Path(tmp)))  # type: ignore[arg-type]
            with TestClient(app).websocket_connect("/api/gateway/events") as websocket:
                first = websocket.receive_json()
            self.assertEqual(first, {"type": "gateway_state", "payload": None, "sent_at": first["sent_at"]})

    def test_retry_relaunches_in_background(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            failed = GatewayFailed(port=18789, logs_dir="/logs", token="tok", details="boom")
            supervisor = StubSupervisor(state=failed)
            app = host_server.create_app(supervisor, _settings(Path(tmp)))  # type: ignore[arg-type]

            response = TestClient(app).post("/api/gateway/retry")

            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json(), {"restarting": True})
            self.assertEqual(supervisor.restarted, 1)

    def test_config_requires_ready_gateway(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            supervisor = StubSupervisor(state=GatewayStarting(port=1, logs_dir="/logs", token="tok"))
            client = TestClient(host_server.create_app(supervisor, _settings(Path(tmp))))  # type: ignore[arg-type]

            self.assertEqual(client.get("/api/config").status_code, 409)
            self.assertEqual(client.post("/api/config/onboarding-defaults").status_code, 409)

    def test_api_key_is_saved_to_auth_profiles(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            settings = _settings(Path(tmp))
            client = TestClient(host_server.create_app(StubSupervisor(), settings))  # type: ignore[arg-type]

            response = client.post("/api/auth/api-key", json={"provider": "openai", "apiKey": "sk-test-1234567890"})
            invalid = client.post("/api/auth/api-key", json={"provider": "openai", "apiKey": ""})
            not_object = client.post("/api/auth/api-key", json=["openai"])

            self.assertEqual(response.status_code, 200, msg=response.text)
            self.assertEqual(response.json()["profile"]["profileId"], "openai:default")
            self.assertFalse(response.json()["configured"])
            self.assertIn("openai:default", load_auth_profiles(settings.state_dir)["profiles"])
            self.assertEqual(invalid.status_code, 400)
            self.assertEqual(not_object.status_code, 400)

    def test_helper_actions(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            helpers = {"imsg": HelperBinary(name="imsg", path=Path(tmp) / "imsg", prepare_hint="Build imsg.")}
            app = host_server.create_app(StubSupervisor(), _settings(Path(tmp)), helpers)  # type: ignore[arg-type]
            client = TestClient(app)

            unknown = client.post("/api/helpers/other/check")
            bad_action = client.post("/api/helpers/imsg/delete")
            missing = client.post("/api/helpers/imsg/status")

            self.assertEqual(unknown.status_code, 404)
            self.assertEqual(bad_action.status_code, 400)
            self.assertEqual(missing.status_code, 200)
            self.assertFalse(missing.json()["ok"])
            self.assertIsNone(missing.json()["resolvedPath"])
            self.assertIn("Build imsg.", missing.json()["stderr"])


class HostCliTests(unittest.TestCase):
    def test_main_builds_app_and_runs_uvicorn(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            runner = CliRunner()
            with patch("gateway_host.server.uvicorn.run") as uvicorn_run, patch(
                "gateway_host.server.GatewaySupervisor"
            ) as supervisor_cls, patch("gateway_host.server.configure_logging") as configure_logging:
                result = runner.invoke(
                    host_server.main,
                    [
                        "--data-dir",
                        tmp,
                        "--port",
                        "9911",
                        "--preferred-port",
                        "19001",
                        "--helper",
                        "imsg=/opt/imsg",
                        "--log-level",
                        "debug",
                    ],
                    env={host_server.ENV_GATEWAY_COMMAND: ""},
                )

            self.assertEqual(result.exit_code, 0, msg=result.output)
            configure_logging.assert_called_once_with("debug")
            launch = supervisor_cls.call_args.args[0]
            self.assertEqual(launch.command, [sys.executable, "-m", "gateway_host.devgateway"])
            self.assertEqual(launch.preferred_port, 19001)
            self.assertEqual(launch.config_path, Path(tmp) / "state" / "gateway.json")
            self.assertEqual(launch.cwd, Path(tmp))
            app = uvicorn_run.call_args.args[0]
            self.assertIsInstance(app, FastAPI)
            self.assertEqual(uvicorn_run.call_args.kwargs, {"host": "127.0.0.1", "port": 9911, "log_level": "info"})

    def test_gateway_command_from_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            runner = CliRunner()
            with patch("gateway_host.server.uvicorn.run"), patch(
                "gateway_host.server.GatewaySupervisor"
            ) as supervisor_cls, patch("gateway_host.server.configure_logging"):
                result = runner.invoke(
                    host_server.main,
                    ["--data-dir", tmp],
                    env={host_server.ENV_GATEWAY_COMMAND: "node 'dist/gateway.js' --verbose"},
                )

            self.assertEqual(result.exit_code, 0, msg=result.output)
            launch = supervisor_cls.call_args.args[0]
            self.assertEqual(launch.command, ["node", "dist/gateway.js", "--verbose"])

    def test_invalid_helper_is_a_usage_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            runner = CliRunner()
            with patch("gateway_host.server.uvicorn.run") as uvicorn_run, patch(
                "gateway_host.server.configure_logging"
            ):
                result = runner.invoke(host_server.main, ["--data-dir", tmp, "--helper", "broken"])

            self.assertNotEqual(result.exit_code, 0)
            self.assertIn("Expected NAME=PATH", result.output)
            uvicorn_run.assert_not_called()


if __name__ == "__main__":
    unittest.main()
