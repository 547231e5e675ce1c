from __future__ import annotations

import asyncio
import dataclasses
import json
import os
import signal
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from gateway_host.chat_stream import ChatSession
from gateway_host.config_client import ConfigClient
from gateway_host.errors import ConfigConflictError, RpcError
from gateway_host.rpc import GatewayRpcClient
from gateway_host.supervisor import GatewayFailed, GatewayLaunch, GatewayReady, GatewaySupervisor


async def _wait_for(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.02)


def test_supervised_gateway_serves_config_and_chat(gateway_launch: GatewayLaunch) -> None:
    async def scenario() -> None:
        supervisor = GatewaySupervisor(gateway_launch)
        state = await supervisor.start()
        try:
            assert isinstance(state, GatewayReady), getattr(state, "details", state)
            assert state.port == gateway_launch.preferred_port

            async with GatewayRpcClient.from_state(state) as client:
                config = ConfigClient(client)
                assert await config.ensure_onboarding_defaults(state.port, state.token) == "updated"
                assert await config.ensure_onboarding_defaults(state.port, state.token) == "unchanged"

                await config.add_telegram_allow_from("111")
                snapshot, probe = await config.add_telegram_allow_from("tg:222")
                assert snapshot.config["channels"]["telegram"]["allowFrom"] == ["111", "222"]
                assert probe is not None and "telegram" in probe["channelAccounts"]

                stale_hash = snapshot.hash
                assert stale_hash
                await config.set_default_model("openai/gpt-4.1-mini")
                before = gateway_launch.config_path.read_bytes()
                with pytest.raises(ConfigConflictError):
                    await config.patch(stale_hash, {"agents": {"defaults": {"model": {"primary": "x"}}}})
                assert gateway_launch.config_path.read_bytes() == before

                session = ChatSession(client)
                listener = client.subscribe()
                pump = asyncio.create_task(session.pump(listener))
                try:
                    run_id = await session.send("hello gateway")
                    assert run_id
                    await _wait_for(lambda: run_id in session.transcript.finished_runs)
                finally:
                    pump.cancel()
                    await asyncio.gather(pump, return_exceptions=True)
                    client.unsubscribe(listener)

                assert session.transcript.finished_runs[run_id] == "final"
                assert [message.text for message in session.transcript.messages] == [
                    "hello gateway",
                    "Echo: hello gateway",
                ]
                history = await session.load_history()
                assert [message.role for message in history] == ["user", "assistant"]
                assert len({message.id for message in session.transcript.messages}) == 2

            on_disk = json.loads(gateway_launch.config_path.read_text(encoding="utf-8"))
            assert on_disk["gateway"]["auth"]["token"] == state.token
            assert on_disk["gateway"]["bind"] == "loopback"
        finally:
            await supervisor.stop()
        assert supervisor.exit_code is not None

    asyncio.run(scenario())


def test_wrong_token_is_rejected(gateway_launch: GatewayLaunch) -> None:
    async def scenario() -> None:
        supervisor = GatewaySupervisor(gateway_launch)
        state = await supervisor.start()
        try:
            assert isinstance(state, GatewayReady), getattr(state, "details", state)
            client = GatewayRpcClient(state.url, "not-the-token", connect_timeout=5.0)
            with pytest.raises(RpcError) as excinfo:
                await client.connect()
            await client.close()
            assert excinfo.value.code == "unauthorized"
        finally:
            await supervisor.stop()

    asyncio.run(scenario())


def test_crashing_gateway_reports_output_tail(gateway_launch: GatewayLaunch) -> None:
    launch = dataclasses.replace(
        gateway_launch,
        command=[sys.executable, "-c", "import sys; sys.stderr.write('cannot start gateway\\n'); sys.exit(2)"],
    )

    async def scenario() -> GatewayFailed:
        supervisor = GatewaySupervisor(launch)
        state = await supervisor.start()
        await supervisor.stop()
        assert isinstance(state, GatewayFailed)
        return state

    state = asyncio.run(scenario())
    assert "exited with code 2" in state.details
    assert "cannot start gateway" in state.details
    assert (launch.logs_dir / "gateway.log").read_text(encoding="utf-8").strip() == "cannot start gateway"


FORKING_GATEWAY = """
import os, socket, subprocess, sys, time
child = subprocess.Popen(["sleep", "60"])
with open(os.environ["CHILD_PID_FILE"], "w") as handle:
    handle.write(str(child.pid))
server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind(("127.0.0.1", int(sys.argv[sys.argv.index("--port") + 1])))
server.listen()
time.sleep(60)
"""


def _is_alive(pid: int) -> bool:
    stat_path = Path(f"/proc/{pid}/stat")
    if stat_path.exists():
        try:
            return stat_path.read_text(encoding="utf-8").rsplit(")", 1)[1].split()[0] != "Z"
        except (OSError, IndexError):
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.mark.skipif(os.name == "nt", reason="requires POSIX process groups")
def test_stop_takes_down_gateway_children(gateway_launch: GatewayLaunch, integration_tmp_dir: Path) -> None:
    pid_file = integration_tmp_dir / "child.pid"
    launch = dataclasses.replace(
        gateway_launch,
        command=[sys.executable, "-c", FORKING_GATEWAY],
        env={**gateway_launch.env, "CHILD_PID_FILE": str(pid_file)},
    )

    async def scenario() -> int:
        supervisor = GatewaySupervisor(launch)
        state = await supervisor.start()
        try:
            assert isinstance(state, GatewayReady), getattr(state, "details", state)
            await _wait_for(lambda: pid_file.exists() and pid_file.read_text(encoding="utf-8").strip() != "")
            return int(pid_file.read_text(encoding="utf-8"))
        finally:
            await supervisor.stop()

    child_pid = asyncio.run(scenario())
    try:
        deadline = time.monotonic() + 5.0
        while _is_alive(child_pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not _is_alive(child_pid)
    finally:
        try:
            os.kill(child_pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
