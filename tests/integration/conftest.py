from __future__ import annotations

import os
import socket
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from gateway_host.server import default_gateway_command
from gateway_host.supervisor import GatewayLaunch


def _free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])
    finally:
        sock.close()


@pytest.fixture()
def integration_tmp_dir() -> Iterator[Path]:
    tmp = tempfile.TemporaryDirectory(prefix="gateway-host-int-")
    try:
        yield Path(tmp.name)
    finally:
        tmp.cleanup()


@pytest.fixture()
def gateway_launch(integration_tmp_dir: Path) -> GatewayLaunch:
    """Launch settings for the bundled reference gateway run with this interpreter."""
    python_path = os.pathsep.join(part for part in (str(SRC), os.environ.get("PYTHONPATH", "")) if part)
    state_dir = integration_tmp_dir / "state"
    return GatewayLaunch(
        command=[*default_gateway_command(), "--stream-delay", "0.01", "--log-level", "warning"],
        cwd=integration_tmp_dir,
        state_dir=state_dir,
        logs_dir=integration_tmp_dir / "logs",
        config_path=state_dir / "gateway.json",
        preferred_port=_free_port(),
        ready_timeout=30.0,
        env={"PYTHONPATH": python_path},
    )
