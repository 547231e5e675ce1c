from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger("gateway_host.splash")

SPLASH_SENTINEL_FILE_NAME = "update-splash.pid"


class SplashPresenter(Protocol):
    def present(self) -> None: ...

    def dismiss(self) -> None: ...


class NullSplash:
    def present(self) -> None:
        return None

    def dismiss(self) -> None:
        return None


class CommandSplash:
    """Runs a detached splash command that outlives the host during a relaunch.

    The splash pid is written to a sentinel file in the state directory so the
    next host instance can dismiss it on startup. Every failure is logged and
    swallowed; the splash never affects gateway state.
    """

    def __init__(self, command: list[str], state_dir: Path):
        self.command = [str(part) for part in command]
        self.sentinel_path = Path(state_dir) / SPLASH_SENTINEL_FILE_NAME

    def present(self) -> None:
        if not self.command:
            return
        try:
            self.sentinel_path.parent.mkdir(parents=True, exist_ok=True)
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            self.sentinel_path.write_text(f"{process.pid}\n", encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Failed to present splash: %s", exc)

    def dismiss(self) -> None:
        try:
            raw = self.sentinel_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.warning("Failed to read splash sentinel %s: %s", self.sentinel_path, exc)
            return

        try:
            pid = int(raw)
        except ValueError:
            pid = 0
        if pid > 0:
            try:
                os.kill(pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError, OSError):
                pass
        try:
            self.sentinel_path.unlink()
        except OSError:
            pass
