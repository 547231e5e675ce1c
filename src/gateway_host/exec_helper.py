from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger("gateway_host.exec")

STATUS_TIMEOUT_SECONDS = 20.0
AUTHORIZE_TIMEOUT_SECONDS = 120.0
CHECK_TIMEOUT_SECONDS = 20.0
KILL_DRAIN_SECONDS = 1.0


@dataclass(frozen=True)
class ExecResult:
    ok: bool
    code: int | None
    stdout: str
    stderr: str
    resolved_path: str | None

    def payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["resolvedPath"] = payload.pop("resolved_path")
        return payload


def _append_line(text: str, line: str) -> str:
    if text.strip():
        return f"{text}\n{line}"
    return f"{text}{line}"


def missing_binary_result(bin_path: Path | str, hint: str = "") -> ExecResult:
    message = f"binary not found at: {bin_path}"
    if hint:
        message = f"{message}\n{hint}"
    return ExecResult(ok=False, code=None, stdout="", stderr=message, resolved_path=None)


def signal_process_group(process: Any, sig: int) -> None:
    """Signal the process group led by ``process``, falling back to the process itself."""
    pid = getattr(process, "pid", None)
    if pid:
        try:
            pgid = os.getpgid(pid)
        except (ProcessLookupError, PermissionError, OSError):
            pgid = None
        if pgid == pid:
            try:
                os.killpg(pgid, sig)
                return
            except (ProcessLookupError, PermissionError, OSError):
                pass
    try:
        if sig == signal.SIGKILL:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass


async def _collect(stream: asyncio.StreamReader | None, sink: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        sink.extend(chunk)


async def run_command_with_timeout(
    bin_path: Path | str,
    args: list[str],
    *,
    cwd: Path | None = None,
    timeout: float,
) -> ExecResult:
    """Run a helper binary; every outcome, including timeouts and spawn errors, is an ExecResult."""
    resolved = str(bin_path)
    LOGGER.debug("Running helper %s %s timeout=%.1fs", resolved, args, timeout)
    try:
        process = await asyncio.create_subprocess_exec(
            resolved,
            *[str(arg) for arg in args],
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return ExecResult(ok=False, code=None, stdout="", stderr=str(exc), resolved_path=resolved)

    stdout_buffer = bytearray()
    stderr_buffer = bytearray()
    readers = asyncio.gather(
        _collect(process.stdout, stdout_buffer),
        _collect(process.stderr, stderr_buffer),
        process.wait(),
    )
    try:
        await asyncio.wait_for(asyncio.shield(readers), timeout=timeout)
    except asyncio.TimeoutError:
        LOGGER.warning("Helper %s timed out after %.1fs", resolved, timeout)
        signal_process_group(process, signal.SIGKILL)
        try:
            await asyncio.wait_for(asyncio.shield(readers), timeout=KILL_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            # a detached descendant still holds the pipes open
            LOGGER.warning(
                "Helper %s output still open %.1fs after kill; returning partial output.", resolved, KILL_DRAIN_SECONDS
            )
            readers.cancel()
            await asyncio.gather(readers, return_exceptions=True)
        stderr = _append_line(stderr_buffer.decode("utf-8", errors="replace"), f"timeout after {int(timeout * 1000)}ms")
        return ExecResult(
            ok=False,
            code=None,
            stdout=stdout_buffer.decode("utf-8", errors="replace"),
            stderr=stderr,
            resolved_path=resolved,
        )

    code = process.returncode
    return ExecResult(
        ok=code == 0,
        code=code,
        stdout=stdout_buffer.decode("utf-8", errors="replace"),
        stderr=stderr_buffer.decode("utf-8", errors="replace"),
        resolved_path=resolved,
    )


def run_command_sync(bin_path: Path | str, args: list[str], *, cwd: Path | None = None, timeout: float) -> ExecResult:
    resolved = str(bin_path)
    try:
        result = subprocess.run(
            [resolved, *[str(arg) for arg in args]],
            cwd=str(cwd) if cwd is not None else None,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout.decode("utf-8", errors="replace") if isinstance(exc.stdout, bytes) else str(exc.stdout or "")
        stderr = exc.stderr.decode("utf-8", errors="replace") if isinstance(exc.stderr, bytes) else str(exc.stderr or "")
        return ExecResult(
            ok=False,
            code=None,
            stdout=stdout,
            stderr=_append_line(stderr, f"timeout after {int(timeout * 1000)}ms"),
            resolved_path=resolved,
        )
    except OSError as exc:
        return ExecResult(ok=False, code=None, stdout="", stderr=str(exc), resolved_path=resolved)
    return ExecResult(
        ok=result.returncode == 0,
        code=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        resolved_path=resolved,
    )


@dataclass(frozen=True)
class HelperBinary:
    """A bundled helper executable and the actions the host may run with it."""

    name: str
    path: Path
    cwd: Path | None = None
    prepare_hint: str = ""

    def _missing(self) -> ExecResult | None:
        if self.path.exists():
            return None
        return missing_binary_result(self.path, self.prepare_hint)

    def check(self) -> ExecResult:
        return self._missing() or run_command_sync(self.path, ["--help"], cwd=self.cwd, timeout=CHECK_TIMEOUT_SECONDS)

    async def status(self) -> ExecResult:
        missing = self._missing()
        if missing is not None:
            return missing
        return await run_command_with_timeout(self.path, ["status"], cwd=self.cwd, timeout=STATUS_TIMEOUT_SECONDS)

    async def authorize(self) -> ExecResult:
        missing = self._missing()
        if missing is not None:
            return missing
        return await run_command_with_timeout(self.path, ["authorize"], cwd=self.cwd, timeout=AUTHORIZE_TIMEOUT_SECONDS)
