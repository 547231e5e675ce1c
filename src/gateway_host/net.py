from __future__ import annotations

import asyncio
import errno
import logging
import socket
from collections import deque

LOGGER = logging.getLogger("gateway_host.net")

LOOPBACK_HOST = "127.0.0.1"
PORT_PROBE_INTERVAL_SECONDS = 0.1
PORT_PROBE_CONNECT_TIMEOUT_SECONDS = 1.0


def _port_is_bindable(host: str, port: int) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, int(port)))
        return True
    except OSError as exc:
        if exc.errno not in {errno.EADDRINUSE, errno.EACCES}:
            LOGGER.debug("Port %s:%s is not bindable: %s", host, port, exc)
        return False
    finally:
        sock.close()


def _ephemeral_port(host: str) -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])
    finally:
        sock.close()


def pick_port(preferred: int, host: str = LOOPBACK_HOST) -> int:
    """Return ``preferred`` when it can be bound, otherwise a free ephemeral port."""
    if preferred and 0 < int(preferred) < 65536 and _port_is_bindable(host, preferred):
        return int(preferred)
    port = _ephemeral_port(host)
    LOGGER.info("Preferred port %s is unavailable; using %s.", preferred, port)
    return port


async def _try_connect(host: str, port: int, timeout: float) -> bool:
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_port_open(
    host: str,
    port: int,
    timeout: float,
    interval: float = PORT_PROBE_INTERVAL_SECONDS,
) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, float(timeout))
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        if await _try_connect(host, port, min(PORT_PROBE_CONNECT_TIMEOUT_SECONDS, remaining)):
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))


class TailBuffer:
    """Keeps only the most recent ``max_chars`` characters written to it."""

    def __init__(self, max_chars: int):
        self.max_chars = max(1, int(max_chars))
        self._chunks: deque[str] = deque()
        self._size = 0

    def push(self, chunk: str) -> None:
        if not chunk:
            return
        if len(chunk) >= self.max_chars:
            self._chunks.clear()
            self._chunks.append(chunk[-self.max_chars:])
            self._size = self.max_chars
            return
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self.max_chars:
            overflow = self._size - self.max_chars
            head = self._chunks[0]
            if len(head) <= overflow:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[overflow:]
                self._size -= overflow

    def read(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return self._size
