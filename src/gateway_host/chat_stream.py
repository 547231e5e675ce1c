from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from gateway_host.errors import GatewayHostError
from gateway_host.rpc import GatewayRpcClient

LOGGER = logging.getLogger("gateway_host.chat")

CHAT_EVENT = "chat"
DEFAULT_SESSION_KEY = "main"
CHAT_HISTORY_LIMIT = 200

RUN_STREAMING = "streaming"
RUN_FINAL = "final"
RUN_ABORTED = "aborted"
RUN_ERROR = "error"
TERMINAL_RUN_STATES = {RUN_FINAL, RUN_ABORTED, RUN_ERROR}

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
FINISHED_RUNS_MAX = 512


def extract_text(message: Any) -> str:
    """Best-effort text of a chat message payload; unknown shapes yield ``""``."""
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for segment in content:
        if not isinstance(segment, dict) or segment.get("type") != "text":
            continue
        text = segment.get("text")
        if isinstance(text, str) and text:
            parts.append(text)
    return "".join(parts)


def assistant_message_id(run_id: str) -> str:
    return f"{run_id}:assistant"


def _coerce_seq(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


@dataclass
class RunStream:
    run_id: str
    session_key: str
    last_seq: int = 0
    text: str = ""
    state: str = RUN_STREAMING


@dataclass
class ChatMessage:
    id: str
    role: str
    text: str
    pending: bool = False

    def payload(self) -> dict[str, Any]:
        return {"id": self.id, "role": self.role, "text": self.text, "pending": self.pending}


class ChatTranscript:
    """Folds chat events for one session into committed messages and active runs."""

    def __init__(self, session_key: str = DEFAULT_SESSION_KEY):
        self.session_key = str(session_key)
        self.messages: list[ChatMessage] = []
        self.stream_by_run: dict[str, RunStream] = {}
        self.finished_runs: OrderedDict[str, str] = OrderedDict()
        self.error: str | None = None

    def handle_event(self, event: dict[str, Any]) -> bool:
        if not isinstance(event, dict) or event.get("event") != CHAT_EVENT:
            return False
        payload = event.get("payload")
        if not isinstance(payload, dict) or payload.get("sessionKey") != self.session_key:
            return False
        run_id = str(payload.get("runId") or "")
        if not run_id:
            return False
        state = str(payload.get("state") or "")
        seq = _coerce_seq(payload.get("seq"))
        if state == "delta":
            return self.apply_delta(run_id, seq, extract_text(payload.get("message")))
        if state == RUN_FINAL:
            return self.apply_final(run_id, seq, extract_text(payload.get("message")))
        if state == RUN_ERROR:
            return self.apply_error(run_id, payload.get("errorMessage"))
        if state == RUN_ABORTED:
            return self.apply_aborted(run_id)
        LOGGER.debug("Ignoring chat event with unknown state=%s run=%s", state, run_id)
        return False

    def _open_run(self, run_id: str) -> RunStream | None:
        if run_id in self.finished_runs:
            return None
        run = self.stream_by_run.get(run_id)
        if run is None:
            run = RunStream(run_id=run_id, session_key=self.session_key)
            self.stream_by_run[run_id] = run
        return run

    def _finish_run(self, run_id: str, state: str) -> RunStream | None:
        run = self.stream_by_run.pop(run_id, None)
        self.finished_runs[run_id] = state
        while len(self.finished_runs) > FINISHED_RUNS_MAX:
            self.finished_runs.popitem(last=False)
        if run is not None:
            run.state = state
        return run

    def apply_delta(self, run_id: str, seq: int | None, text: str) -> bool:
        run = self._open_run(run_id)
        if run is None:
            return False
        if seq is not None:
            if seq <= run.last_seq:
                LOGGER.debug("Dropping duplicate delta run=%s seq=%s last_seq=%s", run_id, seq, run.last_seq)
                return False
            run.last_seq = seq
        run.text += text
        return True

    def apply_final(self, run_id: str, seq: int | None, text: str) -> bool:
        if run_id in self.finished_runs:
            return False
        run = self._open_run(run_id)
        if run is None:
            return False
        if seq is not None and seq > run.last_seq:
            run.last_seq = seq
        committed = text or run.text
        self._finish_run(run_id, RUN_FINAL)
        if committed:
            self.messages.append(ChatMessage(id=assistant_message_id(run_id), role=ROLE_ASSISTANT, text=committed))
        return True

    def apply_error(self, run_id: str, error_message: Any) -> bool:
        if run_id in self.finished_runs:
            return False
        self._finish_run(run_id, RUN_ERROR)
        self.error = str(error_message or "Chat run failed.")
        return True

    def apply_aborted(self, run_id: str) -> bool:
        if run_id in self.finished_runs:
            return False
        self._finish_run(run_id, RUN_ABORTED)
        return True

    def add_user_message(self, text: str, message_id: str | None = None) -> ChatMessage:
        message = ChatMessage(id=message_id or uuid.uuid4().hex, role=ROLE_USER, text=str(text), pending=True)
        self.messages.append(message)
        return message

    def confirm_message(self, message_id: str) -> None:
        for message in self.messages:
            if message.id == message_id:
                message.pending = False
                return

    def load_history(self, messages: Any) -> None:
        loaded: list[ChatMessage] = []
        if isinstance(messages, list):
            for index, raw in enumerate(messages):
                if not isinstance(raw, dict):
                    continue
                role = str(raw.get("role") or "")
                if role not in {ROLE_USER, ROLE_ASSISTANT}:
                    continue
                text = extract_text(raw)
                message_id = str(raw.get("id") or f"history-{index}")
                loaded.append(ChatMessage(id=message_id, role=role, text=text))
        self.messages = loaded

    def dismiss_error(self) -> None:
        self.error = None

    def active_runs(self) -> list[RunStream]:
        return list(self.stream_by_run.values())


class ChatSession:
    def __init__(self, client: GatewayRpcClient, session_key: str = DEFAULT_SESSION_KEY):
        self.client = client
        self.transcript = ChatTranscript(session_key)
        self.sending = False

    @property
    def session_key(self) -> str:
        return self.transcript.session_key

    async def load_history(self, limit: int = CHAT_HISTORY_LIMIT) -> list[ChatMessage]:
        result = await self.client.request("chat.history", {"sessionKey": self.session_key, "limit": int(limit)})
        messages = result.get("messages") if isinstance(result, dict) else None
        self.transcript.load_history(messages)
        return list(self.transcript.messages)

    async def send(self, text: str) -> str | None:
        message = str(text or "").strip()
        if not message:
            return None
        pending = self.transcript.add_user_message(message)
        self.sending = True
        try:
            result = await self.client.request(
                "chat.send",
                {"sessionKey": self.session_key, "message": message, "idempotencyKey": pending.id},
            )
        except GatewayHostError as exc:
            self.transcript.error = exc.message
            return None
        finally:
            self.sending = False
        self.transcript.confirm_message(pending.id)
        if isinstance(result, dict) and result.get("runId"):
            return str(result["runId"])
        return None

    async def abort(self, run_id: str) -> None:
        await self.client.request("chat.abort", {"sessionKey": self.session_key, "runId": str(run_id)})

    async def pump(self, listener: asyncio.Queue[dict[str, Any] | None]) -> None:
        while True:
            event = await listener.get()
            if event is None:
                return
            self.transcript.handle_event(event)
