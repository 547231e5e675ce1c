from __future__ import annotations

import json
import logging
import re
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any, Callable

from gateway_host.config_store import ConfigSnapshot
from gateway_host.errors import ConfigConflictError, GatewayHostError
from gateway_host.rpc import GatewayRpcClient

LOGGER = logging.getLogger("gateway_host.config_client")

DEFAULT_WORKSPACE_DIR = "~/openclaw-workspace"
CHANNEL_PROBE_TIMEOUT_SECONDS = 12.0
CONFIG_UPDATE_ATTEMPTS = 3
TELEGRAM_ID_PREFIX_RE = re.compile(r"^(telegram|tg):", re.IGNORECASE)


def _object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _string(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def require_base_hash(snapshot: ConfigSnapshot) -> str:
    if not snapshot.hash:
        raise ConfigConflictError("Config base hash missing. Reload and try again.", detail={"reason": "missing"})
    return snapshot.hash


def infer_workspace_dir(config_path: str) -> str:
    raw = str(config_path or "").strip()
    if not raw:
        return DEFAULT_WORKSPACE_DIR
    path_type = PureWindowsPath if "\\" in raw else PurePosixPath
    path = path_type(raw)
    if str(path.parent) in {"", ".", path.anchor}:
        return DEFAULT_WORKSPACE_DIR
    return str(path.parent / "workspace")


def normalize_telegram_user_id(raw_id: str) -> str:
    raw = str(raw_id or "").strip()
    stripped = TELEGRAM_ID_PREFIX_RE.sub("", raw).strip()
    if stripped.isdigit():
        return stripped
    return raw


def build_onboarding_defaults_patch(snapshot: ConfigSnapshot, port: int, token: str) -> dict[str, Any]:
    cfg = snapshot.config
    gateway = _object(cfg.get("gateway"))
    gateway_auth = _object(gateway.get("auth"))
    agents = _object(cfg.get("agents"))
    defaults = _object(agents.get("defaults"))
    patch: dict[str, Any] = {}

    current_port = gateway.get("port")
    needs_gateway = (
        _string(gateway.get("mode")) != "local"
        or _string(gateway.get("bind")) != "loopback"
        or isinstance(current_port, bool)
        or current_port != port
        or _string(gateway_auth.get("mode")) != "token"
        or _string(gateway_auth.get("token")) != token
    )
    if needs_gateway:
        patch["gateway"] = {
            **gateway,
            "mode": "local",
            "bind": "loopback",
            "port": int(port),
            "auth": {**gateway_auth, "mode": "token", "token": str(token)},
        }

    current_workspace = _string(defaults.get("workspace"))
    if not current_workspace:
        patch["agents"] = {
            **agents,
            "defaults": {**defaults, "workspace": infer_workspace_dir(snapshot.path)},
        }
    return patch


def build_allow_from_patch(snapshot: ConfigSnapshot, raw_id: str) -> dict[str, Any]:
    user_id = normalize_telegram_user_id(raw_id)
    if not user_id:
        raise GatewayHostError("Telegram user id is required.")
    telegram = _object(_object(snapshot.config.get("channels")).get("telegram"))
    merged = _unique([*_string_list(telegram.get("allowFrom")), user_id])
    return {"channels": {"telegram": {"enabled": True, "dmPolicy": "allowlist", "allowFrom": merged}}}


def build_exec_safe_bins_patch(snapshot: ConfigSnapshot, bin_name: str) -> dict[str, Any]:
    exec_cfg = _object(_object(snapshot.config.get("tools")).get("exec"))
    safe_bins = _unique([value.lower() for value in [*_string_list(exec_cfg.get("safeBins")), str(bin_name)]])
    return {
        "tools": {
            "exec": {
                "host": _string(exec_cfg.get("host")) or "gateway",
                "security": _string(exec_cfg.get("security")) or "allowlist",
                "ask": _string(exec_cfg.get("ask")) or "on-miss",
                "safeBins": safe_bins,
            }
        }
    }


class ConfigClient:
    """Config reads and hash-guarded writes issued over the gateway RPC channel."""

    def __init__(self, client: GatewayRpcClient):
        self.client = client

    async def get(self) -> ConfigSnapshot:
        return ConfigSnapshot.from_payload(await self.client.request("config.get", {}))

    async def set(self, document: dict[str, Any]) -> Any:
        return await self.client.request("config.set", {"raw": json.dumps(document, indent=2)})

    async def patch(self, base_hash: str, patch: dict[str, Any], note: str = "") -> Any:
        return await self.client.request(
            "config.patch",
            {"baseHash": base_hash, "raw": json.dumps(patch, indent=2), "note": str(note or "")},
        )

    async def update(
        self,
        build_patch: Callable[[ConfigSnapshot], dict[str, Any]],
        note: str = "",
        attempts: int = CONFIG_UPDATE_ATTEMPTS,
    ) -> ConfigSnapshot:
        """Read, build and submit a patch, re-reading after each stale-hash rejection."""
        last_error: ConfigConflictError | None = None
        for attempt in range(1, max(1, int(attempts)) + 1):
            snapshot = await self.get()
            base_hash = require_base_hash(snapshot)
            patch = build_patch(snapshot)
            if not patch:
                return snapshot
            try:
                await self.patch(base_hash, patch, note=note)
            except ConfigConflictError as exc:
                last_error = exc
                LOGGER.info("Config patch rejected attempt=%d note=%s: %s", attempt, note, exc.message)
                continue
            return await self.get()
        raise last_error or ConfigConflictError("Config patch was not applied.")

    async def ensure_onboarding_defaults(self, port: int, token: str) -> str:
        snapshot = await self.get()
        patch = build_onboarding_defaults_patch(snapshot, port, token)
        if not snapshot.exists:
            await self.set({**snapshot.config, **patch})
            return "created"
        if not patch:
            return "unchanged"
        await self.patch(
            require_base_hash(snapshot),
            patch,
            note="Welcome: ensure onboarding defaults (workspace/gateway)",
        )
        return "updated"

    async def enable_api_key_profile(self, provider: str) -> ConfigSnapshot:
        provider = str(provider or "").strip()
        if not provider:
            raise GatewayHostError("provider is required")
        profile_id = f"{provider}:default"
        patch = {
            "auth": {
                "profiles": {profile_id: {"provider": provider, "mode": "api_key"}},
                "order": {provider: [profile_id]},
            }
        }
        return await self.update(lambda _snapshot: patch, note=f"Welcome: enable {provider} api_key profile")

    async def set_default_model(self, model_id: str) -> ConfigSnapshot:
        model_id = str(model_id or "").strip()
        if not model_id:
            raise GatewayHostError("model id is required")
        patch = {"agents": {"defaults": {"model": {"primary": model_id}, "models": {model_id: {}}}}}
        return await self.update(lambda _snapshot: patch, note="Welcome: set default model")

    async def save_telegram_token(self, bot_token: str) -> ConfigSnapshot:
        bot_token = str(bot_token or "").strip()
        if not bot_token:
            raise GatewayHostError("Telegram bot token is required.")
        patch = {"channels": {"telegram": {"enabled": True, "botToken": bot_token}}}
        return await self.update(lambda _snapshot: patch, note="Welcome: configure Telegram bot token")

    async def add_telegram_allow_from(self, raw_id: str) -> tuple[ConfigSnapshot, dict[str, Any] | None]:
        snapshot = await self.update(
            lambda current: build_allow_from_patch(current, raw_id),
            note="Welcome: configure Telegram allowFrom",
        )
        probe: dict[str, Any] | None = None
        try:
            probe = await self.probe_channels()
        except GatewayHostError as exc:
            LOGGER.info("Channel status probe after allowFrom update failed: %s", exc.message)
        return snapshot, probe

    async def ensure_exec_safe_bins(self, bin_name: str) -> ConfigSnapshot:
        return await self.update(
            lambda current: build_exec_safe_bins_patch(current, bin_name),
            note=f"Welcome: ensure {bin_name} exec defaults",
        )

    async def list_models(self) -> list[dict[str, Any]]:
        result = await self.client.request("models.list", {})
        models = result.get("models") if isinstance(result, dict) else None
        entries: list[dict[str, Any]] = []
        for model in models if isinstance(models, list) else []:
            if not isinstance(model, dict) or not model.get("id"):
                continue
            entries.append(
                {
                    "id": str(model["id"]),
                    "name": str(model.get("name") or model["id"]),
                    "provider": str(model.get("provider") or ""),
                    "contextWindow": model.get("contextWindow"),
                    "reasoning": bool(model.get("reasoning", False)),
                }
            )
        return entries

    async def probe_channels(self, timeout: float = CHANNEL_PROBE_TIMEOUT_SECONDS) -> dict[str, Any]:
        timeout_ms = int(float(timeout) * 1000)
        result = await self.client.request(
            "channels.status",
            {"probe": True, "timeoutMs": timeout_ms},
            timeout=float(timeout) + 1.0,
        )
        return result if isinstance(result, dict) else {}
