from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from gateway_host.config_store import write_private_file
from gateway_host.errors import GatewayHostError

LOGGER = logging.getLogger("gateway_host.auth")

AUTH_PROFILES_FILE_NAME = "auth-profiles.json"
AUTH_PROFILES_VERSION = 1


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mask_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:6]}...{value[-4:]}"


def auth_profiles_path(state_dir: Path) -> Path:
    return Path(state_dir) / "agents" / "main" / "agent" / AUTH_PROFILES_FILE_NAME


def load_auth_profiles(state_dir: Path) -> dict[str, Any]:
    path = auth_profiles_path(state_dir)
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        loaded = None
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.warning("Ignoring unreadable auth profiles at %s: %s", path, exc)
        loaded = None
    if not isinstance(loaded, dict):
        loaded = {}
    profiles = loaded.get("profiles")
    return {
        "version": loaded.get("version", AUTH_PROFILES_VERSION),
        "profiles": profiles if isinstance(profiles, dict) else {},
    }


def upsert_api_key_profile(state_dir: Path, provider: Any, key: Any, profile_name: str = "default") -> dict[str, Any]:
    normalized_provider = str(provider or "").strip()
    if not normalized_provider:
        raise GatewayHostError("provider is required")
    api_key = str(key or "").strip()
    if not api_key:
        raise GatewayHostError("API key is required.")
    if any(ch.isspace() for ch in api_key):
        raise GatewayHostError("API key must not contain whitespace.")

    profile_id = f"{normalized_provider}:{profile_name}"
    store = load_auth_profiles(state_dir)
    store["profiles"][profile_id] = {
        "type": "api_key",
        "provider": normalized_provider,
        "key": api_key,
        "updated_at": _iso_now(),
    }
    path = auth_profiles_path(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path.parent, 0o700)
    except OSError:
        pass
    write_private_file(path, (json.dumps(store, indent=2) + "\n").encode("utf-8"))
    LOGGER.info("Saved API key profile %s (%s)", profile_id, _mask_secret(api_key))
    return {"profileId": profile_id, "provider": normalized_provider, "keyHint": _mask_secret(api_key)}
