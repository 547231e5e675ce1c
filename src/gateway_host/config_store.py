from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gateway_host.errors import ConfigConflictError, ConfigValidationError

LOGGER = logging.getLogger("gateway_host.config")

CONFIG_FILE_NAME = "gateway.json"


@dataclass(frozen=True)
class ConfigSnapshot:
    path: str
    exists: bool
    valid: bool
    hash: str | None
    config: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "exists": self.exists,
            "valid": self.valid,
            "hash": self.hash,
            "config": copy.deepcopy(self.config),
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "ConfigSnapshot":
        if not isinstance(payload, dict):
            payload = {}
        raw_hash = payload.get("hash")
        config = payload.get("config")
        return cls(
            path=str(payload.get("path") or ""),
            exists=bool(payload.get("exists", False)),
            valid=bool(payload.get("valid", False)),
            hash=str(raw_hash).strip() if isinstance(raw_hash, str) and raw_hash.strip() else None,
            config=config if isinstance(config, dict) else {},
        )


def config_hash(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def deep_merge(base: Any, patch: Any) -> Any:
    """Merge ``patch`` into ``base`` without mutating either.

    Objects merge key by key, every other value replaces the prior one
    wholesale (arrays included), and ``None`` removes the key.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    merged = copy.deepcopy(base) if isinstance(base, dict) else {}
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
            continue
        if isinstance(value, dict):
            merged[key] = deep_merge(merged.get(key), value)
            continue
        merged[key] = copy.deepcopy(value)
    return merged


def parse_config_document(raw: Any, *, field_name: str = "raw") -> dict[str, Any]:
    if isinstance(raw, dict):
        return copy.deepcopy(raw)
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigValidationError(f"{field_name} must be a JSON object.")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigValidationError(f"{field_name} is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigValidationError(f"{field_name} must be a JSON object.")
    return parsed


def _serialize(document: dict[str, Any]) -> bytes:
    return (json.dumps(document, indent=2) + "\n").encode("utf-8")


def write_private_file(path: Path, data: bytes) -> None:
    """Atomically replace ``path`` with ``data``, readable only by the owner."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class ConfigStore:
    """The persisted gateway configuration, guarded by its content hash."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def snapshot(self) -> ConfigSnapshot:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return ConfigSnapshot(path=str(self.path), exists=False, valid=True, hash=None, config={})

        digest = config_hash(raw)
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return ConfigSnapshot(path=str(self.path), exists=True, valid=False, hash=digest, config={})
        if not isinstance(parsed, dict):
            return ConfigSnapshot(path=str(self.path), exists=True, valid=False, hash=digest, config={})
        return ConfigSnapshot(path=str(self.path), exists=True, valid=True, hash=digest, config=parsed)

    def set(self, raw: Any) -> ConfigSnapshot:
        document = parse_config_document(raw)
        write_private_file(self.path, _serialize(document))
        LOGGER.info("Config written path=%s", self.path)
        return self.snapshot()

    def patch(self, base_hash: Any, raw: Any, note: str = "") -> ConfigSnapshot:
        normalized_hash = str(base_hash or "").strip()
        if not normalized_hash:
            raise ConfigConflictError(
                "Config base hash missing. Reload and try again.",
                detail={"reason": "missing"},
            )
        patch = parse_config_document(raw)

        current = self.snapshot()
        if not current.exists:
            raise ConfigConflictError(
                "Config does not exist yet; seed it with config.set.",
                detail={"reason": "missing_config"},
            )
        if current.hash != normalized_hash:
            raise ConfigConflictError(
                "Config base hash is stale. Reload and try again.",
                detail={"reason": "stale", "current_hash": current.hash},
            )
        if not current.valid:
            raise ConfigValidationError("Existing config is not a valid JSON object; fix it before patching.")

        merged = deep_merge(current.config, patch)
        write_private_file(self.path, _serialize(merged))
        LOGGER.info("Config patched path=%s note=%s", self.path, str(note or "")[:200])
        return self.snapshot()


def read_gateway_token(path: Path) -> str | None:
    snapshot = ConfigStore(path).snapshot()
    gateway = snapshot.config.get("gateway")
    if not isinstance(gateway, dict):
        return None
    auth = gateway.get("auth")
    if not isinstance(auth, dict):
        return None
    token = auth.get("token")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


def ensure_gateway_config_file(path: Path, token: str) -> bool:
    """Create a minimal config carrying ``token`` when none exists. Returns whether it wrote."""
    store = ConfigStore(path)
    if store.snapshot().exists:
        return False
    store.set({"gateway": {"mode": "local", "auth": {"mode": "token", "token": str(token)}}})
    return True
