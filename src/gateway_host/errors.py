from __future__ import annotations

from typing import Any


class GatewayHostError(Exception):
    kind = "gateway"

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = str(message)
        self.detail: dict[str, Any] = dict(detail or {})

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "detail": dict(self.detail)}


class GatewaySpawnError(GatewayHostError):
    kind = "spawn"


class GatewayNotReadyError(GatewayHostError):
    kind = "not_ready"


class ConfigConflictError(GatewayHostError):
    """The caller's base hash is missing or no longer matches the file on disk."""

    kind = "stale_config"


class ConfigValidationError(GatewayHostError):
    kind = "invalid_config"


class RpcError(GatewayHostError):
    kind = "rpc"

    def __init__(self, message: str, code: str = "", detail: dict[str, Any] | None = None):
        super().__init__(message, detail=detail)
        self.code = str(code or self.kind)

    def payload(self) -> dict[str, Any]:
        payload = super().payload()
        payload["code"] = self.code
        return payload


class RpcTimeoutError(RpcError):
    kind = "rpc_timeout"


class ChannelClosedError(RpcError):
    kind = "channel_closed"


ERROR_CODE_TYPES: dict[str, type[GatewayHostError]] = {
    ConfigConflictError.kind: ConfigConflictError,
    ConfigValidationError.kind: ConfigValidationError,
    GatewayNotReadyError.kind: GatewayNotReadyError,
}


def error_from_wire(error: Any) -> GatewayHostError:
    if not isinstance(error, dict):
        return RpcError(str(error or "Gateway request failed."))
    code = str(error.get("code") or "")
    message = str(error.get("message") or "Gateway request failed.")
    details = error.get("details")
    detail = details if isinstance(details, dict) else {}
    error_type = ERROR_CODE_TYPES.get(code)
    if error_type is not None:
        return error_type(message, detail=detail)
    return RpcError(message, code=code, detail=detail)
