from __future__ import annotations

import os
from dataclasses import dataclass, field

from orderdesk_dispatch.schemas import PermissionMode

DEFAULT_MAX_CONCURRENT_ORDERS = 5
DEFAULT_POLL_INTERVAL_SECONDS = 5.0


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _env_float(name: str, default: float) -> float:
    raw = _env_or_default(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_or_default(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class DispatchSettings:
    api_base_url: str | None = None
    api_token: str | None = None
    http_timeout_seconds: float = 5.0
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    default_max_concurrent_orders: int = DEFAULT_MAX_CONCURRENT_ORDERS
    optimistic_ttl_seconds: float = 30.0
    permission_mode: PermissionMode = PermissionMode.FIRST_ROLE
    log_level: str = "INFO"
    cors_allow_origins: list[str] = field(default_factory=lambda: ["null"])

    @classmethod
    def from_env(cls) -> "DispatchSettings":
        mode_raw = _env_or_default("ORDERDESK_PERMISSION_MODE", PermissionMode.FIRST_ROLE.value)
        try:
            permission_mode = PermissionMode(mode_raw)
        except ValueError as exc:
            allowed = ", ".join(mode.value for mode in PermissionMode)
            raise ValueError(f"ORDERDESK_PERMISSION_MODE must be one of: {allowed}") from exc

        return cls(
            api_base_url=os.getenv("ORDERDESK_API_BASE_URL") or None,
            api_token=os.getenv("ORDERDESK_API_TOKEN") or None,
            http_timeout_seconds=_env_float("ORDERDESK_HTTP_TIMEOUT_SECONDS", 5.0),
            poll_interval_seconds=_env_float("ORDERDESK_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
            default_max_concurrent_orders=_env_int(
                "ORDERDESK_DEFAULT_MAX_CONCURRENT_ORDERS", DEFAULT_MAX_CONCURRENT_ORDERS
            ),
            optimistic_ttl_seconds=_env_float("ORDERDESK_OPTIMISTIC_TTL_SECONDS", 30.0),
            permission_mode=permission_mode,
            log_level=_env_or_default("ORDERDESK_LOG_LEVEL", "INFO").upper(),
            cors_allow_origins=_parse_csv_env("ORDERDESK_CORS_ALLOW_ORIGINS", default="null"),
        )
