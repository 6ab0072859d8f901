"""
Gateway configuration.

Values come from environment variables and may be overridden on the
command line (see ``main.py``).

Environment Variables:
    SERVER_HOST: WebSocket/HTTP bind address (default: 0.0.0.0)
    SERVER_PORT: WebSocket/HTTP port (default: 3000)
    CAR_HOST: Car IP address (default: 192.168.4.1)
    CAR_PORT: Car TCP port (default: 100)
    HEARTBEAT_INTERVAL_MS: Heartbeat period (default: 1000)
    CONNECT_TIMEOUT_MS: Car connect timeout (default: 5000)
    SEND_DEBOUNCE_MS: Minimum gap between command writes (default: 50)
    DEFAULT_SPEED: Forward drive speed (default: 100)
    TURNING_SPEED: Turn-in-place speed (default: 75)
    SHUTDOWN_STOP_TIMEOUT_MS: Bound on the final STOP write (default: 500)
    CLIENT_SEND_TIMEOUT_MS: Bound on each status send to a client (default: 1000)
    STOP_ON_LAST_CLIENT: Send STOP when the last client leaves (default: false)
    LOG_LEVEL: Logging level name (default: INFO)
"""

import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

from .commands import DEFAULT_SPEED, TURNING_SPEED

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class GatewayConfig:
    """Application configuration."""

    server_host: str = "0.0.0.0"
    server_port: int = 3000
    car_host: str = "192.168.4.1"
    car_port: int = 100
    heartbeat_interval_ms: int = 1000
    connect_timeout_ms: int = 5000
    send_debounce_ms: int = 50
    default_speed: int = DEFAULT_SPEED
    turning_speed: int = TURNING_SPEED
    shutdown_stop_timeout_ms: int = 500
    client_send_timeout_ms: int = 1000
    stop_on_last_client: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not 0 < self.car_port < 65536:
            raise ValueError(f"car_port out of range: {self.car_port}")
        if not 0 <= self.server_port < 65536:
            raise ValueError(f"server_port out of range: {self.server_port}")
        for name in ("heartbeat_interval_ms", "connect_timeout_ms", "client_send_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.send_debounce_ms < 0 or self.shutdown_stop_timeout_ms < 0:
            raise ValueError("Timeouts must not be negative")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'GatewayConfig':
        """Load configuration from environment variables."""
        if env is None:
            env = os.environ
        return cls(
            server_host=env.get("SERVER_HOST", "0.0.0.0"),
            server_port=_env_int(env, "SERVER_PORT", 3000),
            car_host=env.get("CAR_HOST", "192.168.4.1"),
            car_port=_env_int(env, "CAR_PORT", 100),
            heartbeat_interval_ms=_env_int(env, "HEARTBEAT_INTERVAL_MS", 1000),
            connect_timeout_ms=_env_int(env, "CONNECT_TIMEOUT_MS", 5000),
            send_debounce_ms=_env_int(env, "SEND_DEBOUNCE_MS", 50),
            default_speed=_env_int(env, "DEFAULT_SPEED", DEFAULT_SPEED),
            turning_speed=_env_int(env, "TURNING_SPEED", TURNING_SPEED),
            shutdown_stop_timeout_ms=_env_int(env, "SHUTDOWN_STOP_TIMEOUT_MS", 500),
            client_send_timeout_ms=_env_int(env, "CLIENT_SEND_TIMEOUT_MS", 1000),
            stop_on_last_client=_env_bool(env, "STOP_ON_LAST_CLIENT", False),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    def with_overrides(self, overrides: Dict[str, Any]) -> 'GatewayConfig':
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
