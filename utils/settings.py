"""
Runtime Settings

Configuration is read once from the environment at startup (after
python-dotenv has loaded an optional .env file) and is immutable afterwards.

Environment variables:
- HTTP_ADDRESS: HTTP listen address (default ":8080")
- GRPC_ADDRESS: gRPC listen address, empty to disable (default ":8081")
- LOG_LEVEL: DEBUG, INFO, WARNING (or WARN), ERROR (default INFO)
- LOG_FORMAT: console or json (default console)
- TRACER_ENABLED: export spans over OTLP (default false)
- TRACER_SERVICE: service.name for exported spans (default "echoserver")
- TRACER_ADDRESS: OTLP collector endpoint (default "localhost:4317")
- RELAY_TIMEOUT: upper bound for relayed calls (default "30s")
- WEBSOCKET_PING_INTERVAL: duplex echo heartbeat interval (default "25s")
- WEBSOCKET_READ_TIMEOUT: duplex echo sliding read deadline (default "30s")
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from services.duration import DurationError, parse_duration

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "WARN", "ERROR"}
LOG_FORMATS = {"console", "json"}


class SettingsError(ValueError):
    """Raised when an environment variable holds an invalid value."""


@dataclass(frozen=True)
class Settings:
    """
    Immutable process configuration.

    Attributes:
        http_address: "host:port" for the HTTP server
        grpc_address: "host:port" for the gRPC server, empty when disabled
        log_level: Python logging level name
        log_format: "console" or "json"
        tracer_enabled: Whether spans are exported over OTLP
        tracer_service: service.name resource attribute
        tracer_address: OTLP collector endpoint
        relay_timeout: Seconds before a relayed call is abandoned
        websocket_ping_interval: Seconds between duplex echo heartbeats
        websocket_read_timeout: Seconds of silence before a session is closed
    """
    http_address: str = ":8080"
    grpc_address: str = ":8081"
    log_level: str = "INFO"
    log_format: str = "console"
    tracer_enabled: bool = False
    tracer_service: str = "echoserver"
    tracer_address: str = "localhost:4317"
    relay_timeout: float = 30.0
    websocket_ping_interval: float = 25.0
    websocket_read_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            Validated Settings instance

        Raises:
            SettingsError: If any variable holds an invalid value
        """
        env = os.environ if environ is None else environ

        log_level = env.get("LOG_LEVEL", "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise SettingsError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}, got {log_level!r}")
        if log_level == "WARN":
            log_level = "WARNING"

        log_format = env.get("LOG_FORMAT", "console").lower()
        if log_format not in LOG_FORMATS:
            raise SettingsError(f"LOG_FORMAT must be one of {sorted(LOG_FORMATS)}, got {log_format!r}")

        http_address = env.get("HTTP_ADDRESS", ":8080")
        split_address(http_address)

        grpc_address = env.get("GRPC_ADDRESS", ":8081")
        if grpc_address:
            split_address(grpc_address)

        return cls(
            http_address=http_address,
            grpc_address=grpc_address,
            log_level=log_level,
            log_format=log_format,
            tracer_enabled=_parse_bool("TRACER_ENABLED", env.get("TRACER_ENABLED", "false")),
            tracer_service=env.get("TRACER_SERVICE", "echoserver"),
            tracer_address=env.get("TRACER_ADDRESS", "localhost:4317"),
            relay_timeout=_parse_positive_duration("RELAY_TIMEOUT", env.get("RELAY_TIMEOUT", "30s")),
            websocket_ping_interval=_parse_positive_duration(
                "WEBSOCKET_PING_INTERVAL", env.get("WEBSOCKET_PING_INTERVAL", "25s")
            ),
            websocket_read_timeout=_parse_positive_duration(
                "WEBSOCKET_READ_TIMEOUT", env.get("WEBSOCKET_READ_TIMEOUT", "30s")
            ),
        )


def split_address(address: str) -> Tuple[str, int]:
    """
    Split a "host:port" listen address.

    An empty host (":8080") means all interfaces.

    Raises:
        SettingsError: If the port is missing or not a valid port number
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit() or not 0 <= int(port) <= 65535:
        raise SettingsError(f"invalid listen address {address!r}, expected host:port")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise SettingsError(f"{name} must be true or false, got {value!r}")


def _parse_positive_duration(name: str, value: str) -> float:
    try:
        seconds = parse_duration(value)
    except DurationError as e:
        raise SettingsError(f"{name}: {e}") from e
    if seconds <= 0:
        raise SettingsError(f"{name} must be positive, got {value!r}")
    return seconds
