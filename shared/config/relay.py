from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from shared.logging.logger import get_logger

log = get_logger("shared.config.relay")

_CONFIG_PATH = Path(__file__).parent / "relay.json"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    ping_interval: float = 30.0
    outbound_queue_size: int = 1000


@dataclass
class TwitchConfig:
    enabled: bool = True
    username: str = ""
    oauth_token: str = ""
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0

    @property
    def anonymous(self) -> bool:
        return not (self.username and self.oauth_token)


@dataclass
class KickConfig:
    enabled: bool = True
    channel_api_url: str = "https://kick.com/api/v2/channels/{channel}"
    pusher_url: str = (
        "wss://ws-us2.pusher.com/app/32cbd69e4b950bf97679"
        "?protocol=7&client=js&version=8.4.0-rc2&flash=false"
    )
    request_timeout_seconds: float = 10.0
    reconnect_initial_seconds: float = 5.0
    reconnect_max_seconds: float = 120.0


@dataclass
class UpstreamConfig:
    # 0 keeps upstream subscriptions alive after their room empties
    idle_eviction_seconds: float = 0.0


@dataclass
class RelayConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    twitch: TwitchConfig = field(default_factory=TwitchConfig)
    kick: KickConfig = field(default_factory=KickConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.debug(f"relay.json not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
            return data if isinstance(data, dict) else {}
    except Exception as e:  # pragma: no cover - defensive
        log.warning(f"Failed to load relay.json ({e}); using defaults")
        return {}


def _coerce_bool(value: Any, default: bool, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    log.warning(f"{name} must be boolean; defaulting to {default}")
    return default


def _coerce_number(value: Any, default, name: str, cast=float):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        log.warning(f"{name} is not a valid number ({value!r}); defaulting to {default}")
        return default
    if number < 0:
        log.warning(f"{name} must not be negative; defaulting to {default}")
        return default
    return number


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _merge(
    section: Dict[str, Any],
    env: Mapping[str, str],
    mapping: Dict[str, str],
) -> Dict[str, Any]:
    """Overlay env vars (field -> ENV_NAME) on top of a JSON section."""
    merged = dict(section)
    for field_name, env_name in mapping.items():
        value = env.get(env_name)
        if value is not None and value != "":
            merged[field_name] = value
    return merged


def _load_server(raw: Dict[str, Any]) -> ServerConfig:
    defaults = ServerConfig()
    return ServerConfig(
        host=str(raw.get("host", defaults.host)),
        port=_coerce_number(raw.get("port", defaults.port), defaults.port, "port", int),
        ping_interval=_coerce_number(
            raw.get("ping_interval", defaults.ping_interval),
            defaults.ping_interval,
            "ping_interval",
        ) or defaults.ping_interval,
        outbound_queue_size=_coerce_number(
            raw.get("outbound_queue_size", defaults.outbound_queue_size),
            defaults.outbound_queue_size,
            "outbound_queue_size",
            int,
        ),
    )


def _load_twitch(raw: Dict[str, Any]) -> TwitchConfig:
    defaults = TwitchConfig()
    return TwitchConfig(
        enabled=_coerce_bool(raw.get("enabled", defaults.enabled), defaults.enabled, "twitch.enabled"),
        username=str(raw.get("username", defaults.username) or "").strip(),
        oauth_token=str(raw.get("oauth_token", defaults.oauth_token) or "").strip(),
        reconnect_initial_seconds=_coerce_number(
            raw.get("reconnect_initial_seconds", defaults.reconnect_initial_seconds),
            defaults.reconnect_initial_seconds,
            "twitch.reconnect_initial_seconds",
        ),
        reconnect_max_seconds=_coerce_number(
            raw.get("reconnect_max_seconds", defaults.reconnect_max_seconds),
            defaults.reconnect_max_seconds,
            "twitch.reconnect_max_seconds",
        ),
    )


def _load_kick(raw: Dict[str, Any]) -> KickConfig:
    defaults = KickConfig()
    return KickConfig(
        enabled=_coerce_bool(raw.get("enabled", defaults.enabled), defaults.enabled, "kick.enabled"),
        channel_api_url=str(raw.get("channel_api_url", defaults.channel_api_url)),
        pusher_url=str(raw.get("pusher_url", defaults.pusher_url)),
        request_timeout_seconds=_coerce_number(
            raw.get("request_timeout_seconds", defaults.request_timeout_seconds),
            defaults.request_timeout_seconds,
            "kick.request_timeout_seconds",
        ),
        reconnect_initial_seconds=_coerce_number(
            raw.get("reconnect_initial_seconds", defaults.reconnect_initial_seconds),
            defaults.reconnect_initial_seconds,
            "kick.reconnect_initial_seconds",
        ),
        reconnect_max_seconds=_coerce_number(
            raw.get("reconnect_max_seconds", defaults.reconnect_max_seconds),
            defaults.reconnect_max_seconds,
            "kick.reconnect_max_seconds",
        ),
    )


def _load_upstream(raw: Dict[str, Any]) -> UpstreamConfig:
    defaults = UpstreamConfig()
    return UpstreamConfig(
        idle_eviction_seconds=_coerce_number(
            raw.get("idle_eviction_seconds", defaults.idle_eviction_seconds),
            defaults.idle_eviction_seconds,
            "upstream.idle_eviction_seconds",
        ),
    )


def load_relay_config(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RelayConfig:
    """
    Build the runtime configuration.

    Precedence: environment variables > relay.json > dataclass defaults.
    Invalid values are logged and replaced by defaults; loading never raises.
    """
    raw = _load_json(path or _CONFIG_PATH)
    env = os.environ if env is None else env

    server_raw = _merge(
        _section(raw, "server"),
        env,
        {
            "host": "RELAY_HOST",
            "port": "PORT",
            "ping_interval": "RELAY_PING_INTERVAL",
            "outbound_queue_size": "RELAY_OUTBOUND_QUEUE_SIZE",
        },
    )
    twitch_raw = _merge(
        _section(raw, "twitch"),
        env,
        {
            "enabled": "TWITCH_ENABLED",
            "username": "TWITCH_BOT_USERNAME",
            "oauth_token": "TWITCH_OAUTH_TOKEN",
        },
    )
    kick_raw = _merge(
        _section(raw, "kick"),
        env,
        {
            "enabled": "KICK_ENABLED",
            "channel_api_url": "KICK_CHANNEL_API_URL",
            "pusher_url": "KICK_PUSHER_URL",
        },
    )
    upstream_raw = _merge(
        _section(raw, "upstream"),
        env,
        {"idle_eviction_seconds": "RELAY_IDLE_EVICTION_SECONDS"},
    )

    config = RelayConfig(
        server=_load_server(server_raw),
        twitch=_load_twitch(twitch_raw),
        kick=_load_kick(kick_raw),
        upstream=_load_upstream(upstream_raw),
    )

    log.debug(
        "Relay config resolved: "
        f"listen={config.server.host}:{config.server.port}, "
        f"ping_interval={config.server.ping_interval}s, "
        f"twitch={'ON' if config.twitch.enabled else 'OFF'} "
        f"(auth={'ANONYMOUS' if config.twitch.anonymous else 'SET'}), "
        f"kick={'ON' if config.kick.enabled else 'OFF'}, "
        f"idle_eviction={config.upstream.idle_eviction_seconds}s"
    )
    return config


__all__ = [
    "KickConfig",
    "RelayConfig",
    "ServerConfig",
    "TwitchConfig",
    "UpstreamConfig",
    "load_relay_config",
]
