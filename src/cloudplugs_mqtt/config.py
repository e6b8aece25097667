"""
Client configuration.

ClientConfig is an immutable snapshot taken by the client when a connect is
initiated. It can be built directly or loaded from environment variables,
optionally read from standard env files.

Env file priority (lowest -> highest):
1) /etc/cloudplugs/mqtt.env (system install)
2) ~/.config/cloudplugs-mqtt/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from dotenv import dotenv_values

from cloudplugs_mqtt.errors import ValidationError

DEFAULT_HOST = "api.cloudplugs.com"
DEFAULT_PORT = 1883
DEFAULT_PORT_TLS = 8883

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValidationError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("cloudplugs-mqtt")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass(frozen=True, slots=True)
class ClientConfig:
    host: str = DEFAULT_HOST
    port: Optional[int] = None  # None picks 1883 or 8883 from tls
    tls: bool = False
    allow_invalid_certificates: bool = False
    qos: int = 1
    plug_id: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None  # device serial number
    log_enabled: bool = False
    persistence: bool = False
    keepalive: int = 60
    connect_timeout_s: float = 10.0
    request_timeout_s: float = 30.0
    default_ttl: Optional[int] = None  # None leaves ttl to the platform
    default_prefix: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host:
            raise ConfigError("host must be a non-empty string")
        if self.port is not None and not (1 <= self.port <= 65535):
            raise ConfigError(f"port out of range: {self.port}")
        if self.qos not in (0, 1, 2):
            raise ConfigError(f"qos must be 0, 1 or 2, got {self.qos!r}")
        if self.keepalive <= 0:
            raise ConfigError("keepalive must be > 0")
        if self.connect_timeout_s <= 0 or self.request_timeout_s <= 0:
            raise ConfigError("timeouts must be > 0")
        if self.default_ttl is not None and self.default_ttl < 0:
            raise ConfigError("default_ttl must be >= 0")
        if self.persistence and not self.client_id:
            # a non-clean MQTT session is keyed by client id
            raise ConfigError("persistence requires a client_id")

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return DEFAULT_PORT_TLS if self.tls else DEFAULT_PORT

    def replace(self, **changes: Any) -> "ClientConfig":
        """Return a validated copy with the given fields changed."""
        try:
            return dataclasses.replace(self, **changes)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    def for_enrollment(self, hwid: str) -> "ClientConfig":
        """Credential-less copy used for a provisional enrollment session."""
        return dataclasses.replace(
            self,
            plug_id=None,
            password=None,
            client_id=self.client_id or hwid,
            persistence=False,
        )


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/cloudplugs/mqtt.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "cloudplugs-mqtt" / ".env"

    # 3) project override
    yield Path(".env")


def _read_env(dotenv_enabled: bool) -> dict[str, str]:
    values: dict[str, str] = {}
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # later files override earlier ones
                values.update({k: v for k, v in dotenv_values(p).items() if v is not None})
    values.update(os.environ)
    return values


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def load_config(*, dotenv_enabled: bool = True) -> ClientConfig:
    """
    Build a ClientConfig from CLOUDPLUGS_* variables (env files first, process
    environment last). Unset variables keep the ClientConfig defaults.

    Raises ConfigError on invalid values.
    """
    env = _read_env(dotenv_enabled)

    kwargs: dict[str, Any] = {}
    for key, (field_name, parse) in _ENV_FIELDS.items():
        raw = env.get(key)
        if raw is None or raw == "":
            continue
        kwargs[field_name] = parse(key, raw) if parse else raw

    return ClientConfig(**kwargs)


# env var -> (ClientConfig field, parser or None for plain strings)
_ENV_FIELDS: dict[str, tuple[str, Optional[Callable[[str, str], Any]]]] = {
    "CLOUDPLUGS_HOST": ("host", None),
    "CLOUDPLUGS_PORT": ("port", _parse_int),
    "CLOUDPLUGS_TLS": ("tls", _parse_bool),
    "CLOUDPLUGS_ALLOW_INVALID_CERTS": ("allow_invalid_certificates", _parse_bool),
    "CLOUDPLUGS_QOS": ("qos", _parse_int),
    "CLOUDPLUGS_PLUG_ID": ("plug_id", None),
    "CLOUDPLUGS_PASSWORD": ("password", None),
    "CLOUDPLUGS_CLIENT_ID": ("client_id", None),
    "CLOUDPLUGS_LOG": ("log_enabled", _parse_bool),
    "CLOUDPLUGS_PERSISTENCE": ("persistence", _parse_bool),
    "CLOUDPLUGS_REQUEST_TIMEOUT": ("request_timeout_s", _parse_float),
    "CLOUDPLUGS_CONNECT_TIMEOUT": ("connect_timeout_s", _parse_float),
    "CLOUDPLUGS_DEFAULT_TTL": ("default_ttl", _parse_int),
}
