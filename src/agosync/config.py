"""Client configuration for agosync."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from agosync._constants import (
    DEFAULT_AGO_IP,
    DEFAULT_AGO_PASSWORD,
    DEFAULT_AGO_SSID,
    DEFAULT_COMMAND_TIMEOUT_S,
    DEFAULT_HTTP_TIMEOUT_S,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_PROBE_TIMEOUT_S,
    DEFAULT_UPLOAD_ENDPOINT,
    DEFAULT_UPLOAD_FIELD,
    DEFAULT_WRITE_DEBOUNCE_S,
)
from agosync.exceptions import AgoConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _float_or(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclasses.dataclass(frozen=True)
class AgoConfig:
    """Client configuration.

    Parameters
    ----------
    ip : str
        Address of the AGO's HTTP control surface.
    ssid : str
        Network name broadcast by the AGO access point.
    password : str
        Shared password of the AGO access point.
    auto_reconnect : bool
        Rejoin the previously joined network on disconnect.
    upload_endpoint : str
        Legacy upload endpoint override. Only tried when it differs from
        the default custom-programs endpoint.
    upload_field : str
        Form field name used by legacy upload endpoints.
    default_min_temp, default_rated_temp, default_max_temp : float
        Temperature bounds given to newly created steps (°C).
    export_folder : str
        Default folder for exported recipe files (empty = caller decides).
    interface : str or None
        Force a specific wireless adapter instead of auto-detecting one.
    poll_interval : float
        Seconds between connectivity poll ticks.
    write_debounce : float
        Inactivity window (seconds) before coalesced edits are flushed.
    probe_timeout : float
        Timeout of a single reachability probe.
    command_timeout : float
        Timeout of an OS WiFi command (join, read network name).
    http_timeout : float
        Timeout of a device file operation.
    """

    ip: str = DEFAULT_AGO_IP
    ssid: str = DEFAULT_AGO_SSID
    password: str = DEFAULT_AGO_PASSWORD
    auto_reconnect: bool = True
    upload_endpoint: str = DEFAULT_UPLOAD_ENDPOINT
    upload_field: str = DEFAULT_UPLOAD_FIELD
    default_min_temp: float = 18.0
    default_rated_temp: float = 20.0
    default_max_temp: float = 24.0
    export_folder: str = ""
    interface: str | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL_S
    write_debounce: float = DEFAULT_WRITE_DEBOUNCE_S
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_S
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT_S
    http_timeout: float = DEFAULT_HTTP_TIMEOUT_S

    @classmethod
    def from_env(cls, **overrides: Any) -> AgoConfig:
        """Create configuration from ``AGO_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "AGO_IP": "ip",
            "AGO_SSID": "ssid",
            "AGO_PASSWORD": "password",
            "AGO_UPLOAD_ENDPOINT": "upload_endpoint",
            "AGO_UPLOAD_FIELD": "upload_field",
            "AGO_EXPORT_FOLDER": "export_folder",
            "AGO_INTERFACE": "interface",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_FLOAT_MAP = {
            "AGO_POLL_INTERVAL": "poll_interval",
            "AGO_WRITE_DEBOUNCE": "write_debounce",
            "AGO_PROBE_TIMEOUT": "probe_timeout",
            "AGO_COMMAND_TIMEOUT": "command_timeout",
            "AGO_HTTP_TIMEOUT": "http_timeout",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise AgoConfigError(f"{env_key} must be a number, got {val!r}") from exc

        if "auto_reconnect" not in overrides:
            config_kwargs["auto_reconnect"] = _env_bool(env.get("AGO_AUTO_RECONNECT"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

    @classmethod
    def from_settings(cls, settings: Mapping[str, str], **overrides: Any) -> AgoConfig:
        """Create configuration from the durable settings table.

        Settings are plain strings; empty or unparsable values fall back to
        the documented defaults.
        """
        base = cls()

        def text(key: str, default: str) -> str:
            value = settings.get(key)
            if value is None or not str(value).strip():
                return default
            return str(value).strip()

        config_kwargs: dict[str, Any] = {
            "ip": text("ago_ip", base.ip),
            "ssid": text("ago_ssid", base.ssid),
            "password": text("ago_password", base.password),
            "upload_endpoint": text("ago_upload_endpoint", base.upload_endpoint),
            "upload_field": text("ago_upload_field", base.upload_field),
            "export_folder": str(settings.get("export_folder") or ""),
            "auto_reconnect": _env_bool(settings.get("auto_reconnect"), base.auto_reconnect),
            "default_min_temp": _float_or(settings.get("default_min_temp"), base.default_min_temp),
            "default_rated_temp": _float_or(settings.get("default_rated_temp"), base.default_rated_temp),
            "default_max_temp": _float_or(settings.get("default_max_temp"), base.default_max_temp),
        }
        config_kwargs.update(overrides)
        return cls(**config_kwargs)

    def replace(self, **changes: Any) -> AgoConfig:
        """Return a copy with *changes* applied."""
        return dataclasses.replace(self, **changes)
