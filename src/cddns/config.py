"""Configuration.

Three layers, each overriding the previous one:

    1. YAML config file (default: cddns.yaml, or --config / CDDNS_CONFIG)
    2. Environment variables
    3. Command-line flags

Config file layout:

    verify:
      token: "<CLOUDFLARE_API_TOKEN>"
    list:
      include_zones: [".*"]
      ignore_zones: []
      include_records: [".*"]
      ignore_records: []
    inventory:
      path: inventory.yaml
      force_update: false
      force_prune: false
      interval: 30000          # milliseconds
      reload: true
    request_timeout: 10        # seconds
    log_level: INFO

Environment variables:

    CDDNS_CONFIG               Config file path
    CDDNS_TOKEN                Cloudflare API token (zone edit permission)
    CDDNS_INVENTORY_PATH       Inventory file path (default: inventory.yaml)
    CDDNS_FORCE_UPDATE         Skip prompts before updating outdated records
    CDDNS_FORCE_PRUNE          Skip prompts before pruning invalid entries
    CDDNS_WATCH_INTERVAL       Watch interval in milliseconds (default: 30000)
    CDDNS_RELOAD_INVENTORY     Re-read the inventory when it changes (default: true)
    CDDNS_REQUEST_TIMEOUT      HTTP timeout in seconds (default: 10)
    CDDNS_LOG_LEVEL            DEBUG, INFO, WARNING, ERROR (default: INFO)
    CDDNS_INCLUDE_ZONES        Comma-separated zone patterns shown by `list`
    CDDNS_IGNORE_ZONES         Comma-separated zone patterns hidden by `list`
    CDDNS_INCLUDE_RECORDS      Comma-separated record patterns shown by `list`
    CDDNS_IGNORE_RECORDS       Comma-separated record patterns hidden by `list`
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .inventory import DEFAULT_INVENTORY_PATH
from .watch import DEFAULT_WATCH_INTERVAL_MS

DEFAULT_CONFIG_PATH = "cddns.yaml"
DEFAULT_REQUEST_TIMEOUT = 10.0
ENV_PREFIX = "CDDNS_"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """The configuration is unreadable or invalid."""


@dataclass(frozen=True)
class Config:
    token: str = ""
    inventory_path: str = DEFAULT_INVENTORY_PATH
    watch_interval_ms: int = DEFAULT_WATCH_INTERVAL_MS
    force_update: bool = False
    force_prune: bool = False
    reload_inventory: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    log_level: str = "INFO"
    include_zones: Tuple[str, ...] = (".*",)
    ignore_zones: Tuple[str, ...] = ()
    include_records: Tuple[str, ...] = (".*",)
    ignore_records: Tuple[str, ...] = ()

    def merge(self, overrides: Mapping[str, Any]) -> "Config":
        """Return a copy with every non-None override applied and validated."""
        known = {f.name for f in fields(self)}
        updates: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                raise ConfigError(f"Unknown configuration option: {key}")
            updates[key] = _coerce(key, value)
        return replace(self, **updates)

    def __repr__(self) -> str:
        token = "***" if self.token else "''"
        return (
            f"Config(token={token}, inventory_path={self.inventory_path!r}, "
            f"watch_interval_ms={self.watch_interval_ms}, force_update={self.force_update}, "
            f"force_prune={self.force_prune}, reload_inventory={self.reload_inventory}, "
            f"request_timeout={self.request_timeout}, log_level={self.log_level!r})"
        )


# =============================================================================
# Value Parsing
# =============================================================================


def _parse_bool(value: Any, *, default: Optional[bool] = True) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
    return default


def _parse_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if isinstance(value, (list, tuple)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    raise ConfigError(f"Expected a list of patterns, got {value!r}")


def _coerce(key: str, value: Any) -> Any:
    if key in ("force_update", "force_prune", "reload_inventory"):
        if isinstance(value, str) and _parse_bool(value, default=None) is None:
            raise ConfigError(f"Invalid boolean for {key}: {value!r}")
        return _parse_bool(value, default=False)
    if key == "watch_interval_ms":
        try:
            interval = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Watch interval must be an integer (milliseconds), got {value!r}")
        if isinstance(value, bool) or interval <= 0:
            raise ConfigError(f"Watch interval must be a positive integer, got {value!r}")
        return interval
    if key == "request_timeout":
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Request timeout must be a number of seconds, got {value!r}")
        if timeout <= 0:
            raise ConfigError(f"Request timeout must be positive, got {value!r}")
        return timeout
    if key in ("include_zones", "ignore_zones", "include_records", "ignore_records"):
        return _parse_list(value)
    if key == "log_level":
        return str(value).strip().upper()
    return str(value).strip()


# =============================================================================
# Layers
# =============================================================================


def _from_file(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text("utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    verify = data.get("verify") or {}
    listing = data.get("list") or {}
    inventory = data.get("inventory") or {}
    for section_name, section in (("verify", verify), ("list", listing), ("inventory", inventory)):
        if not isinstance(section, dict):
            raise ConfigError(f"Config section '{section_name}' must be a mapping")

    return {
        "token": verify.get("token"),
        "include_zones": listing.get("include_zones"),
        "ignore_zones": listing.get("ignore_zones"),
        "include_records": listing.get("include_records"),
        "ignore_records": listing.get("ignore_records"),
        "inventory_path": inventory.get("path"),
        "force_update": inventory.get("force_update"),
        "force_prune": inventory.get("force_prune"),
        "watch_interval_ms": inventory.get("interval"),
        "reload_inventory": inventory.get("reload"),
        "request_timeout": data.get("request_timeout"),
        "log_level": data.get("log_level"),
    }


ENV_KEYS = {
    "TOKEN": "token",
    "INVENTORY_PATH": "inventory_path",
    "FORCE_UPDATE": "force_update",
    "FORCE_PRUNE": "force_prune",
    "WATCH_INTERVAL": "watch_interval_ms",
    "RELOAD_INVENTORY": "reload_inventory",
    "REQUEST_TIMEOUT": "request_timeout",
    "LOG_LEVEL": "log_level",
    "INCLUDE_ZONES": "include_zones",
    "IGNORE_ZONES": "ignore_zones",
    "INCLUDE_RECORDS": "include_records",
    "IGNORE_RECORDS": "ignore_records",
}


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for suffix, key in ENV_KEYS.items():
        raw = env.get(f"{ENV_PREFIX}{suffix}")
        if raw is not None and raw.strip() != "":
            values[key] = raw
    return values


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Config:
    """Build the effective configuration from file, environment and flags.

    A missing file is only an error when its path was given explicitly.
    """
    env = os.environ if env is None else env
    explicit = path or env.get(f"{ENV_PREFIX}CONFIG")
    config_path = Path(explicit or DEFAULT_CONFIG_PATH)

    config = Config()
    if config_path.is_file():
        logger.debug(f"Reading config file {config_path}")
        config = config.merge(_from_file(config_path))
    elif explicit:
        raise ConfigError(f"Config file {config_path} was not found")

    config = config.merge(_from_env(env))
    if overrides:
        config = config.merge(overrides)
    return config
