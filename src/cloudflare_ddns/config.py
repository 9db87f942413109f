"""Runtime settings and desired-state config files.

Environment variables:

    Cloudflare:
        CLOUDFLARE_API_TOKEN     API token with Zone:Read and DNS:Edit (required)
        CLOUDFLARE_API_URL       API base URL (default: https://api.cloudflare.com/client/v4)

    IP discovery:
        IPV4_DETECTION_URL       Plain-text IPv4 discovery service (default: https://api4.ipify.org)
        IPV6_DETECTION_URL       Plain-text IPv6 discovery service (default: https://api6.ipify.org)

    Runtime:
        DDNS_CONFIG_PATH         YAML file, or directory of *.yaml files, declaring DDNS configs
                                 (default: /config/ddns.yaml)
                                 Example:
                                   configs:
                                     - id: "home-v4"
                                       zone_id: "023e105f4ecef8ad9ca31a8372d0c353"
                                       record_name: "home.example.com"
                                       address_family: "ipv4"
                                       update_interval_seconds: 300
        STATE_PATH               JSON state file path (default: /data/state.json)
        SYNC_MODE                "once" or "watch" (default: watch)
        REQUEST_TIMEOUT_SECONDS  Timeout of every provider and discovery call (default: 10)
        MAX_WORKERS              Concurrent reconciliation cycles (default: 8)
        CONFIG_POLL_SECONDS      How often the config files are checked for changes (default: 30)
        LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from cloudflare_ddns.errors import ConfigError, ValidationError
from cloudflare_ddns.models import DEFAULT_RECORD_TTL, AddressFamily
from cloudflare_ddns.provider import DEFAULT_API_URL
from cloudflare_ddns.resolver import DEFAULT_IPV4_URL, DEFAULT_IPV6_URL

logger = logging.getLogger(__name__)

# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class Settings:
    api_token: str = ""
    api_url: str = DEFAULT_API_URL
    ipv4_detection_url: str = DEFAULT_IPV4_URL
    ipv6_detection_url: str = DEFAULT_IPV6_URL
    config_path: str = "/config/ddns.yaml"
    state_path: str = "/data/state.json"
    sync_mode: str = "watch"
    request_timeout_seconds: float = 10.0
    max_workers: int = 8
    config_poll_seconds: int = 30
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    timeout = _parse_float(env.get("REQUEST_TIMEOUT_SECONDS"), default=10.0)
    return Settings(
        api_token=env.get("CLOUDFLARE_API_TOKEN", "").strip(),
        api_url=env.get("CLOUDFLARE_API_URL", DEFAULT_API_URL).strip() or DEFAULT_API_URL,
        ipv4_detection_url=env.get("IPV4_DETECTION_URL", "").strip() or DEFAULT_IPV4_URL,
        ipv6_detection_url=env.get("IPV6_DETECTION_URL", "").strip() or DEFAULT_IPV6_URL,
        config_path=env.get("DDNS_CONFIG_PATH", "/config/ddns.yaml"),
        state_path=env.get("STATE_PATH", "/data/state.json"),
        sync_mode=env.get("SYNC_MODE", "watch").lower().strip(),
        request_timeout_seconds=timeout if timeout > 0 else 10.0,
        max_workers=max(1, _parse_int(env.get("MAX_WORKERS"), default=8)),
        config_poll_seconds=max(5, _parse_int(env.get("CONFIG_POLL_SECONDS"), default=30)),
        log_level=env.get("LOG_LEVEL", "INFO").upper().strip(),
    )


def validate_settings(settings: Settings, *, require_token: bool = True) -> List[str]:
    """Return a list of configuration problems; empty when usable."""
    errors = []
    if require_token and not settings.api_token:
        errors.append("CLOUDFLARE_API_TOKEN is required")
    if settings.sync_mode not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")
    if not settings.state_path:
        errors.append("STATE_PATH cannot be empty")
    return errors


# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except (OSError, IOError):
        return 0.0


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def get_config_files_mtimes(config_files: List[str]) -> Dict[str, float]:
    """Get modification times for all config files."""
    return {f: get_config_file_mtime(f) for f in config_files}


def load_config_entries(config_path: str) -> List[Dict[str, Any]]:
    """Read the `configs` list of every YAML file under config_path.

    Files that cannot be parsed are logged and skipped. Raises ConfigError
    only when config_path names a single file that cannot be read.
    """
    config_files = find_config_files(config_path)
    entries: List[Dict[str, Any]] = []

    for config_file in config_files:
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Configuration file not found: {config_file}") from e
        except (OSError, yaml.YAMLError) as e:
            if len(config_files) == 1:
                raise ConfigError(f"Failed to load config from {config_file}: {e}") from e
            logger.error(f"Failed to load config from {config_file}: {e}")
            continue

        if not isinstance(config_data, dict) or "configs" not in config_data:
            logger.warning(f"Config file {config_file} missing 'configs' key")
            continue
        items = config_data["configs"] or []
        if not isinstance(items, list):
            logger.warning(f"Config file {config_file}: 'configs' must be a list")
            continue
        for item in items:
            if not isinstance(item, dict):
                logger.warning(f"Skipping non-mapping config entry in {config_file}: {item!r}")
                continue
            entries.append(item)

    if config_files:
        logger.info(f"Loaded {len(entries)} config entries from {len(config_files)} file(s)")
    return entries


def normalize_config_entry(entry: Any) -> Dict[str, Any]:
    """Normalize one desired-state entry into DdnsEngine.create_config keywords.

    Accepts the short names of older files (name, ip_type, update_interval).
    The returned mapping also carries config_id, defaulting to
    "<record_name>-<family>".
    """
    if not isinstance(entry, dict):
        raise ValidationError("Config entry must be a mapping")

    record_name = str(entry.get("record_name") or entry.get("name") or "").strip()
    family = AddressFamily.parse(entry.get("address_family") or entry.get("ip_type") or "ipv4")
    interval = _parse_int(
        entry.get("update_interval_seconds", entry.get("update_interval")), default=None
    )
    if interval is None:
        raise ValidationError("update_interval_seconds is required")

    return {
        "config_id": str(entry.get("id") or f"{record_name}-{family.value}").strip(),
        "zone_id": str(entry.get("zone_id") or "").strip(),
        "record_name": record_name,
        "address_family": family,
        "update_interval_seconds": interval,
        "record_id": str(entry.get("record_id") or "").strip() or None,
        "ttl": _parse_int(entry.get("ttl"), default=DEFAULT_RECORD_TTL),
        "proxied": _parse_bool(entry.get("proxied"), default=False),
    }


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(value: Any, *, default: Optional[int]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def _parse_float(value: Any, *, default: float) -> float:
    if value is None:
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default
