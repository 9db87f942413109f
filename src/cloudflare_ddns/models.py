"""Data model shared by the store, the reconciler and the provider client."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from cloudflare_ddns.errors import ValidationError

MIN_UPDATE_INTERVAL_SECONDS = 60
DEFAULT_RECORD_TTL = 120
MANAGED_COMMENT = "managed by cloudflare-ddns"

# =============================================================================
# Enums
# =============================================================================


class AddressFamily(Enum):
    """Address family of a DDNS config; decides record type and resolver mode."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def record_type(self) -> str:
        return "A" if self is AddressFamily.IPV4 else "AAAA"

    @classmethod
    def parse(cls, value: Any) -> "AddressFamily":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid address family: {value!r} (expected ipv4 or ipv6)")


class ConfigStatus(Enum):
    """Reconciliation state of a DDNS config.

    IDLE: registered, never checked yet.
    CHECKING: resolving the IP and reading the provider record.
    UPDATING: a write to the provider is in flight.
    OK / ERROR: outcome of the last cycle, held until the next tick.
    """

    IDLE = "idle"
    CHECKING = "checking"
    UPDATING = "updating"
    OK = "ok"
    ERROR = "error"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DdnsConfig:
    """Desired state for one record plus its last known status."""

    id: str
    zone_id: str
    record_name: str
    address_family: AddressFamily
    update_interval_seconds: int
    record_id: Optional[str] = None
    ttl: int = DEFAULT_RECORD_TTL
    proxied: bool = False
    status: ConfigStatus = ConfigStatus.IDLE
    current_ip: Optional[str] = None
    last_update_time: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def record_type(self) -> str:
        return self.address_family.record_type

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["address_family"] = self.address_family.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DdnsConfig":
        return cls(
            id=str(data["id"]),
            zone_id=str(data.get("zone_id") or ""),
            record_name=str(data.get("record_name") or ""),
            address_family=AddressFamily.parse(data.get("address_family", "ipv4")),
            update_interval_seconds=data.get("update_interval_seconds", 0),
            record_id=data.get("record_id") or None,
            ttl=int(data.get("ttl", DEFAULT_RECORD_TTL)),
            proxied=bool(data.get("proxied", False)),
            status=ConfigStatus(data.get("status", ConfigStatus.IDLE.value)),
            current_ip=data.get("current_ip"),
            last_update_time=data.get("last_update_time"),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class DnsRecord:
    """An address record as held by the DNS provider."""

    id: str
    zone_id: str
    type: str
    name: str
    content: str
    ttl: int = DEFAULT_RECORD_TTL
    proxied: bool = False
    comment: str = ""


@dataclass(frozen=True)
class Zone:
    """A DNS zone on the provider."""

    id: str
    name: str
    status: str = ""


# =============================================================================
# Validation
# =============================================================================


def validate_interval(value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"update_interval_seconds must be an integer, got {value!r}")
    if value < MIN_UPDATE_INTERVAL_SECONDS:
        raise ValidationError(
            f"update_interval_seconds must be >= {MIN_UPDATE_INTERVAL_SECONDS}, got {value}"
        )
    return value


def validate_config(config: DdnsConfig) -> DdnsConfig:
    """Check the desired-state fields of a config; raise ValidationError if malformed."""
    if not config.id or not str(config.id).strip():
        raise ValidationError("Config id cannot be empty")
    if not config.zone_id or not config.zone_id.strip():
        raise ValidationError("zone_id cannot be empty")
    if not config.record_name or not config.record_name.strip():
        raise ValidationError("record_name cannot be empty")
    if not isinstance(config.address_family, AddressFamily):
        raise ValidationError(f"Invalid address family: {config.address_family!r}")
    validate_interval(config.update_interval_seconds)
    if isinstance(config.ttl, bool) or not isinstance(config.ttl, int) or config.ttl < 1:
        raise ValidationError(f"ttl must be a positive integer, got {config.ttl!r}")
    return config
