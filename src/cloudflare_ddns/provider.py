"""DNS provider interface and the Cloudflare API v4 implementation."""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import requests

from cloudflare_ddns.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from cloudflare_ddns.models import DEFAULT_RECORD_TTL, DnsRecord, Zone

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cloudflare.com/client/v4"
ADDRESS_RECORD_TYPES = ("A", "AAAA")

# Cloudflare error codes for "an identical record already exists"
CONFLICT_ERROR_CODES = {81053, 81057, 81058}
DEFAULT_RETRY_AFTER_SECONDS = 60.0

# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Implementations hold no per-config state and may be shared by every
    reconciliation cycle.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection and credential against the provider."""
        pass

    @abstractmethod
    def list_zones(self) -> List[Zone]:
        """List the zones visible to the credential."""
        pass

    @abstractmethod
    def list_records(
        self,
        zone_id: str,
        types: Optional[Iterable[str]] = None,
        name: Optional[str] = None,
    ) -> List[DnsRecord]:
        """List address records of a zone, optionally filtered by type and name."""
        pass

    @abstractmethod
    def get_record(self, zone_id: str, record_id: str) -> DnsRecord:
        """Read one record; raise NotFoundError if it no longer exists."""
        pass

    @abstractmethod
    def create_record(self, zone_id: str, record: DnsRecord) -> DnsRecord:
        """Create a record and return it with its provider-assigned id."""
        pass

    @abstractmethod
    def update_record(self, zone_id: str, record_id: str, patch: Dict[str, Any]) -> DnsRecord:
        """Partially update a record; raise NotFoundError if it no longer exists."""
        pass

    @abstractmethod
    def delete_record(self, zone_id: str, record_id: str) -> bool:
        """Delete a record. Deleting an absent record is not an error."""
        pass


# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare API v4 DNS provider.

    The bearer token is fixed at construction. After an HTTP 429 the client
    refuses every call until the Retry-After window has elapsed; that window
    is shared by all configs using this client.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._api_token = (api_token or "").strip()
        self._url = (base_url or DEFAULT_API_URL).rstrip("/")
        self._timeout = timeout_seconds
        self._clock = clock
        self._backoff_lock = threading.Lock()
        self._blocked_until = 0.0
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if self._api_token:
            self._session.headers["Authorization"] = f"Bearer {self._api_token}"

    @property
    def name(self) -> str:
        return "Cloudflare"

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/user/tokens/verify")
            logger.info(f"{self.name} connection successful")
            return True
        except (AuthError, ProviderError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def list_zones(self) -> List[Zone]:
        zones = []
        for item in self._paginate("/zones", {"per_page": 50}):
            if not isinstance(item, dict) or not item.get("id"):
                logger.warning(f"Skipping malformed zone: {item}")
                continue
            zones.append(
                Zone(
                    id=str(item["id"]),
                    name=str(item.get("name") or ""),
                    status=str(item.get("status") or ""),
                )
            )
        return zones

    def list_records(
        self,
        zone_id: str,
        types: Optional[Iterable[str]] = None,
        name: Optional[str] = None,
    ) -> List[DnsRecord]:
        wanted: Set[str] = {t.upper() for t in (types or ADDRESS_RECORD_TYPES)}
        params: Dict[str, Any] = {"per_page": 100}
        if len(wanted) == 1:
            params["type"] = next(iter(wanted))
        if name:
            params["name"] = name

        records = []
        for item in self._paginate(f"/zones/{zone_id}/dns_records", params):
            record = self._parse_record(zone_id, item)
            if record is None:
                continue
            if record.type not in wanted:
                continue
            if name and record.name != name:
                continue
            records.append(record)
        return records

    def get_record(self, zone_id: str, record_id: str) -> DnsRecord:
        payload = self._request("GET", f"/zones/{zone_id}/dns_records/{record_id}")
        record = self._parse_record(zone_id, payload.get("result"))
        if record is None:
            raise NotFoundError(f"DNS record not found: {record_id}")
        return record

    def create_record(self, zone_id: str, record: DnsRecord) -> DnsRecord:
        if not record.name or not record.name.strip():
            raise ValidationError("Record name cannot be empty")
        if not record.content or not record.content.strip():
            raise ValidationError("Record content cannot be empty")
        if record.type not in ADDRESS_RECORD_TYPES:
            raise ValidationError(f"Unsupported record type: {record.type}")

        body = {
            "type": record.type,
            "name": record.name,
            "content": record.content,
            "ttl": record.ttl,
            "proxied": record.proxied,
        }
        if record.comment:
            body["comment"] = record.comment

        payload = self._request("POST", f"/zones/{zone_id}/dns_records", json_body=body)
        created = self._parse_record(zone_id, payload.get("result"))
        if created is None:
            raise ProviderError("Cloudflare returned no record after create")
        logger.info(f"Created DNS record: {created.name} ({created.type}) -> {created.content}")
        return created

    def update_record(self, zone_id: str, record_id: str, patch: Dict[str, Any]) -> DnsRecord:
        if not patch:
            raise ValidationError("Record update cannot be empty")
        payload = self._request(
            "PATCH", f"/zones/{zone_id}/dns_records/{record_id}", json_body=dict(patch)
        )
        updated = self._parse_record(zone_id, payload.get("result"))
        if updated is None:
            raise ProviderError("Cloudflare returned no record after update")
        logger.info(f"Updated DNS record: {updated.name} ({updated.type}) -> {updated.content}")
        return updated

    def delete_record(self, zone_id: str, record_id: str) -> bool:
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        except NotFoundError:
            logger.debug(f"DNS record {record_id} already absent from zone {zone_id}")
            return True
        logger.info(f"Deleted DNS record {record_id} from zone {zone_id}")
        return True

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    def _paginate(self, path: str, params: Dict[str, Any]) -> List[Any]:
        items: List[Any] = []
        page = 1
        while True:
            payload = self._request("GET", path, params={**params, "page": page})
            result = payload.get("result") or []
            if not isinstance(result, list):
                raise ProviderError(
                    f"Unexpected response format from {path}: expected list, got {type(result).__name__}"
                )
            items.extend(result)

            info = payload.get("result_info") or {}
            total_pages = info.get("total_pages") or 1
            if page >= total_pages:
                return items
            page += 1

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self._api_token:
            raise AuthError("Cloudflare API token is not configured")
        self._check_backoff()

        url = f"{self._url}{path}"
        try:
            response = self._session.request(
                method, url, params=params, json=json_body, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e

        logger.debug(f"{method} {url} - Status: {response.status_code}")
        payload = self._decode(response)
        message = _error_message(payload) or (response.text or "")[:200]
        status = response.status_code

        if status in (401, 403):
            raise AuthError(f"Cloudflare rejected the API token ({status}): {message}")
        if status == 404:
            raise NotFoundError(f"Not found: {path}: {message}")
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            with self._backoff_lock:
                self._blocked_until = max(self._blocked_until, self._clock() + retry_after)
            logger.warning(f"Cloudflare rate limit hit, backing off for {retry_after:.0f}s")
            raise RateLimitError(f"Rate limited by Cloudflare: {message}", retry_after=retry_after)
        if _error_codes(payload) & CONFLICT_ERROR_CODES:
            raise ConflictError(f"Record already exists: {message}")
        if status >= 400 or payload is None or not payload.get("success", False):
            raise ProviderError(f"Cloudflare API error ({status}): {message}")
        return payload

    def _check_backoff(self) -> None:
        with self._backoff_lock:
            remaining = self._blocked_until - self._clock()
        if remaining > 0:
            raise RateLimitError(
                f"Cloudflare calls suspended for another {remaining:.0f}s", retry_after=remaining
            )

    @staticmethod
    def _decode(response: requests.Response) -> Optional[Dict[str, Any]]:
        try:
            data = response.json()
        except (ValueError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _parse_record(zone_id: str, data: Any) -> Optional[DnsRecord]:
        if not isinstance(data, dict):
            return None
        record_id = data.get("id")
        record_type = data.get("type")
        name = data.get("name")
        content = data.get("content")
        if not all(isinstance(v, str) and v for v in (record_id, record_type, name)):
            logger.warning(f"Skipping malformed record: {data}")
            return None
        return DnsRecord(
            id=record_id,
            zone_id=str(data.get("zone_id") or zone_id),
            type=record_type,
            name=name,
            content=content if isinstance(content, str) else "",
            ttl=int(data.get("ttl") or DEFAULT_RECORD_TTL),
            proxied=bool(data.get("proxied", False)),
            comment=str(data.get("comment") or ""),
        )


# =============================================================================
# Utility Functions
# =============================================================================


def _error_codes(payload: Optional[Dict[str, Any]]) -> Set[int]:
    codes: Set[int] = set()
    for err in (payload or {}).get("errors") or []:
        if isinstance(err, dict) and isinstance(err.get("code"), int):
            codes.add(err["code"])
    return codes


def _error_message(payload: Optional[Dict[str, Any]]) -> str:
    messages = []
    for err in (payload or {}).get("errors") or []:
        if isinstance(err, dict):
            messages.append(f"[{err.get('code')}] {err.get('message')}")
        else:
            messages.append(str(err))
    return "; ".join(messages)


def _parse_retry_after(value: Optional[str]) -> float:
    try:
        seconds = float(value) if value is not None else DEFAULT_RETRY_AFTER_SECONDS
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    return seconds if seconds > 0 else DEFAULT_RETRY_AFTER_SECONDS
