"""Public IP discovery."""

from __future__ import annotations

import ipaddress
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import requests

from cloudflare_ddns.errors import ResolutionError
from cloudflare_ddns.models import AddressFamily

logger = logging.getLogger(__name__)

DEFAULT_IPV4_URL = "https://api4.ipify.org"
DEFAULT_IPV6_URL = "https://api6.ipify.org"


class IPResolver(ABC):
    """Abstract base class for public IP resolvers."""

    @abstractmethod
    def resolve(self, family: AddressFamily) -> str:
        """Return the current public IP for the family or raise ResolutionError."""
        pass


class PublicIPResolver(IPResolver):
    """Resolves the public IP through a plain-text discovery service (ipify style).

    One request per call. Nothing is cached and nothing is retried; the
    reconciler retries on the next tick.
    """

    def __init__(
        self,
        ipv4_url: str = DEFAULT_IPV4_URL,
        ipv6_url: str = DEFAULT_IPV6_URL,
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self._urls: Dict[AddressFamily, str] = {
            AddressFamily.IPV4: ipv4_url or DEFAULT_IPV4_URL,
            AddressFamily.IPV6: ipv6_url or DEFAULT_IPV6_URL,
        }
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def resolve(self, family: AddressFamily) -> str:
        url = self._urls[family]
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"{family.value} discovery via {url} failed: {e}")
            raise ResolutionError(f"{family.value} discovery failed: {e}") from e

        text = (response.text or "").strip()
        if not text:
            raise ResolutionError(f"{family.value} discovery returned an empty response")

        try:
            address = ipaddress.ip_address(text)
        except ValueError:
            raise ResolutionError(f"{family.value} discovery returned a non-address: {text[:64]!r}")

        expected_version = 4 if family is AddressFamily.IPV4 else 6
        if address.version != expected_version:
            raise ResolutionError(
                f"{family.value} discovery returned an IPv{address.version} address: {text}"
            )

        logger.debug(f"Resolved {family.value} address: {address}")
        return str(address)
