"""Public IP discovery.

Lookups are best-effort: a failed lookup logs a warning and returns ``None``
so that a missing address family only matters to records that need it.
"""

from __future__ import annotations

import ipaddress
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

IPIFY_V4_URL = "https://api4.ipify.org"
IPIFY_V6_URL = "https://api6.ipify.org"
DEFAULT_TIMEOUT_SECONDS = 10.0

logger = logging.getLogger(__name__)


def canonical_address(value: str) -> str:
    """Return the canonical textual form of an IP address.

    Values that do not parse as an address are returned stripped but otherwise
    untouched, so comparisons against them still work as plain strings.
    """
    text = value.strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        return text


def address_version(value: str) -> Optional[int]:
    """Return 4 or 6 for a valid address, None otherwise."""
    try:
        return ipaddress.ip_address(value.strip()).version
    except ValueError:
        return None


# =============================================================================
# Resolver Interface and Implementations
# =============================================================================


class PublicIPResolver(ABC):
    """Abstract base class for public IP discovery."""

    @abstractmethod
    def current_ipv4(self) -> Optional[str]:
        """Return this machine's public IPv4 address, if it has one."""
        pass

    @abstractmethod
    def current_ipv6(self) -> Optional[str]:
        """Return this machine's public IPv6 address, if it has one."""
        pass

    def current(self, version: int) -> Optional[str]:
        if version == 4:
            return self.current_ipv4()
        if version == 6:
            return self.current_ipv6()
        raise ValueError(f"Unknown IP version: {version}")


class IpifyResolver(PublicIPResolver):
    """Resolve public addresses through the ipify family-specific endpoints."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        ipv4_url: str = IPIFY_V4_URL,
        ipv6_url: str = IPIFY_V6_URL,
    ):
        self._timeout = timeout_seconds
        self._urls = {4: ipv4_url, 6: ipv6_url}
        self._session = requests.Session()

    def _lookup(self, version: int) -> Optional[str]:
        url = self._urls[version]
        try:
            response = self._session.get(url, params={"format": "json"}, timeout=self._timeout)
            response.raise_for_status()
            answer = str(response.json().get("ip", ""))
        except (requests.exceptions.RequestException, ValueError, AttributeError) as e:
            logger.warning(f"Could not resolve public IPv{version}: {e}")
            return None

        if address_version(answer) != version:
            logger.warning(f"Public IPv{version} lookup returned '{answer}', ignoring")
            return None
        address = canonical_address(answer)
        logger.debug(f"Public IPv{version} is {address}")
        return address

    def current_ipv4(self) -> Optional[str]:
        return self._lookup(4)

    def current_ipv6(self) -> Optional[str]:
        return self._lookup(6)


class StaticIPResolver(PublicIPResolver):
    """Fixed answers, for tests and hosts with a known address."""

    def __init__(self, ipv4: Optional[str] = None, ipv6: Optional[str] = None):
        self.ipv4 = canonical_address(ipv4) if ipv4 else None
        self.ipv6 = canonical_address(ipv6) if ipv6 else None
        self.calls = 0

    def current_ipv4(self) -> Optional[str]:
        self.calls += 1
        return self.ipv4

    def current_ipv6(self) -> Optional[str]:
        self.calls += 1
        return self.ipv6
