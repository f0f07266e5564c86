"""Cloudflare DNS provider client.

Talks to the Cloudflare v4 API with a bearer token. Only the calls the
reconciler needs are implemented: token verification, zone and record listing
(paginated), and patching a record's content.

Errors are split in two kinds so callers can tell them apart:

    TransportError   the request never produced a usable answer
                     (connection refused, DNS failure, timeout, garbage body)
    RejectedError    Cloudflare answered and said no
                     (HTTP 4xx/5xx or a ``"success": false`` envelope)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

import requests

API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_TIMEOUT_SECONDS = 10.0
ADDRESS_RECORD_TYPES = ("A", "AAAA")
ZONE_EDIT_PERMISSION = "#zone:edit"

logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class ProviderError(Exception):
    """Base class for failures talking to the DNS provider."""

    kind = "provider"


class TransportError(ProviderError):
    """The request failed before the provider could answer (or timed out)."""

    kind = "transport"


class RejectedError(ProviderError):
    """The provider answered with an error status or a failed envelope."""

    kind = "rejected"

    def __init__(
        self, message: str, status_code: Optional[int] = None, messages: Tuple[str, ...] = ()
    ):
        super().__init__(message)
        self.status_code = status_code
        self.messages = messages


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Zone:
    """A zone (domain) visible to the token."""

    id: str
    name: str
    status: str = "active"
    permissions: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Zone":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            status=str(data.get("status") or ""),
            permissions=tuple(str(p) for p in data.get("permissions") or ()),
        )

    def __str__(self) -> str:
        return f"{self.name}: {self.id}"


@dataclass(frozen=True)
class Record:
    """An address record as currently stored by the provider."""

    id: str
    zone_id: str
    zone_name: str
    name: str
    type: str
    content: str
    locked: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Record":
        return cls(
            id=str(data["id"]),
            zone_id=str(data.get("zone_id") or ""),
            zone_name=str(data.get("zone_name") or ""),
            name=str(data["name"]),
            type=str(data["type"]).upper(),
            content=str(data.get("content") or ""),
            locked=bool(data.get("locked", False)),
        )

    def __str__(self) -> str:
        return f"{self.name}: {self.id} => {self.content}"


@dataclass(frozen=True)
class Snapshot:
    """Zones and records fetched together at the start of a cycle."""

    zones: Tuple[Zone, ...] = ()
    records: Tuple[Record, ...] = ()

    def records_in(self, zone_id: str) -> List[Record]:
        return [r for r in self.records if r.zone_id == zone_id]


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def verify(self) -> List[str]:
        """Verify the credentials, returning the provider's messages."""
        pass

    @abstractmethod
    def list_zones(self) -> List[Zone]:
        """List editable zones visible to the credentials."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str) -> List[Record]:
        """List the address records of a zone."""
        pass

    @abstractmethod
    def update_record(self, zone_id: str, record_id: str, value: str) -> Record:
        """Point an existing record at a new value."""
        pass

    def snapshot(self) -> Snapshot:
        """Fetch every zone and every record of those zones."""
        zones = self.list_zones()
        records: List[Record] = []
        for zone in zones:
            records.extend(self.list_records(zone.id))
        logger.debug(f"Fetched {len(zones)} zone(s) with {len(records)} record(s)")
        return Snapshot(zones=tuple(zones), records=tuple(records))


class CloudflareProvider(DNSProvider):
    """Cloudflare v4 API provider implementation."""

    def __init__(
        self,
        token: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = API_BASE,
        per_page: int = 100,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._per_page = per_page
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        logger.debug(f"{self.name} {method} {path} params={params}")
        try:
            response = self._session.request(
                method, url, params=params, json=json_body, timeout=self._timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransportError(f"{method} {path} timed out after {self._timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                raise RejectedError(
                    f"{method} {path} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                ) from e
            raise TransportError(f"{method} {path} returned an undecodable body") from e

        if not isinstance(payload, dict):
            raise TransportError(f"{method} {path} returned an unexpected payload")

        if response.status_code >= 400 or not payload.get("success", False):
            messages = _error_messages(payload.get("errors"))
            detail = "; ".join(messages) if messages else "unknown error"
            raise RejectedError(
                f"{method} {path} rejected (HTTP {response.status_code}): {detail}",
                status_code=response.status_code,
                messages=tuple(messages),
            )
        return payload

    def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"page": page, "per_page": self._per_page})
            payload = self._request("GET", path, params=query)
            result = payload.get("result") or []
            if not isinstance(result, list):
                raise TransportError(f"GET {path} returned a non-list result")
            items.extend(r for r in result if isinstance(r, dict))

            info = payload.get("result_info") or {}
            try:
                total_pages = int(info.get("total_pages") or 1)
            except (AttributeError, TypeError, ValueError) as e:
                raise TransportError(f"GET {path} returned malformed result_info: {info!r}") from e
            if page >= total_pages:
                return items
            page += 1

    def verify(self) -> List[str]:
        payload = self._request("GET", "/user/tokens/verify")
        return [str(m.get("message", "")) for m in payload.get("messages") or [] if isinstance(m, dict)]

    def list_zones(self) -> List[Zone]:
        zones = []
        for item in self._paginate("/zones", {"order": "name"}):
            try:
                zone = Zone.from_api(item)
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed zone: {item}")
                continue
            if zone.status != "active" or ZONE_EDIT_PERMISSION not in zone.permissions:
                logger.debug(f"Skipping zone '{zone.name}' (status={zone.status}, not editable)")
                continue
            zones.append(zone)
        logger.debug(f"Collected {len(zones)} zone(s)")
        return zones

    def list_records(self, zone_id: str) -> List[Record]:
        records = []
        for item in self._paginate(f"/zones/{zone_id}/dns_records", {"order": "name"}):
            try:
                record = Record.from_api(item)
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed record: {item}")
                continue
            if record.type not in ADDRESS_RECORD_TYPES or record.locked:
                continue
            if not record.zone_id:
                record = replace(record, zone_id=zone_id)
            records.append(record)
        logger.debug(f"Received {len(records)} record(s) from zone '{zone_id}'")
        return records

    def update_record(self, zone_id: str, record_id: str, value: str) -> Record:
        payload = self._request(
            "PATCH",
            f"/zones/{zone_id}/dns_records/{record_id}",
            json_body={"content": value},
        )
        result = payload.get("result")
        if isinstance(result, dict) and "id" in result and "name" in result and "type" in result:
            return Record.from_api(result)
        raise TransportError(f"PATCH record {record_id} returned no record")


def _error_messages(errors: Any) -> List[str]:
    """Flatten Cloudflare's error list (and nested error chains) into lines."""
    lines: List[str] = []
    if not isinstance(errors, list):
        return lines
    for error in errors:
        if not isinstance(error, dict):
            continue
        lines.append(f"{error.get('code', '?')}: {error.get('message', '')}")
        for chained in error.get("error_chain") or []:
            if isinstance(chained, dict):
                lines.append(f"  - {chained.get('code', '?')}: {chained.get('message', '')}")
    return lines
