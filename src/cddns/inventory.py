"""DNS record inventory.

The inventory is a YAML document listing the records to keep up to date:

    version: 1
    generated_at: "2026-10-18T09:30:00+00:00"
    records:
      - zone: example.com
        record: home            # name (relative or fully qualified) or Cloudflare ID
        kind: A                 # optional, A or AAAA
        target: current         # optional, "current" or an IP literal

The compact layout is also accepted, zone to list of records, with the kind
taken from the provider record and the target always the current public IP:

    example.com:
      - home.example.com
    9aad55f2e0a8d9373badd4361227cabe:
      - 5dba009abaa3ba5d3a624e87b37f941a
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml

from .public_ip import address_version, canonical_address

DEFAULT_INVENTORY_PATH = "inventory.yaml"
USE_CURRENT_IP = "current"
INVENTORY_VERSION = 1

logger = logging.getLogger(__name__)


class InventoryError(Exception):
    """The inventory document is missing, unreadable or malformed."""


# =============================================================================
# Enums
# =============================================================================


class RecordKind(Enum):
    """Address record types the reconciler manages."""

    A = "A"
    AAAA = "AAAA"

    @property
    def ip_version(self) -> int:
        return 4 if self is RecordKind.A else 6

    @classmethod
    def for_ip_version(cls, version: int) -> "RecordKind":
        return cls.A if version == 4 else cls.AAAA

    @classmethod
    def parse(cls, value: Any) -> Optional["RecordKind"]:
        if value is None or str(value).strip() == "":
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InventoryError(f"Unsupported record kind '{value}' (expected A or AAAA)")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DeclaredRecord:
    """One record the operator wants kept up to date."""

    zone: str
    record: str
    kind: Optional[RecordKind] = None
    target: str = USE_CURRENT_IP

    @property
    def uses_current_ip(self) -> bool:
        return self.target == USE_CURRENT_IP

    @property
    def label(self) -> str:
        kind = f" ({self.kind.value})" if self.kind else ""
        return f"{self.zone}/{self.record}{kind}"

    @classmethod
    def create(
        cls, zone: Any, record: Any, kind: Any = None, target: Any = None
    ) -> "DeclaredRecord":
        """Validate raw document values and build a declared record."""
        zone_text = str(zone or "").strip()
        record_text = str(record or "").strip()
        if not zone_text or not record_text:
            raise InventoryError(f"Inventory entry needs a zone and a record: {zone!r}/{record!r}")

        parsed_kind = RecordKind.parse(kind)
        target_text = str(target).strip() if target is not None else USE_CURRENT_IP
        if not target_text or target_text.lower() == USE_CURRENT_IP:
            return cls(zone_text, record_text, parsed_kind, USE_CURRENT_IP)

        version = address_version(target_text)
        if version is None:
            raise InventoryError(f"Target '{target_text}' of {zone_text}/{record_text} is not an IP address")
        if parsed_kind is None:
            parsed_kind = RecordKind.for_ip_version(version)
        elif parsed_kind.ip_version != version:
            raise InventoryError(
                f"Target '{target_text}' of {zone_text}/{record_text} is not an IPv{parsed_kind.ip_version} address"
            )
        return cls(zone_text, record_text, parsed_kind, canonical_address(target_text))

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"zone": self.zone, "record": self.record}
        if self.kind is not None:
            doc["kind"] = self.kind.value
        doc["target"] = self.target
        return doc


@dataclass(frozen=True)
class Inventory:
    """An ordered, immutable set of declared records."""

    records: Tuple[DeclaredRecord, ...] = ()
    generated_at: Optional[datetime] = None

    def __iter__(self) -> Iterator[DeclaredRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, record: object) -> bool:
        return record in self.records

    def is_empty(self) -> bool:
        return not self.records

    def without(self, removed: Iterable[DeclaredRecord]) -> "Inventory":
        """Return a copy lacking the given entries."""
        drop = set(removed)
        return Inventory(
            records=tuple(r for r in self.records if r not in drop),
            generated_at=self.generated_at,
        )

    @classmethod
    def from_document(cls, data: Any) -> "Inventory":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InventoryError("Inventory document must be a mapping")

        if "records" in data:
            entries = _full_entries(data)
            generated_at = _parse_timestamp(data.get("generated_at"))
        else:
            entries = _compact_entries(data)
            generated_at = None

        records: List[DeclaredRecord] = []
        for entry in entries:
            if entry in records:
                logger.warning(f"Ignoring duplicate inventory entry {entry.label}")
                continue
            records.append(entry)
        return cls(records=tuple(records), generated_at=generated_at)

    def to_document(self) -> Dict[str, Any]:
        generated_at = self.generated_at or datetime.now(timezone.utc)
        return {
            "version": INVENTORY_VERSION,
            "generated_at": generated_at.isoformat(),
            "records": [r.to_document() for r in self.records],
        }

    def render(self) -> str:
        """Human readable listing, grouped by zone."""
        by_zone: Dict[str, List[DeclaredRecord]] = {}
        for record in self.records:
            by_zone.setdefault(record.zone, []).append(record)
        blocks = []
        for zone, records in by_zone.items():
            lines = [f"{zone}:"]
            for r in records:
                kind = r.kind.value if r.kind else "A/AAAA"
                lines.append(f"  - {r.record} [{kind}] -> {r.target}")
            blocks.append("\n".join(lines))
        return "\n---\n".join(blocks)


def _full_entries(data: Dict[str, Any]) -> List[DeclaredRecord]:
    version = data.get("version", INVENTORY_VERSION)
    if version != INVENTORY_VERSION:
        raise InventoryError(f"Unsupported inventory version: {version}")
    raw_records = data.get("records") or []
    if not isinstance(raw_records, list):
        raise InventoryError("Inventory 'records' must be a list")

    entries = []
    for item in raw_records:
        if not isinstance(item, dict):
            raise InventoryError(f"Malformed inventory entry: {item!r}")
        entries.append(
            DeclaredRecord.create(
                item.get("zone"), item.get("record"), item.get("kind"), item.get("target")
            )
        )
    return entries


def _compact_entries(data: Dict[str, Any]) -> List[DeclaredRecord]:
    entries = []
    for zone, records in data.items():
        if records is None:
            continue
        if isinstance(records, str):
            records = [records]
        if not isinstance(records, list):
            raise InventoryError(f"Records of zone '{zone}' must be a list")
        for record in records:
            entries.append(DeclaredRecord.create(zone, record))
    return entries


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise InventoryError(f"Invalid generated_at timestamp: {value!r}")


# =============================================================================
# Persistence
# =============================================================================


def get_file_mtime(path: Path) -> float:
    """Get modification time of a file, returns 0 if it doesn't exist."""
    try:
        return os.path.getmtime(path) if path.exists() else 0.0
    except OSError:
        return 0.0


class InventoryStore:
    def __init__(self, path: str):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def mtime(self) -> float:
        return get_file_mtime(self.path)

    def load(self) -> Inventory:
        logger.debug(f"Reading inventory {self.path}")
        if not self.path.is_file():
            raise InventoryError(f"Inventory file {self.path} was not found")
        try:
            data = yaml.safe_load(self.path.read_text("utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise InventoryError(f"Failed to read inventory file {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise InventoryError(f"Inventory file {self.path} is not valid YAML: {e}") from e
        return Inventory.from_document(data)

    def save(self, inventory: Inventory) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            yaml.safe_dump(inventory.to_document(), sort_keys=False, default_flow_style=False),
            "utf-8",
        )
        tmp_path.replace(self.path)
        logger.debug(f"Saved inventory with {len(inventory)} record(s) to {self.path}")
