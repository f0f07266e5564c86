"""Display filtering for `cddns list`.

Include/ignore patterns are regular expressions (a leading ``~`` is accepted
and ignored) matched case-insensitively against both the name and the ID of a
zone or record. These filters only affect what is printed; the reconciler
never looks at them.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence

from .cloudflare import Record, Zone

logger = logging.getLogger(__name__)


def compile_patterns(items: Iterable[str]) -> List[re.Pattern]:
    patterns: List[re.Pattern] = []
    for raw_item in items:
        item = raw_item.strip()
        if not item:
            continue
        if item.startswith("~"):
            item = item[1:]
        try:
            patterns.append(re.compile(item, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"Invalid filter pattern '{raw_item}': {e}")
    return patterns


def _matches_any(values: Sequence[str], patterns: List[re.Pattern]) -> bool:
    for pattern in patterns:
        for value in values:
            if pattern.search(value):
                return True
    return False


def is_listed(values: Sequence[str], include: List[re.Pattern], ignore: List[re.Pattern]) -> bool:
    """An item is shown when it matches an include pattern and no ignore pattern."""
    return _matches_any(values, include) and not _matches_any(values, ignore)


def retain_zones(zones: Iterable[Zone], include: Iterable[str], ignore: Iterable[str]) -> List[Zone]:
    include_patterns = compile_patterns(include)
    ignore_patterns = compile_patterns(ignore)
    return [z for z in zones if is_listed((z.name, z.id), include_patterns, ignore_patterns)]


def retain_records(
    records: Iterable[Record], include: Iterable[str], ignore: Iterable[str]
) -> List[Record]:
    include_patterns = compile_patterns(include)
    ignore_patterns = compile_patterns(ignore)
    return [r for r in records if is_listed((r.name, r.id), include_patterns, ignore_patterns)]


def find_zone(zones: Iterable[Zone], key: str) -> Optional[Zone]:
    """Find a zone by ID, then by name."""
    zones = list(zones)
    for zone in zones:
        if zone.id == key:
            return zone
    for zone in zones:
        if zone.name.lower() == key.lower():
            return zone
    return None


def find_record(records: Iterable[Record], key: str) -> Optional[Record]:
    """Find a record by ID, then by name."""
    records = list(records)
    for record in records:
        if record.id == key:
            return record
    for record in records:
        if record.name.lower() == key.lower():
            return record
    return None


def render_listing(zones: Sequence[Zone], records: Sequence[Record], show_records: bool = True) -> str:
    lines: List[str] = []
    for zone in zones:
        lines.append(str(zone))
        if not show_records:
            continue
        for record in records:
            if record.zone_id == zone.id:
                lines.append(f"  - {record} [{record.type}]")
    return "\n".join(lines)
