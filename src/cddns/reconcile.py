"""Reconciliation of the declared inventory against live Cloudflare state.

One cycle works like this:

    1. Fetch every zone and record visible to the token, once.
    2. For each declared record: resolve it against that snapshot, classify it
       (matched, outdated or invalid) and apply the matching action.
    3. Drop pruned entries from the inventory, persisting it at most once.

Nothing raised while handling a single record escapes the cycle. A failure to
fetch the snapshot fails the whole cycle, which is reported (not raised) so
that the watch loop can simply try again on its next tick.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from .cloudflare import DNSProvider, ProviderError, Record, Snapshot, Zone
from .inventory import DeclaredRecord, Inventory, InventoryError, InventoryStore, RecordKind
from .public_ip import PublicIPResolver, canonical_address

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


def decline(prompt: str) -> bool:
    """Confirmation for non-interactive runs: only forced actions happen."""
    logger.debug(f"Not confirmed (non-interactive): {prompt}")
    return False


# =============================================================================
# Enums
# =============================================================================


class UnresolvedReason(Enum):
    ZONE_NOT_FOUND = "zone not found"
    AMBIGUOUS_ZONE = "ambiguous zone"
    RECORD_NOT_FOUND = "record not found"
    AMBIGUOUS_RECORD = "ambiguous record"
    NO_PUBLIC_ADDRESS = "no public address"


class Status(Enum):
    MATCHED = "matched"
    OUTDATED = "outdated"
    INVALID = "invalid"


class Action(Enum):
    NOOP = "noop"
    UPDATED = "updated"
    FAILED = "failed"
    PRUNED = "pruned"
    SKIPPED = "skipped"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ResolvedTarget:
    zone: Zone
    record: Record


@dataclass(frozen=True)
class Unresolved:
    reason: UnresolvedReason
    detail: str = ""


Resolution = Union[ResolvedTarget, Unresolved]


@dataclass(frozen=True)
class Classification:
    """The verdict for one declared record in one cycle."""

    status: Status
    current: Optional[str] = None
    desired: Optional[str] = None
    reason: Optional[UnresolvedReason] = None

    @classmethod
    def matched(cls, value: str) -> "Classification":
        return cls(Status.MATCHED, current=value, desired=value)

    @classmethod
    def outdated(cls, current: str, desired: str) -> "Classification":
        return cls(Status.OUTDATED, current=current, desired=desired)

    @classmethod
    def invalid(cls, reason: UnresolvedReason) -> "Classification":
        return cls(Status.INVALID, reason=reason)


@dataclass(frozen=True)
class CyclePolicy:
    """What a cycle is allowed to do.

    ``apply_updates`` / ``apply_prunes`` switch an action off entirely (a dry
    run has both off). The force flags skip confirmation.
    """

    apply_updates: bool = True
    apply_prunes: bool = True
    force_update: bool = False
    force_prune: bool = False
    persist_prunes: bool = True


@dataclass(frozen=True)
class Outcome:
    record: DeclaredRecord
    classification: Classification
    action: Action
    target: Optional[ResolvedTarget] = None
    error: Optional[Exception] = None


@dataclass
class CycleReport:
    """Per-record outcomes of one reconciliation pass."""

    outcomes: List[Outcome] = field(default_factory=list)
    inventory: Inventory = field(default_factory=Inventory)
    error: Optional[Exception] = None
    cancelled: bool = False
    duration: float = 0.0

    @property
    def failed_cycle(self) -> bool:
        return self.error is not None

    @property
    def pruned(self) -> List[DeclaredRecord]:
        return [o.record for o in self.outcomes if o.action is Action.PRUNED]

    @property
    def outstanding(self) -> List[Outcome]:
        """Outcomes still needing attention: failures and unpruned invalid entries."""
        return [
            o
            for o in self.outcomes
            if o.action is Action.FAILED
            or (o.classification.status is Status.INVALID and o.action is not Action.PRUNED)
        ]

    def counts(self) -> Dict[str, int]:
        counter: Counter = Counter()
        for outcome in self.outcomes:
            counter[outcome.classification.status.value] += 1
            if outcome.action is not Action.NOOP:
                counter[outcome.action.value] += 1
        keys = ("matched", "outdated", "invalid", "updated", "pruned", "failed", "skipped")
        return {k: counter.get(k, 0) for k in keys}

    @property
    def ok(self) -> bool:
        return not self.failed_cycle and not self.cancelled and not self.outstanding

    def summary(self) -> str:
        if self.failed_cycle:
            return f"cycle failed: {self.error}"
        parts = " ".join(f"{k}={v}" for k, v in self.counts().items())
        suffix = " (cancelled)" if self.cancelled else ""
        return f"summary: {parts}{suffix}"


# =============================================================================
# Record Identity Resolver
# =============================================================================


def _normalize_name(name: str) -> str:
    return name.strip().rstrip(".").lower()


def _candidate_names(declared: str, zone: Zone) -> List[str]:
    """A declared record name may be fully qualified, relative, or '@'."""
    name = _normalize_name(declared)
    zone_name = _normalize_name(zone.name)
    if name in ("@", ""):
        return [zone_name]
    if name == zone_name or name.endswith(f".{zone_name}"):
        return [name]
    return [name, f"{name}.{zone_name}"]


def resolve(declared: DeclaredRecord, snapshot: Snapshot) -> Resolution:
    """Map a declared zone/record pair onto provider objects.

    IDs are tried before names. Several zones or records answering to the same
    name is reported as ambiguous, never resolved to the first one.
    """
    zones = [z for z in snapshot.zones if z.id == declared.zone]
    if not zones:
        wanted = _normalize_name(declared.zone)
        zones = [z for z in snapshot.zones if _normalize_name(z.name) == wanted]
    if not zones:
        return Unresolved(UnresolvedReason.ZONE_NOT_FOUND, declared.zone)
    if len(zones) > 1:
        return Unresolved(UnresolvedReason.AMBIGUOUS_ZONE, declared.zone)
    zone = zones[0]

    candidates = snapshot.records_in(zone.id)
    if declared.kind is not None:
        candidates = [r for r in candidates if r.type == declared.kind.value]

    records = [r for r in candidates if r.id == declared.record]
    if not records:
        names = _candidate_names(declared.record, zone)
        records = [r for r in candidates if _normalize_name(r.name) in names]
    if not records:
        return Unresolved(UnresolvedReason.RECORD_NOT_FOUND, declared.record)
    if len(records) > 1:
        if declared.kind is None and len(records) == 2 and {r.type for r in records} == {"A", "AAAA"}:
            logger.warning(
                f"{declared.label}: name has both an A and an AAAA record, declare a kind for each"
            )
            return Unresolved(UnresolvedReason.AMBIGUOUS_RECORD, f"{declared.record} (A and AAAA)")
        return Unresolved(UnresolvedReason.AMBIGUOUS_RECORD, declared.record)
    return ResolvedTarget(zone=zone, record=records[0])


# =============================================================================
# Diff Classifier
# =============================================================================


class CurrentAddresses:
    """Public addresses looked up at most once per family per cycle."""

    def __init__(self, resolver: PublicIPResolver):
        self._resolver = resolver
        self._cache: Dict[int, Optional[str]] = {}

    def get(self, version: int) -> Optional[str]:
        if version not in self._cache:
            try:
                address = self._resolver.current(version)
            except Exception as e:
                logger.warning(f"Public IPv{version} lookup failed: {e}")
                address = None
            self._cache[version] = canonical_address(address) if address else None
        return self._cache[version]


def classify(
    declared: DeclaredRecord, resolution: Resolution, addresses: CurrentAddresses
) -> Classification:
    if isinstance(resolution, Unresolved):
        return Classification.invalid(resolution.reason)

    record = resolution.record
    if declared.uses_current_ip:
        kind = declared.kind or RecordKind(record.type)
        desired = addresses.get(kind.ip_version)
        if desired is None:
            return Classification.invalid(UnresolvedReason.NO_PUBLIC_ADDRESS)
    else:
        desired = declared.target

    if canonical_address(record.content) == canonical_address(desired):
        return Classification.matched(record.content)
    return Classification.outdated(record.content, desired)


# =============================================================================
# Action Applier
# =============================================================================


class ActionApplier:
    def __init__(self, provider: DNSProvider, confirm: Confirm = decline):
        self.provider = provider
        self.confirm = confirm

    def apply(
        self,
        declared: DeclaredRecord,
        classification: Classification,
        target: Optional[ResolvedTarget],
        policy: CyclePolicy,
    ) -> Tuple[Action, Optional[Exception]]:
        if classification.status is Status.MATCHED:
            logger.debug(f"{declared.label}: up to date ({classification.current})")
            return Action.NOOP, None

        if classification.status is Status.OUTDATED:
            logger.warning(
                f"{declared.label}: outdated ({classification.current} -> {classification.desired})"
            )
            return self._update(declared, classification, target, policy)

        logger.error(f"{declared.label}: invalid ({classification.reason.value})")
        if classification.reason is UnresolvedReason.NO_PUBLIC_ADDRESS:
            # The record exists on the provider; only this pass lacks an address
            logger.warning(f"{declared.label}: not pruned, public address lookup failed")
            return Action.SKIPPED, None
        return self._prune(declared, policy), None

    def _update(
        self,
        declared: DeclaredRecord,
        classification: Classification,
        target: Optional[ResolvedTarget],
        policy: CyclePolicy,
    ) -> Tuple[Action, Optional[Exception]]:
        if not policy.apply_updates or target is None:
            return Action.SKIPPED, None
        record = target.record
        prompt = f"Update {record.name} ({record.type}) from {classification.current} to {classification.desired}?"
        if not policy.force_update and not self.confirm(prompt):
            logger.info(f"{declared.label}: update skipped")
            return Action.SKIPPED, None

        try:
            self.provider.update_record(record.zone_id or target.zone.id, record.id, classification.desired)
        except ProviderError as e:
            logger.error(f"{declared.label}: update failed ({e.kind}): {e}")
            return Action.FAILED, e
        logger.info(f"Updated {record.name} ({record.type}) -> {classification.desired}")
        return Action.UPDATED, None

    def _prune(self, declared: DeclaredRecord, policy: CyclePolicy) -> Action:
        if not policy.apply_prunes:
            return Action.SKIPPED
        prompt = f"Prune invalid entry {declared.label} from the inventory?"
        if not policy.force_prune and not self.confirm(prompt):
            logger.info(f"{declared.label}: prune skipped")
            return Action.SKIPPED
        logger.info(f"Pruned {declared.label} from the inventory")
        return Action.PRUNED


# =============================================================================
# Reconciliation Cycle
# =============================================================================


def run_cycle(
    inventory: Inventory,
    provider: DNSProvider,
    ip_resolver: PublicIPResolver,
    policy: CyclePolicy,
    confirm: Confirm = decline,
    cancel: Optional[threading.Event] = None,
) -> CycleReport:
    """Run one pass over the inventory. Never raises.

    The returned report carries the inventory minus whatever was pruned;
    persisting it is up to the caller.
    """
    started = time.monotonic()
    report = CycleReport(inventory=inventory)

    if inventory.is_empty():
        logger.warning("Inventory is empty")
        report.duration = time.monotonic() - started
        _log_report(report)
        return report

    try:
        snapshot = provider.snapshot()
    except ProviderError as e:
        logger.error(f"Could not fetch zones and records from {provider.name}: {e}")
        report.error = e
    except Exception as e:
        logger.error(f"Unexpected error fetching zones and records: {e}", exc_info=True)
        report.error = e
    if report.failed_cycle:
        report.duration = time.monotonic() - started
        return report

    addresses = CurrentAddresses(ip_resolver)
    applier = ActionApplier(provider, confirm)

    for declared in inventory:
        if cancel is not None and cancel.is_set():
            logger.info("Cancellation requested, stopping before remaining records")
            report.cancelled = True
            break
        report.outcomes.append(_reconcile_record(declared, snapshot, addresses, applier, policy))

    if report.pruned:
        report.inventory = inventory.without(report.pruned)

    report.duration = time.monotonic() - started
    _log_report(report)
    return report


def _reconcile_record(
    declared: DeclaredRecord,
    snapshot: Snapshot,
    addresses: CurrentAddresses,
    applier: ActionApplier,
    policy: CyclePolicy,
) -> Outcome:
    target: Optional[ResolvedTarget] = None
    # No reason until classify has run
    classification = Classification(Status.INVALID)
    try:
        resolution = resolve(declared, snapshot)
        if isinstance(resolution, ResolvedTarget):
            target = resolution
        classification = classify(declared, resolution, addresses)
        action, error = applier.apply(declared, classification, target, policy)
    except Exception as e:
        logger.error(f"{declared.label}: unexpected error: {e}", exc_info=True)
        return Outcome(declared, classification, Action.FAILED, target, e)
    return Outcome(declared, classification, action, target, error)


def _log_report(report: CycleReport) -> None:
    logger.info(report.summary())
    counts = report.counts()
    remaining_invalid = counts["invalid"] - counts["pruned"]
    if remaining_invalid:
        logger.error(f"Inventory contains {remaining_invalid} invalid record(s)")
    if counts["failed"]:
        logger.error(f"{counts['failed']} record(s) failed to update")
    remaining_outdated = counts["outdated"] - counts["updated"] - counts["failed"]
    if remaining_outdated:
        logger.warning(f"{remaining_outdated} outdated record(s) remain")


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Owns the inventory across cycles.

    Pruned entries are removed for the next cycle and written back to the
    inventory file once per cycle. With ``reload_inventory`` the file is read
    again whenever its modification time changes.
    """

    def __init__(
        self,
        *,
        provider: DNSProvider,
        ip_resolver: PublicIPResolver,
        inventory: Inventory,
        store: Optional[InventoryStore] = None,
        confirm: Confirm = decline,
        reload_inventory: bool = False,
    ):
        self.provider = provider
        self.ip_resolver = ip_resolver
        self.inventory = inventory
        self.store = store
        self.confirm = confirm
        self.reload_inventory = reload_inventory
        self._inventory_mtime = store.mtime() if store is not None else 0.0

    def refresh_inventory(self) -> None:
        if not self.reload_inventory or self.store is None:
            return
        current_mtime = self.store.mtime()
        if current_mtime == self._inventory_mtime:
            return
        self._inventory_mtime = current_mtime
        logger.info(f"Inventory change detected in {self.store.path.name}")
        try:
            self.inventory = self.store.load()
            logger.info(f"Reloaded inventory with {len(self.inventory)} record(s)")
        except InventoryError as e:
            logger.error(f"Failed to reload inventory: {e}")
            logger.warning("Continuing with previous inventory")

    def run_cycle(
        self, policy: CyclePolicy, cancel: Optional[threading.Event] = None
    ) -> CycleReport:
        self.refresh_inventory()
        report = run_cycle(
            self.inventory, self.provider, self.ip_resolver, policy, self.confirm, cancel
        )
        if report.pruned:
            self.inventory = report.inventory
            if policy.persist_prunes and self.store is not None:
                try:
                    self.store.save(self.inventory)
                    self._inventory_mtime = self.store.mtime()
                    logger.info(f"Updated inventory file {self.store.path}")
                except OSError as e:
                    logger.error(f"Failed to save inventory file {self.store.path}: {e}")
        return report
