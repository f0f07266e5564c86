#!/usr/bin/env python3
"""cddns - Cloudflare DDNS

Keeps Cloudflare A/AAAA records listed in an inventory file pointed at the
addresses they should have, typically this machine's current public IP.

Commands:

    cddns verify                       Verify the API token
    cddns list [zones|records]         Show zones and records visible to the token
    cddns inventory show               Print the inventory
    cddns inventory check              Report matched/outdated/invalid records (no changes)
    cddns inventory update             Update outdated records
    cddns inventory prune              Remove invalid entries from the inventory file
    cddns inventory watch              Update outdated records on an interval

Exit status (single-pass commands):

    0    every record is up to date
    1    invalid or failed records remain, or the provider could not be reached
    2    configuration or inventory file errors
    130  interrupted

See cddns.config for the config file layout and environment variables.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .cloudflare import CloudflareProvider, DNSProvider, ProviderError
from .config import Config, ConfigError, load_config
from .inventory import Inventory, InventoryError, InventoryStore
from .listing import find_record, find_zone, render_listing, retain_records, retain_zones
from .public_ip import IpifyResolver, PublicIPResolver
from .reconcile import Confirm, CycleReport, CyclePolicy, Reconciler, decline
from .watch import WatchScheduler

EXIT_OK = 0
EXIT_OUTSTANDING = 1
EXIT_STARTUP = 2
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """A problem that stops the process before any work begins."""


# =============================================================================
# Logging and Prompts
# =============================================================================


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    # Per-request chatter from urllib3 is not useful at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def prompt_yes_or_no(prompt: str, input_fn: Callable[[str], str] = input) -> bool:
    """Ask a [Y/n] question on the terminal. An empty answer means yes."""
    while True:
        try:
            answer = input_fn(f"{prompt} [Y/n] > ").strip().lower()
        except EOFError:
            return False
        if answer in ("", "y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        print("Expected 'yes' or 'no'. Try again.")


def make_confirm(interactive: bool) -> Confirm:
    return prompt_yes_or_no if interactive else decline


@contextmanager
def cancel_on_signals() -> Iterator[threading.Event]:
    """First SIGINT/SIGTERM requests a graceful stop; a second SIGINT aborts.

    Previous handlers are restored on exit.
    """
    cancel = threading.Event()

    def handler(signum: int, _frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.info(f"Received {signal.Signals(signum).name}, finishing current work...")
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


# =============================================================================
# Factories
# =============================================================================


def create_provider(config: Config) -> DNSProvider:
    if not config.token:
        raise StartupError(
            "No token was provided (set CDDNS_TOKEN, verify.token in the config file, or --token)"
        )
    return CloudflareProvider(token=config.token, timeout_seconds=config.request_timeout)


def create_ip_resolver(config: Config) -> PublicIPResolver:
    return IpifyResolver(timeout_seconds=config.request_timeout)


def load_inventory(config: Config) -> Tuple[InventoryStore, Inventory]:
    store = InventoryStore(config.inventory_path)
    try:
        inventory = store.load()
    except InventoryError as e:
        raise StartupError(str(e)) from e
    logger.debug(f"Loaded {len(inventory)} record(s) from {store.path}")
    return store, inventory


def exit_status(report: CycleReport, strict: bool = False) -> int:
    """Map a single-pass report to a process exit status.

    ``strict`` also fails on outdated records left untouched (dry runs).
    """
    if report.cancelled:
        return EXIT_INTERRUPTED
    if report.failed_cycle or report.outstanding:
        return EXIT_OUTSTANDING
    if strict and report.counts()["outdated"] > report.counts()["updated"]:
        return EXIT_OUTSTANDING
    return EXIT_OK


# =============================================================================
# Commands
# =============================================================================


def cmd_verify(config: Config, args: argparse.Namespace) -> int:
    provider = create_provider(config)
    logger.info("Verifying, please wait...")
    try:
        messages = provider.verify()
    except ProviderError as e:
        logger.error(f"Verification failed: {e}")
        return EXIT_OUTSTANDING
    for i, message in enumerate(messages, start=1):
        logger.info(f"Response {i}: {message}")
    logger.info("Verification complete")
    return EXIT_OK


def cmd_list(config: Config, args: argparse.Namespace) -> int:
    provider = create_provider(config)
    logger.info("Retrieving, please wait...")
    try:
        zones = retain_zones(provider.list_zones(), config.include_zones, config.ignore_zones)
        if args.zone:
            zone = find_zone(zones, args.zone)
            if zone is None:
                logger.error(f"No zone matching '{args.zone}'")
                return EXIT_OUTSTANDING
            zones = [zone]

        records = []
        if args.what != "zones":
            for zone in zones:
                records.extend(provider.list_records(zone.id))
            records = retain_records(records, config.include_records, config.ignore_records)
    except ProviderError as e:
        logger.error(f"Could not list resources: {e}")
        return EXIT_OUTSTANDING

    if args.record:
        record = find_record(records, args.record)
        if record is None:
            logger.error(f"No record matching '{args.record}'")
            return EXIT_OUTSTANDING
        print(f"{record} [{record.type}]")
        return EXIT_OK

    logger.debug(f"Received {len(zones)} zone(s) with {len(records)} record(s)")
    print(render_listing(zones, records, show_records=args.what != "zones"))
    return EXIT_OK


def cmd_inventory_show(config: Config, args: argparse.Namespace) -> int:
    _, inventory = load_inventory(config)
    if inventory.is_empty():
        logger.warning("Inventory is empty")
    else:
        print(inventory.render())
    return EXIT_OK


PASS_POLICIES: Dict[str, Callable[[Config], CyclePolicy]] = {
    "check": lambda c: CyclePolicy(apply_updates=False, apply_prunes=False),
    "update": lambda c: CyclePolicy(
        apply_updates=True, apply_prunes=False, force_update=c.force_update
    ),
    "prune": lambda c: CyclePolicy(
        apply_updates=False, apply_prunes=True, force_prune=c.force_prune
    ),
}


def cmd_inventory_pass(config: Config, args: argparse.Namespace) -> int:
    provider = create_provider(config)
    store, inventory = load_inventory(config)
    interactive = sys.stdin.isatty()
    policy = PASS_POLICIES[args.action](config)
    if not interactive:
        # Nobody to ask: updates go ahead, prunes still need --force-prune
        policy = replace(policy, force_update=True)
    reconciler = Reconciler(
        provider=provider,
        ip_resolver=create_ip_resolver(config),
        inventory=inventory,
        store=store,
        confirm=make_confirm(interactive),
    )
    logger.info("Checking records, please wait...")
    with cancel_on_signals() as cancel:
        report = reconciler.run_cycle(policy, cancel)
    return exit_status(report, strict=args.action == "check")


def cmd_inventory_watch(config: Config, args: argparse.Namespace) -> int:
    provider = create_provider(config)
    store, inventory = load_inventory(config)
    # Watch mode never prompts: updates are always applied
    policy = CyclePolicy(
        apply_updates=True, apply_prunes=True, force_update=True, force_prune=config.force_prune
    )
    reconciler = Reconciler(
        provider=provider,
        ip_resolver=create_ip_resolver(config),
        inventory=inventory,
        store=store,
        confirm=decline,
        reload_inventory=config.reload_inventory,
    )
    logger.info(f"Inventory: {store.path} ({len(inventory)} record(s))")
    logger.info(f"Force prune: {config.force_prune}")

    with cancel_on_signals() as cancel:
        scheduler = WatchScheduler(
            lambda: reconciler.run_cycle(policy, cancel),
            interval_ms=config.watch_interval_ms,
            cancel=cancel,
        )
        scheduler.run()
    return EXIT_OK


# =============================================================================
# Main
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cddns", description="Cloudflare DDNS: keep inventory records pointed at your IP."
    )
    parser.add_argument("-c", "--config", metavar="FILE", help="Config file (default: cddns.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--token", help="Cloudflare API token (prefer CDDNS_TOKEN)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("verify", help="Verify the API token").set_defaults(handler=cmd_verify)

    list_parser = sub.add_parser("list", help="Show zones and records")
    list_parser.add_argument("what", nargs="?", choices=["all", "zones", "records"], default="all")
    list_parser.add_argument("-z", "--zone", metavar="NAME|ID", help="Only this zone")
    list_parser.add_argument("-r", "--record", metavar="NAME|ID", help="Only this record")
    list_parser.set_defaults(handler=cmd_list)

    inv_parser = sub.add_parser("inventory", help="Work with the record inventory")
    inv_parser.add_argument("-i", "--inventory", metavar="FILE", help="Inventory file path")
    inv_parser.add_argument("--force-update", action="store_const", const=True, default=None)
    inv_parser.add_argument("--force-prune", action="store_const", const=True, default=None)
    inv_parser.add_argument(
        "--interval", type=int, metavar="MS", help="Watch interval in milliseconds"
    )
    inv_sub = inv_parser.add_subparsers(dest="action", required=True)
    inv_sub.add_parser("show", help="Print the inventory").set_defaults(handler=cmd_inventory_show)
    for action, help_text in (
        ("check", "Report outdated and invalid records"),
        ("update", "Update outdated records"),
        ("prune", "Prune invalid entries from the inventory"),
    ):
        inv_sub.add_parser(action, help=help_text).set_defaults(handler=cmd_inventory_pass)
    inv_sub.add_parser("watch", help="Update records on an interval").set_defaults(
        handler=cmd_inventory_watch
    )
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "token": args.token,
        "inventory_path": getattr(args, "inventory", None),
        "force_update": getattr(args, "force_update", None),
        "force_prune": getattr(args, "force_prune", None),
        "watch_interval_ms": getattr(args, "interval", None),
        "log_level": "DEBUG" if args.verbose else None,
    }


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config, overrides=_overrides(args))
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(f"Configuration error: {e}")
        return EXIT_STARTUP

    configure_logging(config.log_level)
    logger.debug(f"Effective configuration: {config!r}")
    try:
        return args.handler(config, args)
    except StartupError as e:
        logger.error(str(e))
        return EXIT_STARTUP
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED


def main() -> None:
    """Main entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
