#!/usr/bin/env python3
"""cloudflare-ddns - keep Cloudflare A/AAAA records pointed at this host

Each DDNS config declares "record R in zone Z should resolve to this
machine's current public IPv4/IPv6 address, checked every N seconds". The
daemon reconciles every config on its own timer: resolve the public IP,
read the record from Cloudflare, write only when they differ, and keep the
outcome (status, current IP, last update, last error) in the state file.

Configuration is read from environment variables; see
cloudflare_ddns.config for the full list.

Commands:
    run                 Import DDNS_CONFIG_PATH and reconcile (default)
                        SYNC_MODE=once  one cycle per config, then exit
                        SYNC_MODE=watch keep reconciling, reload config files on change
    list                Print stored configs and their status as JSON
    trigger [ID]        Reconcile one config (or all) now and print the outcome
    ip {ipv4,ipv6}      Print the current public IP
    zones               List zones visible to the API token
    records ZONE_ID     List A/AAAA records of a zone
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, List, Optional

from cloudflare_ddns.config import (
    Settings,
    find_config_files,
    get_config_files_mtimes,
    load_config_entries,
    load_settings,
    validate_settings,
)
from cloudflare_ddns.engine import DdnsEngine
from cloudflare_ddns.errors import DdnsError
from cloudflare_ddns.models import ConfigStatus
from cloudflare_ddns.provider import CloudflareDNSProvider
from cloudflare_ddns.resolver import PublicIPResolver
from cloudflare_ddns.store import ConfigStore

logger = logging.getLogger(__name__)

# =============================================================================
# Setup
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_engine(settings: Settings) -> DdnsEngine:
    """Wire the store, provider, resolver and scheduler from settings."""
    return DdnsEngine(
        store=ConfigStore(settings.state_path),
        provider=CloudflareDNSProvider(
            settings.api_token,
            base_url=settings.api_url,
            timeout_seconds=settings.request_timeout_seconds,
        ),
        resolver=PublicIPResolver(
            ipv4_url=settings.ipv4_detection_url,
            ipv6_url=settings.ipv6_detection_url,
            timeout_seconds=settings.request_timeout_seconds,
        ),
        max_workers=settings.max_workers,
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cloudflare-ddns",
        description="Keep Cloudflare A/AAAA records pointed at this host's public IP",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Reconcile configs (SYNC_MODE=once|watch)")
    subparsers.add_parser("list", help="Print stored configs as JSON")
    trigger = subparsers.add_parser("trigger", help="Reconcile now")
    trigger.add_argument("config_id", nargs="?", help="Config id (default: all configs)")
    ip = subparsers.add_parser("ip", help="Print the current public IP")
    ip.add_argument("family", choices=["ipv4", "ipv6"])
    subparsers.add_parser("zones", help="List zones")
    records = subparsers.add_parser("records", help="List A/AAAA records of a zone")
    records.add_argument("zone_id")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


# =============================================================================
# Commands
# =============================================================================


def import_config_files(engine: DdnsEngine, config_path: str) -> None:
    entries = load_config_entries(config_path)
    if not entries:
        return
    created, updated = engine.import_configs(entries)
    logger.info(f"Config import: {created} created, {updated} updated")


def run_once(engine: DdnsEngine) -> int:
    engine.register_stored()
    try:
        results = engine.trigger_update_all()
    finally:
        engine.stop()

    failed = [
        config_id
        for config_id, result in results.items()
        if result is None or result.config is None or result.config.status != ConfigStatus.OK
    ]
    for config in engine.list_configs():
        logger.info(
            f"{config.record_name} ({config.record_type}): {config.status.value}"
            + (f" - {config.last_error}" if config.last_error else "")
        )
    return 1 if failed else 0


def run_watch(engine: DdnsEngine, settings: Settings) -> int:
    config_files = find_config_files(settings.config_path)
    last_config_mtimes = get_config_files_mtimes(config_files)

    engine.start()
    logger.info(f"Watching {len(engine.list_configs())} config(s)")
    try:
        while True:
            time.sleep(settings.config_poll_seconds)

            current_config_files = find_config_files(settings.config_path)
            current_mtimes = get_config_files_mtimes(current_config_files)
            if (
                set(current_config_files) == set(config_files)
                and current_mtimes == last_config_mtimes
            ):
                continue

            modified = {
                f for f in current_config_files if current_mtimes.get(f) != last_config_mtimes.get(f)
            }
            changed = sorted((set(current_config_files) ^ set(config_files)) | modified)
            logger.info(f"Config change detected in: {', '.join(Path(f).name for f in changed)}")
            config_files = current_config_files
            last_config_mtimes = current_mtimes

            try:
                import_config_files(engine, settings.config_path)
            except DdnsError as e:
                logger.error(f"Failed to reload configuration: {e}")
                logger.warning("Continuing with previous configuration")
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        engine.stop()
    return 0


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    needs_token = args.command not in ("list", "ip")
    errors = validate_settings(settings, require_token=needs_token)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        return 1

    engine = build_engine(settings)

    if args.command == "list":
        _print_json([c.to_dict() for c in engine.list_configs()])
        return 0
    if args.command == "ip":
        print(engine.resolve_ip(args.family))
        return 0
    if args.command == "zones":
        _print_json([asdict(z) for z in engine.list_zones()])
        return 0
    if args.command == "records":
        _print_json([asdict(r) for r in engine.list_records(args.zone_id)])
        return 0

    if not engine.provider.test_connection():
        logger.error(f"Cannot connect to {engine.provider.name}. Exiting.")
        return 1

    if args.command == "trigger":
        if args.config_id:
            try:
                engine.trigger_update(args.config_id)
            finally:
                engine.stop()
            config = engine.get_config(args.config_id)
            _print_json(config.to_dict())
            return 0 if config.status == ConfigStatus.OK else 1
        return run_once(engine)

    import_config_files(engine, settings.config_path)
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.sync_mode == "once":
        return run_once(engine)
    return run_watch(engine, settings)


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    settings = load_settings()
    configure_logging(settings.log_level)
    args = parse_arguments(argv)

    try:
        exit_code = run_command(args, settings)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        sys.exit(130)
    except DdnsError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
