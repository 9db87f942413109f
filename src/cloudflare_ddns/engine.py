"""Operation set exposed to callers: config lifecycle, triggers and provider passthroughs."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cloudflare_ddns.config import normalize_config_entry
from cloudflare_ddns.errors import ConflictError, NotFoundError, ValidationError
from cloudflare_ddns.models import (
    DEFAULT_RECORD_TTL,
    AddressFamily,
    ConfigStatus,
    DdnsConfig,
    DnsRecord,
    Zone,
    validate_config,
)
from cloudflare_ddns.provider import ADDRESS_RECORD_TYPES, DNSProvider
from cloudflare_ddns.reconciler import ReconcileResult, Reconciler
from cloudflare_ddns.resolver import IPResolver
from cloudflare_ddns.scheduler import Scheduler
from cloudflare_ddns.store import ConfigStore

logger = logging.getLogger(__name__)


class DdnsEngine:
    """Ties the store, the scheduler and the provider together.

    The store is the single source of truth for configs; callers observe
    status by re-reading it through list_configs/get_config.
    """

    def __init__(
        self,
        *,
        store: ConfigStore,
        provider: DNSProvider,
        resolver: IPResolver,
        scheduler: Optional[Scheduler] = None,
        max_workers: int = 8,
        trigger_timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.provider = provider
        self.resolver = resolver
        self.scheduler = scheduler or Scheduler(
            Reconciler(store=store, provider=provider, resolver=resolver),
            max_workers=max_workers,
        )
        self._trigger_timeout = trigger_timeout_seconds

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def register_stored(self) -> int:
        """Register every stored config with the scheduler so schedules resume after a restart."""
        registered = 0
        for config in self.store.list():
            if self.scheduler.is_registered(config.id):
                continue
            try:
                if self._schedule(config):
                    registered += 1
            except ValidationError as e:
                logger.error(f"Not scheduling stored config '{config.id}': {e}")
        return registered

    def start(self) -> None:
        self.register_stored()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    # =========================================================================
    # DDNS configs
    # =========================================================================

    def list_configs(self) -> List[DdnsConfig]:
        return self.store.list()

    def get_config(self, config_id: str) -> DdnsConfig:
        config = self.store.get(config_id)
        if config is None:
            raise NotFoundError(f"Config '{config_id}' not found")
        return config

    def create_config(
        self,
        *,
        zone_id: str,
        record_name: str,
        address_family: Any,
        update_interval_seconds: Any,
        record_id: Optional[str] = None,
        ttl: int = DEFAULT_RECORD_TTL,
        proxied: bool = False,
        config_id: Optional[str] = None,
    ) -> DdnsConfig:
        config = validate_config(
            DdnsConfig(
                id=config_id or uuid.uuid4().hex,
                zone_id=(zone_id or "").strip(),
                record_name=(record_name or "").strip(),
                address_family=AddressFamily.parse(address_family),
                update_interval_seconds=update_interval_seconds,
                record_id=record_id or None,
                ttl=ttl,
                proxied=proxied,
            )
        )
        self.store.add(config)
        self._schedule(config)
        logger.info(
            f"Created config '{config.id}': {config.record_name} ({config.record_type}) "
            f"every {config.update_interval_seconds}s"
        )
        return config

    def update_config(
        self,
        config_id: str,
        *,
        update_interval_seconds: Optional[int] = None,
        record_name: Optional[str] = None,
        ttl: Optional[int] = None,
        proxied: Optional[bool] = None,
    ) -> DdnsConfig:
        """Change the desired state of a config; a new interval restarts its timer."""
        current = self.get_config(config_id)

        changes: Dict[str, Any] = {}
        if update_interval_seconds is not None:
            changes["update_interval_seconds"] = update_interval_seconds
        if ttl is not None:
            changes["ttl"] = ttl
        if proxied is not None:
            changes["proxied"] = proxied
        if record_name is not None and record_name.strip() != current.record_name:
            # A different name is a different record: locate or create it next cycle
            changes.update(
                record_name=record_name.strip(),
                record_id=None,
                current_ip=None,
                status=ConfigStatus.IDLE,
            )

        validate_config(replace(current, **changes))
        updated = self.store.update(config_id, **changes)
        if updated is None:
            raise NotFoundError(f"Config '{config_id}' not found")
        if (
            updated.update_interval_seconds != current.update_interval_seconds
            or not self.scheduler.is_registered(config_id)
        ):
            self._schedule(updated)
        logger.info(f"Updated config '{config_id}': {', '.join(sorted(changes)) or 'no changes'}")
        return updated

    def delete_config(self, config_id: str) -> None:
        self.scheduler.deregister(config_id)
        if not self.store.delete(config_id):
            raise NotFoundError(f"Config '{config_id}' not found")
        logger.info(f"Deleted config '{config_id}'")

    def _schedule(self, config: DdnsConfig) -> bool:
        """Register a config, undoing it if the config was deleted meanwhile."""
        self.scheduler.register(config)
        if config.id in self.store:
            return True
        self.scheduler.deregister(config.id)
        logger.info(f"Config '{config.id}' was deleted before it could be scheduled")
        return False

    def import_configs(self, entries: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
        """Upsert configs described by desired-state entries (e.g. from YAML).

        Returns (created, updated). Invalid entries are logged and skipped;
        configs absent from the entries are left alone.
        """
        created = updated = 0
        for entry in entries:
            try:
                fields = normalize_config_entry(entry)
                config_id = fields.pop("config_id")
                if config_id in self.store:
                    fields.pop("address_family")
                    fields.pop("zone_id")
                    fields.pop("record_id")
                    self.update_config(config_id, **fields)
                    updated += 1
                else:
                    self.create_config(config_id=config_id, **fields)
                    created += 1
            except (ValidationError, ConflictError) as e:
                logger.error(f"Skipping config entry {entry!r}: {e}")
        return created, updated

    # =========================================================================
    # Triggers
    # =========================================================================

    def trigger_update(self, config_id: str) -> Optional[ReconcileResult]:
        """Reconcile one config now and wait for the outcome."""
        config = self.get_config(config_id)
        if not self.scheduler.is_registered(config_id) and not self._schedule(config):
            raise NotFoundError(f"Config '{config_id}' not found")
        return self.scheduler.trigger_now(config_id).result(timeout=self._trigger_timeout)

    def trigger_update_all(self) -> Dict[str, Optional[ReconcileResult]]:
        """Reconcile every registered config now; one failure does not affect the others."""
        results: Dict[str, Optional[ReconcileResult]] = {}
        for config_id, future in self.scheduler.trigger_all().items():
            try:
                results[config_id] = future.result(timeout=self._trigger_timeout)
            except Exception as e:
                logger.error(f"Update of config '{config_id}' failed: {e}")
                results[config_id] = None
        return results

    # =========================================================================
    # IP resolution and provider passthroughs
    # =========================================================================

    def resolve_ip(self, family: Any) -> str:
        return self.resolver.resolve(AddressFamily.parse(family))

    def list_zones(self) -> List[Zone]:
        return self.provider.list_zones()

    def list_records(self, zone_id: str, types: Optional[Iterable[str]] = None) -> List[DnsRecord]:
        return self.provider.list_records(zone_id, types=types)

    def create_record(
        self,
        zone_id: str,
        *,
        type: str,
        name: str,
        content: str,
        ttl: int = DEFAULT_RECORD_TTL,
        proxied: bool = False,
        comment: str = "",
    ) -> DnsRecord:
        record_type = (type or "").upper()
        if record_type not in ADDRESS_RECORD_TYPES:
            raise ValidationError(f"Unsupported record type: {type!r} (expected A or AAAA)")
        record = DnsRecord(
            id="",
            zone_id=zone_id,
            type=record_type,
            name=(name or "").strip(),
            content=(content or "").strip(),
            ttl=ttl,
            proxied=proxied,
            comment=comment,
        )
        return self.provider.create_record(zone_id, record)

    def update_record(self, zone_id: str, record_id: str, **patch: Any) -> DnsRecord:
        allowed = {"type", "name", "content", "ttl", "proxied", "comment"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValidationError(f"Unknown record fields: {', '.join(sorted(unknown))}")
        return self.provider.update_record(zone_id, record_id, patch)

    def delete_record(self, zone_id: str, record_id: str) -> bool:
        return self.provider.delete_record(zone_id, record_id)

