"""Single compare-and-update cycle for one DDNS config."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from cloudflare_ddns.errors import (
    AuthError,
    NotFoundError,
    ProviderError,
    ResolutionError,
    StaleConfigError,
)
from cloudflare_ddns.models import MANAGED_COMMENT, ConfigStatus, DdnsConfig, DnsRecord
from cloudflare_ddns.provider import DNSProvider
from cloudflare_ddns.resolver import IPResolver
from cloudflare_ddns.store import ConfigStore

logger = logging.getLogger(__name__)

IP_RESOLUTION_FAILED = "ip resolution failed"

# Fields naming the record a cycle works on; an edit to either makes the cycle stale
IDENTITY_FIELDS = ("record_name", "record_id")


class ReconcileAction(Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    CREATED = "created"
    FAILED = "failed"
    DELETED = "deleted"
    STALE = "stale"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one cycle. config is None when the config was deleted mid-cycle."""

    config_id: str
    action: ReconcileAction
    config: Optional[DdnsConfig] = None


class _ConfigDeleted(Exception):
    pass


class Reconciler:
    """Runs one reconciliation cycle against the provider and records the outcome.

    The provider is the source of truth: the record is read back on every
    cycle and written only when its content differs from the resolved IP.
    Only status fields are written to the store. Every write after the
    first is conditional on the record name and id the cycle started with,
    so a config deleted mid-cycle is never revived and a config renamed
    mid-cycle never receives the old name's record.
    """

    def __init__(
        self,
        *,
        store: ConfigStore,
        provider: DNSProvider,
        resolver: IPResolver,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.provider = provider
        self.resolver = resolver
        self._clock = clock

    def reconcile(self, config_id: str) -> ReconcileResult:
        try:
            return self._reconcile(config_id)
        except _ConfigDeleted:
            logger.info(f"Config '{config_id}' was deleted during reconciliation; result discarded")
            return ReconcileResult(config_id, ReconcileAction.DELETED)
        except StaleConfigError as e:
            logger.info(f"[{config_id}] Config edited during reconciliation; result discarded: {e}")
            return ReconcileResult(config_id, ReconcileAction.STALE, self.store.get(config_id))
        except Exception as e:
            logger.error(f"[{config_id}] Unexpected reconciliation failure: {e}", exc_info=True)
            self.store.update(config_id, status=ConfigStatus.ERROR, last_error=f"unexpected error: {e}")
            raise

    def _reconcile(self, config_id: str) -> ReconcileResult:
        config = self.store.update(config_id, status=ConfigStatus.CHECKING)
        if config is None:
            raise _ConfigDeleted(config_id)
        label = f"{config.record_name} ({config.record_type})"

        try:
            ip = self.resolver.resolve(config.address_family)
        except ResolutionError as e:
            logger.warning(f"[{config_id}] {label}: {IP_RESOLUTION_FAILED}: {e}")
            return self._fail(config, IP_RESOLUTION_FAILED)

        try:
            record = self._locate_record(config)
            if record is None:
                return self._create(config, ip)

            if record.id != config.record_id:
                logger.info(f"[{config_id}] {label}: adopted existing record {record.id}")
                config = self._persist(config, record_id=record.id)

            if record.content == ip:
                return self._no_drift(config, ip)

            logger.info(f"[{config_id}] {label}: drift detected {record.content or '-'} -> {ip}")
            config = self._persist(config, status=ConfigStatus.UPDATING)
            self.provider.update_record(config.zone_id, record.id, {"content": ip})

        except NotFoundError as e:
            # Deleted out-of-band; re-adopt or re-create next cycle
            logger.warning(f"[{config_id}] {label}: record no longer exists: {e}")
            return self._fail(config, f"record not found: {e}", record_id=None)
        except (AuthError, ProviderError) as e:
            logger.error(f"[{config_id}] {label}: provider error: {e}")
            return self._fail(config, str(e))

        updated = self._persist(
            config,
            status=ConfigStatus.OK,
            current_ip=ip,
            last_update_time=int(self._clock()),
            last_error=None,
        )
        logger.info(f"[{config_id}] {label}: updated to {ip}")
        return ReconcileResult(config_id, ReconcileAction.UPDATED, updated)

    def _locate_record(self, config: DdnsConfig) -> Optional[DnsRecord]:
        if config.record_id:
            return self.provider.get_record(config.zone_id, config.record_id)

        matches = self.provider.list_records(
            config.zone_id, types=[config.record_type], name=config.record_name
        )
        return matches[0] if matches else None

    def _create(self, config: DdnsConfig, ip: str) -> ReconcileResult:
        config = self._persist(config, status=ConfigStatus.UPDATING)
        created = self.provider.create_record(
            config.zone_id,
            DnsRecord(
                id="",
                zone_id=config.zone_id,
                type=config.record_type,
                name=config.record_name,
                content=ip,
                ttl=config.ttl,
                proxied=config.proxied,
                comment=MANAGED_COMMENT,
            ),
        )
        updated = self._persist(
            config,
            status=ConfigStatus.OK,
            record_id=created.id,
            current_ip=ip,
            last_update_time=int(self._clock()),
            last_error=None,
        )
        logger.info(f"[{config.id}] created {config.record_name} ({config.record_type}) -> {ip}")
        return ReconcileResult(config.id, ReconcileAction.CREATED, updated)

    def _no_drift(self, config: DdnsConfig, ip: str) -> ReconcileResult:
        fields: Dict[str, Any] = {"status": ConfigStatus.OK, "last_error": None}
        if config.current_ip is None:
            # First successful check: baseline current_ip, no write happened
            fields["current_ip"] = ip
        updated = self._persist(config, **fields)
        logger.debug(f"[{config.id}] {config.record_name} already points to {ip}")
        return ReconcileResult(config.id, ReconcileAction.UNCHANGED, updated)

    def _fail(self, config: DdnsConfig, message: str, **fields: Any) -> ReconcileResult:
        updated = self._persist(config, status=ConfigStatus.ERROR, last_error=message, **fields)
        return ReconcileResult(config.id, ReconcileAction.FAILED, updated)

    def _persist(self, snapshot: DdnsConfig, **fields: Any) -> DdnsConfig:
        """Write fields if the config still names the record the snapshot names."""
        expect = {name: getattr(snapshot, name) for name in IDENTITY_FIELDS}
        updated = self.store.update(snapshot.id, expect=expect, **fields)
        if updated is None:
            raise _ConfigDeleted(snapshot.id)
        return updated
