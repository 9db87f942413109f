"""Durable DDNS config collection."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from cloudflare_ddns.errors import ConflictError, StaleConfigError
from cloudflare_ddns.models import DdnsConfig

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class ConfigStore:
    """JSON-file backed store of every DdnsConfig, keyed by config id.

    The file is read once at construction and rewritten atomically (temp
    file + rename) after every change. All reads and read-modify-writes go
    through one lock, so a reconciliation cycle and a concurrent edit of the
    same config cannot lose each other's fields.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._configs: Dict[str, DdnsConfig] = self._load()

    def list(self) -> List[DdnsConfig]:
        with self._lock:
            return sorted(self._configs.values(), key=lambda c: c.id)

    def get(self, config_id: str) -> Optional[DdnsConfig]:
        with self._lock:
            return self._configs.get(config_id)

    def __contains__(self, config_id: object) -> bool:
        with self._lock:
            return config_id in self._configs

    def add(self, config: DdnsConfig) -> DdnsConfig:
        with self._lock:
            if config.id in self._configs:
                raise ConflictError(f"Config '{config.id}' already exists")
            self._check_record_owner(config.id, config.record_id)
            self._configs[config.id] = config
            self._save()
        return config

    def update(
        self, config_id: str, *, expect: Optional[Mapping[str, Any]] = None, **fields: Any
    ) -> Optional[DdnsConfig]:
        """Apply field changes to a stored config.

        Returns the new config, or None when the config no longer exists, in
        which case nothing is written. When expect is given, each named field
        must still hold the expected value or StaleConfigError is raised and
        nothing is written.
        """
        with self._lock:
            current = self._configs.get(config_id)
            if current is None:
                return None
            for name, value in (expect or {}).items():
                if getattr(current, name) != value:
                    raise StaleConfigError(
                        f"Config '{config_id}' changed: {name} is now {getattr(current, name)!r}"
                    )
            if fields.get("record_id"):
                self._check_record_owner(config_id, fields["record_id"])
            updated = replace(current, **fields)
            if updated == current:
                return current
            self._configs[config_id] = updated
            self._save()
            return updated

    def delete(self, config_id: str) -> bool:
        with self._lock:
            if self._configs.pop(config_id, None) is None:
                return False
            self._save()
            return True

    def _check_record_owner(self, config_id: str, record_id: Optional[str]) -> None:
        if not record_id:
            return
        for other in self._configs.values():
            if other.id != config_id and other.record_id == record_id:
                raise ConflictError(
                    f"Record '{record_id}' is already managed by config '{other.id}'"
                )

    def _load(self) -> Dict[str, DdnsConfig]:
        if not self.path.exists():
            return {}
        try:
            state = json.loads(self.path.read_text("utf-8"))
        except Exception as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return {}

        configs: Dict[str, DdnsConfig] = {}
        raw_configs = state.get("configs", {}) if isinstance(state, dict) else {}
        if not isinstance(raw_configs, dict):
            logger.warning(f"State file {self.path} has no usable 'configs' mapping")
            return {}
        for config_id, data in raw_configs.items():
            try:
                config = DdnsConfig.from_dict({**data, "id": config_id})
            except Exception as e:
                logger.warning(f"Skipping malformed config '{config_id}' in {self.path}: {e}")
                continue
            configs[config.id] = config
        return configs

    def _save(self) -> None:
        state = {
            "version": STATE_VERSION,
            "configs": {config_id: c.to_dict() for config_id, c in self._configs.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)
