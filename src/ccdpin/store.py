"""JSON persistence for core groups, the default CCD and monitored process rules."""

import contextlib
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ccdpin.errors import AffinityError, StoreError
from ccdpin.models import CoreGroup, MonitoredProcessRule

log = logging.getLogger(__name__)


def _read_json(path: Path) -> Any:
    """Read a JSON document, returning None for a missing or empty file."""
    if not path.exists():
        log.info("Store file %s does not exist, using empty configuration", path)
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StoreError(f"Failed to read {path}: {exc}") from exc
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise StoreError(f"Malformed JSON in {path}: {exc}") from exc


def _write_json(path: Path, data: Any) -> None:
    """Atomically write a JSON document."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise StoreError(f"Failed to save {path}: {exc}") from exc


class ConfigStore:
    """Core groups and the default CCD selection, kept in ``config.json``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _load(self) -> dict:
        data = _read_json(self.path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StoreError(f"Expected an object in {self.path}")
        return data

    def load_core_groups(self) -> dict[str, CoreGroup]:
        ccds = self._load().get("ccds") or {}
        groups = {}
        try:
            for name, record in ccds.items():
                groups[name] = CoreGroup.create(name, record.get("cores", []))
        except (AffinityError, ValueError, AttributeError, TypeError) as exc:
            raise StoreError(f"Invalid core group in {self.path}: {exc}") from exc
        log.debug("Loaded %d core groups from %s", len(groups), self.path)
        return groups

    def load_default_ccd(self) -> str | None:
        return self._load().get("default_ccd") or None

    def save(self, groups: Mapping[str, CoreGroup], default_ccd: str | None) -> None:
        data = {
            "ccds": {name: {"cores": list(group.cores)} for name, group in groups.items()},
            "default_ccd": default_ccd,
        }
        _write_json(self.path, data)
        log.info("Saved %d core groups to %s", len(groups), self.path)


class RuleStore:
    """Monitored process rules, kept in ``monitored_processes.json``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load_rules(self) -> dict[str, MonitoredProcessRule]:
        data = _read_json(self.path)
        if data is None:
            return {}
        if not isinstance(data, list):
            raise StoreError(f"Expected a list in {self.path}")
        try:
            rules = {
                record["process_name"]: MonitoredProcessRule(record["process_name"], record["ccd_name"])
                for record in data
            }
        except (KeyError, TypeError) as exc:
            raise StoreError(f"Invalid rule in {self.path}: {exc}") from exc
        log.debug("Loaded %d rules from %s", len(rules), self.path)
        return rules

    def save(self, rules: Mapping[str, MonitoredProcessRule]) -> None:
        data = [{"process_name": r.process_name, "ccd_name": r.ccd_name} for r in rules.values()]
        _write_json(self.path, data)
        log.info("Saved %d rules to %s", len(rules), self.path)
