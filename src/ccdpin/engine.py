"""Rule engine: maps sampler events onto core group affinity writes."""

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Protocol, runtime_checkable

from ccdpin.affinity import AffinitySetter
from ccdpin.errors import DanglingRuleReference
from ccdpin.events import EventHub, EventKind
from ccdpin.mask import format_cores
from ccdpin.models import (
    DEFAULT_ROW_NAME,
    ApplyReport,
    CoreGroup,
    MonitoredProcessRule,
    ProcessInfo,
    RuleApplied,
    RuleView,
)
from ccdpin.store import ConfigStore, RuleStore

log = logging.getLogger(__name__)

NOT_SET = "Not set"


@runtime_checkable
class EventSource(Protocol):
    """Anything that publishes process events on an ``events`` hub."""

    events: EventHub


@dataclass(slots=True, frozen=True)
class RuleState:
    """Immutable view of rules and core groups; replaced as a whole."""

    rules: Mapping[str, MonitoredProcessRule] = field(default_factory=lambda: MappingProxyType({}))
    core_groups: Mapping[str, CoreGroup] = field(default_factory=lambda: MappingProxyType({}))
    default_ccd: str | None = None


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


class RuleEngine:
    """
    Owns the monitored process rules, the default CCD and the auto-apply flag.

    Subscribes to a sampler's ``events``. On a process start it writes the
    matching rule's core group, or the default core group for unmatched
    processes, when auto-apply is enabled. Events for rule-matched processes
    are re-published on :attr:`events` together with ``RULE_APPLIED``.
    """

    def __init__(
        self,
        sampler: EventSource,
        setter: AffinitySetter,
        config_store: ConfigStore,
        rule_store: RuleStore,
        auto_apply: bool = False,
    ) -> None:
        self.events = EventHub()
        self._setter = setter
        self._config_store = config_store
        self._rule_store = rule_store
        self._auto_apply = auto_apply
        self._write_lock = threading.Lock()
        self._state = RuleState()
        self.reload()

        self._subscriptions = [
            sampler.events.subscribe(EventKind.STARTED, self._on_started),
            sampler.events.subscribe(EventKind.ENDED, self._on_ended),
            sampler.events.subscribe(EventKind.AFFINITY_CHANGED, self._on_affinity_changed),
        ]

    # State

    @property
    def auto_apply(self) -> bool:
        return self._auto_apply

    @auto_apply.setter
    def auto_apply(self, value: bool) -> None:
        self._auto_apply = bool(value)
        log.info("Auto-apply rules %s", "enabled" if value else "disabled")

    @property
    def rules(self) -> Mapping[str, MonitoredProcessRule]:
        return self._state.rules

    @property
    def core_groups(self) -> Mapping[str, CoreGroup]:
        return self._state.core_groups

    @property
    def default_ccd(self) -> str | None:
        return self._state.default_ccd

    def reload(self) -> None:
        """Re-read core groups, the default CCD and rules from the stores."""
        with self._write_lock:
            groups = self._config_store.load_core_groups()
            default_ccd = self._config_store.load_default_ccd()
            rules = self._rule_store.load_rules()
            self._state = RuleState(_frozen(rules), _frozen(groups), default_ccd)
        log.info("Loaded %d rules and %d core groups (default: %s)", len(rules), len(groups), default_ccd)

    def close(self) -> None:
        """Stop listening to the sampler."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()

    # Mutations: persist first, then swap the in-memory state

    def add_rule(self, process_name: str, ccd_name: str) -> None:
        """Add or replace the rule for ``process_name``."""
        if not process_name:
            raise ValueError("Process name cannot be empty")
        if not ccd_name:
            raise ValueError("Core group name cannot be empty")
        with self._write_lock:
            rules = dict(self._state.rules)
            rules[process_name] = MonitoredProcessRule(process_name, ccd_name)
            self._rule_store.save(rules)
            self._state = replace(self._state, rules=_frozen(rules))
        log.info("Added monitored process %s -> %s", process_name, ccd_name)

    def remove_rule(self, process_name: str) -> bool:
        if not process_name:
            raise ValueError("Process name cannot be empty")
        with self._write_lock:
            rules = dict(self._state.rules)
            if rules.pop(process_name, None) is None:
                log.info("Monitored process %s not found", process_name)
                return False
            self._rule_store.save(rules)
            self._state = replace(self._state, rules=_frozen(rules))
        log.info("Removed monitored process %s", process_name)
        return True

    def upsert_core_group(self, name: str, cores: Iterable[int]) -> CoreGroup:
        """Create or replace a core group."""
        group = CoreGroup.create(name, cores)
        with self._write_lock:
            groups = dict(self._state.core_groups)
            groups[name] = group
            self._config_store.save(groups, self._state.default_ccd)
            self._state = replace(self._state, core_groups=_frozen(groups))
        log.info("Saved core group %s: %s", name, format_cores(group.cores))
        return group

    def delete_core_group(self, name: str) -> bool:
        """
        Delete a core group.

        Rules that still reference it are kept and reported as dangling.
        """
        with self._write_lock:
            groups = dict(self._state.core_groups)
            if groups.pop(name, None) is None:
                log.info("Core group %s not found", name)
                return False
            self._config_store.save(groups, self._state.default_ccd)
            self._state = replace(self._state, core_groups=_frozen(groups))
        log.info("Deleted core group %s", name)
        return True

    def set_default_ccd(self, name: str | None) -> None:
        """Select the core group applied to unmatched processes; None clears it."""
        name = name or None
        with self._write_lock:
            self._config_store.save(self._state.core_groups, name)
            self._state = replace(self._state, default_ccd=name)
        log.info("Default CCD set to %s", name)

    # Queries

    def resolve_mask(self, ccd_name: str, process_name: str | None = None, state: RuleState | None = None) -> int:
        """
        Mask of core group ``ccd_name``.

        Raises:
            DanglingRuleReference: if the core group does not exist.
        """
        state = state or self._state
        group = state.core_groups.get(ccd_name)
        if group is None:
            raise DanglingRuleReference(ccd_name, process_name)
        return group.mask

    def dangling_rules(self) -> list[MonitoredProcessRule]:
        """Rules whose core group no longer exists."""
        state = self._state
        return [r for r in state.rules.values() if r.ccd_name not in state.core_groups]

    def describe(self) -> list[RuleView]:
        """Rows for the monitored process list, default row last."""
        state = self._state
        rows = []
        for name in sorted(state.rules):
            rule = state.rules[name]
            if rule.ccd_name in state.core_groups:
                text = self._setter.describe_by_name(name)
            else:
                text = NOT_SET
            rows.append(RuleView(name, rule.ccd_name, text))

        default_group = state.core_groups.get(state.default_ccd) if state.default_ccd else None
        rows.append(
            RuleView(
                DEFAULT_ROW_NAME,
                state.default_ccd or NOT_SET,
                format_cores(default_group.cores) if default_group else NOT_SET,
                is_default=True,
            )
        )
        return rows

    # Event handling

    def _apply(self, info: ProcessInfo, ccd_name: str, mask: int) -> None:
        result = self._setter.set_by_pid(info.pid, mask)
        if not result.success:
            log.warning("Failed to apply %s to %s: %s", ccd_name, info, result.message)
        self.events.publish(
            EventKind.RULE_APPLIED, RuleApplied(info.name, ccd_name, result.success, result.message)
        )

    def _on_started(self, info: ProcessInfo) -> None:
        state = self._state
        rule = state.rules.get(info.name)
        if rule is not None:
            if self._auto_apply:
                try:
                    mask = self.resolve_mask(rule.ccd_name, info.name, state)
                except DanglingRuleReference as exc:
                    log.warning("Skipping rule for %s: %s", info, exc)
                else:
                    self._apply(info, rule.ccd_name, mask)
            self.events.publish(EventKind.STARTED, info)
        elif self._auto_apply and state.default_ccd:
            try:
                mask = self.resolve_mask(state.default_ccd, state=state)
            except DanglingRuleReference as exc:
                log.warning("Skipping default CCD for %s: %s", info, exc)
                return
            self._apply(info, state.default_ccd, mask)
            log.debug("Applied default CCD %s to %s", state.default_ccd, info)

    def _on_ended(self, info: ProcessInfo) -> None:
        if info.name in self._state.rules:
            self.events.publish(EventKind.ENDED, info)

    def _on_affinity_changed(self, info: ProcessInfo) -> None:
        if info.name in self._state.rules:
            self.events.publish(EventKind.AFFINITY_CHANGED, info)

    # Bulk operations

    def apply_default_to_others(self, state: RuleState | None = None) -> tuple[int, int]:
        """
        Write the default core group to every running process without a rule.

        Returns:
            ``(success_count, fail_count)``; ``(0, 0)`` when no default applies.
        """
        state = state or self._state
        if not state.default_ccd:
            return 0, 0
        try:
            mask = self.resolve_mask(state.default_ccd, state=state)
        except DanglingRuleReference as exc:
            log.warning("Skipping default CCD: %s", exc)
            return 0, 0
        return self._setter.apply_to_others(mask, state.rules.keys())

    def apply_all_rules_now(self) -> ApplyReport:
        """Re-assert every rule by name, then the default CCD on everything else."""
        state = self._state
        applied = []
        for name in sorted(state.rules):
            rule = state.rules[name]
            try:
                mask = self.resolve_mask(rule.ccd_name, name, state)
            except DanglingRuleReference as exc:
                log.warning("Skipping rule: %s", exc)
                continue
            result = self._setter.set_by_name(name, mask)
            if not result.success:
                log.warning("Failed to set CPU affinity for %s: %s", name, result.message)
            record = RuleApplied(name, rule.ccd_name, result.success, result.message)
            applied.append(record)
            self.events.publish(EventKind.RULE_APPLIED, record)

        ok, failed = self.apply_default_to_others(state)
        return ApplyReport(tuple(applied), ok, failed)
