"""Shared fixtures for ccdpin tests."""

import pytest

from ccdpin.errors import ProcessNotFound
from ccdpin.events import EventHub
from ccdpin.mask import format_mask, full_mask
from ccdpin.models import AffinityResult
from ccdpin.store import ConfigStore, RuleStore


class FakeSetter:
    """In-memory stand-in for AffinitySetter over a fixed process table."""

    def __init__(self, processes=None, cpu_count=8):
        # pid -> [name, mask]
        self.table = {pid: [name, mask] for pid, (name, mask) in (processes or {}).items()}
        self.cpu_count = cpu_count
        self.calls = []
        self.denied: set[int] = set()

    def processor_count(self):
        return self.cpu_count

    def set_by_pid(self, pid, mask):
        self.calls.append(("pid", pid, mask))
        if pid not in self.table:
            error = ProcessNotFound(f"Process ID not found: {pid}")
            return AffinityResult(False, str(error), error)
        if pid in self.denied:
            return AffinityResult(False, f"Access denied to process {pid}")
        self.table[pid][1] = mask
        return AffinityResult(True, f"Set {pid}")

    def set_by_name(self, name, mask):
        self.calls.append(("name", name, mask))
        pids = [pid for pid, (n, _) in self.table.items() if n == name]
        if not pids:
            error = ProcessNotFound(f"Process not found: {name}")
            return AffinityResult(False, str(error), error)
        results = tuple(self.set_by_pid(pid, mask) for pid in pids)
        return AffinityResult(all(r.success for r in results), f"Set {name}", instances=results)

    def get_affinity(self, pid):
        if pid not in self.table:
            raise ProcessNotFound(f"Process ID not found: {pid}")
        name, mask = self.table[pid]
        return mask, name

    def describe_by_name(self, name):
        masks = {mask for n, mask in self.table.values() if n == name}
        if not masks:
            return "Process not running"
        if len(masks) == 1:
            return format_mask(masks.pop())
        return "Multiple processes with inconsistent affinity"

    def list_running(self):
        return sorted(((pid, name) for pid, (name, _) in self.table.items()), key=lambda i: (i[1], i[0]))

    def apply_to_others(self, mask, exclude_names):
        excluded = set(exclude_names)
        ok = failed = 0
        for pid, (name, _) in list(self.table.items()):
            if name in excluded:
                continue
            if self.set_by_pid(pid, mask).success:
                ok += 1
            else:
                failed += 1
        return ok, failed

    def restore_all(self):
        mask = full_mask(self.cpu_count)
        ok = failed = 0
        for pid in list(self.table):
            if self.set_by_pid(pid, mask).success:
                ok += 1
            else:
                failed += 1
        return ok, failed


class FakeSampler:
    """Anything with an ``events`` hub can drive the engine."""

    def __init__(self):
        self.events = EventHub()


@pytest.fixture
def fake_setter():
    return FakeSetter(
        {
            10: ("game.exe", 0xFF),
            11: ("game.exe", 0xFF),
            20: ("browser", 0xFF),
            30: ("editor", 0xFF),
        }
    )


@pytest.fixture
def fake_sampler():
    return FakeSampler()


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


@pytest.fixture
def rule_store(tmp_path):
    return RuleStore(tmp_path / "monitored_processes.json")
