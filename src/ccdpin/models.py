"""Data models for ccdpin."""

from collections.abc import Iterable
from dataclasses import dataclass, field

from ccdpin.errors import AffinityError, InvalidCore
from ccdpin.mask import MAX_CORES, build_mask

DEFAULT_ROW_NAME = "Default"


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable snapshot entry for one process."""

    pid: int
    name: str
    affinity_mask: int = 0  # bit i set = core i enabled

    @property
    def key(self) -> tuple[int, str]:
        """Identity of the process within one sampling interval."""
        return (self.pid, self.name)

    def __str__(self) -> str:
        return f"{self.name}({self.pid})"


@dataclass(slots=True, frozen=True)
class CoreGroup:
    """A named set of CPU cores (a CCD)."""

    name: str
    cores: tuple[int, ...]

    @classmethod
    def create(cls, name: str, cores: Iterable[int]) -> "CoreGroup":
        """Validate and normalise a core group."""
        if not name or not name.strip():
            raise ValueError("Core group name cannot be empty")
        normalised = tuple(sorted(set(cores)))
        if not normalised:
            raise InvalidCore("At least one CPU core must be specified")
        for core in normalised:
            if core < 0 or core >= MAX_CORES:
                raise InvalidCore(f"CPU core number must be between 0 and {MAX_CORES - 1}: {core}")
        return cls(name=name, cores=normalised)

    @property
    def mask(self) -> int:
        return build_mask(self.cores)


@dataclass(slots=True, frozen=True)
class MonitoredProcessRule:
    """Pins every process called ``process_name`` to core group ``ccd_name``."""

    process_name: str
    ccd_name: str


@dataclass(slots=True, frozen=True)
class SnapshotDiff:
    """Differences between two consecutive snapshots."""

    started: tuple[ProcessInfo, ...] = ()
    ended: tuple[ProcessInfo, ...] = ()
    changed: tuple[ProcessInfo, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.started or self.ended or self.changed)


@dataclass(slots=True, frozen=True)
class AffinityResult:
    """Outcome of an affinity write.

    ``instances`` holds one result per process for writes by name.
    """

    success: bool
    message: str
    error: AffinityError | None = None
    instances: tuple["AffinityResult", ...] = field(default=())


@dataclass(slots=True, frozen=True)
class RuleApplied:
    """Payload published whenever a rule (or the default CCD) is written."""

    process_name: str
    ccd_name: str
    success: bool
    message: str


@dataclass(slots=True, frozen=True)
class RuleView:
    """One row of the monitored process list."""

    process_name: str
    ccd_name: str
    affinity_text: str
    is_default: bool = False

    @property
    def display_name(self) -> str:
        return "Default (Other Processes)" if self.is_default else self.process_name


@dataclass(slots=True, frozen=True)
class ApplyReport:
    """Summary of a bulk apply pass."""

    rules: tuple[RuleApplied, ...] = ()
    default_success: int = 0
    default_failed: int = 0

    @property
    def failed_rules(self) -> tuple[RuleApplied, ...]:
        return tuple(r for r in self.rules if not r.success)
