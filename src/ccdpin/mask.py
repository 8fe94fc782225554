"""CPU affinity bitmask algebra.

A mask is a plain ``int`` holding a single 64-bit word: bit *i* set means
logical core *i* is enabled. Machines with more than 64 logical cores are
not supported.
"""

from collections.abc import Iterable

from ccdpin.errors import InvalidCore

MAX_CORES = 64
NO_CORES_BOUND = "No cores bound"


def build_mask(cores: Iterable[int]) -> int:
    """Build a mask from a sequence of core indices.

    Raises:
        InvalidCore: if ``cores`` is empty or holds an index outside [0, 63].
    """
    mask = 0
    seen = False
    for core in cores:
        if core < 0 or core >= MAX_CORES:
            raise InvalidCore(f"CPU core number must be between 0 and {MAX_CORES - 1}: {core}")
        mask |= 1 << core
        seen = True
    if not seen:
        raise InvalidCore("At least one CPU core must be specified")
    return mask


def enabled_cores(mask: int) -> list[int]:
    """Return the enabled core indices of ``mask`` in ascending order."""
    return [i for i in range(MAX_CORES) if mask & (1 << i)]


def full_mask(core_count: int) -> int:
    """Mask enabling cores ``0..core_count-1``, capped at 64 cores."""
    count = max(0, min(core_count, MAX_CORES))
    return (1 << count) - 1


def _format_sorted(cores: list[int]) -> str:
    if not cores:
        return NO_CORES_BOUND

    ranges = []
    start = prev = cores[0]
    for core in cores[1:]:
        if core != prev + 1:
            ranges.append(f"{start}" if start == prev else f"{start}-{prev}")
            start = core
        prev = core
    ranges.append(f"{start}" if start == prev else f"{start}-{prev}")
    return ", ".join(ranges)


def format_mask(mask: int) -> str:
    """Format a mask as compact ranges, e.g. ``"0-7, 16-23"``."""
    return _format_sorted(enabled_cores(mask))


def format_cores(cores: Iterable[int]) -> str:
    """Format an unordered core list as compact ranges."""
    return _format_sorted(sorted(set(cores)))
