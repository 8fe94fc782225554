"""Read and write process CPU affinity through psutil."""

import logging
from collections.abc import Iterable, Iterator

import psutil

from ccdpin.errors import (
    AffinityError,
    AffinityOSError,
    InvalidCore,
    PermissionDenied,
    ProcessNotFound,
)
from ccdpin.mask import build_mask, enabled_cores, format_mask, full_mask
from ccdpin.models import AffinityResult

log = logging.getLogger(__name__)


def mask_from_affinity(cores: list[int] | None) -> int:
    """Convert a psutil ``cpu_affinity()`` list to a mask (0 when unknown)."""
    return build_mask(cores) if cores else 0


def _name_of(proc: psutil.Process) -> str:
    try:
        return proc.name()
    except psutil.Error:
        return "?"


def _translate(exc: Exception, label: str) -> AffinityError:
    """Map a psutil/OS exception onto the ccdpin error taxonomy."""
    if isinstance(exc, psutil.NoSuchProcess):
        return ProcessNotFound(f"Process {label} no longer exists")
    if isinstance(exc, psutil.AccessDenied):
        return PermissionDenied(f"Access denied to process {label}")
    return AffinityOSError(f"Process {label}: {exc}")


class AffinitySetter:
    """
    Side-effecting wrapper around the OS scheduler affinity property.

    Single-target writes return an :class:`AffinityResult`; bulk sweeps count
    failures and keep going. Processes routinely exit between being observed
    and being written, so a missing process is never fatal.
    """

    def processor_count(self) -> int:
        """Number of logical processors on this machine."""
        return psutil.cpu_count(logical=True) or 1

    def _iter_processes(self) -> Iterator[tuple[int, str]]:
        for proc in psutil.process_iter(attrs=["pid", "name"]):
            name = proc.info.get("name") or ""
            if name:
                yield proc.info["pid"], name

    def _write(self, proc: psutil.Process, mask: int, level: int = logging.WARNING) -> AffinityResult:
        label = f"{_name_of(proc)}({proc.pid})"
        cores = enabled_cores(mask)
        if not cores:
            error = InvalidCore(f"Refusing to bind {label} to an empty core set")
            log.log(level, "%s", error)
            return AffinityResult(False, str(error), error)
        try:
            proc.cpu_affinity(cores)
        except (psutil.Error, OSError, ValueError) as exc:
            error = _translate(exc, label)
            log.log(level, "Failed to set CPU affinity: %s", error)
            return AffinityResult(False, str(error), error)

        log.debug("Set CPU affinity of %s to %s", label, format_mask(mask))
        return AffinityResult(True, f"Successfully set CPU affinity of process {label}")

    def _set_pid(self, pid: int, mask: int, level: int) -> AffinityResult:
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            error = ProcessNotFound(f"Process ID not found: {pid}")
            log.log(level, "%s", error)
            return AffinityResult(False, str(error), error)
        except (psutil.Error, OSError) as exc:
            error = _translate(exc, f"({pid})")
            log.log(level, "%s", error)
            return AffinityResult(False, str(error), error)
        return self._write(proc, mask, level)

    def set_by_pid(self, pid: int, mask: int) -> AffinityResult:
        """Write ``mask`` to the process ``pid``."""
        log.debug("Setting affinity of pid %d to mask %X", pid, mask)
        return self._set_pid(pid, mask, logging.WARNING)

    def set_by_name(self, name: str, mask: int) -> AffinityResult:
        """
        Write ``mask`` to every live process called ``name``.

        Each instance is written independently; instances that succeeded are
        kept even when others fail.
        """
        log.debug("Setting affinity of '%s' to mask %X", name, mask)
        procs = [p for p in psutil.process_iter(attrs=["name"]) if p.info.get("name") == name]
        if not procs:
            error = ProcessNotFound(f"Process not found: {name}")
            log.info("%s", error)
            return AffinityResult(False, str(error), error)

        results = tuple(self._write(proc, mask) for proc in procs)
        ok = sum(1 for r in results if r.success)
        if ok == len(results):
            message = f"Successfully set CPU affinity for {ok} processes"
            log.info("%s named '%s'", message, name)
            return AffinityResult(True, message, instances=results)

        failures = [r for r in results if not r.success]
        message = f"Some processes failed to set. Success: {ok}, Failed: {len(failures)}\n" + "\n".join(
            r.message for r in failures
        )
        log.warning("Partial affinity write for '%s': %d ok, %d failed", name, ok, len(failures))
        return AffinityResult(False, message, failures[0].error, instances=results)

    def get_affinity(self, pid: int) -> tuple[int, str]:
        """
        Read the current affinity of ``pid``.

        Returns:
            ``(mask, process_name)``

        Raises:
            ProcessNotFound, PermissionDenied, AffinityOSError
        """
        label = f"({pid})"
        try:
            proc = psutil.Process(pid)
            label = f"{_name_of(proc)}({pid})"
            with proc.oneshot():
                return mask_from_affinity(proc.cpu_affinity()), proc.name()
        except (psutil.Error, OSError) as exc:
            raise _translate(exc, label) from exc

    def describe_by_name(self, name: str) -> str:
        """Human-readable affinity shared by all processes called ``name``."""
        masks = set()
        count = 0
        try:
            for proc in psutil.process_iter(attrs=["name", "cpu_affinity"]):
                if proc.info.get("name") != name:
                    continue
                count += 1
                masks.add(mask_from_affinity(proc.info.get("cpu_affinity")))
        except (psutil.Error, OSError, InvalidCore):
            log.exception("Error occurred while getting affinity of '%s'", name)
            return "Failed to get"

        if count == 0:
            return "Process not running"
        if len(masks) == 1:
            return format_mask(masks.pop())
        return f"Multiple processes ({count}) with inconsistent affinity"

    def list_running(self) -> list[tuple[int, str]]:
        """Running ``(pid, name)`` pairs ordered by name."""
        return sorted(self._iter_processes(), key=lambda item: (item[1], item[0]))

    def apply_to_others(self, mask: int, exclude_names: Iterable[str]) -> tuple[int, int]:
        """
        Write ``mask`` to every running process whose name is not excluded.

        Returns:
            ``(success_count, fail_count)``
        """
        excluded = set(exclude_names)
        ok = failed = 0
        for pid, name in list(self._iter_processes()):
            if name in excluded:
                continue
            if self._set_pid(pid, mask, logging.DEBUG).success:
                ok += 1
            else:
                failed += 1
        log.info("Applied mask %s to %d other processes (%d failed)", format_mask(mask), ok, failed)
        return ok, failed

    def restore_all(self) -> tuple[int, int]:
        """
        Restore every running process to full affinity.

        Returns:
            ``(success_count, fail_count)``
        """
        mask = full_mask(self.processor_count())
        ok = failed = 0
        for pid, _name in list(self._iter_processes()):
            if self._set_pid(pid, mask, logging.DEBUG).success:
                ok += 1
            else:
                failed += 1
        log.info("Restore completed. Success: %d, Failed: %d", ok, failed)
        return ok, failed
