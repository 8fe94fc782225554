"""Process table sampler: periodic snapshots and start/end/affinity diffs."""

import logging
import threading
from collections.abc import Callable, Iterable, Mapping

import psutil

from ccdpin.affinity import mask_from_affinity
from ccdpin.errors import InvalidCore
from ccdpin.events import EventHub, EventKind
from ccdpin.models import ProcessInfo, SnapshotDiff

log = logging.getLogger(__name__)

SnapshotKey = tuple[int, str]
Snapshot = Mapping[SnapshotKey, ProcessInfo]
SnapshotSource = Callable[[Snapshot], Snapshot]

MIN_INTERVAL = 0.1


def snapshot_from(entries: Iterable[ProcessInfo]) -> dict[SnapshotKey, ProcessInfo]:
    """Index entries by ``(pid, name)``; the first entry wins on duplicates."""
    snapshot: dict[SnapshotKey, ProcessInfo] = {}
    for entry in entries:
        snapshot.setdefault(entry.key, entry)
    return snapshot


def take_snapshot(previous: Snapshot | None = None) -> dict[SnapshotKey, ProcessInfo]:
    """
    Snapshot every live process with its current affinity.

    A process whose affinity cannot be read (access denied, exited mid-read)
    is kept with its last-known mask from ``previous``, or 0, so that start
    and end detection does not depend on the affinity read.
    """
    previous = previous or {}
    entries = []
    for proc in psutil.process_iter(attrs=["pid", "name"]):
        name = proc.info.get("name") or ""
        if not name:
            continue
        pid = proc.info["pid"]
        try:
            mask = mask_from_affinity(proc.cpu_affinity())
        except (psutil.Error, OSError, InvalidCore):
            prior = previous.get((pid, name))
            mask = prior.affinity_mask if prior is not None else 0
        entries.append(ProcessInfo(pid=pid, name=name, affinity_mask=mask))
    return snapshot_from(entries)


def diff_snapshots(old: Snapshot, new: Snapshot) -> SnapshotDiff:
    """Compare two snapshots keyed by ``(pid, name)``."""
    started = tuple(info for key, info in new.items() if key not in old)
    ended = tuple(info for key, info in old.items() if key not in new)
    changed = tuple(
        info for key, info in new.items() if key in old and old[key].affinity_mask != info.affinity_mask
    )
    return SnapshotDiff(started=started, ended=ended, changed=changed)


class ProcessSampler:
    """
    Polls the process table on a fixed interval and publishes diffs.

    Runs in a separate daemon thread. Subscribers register on ``events`` for
    ``STARTED``, ``ENDED`` and ``AFFINITY_CHANGED``; each receives a
    :class:`ProcessInfo`. Listeners run on the sampler thread.
    """

    def __init__(
        self,
        interval: float = 1.0,
        snapshot_source: SnapshotSource = take_snapshot,
    ) -> None:
        """
        Initialize the ProcessSampler.

        Args:
            interval: Seconds between ticks. Fixed for the sampler's lifetime.
            snapshot_source: Callable producing a snapshot given the previous one.
        """
        self.events = EventHub()
        self._interval = max(MIN_INTERVAL, interval)
        self._snapshot_source = snapshot_source
        self._lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._previous: Snapshot = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        """Check if the sampler thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def previous_snapshot(self) -> dict[SnapshotKey, ProcessInfo]:
        with self._lock:
            return dict(self._previous)

    def start(self) -> None:
        """Take a baseline snapshot and start the sampling thread."""
        if self.is_running:
            if self._stop_event.is_set():
                raise RuntimeError("Previous sampler thread is still stopping")
            return

        self._stop_event.clear()
        with self._tick_lock:
            baseline = self._snapshot_source({})
            with self._lock:
                self._previous = baseline
        log.info("Sampler started with %d processes, interval %.1fs", len(baseline), self._interval)

        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="ProcessSampler",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the sampling thread.

        No events are published once this returns; a tick already in flight
        finishes its snapshot but drops its events.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                log.warning("Sampler thread did not stop within %ss", timeout)
                return
            self._thread = None
            log.info("Sampler stopped")

    def tick(self) -> SnapshotDiff:
        """Run one snapshot/diff/publish pass on the calling thread."""
        return self._tick(check_stop=False)

    def _tick(self, check_stop: bool) -> SnapshotDiff:
        with self._tick_lock:
            with self._lock:
                previous = self._previous
            current = self._snapshot_source(previous)
            diff = diff_snapshots(previous, current)
            with self._lock:
                self._previous = current

            if check_stop and self._stop_event.is_set():
                return diff
            self._publish(diff)
            return diff

    def _publish(self, diff: SnapshotDiff) -> None:
        for info in diff.started:
            self.events.publish(EventKind.STARTED, info)
        for info in diff.ended:
            self.events.publish(EventKind.ENDED, info)
        for info in diff.changed:
            self.events.publish(EventKind.AFFINITY_CHANGED, info)

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.wait(timeout=self._interval):
            try:
                self._tick(check_stop=True)
            except Exception:
                # Keep the previous snapshot and try again next tick
                log.exception("Sampler tick failed")
