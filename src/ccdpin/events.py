"""Publish/subscribe hub for process and rule events."""

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

log = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class EventKind(Enum):
    """Kinds of events published by the sampler and the rule engine."""

    STARTED = "started"
    ENDED = "ended"
    AFFINITY_CHANGED = "affinity_changed"
    RULE_APPLIED = "rule_applied"


class Subscription:
    """Handle returned by :meth:`EventHub.subscribe`."""

    def __init__(self, hub: "EventHub", kind: EventKind, listener: Listener) -> None:
        self._hub = hub
        self.kind = kind
        self.listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivering events to this listener. Safe to call twice."""
        if self._active:
            self._active = False
            self._hub._remove(self)


class EventHub:
    """
    Registry of listeners per event kind.

    Listeners run synchronously on the publishing thread, in the order they
    subscribed. A listener that raises is logged and the remaining listeners
    still run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[EventKind, list[Subscription]] = {kind: [] for kind in EventKind}

    def subscribe(self, kind: EventKind, listener: Listener) -> Subscription:
        """Register ``listener`` for ``kind`` and return its handle."""
        subscription = Subscription(self, kind, listener)
        with self._lock:
            self._subscriptions[kind] = [*self._subscriptions[kind], subscription]
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions[subscription.kind] = [
                s for s in self._subscriptions[subscription.kind] if s is not subscription
            ]

    def listener_count(self, kind: EventKind) -> int:
        return len(self._subscriptions[kind])

    def publish(self, kind: EventKind, payload: Any) -> None:
        """Deliver ``payload`` to every listener of ``kind``."""
        # The list is replaced on every change, so iterating the reference is safe
        for subscription in self._subscriptions[kind]:
            if not subscription.active:
                continue
            try:
                subscription.listener(payload)
            except Exception:
                log.exception("Listener for %s failed on %r", kind.value, payload)

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            for subscriptions in self._subscriptions.values():
                for subscription in subscriptions:
                    subscription._active = False
            self._subscriptions = {kind: [] for kind in EventKind}
