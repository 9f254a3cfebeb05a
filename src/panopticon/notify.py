"""
NotificationBus - in-process publish/subscribe for applied events.

Delivery is synchronous and not durable: handlers run after the event is
committed, and a failing handler affects neither its neighbours nor the
command that produced the event.
"""
import contextlib
import threading
from typing import Callable, Iterable, List, Optional, Tuple

from .context import PanopticonContext
from .events import EVENT_TYPES, Event

EventHandler = Callable[[Event], object]

class NotificationBus:

    def __init__(self, context: PanopticonContext):
        self.log = context.get_logger("notify")
        self._lock = threading.Lock()
        self._subscriptions: List[Tuple[EventHandler, Optional[frozenset]]] = []

    def subscribe(self, handler: EventHandler, kinds: Optional[Iterable[str]] = None) -> Callable[[], None]:
        """Register ``handler`` for all events, or only the given kinds.

        Returns:
            A callable that removes the subscription again.
        """
        kind_set = frozenset(kinds) if kinds is not None else None
        if kind_set is not None:
            unknown = sorted(kind_set - set(EVENT_TYPES))
            if unknown:
                raise ValueError(f"Unknown event kind(s): {', '.join(unknown)}")
        subscription = (handler, kind_set)
        with self._lock:
            self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            with self._lock, contextlib.suppress(ValueError):
                self._subscriptions.remove(subscription)

        return _unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to matching handlers; returns how many succeeded."""
        with self._lock:
            subscriptions = list(self._subscriptions)

        delivered = 0
        for handler, kinds in subscriptions:
            if kinds is not None and event.type not in kinds:
                continue
            try:
                handler(event)
            except Exception:
                self.log.exception(f"Notification handler {handler!r} failed for {event.type} {event.id}")
                continue
            delivered += 1
        return delivered
