"""
In-process change feed.

The store publishes INSERT / UPDATE / DELETE events per table after every
acknowledged write; sessions subscribe to the tables they cache. Delivery is
synchronous on the publishing thread.
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ALL_EVENTS = "*"

Listener = Callable[[str, str, Dict[str, Any]], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe. Closing it twice is harmless."""

    def __init__(self, feed: "ChangeFeed", table: str, events, callback: Listener,
                 filter: Optional[Dict[str, Any]] = None):
        self.feed = feed
        self.table = table
        self.events = events
        self.callback = callback
        self.filter = dict(filter or {})
        self.active = True

    def matches(self, table: str, event: str, record: Dict[str, Any]) -> bool:
        if not self.active or table != self.table:
            return False
        if self.events != ALL_EVENTS and event not in self.events:
            return False
        return all(record.get(k) == v for k, v in self.filter.items())

    def close(self) -> None:
        self.feed.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []

    def subscribe(self, table: str, events: Union[str, Iterable[str]], callback: Listener,
                  filter: Optional[Dict[str, Any]] = None) -> Subscription:
        if events != ALL_EVENTS:
            events = frozenset(events)
        sub = Subscription(self, table, events, callback, filter)
        with self._lock:
            self._subs.append(sub)
        logger.debug("Subscribed to %s (%s)", table, events)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            sub.active = False
            if sub in self._subs:
                self._subs.remove(sub)
                logger.debug("Unsubscribed from %s", sub.table)

    def publish(self, table: str, event: str, record: Dict[str, Any]) -> None:
        with self._lock:
            targets = [s for s in self._subs if s.matches(table, event, record)]
        for sub in targets:
            # A subscription may have been released while an earlier listener ran
            if not sub.active:
                continue
            try:
                sub.callback(table, event, record)
            except Exception:
                logger.warning("Change listener on %s failed for %s", table, event, exc_info=True)

    def active_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for s in self._subs if table is None or s.table == table)
