"""
Relay of server-push events to caller-supplied handlers.

Two kinds of events are forwarded:

- NOTICE: informational messages sent while a command runs, delivered as
  `psycopg.errors.Diagnostic`
- NOTIFICATION: LISTEN/NOTIFY messages, delivered as `psycopg.Notify`

Each connection gets one `SubscriptionRegistry`. It registers a single bridge
callback per kind with psycopg and fans events out to its subscribers in
insertion order. The subscriber table is guarded by a lock that is held only
while adding, removing or snapshotting; handlers always run outside of it, on
a snapshot, so unsubscribing during a dispatch never alters that dispatch.
"""
import itertools
import logging
import threading
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import psycopg

__all__ = ['EventKind', 'Subscription', 'SubscriptionRegistry']

logger = logging.getLogger(__name__)

_subscription_ids = itertools.count(1)


class EventKind(Enum):
    NOTICE = 'notice'
    NOTIFICATION = 'notification'


@dataclass(frozen=True)
class Subscription:
    """Handle returned by `subscribe`; pass it back to `unsubscribe`.
    """
    kind: EventKind
    handler: Callable[[Any], Any] = field(compare=False)
    id: int = field(default_factory=lambda: next(_subscription_ids))


class SubscriptionRegistry:
    """Subscribers of one connection, keyed by event kind.
    """

    def __init__(self, connection: psycopg.Connection) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[EventKind, dict[int, Subscription]] = {kind: {} for kind in EventKind}
        self._connection = weakref.ref(connection)
        connection.add_notice_handler(self._on_notice)
        connection.add_notify_handler(self._on_notify)

    def subscribe(self, kind: EventKind | str, handler: Callable[[Any], Any]) -> Subscription:
        """Register `handler` for `kind` and return its subscription.

        The same callable may be subscribed more than once; each subscription
        is delivered and removed independently.
        """
        if not callable(handler):
            raise TypeError(f'handler must be callable, got {type(handler).__name__}')
        subscription = Subscription(EventKind(kind), handler)
        with self._lock:
            self._subscriptions[subscription.kind][subscription.id] = subscription
        logger.debug(f'Subscribed {subscription.kind.value} handler #{subscription.id}')
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns False if it was not registered.
        """
        with self._lock:
            removed = self._subscriptions[subscription.kind].pop(subscription.id, None)
        if removed is not None:
            logger.debug(f'Unsubscribed {subscription.kind.value} handler #{subscription.id}')
        return removed is not None

    def subscriptions(self, kind: EventKind | str) -> list[Subscription]:
        """Snapshot of the subscriptions of one kind, in delivery order.
        """
        with self._lock:
            return list(self._subscriptions[EventKind(kind)].values())

    def dispatch(self, kind: EventKind, event: Any) -> int:
        """Deliver `event` to every current subscriber of `kind`.

        A handler that raises is logged and skipped; the remaining handlers
        still receive the event. Returns the number of handlers called.
        """
        delivered = 0
        for subscription in self.subscriptions(kind):
            delivered += 1
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(f'Error in {kind.value} handler #{subscription.id}')
        return delivered

    def _on_notice(self, diagnostic: psycopg.errors.Diagnostic) -> None:
        self.dispatch(EventKind.NOTICE, diagnostic)

    def _on_notify(self, notify: psycopg.Notify) -> None:
        self.dispatch(EventKind.NOTIFICATION, notify)

    def clear(self) -> None:
        """Drop all subscriptions and detach from the connection.
        """
        with self._lock:
            for table in self._subscriptions.values():
                table.clear()
        connection = self._connection()
        if connection is not None:
            connection.remove_notice_handler(self._on_notice)
            connection.remove_notify_handler(self._on_notify)
