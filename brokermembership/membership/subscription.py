"""
Children subscription state machine.

Keeps a one-shot children watch armed on a path:

    UNSUBSCRIBED --start()--> WATCHING --event: re-armed--> WATCHING
                                  |
                                  +--event: re-arm failed--> DEAD

DEAD is terminal until start() is called again, typically after the
coordination session has been reestablished.
"""

import threading
from enum import Enum
from typing import Callable, FrozenSet, Iterable

from kazoo.protocol.states import WatchedEvent

from brokermembership.coordination.client import CoordinationClient
from brokermembership.membership.notifier import ChangeNotifier
from brokermembership.utils.logging import get_logger

logger = get_logger(__name__)

ChildrenParser = Callable[[Iterable[str]], FrozenSet[int]]


class SubscriptionState(str, Enum):
    """Children subscription states."""

    UNSUBSCRIBED = "unsubscribed"   # No watch armed
    WATCHING = "watching"           # Watch armed, events flowing
    DEAD = "dead"                   # Re-arm failed, no further events


class ChildrenSubscription:
    """
    Feeds a ChangeNotifier from a self re-arming children watch.

    Each watch event lists the children and re-arms the watch in the same
    round trip, then publishes the listing. A change landing after the
    listing fires the freshly armed watch, so no change is missed, and
    handler failures cannot stop re-arming since it already happened.
    """

    def __init__(
        self,
        client: CoordinationClient,
        path: str,
        notifier: ChangeNotifier,
        parse_children: ChildrenParser,
    ):
        """
        Initialize subscription.

        Args:
            client: Coordination client
            path: Parent path to watch
            notifier: Notifier receiving every new listing
            parse_children: Converts child names to broker IDs
        """
        self._client = client
        self._path = path
        self._notifier = notifier
        self._parse_children = parse_children

        self._state = SubscriptionState.UNSUBSCRIBED
        self._lock = threading.RLock()
        # Watches armed by an earlier start() are recognized and ignored
        self._generation = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def path(self) -> str:
        return self._path

    def start(self) -> None:
        """
        Arm the watch if it is not already armed.

        Raises:
            MembershipError: If the initial watch could not be armed; the
                state is left unchanged
        """
        with self._lock:
            if self._state == SubscriptionState.WATCHING:
                return

            self._generation += 1
            generation = self._generation

            def watcher(event: WatchedEvent) -> None:
                self._on_event(generation, watcher, event)

            children = self._client.watch_children(self._path, watcher)

            self._notifier.prime(self._parse_children(children))
            self._state = SubscriptionState.WATCHING

            logger.info(
                "Children subscription watching",
                path=self._path,
                generation=generation,
                children=len(children),
            )

    def stop(self) -> None:
        """Stop delivering events. A watch still armed server-side fires into nothing."""
        with self._lock:
            self._generation += 1
            self._state = SubscriptionState.UNSUBSCRIBED

            logger.info("Children subscription stopped", path=self._path)

    def _on_event(
        self,
        generation: int,
        watcher: Callable[[WatchedEvent], None],
        event: WatchedEvent,
    ) -> None:
        with self._lock:
            if generation != self._generation or self._state != SubscriptionState.WATCHING:
                logger.debug(
                    "Stale watch event ignored",
                    path=self._path,
                    event_type=str(event.type),
                )
                return

            try:
                children = self._client.watch_children(self._path, watcher)
            except Exception as e:
                # No watch is armed now; nothing may escape onto the callback thread
                self._state = SubscriptionState.DEAD
                logger.error(
                    "Children watch could not be re-armed",
                    path=self._path,
                    event_type=str(event.type),
                    error=repr(e),
                )
                return

            self._notifier.publish(self._parse_children(children))
