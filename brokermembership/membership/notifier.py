"""
Change notifier for membership snapshots.

Turns "children changed" callbacks into immutable snapshots delivered to
every registered handler. Deliveries are serialized; handlers run in
subscription order and a failing handler never stops the others.
"""

import threading
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional

from brokermembership.utils.logging import get_logger

logger = get_logger(__name__)

MembershipHandler = Callable[[str, FrozenSet[int]], None]


@dataclass(frozen=True)
class MembershipSnapshot:
    """
    Broker IDs registered under a parent path as of one observed instant.

    Attributes:
        parent_path: Path whose children were listed
        broker_ids: Registered broker IDs
        version: Delivery counter, increases by one per delivered snapshot
    """
    parent_path: str
    broker_ids: FrozenSet[int]
    version: int = 0

    def __contains__(self, broker_id: int) -> bool:
        return broker_id in self.broker_ids

    def __len__(self) -> int:
        return len(self.broker_ids)


class ChangeNotifier:
    """
    Single-writer, multi-reader dispatcher of membership snapshots.

    Only one publish() runs at a time. Handlers may be added or removed from
    any thread, including from inside a handler; the change applies from the
    next delivery on.
    """

    def __init__(self, parent_path: str):
        """
        Initialize change notifier.

        Args:
            parent_path: Path the delivered snapshots describe
        """
        self._parent_path = parent_path
        self._handlers: List[MembershipHandler] = []
        self._handlers_lock = threading.Lock()
        self._delivery_lock = threading.RLock()
        self._last: Optional[MembershipSnapshot] = None
        self._version = 0

    @property
    def last_snapshot(self) -> Optional[MembershipSnapshot]:
        return self._last

    def handler_count(self) -> int:
        with self._handlers_lock:
            return len(self._handlers)

    def add_handler(self, handler: MembershipHandler) -> bool:
        """
        Register a handler.

        Args:
            handler: Callable invoked as handler(parent_path, broker_ids)

        Returns:
            False if the handler was already registered
        """
        with self._handlers_lock:
            if handler in self._handlers:
                return False
            self._handlers.append(handler)
            return True

    def remove_handler(self, handler: MembershipHandler) -> bool:
        """
        Unregister a handler.

        Returns:
            True if the handler was registered
        """
        with self._handlers_lock:
            try:
                self._handlers.remove(handler)
            except ValueError:
                return False
            return True

    def prime(self, broker_ids: Iterable[int]) -> MembershipSnapshot:
        """
        Set the baseline snapshot without delivering it.

        Used when a watch is first armed: handlers hear about changes after
        subscribing, not about the state at subscription time.
        """
        with self._delivery_lock:
            self._last = MembershipSnapshot(
                parent_path=self._parent_path,
                broker_ids=frozenset(broker_ids),
                version=self._version,
            )
            return self._last

    def publish(self, broker_ids: Iterable[int]) -> Optional[MembershipSnapshot]:
        """
        Deliver a new snapshot to every handler.

        A snapshot identical to the previously delivered one is dropped.

        Args:
            broker_ids: Broker IDs currently registered

        Returns:
            The delivered snapshot, or None if it was a duplicate
        """
        with self._delivery_lock:
            ids = frozenset(broker_ids)

            if self._last is not None and self._last.broker_ids == ids:
                logger.debug(
                    "Duplicate membership snapshot dropped",
                    parent_path=self._parent_path,
                    broker_ids=sorted(ids),
                )
                return None

            self._version += 1
            snapshot = MembershipSnapshot(
                parent_path=self._parent_path,
                broker_ids=ids,
                version=self._version,
            )
            self._last = snapshot

            with self._handlers_lock:
                handlers = list(self._handlers)

            failures = 0
            for handler in handlers:
                try:
                    handler(snapshot.parent_path, snapshot.broker_ids)
                except Exception:
                    failures += 1
                    logger.exception(
                        "Membership handler failed",
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        version=snapshot.version,
                    )

            logger.info(
                "Membership change delivered",
                parent_path=snapshot.parent_path,
                broker_ids=sorted(ids),
                version=snapshot.version,
                handlers=len(handlers),
                failures=failures,
            )

            return snapshot
