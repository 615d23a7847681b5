"""
Broker registry for cluster membership.

Brokers register themselves as ephemeral entries under /brokers/ids, so an
entry lives exactly as long as the session that created it. Liveness is
inferred from entry existence; the registry runs no heartbeat of its own.
"""

import threading
from typing import Any, FrozenSet, Iterable, Optional, Set

from brokermembership.broker import codec
from brokermembership.broker.record import BrokerRecord
from brokermembership.coordination.client import CoordinationClient
from brokermembership.errors import (
    BrokerNotFound,
    DuplicateBrokerId,
    MalformedRecord,
    MembershipError,
    NodeAlreadyExists,
    NodeNotFound,
)
from brokermembership.membership.notifier import ChangeNotifier, MembershipHandler
from brokermembership.membership.subscription import (
    ChildrenSubscription,
    SubscriptionState,
)
from brokermembership.utils.logging import get_logger

logger = get_logger(__name__)

BROKER_IDS_PATH = "/brokers/ids"


def broker_path(broker_id: int) -> str:
    """Registry entry path for a broker ID."""
    return f"{BROKER_IDS_PATH}/{broker_id}"


def parse_broker_ids(children: Iterable[str]) -> FrozenSet[int]:
    """
    Convert child names under /brokers/ids to broker IDs.

    Names that are not canonical positive integers are skipped.
    """
    broker_ids = set()
    for child in children:
        if child.isdigit() and child == str(int(child)) and int(child) > 0:
            broker_ids.add(int(child))
        else:
            logger.warning(
                "Ignoring unexpected child under broker ids path",
                path=BROKER_IDS_PATH,
                child=child,
            )
    return frozenset(broker_ids)


class MembershipRegistry:
    """
    Registry for broker cluster membership.

    Manages:
    - Self-registration as an ephemeral entry
    - Uncached lookups of one or all live brokers
    - Membership change subscriptions
    """

    def __init__(
        self,
        client: CoordinationClient,
        scan_timeout_ms: int = 5000,
        stale_session_wait_ms: int = 10000,
    ):
        """
        Initialize membership registry.

        Args:
            client: Connected coordination client
            scan_timeout_ms: Total time budget for get_all_brokers reads
            stale_session_wait_ms: How long register waits for a stale entry
                left by this broker's previous session to expire
        """
        self._client = client
        self._scan_timeout = scan_timeout_ms / 1000.0
        self._stale_session_wait = stale_session_wait_ms / 1000.0

        self._lock = threading.RLock()
        self._registered: Optional[BrokerRecord] = None
        self._registered_generation = 0

        self._notifier = ChangeNotifier(BROKER_IDS_PATH)
        self._subscription = ChildrenSubscription(
            client,
            BROKER_IDS_PATH,
            self._notifier,
            parse_broker_ids,
        )

        logger.info(
            "MembershipRegistry initialized",
            path=BROKER_IDS_PATH,
            scan_timeout_ms=scan_timeout_ms,
        )

    @classmethod
    def from_config(cls, config: Any, kazoo_client: Optional[Any] = None) -> "MembershipRegistry":
        """
        Build a registry and its coordination client from a Config.

        The coordination client is connected before returning.

        Args:
            config: Config instance
            kazoo_client: Optional pre-built kazoo client

        Returns:
            Membership registry
        """
        client = CoordinationClient.from_config(config, client=kazoo_client)
        client.connect()

        return cls(
            client,
            scan_timeout_ms=config.get("registry.scan_timeout_ms", 5000),
            stale_session_wait_ms=config.get("registry.stale_session_wait_ms", 10000),
        )

    @property
    def client(self) -> CoordinationClient:
        return self._client

    @property
    def registered_broker(self) -> Optional[BrokerRecord]:
        """This process's registered record, or None if not registered on the current session."""
        with self._lock:
            if self._registered_generation != self._client.session_generation:
                return None
            return self._registered

    @property
    def subscription_state(self) -> SubscriptionState:
        return self._subscription.state

    def register(self, record: BrokerRecord) -> None:
        """
        Register a broker as an ephemeral entry.

        The entry is never overwritten: a broker ID already registered, even
        by this session, must be deregistered before it can be registered again.

        Args:
            record: Broker record to publish

        Raises:
            DuplicateBrokerId: If a live session, this one included, owns the broker ID
            SessionExpired: If the coordination session was lost
            CoordinationConnectionError: If the coordination service is unreachable
        """
        path = broker_path(record.broker_id)
        payload = codec.encode(record)

        try:
            self._client.create_ephemeral(path, payload)
        except NodeAlreadyExists as e:
            own_session = e.owner_session_id == self._client.session_id
            if own_session or not self._wait_out_stale_registration(record, path, payload):
                logger.error(
                    "Broker ID already registered",
                    broker_id=record.broker_id,
                    owner_session_id=e.owner_session_id,
                )
                raise DuplicateBrokerId(record.broker_id) from e

            try:
                self._client.create_ephemeral(path, payload)
            except NodeAlreadyExists as retry_error:
                raise DuplicateBrokerId(record.broker_id) from retry_error

        with self._lock:
            self._registered = record
            self._registered_generation = self._client.session_generation

        logger.info(
            "Broker registered",
            broker_id=record.broker_id,
            endpoint=record.endpoint(),
            session_id=self._client.session_id,
        )

    def _wait_out_stale_registration(
        self,
        record: BrokerRecord,
        path: str,
        payload: bytes,
    ) -> bool:
        """
        Decide whether an existing entry is this broker's own expiring session.

        An entry carrying exactly our payload was written by a previous
        incarnation of this broker (two live brokers cannot serve the same
        host:port). Its session is waited out; anything else is a duplicate.

        Returns:
            True if the path is free to create again
        """
        if self._stale_session_wait <= 0:
            return False

        try:
            existing = self._client.get_data(path)
        except NodeNotFound:
            return True

        if existing != payload:
            return False

        logger.warning(
            "Waiting for stale registration from a previous session to expire",
            broker_id=record.broker_id,
            wait_ms=int(self._stale_session_wait * 1000),
        )

        return self._client.wait_for_deletion(path, self._stale_session_wait)

    def deregister(self) -> bool:
        """
        Remove this process's registry entry (graceful shutdown).

        The entry is only deleted while still owned by the current session.

        Returns:
            True if an entry was deleted
        """
        with self._lock:
            record = self._registered
            self._registered = None

        if record is None:
            return False

        path = broker_path(record.broker_id)

        try:
            owner = self._client.get_owner(path)
            if owner != self._client.session_id:
                logger.warning(
                    "Registry entry no longer owned by this session",
                    broker_id=record.broker_id,
                    owner_session_id=owner,
                )
                return False

            self._client.delete(path)
        except NodeNotFound:
            logger.info("Registry entry already gone", broker_id=record.broker_id)
            return False

        logger.info("Broker deregistered", broker_id=record.broker_id)
        return True

    def get_broker(self, broker_id: int) -> BrokerRecord:
        """
        Read one broker's record from the coordination service.

        Args:
            broker_id: Broker ID

        Returns:
            Broker record

        Raises:
            BrokerNotFound: If no live broker has this ID
            MalformedRecord: If the stored payload cannot be decoded
        """
        try:
            payload = self._client.get_data(broker_path(broker_id))
        except NodeNotFound:
            raise BrokerNotFound(broker_id) from None

        record = codec.decode(payload)
        if record.broker_id != broker_id:
            raise MalformedRecord(
                f"Entry for broker {broker_id} carries broker ID {record.broker_id}"
            )

        return record

    def get_broker_ids(self) -> Set[int]:
        """
        List the IDs of all live brokers.

        Returns:
            Registered broker IDs (empty if no broker ever registered)
        """
        try:
            children = self._client.get_children(BROKER_IDS_PATH)
        except NodeNotFound:
            return set()

        return set(parse_broker_ids(children))

    def get_all_brokers(self) -> Set[BrokerRecord]:
        """
        Read every live broker's record.

        Best-effort snapshot: entries that disappear mid-scan, do not answer
        within the scan budget, or cannot be decoded are left out.

        Returns:
            Set of broker records
        """
        broker_ids = self.get_broker_ids()
        paths = {broker_path(broker_id): broker_id for broker_id in broker_ids}

        payloads = self._client.get_data_many(paths.keys(), timeout=self._scan_timeout)

        brokers: Set[BrokerRecord] = set()
        for path, payload in payloads.items():
            try:
                record = codec.decode(payload)
            except MalformedRecord as e:
                logger.warning("Skipping malformed broker record", path=path, error=str(e))
                continue

            if record.broker_id != paths[path]:
                logger.warning(
                    "Skipping broker record with mismatched ID",
                    path=path,
                    record_broker_id=record.broker_id,
                )
                continue

            brokers.add(record)

        if len(brokers) < len(broker_ids):
            logger.info(
                "Partial broker scan",
                listed=len(broker_ids),
                returned=len(brokers),
            )

        return brokers

    def subscribe(self, handler: MembershipHandler) -> None:
        """
        Invoke handler(parent_path, broker_ids) on every membership change.

        The handler is not called for the membership at subscription time.
        Calling subscribe again after the subscription went DEAD re-arms it.

        Args:
            handler: Membership change handler

        Raises:
            SessionExpired: If the coordination session was lost
            CoordinationConnectionError: If the watch could not be armed
        """
        self._client.ensure_path(BROKER_IDS_PATH)

        added = self._notifier.add_handler(handler)
        try:
            self._subscription.start()
        except MembershipError:
            if added:
                self._notifier.remove_handler(handler)
            raise

        logger.info(
            "Membership handler subscribed",
            handlers=self._notifier.handler_count(),
            state=self._subscription.state.value,
        )

    def unsubscribe(self, handler: MembershipHandler) -> bool:
        """
        Stop delivering membership changes to a handler.

        The watch is dropped once no handler remains.

        Returns:
            True if the handler was subscribed
        """
        removed = self._notifier.remove_handler(handler)

        if removed and self._notifier.handler_count() == 0:
            self._subscription.stop()

        return removed

    def close(self) -> None:
        """Stop the subscription, deregister and close the coordination session."""
        self._subscription.stop()

        try:
            self.deregister()
        except MembershipError as e:
            # The session is closed next; the service drops the entry anyway
            logger.warning("Deregistration failed during close", error=repr(e))

        self._client.close()
