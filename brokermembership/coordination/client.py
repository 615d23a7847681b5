"""
Coordination client adapter.

Wraps a kazoo ZooKeeper client behind the small surface the membership
registry needs: ephemeral create, reads, child listing and one-shot child
watches. Transient failures are retried here with backoff; session loss is
surfaced as SessionExpired and stays sticky until the caller explicitly
reestablishes the session.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set, TypeVar

from kazoo.client import KazooClient
from kazoo.exceptions import (
    ConnectionClosedError,
    KazooException,
    NodeExistsError,
    NoNodeError,
    SessionExpiredError,
)
from kazoo.protocol.states import KazooState, WatchedEvent, ZnodeStat

from brokermembership.coordination.retry import (
    TRANSIENT_ERRORS,
    RetryConfig,
    RetryManager,
)
from brokermembership.errors import (
    CoordinationConnectionError,
    CoordinationRequestError,
    NodeAlreadyExists,
    NodeNotFound,
    SessionExpired,
)
from brokermembership.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

WatchCallback = Callable[[WatchedEvent], None]

# A node can vanish between a failed create and the owner lookup
MAX_CREATE_ATTEMPTS = 3


class CoordinationClient:
    """
    Session-aware adapter over a kazoo client.

    Every request is bounded by request_timeout_ms and retried on transient
    failures. Watch callbacks are invoked on kazoo's callback thread,
    concurrently with requests issued by the owning process.
    """

    def __init__(
        self,
        hosts: str = "localhost:2181",
        session_timeout_ms: int = 10000,
        connect_timeout_ms: int = 5000,
        request_timeout_ms: int = 5000,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize coordination client.

        Args:
            hosts: Comma-separated host:port list of the ensemble
            session_timeout_ms: Session timeout negotiated with the ensemble
            connect_timeout_ms: Per-attempt timeout for establishing a session
            request_timeout_ms: Per-attempt timeout for a single request
            retry_config: Backoff policy for transient failures
            client: Pre-built kazoo client (tests inject a fake here)
            sleep: Sleep function used between retries
        """
        self._hosts = hosts
        self._connect_timeout = connect_timeout_ms / 1000.0
        self._request_timeout = request_timeout_ms / 1000.0
        self._retry = RetryManager(retry_config, sleep=sleep)

        self._client = client or KazooClient(
            hosts=hosts,
            timeout=session_timeout_ms / 1000.0,
        )
        self._client.add_listener(self._on_state_change)

        self._lock = threading.Lock()
        self._session_expired = False
        self._session_generation = 0
        self._closed = False

        logger.info(
            "CoordinationClient initialized",
            hosts=hosts,
            session_timeout_ms=session_timeout_ms,
        )

    @classmethod
    def from_config(cls, config: Any, client: Optional[Any] = None) -> "CoordinationClient":
        """
        Build a client from the coordination section of a Config.

        Args:
            config: Config instance
            client: Optional pre-built kazoo client

        Returns:
            Coordination client (not yet connected)
        """
        return cls(
            hosts=config.get("coordination.hosts", "localhost:2181"),
            session_timeout_ms=config.get("coordination.session_timeout_ms", 10000),
            connect_timeout_ms=config.get("coordination.connect_timeout_ms", 5000),
            request_timeout_ms=config.get("coordination.request_timeout_ms", 5000),
            retry_config=RetryConfig.from_config(config),
            client=client,
        )

    @property
    def session_id(self) -> Optional[int]:
        """Current session ID, or None before the first connect."""
        client_id = self._client.client_id
        return client_id[0] if client_id else None

    @property
    def session_generation(self) -> int:
        """Incremented every time a session is (re)established through this adapter."""
        return self._session_generation

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    @property
    def session_expired(self) -> bool:
        return self._session_expired

    def connect(self, timeout: Optional[float] = None) -> None:
        """
        Establish a session with the coordination service.

        Args:
            timeout: Per-attempt timeout in seconds (defaults to connect_timeout_ms)

        Raises:
            CoordinationConnectionError: If all attempts fail or the client was closed
        """
        if self._closed:
            raise CoordinationConnectionError("Coordination client is closed")

        attempt_timeout = timeout if timeout is not None else self._connect_timeout

        try:
            self._retry.execute_with_retry(
                lambda: self._client.start(timeout=attempt_timeout),
                operation_name="Connect to coordination service",
            )
        except TRANSIENT_ERRORS as e:
            raise CoordinationConnectionError(
                f"Could not connect to coordination service at {self._hosts}"
            ) from e

        with self._lock:
            self._session_expired = False
            self._session_generation += 1

        logger.info(
            "Connected to coordination service",
            hosts=self._hosts,
            session_id=self.session_id,
            generation=self._session_generation,
        )

    def reestablish_session(self, timeout: Optional[float] = None) -> None:
        """
        Acknowledge a lost session and continue on a fresh one.

        Nothing registered under the old session survives; callers must
        register and subscribe again afterwards.
        """
        logger.info(
            "Reestablishing coordination session",
            previous_session_id=self.session_id,
        )
        self.connect(timeout=timeout)

    def close(self) -> None:
        """Close the session. Ephemeral nodes owned by it are removed by the service."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        self._client.remove_listener(self._on_state_change)
        self._client.stop()
        self._client.close()

        logger.info("Coordination client closed", hosts=self._hosts)

    def _on_state_change(self, state: str) -> None:
        # Runs on kazoo's connection thread and must not block
        if state == KazooState.LOST:
            with self._lock:
                self._session_expired = True
            logger.warning("Coordination session lost", hosts=self._hosts)
        elif state == KazooState.SUSPENDED:
            logger.warning("Coordination connection suspended", hosts=self._hosts)
        else:
            logger.info("Coordination connection state changed", state=str(state))

    def _check_session(self) -> None:
        if self._closed:
            raise CoordinationConnectionError("Coordination client is closed")
        if self._session_expired:
            raise SessionExpired(
                "Coordination session expired; reestablish the session and register again"
            )

    def _mark_expired(self) -> None:
        with self._lock:
            self._session_expired = True

    def _call(self, operation_name: str, operation: Callable[[], T]) -> T:
        """
        Run one request with session checks, retry and error translation.

        Args:
            operation_name: Name for logging
            operation: Callable issuing the kazoo request

        Returns:
            Result of the request

        Raises:
            NoNodeError: Passed through for callers to translate per operation
        """
        self._check_session()

        try:
            return self._retry.execute_with_retry(operation, operation_name=operation_name)
        except NoNodeError:
            raise
        except ConnectionClosedError as e:
            # subclass of SessionExpiredError in kazoo
            raise CoordinationConnectionError(f"{operation_name}: connection closed") from e
        except SessionExpiredError as e:
            self._mark_expired()
            raise SessionExpired(f"{operation_name}: coordination session expired") from e
        except TRANSIENT_ERRORS as e:
            raise CoordinationConnectionError(
                f"{operation_name}: coordination service unavailable"
            ) from e
        except KazooException as e:
            logger.error(
                f"{operation_name} rejected by coordination service",
                error=repr(e),
            )
            raise CoordinationRequestError(f"{operation_name}: {e!r}") from e

    def create_ephemeral(self, path: str, payload: bytes) -> None:
        """
        Create an ephemeral node owned by the current session.

        Missing parents are created as persistent nodes. When a create is
        retried after a transient disconnect and finds the node owned by this
        session with this payload, the interrupted attempt already succeeded
        and the call returns normally. Any other existing node is rejected,
        including one this session created earlier with the same or other data.

        Args:
            path: Node path
            payload: Node data

        Raises:
            NodeAlreadyExists: If the node exists and was not created by this call
            SessionExpired: If the session was lost
        """
        issued = False

        def create() -> None:
            nonlocal issued

            for _ in range(MAX_CREATE_ATTEMPTS):
                retried = issued
                issued = True
                try:
                    self._client.create_async(
                        path,
                        payload,
                        ephemeral=True,
                        makepath=True,
                    ).get(timeout=self._request_timeout)
                    return
                except NodeExistsError:
                    try:
                        data, stat = self._client.get_async(path).get(
                            timeout=self._request_timeout
                        )
                    except NoNodeError:
                        continue

                    if retried and stat.ephemeralOwner == self.session_id and data == payload:
                        logger.info(
                            "Ephemeral node from interrupted create already exists",
                            path=path,
                            session_id=self.session_id,
                        )
                        return

                    raise NodeAlreadyExists(path, owner_session_id=stat.ephemeralOwner)

            raise NodeAlreadyExists(path)

        self._call("Create ephemeral node", create)

        logger.debug("Ephemeral node created", path=path, session_id=self.session_id)

    def _stat(self, path: str) -> ZnodeStat:
        _, stat = self._client.get_async(path).get(timeout=self._request_timeout)
        return stat

    def get_owner(self, path: str) -> int:
        """
        Get the session ID owning an ephemeral node (0 for persistent nodes).

        Raises:
            NodeNotFound: If the node does not exist
        """
        try:
            stat = self._call("Read node owner", lambda: self._stat(path))
        except NoNodeError:
            raise NodeNotFound(path) from None
        return stat.ephemeralOwner

    def get_data(self, path: str) -> bytes:
        """
        Read a node's data.

        Raises:
            NodeNotFound: If the node does not exist
        """
        try:
            data, _ = self._call(
                "Read node",
                lambda: self._client.get_async(path).get(timeout=self._request_timeout),
            )
        except NoNodeError:
            raise NodeNotFound(path) from None
        return data

    def get_data_many(self, paths: Iterable[str], timeout: float) -> Dict[str, bytes]:
        """
        Read several nodes concurrently under one shared deadline.

        Nodes that vanished, failed transiently, or did not answer before
        the deadline are left out of the result.

        Args:
            paths: Node paths
            timeout: Total time budget in seconds

        Returns:
            Map of path to node data for every node read in time

        Raises:
            SessionExpired: If the session was lost
        """
        self._check_session()

        deadline = time.monotonic() + timeout
        pending = {path: self._client.get_async(path) for path in paths}
        results: Dict[str, bytes] = {}

        for path, async_result in pending.items():
            remaining = max(deadline - time.monotonic(), 0.0)
            try:
                data, _ = async_result.get(timeout=remaining)
            except NoNodeError:
                logger.debug("Node vanished during scan", path=path)
                continue
            except SessionExpiredError as e:
                self._mark_expired()
                raise SessionExpired("Scan: coordination session expired") from e
            except TRANSIENT_ERRORS + (KazooException,) as e:
                logger.warning("Node read skipped during scan", path=path, error=repr(e))
                continue

            results[path] = data

        return results

    def get_children(self, path: str) -> Set[str]:
        """
        List child names without setting a watch.

        Raises:
            NodeNotFound: If the parent does not exist
        """
        try:
            children = self._call(
                "List children",
                lambda: self._client.get_children_async(path).get(timeout=self._request_timeout),
            )
        except NoNodeError:
            raise NodeNotFound(path) from None
        return set(children)

    def watch_children(self, path: str, callback: WatchCallback) -> Set[str]:
        """
        Arm a one-shot children watch and return the children it was armed against.

        The listing and the watch registration are one server round trip, so
        any change after the returned listing fires the callback. The callback
        fires at most once; callers re-arm by calling this again.

        Args:
            path: Parent path
            callback: Invoked with the WatchedEvent on kazoo's callback thread

        Returns:
            Child names at the time the watch was armed

        Raises:
            NodeNotFound: If the parent does not exist
        """
        try:
            children = self._call(
                "Watch children",
                lambda: self._client.get_children_async(path, watch=callback).get(
                    timeout=self._request_timeout
                ),
            )
        except NoNodeError:
            raise NodeNotFound(path) from None
        return set(children)

    def ensure_path(self, path: str) -> None:
        """Create a persistent path (and parents) if missing."""
        self._call(
            "Ensure path",
            lambda: self._client.ensure_path_async(path).get(timeout=self._request_timeout),
        )

    def delete(self, path: str) -> None:
        """
        Delete a node.

        Raises:
            NodeNotFound: If the node does not exist
        """
        try:
            self._call(
                "Delete node",
                lambda: self._client.delete_async(path).get(timeout=self._request_timeout),
            )
        except NoNodeError:
            raise NodeNotFound(path) from None

    def wait_for_deletion(self, path: str, timeout: float) -> bool:
        """
        Block until a node is gone or the timeout passes.

        Args:
            path: Node path
            timeout: Maximum time to wait in seconds

        Returns:
            True if the node no longer exists
        """
        changed = threading.Event()

        def watcher(event: WatchedEvent) -> None:
            # any event consumes the watch; the loop re-checks and re-arms
            changed.set()

        deadline = time.monotonic() + timeout

        while True:
            stat = self._call(
                "Watch node",
                lambda: self._client.exists_async(path, watch=watcher).get(
                    timeout=self._request_timeout
                ),
            )
            if stat is None:
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0 or not changed.wait(remaining):
                return False

            changed.clear()
