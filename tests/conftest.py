"""
Shared fixtures.

FakeEnsemble is an in-memory stand-in for a ZooKeeper ensemble that speaks
the subset of the kazoo client API the coordination adapter uses: sessions,
persistent and ephemeral nodes, one-shot child and exists watches, and
session expiry. It raises the real kazoo exception types. Watches fire
synchronously on the thread that made the change.
"""

import itertools
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple, Type

import pytest
from kazoo.exceptions import (
    ConnectionLoss,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    SessionExpiredError,
)
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import (
    EventType,
    KazooState,
    KeeperState,
    WatchedEvent,
    ZnodeStat,
)

from brokermembership.coordination.client import CoordinationClient
from brokermembership.coordination.retry import RetryConfig
from brokermembership.membership.registry import MembershipRegistry
from brokermembership.utils.config import reset_config


class FakeAsyncResult:
    """Already-completed kazoo IAsyncResult."""

    def __init__(self, value=None, exception: Optional[Exception] = None):
        self._value = value
        self._exception = exception

    def get(self, block: bool = True, timeout: Optional[float] = None):
        if self._exception is not None:
            raise self._exception
        return self._value


@dataclass
class FakeNode:
    data: bytes
    ephemeral_owner: int = 0
    version: int = 0
    ctime: int = 0


Watch = Tuple["FakeKazooClient", Callable]


def _parent(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


class FakeEnsemble:
    """In-memory ZooKeeper ensemble shared by several fake clients."""

    def __init__(self):
        self._lock = threading.RLock()
        self._nodes: Dict[str, FakeNode] = {"/": FakeNode(data=b"")}
        self._child_watches: Dict[str, List[Watch]] = {}
        self._exists_watches: Dict[str, List[Watch]] = {}
        self._session_ids = itertools.count(0x1000)
        self._sessions: Dict[int, "FakeKazooClient"] = {}

        # failure injection
        self.refuse_connections = 0
        self.drop_create_responses = 0
        self.fail_requests = 0
        self.fail_child_listings = 0
        self.child_listing_error: Type[Exception] = ConnectionLoss
        self.stalled_paths: Set[str] = set()

    def client(self) -> "FakeKazooClient":
        return FakeKazooClient(self)

    def open_session(self, client: "FakeKazooClient") -> int:
        with self._lock:
            session_id = next(self._session_ids)
            self._sessions[session_id] = client
            return session_id

    def expire_session(self, client) -> None:
        """
        Expire a session as the ensemble would after a timeout.

        Accepts a FakeKazooClient or the CoordinationClient wrapping one.
        """
        client = getattr(client, "_client", client)
        own_watches = self._detach_watches(client)
        fired = self._end_session(client)
        client._session_lost(own_watches)
        self._fire(fired)

    def _detach_watches(self, client: "FakeKazooClient") -> List[Watch]:
        with self._lock:
            detached = []
            for table in (self._child_watches, self._exists_watches):
                for watches in table.values():
                    detached.extend(w for w in watches if w[0] is client)
                    watches[:] = [w for w in watches if w[0] is not client]
            return detached

    def _end_session(self, client: "FakeKazooClient") -> List[Tuple[Watch, WatchedEvent]]:
        with self._lock:
            session_id = client._session_id
            self._sessions.pop(session_id, None)

            fired: List[Tuple[Watch, WatchedEvent]] = []
            owned = [
                path for path, node in self._nodes.items()
                if node.ephemeral_owner == session_id
            ]
            for path in owned:
                fired.extend(self._remove(path))
            return fired

    def _fire(self, fired: List[Tuple[Watch, WatchedEvent]]) -> None:
        for (_, callback), event in fired:
            callback(event)

    def _take_watches(
        self,
        table: Dict[str, List[Watch]],
        path: str,
        event_type: str,
    ) -> List[Tuple[Watch, WatchedEvent]]:
        watches = table.pop(path, [])
        event = WatchedEvent(event_type, KeeperState.CONNECTED, path)
        return [(watch, event) for watch in watches]

    def _add_watch(self, table: Dict[str, List[Watch]], path: str, watch: Watch) -> None:
        watches = table.setdefault(path, [])
        if watch not in watches:
            watches.append(watch)

    def _remove(self, path: str) -> List[Tuple[Watch, WatchedEvent]]:
        del self._nodes[path]
        fired = self._take_watches(self._exists_watches, path, EventType.DELETED)
        fired += self._take_watches(self._child_watches, path, EventType.DELETED)
        fired += self._take_watches(self._child_watches, _parent(path), EventType.CHILD)
        return fired

    def _insert(self, path: str, data: bytes, owner: int) -> List[Tuple[Watch, WatchedEvent]]:
        self._nodes[path] = FakeNode(
            data=data,
            ephemeral_owner=owner,
            ctime=int(time.time() * 1000),
        )
        fired = self._take_watches(self._exists_watches, path, EventType.CREATED)
        fired += self._take_watches(self._child_watches, _parent(path), EventType.CHILD)
        return fired

    def _children(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/"
        return sorted(
            p[len(prefix):] for p in self._nodes
            if p.startswith(prefix) and "/" not in p[len(prefix):] and p != "/"
        )

    def _stat(self, path: str) -> ZnodeStat:
        node = self._nodes[path]
        return ZnodeStat(
            czxid=0,
            mzxid=0,
            ctime=node.ctime,
            mtime=node.ctime,
            version=node.version,
            cversion=0,
            aversion=0,
            ephemeralOwner=node.ephemeral_owner,
            dataLength=len(node.data),
            numChildren=len(self._children(path)),
            pzxid=0,
        )

    def _injected_failure(self) -> Optional[Exception]:
        if self.fail_requests > 0:
            self.fail_requests -= 1
            return ConnectionLoss()
        return None

    def create(self, client, path, data, ephemeral, makepath) -> FakeAsyncResult:
        with self._lock:
            if failure := self._injected_failure():
                return FakeAsyncResult(exception=failure)
            if path in self._nodes:
                return FakeAsyncResult(exception=NodeExistsError())

            fired = []
            parent = _parent(path)
            if parent not in self._nodes:
                if not makepath:
                    return FakeAsyncResult(exception=NoNodeError())
                fired += self._ensure(parent)

            fired += self._insert(path, data, client._session_id if ephemeral else 0)

            lose_response = self.drop_create_responses > 0
            if lose_response:
                self.drop_create_responses -= 1

        self._fire(fired)

        if lose_response:
            return FakeAsyncResult(exception=ConnectionLoss())
        return FakeAsyncResult(path)

    def _ensure(self, path: str) -> List[Tuple[Watch, WatchedEvent]]:
        fired = []
        if path in self._nodes:
            return fired
        parent = _parent(path)
        if parent not in self._nodes:
            fired += self._ensure(parent)
        fired += self._insert(path, b"", 0)
        return fired

    def ensure_path(self, path) -> FakeAsyncResult:
        with self._lock:
            if failure := self._injected_failure():
                return FakeAsyncResult(exception=failure)
            fired = self._ensure(path)
        self._fire(fired)
        return FakeAsyncResult(True)

    def get(self, client, path, watch) -> FakeAsyncResult:
        with self._lock:
            if path in self.stalled_paths:
                return FakeAsyncResult(exception=KazooTimeoutError("Value not received"))
            if failure := self._injected_failure():
                return FakeAsyncResult(exception=failure)
            if path not in self._nodes:
                return FakeAsyncResult(exception=NoNodeError())
            if watch is not None:
                self._add_watch(self._exists_watches, path, (client, watch))
            return FakeAsyncResult((self._nodes[path].data, self._stat(path)))

    def exists(self, client, path, watch) -> FakeAsyncResult:
        with self._lock:
            if failure := self._injected_failure():
                return FakeAsyncResult(exception=failure)
            if watch is not None:
                self._add_watch(self._exists_watches, path, (client, watch))
            if path not in self._nodes:
                return FakeAsyncResult(None)
            return FakeAsyncResult(self._stat(path))

    def get_children(self, client, path, watch) -> FakeAsyncResult:
        with self._lock:
            if self.fail_child_listings > 0:
                self.fail_child_listings -= 1
                return FakeAsyncResult(exception=self.child_listing_error())
            if failure := self._injected_failure():
                return FakeAsyncResult(exception=failure)
            if path not in self._nodes:
                return FakeAsyncResult(exception=NoNodeError())
            if watch is not None:
                self._add_watch(self._child_watches, path, (client, watch))
            return FakeAsyncResult(self._children(path))

    def delete(self, path) -> FakeAsyncResult:
        with self._lock:
            if failure := self._injected_failure():
                return FakeAsyncResult(exception=failure)
            if path not in self._nodes:
                return FakeAsyncResult(exception=NoNodeError())
            if self._children(path):
                return FakeAsyncResult(exception=NotEmptyError())
            fired = self._remove(path)
        self._fire(fired)
        return FakeAsyncResult(True)

    def set_data(self, path: str, data: bytes) -> None:
        """Overwrite a node's payload directly (corruption, foreign writers)."""
        with self._lock:
            node = self._nodes[path]
            node.data = data
            node.version += 1
            fired = self._take_watches(self._exists_watches, path, EventType.CHANGED)
        self._fire(fired)

    def node_exists(self, path: str) -> bool:
        with self._lock:
            return path in self._nodes


class FakeKazooClient:
    """Kazoo-compatible client bound to a FakeEnsemble."""

    def __init__(self, ensemble: FakeEnsemble):
        self._ensemble = ensemble
        self._session_id: Optional[int] = None
        self._listeners: List[Callable] = []
        self.start_calls = 0

    @property
    def client_id(self):
        if self._session_id is None:
            return None
        return (self._session_id, b"password")

    @property
    def connected(self) -> bool:
        return self._session_id is not None

    def add_listener(self, listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        self._listeners.remove(listener)

    def _notify(self, state: str) -> None:
        for listener in list(self._listeners):
            listener(state)

    def start(self, timeout: float = 15) -> None:
        self.start_calls += 1
        if self._ensemble.refuse_connections > 0:
            self._ensemble.refuse_connections -= 1
            raise KazooTimeoutError("Connection time-out")
        if self._session_id is not None:
            return
        self._session_id = self._ensemble.open_session(self)
        self._notify(KazooState.CONNECTED)

    def stop(self) -> None:
        if self._session_id is None:
            return
        self._ensemble._detach_watches(self)
        fired = self._ensemble._end_session(self)
        self._session_id = None
        self._notify(KazooState.LOST)
        self._ensemble._fire(fired)

    def close(self) -> None:
        pass

    def _session_lost(self, watches: List[Watch]) -> None:
        self._session_id = None
        self._notify(KazooState.LOST)
        event = WatchedEvent(EventType.NONE, KeeperState.EXPIRED_SESSION, None)
        for _, callback in watches:
            callback(event)

    def _require_session(self) -> Optional[FakeAsyncResult]:
        if self._session_id is None:
            return FakeAsyncResult(exception=SessionExpiredError())
        return None

    def create_async(self, path, value=b"", acl=None, ephemeral=False, sequence=False,
                     makepath=False, include_data=False):
        return self._require_session() or self._ensemble.create(
            self, path, value, ephemeral, makepath
        )

    def get_async(self, path, watch=None):
        return self._require_session() or self._ensemble.get(self, path, watch)

    def exists_async(self, path, watch=None):
        return self._require_session() or self._ensemble.exists(self, path, watch)

    def get_children_async(self, path, watch=None, include_data=False):
        return self._require_session() or self._ensemble.get_children(self, path, watch)

    def ensure_path_async(self, path, acl=None):
        return self._require_session() or self._ensemble.ensure_path(path)

    def delete_async(self, path, version=-1):
        return self._require_session() or self._ensemble.delete(path)


FAST_RETRY = RetryConfig(
    max_retries=3,
    retry_backoff_ms=1,
    retry_backoff_max_ms=2,
    retry_jitter_ms=0,
)


@pytest.fixture
def ensemble():
    """Create an empty in-memory ensemble."""
    return FakeEnsemble()


@pytest.fixture
def make_client(ensemble):
    """Factory for connected coordination clients, one session each."""
    clients = []

    def factory(connect: bool = True, **kwargs) -> CoordinationClient:
        kwargs.setdefault("retry_config", FAST_RETRY)
        kwargs.setdefault("sleep", lambda seconds: None)
        client = CoordinationClient(client=ensemble.client(), **kwargs)
        if connect:
            client.connect()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.close()


@pytest.fixture
def make_registry(make_client):
    """Factory for registries, each on its own coordination session."""

    def factory(**kwargs) -> MembershipRegistry:
        kwargs.setdefault("stale_session_wait_ms", 0)
        return MembershipRegistry(make_client(), **kwargs)

    return factory


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Keep the global config and environment overrides out of tests."""
    for var in ("BROKER_ID", "BROKER_HOST", "BROKER_PORT", "ZOOKEEPER_HOSTS", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()
