"""
Error taxonomy for the membership registry.

Transient coordination failures are retried inside the coordination client;
everything below reaches the registry's caller.
"""

from typing import Optional


class MembershipError(Exception):
    """Base class for all registry errors."""
    pass


class CoordinationConnectionError(MembershipError, ConnectionError):
    """Coordination service unreachable after all retries."""
    pass


class CoordinationRequestError(MembershipError):
    """The coordination service rejected a request (auth, ACL, bad arguments)."""
    pass


class SessionExpired(MembershipError):
    """
    The coordination session was lost.

    Ephemeral entries owned by the session are already gone server-side.
    The caller must reestablish the session and register again.
    """
    pass


class NodeAlreadyExists(MembershipError):
    """A node exists at the path and is owned by another session."""

    def __init__(self, path: str, owner_session_id: Optional[int] = None):
        super().__init__(f"Node already exists: {path}")
        self.path = path
        self.owner_session_id = owner_session_id


class NodeNotFound(MembershipError):
    """No node exists at the path."""

    def __init__(self, path: str):
        super().__init__(f"Node not found: {path}")
        self.path = path


class DuplicateBrokerId(MembershipError):
    """A live session already registered this broker ID."""

    def __init__(self, broker_id: int):
        super().__init__(f"Broker ID {broker_id} is already registered by a live session")
        self.broker_id = broker_id


class BrokerNotFound(MembershipError, LookupError):
    """No live broker is registered under this ID."""

    def __init__(self, broker_id: int):
        super().__init__(f"Broker {broker_id} is not registered")
        self.broker_id = broker_id


class MalformedRecord(MembershipError, ValueError):
    """A registry payload could not be decoded into a broker record."""
    pass
