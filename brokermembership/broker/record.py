"""
Broker identity and reachability record.

A BrokerRecord is built once at broker startup and is never mutated
afterwards; changing metadata means registering a new record.
"""

import socket
from dataclasses import dataclass
from typing import Any, Optional

from brokermembership.utils.logging import get_logger

logger = get_logger(__name__)

BASE_PORT = 9092
MAX_PORT = 65535


@dataclass(frozen=True)
class BrokerRecord:
    """
    A live broker's reachability info.

    Attributes:
        broker_id: Operator-assigned positive broker ID
        host: Hostname or IP other brokers connect to
        port: Port the broker serves on
    """
    broker_id: int
    host: str
    port: int

    def __post_init__(self):
        # bool is an int subclass; True is not a broker id
        if isinstance(self.broker_id, bool) or not isinstance(self.broker_id, int):
            raise TypeError(f"broker_id must be an int, got {type(self.broker_id).__name__}")
        if self.broker_id <= 0:
            raise ValueError(f"broker_id must be positive, got {self.broker_id}")
        if not isinstance(self.host, str) or not self.host:
            raise ValueError("host must be a non-empty string")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise TypeError(f"port must be an int, got {type(self.port).__name__}")
        if not 0 < self.port <= MAX_PORT:
            raise ValueError(f"port must be in 1..{MAX_PORT}, got {self.port}")

    def endpoint(self) -> str:
        """
        Get broker endpoint.

        Returns:
            Endpoint string (host:port)
        """
        return f"{self.host}:{self.port}"

    @classmethod
    def from_config(cls, config: Any) -> "BrokerRecord":
        """
        Build the local broker's record from configuration.

        Args:
            config: Config providing broker.id and optionally broker.host/broker.port

        Returns:
            Broker record for this process

        Raises:
            ValueError: If broker.id is not configured
        """
        broker_id = config.get("broker.id")
        if broker_id is None:
            raise ValueError("broker.id is not configured")

        broker_id = int(broker_id)
        host: Optional[str] = config.get("broker.host")
        port = config.get("broker.port")

        record = cls(
            broker_id=broker_id,
            host=host or get_local_ip(),
            port=int(port) if port is not None else BASE_PORT + broker_id,
        )

        logger.debug(
            "Built local broker record",
            broker_id=record.broker_id,
            endpoint=record.endpoint(),
        )

        return record


def get_local_ip() -> str:
    """
    Get local IP address.

    Returns:
        IP address string
    """
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # UDP connect sends nothing; it only selects the outbound interface
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"
