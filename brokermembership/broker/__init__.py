"""Broker identity records and their registry wire format."""

from brokermembership.broker.codec import decode, encode
from brokermembership.broker.record import BrokerRecord

__all__ = ["BrokerRecord", "decode", "encode"]
