"""
Broker client module.
Contains the protocol client and the connection pool.
"""

from jobwire.client.address import BrokerAddress
from jobwire.client.connection import ProtocolClient
from jobwire.client.pool import ConnectionPool

__all__ = [
    "BrokerAddress",
    "ProtocolClient",
    "ConnectionPool",
]
