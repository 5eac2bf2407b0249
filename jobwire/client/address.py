"""
Broker address parsing.
"""

from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

from jobwire.constants import DEFAULT_BROKER_PORT

SCHEME_TCP = "tcp"
SCHEME_TLS = "tcp+tls"


@dataclass(frozen=True)
class BrokerAddress:
    """
    Where the broker listens and how to reach it.

    URLs look like `tcp://:password@broker.example.com:7419`; use the
    `tcp+tls` scheme for TLS connections.
    """

    host: str = "localhost"
    port: int = DEFAULT_BROKER_PORT
    tls: bool = False
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_url(cls, url: str) -> "BrokerAddress":
        """
        Parse a broker URL.

        Args:
            url: The broker URL.

        Returns:
            BrokerAddress: The parsed address.

        Raises:
            ValueError: If the scheme is not supported.
        """
        parts = urlsplit(url)
        if parts.scheme not in (SCHEME_TCP, SCHEME_TLS):
            raise ValueError(f"Unsupported broker URL scheme: {parts.scheme!r}")

        return cls(
            host=parts.hostname or "localhost",
            port=parts.port or DEFAULT_BROKER_PORT,
            tls=parts.scheme == SCHEME_TLS,
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
        )

    def __str__(self) -> str:
        scheme = SCHEME_TLS if self.tls else SCHEME_TCP
        return f"{scheme}://{self.host}:{self.port}"
