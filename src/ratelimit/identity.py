"""Client identity for bucket keys."""
import ipaddress
import logging
from typing import Optional, Sequence

from src.auth.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


class ClientIdentityResolver:
    """
    Derive the client identity from the forwarded-for header or the peer address.

    X-Forwarded-For is client controlled. It is only used when
    ``trust_forwarded_for`` is on and, if ``trusted_proxies`` is non-empty,
    the direct peer is one of those proxies. Otherwise the peer address wins.
    """

    def __init__(
        self,
        trust_forwarded_for: bool = False,
        trusted_proxies: Sequence[str] = (),
    ):
        self.trust_forwarded_for = trust_forwarded_for
        self._proxies = []
        for entry in trusted_proxies:
            try:
                self._proxies.append(ipaddress.ip_network(entry.strip(), strict=False))
            except ValueError:
                raise ConfigurationError(f"Invalid trusted proxy address: {entry!r}") from None

    @classmethod
    def from_settings(cls, settings) -> "ClientIdentityResolver":
        return cls(settings.trust_forwarded_for, settings.trusted_proxies)

    def resolve(self, forwarded_for: Optional[str], remote_addr: Optional[str]) -> str:
        """
        Args:
            forwarded_for: Raw X-Forwarded-For value ("client, proxy1, proxy2")
            remote_addr: Direct peer address

        Returns:
            The identity string used to key buckets
        """
        if forwarded_for and self.trust_forwarded_for and self._peer_trusted(remote_addr):
            client = forwarded_for.split(",")[0].strip()
            if client:
                logger.debug("Using X-Forwarded-For client %s", client)
                return client
        return remote_addr or UNKNOWN_CLIENT

    def _peer_trusted(self, remote_addr: Optional[str]) -> bool:
        if not self._proxies:
            return True
        if not remote_addr:
            return False
        try:
            peer = ipaddress.ip_address(remote_addr)
        except ValueError:
            return False
        return any(peer in network for network in self._proxies)
