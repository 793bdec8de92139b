"""Connection tracker.

Turns raw (pid, ip, port) socket records for one process group into the
de-duplicated set of remote endpoints that should exist this cycle.

Functions:
    - is_loopback: True for 127.0.0.0/8, ::1 and their IPv4-mapped forms
    - endpoint_key: Canonical "ip:port" join key
    - build_endpoints: Filter, de-duplicate and enrich raw records
    - merge_hostnames: Apply late reverse lookups to built endpoints
"""

import ipaddress
import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from discovery.connection_source import ConnectionSource
from monitoring.provider_database import ProviderTag, classify

logger = logging.getLogger(__name__)


def endpoint_key(ip: str, port: int) -> str:
    return f"{ip}:{port}"


def is_loopback(ip: str) -> bool:
    """Check whether an address is a loopback address.

    Args:
        ip: IPv4 or IPv6 address, optionally with a zone suffix ("fe80::1%en0")

    Returns:
        True for 127.0.0.0/8, ::1 and ::ffff:127.x.x.x
    """
    address = ip.split('%', 1)[0]
    try:
        ip_obj = ipaddress.ip_address(address)
    except ValueError:
        return address.startswith("127.")

    if ip_obj.is_loopback:
        return True
    mapped = getattr(ip_obj, "ipv4_mapped", None)
    return bool(mapped and mapped.is_loopback)


@dataclass(frozen=True)
class Endpoint:
    """A remote ip:port observed as an established outbound connection.

    Frozen so that hostname and provider always change together: use
    with_hostname() to get the updated endpoint.
    """
    ip: str
    port: int
    hostname: Optional[str] = None
    provider: ProviderTag = ProviderTag.UNKNOWN

    @property
    def key(self) -> str:
        return endpoint_key(self.ip, self.port)

    @property
    def display_name(self) -> str:
        if self.hostname:
            return f"{self.hostname}:{self.port}"
        return self.key

    def with_hostname(self, hostname: Optional[str]) -> "Endpoint":
        updated = replace(self, hostname=hostname)
        return replace(updated, provider=classify(updated))

    @classmethod
    def create(cls, ip: str, port: int, hostname: Optional[str] = None) -> "Endpoint":
        return cls(ip=ip, port=port).with_hostname(hostname)


def build_endpoints(raw_connections: Iterable[Tuple[int, str, int]],
                    known: Optional[Mapping[str, Endpoint]] = None,
                    hostname_cache: Optional[Mapping[str, str]] = None) -> Dict[str, Endpoint]:
    """Filter, de-duplicate and enrich raw connection records.

    Args:
        raw_connections: (pid, remote_ip, remote_port) records
        known: Endpoints tracked last cycle, keyed by "ip:port"
        hostname_cache: Successful reverse lookups, keyed by IP

    Returns:
        Ordered dict of endpoint key -> Endpoint, first occurrence wins
    """
    known = known or {}
    hostname_cache = hostname_cache or {}
    endpoints: Dict[str, Endpoint] = {}

    for _pid, ip, port in raw_connections:
        if is_loopback(ip):
            continue

        key = endpoint_key(ip, port)
        if key in endpoints:
            continue

        previous = known.get(key)
        hostname = hostname_cache.get(ip) or (previous.hostname if previous else None)

        if previous is not None and previous.hostname == hostname:
            endpoints[key] = previous
        else:
            endpoints[key] = Endpoint.create(ip, port, hostname)

    return endpoints


def merge_hostnames(endpoints: Mapping[str, Endpoint],
                    hostname_cache: Mapping[str, str]) -> Dict[str, Endpoint]:
    """Attach cached hostnames that arrived after the endpoints were built."""
    merged = {}
    for key, endpoint in endpoints.items():
        hostname = hostname_cache.get(endpoint.ip)
        if hostname and hostname != endpoint.hostname:
            endpoint = endpoint.with_hostname(hostname)
        merged[key] = endpoint
    return merged


class ConnectionTracker:
    """Maintains the live endpoint set for the tracked process group."""

    def __init__(self, source: ConnectionSource):
        self.source = source

    def fetch(self, group_pids: Iterable[int]) -> List[Tuple[int, str, int]]:
        pids = set(group_pids)
        if not pids:
            return []
        try:
            return list(self.source.list_established_connections(pids))
        except Exception as e:
            logger.warning(f"Connection source failed, treating as idle: {e}")
            return []

    def refresh(self, group_pids: Iterable[int],
                known: Optional[Mapping[str, Endpoint]] = None,
                hostname_cache: Optional[Mapping[str, str]] = None) -> Dict[str, Endpoint]:
        """Return exactly the endpoints that should exist this cycle.

        Anything in `known` that is missing from the result is stale.
        """
        raw = self.fetch(group_pids)
        endpoints = build_endpoints(raw, known, hostname_cache)
        logger.debug(f"{len(raw)} raw connections -> {len(endpoints)} endpoints")
        return endpoints
