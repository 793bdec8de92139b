"""Reverse DNS resolver with a success-only cache.

Lookups run on a small thread pool owned by the resolver, so a slow or
unreachable DNS server never ties up the threads the cycle driver uses for
discovery. Only successful lookups are cached; failures are retried on a
later cycle.

An IP counts as in flight until its lookup thread returns, even if the
cycle stopped waiting for it long before. Hung lookups therefore never pile
up behind one another.

Functions:
    - reverse_lookup: Blocking PTR lookup, None when no name exists
"""

import asyncio
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostnameResult:
    ip: str
    hostname: Optional[str]


def reverse_lookup(ip: str) -> Optional[str]:
    """Resolve an IP to its hostname.

    Args:
        ip: IPv4 or IPv6 address

    Returns:
        Hostname, or None if the address has no name
    """
    try:
        hostname, _, _ = socket.gethostbyaddr(ip)
    except (socket.herror, socket.gaierror, OSError):
        return None
    if not hostname or hostname == ip:
        return None
    return hostname


class HostnameResolver:
    """Background reverse lookups feeding an IP -> hostname cache."""

    def __init__(self, lookup: Callable[[str], Optional[str]] = reverse_lookup,
                 timeout: float = config.RESOLVE_TIMEOUT_S,
                 max_workers: int = config.RESOLVE_WORKERS):
        self.lookup = lookup
        self.timeout = timeout
        self.cache: Dict[str, str] = {}
        self._in_flight: Set[str] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="resolve"
        )

    def unresolved_ips(self, endpoints: Iterable) -> List[str]:
        """Distinct IPs that still need a lookup, in first-seen order."""
        ips = []
        for endpoint in endpoints:
            ip = endpoint.ip
            if endpoint.hostname or ip in self.cache or ip in self._in_flight or ip in ips:
                continue
            ips.append(ip)
        return ips

    def in_flight(self, ip: str) -> bool:
        return ip in self._in_flight

    def _submit(self, ip: str) -> asyncio.Future:
        self._in_flight.add(ip)
        lookup = self._executor.submit(self.lookup, ip)
        # runs on the worker thread, even if no loop is left to notify
        lookup.add_done_callback(lambda _f: self._in_flight.discard(ip))
        return asyncio.wrap_future(lookup)

    async def _wait(self, ip: str, future: asyncio.Future) -> HostnameResult:
        try:
            # the lookup keeps running after a timeout; _in_flight follows it
            hostname = await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Reverse lookup for {ip} timed out")
            hostname = None
        return HostnameResult(ip=ip, hostname=hostname)

    async def resolve(self, ip: str) -> HostnameResult:
        return await self._wait(ip, self._submit(ip))

    async def _wait_and_post(self, ip: str, future: asyncio.Future,
                             results: asyncio.Queue) -> None:
        result = await self._wait(ip, future)
        results.put_nowait(result)

    def launch(self, endpoints: Iterable, results: asyncio.Queue) -> List[asyncio.Task]:
        """Start one lookup per unresolved IP; results land on the queue."""
        tasks = []
        for ip in self.unresolved_ips(endpoints):
            future = self._submit(ip)
            tasks.append(asyncio.create_task(
                self._wait_and_post(ip, future, results),
                name=f"resolve-{ip}"
            ))
        return tasks

    def record(self, result: HostnameResult) -> bool:
        """Fold a finished lookup into the cache.

        Returns:
            True if a hostname was learned
        """
        if not result.hostname:
            return False
        self.cache[result.ip] = result.hostname
        logger.debug(f"Resolved {result.ip} -> {result.hostname}")
        return True

    def close(self) -> None:
        """Release the lookup threads; queued lookups are dropped."""
        self._executor.shutdown(wait=False, cancel_futures=True)
