"""Latency probe engine.

Measures two independent TCP handshake times per endpoint each cycle:

    APP  - asyncio stream connect, the path the trading application sees
    DEEP - a fresh raw non-blocking socket connected directly by the event
           loop, bypassing stream/proxy helpers, so it reflects the real
           end-to-end route even behind a VPN or tunnel

Probes never touch shared state. Each one posts a ProbeResult onto the
results queue and the cycle driver applies it. A probe that misses its
deadline is cancelled and reported as PROBE_FAILED.
"""

import asyncio
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, List

import config

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[str, int], Awaitable[int]]


class ProbeKind(str, Enum):
    APP = "app"
    DEEP = "deep"


@dataclass(frozen=True)
class ProbeResult:
    kind: ProbeKind
    key: str
    ms: int

    @property
    def failed(self) -> bool:
        return self.ms == config.PROBE_FAILED


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


async def tcp_connect_ms(ip: str, port: int) -> int:
    """Time an asyncio stream connection to ip:port.

    Raises:
        OSError: connection refused, unreachable, reset...
    """
    start = time.perf_counter()
    _reader, writer = await asyncio.open_connection(ip, port)
    duration = _elapsed_ms(start)
    writer.close()
    return duration


async def raw_connect_ms(ip: str, port: int) -> int:
    """Time a connect() on a brand new socket owned by this probe.

    Raises:
        OSError: connection refused, unreachable, reset...
    """
    address = ip.split('%', 1)[0]
    try:
        family = socket.AF_INET6 if ipaddress.ip_address(address).version == 6 else socket.AF_INET
    except ValueError:
        family = socket.AF_INET

    loop = asyncio.get_running_loop()
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setblocking(False)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        start = time.perf_counter()
        await loop.sock_connect(sock, (ip, port))
        return _elapsed_ms(start)
    finally:
        sock.close()


async def run_probe(probe: ProbeFunc, ip: str, port: int, timeout: float) -> int:
    """Run one probe under a hard deadline.

    Returns:
        Milliseconds to connection-established, or PROBE_FAILED
    """
    try:
        return await asyncio.wait_for(probe(ip, port), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug(f"[{ip}:{port}] probe timed out after {timeout * 1000:.0f}ms")
    except OSError as e:
        logger.debug(f"[{ip}:{port}] probe failed: {e}")
    return config.PROBE_FAILED


class LatencyProber:
    """Launches the APP and DEEP probes for a set of endpoints."""

    def __init__(self, app_probe: ProbeFunc = tcp_connect_ms,
                 deep_probe: ProbeFunc = raw_connect_ms,
                 app_timeout: float = config.APP_PROBE_TIMEOUT_S,
                 deep_timeout: float = config.DEEP_PROBE_TIMEOUT_S):
        self.probes = {
            ProbeKind.APP: (app_probe, app_timeout),
            ProbeKind.DEEP: (deep_probe, deep_timeout),
        }

    async def _probe_and_post(self, kind: ProbeKind, endpoint,
                              results: asyncio.Queue) -> None:
        probe, timeout = self.probes[kind]
        ms = await run_probe(probe, endpoint.ip, endpoint.port, timeout)
        results.put_nowait(ProbeResult(kind=kind, key=endpoint.key, ms=ms))

    def launch(self, endpoints: Iterable, results: asyncio.Queue) -> List[asyncio.Task]:
        """Start both probes for every endpoint, all concurrently.

        Args:
            endpoints: Endpoints to measure
            results: Queue that receives one ProbeResult per probe

        Returns:
            The launched tasks (not awaited)
        """
        tasks = []
        for endpoint in endpoints:
            for kind in (ProbeKind.APP, ProbeKind.DEEP):
                tasks.append(asyncio.create_task(
                    self._probe_and_post(kind, endpoint, results),
                    name=f"probe-{kind.value}-{endpoint.key}"
                ))
        return tasks
