"""Latency engine: the fixed-interval cycle driver.

One cycle:
    1. rebuild process groups (every PROCESS_REFRESH_CYCLES cycles)
    2. fetch connections for the tracked group's PIDs
    3. filter / de-duplicate / classify, purge stale keys
    4. launch APP + DEEP probes for every endpoint
    5. launch reverse lookups for unresolved IPs
    6. apply probe and lookup results as they arrive, until the next tick
    7. publish a snapshot to subscribers

The driver is the only writer. Probes and lookups run as asyncio tasks and
report back through a queue; late results from the previous cycle are
applied in this cycle if their endpoint is still live.

Usage:
    engine = LatencyEngine()
    engine.refresh_processes()
    engine.start_tracking("NinjaTrader.exe")
    engine.subscribe(print)
    asyncio.run(engine.run())
"""

import asyncio
import logging
from typing import Callable, List, Optional, Set

import config
from discovery.connection_source import ConnectionSource, PsutilConnectionSource
from discovery.connection_tracker import ConnectionTracker, merge_hostnames
from discovery.process_grouper import ProcessGroup, discover_process_groups
from monitoring.hostname_resolver import HostnameResolver, HostnameResult
from monitoring.latency_probe import LatencyProber, ProbeResult
from monitoring.session_state import EngineSnapshot, SessionState

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[EngineSnapshot], None]


class EngineError(Exception):
    """Raised when the engine is driven incorrectly."""


class LatencyEngine:
    """Discovers, classifies, probes and auto-tracks a process group's endpoints."""

    def __init__(self, source: Optional[ConnectionSource] = None,
                 prober: Optional[LatencyProber] = None,
                 resolver: Optional[HostnameResolver] = None,
                 interval: float = config.CYCLE_INTERVAL_S,
                 process_refresh_cycles: int = config.PROCESS_REFRESH_CYCLES):
        """Initialize the engine.

        Args:
            source: Socket-table / process-list collaborator (psutil if None)
            prober: Latency prober (real TCP probes if None)
            resolver: Hostname resolver (socket.gethostbyaddr if None)
            interval: Seconds between cycles
            process_refresh_cycles: Rebuild process groups every N cycles
        """
        self.source = source or PsutilConnectionSource()
        self.tracker = ConnectionTracker(self.source)
        self.prober = prober or LatencyProber()
        self.resolver = resolver or HostnameResolver()
        self.interval = interval
        self.process_refresh_cycles = max(1, process_refresh_cycles)

        self.process_groups: List[ProcessGroup] = []
        self.session: Optional[SessionState] = None
        self.cycle = 0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._results: asyncio.Queue = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._subscribers: List[SnapshotCallback] = []
        self._running = False
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Commands from the presentation layer
    # ------------------------------------------------------------------

    def _discover_groups(self) -> List[ProcessGroup]:
        try:
            return discover_process_groups(self.source)
        except Exception as e:
            logger.warning(f"Process discovery failed: {e}")
            return []

    def refresh_processes(self) -> List[ProcessGroup]:
        """Rebuild process groups now (blocking)."""
        self._install_groups(self._discover_groups())
        return self.process_groups

    def find_group(self, name: str) -> Optional[ProcessGroup]:
        for group in self.process_groups:
            if group.name == name:
                return group
        return None

    def start_tracking(self, group_name: str) -> bool:
        """Begin a fresh session for the named process group.

        Returns:
            False if no such group is currently known
        """
        group = self.find_group(group_name)
        if group is None:
            self.refresh_processes()
            group = self.find_group(group_name)
        if group is None:
            logger.warning(f"No process group named {group_name!r}")
            return False

        self._cancel_tasks()
        self.session = SessionState(group)
        logger.info(f"Tracking {group.name} ({group.instance_count} instances)")
        return True

    def stop_tracking(self) -> None:
        if self.session is not None:
            logger.info(f"Stopped tracking {self.session.group_name}")
        self._cancel_tasks()
        self.session = None

    def set_manual_selection(self, key: str) -> bool:
        """Pin an endpoint as primary until cleared or it goes away."""
        if self.session is None or not self.session.set_manual_selection(key):
            logger.warning(f"Cannot select {key!r}: not a live endpoint")
            return False
        logger.info(f"Manual selection: {key}")
        return True

    def clear_manual_selection(self) -> None:
        if self.session is not None:
            self.session.clear_manual_selection()
            logger.info("Manual selection cleared, back to auto-tracking")

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register for one snapshot per cycle.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> EngineSnapshot:
        groups = tuple(self.process_groups)
        if self.session is None:
            return EngineSnapshot(cycle=self.cycle, process_groups=groups)
        return self.session.snapshot(cycle=self.cycle, process_groups=groups)

    def stop(self) -> None:
        self._stop_requested = True

    def close(self) -> None:
        """Stop tracking and release the resolver threads."""
        self.stop_tracking()
        self.resolver.close()

    # ------------------------------------------------------------------
    # Cycle driver
    # ------------------------------------------------------------------

    def _install_groups(self, groups: List[ProcessGroup]) -> None:
        self.process_groups = list(groups)
        if self.session is not None:
            group = self.find_group(self.session.group_name)
            if group is not None:
                self.session.update_group(group)

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        """Give each event loop its own results queue.

        A queue is tied to the loop that first waits on it, so an engine
        driven by a second asyncio.run() starts from a fresh queue. Tasks
        and results from the old loop are abandoned.
        """
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            if self._loop is not None:
                logger.debug("Event loop changed, resetting results queue")
            self._loop = loop
            self._results = asyncio.Queue()
            self._tasks.clear()
        return loop

    def _spawn(self, tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        # results meant for the old session; keep what the cache can use
        while not self._results.empty():
            message = self._results.get_nowait()
            if isinstance(message, HostnameResult):
                self.resolver.record(message)

    def _apply(self, message) -> None:
        if isinstance(message, HostnameResult):
            if self.resolver.record(message) and self.session is not None:
                self.session.apply_hostname(message.ip, message.hostname)
        elif isinstance(message, ProbeResult):
            if self.session is not None:
                self.session.apply_probe(message)

    def drain(self) -> int:
        """Apply every queued result without waiting."""
        applied = 0
        while not self._results.empty():
            self._apply(self._results.get_nowait())
            applied += 1
        return applied

    async def _apply_until(self, deadline: float) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_requested:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                message = await asyncio.wait_for(self._results.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            self._apply(message)

    async def settle(self) -> None:
        """Wait for every outstanding probe and lookup, then apply results."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.drain()

    async def run_cycle(self) -> EngineSnapshot:
        """Run steps 1-5 of one cycle and return the resulting snapshot."""
        loop = self._bind_loop()
        self.cycle += 1

        if (self.cycle - 1) % self.process_refresh_cycles == 0:
            groups = await loop.run_in_executor(None, self._discover_groups)
            self._install_groups(groups)

        session = self.session
        if session is None:
            return self.snapshot()

        endpoints = await loop.run_in_executor(
            None, self.tracker.refresh,
            set(session.pids), dict(session.endpoints), dict(self.resolver.cache)
        )
        if session is not self.session:
            # tracking changed while we were fetching
            return self.snapshot()

        # apply anything that landed before the new endpoint set; lookups
        # that finished during the fetch are missing from `endpoints`
        self.drain()
        session.replace_endpoints(merge_hostnames(endpoints, self.resolver.cache))

        live = list(session.endpoints.values())
        self._spawn(self.prober.launch(live, self._results))
        self._spawn(self.resolver.launch(live, self._results))

        logger.debug(f"Cycle {self.cycle}: {len(live)} endpoints, "
                     f"selected={session.selection.selected_key}")
        return self.snapshot()

    def publish(self, snapshot: Optional[EngineSnapshot] = None) -> EngineSnapshot:
        snapshot = snapshot or self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")
        return snapshot

    async def run(self, cycles: Optional[int] = None) -> None:
        """Drive cycles at a fixed interval until stop() or `cycles` ticks.

        Raises:
            EngineError: the engine is already running
        """
        if self._running:
            raise EngineError("engine is already running")

        self._running = True
        self._stop_requested = False
        loop = self._bind_loop()
        ticks = 0

        try:
            while not self._stop_requested:
                deadline = loop.time() + self.interval
                await self.run_cycle()
                await self._apply_until(deadline)
                self.publish()

                ticks += 1
                if cycles is not None and ticks >= cycles:
                    break
        finally:
            self._cancel_tasks()
            self._running = False
