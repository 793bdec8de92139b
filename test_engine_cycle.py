"""
Cycle-level tests for the latency engine.

Drives LatencyEngine with a fake connection source, scripted probes and a
dictionary-backed reverse lookup, so no real sockets or DNS are touched.

Run: python -m pytest test_engine_cycle.py -v
"""

import asyncio
import threading
import time
import unittest

import config
from discovery.connection_source import ConnectionSource
from monitoring.engine import EngineError, LatencyEngine
from monitoring.hostname_resolver import HostnameResolver, HostnameResult
from monitoring.latency_probe import LatencyProber, ProbeKind, ProbeResult
from monitoring.provider_database import ProviderTag

FEED = '34.200.1.1:7300'
OTHER = '10.0.0.5:9999'

HANG = object()
REFUSED = object()


class FakeSource(ConnectionSource):
    """In-memory socket table"""

    def __init__(self, processes, connections):
        self.processes = dict(processes)
        self.connections = list(connections)
        self.fail = False
        self.on_fetch = None

    def list_processes_with_established_connections(self):
        if self.fail:
            raise RuntimeError("socket table unavailable")
        return {pid for pid, _, _ in self.connections}

    def resolve_executable_names(self, pids):
        return {pid: self.processes[pid] for pid in pids if pid in self.processes}

    def list_established_connections(self, pids):
        if self.fail:
            raise RuntimeError("socket table unavailable")
        if self.on_fetch is not None:
            self.on_fetch()
        return [c for c in self.connections if c[0] in pids]


class ScriptedProbe:
    """Async probe that plays back per-endpoint values.

    The last scripted value repeats once the script runs out. HANG sleeps
    past any probe timeout, REFUSED raises ConnectionRefusedError.
    """

    def __init__(self, script=None, default=20, delay=0):
        self.script = {key: list(values) for key, values in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.calls = []

    async def __call__(self, ip, port):
        key = f"{ip}:{port}"
        self.calls.append(key)

        values = self.script.get(key)
        if values:
            value = values.pop(0) if len(values) > 1 else values[0]
        else:
            value = self.default

        if self.delay:
            await asyncio.sleep(self.delay)
        if value is HANG:
            await asyncio.sleep(10)
        if value is REFUSED:
            raise ConnectionRefusedError("connection refused")
        return value


def trader_source():
    return FakeSource(
        processes={1: 'Trader', 2: 'Trader', 9: 'Browser'},
        connections=[
            (1, '34.200.1.1', 7300),
            (2, '34.200.1.1', 7300),
            (1, '10.0.0.5', 9999),
            (1, '127.0.0.1', 8080),
            (9, '142.250.1.1', 443),
        ]
    )


def build_engine(source, app, deep, lookup, resolve_timeout=0.5, **kwargs):
    prober = LatencyProber(
        app_probe=app,
        deep_probe=deep,
        app_timeout=0.05,
        deep_timeout=0.05
    )
    resolver = HostnameResolver(lookup=lookup, timeout=resolve_timeout)
    kwargs.setdefault('interval', 0.02)
    return LatencyEngine(source=source, prober=prober, resolver=resolver, **kwargs)


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class wiring an engine to fakes"""

    def make_engine(self, source, app=None, deep=None, names=None, lookup=None, **kwargs):
        self.names = {} if names is None else names
        self.app_probe = app or ScriptedProbe()
        self.deep_probe = deep or ScriptedProbe(default=40)
        self.engine = build_engine(source, self.app_probe, self.deep_probe,
                                   lookup or self.names.get, **kwargs)
        return self.engine

    async def asyncTearDown(self):
        engine = getattr(self, 'engine', None)
        if engine is not None:
            engine.close()

    async def cycle(self, count=1):
        for _ in range(count):
            await self.engine.run_cycle()
            await self.engine.settle()
        return self.engine.snapshot()

    def track(self, source, name='Trader', **kwargs):
        engine = self.make_engine(source, **kwargs)
        engine.refresh_processes()
        self.assertTrue(engine.start_tracking(name))
        return engine


# ========== Discovery & Classification ==========

class TestEngineDiscovery(EngineTestCase):
    """Process groups, endpoint building and classification through the engine"""

    async def test_end_to_end_scenario(self):
        """Two PIDs sharing a feed plus a loopback socket give two endpoints"""
        self.track(trader_source())
        snapshot = await self.cycle()

        self.assertEqual([e.key for e in snapshot.endpoints], [FEED, OTHER])
        providers = {e.key: e.provider for e in snapshot.endpoints}
        self.assertEqual(providers[FEED], ProviderTag.DXFEED)
        self.assertEqual(providers[OTHER], ProviderTag.UNKNOWN)

        self.assertEqual(snapshot.app_latency[FEED], 20)
        self.assertEqual(snapshot.deep_latency[OTHER], 40)
        self.assertEqual(dict(snapshot.jitter_scores), {FEED: 0, OTHER: 0})
        self.assertIsNone(snapshot.selected_key)
        self.assertEqual(snapshot.tracking_label, 'Auto-Tracking: ...')

    async def test_process_groups_in_snapshot(self):
        engine = self.make_engine(trader_source())
        groups = engine.refresh_processes()

        self.assertEqual([g.name for g in groups], ['Browser', 'Trader'])
        self.assertEqual(engine.find_group('Trader').instance_count, 2)
        self.assertIsNone(engine.snapshot().tracked_group)

    async def test_start_tracking_unknown_group(self):
        engine = self.make_engine(trader_source())
        with self.assertLogs('monitoring.engine', level='WARNING'):
            self.assertFalse(engine.start_tracking('NoSuchApp'))
        self.assertIsNone(engine.session)

    async def test_discovery_failure_is_not_an_error(self):
        source = trader_source()
        source.fail = True
        engine = self.make_engine(source)

        self.assertEqual(engine.refresh_processes(), [])
        snapshot = await engine.run_cycle()
        self.assertEqual(snapshot.process_groups, ())

    async def test_connection_failure_means_no_endpoints(self):
        source = trader_source()
        self.track(source)
        await self.cycle()

        source.fail = True
        snapshot = await self.cycle()
        self.assertEqual(snapshot.endpoints, ())
        self.assertEqual(dict(snapshot.app_latency), {})

    async def test_process_refresh_picks_up_new_instances(self):
        source = trader_source()
        self.track(source, process_refresh_cycles=1)
        await self.cycle()

        source.processes[3] = 'Trader'
        source.connections.append((3, '38.79.0.10', 65000))
        snapshot = await self.cycle()

        self.assertIn('38.79.0.10:65000', [e.key for e in snapshot.endpoints])
        self.assertEqual(snapshot.process_groups[1].instance_count, 3)


# ========== Probing & Jitter ==========

class TestEngineProbing(EngineTestCase):
    """Probe results, timeouts and auto-selection across cycles"""

    async def test_timeouts_never_score(self):
        self.track(trader_source(),
                   app=ScriptedProbe(default=HANG),
                   deep=ScriptedProbe(default=REFUSED))
        snapshot = await self.cycle(2)

        self.assertEqual(snapshot.app_latency[FEED], config.PROBE_FAILED)
        self.assertEqual(snapshot.deep_latency[FEED], config.PROBE_FAILED)
        self.assertEqual(snapshot.jitter_scores.get(FEED, 0), 0)
        self.assertIsNone(snapshot.selected_key)
        self.assertEqual(snapshot.primary_latency, config.PROBE_FAILED)

    async def test_known_provider_wins_selection(self):
        app = ScriptedProbe({OTHER: [10, 12, 15], FEED: [30, 31]})
        self.track(trader_source(), app=app)

        snapshot = await self.cycle(3)

        self.assertEqual(snapshot.jitter_scores[OTHER], 2)
        self.assertEqual(snapshot.jitter_scores[FEED], 1)
        self.assertEqual(snapshot.selected_key, FEED)
        self.assertEqual(snapshot.active_provider, 'dxFeed')
        self.assertEqual(snapshot.primary_latency, 31)

    async def test_both_probes_run_every_cycle(self):
        self.track(trader_source())
        await self.cycle(2)

        self.assertEqual(sorted(self.app_probe.calls), sorted([FEED, OTHER] * 2))
        self.assertEqual(sorted(self.deep_probe.calls), sorted([FEED, OTHER] * 2))

    async def test_stale_endpoints_pruned(self):
        source = trader_source()
        self.track(source, app=ScriptedProbe({OTHER: [10, 12]}))
        await self.cycle(2)

        source.connections.remove((1, '10.0.0.5', 9999))
        snapshot = await self.cycle()

        live = {e.key for e in snapshot.endpoints}
        self.assertEqual(live, {FEED})
        for series in (snapshot.app_latency, snapshot.deep_latency, snapshot.jitter_scores):
            self.assertTrue(set(series) <= live)

    async def test_late_result_for_pruned_endpoint_dropped(self):
        source = trader_source()
        self.track(source, app=ScriptedProbe(delay=0.03))

        # probes from this cycle are still in flight when the next one starts
        await self.engine.run_cycle()
        source.connections.remove((1, '10.0.0.5', 9999))
        await self.engine.run_cycle()
        await self.engine.settle()

        self.engine._results.put_nowait(ProbeResult(ProbeKind.APP, OTHER, 99))
        self.engine.drain()

        snapshot = self.engine.snapshot()
        self.assertNotIn(OTHER, snapshot.app_latency)
        self.assertNotIn(OTHER, snapshot.jitter_scores)


# ========== Hostname Resolution ==========

class TestEngineResolution(EngineTestCase):
    """Reverse lookups landing mid-session"""

    async def test_hostname_reclassifies_endpoint(self):
        self.track(trader_source(), app=ScriptedProbe({OTHER: [20, 22]}))
        snapshot = await self.cycle()
        other = {e.key: e for e in snapshot.endpoints}[OTHER]
        self.assertEqual(other.provider, ProviderTag.UNKNOWN)

        self.names['10.0.0.5'] = 'gw.rithmic.com'
        snapshot = await self.cycle()

        other = {e.key: e for e in snapshot.endpoints}[OTHER]
        self.assertEqual(other.provider, ProviderTag.RITHMIC)
        self.assertEqual(other.display_name, 'gw.rithmic.com:9999')
        self.assertEqual(snapshot.jitter_scores[OTHER], 1)
        self.assertEqual(snapshot.app_latency[OTHER], 22)
        self.assertEqual(snapshot.selected_key, OTHER)

        # cached hostname carries into later cycles
        snapshot = await self.cycle()
        other = {e.key: e for e in snapshot.endpoints}[OTHER]
        self.assertEqual(other.provider, ProviderTag.RITHMIC)

    async def test_failed_lookup_retried(self):
        self.track(trader_source())
        await self.cycle()
        self.assertEqual(self.engine.resolver.cache, {})

        self.names['34.200.1.1'] = 'ec2-34-200-1-1.compute-1.amazonaws.com'
        await self.cycle()
        self.assertIn('34.200.1.1', self.engine.resolver.cache)
        self.assertNotIn('10.0.0.5', self.engine.resolver.cache)

    async def test_hung_lookups_do_not_stall_cycles(self):
        """A DNS server that never answers must not slow the driver down"""
        calls = []
        lock = threading.Lock()

        def hung_lookup(ip):
            with lock:
                calls.append(ip)
            time.sleep(0.5)
            return None

        ips = [f'10.1.0.{i}' for i in range(1, 41)]
        source = FakeSource(processes={1: 'Trader'},
                            connections=[(1, ip, 9000) for ip in ips])
        engine = self.track(source, lookup=hung_lookup, resolve_timeout=0.05, interval=0.05)

        loop = asyncio.get_running_loop()
        start = loop.time()
        await engine.run(cycles=6)
        elapsed = loop.time() - start

        self.assertLess(elapsed, 1.5)
        # one lookup per IP, bounded by the resolver's own pool
        self.assertEqual(len(calls), len(set(calls)))
        self.assertLessEqual(len(calls), config.RESOLVE_WORKERS)
        self.assertTrue(all(engine.resolver.in_flight(ip) for ip in ips))

    async def test_hostname_landing_during_fetch_applies_this_cycle(self):
        source = trader_source()
        engine = self.track(source)
        await self.cycle()

        loop = asyncio.get_running_loop()

        def lookup_finishes_mid_fetch():
            loop.call_soon_threadsafe(
                engine._results.put_nowait,
                HostnameResult('10.0.0.5', 'gw.rithmic.com')
            )

        source.on_fetch = lookup_finishes_mid_fetch
        snapshot = await engine.run_cycle()

        other = {e.key: e for e in snapshot.endpoints}[OTHER]
        self.assertEqual(other.hostname, 'gw.rithmic.com')
        self.assertEqual(other.provider, ProviderTag.RITHMIC)


# ========== Manual Selection ==========

class TestEngineManualSelection(EngineTestCase):
    """Operator overrides"""

    def setUp(self):
        self.script = {OTHER: [10, 12, 15, 17], FEED: [30, 31]}

    async def test_manual_selection_is_sticky(self):
        self.track(trader_source(), app=ScriptedProbe(self.script))
        snapshot = await self.cycle(2)
        self.assertEqual(snapshot.selected_key, FEED)

        self.assertTrue(self.engine.set_manual_selection(OTHER))
        snapshot = await self.cycle(2)

        self.assertEqual(snapshot.selected_key, OTHER)
        self.assertTrue(snapshot.manual_override)
        self.assertEqual(snapshot.tracking_label, f'Manual: {OTHER}')

    async def test_manual_selection_rejects_unknown_key(self):
        self.track(trader_source())
        await self.cycle()
        with self.assertLogs('monitoring.engine', level='WARNING'):
            self.assertFalse(self.engine.set_manual_selection('1.2.3.4:1'))

    async def test_clear_manual_selection_returns_to_auto(self):
        self.track(trader_source(), app=ScriptedProbe(self.script))
        await self.cycle(2)
        self.engine.set_manual_selection(OTHER)
        await self.cycle()

        self.engine.clear_manual_selection()
        snapshot = self.engine.snapshot()

        self.assertFalse(snapshot.manual_override)
        self.assertEqual(snapshot.selected_key, FEED)

    async def test_vanished_manual_endpoint_resets_override(self):
        source = trader_source()
        self.track(source, app=ScriptedProbe(self.script))
        await self.cycle(2)
        self.engine.set_manual_selection(OTHER)

        source.connections.remove((1, '10.0.0.5', 9999))
        snapshot = await self.cycle()

        self.assertFalse(snapshot.manual_override)
        self.assertEqual(snapshot.selected_key, FEED)


# ========== Run Loop & Subscribers ==========

class TestEngineRunLoop(EngineTestCase):
    """Fixed-interval driver and snapshot publishing"""

    async def test_run_publishes_one_snapshot_per_cycle(self):
        engine = self.track(trader_source(), interval=0.2)
        received = []
        unsubscribe = engine.subscribe(received.append)

        await engine.run(cycles=2)

        self.assertEqual([s.cycle for s in received], [1, 2])
        self.assertEqual(received[-1].app_latency[FEED], 20)

        unsubscribe()
        await engine.run(cycles=1)
        self.assertEqual(len(received), 2)

    async def test_failing_subscriber_does_not_stop_run(self):
        engine = self.track(trader_source())
        received = []

        def broken(snapshot):
            raise ValueError("display went away")

        engine.subscribe(broken)
        engine.subscribe(received.append)

        with self.assertLogs('monitoring.engine', level='ERROR'):
            await engine.run(cycles=2)
        self.assertEqual(len(received), 2)

    async def test_run_twice_raises(self):
        engine = self.track(trader_source(), interval=0.05)
        task = asyncio.create_task(engine.run())
        await asyncio.sleep(0)

        with self.assertRaises(EngineError):
            await engine.run(cycles=1)

        engine.stop()
        await asyncio.wait_for(task, timeout=2)
        self.assertFalse(engine._running)

    async def test_stop_tracking(self):
        engine = self.track(trader_source())
        await self.cycle()

        engine.stop_tracking()
        snapshot = engine.snapshot()

        self.assertIsNone(snapshot.tracked_group)
        self.assertEqual(snapshot.endpoints, ())
        self.assertEqual(len(snapshot.process_groups), 2)

    async def test_switching_groups_starts_fresh(self):
        engine = self.track(trader_source(), app=ScriptedProbe({FEED: [30, 31]}))
        await self.cycle(2)

        self.assertTrue(engine.start_tracking('Browser'))
        snapshot = await self.cycle()

        self.assertEqual(snapshot.tracked_group, 'Browser')
        self.assertEqual([e.key for e in snapshot.endpoints], ['142.250.1.1:443'])
        self.assertNotIn(FEED, snapshot.jitter_scores)


class TestEngineEventLoops(unittest.TestCase):
    """One engine driven by successive asyncio.run() calls"""

    def test_engine_runs_again_under_a_new_loop(self):
        engine = build_engine(trader_source(), ScriptedProbe(), ScriptedProbe(default=40),
                              {}.get, interval=0.1)
        self.addCleanup(engine.close)
        engine.refresh_processes()
        self.assertTrue(engine.start_tracking('Trader'))

        received = []
        engine.subscribe(received.append)

        asyncio.run(engine.run(cycles=2))
        asyncio.run(engine.run(cycles=2))

        self.assertEqual([s.cycle for s in received], [1, 2, 3, 4])
        self.assertEqual(received[-1].app_latency[FEED], 20)


# ========== Test Suite Configuration ==========

if __name__ == '__main__':
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()

    suite.addTests(loader.loadTestsFromTestCase(TestEngineDiscovery))
    suite.addTests(loader.loadTestsFromTestCase(TestEngineProbing))
    suite.addTests(loader.loadTestsFromTestCase(TestEngineResolution))
    suite.addTests(loader.loadTestsFromTestCase(TestEngineManualSelection))
    suite.addTests(loader.loadTestsFromTestCase(TestEngineRunLoop))
    suite.addTests(loader.loadTestsFromTestCase(TestEngineEventLoops))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    exit(0 if result.wasSuccessful() else 1)
