"""Session state for one tracked process group.

Holds the live endpoints, both latency series, jitter scores and the
selection. Only the cycle driver calls the mutating methods; readers get an
immutable EngineSnapshot.

Every map is keyed by endpoint key and pruned in the same call that drops
an endpoint, so no key outlives its endpoint across a cycle boundary.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

import config
from discovery.connection_tracker import Endpoint
from discovery.process_grouper import ProcessGroup
from monitoring.jitter_tracker import JitterTracker, SelectionState, update_selection
from monitoring.latency_probe import ProbeKind, ProbeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only view of the engine, published once per cycle."""
    cycle: int = 0
    process_groups: Tuple[ProcessGroup, ...] = ()
    tracked_group: Optional[str] = None
    endpoints: Tuple[Endpoint, ...] = ()
    app_latency: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    deep_latency: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    jitter_scores: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    selected_key: Optional[str] = None
    manual_override: bool = False

    @property
    def selected_endpoint(self) -> Optional[Endpoint]:
        if self.selected_key is None:
            return None
        for endpoint in self.endpoints:
            if endpoint.key == self.selected_key:
                return endpoint
        return None

    @property
    def primary_latency(self) -> int:
        if self.selected_key is None:
            return config.PROBE_FAILED
        return self.app_latency.get(self.selected_key, config.PROBE_FAILED)

    @property
    def primary_deep_latency(self) -> int:
        if self.selected_key is None:
            return config.PROBE_FAILED
        return self.deep_latency.get(self.selected_key, config.PROBE_FAILED)

    @property
    def active_provider(self) -> str:
        endpoint = self.selected_endpoint
        if endpoint is None or not endpoint.provider.is_known:
            return ""
        return endpoint.provider.value

    @property
    def tracking_label(self) -> str:
        if self.manual_override:
            return f"Manual: {self.selected_key or ''}"
        return f"Auto-Tracking: {self.selected_key or '...'}"


class SessionState:
    """Mutable per-group state owned by the cycle driver."""

    def __init__(self, group: ProcessGroup):
        self.group_name = group.name
        self.pids: FrozenSet[int] = group.member_ids
        self.endpoints: Dict[str, Endpoint] = {}
        self.app_latency: Dict[str, int] = {}
        self.deep_latency: Dict[str, int] = {}
        self.jitter = JitterTracker()
        self.selection = SelectionState()

    @property
    def jitter_scores(self) -> Dict[str, int]:
        return self.jitter.scores

    def replace_endpoints(self, endpoints: Dict[str, Endpoint]) -> Set[str]:
        """Install this cycle's endpoint set and purge everything stale.

        Returns:
            Keys that were dropped
        """
        stale = set(self.endpoints) - set(endpoints)
        self.endpoints = dict(endpoints)

        live = self.endpoints.keys()
        for series in (self.app_latency, self.deep_latency):
            for key in [k for k in series if k not in live]:
                del series[key]
        self.jitter.prune(live)

        selected = self.selection.selected_key
        if selected is not None and selected not in live:
            logger.info(f"Selected endpoint {selected} went away")
            self.selection.selected_key = None
            self.selection.manual_override = False

        if stale:
            logger.debug(f"Pruned {len(stale)} stale endpoints: {sorted(stale)}")

        update_selection(self.selection, self.jitter.scores, self.endpoints)
        return stale

    def apply_probe(self, result: ProbeResult) -> bool:
        """Write one probe result. Results for pruned endpoints are dropped.

        Returns:
            True if the result was applied
        """
        if result.key not in self.endpoints:
            return False

        if result.kind is ProbeKind.DEEP:
            self.deep_latency[result.key] = result.ms
            return True

        self.app_latency[result.key] = result.ms
        self.jitter.record(result.key, result.ms)
        update_selection(self.selection, self.jitter.scores, self.endpoints)
        return True

    def apply_hostname(self, ip: str, hostname: str) -> List[str]:
        """Attach a resolved hostname to every endpoint on that IP.

        Provider is recomputed in the same step; latency series and jitter
        scores are untouched.

        Returns:
            Keys whose endpoint changed
        """
        changed = []
        for key, endpoint in self.endpoints.items():
            if endpoint.ip == ip and endpoint.hostname != hostname:
                self.endpoints[key] = endpoint.with_hostname(hostname)
                changed.append(key)

        if changed:
            update_selection(self.selection, self.jitter.scores, self.endpoints)
        return changed

    def update_group(self, group: ProcessGroup) -> None:
        self.pids = group.member_ids

    def set_manual_selection(self, key: str) -> bool:
        if key not in self.endpoints:
            return False
        self.selection.selected_key = key
        self.selection.manual_override = True
        return True

    def clear_manual_selection(self) -> None:
        self.selection.manual_override = False
        if self.jitter.score(self.selection.selected_key or "") <= 0:
            self.selection.selected_key = None
        update_selection(self.selection, self.jitter.scores, self.endpoints)

    def snapshot(self, cycle: int = 0,
                 process_groups: Tuple[ProcessGroup, ...] = ()) -> EngineSnapshot:
        return EngineSnapshot(
            cycle=cycle,
            process_groups=tuple(process_groups),
            tracked_group=self.group_name,
            endpoints=tuple(self.endpoints.values()),
            app_latency=MappingProxyType(dict(self.app_latency)),
            deep_latency=MappingProxyType(dict(self.deep_latency)),
            jitter_scores=MappingProxyType(dict(self.jitter.scores)),
            selected_key=self.selection.selected_key,
            manual_override=self.selection.manual_override,
        )
