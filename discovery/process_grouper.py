"""Process grouper.

Collapses OS processes into user-facing groups keyed by executable name,
so that every helper process of a trading application is tracked together.

Functions:
    - group_processes: Build groups from (pid, executable name) records
    - filter_groups: Case-insensitive name search over groups
    - discover_process_groups: Query a connection source and group the result
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Tuple

try:
    from discovery.connection_source import ConnectionSource, executable_base_name
except ModuleNotFoundError:
    from connection_source import ConnectionSource, executable_base_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessGroup:
    """All processes sharing one executable base name."""
    name: str
    member_ids: FrozenSet[int]

    @property
    def instance_count(self) -> int:
        return len(self.member_ids)


def group_processes(raw_records: Iterable[Tuple[int, str]]) -> List[ProcessGroup]:
    """Group process records by exact executable base name.

    Args:
        raw_records: (pid, executable name or path) pairs

    Returns:
        Groups sorted by case-insensitive name
    """
    by_name = defaultdict(set)

    for pid, executable in raw_records:
        name = executable_base_name(executable or "")
        if name:
            by_name[name].add(pid)

    groups = [
        ProcessGroup(name=name, member_ids=frozenset(pids))
        for name, pids in by_name.items()
    ]
    groups.sort(key=lambda g: (g.name.lower(), g.name))
    return groups


def filter_groups(groups: Iterable[ProcessGroup], search_text: str) -> List[ProcessGroup]:
    """Keep groups whose name contains search_text (case-insensitive).

    An empty search returns every group.
    """
    needle = (search_text or "").strip().lower()
    if not needle:
        return list(groups)
    return [g for g in groups if needle in g.name.lower()]


def discover_process_groups(source: ConnectionSource) -> List[ProcessGroup]:
    """Group every process that currently holds an established TCP connection."""
    pids = source.list_processes_with_established_connections()
    if not pids:
        return []

    names = source.resolve_executable_names(pids)
    groups = group_processes(names.items())
    logger.debug(f"Discovered {len(groups)} process groups from {len(pids)} PIDs")
    return groups
