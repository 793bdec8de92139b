"""Console rendering of engine snapshots.

Turns an EngineSnapshot into coloured grid tables for a terminal. Pure
presentation: nothing here feeds back into the engine.

Functions:
    - latency_status: GOOD / FAIR / POOR / DOWN for a sample
    - colorize_latency: Coloured "NN ms" or "---"
    - colorize_provider: Provider tag in its brand colour
    - render_process_groups: Table of process groups
    - render_snapshot: Headline + endpoint table for the tracked group
"""

from typing import Iterable

from colorama import Fore, Style
from tabulate import tabulate

import config
from discovery.process_grouper import ProcessGroup
from monitoring.provider_database import ProviderTag
from monitoring.session_state import EngineSnapshot

PROVIDER_COLORS = {
    ProviderTag.RITHMIC: Fore.YELLOW,
    ProviderTag.DXFEED: Fore.BLUE,
    ProviderTag.CQG: Fore.GREEN,
    ProviderTag.TRADOVATE: Fore.MAGENTA,
}

STATUS_COLORS = {
    "GOOD": Fore.GREEN,
    "FAIR": Fore.YELLOW,
    "POOR": Fore.RED,
    "DOWN": Fore.RED,
}


def latency_status(ms: int) -> str:
    """Bucket a latency sample.

    Args:
        ms: Milliseconds, or PROBE_FAILED

    Returns:
        "DOWN", "GOOD" (< 50 ms), "FAIR" (< 100 ms) or "POOR"
    """
    if ms == config.PROBE_FAILED:
        return "DOWN"
    if ms < config.LATENCY_GOOD_MS:
        return "GOOD"
    if ms < config.LATENCY_FAIR_MS:
        return "FAIR"
    return "POOR"


def format_latency(ms: int) -> str:
    return "---" if ms == config.PROBE_FAILED else f"{ms} ms"


def colorize_latency(ms: int) -> str:
    color = STATUS_COLORS[latency_status(ms)]
    return f"{color}{format_latency(ms)}{Style.RESET_ALL}"


def colorize_provider(provider: ProviderTag) -> str:
    if not provider.is_known:
        return ""
    return f"{PROVIDER_COLORS[provider]}{provider.value}{Style.RESET_ALL}"


def render_process_groups(groups: Iterable[ProcessGroup]) -> str:
    table = [
        [i + 1, g.name, g.instance_count]
        for i, g in enumerate(groups)
    ]
    if not table:
        return "No processes with established TCP connections."
    return tabulate(table, headers=["#", "Process", "Instances"], tablefmt="grid")


def render_snapshot(snapshot: EngineSnapshot) -> str:
    """Render the headline latencies and the endpoint table."""
    if snapshot.tracked_group is None:
        return render_process_groups(snapshot.process_groups)

    lines = []
    lines.append(f"{Style.BRIGHT}{snapshot.tracked_group}{Style.RESET_ALL}  (cycle {snapshot.cycle})")

    app = snapshot.primary_latency
    deep = snapshot.primary_deep_latency
    lines.append(f"APP (TCP): {colorize_latency(app)}    DEEP (TCP): {colorize_latency(deep)}")

    label_color = Fore.CYAN if snapshot.manual_override else Fore.YELLOW
    provider = snapshot.active_provider
    headline = f"{label_color}{snapshot.tracking_label}{Style.RESET_ALL}"
    if provider:
        headline = f"{provider}  {headline}"
    lines.append(headline)
    lines.append("")

    if not snapshot.endpoints:
        lines.append("No active connections...")
        return "\n".join(lines)

    table = []
    for endpoint in snapshot.endpoints:
        key = endpoint.key
        marker = "*" if key == snapshot.selected_key else ""
        deep_ms = snapshot.deep_latency.get(key)
        table.append([
            marker,
            endpoint.display_name,
            colorize_provider(endpoint.provider),
            colorize_latency(snapshot.app_latency.get(key, config.PROBE_FAILED)),
            "" if deep_ms is None else ("T/O" if deep_ms == config.PROBE_FAILED else f"{deep_ms} ms"),
            snapshot.jitter_scores.get(key, 0),
        ])

    lines.append(tabulate(
        table,
        headers=["", "Endpoint", "Provider", "App", "Deep", "Jitter"],
        tablefmt="grid"
    ))
    return "\n".join(lines)
