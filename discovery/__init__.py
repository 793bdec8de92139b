"""Discovery Module

Reads this machine's established TCP connections and the processes behind them.

Submodules:
    - connection_source: psutil and lsof/ps socket-table adapters
    - process_grouper: Group processes by executable name
    - connection_tracker: Filter and de-duplicate a group's endpoints
"""

__all__ = [
    'connection_source',
    'process_grouper',
    'connection_tracker'
]
