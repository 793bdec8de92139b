"""Reports Module

Console presentation of engine snapshots.

Submodules:
    - console_view: tabulate/colorama tables for process groups and endpoints
"""

__all__ = [
    'console_view'
]
