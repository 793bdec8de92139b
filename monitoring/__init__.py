"""Latency Monitoring Module

Classification, probing and auto-tracking of a process group's endpoints.

Submodules:
    - provider_database: Endpoint to trading data provider signatures
    - hostname_resolver: Background reverse DNS with a success-only cache
    - latency_probe: Concurrent APP / DEEP TCP handshake probes
    - jitter_tracker: Jitter scores and primary endpoint selection
    - session_state: Per-group state and immutable snapshots
    - engine: Fixed-interval cycle driver
"""

__version__ = "1.0.0"
__all__ = [
    'provider_database',
    'hostname_resolver',
    'latency_probe',
    'jitter_tracker',
    'session_state',
    'engine'
]
