"""
Configuration constants for the latency monitor.
"""

# --- Cycle Driver ---
CYCLE_INTERVAL_S = 1.0
PROCESS_REFRESH_CYCLES = 10 # Rebuild process groups every N cycles

# --- Latency Probes ---
APP_PROBE_TIMEOUT_S = 0.5
DEEP_PROBE_TIMEOUT_S = 1.0
PROBE_FAILED = -1 # Sentinel for a failed or timed out probe

# --- Hostname Resolution ---
RESOLVE_TIMEOUT_S = 2.0
RESOLVE_WORKERS = 4 # Lookup threads, separate from discovery

# --- Discovery ---
DISCOVERY_TIMEOUT_S = 10 # Timeout for lsof/ps invocations

# --- Display Thresholds ---
LATENCY_GOOD_MS = 50
LATENCY_FAIR_MS = 100
