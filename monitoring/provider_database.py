"""Trading data provider signature database.

Maps an endpoint's hostname, port and IP to the market-data vendor that
most likely serves it. Used to tell the feed connection of a trading
platform apart from its telemetry, update and licensing traffic.

Signatures are checked in a fixed priority order and the first match
wins, so an endpoint that fits several vendors always gets the same tag:

    1. Rithmic    - rithmic.com hosts, R|Protocol gateway ports
    2. dxFeed     - dxfeed.com / AWS hosts, port 7300, dxFeed address blocks
    3. CQG        - cqg.com hosts, port 2823
    4. Tradovate  - tradovate.com hosts
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderTag(str, Enum):
    RITHMIC = "Rithmic"
    DXFEED = "dxFeed"
    CQG = "CQG"
    TRADOVATE = "Tradovate"
    UNKNOWN = "Unknown"

    @property
    def is_known(self) -> bool:
        return self is not ProviderTag.UNKNOWN


# Ordered by priority. Any one field matching is enough.
PROVIDER_SIGNATURES: List[Dict[str, Any]] = [
    {
        "provider": ProviderTag.RITHMIC,
        "domains": ["rithmic.com"],
        "ports": {65000, 64100, 63100, 56000, 55555, 44444},
        "port_ranges": [(40000, 42100)],
        "ip_prefixes": [],
    },
    {
        "provider": ProviderTag.DXFEED,
        "domains": ["dxfeed.com", "amazonaws.com"],
        "ports": {7300},
        "port_ranges": [],
        "ip_prefixes": ["208.93.100.", "208.93.101.", "208.93.102."],
    },
    {
        "provider": ProviderTag.CQG,
        "domains": ["cqg.com"],
        "ports": {2823},
        "port_ranges": [],
        "ip_prefixes": [],
    },
    {
        "provider": ProviderTag.TRADOVATE,
        "domains": ["tradovate.com"],
        "ports": set(),
        "port_ranges": [],
        "ip_prefixes": [],
    },
]


def matches_signature(signature: Dict[str, Any], ip: str, port: int,
                      hostname: Optional[str] = None) -> bool:
    host = (hostname or "").lower()

    if host and any(domain in host for domain in signature["domains"]):
        return True

    if port in signature["ports"]:
        return True

    if any(low <= port <= high for low, high in signature["port_ranges"]):
        return True

    return any(ip.startswith(prefix) for prefix in signature["ip_prefixes"])


def classify_signature(ip: str, port: int, hostname: Optional[str] = None) -> ProviderTag:
    """Classify a raw (ip, port, hostname) triple.

    Args:
        ip: Remote IP address
        port: Remote port
        hostname: Reverse-resolved hostname, if known

    Returns:
        First matching ProviderTag, or ProviderTag.UNKNOWN
    """
    for signature in PROVIDER_SIGNATURES:
        if matches_signature(signature, ip, port, hostname):
            return signature["provider"]
    return ProviderTag.UNKNOWN


def classify(endpoint) -> ProviderTag:
    """Classify an endpoint (anything with ip, port and hostname attributes)."""
    return classify_signature(endpoint.ip, endpoint.port, endpoint.hostname)


# ============================================================================
# Simple CLI test
# ============================================================================

if __name__ == "__main__":
    print("Provider Signature Database")
    print("=" * 60)
    print()

    test_endpoints = [
        ("38.79.0.10", 65000, None),
        ("34.200.1.1", 443, "ec2-34-200-1-1.compute-1.amazonaws.com"),
        ("208.93.101.7", 443, None),
        ("64.94.12.3", 2823, None),
        ("104.18.2.2", 443, "md.tradovate.com"),
        ("10.0.0.5", 9999, None),
    ]

    for ip, port, host in test_endpoints:
        tag = classify_signature(ip, port, host)
        print(f"  {ip + ':' + str(port):.<25} {host or '-':40} → {tag.value}")
