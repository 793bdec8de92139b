"""Jitter tracking and automatic primary-endpoint selection.

"Jitter" here is an activity signal, not a variance: every successful APP
sample that differs from the previous successful sample for the same
endpoint bumps that endpoint's score by one. The live feed connection of a
trading platform keeps moving; idle helper connections do not.

Selection ranks candidates with score > 0 by:
    1. known provider before unknown
    2. higher jitter score
    3. endpoint key, lexical (stable tie-break)
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

import config

logger = logging.getLogger(__name__)


@dataclass
class SelectionState:
    selected_key: Optional[str] = None
    manual_override: bool = False


class JitterTracker:
    """Per-key jitter scores plus the last successful sample baseline."""

    def __init__(self):
        self.scores: Dict[str, int] = {}
        self._previous: Dict[str, int] = {}

    def record(self, key: str, ms: int) -> bool:
        """Fold one APP sample into the score.

        Failed samples are ignored entirely: no score change and the
        baseline stays at the last successful value.

        Returns:
            True if the score for key increased
        """
        if ms == config.PROBE_FAILED:
            return False

        previous = self._previous.get(key)
        self._previous[key] = ms
        self.scores.setdefault(key, 0)

        if previous is not None and previous != ms:
            self.scores[key] += 1
            return True
        return False

    def score(self, key: str) -> int:
        return self.scores.get(key, 0)

    def prune(self, live_keys: Iterable[str]) -> None:
        live = set(live_keys)
        for key in [k for k in self.scores if k not in live]:
            del self.scores[key]
        for key in [k for k in self._previous if k not in live]:
            del self._previous[key]


def rank(key: str, score: int, provider) -> Tuple[int, int, str]:
    """Sort key for selection candidates, best first."""
    return (0 if provider.is_known else 1, -score, key)


def select_primary(scores: Mapping[str, int], endpoints: Mapping[str, object]) -> Optional[str]:
    """Pick the endpoint to surface as primary.

    Args:
        scores: Jitter scores by endpoint key
        endpoints: Live endpoints by key

    Returns:
        Winning key, or None if no live key has a positive score
    """
    candidates = [
        rank(key, score, endpoints[key].provider)
        for key, score in scores.items()
        if score > 0 and key in endpoints
    ]
    if not candidates:
        return None
    return min(candidates)[2]


def update_selection(selection: SelectionState, scores: Mapping[str, int],
                     endpoints: Mapping[str, object]) -> bool:
    """Re-run automatic selection unless the operator pinned an endpoint.

    With no candidate the previous selection is kept as is.

    Returns:
        True if selected_key changed
    """
    if selection.manual_override:
        return False

    winner = select_primary(scores, endpoints)
    if winner is None or winner == selection.selected_key:
        return False

    logger.debug(f"Auto-selected {winner} (was {selection.selected_key})")
    selection.selected_key = winner
    return True
