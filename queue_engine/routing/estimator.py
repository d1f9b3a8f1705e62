"""Wait estimation — a deterministic heuristic, not a forecast.

    estimate = max(min_minutes(tier), ceil(waiting × base_minutes × factor(tier)))
"""

from __future__ import annotations

import math

from queue_engine.config import TIER_MIN_WAIT_MINUTES, TIER_WAIT_FACTORS
from queue_engine.domain import PriorityTier, Service


class WaitEstimator:
    """Estimate minutes until a new ticket is called.

    Parameters
    ----------
    factors, minimums : dict
        ``{tier_value: float}`` / ``{tier_value: int}``; default to config.
    """

    def __init__(
        self,
        factors: dict[str, float] | None = None,
        minimums: dict[str, int] | None = None,
    ) -> None:
        self._factors = dict(factors or TIER_WAIT_FACTORS)
        self._minimums = dict(minimums or TIER_MIN_WAIT_MINUTES)

    def estimate(self, service: Service, tier: PriorityTier, waiting_count: int) -> int:
        raw = waiting_count * service.base_service_minutes * self._factors[tier.value]
        # float noise such as 1.0000000000000002 must not ceil to 2
        return max(self._minimums[tier.value], math.ceil(round(raw, 6)))
