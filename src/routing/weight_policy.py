"""
LOT 5: Routing - Weight Policies

Politiques de progression du poids candidat en mode canary.
"""

from typing import List

from .interfaces import TOTAL_WEIGHT, IWeightPolicy


class StrategyStepPolicy(IWeightPolicy):
    """
    Paliers fournis par la requête de déploiement.

    Sans palier (ALL_AT_ONCE), le candidat est attaché à 0% puis promu.
    """

    def plan(self, steps: List[int]) -> List[int]:
        if not steps:
            return [0]
        return [s for s in steps if 0 < s < TOTAL_WEIGHT]


class LinearStepPolicy(IWeightPolicy):
    """Progression linéaire à incrément fixe (ex: 10, 20, ... 90)."""

    def __init__(self, increment: int = 10) -> None:
        if not 0 < increment < TOTAL_WEIGHT:
            raise ValueError("increment must be within 1..99")
        self._increment = increment

    def plan(self, steps: List[int]) -> List[int]:
        return list(range(self._increment, TOTAL_WEIGHT, self._increment))
