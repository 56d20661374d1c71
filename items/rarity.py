"""Weighted rarity draws for generated items."""
import random
from typing import List, Mapping, Optional, Sequence, Tuple, Union

from . import InvalidRarityWeightsError

Weights = Union[Sequence[Tuple[str, float]], Mapping[str, float]]


def _pairs(weights: Weights) -> List[Tuple[str, float]]:
    if isinstance(weights, Mapping):
        return list(weights.items())
    return list(weights)


def select_rarity(weights: Weights, rng: Optional[random.Random] = None) -> str:
    """Pick a rarity label with probability proportional to its weight.

    Labels are walked in the order given, so a seeded ``rng`` always yields
    the same label.

    Raises:
        InvalidRarityWeightsError: If the total weight is not greater than 0
    """
    pairs = _pairs(weights)
    total = sum(weight for _, weight in pairs)
    if total <= 0:
        raise InvalidRarityWeightsError("Total rarity weight must be greater than 0")

    r = (rng or random).random() * total
    running = 0.0
    for label, weight in pairs:
        running += weight
        if running > r:
            return label

    # Floating point leftovers: fall back to the last label that can be drawn
    return [label for label, weight in pairs if weight > 0][-1]
