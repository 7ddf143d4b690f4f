"""Tip observations: observed ranges -> conditional vectors over composite states."""

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Set, Union

import numpy as np

from .states import RangeCategory, StateSpace
from .trees import TreeStructureError

MISSING_CODES = ("?", "-", "")
AMBIGUITY_SEPARATORS = ("|", "/", "&")

RangeObservation = Union[str, int, RangeCategory, Iterable, np.ndarray]


def parse_range(code) -> RangeCategory:
    """Parse a single range code ("A", "B", "AB", 0, 1, 2 or a RangeCategory)."""
    if isinstance(code, RangeCategory):
        return code
    if isinstance(code, (int, np.integer)) and not isinstance(code, bool):
        if int(code) in (0, 1, 2):
            return RangeCategory(int(code))
    elif isinstance(code, str):
        key = code.strip().upper()
        if key == "BA":
            key = "AB"
        if key in RangeCategory.__members__:
            return RangeCategory[key]
    raise TreeStructureError(f"Unknown range code: {code!r}")


@dataclass
class RangeTipObservation:
    """
    Maps tip observations to conditional likelihood vectors.

    Accepted observations:
        - a single range: "A", "B", "AB", 0, 1, 2 or a RangeCategory
        - an ambiguous set: "A|AB", or any list/tuple/set of range codes
        - missing data: "?" or "-" (every range compatible)
        - a float numpy array of 3 weights over (A, B, AB), or of S weights
          over composite states

    Hidden classes are never observed, so every hidden class of a
    compatible range receives the same value.
    """

    space: StateSpace

    def compatible_ranges(self, observed) -> Set[RangeCategory]:
        if isinstance(observed, str):
            text = observed.strip()
            if text in MISSING_CODES:
                return set(RangeCategory)
            for sep in AMBIGUITY_SEPARATORS:
                if sep in text:
                    return {parse_range(part) for part in text.split(sep)}
            return {parse_range(text)}
        if isinstance(observed, (int, np.integer, RangeCategory)):
            return {parse_range(observed)}
        codes = list(observed)
        if not codes:
            raise TreeStructureError("Empty range observation")
        ranges = set()
        for code in codes:
            ranges |= self.compatible_ranges(code)
        return ranges

    def get_tip_likelihood(self, observed: RangeObservation) -> np.ndarray:
        n = self.space.dimension
        if isinstance(observed, np.ndarray) and np.issubdtype(observed.dtype, np.floating):
            weights = observed.ravel()
            if weights.shape[0] == 3:
                vector = np.array([weights[int(s.range)] for s in self.space])
            elif weights.shape[0] == n:
                vector = weights.astype(float).copy()
            else:
                raise TreeStructureError(
                    f"Tip weight vector must have 3 or {n} entries, got {weights.shape[0]}"
                )
            if np.any(vector < 0) or not np.isfinite(vector).all() or vector.sum() <= 0:
                raise TreeStructureError("Tip weights must be finite, non-negative and not all zero")
            return vector

        ranges = self.compatible_ranges(observed)
        return np.array([1.0 if s.range in ranges else 0.0 for s in self.space])

    def get_tip_likelihoods_matrix(self, observations: Sequence[RangeObservation]) -> np.ndarray:
        likelihoods = np.zeros((len(observations), self.space.dimension))
        for idx, observed in enumerate(observations):
            likelihoods[idx] = self.get_tip_likelihood(observed)
        return likelihoods

    def range_of_states(self) -> List[int]:
        return [int(s.range) for s in self.space]
