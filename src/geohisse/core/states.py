"""Composite range / hidden-class state space."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, List, Tuple


class RangeCategory(IntEnum):
    """Observable geographic range of a lineage."""

    A = 0
    B = 1
    AB = 2

    @property
    def is_widespread(self) -> bool:
        return self is RangeCategory.AB


@dataclass(frozen=True)
class CompositeState:
    """
    A (range, hidden class) pair.

    Attributes:
        range: Observable range category
        hidden: Hidden class index (0 when the model has no hidden traits)
    """

    range: RangeCategory
    hidden: int = 0

    @property
    def label(self) -> str:
        return f"{self.range.name}_{self.hidden}"

    def __str__(self) -> str:
        return self.label


@dataclass
class StateSpace:
    """
    Enumerated GeoHiSSE state space.

    States are ordered hidden-major: index ``3 * k + r`` holds range ``r``
    in hidden class ``k``. Every component that builds or consumes dense
    matrices relies on this order.

    Attributes:
        hidden_traits: Number of additional hidden classes H (>= 0)
        states: Pre-enumerated composite states
        metadata: Free-form annotations
    """

    hidden_traits: int = 0
    states: List[CompositeState] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.states:
            self.states = [
                CompositeState(r, k)
                for k in range(self.n_hidden)
                for r in RangeCategory
            ]

    @property
    def n_hidden(self) -> int:
        """Number of hidden classes (H + 1)."""
        return self.hidden_traits + 1

    @property
    def dimension(self) -> int:
        return len(self.states)

    def index(self, range_category: RangeCategory, hidden: int = 0) -> int:
        """Dense index of a composite state."""
        return 3 * hidden + int(range_category)

    def labels(self) -> List[str]:
        return [s.label for s in self.states]

    def class_triplet(self, hidden: int) -> Tuple[int, int, int]:
        """Indices of (A, B, AB) inside one hidden class."""
        base = 3 * hidden
        return base, base + 1, base + 2

    def range_mask(self, range_category: RangeCategory) -> List[bool]:
        return [s.range is range_category for s in self.states]

    def __iter__(self) -> Iterator[CompositeState]:
        return iter(self.states)

    def __len__(self) -> int:
        return len(self.states)

    def __getitem__(self, idx: int) -> CompositeState:
        return self.states[idx]

    def __repr__(self) -> str:
        return f"StateSpace(hidden_traits={self.hidden_traits}, dimension={self.dimension})"
