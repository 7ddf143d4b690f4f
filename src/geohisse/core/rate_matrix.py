"""
Rate matrix index for GeoHiSSE transition processes.

The index records *which* transitions exist and which of them share a free
parameter; it never holds rate values. Each non-empty cell carries a
positive integer label, and labels are dense (1..n).

Labels are derived from equivalence keys: every eligible cell gets a key
describing its transition type, and cells with the same key share a label.
The builder's original numbering is kept as ``base_labels`` so that
merge/drop requests always refer to a stable numbering.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Tuple

import numpy as np
import pandas as pd

from .states import RangeCategory, StateSpace

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Invalid model setup, raised before any likelihood evaluation."""


class TransitionKind(str, Enum):
    DISPERSAL = "dispersal"
    JUMP = "jump"
    EXTIRPATION = "extirpation"
    HIDDEN = "hidden"


_DISPERSAL_MOVES = [(RangeCategory.A, RangeCategory.AB), (RangeCategory.B, RangeCategory.AB)]
_JUMP_MOVES = [(RangeCategory.A, RangeCategory.B), (RangeCategory.B, RangeCategory.A)]
_EXTIRPATION_MOVES = [(RangeCategory.AB, RangeCategory.A), (RangeCategory.AB, RangeCategory.B)]


@dataclass(frozen=True)
class RateMatrixIndex:
    """
    Immutable index of free transition parameters.

    Attributes:
        space: Composite state space the matrix is defined over
        labels: (S, S) current labels, 0 for empty cells
        base_labels: (S, S) labels as issued by the builder
        groups: groups[l - 1] is the set of base labels governed by label l
        kinds: Transition kind of every base label
        options: Builder flags used to create the index
    """

    space: StateSpace
    labels: np.ndarray
    base_labels: np.ndarray
    groups: Tuple[FrozenSet[int], ...]
    kinds: Dict[int, TransitionKind]
    options: dict = field(default_factory=dict)

    def __post_init__(self):
        self.labels.setflags(write=False)
        self.base_labels.setflags(write=False)

    @property
    def n_states(self) -> int:
        return self.labels.shape[0]

    @property
    def n_parameters(self) -> int:
        return len(self.groups)

    @property
    def n_base_labels(self) -> int:
        return int(self.base_labels.max()) if self.base_labels.size else 0

    @property
    def separate_extirpation(self) -> bool:
        return bool(self.options.get("separate_extirpation", False))

    def distinct_labels(self) -> List[int]:
        return sorted(int(v) for v in np.unique(self.labels) if v > 0)

    def parameter_names(self) -> List[str]:
        return [f"q{label}" for label in range(1, self.n_parameters + 1)]

    def cells(self, label: int) -> List[Tuple[int, int]]:
        """(from, to) state index pairs governed by a current label."""
        rows, cols = np.nonzero(self.labels == label)
        return list(zip(rows.tolist(), cols.tolist()))

    def describe(self) -> Dict[int, List[str]]:
        """Map each current label to readable ``from->to`` transitions."""
        names = self.space.labels()
        return {
            label: [f"{names[i]}->{names[j]}" for i, j in self.cells(label)]
            for label in range(1, self.n_parameters + 1)
        }

    def to_frame(self) -> pd.DataFrame:
        names = self.space.labels()
        return pd.DataFrame(np.asarray(self.labels), index=names, columns=names)

    def merge(self, label_sets: Iterable[Iterable[int]]) -> "RateMatrixIndex":
        """
        Tie parameters together.

        Args:
            label_sets: Groups of base labels that must share one parameter.

        Returns:
            New index whose labels are renumbered densely, ordered by the
            smallest base label of each group.

        Raises:
            ConfigurationError: If a label is unknown or was dropped.
        """
        parent = {b: min(g) for g in self.groups for b in g}

        def find(b: int) -> int:
            while parent[b] != b:
                parent[b] = parent[parent[b]]
                b = parent[b]
            return b

        for label_set in label_sets:
            members = [self._check_base_label(b) for b in label_set]
            for other in members[1:]:
                ra, rb = find(members[0]), find(other)
                if ra != rb:
                    parent[max(ra, rb)] = min(ra, rb)

        classes: Dict[int, set] = {}
        for b in parent:
            classes.setdefault(find(b), set()).add(b)
        groups = [frozenset(classes[root]) for root in sorted(classes)]

        merged = self._with_groups(groups)
        logger.debug(
            "Merged rate index: %d -> %d parameters", self.n_parameters, merged.n_parameters
        )
        return merged

    def drop(self, labels: Iterable[int]) -> "RateMatrixIndex":
        """
        Remove parameters, emptying every cell they govern.

        A base label that was merged with others drops its whole group.
        """
        doomed = {self._check_base_label(b) for b in labels}
        groups = [g for g in self.groups if not (g & doomed)]
        return self._with_groups(groups)

    def _check_base_label(self, b) -> int:
        b = int(b)
        if not any(b in g for g in self.groups):
            raise ConfigurationError(
                f"Label {b} is not an active base label (1..{self.n_base_labels})"
            )
        return b

    def _with_groups(self, groups: List[FrozenSet[int]]) -> "RateMatrixIndex":
        groups = sorted(groups, key=min)
        lookup = np.zeros(self.n_base_labels + 1, dtype=int)
        for new_label, group in enumerate(groups, start=1):
            for b in group:
                lookup[b] = new_label
        labels = lookup[self.base_labels]
        return RateMatrixIndex(
            space=self.space,
            labels=labels,
            base_labels=np.array(self.base_labels),
            groups=tuple(groups),
            kinds=dict(self.kinds),
            options=dict(self.options),
        )

    def __repr__(self) -> str:
        return f"RateMatrixIndex(states={self.n_states}, parameters={self.n_parameters})"


def _require_flag(name: str, value) -> bool:
    if not isinstance(value, (bool, np.bool_)):
        raise ConfigurationError(f"{name} must be a boolean, got {value!r}")
    return bool(value)


def build_rate_matrix(
    hidden_traits: int = 0,
    make_null: bool = False,
    include_jumps: bool = False,
    separate_extirpation: bool = False,
) -> RateMatrixIndex:
    """
    Build the transition index for a GeoHiSSE model.

    Args:
        hidden_traits: Number of hidden traits H (the model has H + 1 classes)
        make_null: Tie range transitions across hidden classes and use a
            single rate for every hidden-class move
        include_jumps: Allow direct A <-> B transitions
        separate_extirpation: Give AB -> A and AB -> B their own rates
            instead of coupling them to local extinction

    Returns:
        RateMatrixIndex of dimension 3 * (hidden_traits + 1)

    Raises:
        ConfigurationError: On invalid hidden_traits or flags
    """
    if isinstance(hidden_traits, (bool, np.bool_)) or not isinstance(
        hidden_traits, (int, np.integer)
    ):
        raise ConfigurationError(f"hidden_traits must be an integer, got {hidden_traits!r}")
    if hidden_traits < 0:
        raise ConfigurationError(f"hidden_traits must be >= 0, got {hidden_traits}")
    make_null = _require_flag("make_null", make_null)
    include_jumps = _require_flag("include_jumps", include_jumps)
    separate_extirpation = _require_flag("separate_extirpation", separate_extirpation)

    space = StateSpace(hidden_traits=int(hidden_traits))
    n = space.dimension
    base = np.zeros((n, n), dtype=int)
    key_to_label: Dict[tuple, int] = {}
    kinds: Dict[int, TransitionKind] = {}

    def assign(i: int, j: int, key: tuple, kind: TransitionKind):
        if key not in key_to_label:
            key_to_label[key] = len(key_to_label) + 1
            kinds[key_to_label[key]] = kind
        base[i, j] = key_to_label[key]

    range_moves = [(m, TransitionKind.DISPERSAL) for m in _DISPERSAL_MOVES]
    if include_jumps:
        range_moves += [(m, TransitionKind.JUMP) for m in _JUMP_MOVES]
    if separate_extirpation:
        range_moves += [(m, TransitionKind.EXTIRPATION) for m in _EXTIRPATION_MOVES]

    for k in range(space.n_hidden):
        for (src, dst), kind in range_moves:
            key = ("range", src, dst) if make_null else ("range", src, dst, k)
            assign(space.index(src, k), space.index(dst, k), key, kind)

    for r in RangeCategory:
        for k_from in range(space.n_hidden):
            for k_to in range(space.n_hidden):
                if k_from == k_to:
                    continue
                key = ("hidden",) if make_null else ("hidden", r, k_from, k_to)
                assign(space.index(r, k_from), space.index(r, k_to), key, TransitionKind.HIDDEN)

    groups = tuple(frozenset([label]) for label in range(1, len(key_to_label) + 1))
    index = RateMatrixIndex(
        space=space,
        labels=base.copy(),
        base_labels=base,
        groups=groups,
        kinds=kinds,
        options={
            "hidden_traits": int(hidden_traits),
            "make_null": make_null,
            "include_jumps": include_jumps,
            "separate_extirpation": separate_extirpation,
        },
    )
    logger.debug("Built %r", index)
    return index
