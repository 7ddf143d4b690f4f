"""
Parameter mapping for GeoHiSSE models.

Turns a compact parameter set (turnover and extinction fraction per state,
one rate per rate-matrix label) into the dense structures the branch ODEs
consume:

1. Q - transition generator (rows sum to zero)
2. speciation / extinction rate vectors
3. cladogenesis tensor C[i, j, k] - rate at which a lineage in state i
   speciates into daughters (j, k), split symmetrically over (j, k)

Turnover identities (per hidden class k):
    tau(A_k)  = s(A_k) + x(A_k),      eps(A_k) = x(A_k) / s(A_k)
    tau(AB_k) = s(A_k) + s(B_k) + s(AB_k),  eps(AB_k) = 0

Invalid values never raise here: the mapper returns ModelMatrices with
``valid=False`` so an optimizer can reject the point and continue.
"""

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .rate_matrix import ConfigurationError, RateMatrixIndex
from .states import RangeCategory, StateSpace

logger = logging.getLogger(__name__)

WIDESPREAD_TIES = ("mean", "endemic_a", "endemic_b")

RateValues = Union[Sequence[float], np.ndarray, Mapping[int, float]]


def turnover_to_rates(
    turnover: np.ndarray,
    extinction_fraction: np.ndarray,
    space: StateSpace,
    widespread_tie: str = "mean",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert (tau, eps) to speciation and extinction rates.

    A widespread turnover of exactly 0 means "not estimated": s(AB) is then
    tied to the endemic speciation rates according to ``widespread_tie``.

    Returns:
        (speciation, extinction), each of length S
    """
    if widespread_tie not in WIDESPREAD_TIES:
        raise ConfigurationError(f"Unknown widespread_tie: {widespread_tie}")
    tau = np.asarray(turnover, dtype=float)
    eps = np.asarray(extinction_fraction, dtype=float)

    speciation = tau / (1.0 + eps)
    extinction = tau * eps / (1.0 + eps)
    for k in range(space.n_hidden):
        a, b, ab = space.class_triplet(k)
        extinction[ab] = 0.0
        if tau[ab] == 0.0:
            if widespread_tie == "mean":
                speciation[ab] = 0.5 * (speciation[a] + speciation[b])
            elif widespread_tie == "endemic_a":
                speciation[ab] = speciation[a]
            else:
                speciation[ab] = speciation[b]
        else:
            speciation[ab] = tau[ab] - speciation[a] - speciation[b]
    return speciation, extinction


def rates_to_turnover(
    speciation: np.ndarray,
    extinction: np.ndarray,
    space: StateSpace,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert speciation and extinction rates to (tau, eps).

    Raises:
        ValueError: If a widespread state carries lineage extinction or an
            endemic state has extinction without speciation.
    """
    s = np.asarray(speciation, dtype=float)
    x = np.asarray(extinction, dtype=float)
    tau = s + x
    eps = np.zeros_like(s)
    for k in range(space.n_hidden):
        a, b, ab = space.class_triplet(k)
        if x[ab] != 0.0:
            raise ValueError(f"Widespread state {space[ab]} cannot have lineage extinction")
        for i in (a, b):
            if s[i] > 0:
                eps[i] = x[i] / s[i]
            elif x[i] > 0:
                raise ValueError(f"State {space[i]} has extinction but no speciation")
        tau[ab] = s[a] + s[b] + s[ab]
    return tau, eps


@dataclass
class GeoHiSSEParameters:
    """
    One point in parameter space.

    Attributes:
        turnover: tau per composite state (S,)
        extinction_fraction: eps per composite state (S,); widespread
            entries are fixed at 0
        transition_rates: One rate per current rate-matrix label, either a
            sequence ordered by label or a mapping label -> rate
    """

    turnover: np.ndarray
    extinction_fraction: np.ndarray
    transition_rates: RateValues

    @classmethod
    def from_rates(
        cls,
        space: StateSpace,
        speciation: Sequence[float],
        extinction: Sequence[float],
        transition_rates: RateValues,
    ) -> "GeoHiSSEParameters":
        tau, eps = rates_to_turnover(np.asarray(speciation), np.asarray(extinction), space)
        return cls(turnover=tau, extinction_fraction=eps, transition_rates=transition_rates)


@dataclass
class ModelMatrices:
    """
    Dense model structures for one parameter point.

    Attributes:
        Q: (S, S) transition generator
        speciation: (S,) speciation rates
        extinction: (S,) lineage extinction rates
        cladogenesis: (S, S, S) speciation tensor, symmetric in its last two axes
        valid: False when the parameter point is outside the model domain
        message: Reason for invalidity
    """

    Q: np.ndarray
    speciation: np.ndarray
    extinction: np.ndarray
    cladogenesis: np.ndarray
    valid: bool = True
    message: str = ""

    @property
    def n_states(self) -> int:
        return self.Q.shape[0]

    @property
    def total_speciation(self) -> np.ndarray:
        return self.cladogenesis.sum(axis=(1, 2))

    @classmethod
    def invalid(cls, n_states: int, message: str) -> "ModelMatrices":
        nan = np.full(n_states, np.nan)
        return cls(
            Q=np.full((n_states, n_states), np.nan),
            speciation=nan,
            extinction=nan.copy(),
            cladogenesis=np.full((n_states, n_states, n_states), np.nan),
            valid=False,
            message=message,
        )


class ParameterMapper:
    """
    Expand parameter points into ModelMatrices for a fixed rate index.

    Args:
        index: Rate matrix index (built once per model configuration)
        assume_cladogenetic: Model range-splitting speciation of widespread
            lineages; when False every state speciates into two copies of
            itself (anagenetic range evolution only)
        widespread_tie: Policy for s(AB) when tau(AB) is 0
    """

    def __init__(
        self,
        index: RateMatrixIndex,
        assume_cladogenetic: bool = True,
        widespread_tie: str = "mean",
    ):
        if widespread_tie not in WIDESPREAD_TIES:
            raise ConfigurationError(
                f"widespread_tie must be one of {WIDESPREAD_TIES}, got {widespread_tie!r}"
            )
        self.index = index
        self.space = index.space
        self.assume_cladogenetic = bool(assume_cladogenetic)
        self.widespread_tie = widespread_tie

        mask = index.labels > 0
        self._rows, self._cols = np.nonzero(mask)
        self._cell_labels = index.labels[mask]

    @property
    def n_states(self) -> int:
        return self.space.dimension

    def rate_vector(self, transition_rates: RateValues) -> np.ndarray:
        """
        Order transition rates by label.

        Raises:
            ConfigurationError: If a label has no value or an unknown label
                is supplied.
        """
        n = self.index.n_parameters
        if isinstance(transition_rates, Mapping):
            # JSON model files give labels as strings
            try:
                by_label = {int(k): v for k, v in transition_rates.items()}
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Transition rate labels must be integers, got {list(transition_rates)}"
                )
            missing = [l for l in range(1, n + 1) if l not in by_label]
            extra = sorted(l for l in by_label if not 1 <= l <= n)
            if missing or extra or len(by_label) != len(transition_rates):
                raise ConfigurationError(
                    f"Transition rates must cover labels 1..{n} once each; "
                    f"missing={missing}, unknown={extra}"
                )
            return np.array([by_label[l] for l in range(1, n + 1)], dtype=float)

        rates = np.asarray(transition_rates, dtype=float).ravel()
        if rates.shape[0] != n:
            raise ConfigurationError(
                f"Expected {n} transition rates (one per label), got {rates.shape[0]}"
            )
        return rates

    def map(self, params: GeoHiSSEParameters) -> ModelMatrices:
        """Build ModelMatrices, or an invalid marker outside the domain."""
        n = self.n_states
        tau = np.asarray(params.turnover, dtype=float).ravel()
        eps = np.asarray(params.extinction_fraction, dtype=float).ravel()
        if tau.shape[0] != n or eps.shape[0] != n:
            raise ConfigurationError(
                f"turnover and extinction_fraction need {n} entries, "
                f"got {tau.shape[0]} and {eps.shape[0]}"
            )
        rates = self.rate_vector(params.transition_rates)

        for name, values in (("turnover", tau), ("extinction_fraction", eps), ("rate", rates)):
            if not np.all(np.isfinite(values)):
                return self._reject(f"non-finite {name}")
            if np.any(values < 0):
                return self._reject(f"negative {name}")

        speciation, extinction = turnover_to_rates(tau, eps, self.space, self.widespread_tie)
        if np.any(speciation < 0):
            bad = [self.space[i].label for i in np.nonzero(speciation < 0)[0]]
            return self._reject(f"widespread turnover below endemic speciation for {bad}")

        Q = np.zeros((n, n))
        Q[self._rows, self._cols] = rates[self._cell_labels - 1]
        if not self.index.separate_extirpation:
            # range loss through local extinction
            for k in range(self.space.n_hidden):
                a, b, ab = self.space.class_triplet(k)
                Q[ab, a] += extinction[b]
                Q[ab, b] += extinction[a]
        np.fill_diagonal(Q, 0.0)
        np.fill_diagonal(Q, -Q.sum(axis=1))

        return ModelMatrices(
            Q=Q,
            speciation=speciation,
            extinction=extinction,
            cladogenesis=self._cladogenesis(speciation),
        )

    def _cladogenesis(self, speciation: np.ndarray) -> np.ndarray:
        n = self.n_states
        C = np.zeros((n, n, n))
        for k in range(self.space.n_hidden):
            a, b, ab = self.space.class_triplet(k)
            C[a, a, a] = speciation[a]
            C[b, b, b] = speciation[b]
            if not self.assume_cladogenetic:
                C[ab, ab, ab] = speciation[a] + speciation[b] + speciation[ab]
                continue
            # within-area speciation: one daughter keeps AB, the other is endemic
            for endemic in (a, b):
                C[ab, ab, endemic] += 0.5 * speciation[endemic]
                C[ab, endemic, ab] += 0.5 * speciation[endemic]
            # between-area speciation: one daughter per area
            C[ab, a, b] += 0.5 * speciation[ab]
            C[ab, b, a] += 0.5 * speciation[ab]
        return C

    def _reject(self, message: str) -> ModelMatrices:
        logger.debug("Parameter point rejected: %s", message)
        return ModelMatrices.invalid(self.n_states, message)


class ParameterLayout:
    """
    Flat parameter vector used by optimizers.

    Turnover and extinction-fraction groups follow the hisse convention:
    one integer per composite state, equal integers share a free parameter
    and 0 fixes the value at 0. For widespread states an eps group is
    ignored (always 0), and a turnover group of 0 triggers the
    widespread speciation tie.

    Vector order: turnover groups, eps groups, then one rate per label.
    """

    def __init__(
        self,
        index: RateMatrixIndex,
        turnover_groups: Optional[Sequence[int]] = None,
        eps_groups: Optional[Sequence[int]] = None,
    ):
        self.index = index
        self.space = index.space
        n = self.space.dimension
        widespread = np.array(self.space.range_mask(RangeCategory.AB))

        if turnover_groups is None:
            turnover_groups = np.arange(1, n + 1)
        if eps_groups is None:
            eps_groups = np.where(widespread, 0, np.cumsum(~widespread))
        self.turnover_groups = self._check_groups("turnover_groups", turnover_groups, n)
        self.eps_groups = self._check_groups("eps_groups", eps_groups, n)
        self.eps_groups[widespread] = 0

        self._tau_ids = sorted(set(self.turnover_groups[self.turnover_groups > 0].tolist()))
        self._eps_ids = sorted(set(self.eps_groups[self.eps_groups > 0].tolist()))

    @staticmethod
    def _check_groups(name: str, groups, n: int) -> np.ndarray:
        arr = np.asarray(groups)
        if arr.shape != (n,) or not np.issubdtype(arr.dtype, np.integer) or np.any(arr < 0):
            raise ConfigurationError(f"{name} must be {n} non-negative integers, got {groups!r}")
        return arr.astype(int).copy()

    def _first_state(self, groups: np.ndarray, group_id: int) -> int:
        return int(np.nonzero(groups == group_id)[0][0])

    @property
    def names(self) -> List[str]:
        labels = self.space.labels()
        tau = [f"tau_{labels[self._first_state(self.turnover_groups, g)]}" for g in self._tau_ids]
        eps = [f"eps_{labels[self._first_state(self.eps_groups, g)]}" for g in self._eps_ids]
        return tau + eps + self.index.parameter_names()

    @property
    def size(self) -> int:
        return len(self._tau_ids) + len(self._eps_ids) + self.index.n_parameters

    def unpack(self, vector: Sequence[float]) -> GeoHiSSEParameters:
        vec = np.asarray(vector, dtype=float).ravel()
        if vec.shape[0] != self.size:
            raise ConfigurationError(f"Expected {self.size} parameters, got {vec.shape[0]}")
        n_tau, n_eps = len(self._tau_ids), len(self._eps_ids)
        tau_values = dict(zip(self._tau_ids, vec[:n_tau]))
        eps_values = dict(zip(self._eps_ids, vec[n_tau:n_tau + n_eps]))
        tau = np.array([tau_values.get(g, 0.0) for g in self.turnover_groups])
        eps = np.array([eps_values.get(g, 0.0) for g in self.eps_groups])
        return GeoHiSSEParameters(
            turnover=tau,
            extinction_fraction=eps,
            transition_rates=vec[n_tau + n_eps:].copy(),
        )

    def pack(self, params: GeoHiSSEParameters, mapper: Optional[ParameterMapper] = None) -> np.ndarray:
        tau = np.asarray(params.turnover, dtype=float)
        eps = np.asarray(params.extinction_fraction, dtype=float)
        mapper = mapper or ParameterMapper(self.index)
        rates = mapper.rate_vector(params.transition_rates)
        return np.concatenate([
            [tau[self._first_state(self.turnover_groups, g)] for g in self._tau_ids],
            [eps[self._first_state(self.eps_groups, g)] for g in self._eps_ids],
            rates,
        ])

    def bounds(
        self,
        turnover_upper: float = 10000.0,
        eps_upper: float = 3.0,
        rate_upper: float = 100.0,
    ) -> List[Tuple[float, float]]:
        return (
            [(0.0, turnover_upper)] * len(self._tau_ids)
            + [(0.0, eps_upper)] * len(self._eps_ids)
            + [(0.0, rate_upper)] * self.index.n_parameters
        )

    def initial(self, turnover: float = 0.5, eps: float = 0.5, rate: float = 0.1) -> np.ndarray:
        """
        Starting vector with equal endemic rates; widespread turnover is set
        so that s(AB) equals the mean endemic speciation rate.
        """
        n = self.space.dimension
        tau = np.full(n, float(turnover))
        for k in range(self.space.n_hidden):
            _, _, ab = self.space.class_triplet(k)
            tau[ab] = 3.0 * turnover / (1.0 + eps)
        eps_arr = np.full(n, float(eps))
        rates = np.full(self.index.n_parameters, float(rate))
        return self.pack(
            GeoHiSSEParameters(turnover=tau, extinction_fraction=eps_arr, transition_rates=rates)
        )
