"""
Tree pruning engine for GeoHiSSE.

Computes the log-likelihood of tip ranges on a tree by integrating the
branch ODEs (see propagator.py) from the tips to the root and combining
daughter lineages at every node with the cladogenesis tensor.

Scheduling: branches are grouped into independence sets ("waves") by node
height. Wave k holds every node whose deepest descendant tip is k edges
away; no node in a wave is an ancestor of another, so all branches of a
wave are integrated concurrently, with a barrier before the next wave.
The per-branch arithmetic is identical to a sequential postorder pass, so
both schedules give the same result.

Numerical failures never raise: they produce a PruningResult with
``valid=False`` and a log-likelihood of -inf.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Union

import numpy as np

from .config import LikelihoodConfig
from .data import TipData
from .parameters import ModelMatrices
from .propagator import BranchPropagator, BranchSolver
from .rate_matrix import ConfigurationError, RateMatrixIndex
from .tip_observations import RangeTipObservation
from .trees import TreeStructure, TreeStructureError

logger = logging.getLogger(__name__)


def combine_children(
    cladogenesis: np.ndarray,
    left: np.ndarray,
    right: np.ndarray,
) -> np.ndarray:
    """
    Speciation at a node: D_p[i] = sum_jk C[i, j, k] D_left[j] D_right[k].

    ``left`` may hold several columns; ``right`` is a single vector.
    """
    return (cladogenesis @ right) @ left


def equilibrium_frequencies(Q: np.ndarray) -> np.ndarray:
    """Stationary distribution of a transition generator (pi Q = 0, sum pi = 1)."""
    n = Q.shape[0]
    A = np.vstack([Q.T, np.ones(n)])
    b = np.zeros(n + 1)
    b[-1] = 1.0
    pi, *_ = np.linalg.lstsq(A, b, rcond=None)
    # round-off
    pi = np.clip(pi, 0.0, None)
    return pi / pi.sum()


@dataclass
class PruningResult:
    """
    Result of one likelihood evaluation.

    Attributes:
        log_likelihood: Log-likelihood, -inf when invalid
        valid: False when any branch or node failed numerically
        message: Failure reason
        root_conditionals: Normalized D at the root
        root_extinction: E at the root
        node_extinction: (n_nodes, S) E at each node (if kept)
        node_conditionals: (n_nodes, S) normalized D at each node (if kept)
        branch_extinction: (n_nodes, S) E at the root-ward end of each branch (if kept)
        branch_conditionals: (n_nodes, S) D at the root-ward end of each branch (if kept)
        log_scales: (n_nodes,) accumulated log scale factor per node (if kept)
    """
    log_likelihood: float
    valid: bool = True
    message: str = ""
    root_conditionals: Optional[np.ndarray] = None
    root_extinction: Optional[np.ndarray] = None
    node_extinction: Optional[np.ndarray] = None
    node_conditionals: Optional[np.ndarray] = None
    branch_extinction: Optional[np.ndarray] = None
    branch_conditionals: Optional[np.ndarray] = None
    log_scales: Optional[np.ndarray] = None

    @classmethod
    def failure(cls, message: str) -> "PruningResult":
        return cls(log_likelihood=float("-inf"), valid=False, message=message)


class GeoHiSSEPruning:
    """
    Likelihood engine for one tree, one tip data set and one rate index.

    Everything passed to the constructor is validated here and then only
    read; ``compute`` can be called any number of times (and from several
    threads) with different ModelMatrices.

    Usage:
        index = build_rate_matrix(hidden_traits=1)
        engine = GeoHiSSEPruning(tree, tips, index)
        mapper = ParameterMapper(index)
        result = engine.compute(mapper.map(params))
    """

    def __init__(
        self,
        tree: TreeStructure,
        tips: Union[TipData, np.ndarray],
        index: RateMatrixIndex,
        config: Optional[LikelihoodConfig] = None,
        solver: Optional[BranchSolver] = None,
    ):
        """
        Args:
            tree: Strictly bifurcating tree
            tips: TipData, or an (n_tips, S) array of tip conditionals in
                ``tree.tip_indices`` order
            index: Rate matrix index of the model
            config: Evaluation settings (defaults to LikelihoodConfig())
            solver: Optional BranchSolver overriding ``config.solver``

        Raises:
            TreeStructureError: If the tree or tip data is malformed
            ConfigurationError: If the root weights do not fit the state space
        """
        self.tree = tree
        self.index = index
        self.space = index.space
        self.config = config or LikelihoodConfig()
        self.solver = solver
        n_states = self.space.dimension

        if tree.n_tips < 2 or tree.children_array.shape[0] != tree.n_nodes - tree.n_tips:
            raise TreeStructureError("The tree must be bifurcating with at least two tips")

        observation = RangeTipObservation(self.space)
        if isinstance(tips, TipData):
            conditionals = tips.conditionals(tree, observation)
        else:
            conditionals = np.asarray(tips, dtype=float)
            if conditionals.shape != (tree.n_tips, n_states):
                raise TreeStructureError(
                    f"Tip conditionals must have shape {(tree.n_tips, n_states)}, "
                    f"got {conditionals.shape}"
                )
            if np.any(conditionals < 0) or not np.isfinite(conditionals).all():
                raise TreeStructureError("Tip conditionals must be finite and non-negative")
        empty = np.nonzero(conditionals.sum(axis=1) <= 0)[0]
        if empty.size:
            raise TreeStructureError(
                f"Tips with no compatible state: {[tree.tip_names[i] for i in empty]}"
            )
        self.tip_conditionals = conditionals

        fraction = np.asarray(self.config.sampling_fraction)[observation.range_of_states()]
        self._tip_row = {node_id: row for row, node_id in enumerate(tree.tip_indices)}
        self._tip_D = conditionals * fraction
        self._tip_E = 1.0 - fraction

        if self.config.root_type == "user":
            weights = np.asarray(self.config.root_weights, dtype=float)
            if weights.shape != (n_states,):
                raise ConfigurationError(
                    f"root_weights must have {n_states} entries, got {weights.shape}"
                )
            self._user_weights = weights / weights.sum()
        else:
            self._user_weights = None

        self._waves = self.independence_sets()
        logger.info(
            "Pruning engine ready: %d tips, %d states, %d waves (schedule=%s, workers=%d)",
            tree.n_tips, n_states, len(self._waves), self.config.schedule, self.config.max_workers,
        )

    @property
    def n_states(self) -> int:
        return self.space.dimension

    def independence_sets(self) -> List[List[int]]:
        """Node ids grouped by height; branches above one group are independent."""
        heights = self.tree.heights()
        waves: List[List[int]] = [[] for _ in range(int(heights.max()) + 1)]
        for node_id in range(self.tree.n_nodes):
            waves[heights[node_id]].append(node_id)
        return waves

    def schedule(self) -> List[List[int]]:
        if self.config.schedule == "postorder":
            return [[node_id] for node_id in self.tree.postorder]
        return self._waves

    @contextmanager
    def worker_pool(self) -> Iterator[Optional[ThreadPoolExecutor]]:
        if self.config.schedule == "waves" and self.config.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                yield pool
        else:
            yield None

    @staticmethod
    def run_batch(pool: Optional[ThreadPoolExecutor], fn: Callable, items: Sequence) -> list:
        if pool is None or len(items) < 2:
            return [fn(item) for item in items]
        return list(pool.map(fn, items))

    def make_propagator(self, matrices: ModelMatrices) -> BranchPropagator:
        return BranchPropagator.from_config(matrices, self.config, solver=self.solver)

    def compute(self, matrices: ModelMatrices, keep_conditionals: bool = False) -> PruningResult:
        """
        Run the pruning pass.

        Args:
            matrices: Output of ParameterMapper.map
            keep_conditionals: Return per-node E / D arrays (needed for
                marginal reconstruction)

        Returns:
            PruningResult; invalid parameters or numerical failures give
            ``valid=False`` and -inf instead of raising.
        """
        if not matrices.valid:
            return PruningResult.failure(matrices.message or "invalid parameters")

        tree = self.tree
        n_nodes, n_states = tree.n_nodes, self.n_states
        node_E = np.zeros((n_nodes, n_states))
        node_D = np.zeros((n_nodes, n_states))
        top_E = np.zeros((n_nodes, n_states))
        top_D = np.zeros((n_nodes, n_states))
        log_scales = np.zeros(n_nodes)
        C = matrices.cladogenesis
        propagator = self.make_propagator(matrices)

        def propagate(node_id: int):
            return propagator.propagate(node_E[node_id], node_D[node_id], tree.branch_lengths[node_id])

        with self.worker_pool() as pool:
            for wave in self.schedule():
                for node_id in wave:
                    node = tree.nodes[node_id]
                    if node.is_tip:
                        row = self._tip_row[node_id]
                        node_E[node_id] = self._tip_E
                        node_D[node_id] = self._tip_D[row]
                        continue
                    left, right = node.children_ids
                    raw = combine_children(C, top_D[left], top_D[right])
                    total = raw.sum()
                    if not np.isfinite(total) or total <= 0.0:
                        return self._fail(f"zero or non-finite likelihood at node {node_id}")
                    node_E[node_id] = 0.5 * (top_E[left] + top_E[right])
                    node_D[node_id] = raw / total
                    log_scales[node_id] = log_scales[left] + log_scales[right] + np.log(total)

                results = self.run_batch(pool, propagate, wave)
                for node_id, branch in zip(wave, results):
                    if not branch.valid:
                        return self._fail(f"branch above node {node_id}: {branch.message}")
                    top_E[node_id] = branch.extinction
                    top_D[node_id] = branch.likelihood

        root = tree.root_index
        likelihood = float(self.root_likelihood(matrices, top_D[root], top_E[root]))
        if not np.isfinite(likelihood) or likelihood <= 0.0:
            return self._fail("zero or non-finite root likelihood")

        result = PruningResult(
            log_likelihood=float(np.log(likelihood) + log_scales[root]),
            root_conditionals=top_D[root].copy(),
            root_extinction=top_E[root].copy(),
        )
        if keep_conditionals:
            result.node_extinction = node_E
            result.node_conditionals = node_D
            result.branch_extinction = top_E
            result.branch_conditionals = top_D
            result.log_scales = log_scales
        return result

    def log_likelihood(self, matrices: ModelMatrices) -> float:
        return self.compute(matrices).log_likelihood

    def root_weights(self, matrices: ModelMatrices, D: np.ndarray) -> np.ndarray:
        """Root state weights for one vector (S,) or several columns (S, m)."""
        n = self.n_states
        root_type = self.config.root_type
        if root_type == "madfitz":
            totals = D.sum(axis=0)
            return np.divide(D, totals, out=np.zeros_like(D), where=totals > 0)
        if root_type == "equal":
            weights = np.full(n, 1.0 / n)
        elif root_type == "equilibrium":
            weights = equilibrium_frequencies(matrices.Q)
        else:
            weights = self._user_weights
        return weights if D.ndim == 1 else np.repeat(weights[:, None], D.shape[1], axis=1)

    def root_likelihood(self, matrices: ModelMatrices, D: np.ndarray, E: np.ndarray):
        """
        Weighted root likelihood, optionally conditioned on survival of both
        root lineages: sum_i w_i sum_jk C[i, j, k] (1 - E_j)(1 - E_k).
        """
        weights = self.root_weights(matrices, D)
        likelihood = (weights * D).sum(axis=0)
        if not self.config.condition_on_survival:
            return likelihood
        survival = 1.0 - E
        per_state = (matrices.cladogenesis @ survival) @ survival
        if D.ndim == 2:
            per_state = per_state[:, None]
        denominator = (weights * per_state).sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(denominator > 0, likelihood / denominator, np.nan)

    def _fail(self, message: str) -> PruningResult:
        logger.debug("Likelihood evaluation failed: %s", message)
        return PruningResult.failure(message)
