"""
Marginal ancestral-state reconstruction.

For a node n and state i, the marginal probability is proportional to the
likelihood of the whole tree with n fixed in state i. Because the D
equations are linear in D for a given E, fixing n in every state at once
amounts to replacing D_n by diag(D_n) (one column per state) and carrying
those columns up the path to the root. Everything off that path (sibling
subtrees, E values) is reused from the stored down pass, so each node costs
one multi-column integration per ancestor branch.

The root policy is applied per column, which keeps the answer identical to
fixing the node state and re-running the full pruning pass.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from .parameters import ModelMatrices
from .propagator import BranchPropagator
from .pruning import GeoHiSSEPruning, PruningResult, combine_children
from .states import RangeCategory, StateSpace

logger = logging.getLogger(__name__)


@dataclass
class ReconstructionResult:
    """
    Marginal state probabilities.

    Attributes:
        probabilities: One row per node (index = node id), one column per
            composite state, plus ``name`` and ``is_tip``
        log_likelihood: Log-likelihood of the down pass
        valid: False when the down pass failed (probabilities are NaN)
        space: State space of the columns
    """
    probabilities: pd.DataFrame
    log_likelihood: float
    valid: bool
    space: StateSpace

    @property
    def state_columns(self):
        return self.space.labels()

    def by_range(self) -> pd.DataFrame:
        """Collapse hidden classes: probability of A, B and AB per node."""
        out = self.probabilities[["name", "is_tip"]].copy()
        for r in RangeCategory:
            cols = [s.label for s in self.space if s.range is r]
            out[r.name] = self.probabilities[cols].sum(axis=1, min_count=1)
        return out

    def tips(self) -> pd.DataFrame:
        return self.probabilities[self.probabilities["is_tip"]]

    def internal(self) -> pd.DataFrame:
        return self.probabilities[~self.probabilities["is_tip"]]


class MarginalReconstruction:
    """
    Marginal reconstruction on top of a GeoHiSSEPruning engine.

    Usage:
        recon = MarginalReconstruction(engine)
        result = recon.reconstruct(mapper.map(params))
        result.by_range()
    """

    def __init__(self, engine: GeoHiSSEPruning):
        self.engine = engine

    def reconstruct(
        self,
        matrices: ModelMatrices,
        nodes: Optional[Iterable[int]] = None,
        include_tips: bool = True,
    ) -> ReconstructionResult:
        """
        Args:
            matrices: Model matrices at the parameter point to reconstruct
            nodes: Node ids to reconstruct (default: every node)
            include_tips: Include tips when ``nodes`` is None

        Returns:
            ReconstructionResult whose rows sum to 1
        """
        engine = self.engine
        tree = engine.tree
        if nodes is None:
            nodes = [i for i in range(tree.n_nodes) if include_tips or not tree.nodes[i].is_tip]
        nodes = [int(n) for n in nodes]

        down = engine.compute(matrices, keep_conditionals=True)
        n_states = engine.n_states
        table = np.full((len(nodes), n_states), np.nan)

        if down.valid:
            propagator = engine.make_propagator(matrices)

            def solve(node_id: int) -> np.ndarray:
                return self.node_log_likelihoods(matrices, down, propagator, node_id)

            with engine.worker_pool() as pool:
                rows = engine.run_batch(pool, solve, nodes)
            for row, log_liks in enumerate(rows):
                table[row] = _normalize(log_liks)
            failed = int(np.isnan(table).any(axis=1).sum())
            if failed:
                logger.warning("Marginal reconstruction failed for %d of %d nodes", failed, len(nodes))
        else:
            logger.warning("Down pass invalid (%s); reconstruction is undefined", down.message)

        frame = pd.DataFrame(table, index=pd.Index(nodes, name="node"), columns=engine.space.labels())
        frame.insert(0, "is_tip", [tree.nodes[n].is_tip for n in nodes])
        frame.insert(0, "name", [tree.node_label(n) for n in nodes])
        return ReconstructionResult(
            probabilities=frame,
            log_likelihood=down.log_likelihood,
            valid=down.valid,
            space=engine.space,
        )

    def node_log_likelihoods(
        self,
        matrices: ModelMatrices,
        down: PruningResult,
        propagator: BranchPropagator,
        node_id: int,
    ) -> np.ndarray:
        """Log-likelihood of the tree with ``node_id`` fixed in each state."""
        engine = self.engine
        tree = engine.tree
        C = matrices.cladogenesis
        n_states = engine.n_states

        D = np.diag(down.node_conditionals[node_id])
        E = down.node_extinction[node_id]
        scales = np.full(n_states, down.log_scales[node_id])
        current = node_id
        while True:
            branch = propagator.propagate(E, D, tree.branch_lengths[current])
            if not branch.valid:
                logger.debug("Reconstruction at node %d failed: %s", node_id, branch.message)
                return np.full(n_states, np.nan)
            D = branch.likelihood
            parent = tree.nodes[current].parent_id
            if parent is None:
                break
            sibling = tree.sibling(current)
            raw = combine_children(C, D, down.branch_conditionals[sibling])
            totals = raw.sum(axis=0)
            alive = totals > 0
            with np.errstate(divide="ignore", invalid="ignore"):
                scales = scales + down.log_scales[sibling] + np.log(totals)
            D = np.divide(raw, totals, out=np.zeros_like(raw), where=alive)
            E = down.node_extinction[parent]
            current = parent

        likelihood = engine.root_likelihood(matrices, D, down.branch_extinction[tree.root_index])
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(likelihood > 0, np.log(likelihood) + scales, -np.inf)


def _normalize(log_liks: np.ndarray) -> np.ndarray:
    if np.any(np.isnan(log_liks)) or not np.any(np.isfinite(log_liks)):
        return np.full(log_liks.shape, np.nan)
    weights = np.exp(log_liks - np.max(log_liks))
    return weights / weights.sum()
