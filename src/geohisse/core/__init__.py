"""Core GeoHiSSE engine: rate index, parameter mapping, pruning, reconstruction."""

from geohisse.core.states import RangeCategory, CompositeState, StateSpace
from geohisse.core.rate_matrix import (
    ConfigurationError,
    RateMatrixIndex,
    TransitionKind,
    build_rate_matrix,
)
from geohisse.core.parameters import (
    GeoHiSSEParameters,
    ModelMatrices,
    ParameterLayout,
    ParameterMapper,
    rates_to_turnover,
    turnover_to_rates,
)
from geohisse.core.config import LikelihoodConfig
from geohisse.core.propagator import (
    BranchPropagator,
    BranchResult,
    BranchSolver,
    ScipyIVPSolver,
)
from geohisse.core.trees import TreeStructure, TreeNode, TreeStructureError, load_tree
from geohisse.core.tip_observations import RangeTipObservation
from geohisse.core.data import TipData
from geohisse.core.pruning import (
    GeoHiSSEPruning,
    PruningResult,
    combine_children,
    equilibrium_frequencies,
)
from geohisse.core.reconstruction import MarginalReconstruction, ReconstructionResult
from geohisse.core.tree_inference import (
    GeoHiSSELikelihood,
    FitResult,
    NestedTest,
    fit_likelihood,
    nested_model_test,
)

__all__ = [
    "RangeCategory",
    "CompositeState",
    "StateSpace",
    "ConfigurationError",
    "RateMatrixIndex",
    "TransitionKind",
    "build_rate_matrix",
    "GeoHiSSEParameters",
    "ModelMatrices",
    "ParameterLayout",
    "ParameterMapper",
    "rates_to_turnover",
    "turnover_to_rates",
    "LikelihoodConfig",
    "BranchPropagator",
    "BranchResult",
    "BranchSolver",
    "ScipyIVPSolver",
    "TreeStructure",
    "TreeNode",
    "TreeStructureError",
    "load_tree",
    "RangeTipObservation",
    "TipData",
    "GeoHiSSEPruning",
    "PruningResult",
    "combine_children",
    "equilibrium_frequencies",
    "MarginalReconstruction",
    "ReconstructionResult",
    "GeoHiSSELikelihood",
    "FitResult",
    "NestedTest",
    "fit_likelihood",
    "nested_model_test",
]
