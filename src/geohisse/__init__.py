"""
GeoHiSSE: likelihoods and ancestral ranges for geography-dependent
diversification with hidden states.
"""

__version__ = "0.1.0"

from geohisse.core.states import RangeCategory, StateSpace
from geohisse.core.rate_matrix import ConfigurationError, RateMatrixIndex, build_rate_matrix
from geohisse.core.parameters import GeoHiSSEParameters, ParameterLayout, ParameterMapper
from geohisse.core.config import LikelihoodConfig
from geohisse.core.trees import TreeStructure, TreeStructureError, load_tree
from geohisse.core.data import TipData
from geohisse.core.pruning import GeoHiSSEPruning, PruningResult
from geohisse.core.reconstruction import MarginalReconstruction, ReconstructionResult
from geohisse.core.tree_inference import GeoHiSSELikelihood, fit_likelihood, nested_model_test

__all__ = [
    "RangeCategory",
    "StateSpace",
    "ConfigurationError",
    "RateMatrixIndex",
    "build_rate_matrix",
    "GeoHiSSEParameters",
    "ParameterLayout",
    "ParameterMapper",
    "LikelihoodConfig",
    "TreeStructure",
    "TreeStructureError",
    "load_tree",
    "TipData",
    "GeoHiSSEPruning",
    "PruningResult",
    "MarginalReconstruction",
    "ReconstructionResult",
    "GeoHiSSELikelihood",
    "fit_likelihood",
    "nested_model_test",
    "__version__",
]
