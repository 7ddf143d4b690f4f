"""
Likelihood-function adapter and maximum-likelihood fitting.

The engine is exposed to optimizers as a pure function of a flat
parameter vector; the tree, tip data and rate index are fixed context.
Invalid parameter points come back as -inf, which ``objective`` turns
into a large finite penalty so a bounded search can step away from them.

Nested models (for example a ``make_null`` index against the full
index on the same tree and tips) are compared with ``nested_model_test``.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import optimize, stats

from .parameters import GeoHiSSEParameters, ParameterLayout, ParameterMapper
from .pruning import GeoHiSSEPruning, PruningResult
from .rate_matrix import ConfigurationError

logger = logging.getLogger(__name__)

INVALID_PENALTY = 1e10


class GeoHiSSELikelihood:
    """
    GeoHiSSE log-likelihood as a function of a flat parameter vector.

    Args:
        engine: Pruning engine holding tree, tips, index and settings
        mapper: Parameter mapper (default: cladogenetic model, mean tie)
        layout: Parameter layout (default: every state free)
        upper: Optional (turnover_upper, eps_upper, rate_upper) for bounds()
    """

    def __init__(
        self,
        engine: GeoHiSSEPruning,
        mapper: Optional[ParameterMapper] = None,
        layout: Optional[ParameterLayout] = None,
        upper: Optional[Tuple[float, float, float]] = None,
    ):
        self.engine = engine
        self.mapper = mapper or ParameterMapper(engine.index)
        self.layout = layout or ParameterLayout(engine.index)
        if self.mapper.index is not engine.index or self.layout.index is not engine.index:
            raise ConfigurationError("Mapper and layout must share the engine's rate index")
        self._upper = upper

    @property
    def names(self) -> List[str]:
        return self.layout.names

    @property
    def n_free(self) -> int:
        return self.layout.size

    def bounds(self) -> List[Tuple[float, float]]:
        return self.layout.bounds(*self._upper) if self._upper else self.layout.bounds()

    def initial(self) -> np.ndarray:
        return self.layout.initial()

    def parameters(self, vector: Sequence[float]) -> GeoHiSSEParameters:
        return self.layout.unpack(vector)

    def evaluate(self, vector: Sequence[float]) -> PruningResult:
        return self.engine.compute(self.mapper.map(self.layout.unpack(vector)))

    def __call__(self, vector: Sequence[float]) -> float:
        return self.evaluate(vector).log_likelihood

    def objective(self) -> Callable[[np.ndarray], float]:
        """Negative log-likelihood with -inf replaced by ``INVALID_PENALTY``."""

        def neg_ll(x: np.ndarray) -> float:
            ll = self(x)
            if not np.isfinite(ll):
                return INVALID_PENALTY
            return -ll

        return neg_ll


@dataclass
class FitResult:
    """
    Maximum-likelihood fit of one GeoHiSSE model.

    Attributes:
        vector: Fitted flat parameter vector
        names: Parameter names in vector order
        parameters: Fitted point as GeoHiSSEParameters
        log_likelihood: Log-likelihood at the fitted point (-inf if the
            search never left the invalid region)
        n_free: Number of free parameters
        converged: Whether the optimizer reported success
        message: Optimizer message
        evaluations: Number of likelihood evaluations
    """

    vector: np.ndarray
    names: List[str]
    parameters: GeoHiSSEParameters
    log_likelihood: float
    n_free: int
    converged: bool = True
    message: str = ""
    evaluations: int = 0

    @property
    def aic(self) -> float:
        return 2.0 * self.n_free - 2.0 * self.log_likelihood

    def named(self) -> Dict[str, float]:
        return dict(zip(self.names, self.vector.tolist()))


def fit_likelihood(
    likelihood: GeoHiSSELikelihood,
    x0: Optional[Sequence[float]] = None,
    method: str = "L-BFGS-B",
    maxiter: int = 1000,
    tol: float = 1e-6,
) -> FitResult:
    """
    Maximize a GeoHiSSE likelihood with scipy.optimize.minimize.

    Args:
        likelihood: Vector likelihood to maximize
        x0: Starting vector (default: ``likelihood.initial()``)
        method: Bounded scipy method
        maxiter: Iteration limit
        tol: Convergence tolerance

    Raises:
        ConfigurationError: If the starting vector is itself invalid
    """
    start = likelihood.initial() if x0 is None else np.asarray(x0, dtype=float)
    if not np.isfinite(likelihood(start)):
        raise ConfigurationError("Starting point has zero likelihood; choose another x0")

    result = optimize.minimize(
        likelihood.objective(),
        start,
        method=method,
        bounds=likelihood.bounds(),
        options={"maxiter": maxiter},
        tol=tol,
    )
    if not result.success:
        warnings.warn(f"Optimization did not converge: {result.message}")

    log_lik = -float(result.fun) if result.fun < INVALID_PENALTY else float("-inf")
    logger.info(
        "Fit of %d parameters: LL=%.4f after %d evaluations",
        likelihood.n_free, log_lik, result.nfev,
    )
    return FitResult(
        vector=np.asarray(result.x, dtype=float),
        names=likelihood.names,
        parameters=likelihood.parameters(result.x),
        log_likelihood=log_lik,
        n_free=likelihood.n_free,
        converged=bool(result.success),
        message=str(result.message),
        evaluations=int(result.nfev),
    )


@dataclass
class NestedTest:
    """
    Likelihood ratio test of a constrained fit against a richer one.

    Attributes:
        null: Constrained fit (e.g. a make_null index)
        full: Unconstrained fit on the same tree and tips
        statistic: 2 * (LL_full - LL_null), clipped at 0
        df: Difference in free parameters
        pvalue: Chi-squared upper tail probability
    """

    null: FitResult
    full: FitResult
    statistic: float
    df: int
    pvalue: float

    def significant(self, alpha: float = 0.05) -> bool:
        return self.pvalue < alpha


def nested_model_test(null: FitResult, full: FitResult) -> NestedTest:
    """
    Compare nested GeoHiSSE fits.

    Raises:
        ConfigurationError: If ``full`` does not have more free parameters
            or either fit has no finite log-likelihood
    """
    df = full.n_free - null.n_free
    if df <= 0:
        raise ConfigurationError(
            f"Full model needs more free parameters than the null model "
            f"(null={null.n_free}, full={full.n_free})"
        )
    if not (np.isfinite(null.log_likelihood) and np.isfinite(full.log_likelihood)):
        raise ConfigurationError("Both fits need a finite log-likelihood")

    statistic = 2.0 * (full.log_likelihood - null.log_likelihood)
    if statistic < 0:
        # the full model contains the null, so its optimum was not reached
        logger.warning("Negative likelihood ratio %.4f clipped to 0; refit the full model", statistic)
        statistic = 0.0
    return NestedTest(
        null=null,
        full=full,
        statistic=statistic,
        df=df,
        pvalue=float(stats.chi2.sf(statistic, df)),
    )
