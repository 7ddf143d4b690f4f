"""
Branch propagation for GeoHiSSE.

Integrates the extinction probabilities E and likelihood densities D along
one branch, from the tip-ward end (time 0) to the root-ward end (time t):

    dE/dt = x - (lambda + x) E + Q E + C:(E, E)
    dD/dt = -(lambda + x) D + Q D + 2 C:(D, E)

where C[i, j, k] is the cladogenesis tensor and lambda_i = sum_jk C[i, j, k].
D may carry several columns; they share E and are integrated together.

The ODE solver sits behind the BranchSolver protocol so stiff and non-stiff
methods can be swapped. A failed integration is reported as an invalid
BranchResult, never raised.
"""

import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np
from scipy.integrate import solve_ivp

from .config import LikelihoodConfig
from .parameters import ModelMatrices
from .rate_matrix import ConfigurationError

logger = logging.getLogger(__name__)

IVP_METHODS = ("RK23", "RK45", "DOP853", "Radau", "BDF", "LSODA")

# scipy drives LSODA through a single global integrator handle
_LSODA_LOCK = threading.Lock()


class StepBudgetExceeded(RuntimeError):
    """Raised inside the right-hand side when a branch uses up its budget."""


class NonFiniteDerivative(ArithmeticError):
    """Raised inside the right-hand side when the derivatives overflow."""


@dataclass
class SolverOutcome:
    y: Optional[np.ndarray]
    success: bool
    message: str = ""


class BranchSolver(Protocol):
    """Integrates dy/dt = rhs(t, y) from 0 to ``length``."""

    def integrate(
        self,
        rhs: Callable[[float, np.ndarray], np.ndarray],
        y0: np.ndarray,
        length: float,
        rtol: float,
        atol: float,
    ) -> SolverOutcome:
        ...


class ScipyIVPSolver:
    """BranchSolver backed by scipy.integrate.solve_ivp."""

    def __init__(self, method: str = "LSODA"):
        if method not in IVP_METHODS:
            raise ConfigurationError(f"Unknown ODE method {method!r}; choose from {IVP_METHODS}")
        self.method = method

    def integrate(self, rhs, y0, length, rtol, atol) -> SolverOutcome:
        lock = _LSODA_LOCK if self.method == "LSODA" else nullcontext()
        with lock:
            sol = solve_ivp(rhs, (0.0, float(length)), y0, method=self.method, rtol=rtol, atol=atol)
        if sol.status != 0:
            return SolverOutcome(None, False, str(sol.message))
        return SolverOutcome(sol.y[:, -1], True)

    def __repr__(self) -> str:
        return f"ScipyIVPSolver(method={self.method!r})"


@dataclass
class BranchResult:
    """
    State at the root-ward end of a branch.

    Attributes:
        extinction: (S,) extinction probabilities E
        likelihood: (S,) or (S, m) likelihood densities D
        valid: False when integration failed or produced impossible values
        message: Failure reason
    """

    extinction: Optional[np.ndarray]
    likelihood: Optional[np.ndarray]
    valid: bool = True
    message: str = ""

    @classmethod
    def failure(cls, message: str) -> "BranchResult":
        return cls(extinction=None, likelihood=None, valid=False, message=message)


class BranchPropagator:
    """
    Single-branch ODE integration for one parameter point.

    Instances hold only read-only model matrices; every call to
    ``propagate`` builds its own integration workspace, so one propagator
    can be shared by concurrent workers.
    """

    def __init__(
        self,
        matrices: ModelMatrices,
        solver: Optional[BranchSolver] = None,
        rtol: float = 1e-8,
        atol: float = 1e-12,
        max_steps: Optional[int] = 100000,
        negative_tolerance: float = 1e-8,
    ):
        self.matrices = matrices
        self.solver = solver or ScipyIVPSolver()
        self.rtol = rtol
        self.atol = atol
        self.max_steps = max_steps
        self.negative_tolerance = negative_tolerance

        self.n_states = matrices.n_states
        self._Q = matrices.Q
        self._C = matrices.cladogenesis
        self._x = matrices.extinction
        self._outflow = matrices.total_speciation + matrices.extinction

    @classmethod
    def from_config(
        cls,
        matrices: ModelMatrices,
        config: LikelihoodConfig,
        solver: Optional[BranchSolver] = None,
    ) -> "BranchPropagator":
        return cls(
            matrices,
            solver=solver or ScipyIVPSolver(config.solver),
            rtol=config.rtol,
            atol=config.atol,
            max_steps=config.max_steps,
            negative_tolerance=config.negative_tolerance,
        )

    def derivatives(self, extinction: np.ndarray, likelihood: np.ndarray):
        """Right-hand side of the branch ODEs as (dE, dD)."""
        E = extinction
        D = likelihood
        CE = self._C @ E
        dE = self._x - self._outflow * E + self._Q @ E + CE @ E
        if D.ndim == 1:
            dD = -self._outflow * D + self._Q @ D + 2.0 * (CE @ D)
        else:
            dD = -self._outflow[:, None] * D + self._Q @ D + 2.0 * (CE @ D)
        return dE, dD

    def propagate(
        self,
        extinction: np.ndarray,
        likelihood: np.ndarray,
        length: float,
    ) -> BranchResult:
        """
        Integrate (E, D) along a branch of the given length.

        Args:
            extinction: (S,) E at the tip-ward end
            likelihood: (S,) or (S, m) D at the tip-ward end
            length: Branch length

        Returns:
            BranchResult at the root-ward end
        """
        if not self.matrices.valid:
            return BranchResult.failure(self.matrices.message or "invalid model matrices")

        E0 = np.asarray(extinction, dtype=float)
        D0 = np.asarray(likelihood, dtype=float)
        if length <= 0.0:
            return BranchResult(E0.copy(), D0.copy())

        n = self.n_states
        shape = D0.shape
        budget = self.max_steps
        calls = [0]

        def rhs(t, y):
            calls[0] += 1
            if budget is not None and calls[0] > budget:
                raise StepBudgetExceeded(f"exceeded {budget} right-hand-side evaluations")
            dE, dD = self.derivatives(y[:n], y[n:].reshape(shape))
            dy = np.concatenate([dE, dD.ravel()])
            if not np.all(np.isfinite(dy)):
                raise NonFiniteDerivative(f"non-finite derivatives at t={t:g}")
            return dy

        y0 = np.concatenate([E0, D0.ravel()])
        # Radau and BDF raise ValueError (LinAlgError included) from the LU
        # step when the Jacobian is singular or non-finite
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            try:
                outcome = self.solver.integrate(rhs, y0, length, self.rtol, self.atol)
            except (StepBudgetExceeded, ArithmeticError, ValueError) as e:
                outcome = SolverOutcome(None, False, str(e))

        if not outcome.success:
            logger.debug("Branch integration failed (t=%g): %s", length, outcome.message)
            return BranchResult.failure(f"solver failure: {outcome.message}")

        return self._check(outcome.y[:n].copy(), outcome.y[n:].reshape(shape).copy())

    def _check(self, E: np.ndarray, D: np.ndarray) -> BranchResult:
        tol = self.negative_tolerance
        if not (np.all(np.isfinite(E)) and np.all(np.isfinite(D))):
            message = "non-finite probabilities"
        elif np.any(E < -tol) or np.any(E > 1.0 + tol):
            message = "extinction probability outside [0, 1]"
        elif np.any(D < -tol):
            message = "negative likelihood density"
        else:
            return BranchResult(E, D)
        logger.debug("Branch result rejected: %s", message)
        return BranchResult.failure(message)
