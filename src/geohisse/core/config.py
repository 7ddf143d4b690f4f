"""Likelihood evaluation settings."""

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .rate_matrix import ConfigurationError

ROOT_TYPES = ("madfitz", "equal", "equilibrium", "user")
SCHEDULES = ("waves", "postorder")


@dataclass
class LikelihoodConfig:
    """
    Settings shared by every likelihood evaluation of one engine.

    Attributes:
        solver: scipy.integrate.solve_ivp method ("LSODA", "Radau", "BDF",
            "RK45", "DOP853", ...)
        rtol: Relative ODE tolerance
        atol: Absolute ODE tolerance
        max_steps: Right-hand-side evaluation budget per branch (None = unbounded)
        negative_tolerance: How far below zero a probability may drift
            before the branch is declared invalid
        root_type: "madfitz" (weights D / sum D), "equal", "equilibrium"
            (stationary distribution of Q) or "user"
        root_weights: Explicit root weights when root_type is "user"
        condition_on_survival: Divide the root likelihood by the probability
            that both root lineages survive
        sampling_fraction: Fraction of extant species sampled per range (A, B, AB)
        schedule: "waves" (independence sets) or "postorder"
        max_workers: Worker threads per wave (1 = run inline)
    """

    solver: str = "LSODA"
    rtol: float = 1e-8
    atol: float = 1e-12
    max_steps: Optional[int] = 100000
    negative_tolerance: float = 1e-8
    root_type: str = "madfitz"
    root_weights: Optional[Sequence[float]] = None
    condition_on_survival: bool = True
    sampling_fraction: Sequence[float] = (1.0, 1.0, 1.0)
    schedule: str = "waves"
    max_workers: int = 1

    def __post_init__(self):
        if self.root_type not in ROOT_TYPES:
            raise ConfigurationError(f"root_type must be one of {ROOT_TYPES}, got {self.root_type!r}")
        if self.root_type == "user":
            if self.root_weights is None:
                raise ConfigurationError("root_type='user' requires root_weights")
            weights = np.asarray(self.root_weights, dtype=float)
            if np.any(weights < 0) or not np.isfinite(weights).all() or weights.sum() <= 0:
                raise ConfigurationError("root_weights must be non-negative with a positive sum")
        if self.schedule not in SCHEDULES:
            raise ConfigurationError(f"schedule must be one of {SCHEDULES}, got {self.schedule!r}")
        if self.rtol < 0 or self.atol < 0:
            raise ConfigurationError("ODE tolerances must be non-negative")
        if self.max_steps is not None and self.max_steps < 1:
            raise ConfigurationError("max_steps must be positive or None")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")

        fractions = np.asarray(self.sampling_fraction, dtype=float)
        if fractions.shape != (3,) or np.any(fractions <= 0) or np.any(fractions > 1):
            raise ConfigurationError(
                f"sampling_fraction needs three values in (0, 1], got {self.sampling_fraction!r}"
            )
        self.sampling_fraction = tuple(float(f) for f in fractions)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "LikelihoodConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**values)
