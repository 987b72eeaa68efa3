"""Coefficient-set stand-ins for fitted regression models.

Kernel expressions may call any callable bound as a parameter, e.g.
``surv_mod(z_1)``. Regression fitting is somebody else's job; this module
only provides the smallest useful "evaluate(covariates) -> numbers" object
for models whose coefficients are already known.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from scipy import special


_LINKS = {
    "identity": lambda eta: eta,
    "logit": special.expit,
    "log": np.exp,
}


@dataclass(frozen=True)
class CoefficientModel:
    """A generalized linear predictor ``link^-1(intercept + Σ slope_i * x_i)``.

    Parameters
    ----------
    intercept:
        Intercept on the link scale.
    slopes:
        One slope per positional covariate.
    link:
        ``"identity"``, ``"logit"`` or ``"log"``.
    """

    intercept: float
    slopes: Sequence[float] = field(default_factory=tuple)
    link: str = "identity"

    def __post_init__(self) -> None:
        if self.link not in _LINKS:
            raise ValueError(f"Unknown link '{self.link}'. Known: {sorted(_LINKS)}")
        object.__setattr__(self, "slopes", tuple(float(s) for s in self.slopes))

    def linear_predictor(self, *covariates) -> np.ndarray:
        if len(covariates) != len(self.slopes):
            raise ValueError(
                f"Expected {len(self.slopes)} covariates, got {len(covariates)}"
            )
        eta = np.asarray(self.intercept, dtype=float)
        for b, x in zip(self.slopes, covariates):
            eta = eta + b * np.asarray(x, dtype=float)
        return eta

    def __call__(self, *covariates) -> np.ndarray:
        return _LINKS[self.link](self.linear_predictor(*covariates))
