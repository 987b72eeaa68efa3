"""Probability densities and link functions callable from vital-rate expressions.

Every function here is vectorized (numpy broadcasting) because the kernel
builder evaluates expressions over a whole ``(destination, source)`` grid at
once. Names follow the conventions most IPM parameterizations are written in
(``dnorm``, ``plogis``, ...), argument order is ``(x, *parameters)``.

Continuous distributions also carry a CDF so eviction correction can compute
the closed-form mass inside a domain (truncated renormalization).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict

import numpy as np
import sympy as sp
from scipy import special, stats


def dnorm(x, mean=0.0, sd=1.0):
    return stats.norm.pdf(x, loc=mean, scale=sd)


def pnorm(q, mean=0.0, sd=1.0):
    return stats.norm.cdf(q, loc=mean, scale=sd)


def dlnorm(x, meanlog=0.0, sdlog=1.0):
    return stats.lognorm.pdf(x, s=sdlog, scale=np.exp(meanlog))


def plnorm(q, meanlog=0.0, sdlog=1.0):
    return stats.lognorm.cdf(q, s=sdlog, scale=np.exp(meanlog))


def dgamma(x, shape, rate=1.0):
    return stats.gamma.pdf(x, a=shape, scale=1.0 / np.asarray(rate, dtype=float))


def pgamma(q, shape, rate=1.0):
    return stats.gamma.cdf(q, a=shape, scale=1.0 / np.asarray(rate, dtype=float))


def dexp(x, rate=1.0):
    return stats.expon.pdf(x, scale=1.0 / np.asarray(rate, dtype=float))


def pexp(q, rate=1.0):
    return stats.expon.cdf(q, scale=1.0 / np.asarray(rate, dtype=float))


def dpois(x, lam):
    return stats.poisson.pmf(x, lam)


def dbinom(x, size, prob):
    return stats.binom.pmf(x, size, prob)


def plogis(x):
    """Inverse logit."""
    return special.expit(x)


def qlogis(p):
    """Logit."""
    return special.logit(p)


@dataclass(frozen=True)
class Distribution:
    """A continuous density with the CDF needed for truncation."""

    name: str
    pdf: Callable
    cdf: Callable

    def mass(self, lower: float, upper: float, *params) -> np.ndarray:
        """Probability mass of the distribution inside ``[lower, upper]``."""
        return np.asarray(self.cdf(upper, *params) - self.cdf(lower, *params), dtype=float)


# Functions that lambdified expressions may call by name.
FUNCTIONS: Dict[str, Callable] = {
    "dnorm": dnorm,
    "pnorm": pnorm,
    "dlnorm": dlnorm,
    "plnorm": plnorm,
    "dgamma": dgamma,
    "pgamma": pgamma,
    "dexp": dexp,
    "pexp": pexp,
    "dpois": dpois,
    "dbinom": dbinom,
    "plogis": plogis,
    "qlogis": qlogis,
}

# Names that parse directly into SymPy's own functions (printed as numpy calls).
MATH_FUNCTIONS: Dict[str, sp.FunctionClass] = {
    "exp": sp.exp,
    "log": sp.log,
    "sqrt": sp.sqrt,
    "abs": sp.Abs,
}

CONSTANTS: Dict[str, sp.Expr] = {
    "pi": sp.pi,
}

DISTRIBUTIONS: Dict[str, Distribution] = {
    "norm": Distribution("norm", dnorm, pnorm),
    "lnorm": Distribution("lnorm", dlnorm, plnorm),
    "gamma": Distribution("gamma", dgamma, pgamma),
    "exp": Distribution("exp", dexp, pexp),
}


def get_distribution(name: str) -> Distribution:
    key = name[1:] if name.startswith("d") and name[1:] in DISTRIBUTIONS else name
    if key not in DISTRIBUTIONS:
        raise ValueError(
            f"Unknown distribution '{name}'. Known: {sorted(DISTRIBUTIONS)}"
        )
    return DISTRIBUTIONS[key]
