"""Discretized state domains and eviction correction.

A continuous state variable is represented by a :class:`Domain` whose bins
have uniform width; kernels are evaluated at bin midpoints (midpoint rule).
Discrete states (seed banks, stage classes) are :class:`DiscreteState` objects
with an explicit size and no placeholders.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .densities import Distribution, get_distribution
from .errors import DimensionMismatch


@dataclass(frozen=True)
class Domain:
    """A continuous state variable on ``[lower, upper]`` split into ``n`` bins.

    Parameters
    ----------
    name:
        State name. Expressions refer to it as ``<name>_1`` (source) and
        ``<name>_2`` (destination).
    lower, upper:
        Domain bounds, ``lower < upper``.
    n:
        Number of bins, ``n > 0``.
    """

    name: str
    lower: float
    upper: float
    n: int

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Domain name must be non-empty")
        if not np.isfinite(self.lower) or not np.isfinite(self.upper):
            raise ValueError(f"Domain '{self.name}' bounds must be finite")
        if not self.lower < self.upper:
            raise ValueError(f"Domain '{self.name}' needs lower < upper; got [{self.lower}, {self.upper}]")
        if int(self.n) != self.n or self.n <= 0:
            raise ValueError(f"Domain '{self.name}' needs a positive integer bin count; got {self.n}")
        object.__setattr__(self, "n", int(self.n))
        object.__setattr__(self, "lower", float(self.lower))
        object.__setattr__(self, "upper", float(self.upper))

    is_continuous = True

    @property
    def width(self) -> float:
        return (self.upper - self.lower) / self.n

    @property
    def midpoints(self) -> np.ndarray:
        return self.lower + (np.arange(self.n) + 0.5) * self.width

    @property
    def edges(self) -> np.ndarray:
        return np.linspace(self.lower, self.upper, self.n + 1)


@dataclass(frozen=True)
class DiscreteState:
    """A discrete state with ``size`` classes (usually 1)."""

    name: str
    size: int = 1

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("State name must be non-empty")
        if int(self.size) != self.size or self.size <= 0:
            raise ValueError(f"Discrete state '{self.name}' needs a positive size; got {self.size}")
        object.__setattr__(self, "size", int(self.size))

    is_continuous = False

    @property
    def n(self) -> int:
        return self.size

    @property
    def width(self) -> float:
        return 1.0

    @property
    def midpoints(self) -> np.ndarray:
        return np.arange(self.size, dtype=float)


State = Union[Domain, DiscreteState]


def define_domain(state_name: str, lower: float, upper: float, bin_count: int) -> Domain:
    return Domain(state_name, lower, upper, bin_count)


def build_mesh(domain: Domain) -> Tuple[np.ndarray, float]:
    """Return ``(midpoints, width)`` for a domain."""
    return domain.midpoints, domain.width


def grid(start: State, end: State) -> Tuple[np.ndarray, np.ndarray]:
    """Cartesian product of source and destination midpoints.

    Returns
    -------
    (source, destination)
        Two arrays of shape ``(end.n, start.n)``; rows index the destination,
        columns the source.
    """
    dest, src = np.meshgrid(end.midpoints, start.midpoints, indexing="ij")
    return src, dest


# -----------------------------
# Eviction correction
# -----------------------------

EVICTION_METHODS = ("rescale", "truncated_distribution")


@dataclass(frozen=True)
class Eviction:
    """Correction for density mass that falls outside the destination domain.

    Parameters
    ----------
    target:
        Name of the sub-term holding the density (e.g. the growth density ``g``).
    method:
        ``"rescale"`` divides each source column by its discretized mass so
        that ``sum(g * width) == 1``. ``"truncated_distribution"`` divides by
        the closed-form mass of the distribution inside ``[lower, upper]``
        and then renormalizes the columns the same way; the target must then be a direct density call such as
        ``dnorm(z_2, mu_g, sd_g)``.
    distribution:
        Distribution family for ``"truncated_distribution"`` (``"norm"``,
        ``"lnorm"``, ...). When omitted it is inferred from the density call;
        unknown names raise ``ValueError`` at build time.
    """

    target: str
    method: str = "rescale"
    distribution: Optional[str] = None

    def __post_init__(self) -> None:
        if self.method not in EVICTION_METHODS:
            raise ValueError(f"Unknown eviction method '{self.method}'. Known: {EVICTION_METHODS}")

    def resolve_distribution(self, function_name: str) -> Distribution:
        return get_distribution(self.distribution or function_name)


def rescale_columns(values: np.ndarray, width: float) -> np.ndarray:
    """Renormalize each column so that ``values[:, j].sum() * width == 1``.

    All-zero columns produce NaN, which the builder reports as an invalid
    result rather than silently keeping them.
    """
    values = np.asarray(values, dtype=float)
    if values.ndim != 2:
        raise DimensionMismatch(f"Expected a 2-D grid, got shape {values.shape}")
    with np.errstate(divide="ignore", invalid="ignore"):
        return values / (values.sum(axis=0, keepdims=True) * width)


def truncate_density(
    values: np.ndarray,
    distribution: Distribution,
    domain: Domain,
    params: Sequence[np.ndarray],
) -> np.ndarray:
    """Truncate a density grid to ``[domain.lower, domain.upper]``.

    The grid is divided by the closed-form mass of the distribution inside the
    domain, then each column is renormalized so that the midpoint sum
    ``values[:, j].sum() * width`` is exactly 1.
    """
    mass = distribution.mass(domain.lower, domain.upper, *params)
    with np.errstate(divide="ignore", invalid="ignore"):
        truncated = np.asarray(values, dtype=float) / mass
    return rescale_columns(truncated, domain.width)
