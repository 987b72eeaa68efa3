"""Forward iteration of a built IPM and assembly of its iteration kernel."""

from __future__ import annotations

import logging
import warnings
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np

from .builder import SubKernel
from .config import IterationOptions, default_options, validate_options
from .errors import DimensionMismatch, NonConvergenceWarning, NumericalInvalidResult
from .model import IPM, Block, BlockLayout
from .registry import KernelRole

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILT = "built"
    ITERATING = "iterating"
    CONVERGED = "converged"
    DIVERGED = "diverged"


def project(
    subkernels: Iterable[SubKernel],
    layout: BlockLayout,
    vector: np.ndarray,
    *,
    transpose: bool = False,
) -> np.ndarray:
    """Apply one time step, block by block, without assembling the full matrix.

    With ``transpose=True`` the roles of source and destination are swapped,
    i.e. this computes ``K.T @ vector``.
    """
    if vector.shape != (layout.size,):
        raise DimensionMismatch(f"State vector must have shape ({layout.size},); got {vector.shape}")
    out = np.zeros(layout.size)
    for sk in subkernels:
        dest = layout.destination(sk)
        if dest is None:
            continue
        src = layout.source(sk)
        if transpose:
            out[layout.slice(src)] += sk.matrix.T @ vector[layout.slice(dest)]
        else:
            out[layout.slice(dest)] += sk.matrix @ vector[layout.slice(src)]
    return out


def assemble_iteration_kernel(subkernels: Iterable[SubKernel], layout: BlockLayout) -> np.ndarray:
    """Block-place sub-kernels into the single matrix equivalent to one time step."""
    K = np.zeros((layout.size, layout.size))
    for sk in subkernels:
        dest = layout.destination(sk)
        if dest is None:
            continue
        layout.check(sk)
        K[layout.slice(dest), layout.slice(layout.source(sk))] += sk.matrix
    return K


def shape_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Sum of absolute differences between the normalized shapes of two states."""
    sa, sb = float(np.sum(a)), float(np.sum(b))
    if sa <= 0 or sb <= 0:
        return float("inf")
    return float(np.sum(np.abs(a / sa - b / sb)))


def has_converged(series: List[np.ndarray], tolerance: float, window: int = 1) -> bool:
    """True when the last ``window`` step-to-step shape changes are all below ``tolerance``."""
    if len(series) < window + 1:
        return False
    return all(
        shape_distance(series[-k], series[-k - 1]) < tolerance for k in range(1, window + 1)
    )


def power_iterate(
    step: Callable[[np.ndarray], np.ndarray],
    start: np.ndarray,
    n_steps: int,
    *,
    normalize: bool = True,
) -> Tuple[List[np.ndarray], List[float], bool]:
    """Repeatedly apply ``step``.

    Returns
    -------
    (states, ratios, extinct)
        The ``n_steps`` new states (fewer if the population died out), the
        per-step growth ratios ``N(t+1) / N(t)`` and an extinction flag.
    """
    states: List[np.ndarray] = []
    ratios: List[float] = []
    current = start
    for _ in range(int(n_steps)):
        nxt = step(current)
        total_now, total_next = float(np.sum(current)), float(np.sum(nxt))
        if not np.isfinite(total_next):
            raise NumericalInvalidResult(
                "iteration", "population", "total size overflowed; enable normalize_pop_size"
            )
        if total_next <= 0:
            ratios.append(0.0)
            return states, ratios, True
        ratios.append(total_next / total_now)
        if normalize:
            nxt = nxt / total_next
        states.append(nxt)
        current = nxt
    return states, ratios, False


class IterationEngine:
    """Iterate an :class:`~ipm_analysis.model.IPM` forward in time.

    Lifecycle: ``UNINITIALIZED`` until :meth:`initialize` has built the
    sub-kernels and set a population state, then ``BUILT``; :meth:`iterate`
    moves through ``ITERATING`` to ``CONVERGED`` or ``DIVERGED``. Calling
    :meth:`iterate` again continues from the last state.

    The full population time series is retained.
    """

    def __init__(self, ipm: IPM, options: Optional[IterationOptions] = None) -> None:
        self.ipm = ipm
        self.options = options or default_options()
        validate_options(self.options)
        self.state = EngineState.UNINITIALIZED
        self.layout: Optional[BlockLayout] = None
        self._series: List[np.ndarray] = []
        self._lambdas: List[float] = []
        self._kernels: Dict[Optional[FrozenSet[KernelRole]], np.ndarray] = {}
        self._source: Optional[Dict[str, SubKernel]] = None

    # -----------------------------
    # Setup
    # -----------------------------

    @property
    def subkernels(self) -> Dict[str, SubKernel]:
        self.refresh()
        return self._source

    def refresh(self) -> bool:
        """Pick up sub-kernels rebuilt since the last call.

        Editing the model (``add_kernel``, ``define_domain``, ...) invalidates
        its sub-kernels; the next access rebuilds them and drops the cached
        iteration kernels. The population state survives when its length still
        matches the layout, otherwise the engine returns to ``UNINITIALIZED``.
        Returns True when anything changed.
        """
        current = self.ipm.subkernels
        if current is self._source:
            return False
        self._source = current
        self._kernels = {}
        self.layout = self.ipm.layout()
        if self.state != EngineState.UNINITIALIZED:
            if self._series and self._series[-1].shape == (self.layout.size,):
                self.state = EngineState.BUILT
            else:
                self._series = []
                self._lambdas = []
                self.state = EngineState.UNINITIALIZED
            logger.info("model '%s' changed; engine reset to %s", self.ipm.name, self.state.value)
        return True

    def initialize(self, population: Union[None, np.ndarray, Mapping[Any, Any]] = None) -> np.ndarray:
        """Set the initial population state (uniform over all bins by default).

        ``population`` may be a flat vector or a ``{block or label: vector}``
        mapping; missing blocks start empty.
        """
        self.refresh()

        if population is None:
            vec = np.ones(self.layout.size)
        elif isinstance(population, Mapping):
            vec = self.layout.join(population)
        else:
            vec = np.asarray(population, dtype=float)
            if vec.shape != (self.layout.size,):
                raise DimensionMismatch(
                    f"Initial population must have shape ({self.layout.size},); got {vec.shape}"
                )
        if not np.all(np.isfinite(vec)) or np.any(vec < 0):
            raise ValueError("Initial population must be finite and non-negative")
        total = float(vec.sum())
        if total <= 0:
            raise ValueError("Initial population has zero total size")
        if self.options.normalize_pop_size:
            vec = vec / total

        self._series = [vec]
        self._lambdas = []
        self.state = EngineState.BUILT
        return vec

    # -----------------------------
    # Iteration
    # -----------------------------

    def step(self, vector: np.ndarray) -> np.ndarray:
        subkernels = self.subkernels
        return project(subkernels.values(), self.layout, vector)

    def iterate(self, n_steps: Optional[int] = None) -> Dict[str, Any]:
        """Advance the population ``n_steps`` time steps (default ``options.n_iterations``).

        Non-convergence is not an error: the engine ends ``DIVERGED``, emits a
        :class:`~ipm_analysis.errors.NonConvergenceWarning` and still records
        every state and growth ratio.

        Returns
        -------
        dict with keys 'lambda', 'converged', 'iterations', 'state'.
        """
        self.refresh()
        if self.state == EngineState.UNINITIALIZED:
            raise RuntimeError("Engine has no population state; call initialize() first")
        n = int(n_steps if n_steps is not None else self.options.n_iterations)
        if n < 1:
            raise ValueError("n_steps must be positive")

        self.state = EngineState.ITERATING
        states, ratios, extinct = power_iterate(
            self.step, self._series[-1], n, normalize=self.options.normalize_pop_size
        )
        self._series.extend(states)
        self._lambdas.extend(ratios)

        converged = not extinct and has_converged(
            self._series, self.options.tolerance, self.options.convergence_window
        )
        if converged:
            self.state = EngineState.CONVERGED
            logger.info("converged after %d steps: lambda=%.10g", len(self._lambdas), self._lambdas[-1])
        else:
            self.state = EngineState.DIVERGED
            reason = "population went extinct" if extinct else (
                f"not converged to tolerance {self.options.tolerance:g} after {len(self._lambdas)} steps"
            )
            logger.warning("iteration of '%s': %s", self.ipm.name, reason)
            warnings.warn(f"IPM '{self.ipm.name}': {reason}", NonConvergenceWarning, stacklevel=2)

        return {
            "lambda": self._lambdas[-1],
            "converged": converged,
            "iterations": len(ratios),
            "state": self.state,
        }

    def is_converged(self) -> bool:
        return self.state == EngineState.CONVERGED

    # -----------------------------
    # Results
    # -----------------------------

    @property
    def lambda_(self) -> float:
        """Growth ratio of the last step (check :meth:`is_converged` before trusting it)."""
        if not self._lambdas:
            raise RuntimeError("No iterations have been run")
        return self._lambdas[-1]

    @property
    def lambda_series(self) -> np.ndarray:
        return np.array(self._lambdas, dtype=float)

    @property
    def population_series(self) -> np.ndarray:
        """All states as a ``(time, layout.size)`` array, initial state first."""
        if not self._series:
            raise RuntimeError("Engine has no population state; call initialize() first")
        return np.vstack(self._series)

    @property
    def n_steps(self) -> int:
        return len(self._lambdas)

    def current(self) -> np.ndarray:
        return self._series[-1]

    def population(self, t: int = -1) -> Dict[Block, np.ndarray]:
        return self.layout.split(self._series[t])

    def shape(self, t: int = -1) -> np.ndarray:
        """Normalized state (sums to 1) at time ``t``."""
        v = self._series[t]
        return v / float(np.sum(v))

    def time_series(self, state: str, index: Optional[int] = None) -> np.ndarray:
        """``(time, bins)`` history of one block."""
        return self.population_series[:, self.layout.slice(Block(state, index))]

    def iteration_kernel(self, roles: Optional[Iterable[Union[KernelRole, str]]] = None) -> np.ndarray:
        """The assembled iteration kernel, optionally restricted to some kernel roles.

        Built lazily and cached.
        """
        self.refresh()
        key = None if roles is None else frozenset(KernelRole(r) for r in roles)
        if key not in self._kernels:
            sks = self.subkernels.values() if key is None else [s for s in self.subkernels.values() if s.role in key]
            self._kernels[key] = assemble_iteration_kernel(sks, self.layout)
            logger.debug("assembled iteration kernel %s: shape=%s", sorted(key or []), self._kernels[key].shape)
        return self._kernels[key]
