from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import scipy.linalg

from .config import IterationOptions
from .errors import DimensionMismatch, NonConvergenceWarning, SingularOperator
from .iteration import EngineState, IterationEngine, has_converged, power_iterate, project
from .model import IPM
from .registry import KernelRole

logger = logging.getLogger(__name__)


def dominant_eigen(matrix: np.ndarray) -> Tuple[float, np.ndarray]:
    """Return the dominant eigenvalue magnitude and its eigenvector (non-negative, sums to 1)."""
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise DimensionMismatch(f"Expected a square matrix, got shape {matrix.shape}")
    vals, vecs = scipy.linalg.eig(matrix)
    k = int(np.argmax(np.abs(vals)))
    vec = np.abs(np.real(vecs[:, k]))
    total = float(vec.sum())
    if total > 0:
        vec = vec / total
    logger.debug("eigen solve: n=%d, dominant=%.10g", matrix.shape[0], float(np.abs(vals[k])))
    return float(np.abs(vals[k])), vec


def sensitivity(w: np.ndarray, v: np.ndarray, d: float) -> np.ndarray:
    """``outer(v, w) / (v . w * d)``: sensitivity of lambda to each kernel entry."""
    w = np.asarray(w, dtype=float)
    v = np.asarray(v, dtype=float)
    if w.shape != v.shape or w.ndim != 1:
        raise DimensionMismatch(f"w and v must be vectors of equal length; got {w.shape} and {v.shape}")
    denom = float(v @ w) * float(d)
    if denom == 0:
        raise ValueError("v . w * d is zero; sensitivity is undefined")
    return np.outer(v, w) / denom


def elasticity(sens: np.ndarray, kernel: np.ndarray, d: float, lam: float) -> np.ndarray:
    """``sens * (K / d) / lambda`` elementwise.

    For a consistent ``(w, v, lambda)`` the elasticities integrate to one,
    i.e. ``elas.sum() * d**2 == 1``.
    """
    if sens.shape != kernel.shape:
        raise DimensionMismatch(f"Sensitivity {sens.shape} and kernel {kernel.shape} differ in shape")
    return sens * (kernel / float(d)) / float(lam)


def net_reproductive_rate(P: np.ndarray, F: np.ndarray, *, singular_tolerance: float = 1e-12) -> float:
    """Dominant eigenvalue of ``F (I - P)^-1``.

    Raises
    ------
    SingularOperator
        If ``I - P`` is not invertible or ``P`` has spectral radius >= 1
        (unbounded expected lifetime).
    """
    P = np.asarray(P, dtype=float)
    F = np.asarray(F, dtype=float)
    if P.shape != F.shape or P.ndim != 2 or P.shape[0] != P.shape[1]:
        raise DimensionMismatch(f"P {P.shape} and F {F.shape} must be square and of equal shape")

    rho = float(np.max(np.abs(scipy.linalg.eigvals(P))))
    if rho >= 1.0 - singular_tolerance:
        raise SingularOperator(
            f"Survival kernel has spectral radius {rho:.6g} >= 1; I - P has no meaningful inverse"
        )

    ident = np.eye(P.shape[0])
    try:
        N = scipy.linalg.solve(ident - P, ident)
    except scipy.linalg.LinAlgError as exc:
        raise SingularOperator(f"I - P is singular: {exc}") from exc
    if not np.all(np.isfinite(N)):
        raise SingularOperator("I - P could not be inverted to a finite matrix")

    r0, _ = dominant_eigen(F @ N)
    return r0


@dataclass
class IPMAnalyzer:
    """Eigen-analysis and derived demographic metrics.

    Parameters
    ----------
    engine:
        An :class:`~ipm_analysis.iteration.IterationEngine`. Methods that need
        a converged population initialize and iterate it on demand.
    """

    engine: IterationEngine

    @classmethod
    def from_model(cls, ipm: IPM, options: Optional[IterationOptions] = None) -> "IPMAnalyzer":
        return cls(IterationEngine(ipm, options))

    @property
    def ipm(self) -> IPM:
        return self.engine.ipm

    @property
    def options(self) -> IterationOptions:
        return self.engine.options

    def _ensure_iterated(self) -> None:
        self.engine.refresh()
        if self.engine.state == EngineState.UNINITIALIZED:
            self.engine.initialize()
        if self.engine.state == EngineState.BUILT:
            self.engine.iterate()

    # ---------------------------------------------------------------------
    # Growth rate and eigenvectors
    # ---------------------------------------------------------------------

    def lambda_(self, method: str = "iteration") -> float:
        """Asymptotic growth rate.

        ``"iteration"`` returns the last growth ratio of forward iteration
        (cheap; check ``engine.is_converged()``). ``"eigen"`` returns the
        dominant eigenvalue of the assembled iteration kernel.
        """
        if method == "iteration":
            self._ensure_iterated()
            return self.engine.lambda_
        if method == "eigen":
            lam, _ = dominant_eigen(self.engine.iteration_kernel())
            return lam
        raise ValueError(f"Unknown method '{method}'; use 'iteration' or 'eigen'")

    def _lambda_value(self) -> float:
        self._ensure_iterated()
        if self.engine.is_converged():
            return self.engine.lambda_
        return self.lambda_(method="eigen")

    def right_ev(self) -> Dict[str, Any]:
        """Stable state distribution (sums to 1).

        Reuses the engine's final state when it has converged; otherwise
        continues iterating for ``options.n_iterations`` steps from the
        current state.

        Returns
        -------
        dict with keys:
          - 'w': flat stable distribution
          - 'blocks': the same split into ``{Block: vector}``
          - 'converged': whether forward iteration converged
          - 'iterations': total steps the engine has run
        """
        self._ensure_iterated()
        if not self.engine.is_converged():
            self.engine.iterate()
        converged = self.engine.is_converged()
        w = self.engine.shape()
        return {
            "w": w,
            "blocks": self.engine.layout.split(w),
            "converged": converged,
            "iterations": self.engine.n_steps,
        }

    def left_ev(self, n_iterations: Optional[int] = None) -> Dict[str, Any]:
        """Reproductive value distribution by iterating the transposed system.

        Returns
        -------
        dict with keys 'v' (non-negative, sums to 1), 'blocks', 'converged',
        'iterations' and 'lambda' (growth ratio of the transposed iteration).
        """
        sks = list(self.engine.subkernels.values())
        layout = self.engine.layout
        n = int(n_iterations or self.options.n_iterations)

        start = np.full(layout.size, 1.0 / layout.size)
        states, ratios, extinct = power_iterate(
            lambda v: project(sks, layout, v, transpose=True), start, n, normalize=True
        )
        series = [start] + states
        converged = not extinct and has_converged(series, self.options.tolerance, self.options.convergence_window)
        if not converged:
            logger.warning("transpose iteration of '%s' did not converge in %d steps", self.ipm.name, n)
            warnings.warn(
                f"IPM '{self.ipm.name}': left eigenvector did not converge in {n} steps",
                NonConvergenceWarning,
                stacklevel=2,
            )
        v = series[-1] / float(np.sum(series[-1]))
        return {
            "v": v,
            "blocks": layout.split(v),
            "converged": converged,
            "iterations": len(states),
            "lambda": ratios[-1] if ratios else float("nan"),
        }

    # ---------------------------------------------------------------------
    # Perturbation analysis
    # ---------------------------------------------------------------------

    def sensitivity(
        self,
        w: Optional[np.ndarray] = None,
        v: Optional[np.ndarray] = None,
        d: Optional[float] = None,
    ) -> np.ndarray:
        """Sensitivity matrix over (destination, source) pairs of the iteration kernel."""
        w = self.right_ev()["w"] if w is None else w
        v = self.left_ev()["v"] if v is None else v
        d = self.ipm.continuous_width() if d is None else d
        return sensitivity(w, v, d)

    def elasticity(
        self,
        w: Optional[np.ndarray] = None,
        v: Optional[np.ndarray] = None,
        d: Optional[float] = None,
        lam: Optional[float] = None,
    ) -> np.ndarray:
        d = self.ipm.continuous_width() if d is None else d
        sens = self.sensitivity(w, v, d)
        lam = self._lambda_value() if lam is None else lam
        return elasticity(sens, self.engine.iteration_kernel(), d, lam)

    # ---------------------------------------------------------------------
    # Life history
    # ---------------------------------------------------------------------

    def _role_kernel(self, role: KernelRole) -> np.ndarray:
        if not self.ipm.subkernels_by_role([role]):
            raise ValueError(f"IPM '{self.ipm.name}' has no kernels with role '{role.value}'")
        return self.engine.iteration_kernel([role])

    def r0(self) -> float:
        """Net reproductive rate from the survival (P) and fecundity (F) kernels."""
        P = self._role_kernel(KernelRole.SURVIVAL)
        F = self._role_kernel(KernelRole.FECUNDITY)
        return net_reproductive_rate(P, F, singular_tolerance=self.options.singular_tolerance)

    def generation_time(self) -> float:
        """``log(R0) / log(lambda)``; undefined (ValueError) when lambda == 1."""
        r0 = self.r0()
        lam = self._lambda_value()
        if r0 <= 0 or lam <= 0:
            raise ValueError(f"Generation time needs R0 > 0 and lambda > 0; got R0={r0}, lambda={lam}")
        log_lam = math.log(lam)
        if abs(log_lam) < 1e-12:
            raise ValueError("Generation time is undefined when lambda == 1")
        return math.log(r0) / log_lam

    def _index_operator(self, role: KernelRole, index: Optional[int]) -> np.ndarray:
        """Within-index operator of one role: maps an age-``index`` state to the next."""
        layout = self.ipm.layout()
        M = np.zeros((layout.local_size, layout.local_size))
        for sk in self.ipm.subkernels_by_role([role]):
            if sk.index != index or layout.destination(sk) is None:
                continue
            M[layout.local_slice(sk.state_end), layout.local_slice(sk.state_start)] += sk.matrix
        return M

    def age_specific_vital_rates(
        self,
        c: Optional[np.ndarray] = None,
        n_ages: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Age-specific survivorship ``l_a`` and fertility ``f_a`` of a newborn cohort.

        The cohort ``c`` (normalized to sum 1; uniform by default) passes
        through the kernels met by following :meth:`IndexSet.next_value` from the
        first index, e.g. ``P_0, P_1, ..., P_M, P_{M+1}, P_{M+1}, ...`` for an
        absorbing terminal. Without an absorbing terminal the cohort dies after
        the last index. For models without an index set every age uses the same
        P and F.

        Returns
        -------
        dict with keys 'ages', 'l_a', 'f_a', 'kernel_index' and
        'R0_lifetable' (``sum(l_a * f_a)`` over the reported ages).
        """
        n_ages = int(n_ages or self.options.lifetable_ages)
        index_set = self.ipm.index_set
        layout = self.ipm.layout()

        if index_set is None:
            P = self._role_kernel(KernelRole.SURVIVAL)
            F = self._role_kernel(KernelRole.FECUNDITY)
            size = layout.size

            def operators(age: int) -> Tuple[Optional[int], np.ndarray, np.ndarray]:
                return None, P, F
        else:
            self._role_kernel(KernelRole.SURVIVAL)
            self._role_kernel(KernelRole.FECUNDITY)
            size = layout.local_size
            cache: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
            walk: List[Optional[int]] = []
            k: Optional[int] = index_set.first
            for _ in range(n_ages):
                walk.append(k)
                if k is not None:
                    k = index_set.next_value(k)

            def operators(age: int) -> Tuple[Optional[int], np.ndarray, np.ndarray]:
                k = walk[age]
                if k is None:
                    zero = np.zeros((size, size))
                    return None, zero, zero
                if k not in cache:
                    cache[k] = (
                        self._index_operator(KernelRole.SURVIVAL, k),
                        self._index_operator(KernelRole.FECUNDITY, k),
                    )
                return (k,) + cache[k]

        if c is None:
            c = np.ones(size)
        c = np.asarray(c, dtype=float)
        if c.shape != (size,):
            raise DimensionMismatch(f"Cohort vector must have shape ({size},); got {c.shape}")
        if np.any(c < 0) or c.sum() <= 0:
            raise ValueError("Cohort vector must be non-negative with a positive total")
        state = c / c.sum()

        l_a: List[float] = []
        f_a: List[float] = []
        kernel_index: List[Optional[int]] = []
        for age in range(n_ages):
            k, S, F_k = operators(age)
            survivors = float(state.sum())
            l_a.append(survivors)
            f_a.append(float((F_k @ state).sum()) / survivors if survivors > 0 else 0.0)
            kernel_index.append(k)
            state = S @ state

        l_arr = np.array(l_a)
        f_arr = np.array(f_a)
        return {
            "ages": np.arange(n_ages),
            "l_a": l_arr,
            "f_a": f_arr,
            "kernel_index": kernel_index,
            "R0_lifetable": float(np.sum(l_arr * f_arr)),
        }

    # ---------------------------------------------------------------------
    # Convenience
    # ---------------------------------------------------------------------

    def summary(self) -> Dict[str, Any]:
        """Headline metrics; R0 and generation time are ``None`` when undefined."""
        lam_iter = self.lambda_("iteration")
        out: Dict[str, Any] = {
            "lambda_iteration": lam_iter,
            "lambda_eigen": self.lambda_("eigen"),
            "converged": self.engine.is_converged(),
            "iterations": self.engine.n_steps,
        }
        try:
            out["R0"] = self.r0()
            out["generation_time"] = self.generation_time()
        except (SingularOperator, ValueError) as exc:
            out.setdefault("R0", None)
            out["generation_time"] = None
            out["life_history_error"] = str(exc)
        return out
