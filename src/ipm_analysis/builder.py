"""Discretize kernel instances into dense sub-kernel matrices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import sympy as sp
from sympy.core.function import AppliedUndef

from .densities import FUNCTIONS
from .domain import Domain, Eviction, State, grid, rescale_columns, truncate_density
from .errors import DimensionMismatch, NumericalInvalidResult, UnresolvedIdentifier
from .registry import FORMULA, IndexTarget, KernelInstance, KernelRole, KernelTemplate, expand

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubKernel:
    """A discretized kernel instance.

    ``matrix`` is read-only with rows indexing the destination state and
    columns the source state.
    """

    name: str
    matrix: np.ndarray
    state_start: str
    state_end: str
    index: Optional[int]
    role: KernelRole
    target: IndexTarget
    template: str

    @property
    def shape(self) -> Tuple[int, int]:
        return self.matrix.shape


def _lookup_state(instance: KernelInstance, domains: Mapping[str, State], name: str, continuous: bool) -> State:
    if name not in domains:
        raise DimensionMismatch(f"Kernel '{instance.name}': no domain defined for state '{name}'")
    state = domains[name]
    if state.is_continuous != continuous:
        kind = "continuous" if continuous else "discrete"
        raise DimensionMismatch(
            f"Kernel '{instance.name}' (family {instance.family.value}) needs a {kind} state '{name}'"
        )
    return state


class KernelBuilder:
    """Evaluate kernel instances over the mesh of their domains.

    Parameters
    ----------
    functions:
        Extra functions callable from expressions by name, on top of
        :data:`~ipm_analysis.densities.FUNCTIONS` and any callable parameters.
    """

    def __init__(self, functions: Optional[Mapping[str, Callable]] = None) -> None:
        self.functions: Dict[str, Callable] = dict(functions or {})

    def _modules(self, instance: KernelInstance) -> List[Any]:
        namespace: Dict[str, Any] = dict(FUNCTIONS)
        namespace.update(self.functions)
        namespace.update({k: v for k, v in instance.params.items() if callable(v)})
        return [namespace, "numpy"]

    def _evaluate(
        self,
        instance: KernelInstance,
        where: str,
        expr: sp.Expr,
        env: Mapping[str, Any],
        modules: List[Any],
        shape: Tuple[int, int],
    ) -> np.ndarray:
        syms = sorted(expr.free_symbols, key=lambda s: s.name)
        missing = [s.name for s in syms if s.name not in env]
        if missing:
            raise UnresolvedIdentifier(instance.name, missing, where=where)

        fn = sp.lambdify(syms, expr, modules=modules)
        with np.errstate(all="ignore"):
            raw = fn(*[env[s.name] for s in syms])
        try:
            values = np.broadcast_to(np.asarray(raw, dtype=float), shape)
        except ValueError as exc:
            raise DimensionMismatch(
                f"Kernel '{instance.name}', sub-term '{where}': result of shape "
                f"{np.shape(raw)} does not fit the {shape} grid"
            ) from exc

        if not np.all(np.isfinite(values)):
            n_bad = int(np.count_nonzero(~np.isfinite(values)))
            raise NumericalInvalidResult(instance.name, where, f"{n_bad} NaN/Inf value(s)")
        return values

    def _evict(
        self,
        instance: KernelInstance,
        eviction: Eviction,
        values: np.ndarray,
        env: Mapping[str, Any],
        modules: List[Any],
        end: State,
        shape: Tuple[int, int],
    ) -> np.ndarray:
        if eviction.method == "rescale":
            corrected = rescale_columns(values, end.width)
        else:
            expr = instance.subterms[eviction.target]
            if not isinstance(expr, AppliedUndef) or not isinstance(end, Domain):
                raise ValueError(
                    f"Kernel '{instance.name}': truncated_distribution eviction needs '{eviction.target}' "
                    "to be a density call over a continuous destination, e.g. dnorm(z_2, mu, sd)"
                )
            fname = expr.func.__name__
            try:
                dist = eviction.resolve_distribution(fname)
            except ValueError as exc:
                raise ValueError(f"Kernel '{instance.name}': cannot truncate '{fname}': {exc}") from exc
            params = [
                self._evaluate(instance, eviction.target, arg, env, modules, shape) for arg in expr.args[1:]
            ]
            corrected = truncate_density(values, dist, end, params)

        if not np.all(np.isfinite(corrected)):
            raise NumericalInvalidResult(
                instance.name, eviction.target, f"eviction correction ({eviction.method}) produced NaN/Inf"
            )
        return corrected

    def build(self, instance: KernelInstance, domains: Mapping[str, State]) -> SubKernel:
        """Discretize one kernel instance.

        Raises
        ------
        UnresolvedIdentifier
            If an expression uses a placeholder the kernel's states do not provide.
        NumericalInvalidResult
            If a sub-term is NaN/Inf, or the final kernel has negative entries.
        DimensionMismatch
            If the states are missing or of the wrong kind for the family.
        """
        start = _lookup_state(instance, domains, instance.state_start, instance.family.start_continuous)
        end = _lookup_state(instance, domains, instance.state_end, instance.family.end_continuous)
        shape = (end.n, start.n)
        src, dest = grid(start, end)

        env: Dict[str, Any] = {k: v for k, v in instance.params.items() if not callable(v)}
        if start.is_continuous:
            env[f"{start.name}_1"] = src
        if end.is_continuous:
            env[f"{end.name}_2"] = dest

        modules = self._modules(instance)
        evictions = {ev.target: ev for ev in instance.evict}

        for key in instance.order:
            values = self._evaluate(instance, key, instance.subterms[key], env, modules, shape)
            if key in evictions:
                values = self._evict(instance, evictions[key], values, env, modules, end, shape)
            env[key] = values

        kernel = self._evaluate(instance, FORMULA, instance.formula, env, modules, shape)
        if instance.integration == "midpoint" and end.is_continuous:
            kernel = kernel * end.width

        if np.any(kernel < 0):
            negative = [k for k in instance.order if np.any(np.asarray(env[k]) < 0)]
            hint = f"; negative sub-terms: {', '.join(negative)}" if negative else ""
            raise NumericalInvalidResult(
                instance.name, FORMULA, f"{int(np.count_nonzero(kernel < 0))} negative entries{hint}"
            )

        matrix = np.array(kernel, dtype=float)
        matrix.setflags(write=False)
        logger.debug("built kernel %s: shape=%s, total=%.6g", instance.name, matrix.shape, float(matrix.sum()))

        return SubKernel(
            name=instance.name,
            matrix=matrix,
            state_start=instance.state_start,
            state_end=instance.state_end,
            index=instance.index,
            role=instance.role,
            target=instance.template.target,
            template=instance.template.name,
        )

    def build_family(self, template: KernelTemplate, domains: Mapping[str, State]) -> List[SubKernel]:
        """Build every instance of a template; domains are shared read-only."""
        return [self.build(inst, domains) for inst in expand(template)]

    def build_all(self, templates: Sequence[KernelTemplate], domains: Mapping[str, State]) -> Dict[str, SubKernel]:
        out: Dict[str, SubKernel] = {}
        for template in templates:
            for sk in self.build_family(template, domains):
                if sk.name in out:
                    raise ValueError(f"Duplicate kernel instance name '{sk.name}'")
                out[sk.name] = sk
        return out
