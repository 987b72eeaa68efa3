"""Kernel templates, index sets and their expansion into concrete instances.

A :class:`KernelTemplate` is immutable: :func:`update_expression` and
:func:`update_params` return re-validated copies. Every free identifier is
checked at definition time, so an unresolved name fails here rather than in
the middle of a build.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import sympy as sp

from .densities import FUNCTIONS
from .domain import Eviction
from .errors import UnresolvedIdentifier
from .parser import ExpressionLike, ExpressionParser, identifiers, rename_functions, rename_symbols


FORMULA = "formula"
INTEGRATION_RULES = ("midpoint", "none")


class KernelFamily(str, Enum):
    """Source/destination state types: ``C`` continuous, ``D`` discrete."""

    CC = "CC"
    DC = "DC"
    CD = "CD"
    DD = "DD"

    @property
    def start_continuous(self) -> bool:
        return self.value[0] == "C"

    @property
    def end_continuous(self) -> bool:
        return self.value[1] == "C"


class KernelRole(str, Enum):
    SURVIVAL = "survival"
    FECUNDITY = "fecundity"
    OTHER = "other"


class IndexTarget(str, Enum):
    """Where an indexed kernel sends individuals."""

    ADVANCE = "advance"  # index i -> next index (age a -> a + 1)
    FIRST = "first"  # any index -> first index (offspring are age 0)
    SAME = "same"  # index i -> index i


_DEFAULT_TARGETS = {
    KernelRole.SURVIVAL: IndexTarget.ADVANCE,
    KernelRole.FECUNDITY: IndexTarget.FIRST,
    KernelRole.OTHER: IndexTarget.SAME,
}


# -----------------------------
# Index sets
# -----------------------------


@dataclass(frozen=True)
class TerminalIndex:
    """The last index of a family, and whether it absorbs ("this age or older")."""

    value: int
    absorbing: bool


@dataclass(frozen=True)
class IndexSet:
    """Ordered integer index values plus an optional absorbing terminal value.

    Parameters
    ----------
    variable:
        Index placeholder used in expressions, e.g. ``"age"``.
    values:
        Explicit, strictly increasing index values.
    absorbing:
        Optional terminal value greater than every explicit value. Its
        kernels map the class onto itself (the "greybeard" class).
    """

    variable: str
    values: Tuple[int, ...]
    absorbing: Optional[int] = None

    def __post_init__(self) -> None:
        vals = tuple(int(v) for v in self.values)
        if not vals:
            raise ValueError("IndexSet needs at least one value")
        if any(b <= a for a, b in zip(vals, vals[1:])):
            raise ValueError("IndexSet values must be strictly increasing")
        if self.absorbing is not None and int(self.absorbing) <= vals[-1]:
            raise ValueError(
                f"Absorbing index {self.absorbing} must exceed the last explicit index {vals[-1]}"
            )
        object.__setattr__(self, "values", vals)
        if self.absorbing is not None:
            object.__setattr__(self, "absorbing", int(self.absorbing))

    @classmethod
    def ages(cls, max_age: int, *, absorbing: bool = True, variable: str = "age") -> "IndexSet":
        """Ages ``0..max_age`` plus (by default) an absorbing class ``max_age + 1``."""
        return cls(variable, tuple(range(int(max_age) + 1)), int(max_age) + 1 if absorbing else None)

    @property
    def all_values(self) -> Tuple[int, ...]:
        if self.absorbing is None:
            return self.values
        return self.values + (self.absorbing,)

    @property
    def first(self) -> int:
        return self.values[0]

    @property
    def terminal(self) -> TerminalIndex:
        if self.absorbing is not None:
            return TerminalIndex(self.absorbing, True)
        return TerminalIndex(self.values[-1], False)

    def next_value(self, value: int) -> Optional[int]:
        """The index an ``ADVANCE`` kernel sends ``value`` to; ``None`` means death."""
        if value == self.absorbing:
            return self.absorbing
        pos = self.values.index(value)
        if pos + 1 < len(self.values):
            return self.values[pos + 1]
        return self.absorbing



# -----------------------------
# Templates and instances
# -----------------------------


@dataclass(frozen=True)
class KernelTemplate:
    """A named transition operator defined symbolically.

    Use :func:`define` rather than constructing this directly: it parses the
    expressions and validates the resolution graph.
    """

    name: str
    family: KernelFamily
    formula: sp.Expr
    subterms: Mapping[str, sp.Expr]
    params: Mapping[str, Any]
    states: Tuple[str, ...]
    state_start: str
    state_end: str
    integration: str = "midpoint"
    role: KernelRole = KernelRole.OTHER
    index_target: Optional[IndexTarget] = None
    evict: Tuple[Eviction, ...] = ()
    index_set: Optional[IndexSet] = None

    @property
    def target(self) -> IndexTarget:
        return self.index_target or _DEFAULT_TARGETS[self.role]

    @property
    def placeholders(self) -> Set[str]:
        return {f"{s}_{k}" for s in self.states for k in (1, 2)}

    @property
    def expressions(self) -> Dict[str, sp.Expr]:
        out = {FORMULA: self.formula}
        out.update(self.subterms)
        return out

    def instance_names(self) -> List[str]:
        if self.index_set is None:
            return [self.name]
        return [f"{self.name}_{i}" for i in self.index_set.all_values]


@dataclass(frozen=True)
class KernelInstance:
    """One concrete kernel: a template with its index (if any) substituted."""

    name: str
    template: KernelTemplate
    index: Optional[int]
    formula: sp.Expr
    subterms: Mapping[str, sp.Expr]
    order: Tuple[str, ...]

    @property
    def params(self) -> Mapping[str, Any]:
        return self.template.params

    @property
    def family(self) -> KernelFamily:
        return self.template.family

    @property
    def state_start(self) -> str:
        return self.template.state_start

    @property
    def state_end(self) -> str:
        return self.template.state_end

    @property
    def role(self) -> KernelRole:
        return self.template.role

    @property
    def evict(self) -> Tuple[Eviction, ...]:
        return self.template.evict

    @property
    def integration(self) -> str:
        return self.template.integration


def _index_renames(template: KernelTemplate, names: Iterable[str], index: int) -> Dict[str, Union[str, int]]:
    """Renames applied to instance ``index``: the variable itself and ``*_<var>`` names."""
    var = template.index_set.variable
    local = set(template.subterms) | template.placeholders
    suffix = f"_{var}"
    out: Dict[str, Union[str, int]] = {var: index}
    for name in names:
        if name.endswith(suffix) and name != suffix and name not in local and name not in template.params:
            out[name] = name[: -len(var)] + str(index)
    return out


def _substitute(template: KernelTemplate, index: Optional[int]) -> Dict[str, sp.Expr]:
    exprs = template.expressions
    if index is None:
        return exprs
    all_names: Set[str] = set()
    for expr in exprs.values():
        syms, funcs = identifiers(expr)
        all_names |= syms | funcs
    renames = _index_renames(template, all_names, index)
    func_renames = {k: v for k, v in renames.items() if isinstance(v, str)}
    return {
        key: rename_functions(rename_symbols(expr, renames), func_renames)
        for key, expr in exprs.items()
    }


def _evaluation_order(name: str, subterms: Mapping[str, sp.Expr]) -> Tuple[str, ...]:
    graph: Dict[str, Set[str]] = {}
    for key, expr in subterms.items():
        syms, _ = identifiers(expr)
        graph[key] = {s for s in syms if s in subterms}
    try:
        return tuple(TopologicalSorter(graph).static_order())
    except CycleError as exc:
        raise UnresolvedIdentifier(name, [str(n) for n in exc.args[1]], where="circular sub-term references") from exc


def _check_resolution(template: KernelTemplate, label: str, exprs: Mapping[str, sp.Expr]) -> None:
    """Raise if any identifier in ``exprs`` is not bound to something."""
    values = {k for k, v in template.params.items() if not callable(v)}
    callables = {k for k, v in template.params.items() if callable(v)}
    known = values | template.placeholders | set(template.subterms)

    for where, expr in exprs.items():
        syms, funcs = identifiers(expr)
        missing = {s for s in syms if s not in known}
        missing |= {f for f in funcs if f not in FUNCTIONS and f not in callables}
        if missing:
            raise UnresolvedIdentifier(label, missing, where=where)


def _validate(template: KernelTemplate) -> None:
    if not template.name:
        raise ValueError("Kernel name must be non-empty")
    if template.integration not in INTEGRATION_RULES:
        raise ValueError(f"Unknown integration rule '{template.integration}'. Known: {INTEGRATION_RULES}")
    for s in (template.state_start, template.state_end):
        if s not in template.states:
            raise ValueError(f"Kernel '{template.name}': state '{s}' is not among states {template.states}")

    clashes = set(template.subterms) & (set(template.params) | template.placeholders | {FORMULA})
    clashes |= set(template.params) & template.placeholders
    if clashes:
        raise ValueError(
            f"Kernel '{template.name}': names clash between sub-terms, parameters and placeholders: {sorted(clashes)}"
        )

    for ev in template.evict:
        if ev.target not in template.subterms:
            raise UnresolvedIdentifier(template.name, [ev.target], where="eviction target")

    if template.index_set is None:
        _check_resolution(template, template.name, template.expressions)
        _evaluation_order(template.name, template.subterms)
        return

    var = template.index_set.variable
    if var in template.params or var in template.subterms or var in template.placeholders:
        raise ValueError(f"Kernel '{template.name}': index variable '{var}' shadows another name")
    for index in template.index_set.all_values:
        exprs = _substitute(template, index)
        label = f"{template.name}_{index}"
        _check_resolution(template, label, exprs)
        _evaluation_order(label, {k: v for k, v in exprs.items() if k != FORMULA})


def _coerce_params(params: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in dict(params or {}).items():
        out[str(key)] = value if callable(value) else float(value)
    return MappingProxyType(out)


def define(
    name: str,
    family: Union[KernelFamily, str],
    formula: ExpressionLike,
    subterms: Optional[Mapping[str, ExpressionLike]] = None,
    params: Optional[Mapping[str, Any]] = None,
    states: Sequence[str] = ("z",),
    index_set: Optional[IndexSet] = None,
    *,
    state_start: Optional[str] = None,
    state_end: Optional[str] = None,
    integration: str = "midpoint",
    role: Union[KernelRole, str] = KernelRole.OTHER,
    index_target: Optional[Union[IndexTarget, str]] = None,
    evict: Union[Eviction, Sequence[Eviction], None] = None,
) -> KernelTemplate:
    """Define a kernel template.

    Parameters
    ----------
    name:
        Kernel name, e.g. ``"P"``. Indexed instances are named ``P_<i>``.
    family:
        One of ``"CC"``, ``"DC"``, ``"CD"``, ``"DD"`` (source then destination).
    formula:
        Top-level expression combining sub-terms and parameters.
    subterms:
        Mapping of sub-term name to expression. Sub-terms may reference each
        other as long as the references are acyclic.
    params:
        Mapping of parameter name to a number or to a callable fitted model.
    states:
        State names; each contributes placeholders ``<s>_1`` and ``<s>_2``.
    index_set:
        Optional :class:`IndexSet`; the template then expands into one
        instance per index value.
    state_start, state_end:
        States the kernel consumes and produces (default: the only state).
    integration:
        ``"midpoint"`` multiplies by the destination bin width when the
        destination is continuous; ``"none"`` leaves values as they are.
    role:
        ``"survival"``, ``"fecundity"`` or ``"other"``; used by the analyzer
        and to derive the default index target.
    index_target:
        Overrides the role-derived :class:`IndexTarget`.
    evict:
        One or more :class:`~ipm_analysis.domain.Eviction` corrections.

    Raises
    ------
    UnresolvedIdentifier
        If an identifier cannot be resolved, or sub-terms reference each other
        in a cycle.
    """
    states = tuple(str(s) for s in states)
    if not states:
        raise ValueError("At least one state is required")
    if state_start is None or state_end is None:
        if len(states) != 1:
            raise ValueError(f"Kernel '{name}': state_start and state_end are required with several states")
        state_start = state_start or states[0]
        state_end = state_end or states[0]

    if isinstance(evict, Eviction):
        evict = (evict,)

    parser = ExpressionParser()
    template = KernelTemplate(
        name=str(name),
        family=KernelFamily(family),
        formula=parser.parse(formula),
        subterms=MappingProxyType(parser.parse_many(subterms or {})),
        params=_coerce_params(params),
        states=states,
        state_start=str(state_start),
        state_end=str(state_end),
        integration=integration,
        role=KernelRole(role),
        index_target=IndexTarget(index_target) if index_target is not None else None,
        evict=tuple(evict or ()),
        index_set=index_set,
    )
    _validate(template)
    return template


def update_expression(template: KernelTemplate, subterm_name: str, new_expr: ExpressionLike) -> KernelTemplate:
    """Replace one sub-term (or the formula, via ``"formula"``) and re-validate.

    A new sub-term name is added; the whole resolution graph is checked again
    because the change may orphan or newly require parameters.
    """
    parsed = ExpressionParser().parse(new_expr)
    if subterm_name == FORMULA:
        updated = dataclasses.replace(template, formula=parsed)
    else:
        subs = dict(template.subterms)
        subs[subterm_name] = parsed
        updated = dataclasses.replace(template, subterms=MappingProxyType(subs))
    _validate(updated)
    return updated


def update_params(template: KernelTemplate, params: Mapping[str, Any], *, replace: bool = False) -> KernelTemplate:
    """Merge ``params`` into the template's parameters (``replace=True`` clears them first)."""
    merged: Dict[str, Any] = {} if replace else dict(template.params)
    merged.update(params)
    updated = dataclasses.replace(template, params=_coerce_params(merged))
    _validate(updated)
    return updated


def expand(template: KernelTemplate) -> List[KernelInstance]:
    """Expand a template into its concrete kernel instances."""
    if template.index_set is None:
        indices: Sequence[Optional[int]] = [None]
    else:
        indices = template.index_set.all_values

    out: List[KernelInstance] = []
    for index in indices:
        exprs = _substitute(template, index)
        formula = exprs.pop(FORMULA)
        label = template.name if index is None else f"{template.name}_{index}"
        out.append(
            KernelInstance(
                name=label,
                template=template,
                index=index,
                formula=formula,
                subterms=MappingProxyType(exprs),
                order=_evaluation_order(label, exprs),
            )
        )
    return out
