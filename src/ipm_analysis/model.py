from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Set, Union

import numpy as np

from .builder import KernelBuilder, SubKernel
from .domain import DiscreteState, Domain, State
from .errors import DimensionMismatch
from .registry import IndexSet, IndexTarget, KernelRole, KernelTemplate, define


class Block(NamedTuple):
    """One (state, index) slot of the population vector."""

    state: str
    index: Optional[int] = None

    @property
    def label(self) -> str:
        return self.state if self.index is None else f"{self.state}_{self.index}"


class BlockLayout:
    """Fixed ordering of population blocks in the flat state vector.

    Blocks are ordered index-major: all states of the first index, then all
    states of the next one, and so on.
    """

    def __init__(self, states: Mapping[str, State], index_set: Optional[IndexSet] = None) -> None:
        if not states:
            raise ValueError("A model needs at least one state")
        self.states: Dict[str, State] = dict(states)
        self.index_set = index_set
        indices: Sequence[Optional[int]] = index_set.all_values if index_set is not None else [None]

        self.blocks: List[Block] = [Block(s, i) for i in indices for s in self.states]
        self._slices: Dict[Block, slice] = {}
        offset = 0
        for b in self.blocks:
            n = self.states[b.state].n
            self._slices[b] = slice(offset, offset + n)
            offset += n
        self.size = offset

        # Within-index layout, shared by every index value.
        self.local_size = sum(s.n for s in self.states.values())
        self._local: Dict[str, slice] = {}
        offset = 0
        for name, s in self.states.items():
            self._local[name] = slice(offset, offset + s.n)
            offset += s.n

    def slice(self, block: Block) -> slice:
        if block not in self._slices:
            raise KeyError(f"Unknown block {block}")
        return self._slices[block]

    def local_slice(self, state: str) -> slice:
        return self._local[state]

    def index_slice(self, index: Optional[int]) -> slice:
        """Slice covering every state of one index value."""
        first = self.slice(Block(next(iter(self.states)), index))
        return slice(first.start, first.start + self.local_size)

    def split(self, vector: np.ndarray) -> Dict[Block, np.ndarray]:
        vector = np.asarray(vector, dtype=float)
        if vector.shape != (self.size,):
            raise DimensionMismatch(f"Population vector must have shape ({self.size},); got {vector.shape}")
        return {b: vector[self._slices[b]] for b in self.blocks}

    def join(self, parts: Mapping[Union[Block, str], Any]) -> np.ndarray:
        """Flatten a ``{block: vector}`` mapping (labels such as ``"z_3"`` also accepted)."""
        by_label = {b.label: b for b in self.blocks}
        out = np.zeros(self.size)
        for key, values in parts.items():
            block = by_label.get(key) if isinstance(key, str) else key
            if block is None or block not in self._slices:
                raise KeyError(f"Unknown block {key!r}")
            sl = self._slices[block]
            values = np.asarray(values, dtype=float)
            if values.shape != (sl.stop - sl.start,):
                raise DimensionMismatch(
                    f"Block {block.label} needs {sl.stop - sl.start} values; got shape {values.shape}"
                )
            out[sl] = values
        return out

    def source(self, sk: SubKernel) -> Block:
        return Block(sk.state_start, sk.index)

    def destination(self, sk: SubKernel) -> Optional[Block]:
        """Block a sub-kernel writes into; ``None`` when its output leaves the model."""
        if sk.index is None:
            return Block(sk.state_end, None)
        if sk.target == IndexTarget.ADVANCE:
            nxt = self.index_set.next_value(sk.index)
            return None if nxt is None else Block(sk.state_end, nxt)
        if sk.target == IndexTarget.FIRST:
            return Block(sk.state_end, self.index_set.first)
        return Block(sk.state_end, sk.index)

    def check(self, sk: SubKernel) -> None:
        expected = (self.states[sk.state_end].n, self.states[sk.state_start].n)
        if sk.shape != expected:
            raise DimensionMismatch(f"Kernel '{sk.name}' has shape {sk.shape}; layout expects {expected}")


@dataclass
class IPM:
    """An integral projection model: states, kernel templates and an optional index set.

    Parameters
    ----------
    states:
        Mapping of state name to :class:`Domain` or :class:`DiscreteState`.
    kernels:
        Kernel templates, usually added with :meth:`define_kernel`.
    index_set:
        Optional :class:`IndexSet`. When set, every kernel must be indexed by it.

    Notes
    -----
    One time step is ``n(t+1) = K n(t)`` with ``K`` the sum of all sub-kernels
    block-placed by their implementation binding.
    """

    states: Dict[str, State] = field(default_factory=dict)
    kernels: List[KernelTemplate] = field(default_factory=list)
    index_set: Optional[IndexSet] = None
    name: str = "ipm"

    def __post_init__(self) -> None:
        for key, state in self.states.items():
            if key != state.name:
                raise ValueError(f"State key '{key}' does not match its name '{state.name}'")
        self._subkernels: Optional[Dict[str, SubKernel]] = None

    # -----------------------------
    # Definition
    # -----------------------------

    def define_domain(self, name: str, lower: float, upper: float, bin_count: int) -> Domain:
        dom = Domain(name, lower, upper, bin_count)
        self.states[name] = dom
        self._subkernels = None
        return dom

    def define_discrete_state(self, name: str, size: int = 1) -> DiscreteState:
        st = DiscreteState(name, size)
        self.states[name] = st
        self._subkernels = None
        return st

    def add_kernel(self, template: KernelTemplate) -> KernelTemplate:
        """Add a template, replacing any existing one with the same name."""
        self.kernels = [k for k in self.kernels if k.name != template.name] + [template]
        self._subkernels = None
        return template

    def define_kernel(self, name: str, family: str, formula: Any, subterms: Any = None, params: Any = None, **kwargs) -> KernelTemplate:
        """Define a kernel template (see :func:`ipm_analysis.registry.define`) and add it.

        ``states`` defaults to the kernel's start/end states, or to the model's
        only state; ``index_set`` defaults to the model's.
        """
        if "states" not in kwargs:
            ends = [kwargs[k] for k in ("state_start", "state_end") if kwargs.get(k)]
            if ends:
                kwargs["states"] = tuple(dict.fromkeys(ends))
            elif len(self.states) == 1:
                kwargs["states"] = tuple(self.states)
            else:
                raise ValueError(f"Kernel '{name}': give states or state_start/state_end for a multi-state model")
        kwargs.setdefault("index_set", self.index_set)
        return self.add_kernel(define(name, family, formula, subterms, params, **kwargs))

    def kernel(self, name: str) -> KernelTemplate:
        for k in self.kernels:
            if k.name == name:
                return k
        raise KeyError(f"Unknown kernel '{name}'. Known: {[k.name for k in self.kernels]}")

    # -----------------------------
    # Building
    # -----------------------------

    def layout(self) -> BlockLayout:
        return BlockLayout(self.states, self.index_set)

    def build(self, builder: Optional[KernelBuilder] = None) -> Dict[str, SubKernel]:
        """Discretize every kernel. Any construction error aborts the whole build."""
        if not self.kernels:
            raise ValueError("Model has no kernels")
        for k in self.kernels:
            if k.index_set != self.index_set:
                raise ValueError(
                    f"Kernel '{k.name}' index set {k.index_set} does not match the model's {self.index_set}"
                )
        builder = builder or KernelBuilder()
        built = builder.build_all(self.kernels, self.states)
        layout = self.layout()
        for sk in built.values():
            layout.check(sk)
        self._subkernels = built
        return built

    @property
    def is_built(self) -> bool:
        return self._subkernels is not None

    @property
    def subkernels(self) -> Dict[str, SubKernel]:
        if self._subkernels is None:
            return self.build()
        return self._subkernels

    def subkernels_by_role(self, roles: Iterable[Union[KernelRole, str]]) -> List[SubKernel]:
        wanted: Set[KernelRole] = {KernelRole(r) for r in roles}
        return [sk for sk in self.subkernels.values() if sk.role in wanted]

    def continuous_width(self) -> float:
        """Common bin width of the continuous states (used as ``d`` in sensitivity)."""
        widths = {round(s.width, 15) for s in self.states.values() if s.is_continuous}
        if len(widths) != 1:
            raise ValueError("Model has no single continuous bin width; pass d explicitly")
        return widths.pop()

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [f"IPM '{self.name}' ({len(self.kernels)} kernel templates)"]
        for s in self.states.values():
            if s.is_continuous:
                lines.append(f"  state {s.name}: [{s.lower:g}, {s.upper:g}] with {s.n} bins (width {s.width:.4g})")
            else:
                lines.append(f"  state {s.name}: discrete, size {s.n}")
        if self.index_set is not None:
            term = self.index_set.terminal
            kind = "absorbing" if term.absorbing else "last"
            lines.append(
                f"  index {self.index_set.variable}: {self.index_set.first}..{self.index_set.values[-1]}"
                f" ({kind} terminal {term.value})"
            )
        for k in self.kernels:
            lines.append(f"  kernel {k.name} [{k.family.value}, {k.role.value}]: {k.state_start} -> {k.state_end}")
        return "\n".join(lines)
