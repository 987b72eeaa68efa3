"""Human-readable reporting utilities.

Lightweight (dependency-free) helpers that turn models and analysis results
into console / Markdown text, plus the ``(row, col, value)`` triple view that
plotting code consumes.

Nothing here is required for the numerics; it is strictly presentation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import numpy as np

from .builder import SubKernel
from .errors import SingularOperator
from .model import IPM


def _num(x: Any, precision: int) -> str:
    if x is None:
        return "n/a"
    return f"{float(x):.{int(precision)}g}"


def kernel_triples(matrix: np.ndarray, *, skip_zeros: bool = False) -> Iterator[Tuple[int, int, float]]:
    """Yield ``(row, col, value)`` for every entry (row = destination bin)."""
    m = np.asarray(matrix, dtype=float)
    if m.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {m.shape}")
    for (i, j), value in np.ndenumerate(m):
        if skip_zeros and value == 0:
            continue
        yield int(i), int(j), float(value)


def format_model_summary(ipm: IPM) -> str:
    """States, index set and kernel templates of a model as an indented block."""
    lines = ipm.summary().splitlines()
    return "\n".join([lines[0]] + ["    " + line.strip() for line in lines[1:]])


def format_kernel_summary(subkernels: Mapping[str, SubKernel], *, max_items: int = 30, precision: int = 4) -> List[str]:
    """One line per sub-kernel: binding, shape and column-sum range."""
    out: List[str] = []
    items = list(subkernels.values())
    for sk in items[: int(max_items)]:
        col = sk.matrix.sum(axis=0)
        out.append(
            f"{sk.name}: {sk.state_start} -> {sk.state_end} [{sk.role.value}] {sk.shape[0]}x{sk.shape[1]}, "
            f"column sums {_num(col.min(), precision)}..{_num(col.max(), precision)}"
        )
    if len(items) > max_items:
        out.append(f"... ({len(items) - max_items} more)")
    return out


@dataclass
class ReportOptions:
    """Tunable knobs for report verbosity."""

    precision: int = 6
    max_kernels: int = 30
    max_ages: int = 25
    include_lifetable: bool = True


def format_lifetable(result: Dict[str, Any], *, max_ages: int = 25, precision: int = 6) -> str:
    """Markdown table of ``age_specific_vital_rates`` output."""
    lines = ["| age | l_a | f_a | kernel |", "|---:|---:|---:|---:|"]
    ages = list(result["ages"])[: int(max_ages)]
    for k, a in enumerate(ages):
        idx = result["kernel_index"][k]
        lines.append(
            f"| {int(a)} | {_num(result['l_a'][k], precision)} | {_num(result['f_a'][k], precision)} | "
            f"{'-' if idx is None else idx} |"
        )
    if len(result["ages"]) > max_ages:
        lines.append("| ... | | | |")
    return "\n".join(lines)


def format_analysis_report(ipm: IPM, analyzer: Any, *, options: Optional[ReportOptions] = None) -> str:
    """Full Markdown report: model, kernels, growth rate and life history."""
    opt = options or ReportOptions()
    lines: List[str] = ["## Model", "", "```", format_model_summary(ipm), "```", ""]

    lines.append("## Sub-kernels")
    lines.extend("  " + s for s in format_kernel_summary(ipm.subkernels, max_items=opt.max_kernels))
    lines.append("")

    lam_iter = analyzer.lambda_("iteration")
    lam_eig = analyzer.lambda_("eigen")
    lines.append("## Growth")
    lines.append(f"lambda (iteration): {_num(lam_iter, opt.precision)}")
    lines.append(f"lambda (eigen):     {_num(lam_eig, opt.precision)}")
    lines.append(f"converged: {analyzer.engine.is_converged()} after {analyzer.engine.n_steps} steps")
    lines.append("")

    lines.append("## Life history")
    try:
        lines.append(f"R0: {_num(analyzer.r0(), opt.precision)}")
        lines.append(f"generation time: {_num(analyzer.generation_time(), opt.precision)}")
    except (SingularOperator, ValueError) as exc:
        lines.append(f"unavailable: {exc}")

    if opt.include_lifetable:
        try:
            table = analyzer.age_specific_vital_rates()
        except ValueError as exc:
            lines.append(f"life table unavailable: {exc}")
        else:
            lines.append("")
            lines.append(format_lifetable(table, max_ages=opt.max_ages, precision=opt.precision))

    return "\n".join(lines).rstrip() + "\n"
