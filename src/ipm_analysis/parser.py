from __future__ import annotations

import keyword
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Set, Tuple, Union

import sympy as sp
from sympy.core.function import AppliedUndef
from sympy.parsing.sympy_parser import (
    convert_xor,
    parse_expr,
    standard_transformations,
)

from .densities import CONSTANTS, MATH_FUNCTIONS


# An identifier not glued to a preceding digit or dot (so the "e" in 1e-3 is skipped).
_IDENT_RE = re.compile(r"(?<![0-9.A-Za-z_])[A-Za-z_][A-Za-z0-9_]*")

_TRANSFORMATIONS = standard_transformations + (convert_xor,)

ExpressionLike = Union[str, int, float, sp.Expr]


def _scan_identifiers(text: str) -> Dict[str, bool]:
    """Return {identifier: is_function_call} for every identifier in ``text``."""
    found: Dict[str, bool] = {}
    for m in _IDENT_RE.finditer(text):
        name = m.group(0)
        is_call = text[m.end():].lstrip().startswith("(")
        if name in found and found[name] != is_call:
            raise ValueError(f"'{name}' is used both as a function and as a value in: '{text}'")
        found[name] = is_call
    return found


@dataclass
class ExpressionParser:
    """Parse vital-rate expressions into SymPy trees.

    Every bare identifier becomes a plain ``Symbol`` (parameters, state
    placeholders such as ``z_1``/``z_2``, sub-term names and the index
    variable). Identifiers followed by ``(`` become function calls: the math
    functions in :data:`~ipm_analysis.densities.MATH_FUNCTIONS` map to SymPy's
    own, everything else (``dnorm``, a fitted model bound as a parameter, ...)
    becomes an undefined ``Function`` that is resolved at evaluation time.

    ``^`` is accepted as exponentiation.

    Examples
    --------
    >>> ExpressionParser().parse("plogis(s_int + s_z * z_1)")
    plogis(s_int + s_z*z_1)
    """

    def parse(self, expr: ExpressionLike) -> sp.Expr:
        if isinstance(expr, sp.Basic):
            return expr
        if isinstance(expr, bool):
            raise ValueError("Boolean values are not valid expressions")
        if isinstance(expr, (int, float)):
            return sp.sympify(expr)

        text = str(expr).strip()
        if not text:
            raise ValueError("Empty expression")

        local_dict: Dict[str, object] = {}
        for name, is_call in _scan_identifiers(text).items():
            if keyword.iskeyword(name):
                raise ValueError(f"'{name}' is a Python keyword and cannot be used as an identifier")
            if is_call:
                local_dict[name] = MATH_FUNCTIONS.get(name) or sp.Function(name)
            elif name in CONSTANTS:
                local_dict[name] = CONSTANTS[name]
            else:
                local_dict[name] = sp.Symbol(name)

        try:
            parsed = parse_expr(text, local_dict=local_dict, transformations=_TRANSFORMATIONS)
        except (SyntaxError, TypeError, sp.SympifyError) as exc:
            raise ValueError(f"Could not parse expression '{text}': {exc}") from exc

        if not isinstance(parsed, sp.Expr):
            raise ValueError(f"Expression '{text}' does not evaluate to a number")
        return parsed

    def parse_many(self, exprs: Mapping[str, ExpressionLike]) -> Dict[str, sp.Expr]:
        return {str(name): self.parse(e) for name, e in exprs.items()}


def identifiers(expr: sp.Expr) -> Tuple[Set[str], Set[str]]:
    """Return ``(symbol names, undefined function names)`` referenced by ``expr``."""
    symbols = {s.name for s in expr.free_symbols if isinstance(s, sp.Symbol)}
    functions = {f.func.__name__ for f in expr.atoms(AppliedUndef)}
    return symbols, functions


def rename_symbols(expr: sp.Expr, mapping: Mapping[str, Union[str, int, float]]) -> sp.Expr:
    """Structurally replace symbols by name.

    String targets become new symbols, numeric targets become literals. Names
    that are substrings of other names are never touched, unlike textual
    rewriting.
    """
    repl = {}
    for sym in expr.free_symbols:
        if isinstance(sym, sp.Symbol) and sym.name in mapping:
            target = mapping[sym.name]
            repl[sym] = sp.Symbol(target) if isinstance(target, str) else sp.sympify(target)
    return expr.xreplace(repl) if repl else expr


def rename_functions(expr: sp.Expr, mapping: Mapping[str, str]) -> sp.Expr:
    """Structurally rename undefined function calls (``surv_mod_age(z_1)`` -> ``surv_mod_3(z_1)``)."""
    if not mapping:
        return expr
    return expr.replace(
        lambda e: isinstance(e, AppliedUndef) and e.func.__name__ in mapping,
        lambda e: sp.Function(mapping[e.func.__name__])(*e.args),
    )
