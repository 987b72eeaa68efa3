"""Error taxonomy for model construction, iteration and analysis.

Construction-time problems (registry, mesh, builder) subclass ``ValueError``
and abort building the whole model. Non-convergence is advisory: it is
reported as a status value plus a :class:`NonConvergenceWarning`.
"""

from __future__ import annotations

from typing import Optional, Sequence


class IPMError(Exception):
    """Base class for all errors raised by ipm_analysis."""


class UnresolvedIdentifier(IPMError, ValueError):
    """An expression references an unknown parameter, state, sub-term or function."""

    def __init__(self, kernel: str, identifiers: Sequence[str], where: Optional[str] = None):
        self.kernel = kernel
        self.identifiers = tuple(sorted(identifiers))
        self.where = where
        loc = f" in '{where}'" if where else ""
        super().__init__(
            f"Kernel '{kernel}'{loc}: cannot resolve {', '.join(self.identifiers)}"
        )


# Older name used by the registry contract.
MissingBinding = UnresolvedIdentifier


class NumericalInvalidResult(IPMError, ValueError):
    """A discretized kernel or sub-term contains NaN, Inf or negative entries."""

    def __init__(self, instance: str, subterm: str, reason: str):
        self.instance = instance
        self.subterm = subterm
        self.reason = reason
        super().__init__(f"Kernel '{instance}', sub-term '{subterm}': {reason}")


class SingularOperator(IPMError, ValueError):
    """A required matrix inverse (typically of I - P) does not exist."""


class DimensionMismatch(IPMError, ValueError):
    """Domains, matrices or population vectors of incompatible shapes were combined."""


class NonConvergenceWarning(UserWarning):
    """Forward (or transpose) iteration did not converge within its budget."""
