"""Iteration and analysis options.

Options can be built in code or loaded from YAML with layered overrides:
  base file -> overrides dict

Only the ``iteration:`` section of a YAML file is read; unknown keys are
ignored so one file can carry settings for other tools.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


@dataclass
class IterationOptions:
    """Settings for forward/transpose iteration and derived metrics."""

    n_iterations: int = 100         # default run length for iterate() and right_ev()/left_ev()
    tolerance: float = 1e-10        # max sum |shape_t - shape_{t-1}| to count as converged
    convergence_window: int = 1     # trailing steps that must all be below tolerance
    normalize_pop_size: bool = True  # rescale the state to sum 1 after every step
    lifetable_ages: int = 50        # ages reported by age_specific_vital_rates()
    singular_tolerance: float = 1e-12  # R0 needs spectral radius of P below 1 - singular_tolerance


def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge ``override`` into ``base`` (in place) and return it."""
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_options(data: Dict) -> IterationOptions:
    valid = {f.name for f in dataclasses.fields(IterationOptions)}
    return IterationOptions(**{k: v for k, v in data.items() if k in valid})


def validate_options(options: IterationOptions) -> None:
    """Validate option constraints. Raises ValueError on failure."""
    if int(options.n_iterations) != options.n_iterations or options.n_iterations < 1:
        raise ValueError(f"n_iterations must be a positive integer, got {options.n_iterations}")
    if not options.tolerance > 0:
        raise ValueError(f"tolerance must be positive, got {options.tolerance}")
    if int(options.convergence_window) != options.convergence_window or options.convergence_window < 1:
        raise ValueError(
            f"convergence_window must be a positive integer, got {options.convergence_window}"
        )
    if options.convergence_window > options.n_iterations:
        raise ValueError(
            f"convergence_window ({options.convergence_window}) must be <= "
            f"n_iterations ({options.n_iterations})"
        )
    if int(options.lifetable_ages) != options.lifetable_ages or options.lifetable_ages < 1:
        raise ValueError(f"lifetable_ages must be a positive integer, got {options.lifetable_ages}")
    if options.singular_tolerance < 0:
        raise ValueError(f"singular_tolerance must be >= 0, got {options.singular_tolerance}")


def load_options(
    path: Union[str, Path],
    overrides: Optional[Dict[str, Any]] = None,
) -> IterationOptions:
    """Load options from the ``iteration:`` section of a YAML file.

    Args:
        path: YAML file.
        overrides: Optional dict merged on top, e.g. ``{"iteration": {"tolerance": 1e-8}}``.

    Raises:
        FileNotFoundError: If ``path`` doesn't exist.
        ValueError: If validation fails.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    if overrides is not None:
        deep_merge(data, overrides)

    section = data.get("iteration") or {}
    if not isinstance(section, dict):
        raise ValueError("'iteration' section must be a mapping")

    options = _dict_to_options(section)
    validate_options(options)
    return options


def default_options() -> IterationOptions:
    options = IterationOptions()
    validate_options(options)
    return options
