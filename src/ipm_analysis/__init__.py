"""Top-level package API for ipm_analysis.

This package builds and analyses **Integral Projection Models**: kernels are
defined symbolically from vital-rate sub-expressions, discretized with the
midpoint rule over a mesh, optionally expanded over an age (or other) index
set, iterated forward to convergence and analysed through their eigenstructure.

Public API:
- IPM, Domain, DiscreteState, IndexSet, Eviction
- define, update_expression, update_params, expand
- KernelBuilder, IterationEngine, IPMAnalyzer
- Error types
- Built-in example models
"""

from .domain import DiscreteState, Domain, Eviction, build_mesh, define_domain
from .registry import (
    IndexSet,
    IndexTarget,
    KernelFamily,
    KernelInstance,
    KernelRole,
    KernelTemplate,
    TerminalIndex,
    define,
    expand,
    update_expression,
    update_params,
)
from .builder import KernelBuilder, SubKernel
from .model import IPM, Block, BlockLayout
from .config import IterationOptions, default_options, load_options
from .iteration import EngineState, IterationEngine, assemble_iteration_kernel
from .analyzer import (
    IPMAnalyzer,
    dominant_eigen,
    elasticity,
    net_reproductive_rate,
    sensitivity,
)
from .fitted import CoefficientModel
from .errors import (
    DimensionMismatch,
    IPMError,
    MissingBinding,
    NonConvergenceWarning,
    NumericalInvalidResult,
    SingularOperator,
    UnresolvedIdentifier,
)
from .report import (
    ReportOptions,
    format_analysis_report,
    format_lifetable,
    format_model_summary,
    kernel_triples,
)
from .examples import age_size_ipm, seedbank_ipm, simple_size_ipm

__all__ = [
    "DiscreteState",
    "Domain",
    "Eviction",
    "build_mesh",
    "define_domain",
    "IndexSet",
    "IndexTarget",
    "KernelFamily",
    "KernelInstance",
    "KernelRole",
    "KernelTemplate",
    "TerminalIndex",
    "define",
    "expand",
    "update_expression",
    "update_params",
    "KernelBuilder",
    "SubKernel",
    "IPM",
    "Block",
    "BlockLayout",
    "IterationOptions",
    "default_options",
    "load_options",
    "EngineState",
    "IterationEngine",
    "assemble_iteration_kernel",
    "IPMAnalyzer",
    "dominant_eigen",
    "elasticity",
    "net_reproductive_rate",
    "sensitivity",
    "CoefficientModel",
    "DimensionMismatch",
    "IPMError",
    "MissingBinding",
    "NonConvergenceWarning",
    "NumericalInvalidResult",
    "SingularOperator",
    "UnresolvedIdentifier",
    "ReportOptions",
    "format_analysis_report",
    "format_lifetable",
    "format_model_summary",
    "kernel_triples",
    "age_size_ipm",
    "seedbank_ipm",
    "simple_size_ipm",
]
