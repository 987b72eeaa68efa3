#!/usr/bin/env python3
"""
Basic Usage Examples for the ipm_analysis package

This script walks through the core features with small, self-contained
models: defining kernels, building them, iterating to convergence and the
eigen-analysis that follows.
"""

import logging
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))
from ipm_analysis import (
    IPM, Eviction, IterationOptions, IterationEngine, IPMAnalyzer,
    CoefficientModel, UnresolvedIdentifier, NumericalInvalidResult, SingularOperator,
    define, update_expression, update_params, expand,
    simple_size_ipm, seedbank_ipm,
)


def example_1_define_kernels():
    """Define a kernel template from vital-rate sub-expressions."""
    print("\n" + "=" * 50)
    print("Example 1: Defining Kernels")
    print("=" * 50)

    P = define(
        "P", "CC", "s * g",
        {
            "s": "plogis(s_int + s_z * z_1)",
            "g": "dnorm(z_2, mu_g, sd_g)",
            "mu_g": "g_z * z_1",
        },
        {"s_int": 2.0, "s_z": -0.3, "g_z": 0.5, "sd_g": 1.0},
        role="survival",
        evict=Eviction("g"),
    )
    print(f"\nKernel {P.name} [{P.family.value}]: {P.formula}")
    for name, expr in P.subterms.items():
        print(f"  {name} = {expr}")

    # Unresolved names fail at definition time, not half way through a build.
    try:
        update_expression(P, "mu_g", "g_int + g_z * z_1")
    except UnresolvedIdentifier as exc:
        print(f"\nRejected update: {exc}")

    P2 = update_expression(update_params(P, {"g_int": 0.8}), "mu_g", "g_int + g_z * z_1")
    print(f"Accepted update: mu_g = {P2.subterms['mu_g']}")


def example_2_build_and_iterate():
    """Build the simple size-structured model and iterate it."""
    print("\n" + "=" * 50)
    print("Example 2: Building and Iterating")
    print("=" * 50)

    ipm = simple_size_ipm()
    print("\n" + ipm.summary())

    engine = IterationEngine(ipm)
    engine.initialize()
    result = engine.iterate(50)
    print(f"\n  converged: {result['converged']} after {result['iterations']} steps")
    print(f"  lambda:    {result['lambda']:.6f}")
    print(f"  last five growth ratios: {np.round(engine.lambda_series[-5:], 8)}")


def example_3_eigen_analysis():
    """Growth rate, eigenvectors, sensitivity and elasticity."""
    print("\n" + "=" * 50)
    print("Example 3: Eigen-analysis")
    print("=" * 50)

    analyzer = IPMAnalyzer.from_model(simple_size_ipm())
    lam_iter = analyzer.lambda_("iteration")
    lam_eig = analyzer.lambda_("eigen")
    print(f"\n  lambda (iteration) = {lam_iter:.8f}")
    print(f"  lambda (eigen)     = {lam_eig:.8f}")

    w = analyzer.right_ev()["w"]
    v = analyzer.left_ev()["v"]
    d = analyzer.ipm.continuous_width()
    elas = analyzer.elasticity(w, v, d)
    z = analyzer.ipm.states["z"].midpoints
    print(f"  mean size at stable distribution: {float(w @ z):.4f}")
    print(f"  size with highest reproductive value: {z[int(np.argmax(v))]:.2f}")
    print(f"  elasticities integrate to: {elas.sum() * d ** 2:.6f}")

    print(f"\n  R0 = {analyzer.r0():.4f}")
    print(f"  generation time = {analyzer.generation_time():.4f}")


def example_4_fitted_models():
    """Use a coefficient model as a callable parameter."""
    print("\n" + "=" * 50)
    print("Example 4: Fitted Models as Parameters")
    print("=" * 50)

    ipm = IPM(name="fitted")
    ipm.define_domain("z", 0.0, 10.0, 50)
    ipm.define_kernel(
        "P", "CC", "surv(z_1) * g",
        {"g": "dnorm(z_2, grow(z_1), 1)"},
        {
            "surv": CoefficientModel(2.0, [-0.3], link="logit"),
            "grow": CoefficientModel(0.0, [0.5]),
        },
        role="survival",
        evict=Eviction("g"),
    )
    ipm.define_kernel(
        "F", "CC", "0.3 * seeds(z_1) * r",
        {"r": "dnorm(z_2, 1, 0.5)"},
        {"seeds": CoefficientModel(-1.0, [0.4], link="log")},
        role="fecundity",
        evict=Eviction("r"),
    )
    analyzer = IPMAnalyzer.from_model(ipm)
    print(f"\n  lambda = {analyzer.lambda_():.6f} (same vital rates as the simple model)")


def example_5_failures():
    """Errors that surface instead of producing silent NaN."""
    print("\n" + "=" * 50)
    print("Example 5: Failures")
    print("=" * 50)

    ipm = IPM(name="bad")
    ipm.define_domain("z", 0.0, 10.0, 20)
    ipm.define_kernel("P", "CC", "sqrt(z_1 - 5)", role="survival")
    try:
        ipm.build()
    except NumericalInvalidResult as exc:
        print(f"\n  {exc}")

    immortal = IPM(name="immortal")
    immortal.define_discrete_state("n")
    immortal.define_kernel("P", "DD", "1.0", role="survival")
    immortal.define_kernel("F", "DD", "0.1", role="fecundity")
    try:
        IPMAnalyzer.from_model(immortal).r0()
    except SingularOperator as exc:
        print(f"  {exc}")


def example_6_discrete_states():
    """A general IPM with a seed bank."""
    print("\n" + "=" * 50)
    print("Example 6: Discrete States")
    print("=" * 50)

    analyzer = IPMAnalyzer.from_model(seedbank_ipm(), IterationOptions(n_iterations=500))
    print(f"\n  lambda = {analyzer.lambda_():.6f}")
    blocks = analyzer.right_ev()["blocks"]
    for block, values in blocks.items():
        print(f"  stable share in {block.label}: {values.sum():.4f}")
    print(f"  sub-kernels: {[sk.name for sk in expand(analyzer.ipm.kernel('P'))]} + "
          f"{sorted(set(analyzer.ipm.subkernels) - {'P'})}")


def main():
    """Run all examples."""
    logging.basicConfig(level=logging.WARNING)
    print("=" * 50)
    print("IPM ANALYSIS - BASIC USAGE EXAMPLES")
    print("=" * 50)

    example_1_define_kernels()
    example_2_build_and_iterate()
    example_3_eigen_analysis()
    example_4_fitted_models()
    example_5_failures()
    example_6_discrete_states()

    print("\n" + "=" * 50)
    print("All examples completed successfully!")
    print("=" * 50)


if __name__ == '__main__':
    main()
