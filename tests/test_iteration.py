import warnings

import numpy as np
import pytest

from ipm_analysis import (
    IPM,
    DimensionMismatch,
    EngineState,
    IterationEngine,
    IterationOptions,
    NonConvergenceWarning,
    seedbank_ipm,
    simple_size_ipm,
)
from ipm_analysis.iteration import has_converged, shape_distance


def scalar_ipm(s, f):
    """One discrete class: lambda = s + f."""
    ipm = IPM(name="scalar")
    ipm.define_discrete_state("n")
    ipm.define_kernel("P", "DD", "s", None, {"s": s}, role="survival")
    ipm.define_kernel("F", "DD", "f", None, {"f": f}, role="fecundity")
    return ipm


def test_iterate_requires_initialize():
    engine = IterationEngine(simple_size_ipm())
    assert engine.state == EngineState.UNINITIALIZED
    with pytest.raises(RuntimeError):
        engine.iterate()


def test_initialize_defaults_to_uniform():
    engine = IterationEngine(simple_size_ipm())
    vec = engine.initialize()
    assert engine.state == EngineState.BUILT
    assert vec.shape == (50,)
    assert vec.sum() == pytest.approx(1.0)
    assert np.allclose(vec, vec[0])


def test_initialize_validates_population():
    engine = IterationEngine(seedbank_ipm(n_bins=10))
    with pytest.raises(DimensionMismatch):
        engine.initialize(np.ones(10))
    with pytest.raises(ValueError):
        engine.initialize(np.zeros(11))
    with pytest.raises(ValueError):
        engine.initialize(-np.ones(11))
    vec = engine.initialize({"b": [1.0]})
    assert vec[-1] == pytest.approx(1.0)


def test_simple_model_converges_in_50_steps():
    engine = IterationEngine(simple_size_ipm())
    engine.initialize()
    result = engine.iterate(50)
    assert result["converged"]
    assert engine.state == EngineState.CONVERGED
    assert result["iterations"] == 50
    assert 0.0 < result["lambda"] < 5.0
    assert engine.lambda_ == result["lambda"]


def test_time_series_is_retained():
    engine = IterationEngine(simple_size_ipm())
    engine.initialize()
    engine.iterate(20)
    assert engine.population_series.shape == (21, 50)
    assert engine.lambda_series.shape == (20,)
    assert engine.time_series("z").shape == (21, 50)
    assert np.allclose(engine.population_series.sum(axis=1), 1.0)


def test_step_matches_assembled_kernel():
    engine = IterationEngine(seedbank_ipm(n_bins=10))
    vec = engine.initialize()
    K = engine.iteration_kernel()
    assert K.shape == (11, 11)
    assert np.allclose(engine.step(vec), K @ vec)
    assert engine.iteration_kernel() is K


def test_role_restricted_kernels_add_up():
    engine = IterationEngine(seedbank_ipm(n_bins=10))
    engine.initialize()
    P = engine.iteration_kernel(["survival"])
    F = engine.iteration_kernel(["fecundity"])
    assert np.allclose(P + F, engine.iteration_kernel())
    # the seed bank only survives into itself or germinates
    assert F[10, 10] == 0.0


def test_non_convergence_warns_and_can_continue():
    engine = IterationEngine(simple_size_ipm(), IterationOptions(tolerance=1e-14))
    engine.initialize()
    with pytest.warns(NonConvergenceWarning):
        result = engine.iterate(2)
    assert not result["converged"]
    assert engine.state == EngineState.DIVERGED
    assert np.isfinite(result["lambda"])

    engine.options.tolerance = 1e-10
    result = engine.iterate(100)
    assert result["converged"]
    assert engine.n_steps == 102


def test_extinction_is_reported():
    engine = IterationEngine(scalar_ipm(0.0, 0.0))
    engine.initialize()
    with pytest.warns(NonConvergenceWarning):
        result = engine.iterate(5)
    assert not result["converged"]
    assert result["lambda"] == 0.0


def test_without_normalization_size_grows_by_lambda():
    engine = IterationEngine(scalar_ipm(0.6, 0.5), IterationOptions(normalize_pop_size=False))
    engine.initialize([2.0])
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        engine.iterate(10)
    assert engine.is_converged()
    assert engine.lambda_ == pytest.approx(1.1)
    assert engine.current()[0] == pytest.approx(2.0 * 1.1 ** 10)


def test_convergence_window():
    series = [np.array([1.0, 0.0]), np.array([0.5, 0.5]), np.array([0.5, 0.5])]
    assert has_converged(series, 1e-10, window=1)
    assert not has_converged(series, 1e-10, window=2)
    assert shape_distance(series[0], series[1]) == pytest.approx(1.0)


def test_engine_picks_up_kernel_updates():
    ipm = scalar_ipm(0.5, 0.7)
    engine = IterationEngine(ipm)
    engine.initialize()
    engine.iterate(5)
    K = engine.iteration_kernel()
    ipm.define_kernel("F", "DD", "f", None, {"f": 1.5}, role="fecundity")
    assert engine.iteration_kernel() is not K
    assert engine.iteration_kernel()[0, 0] == pytest.approx(2.0)
    assert engine.state == EngineState.BUILT
    assert engine.iterate(5)["lambda"] == pytest.approx(2.0)


def test_engine_resets_when_the_layout_changes():
    ipm = simple_size_ipm(n_bins=10)
    engine = IterationEngine(ipm)
    engine.initialize()
    engine.iterate(5)
    ipm.define_domain("z", 0.0, 10.0, 20)
    with pytest.raises(RuntimeError):
        engine.iterate()
    assert engine.state == EngineState.UNINITIALIZED
    assert engine.initialize().shape == (20,)
    with pytest.raises(DimensionMismatch):
        engine.step(np.ones(10))
