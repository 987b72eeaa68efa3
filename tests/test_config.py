import pytest

from ipm_analysis import IterationEngine, IterationOptions, default_options, load_options, simple_size_ipm
from ipm_analysis.config import deep_merge, validate_options


def test_defaults():
    opts = default_options()
    assert opts.n_iterations == 100
    assert opts.tolerance == 1e-10
    assert opts.convergence_window == 1
    assert opts.normalize_pop_size is True


def test_deep_merge_nested():
    base = {"iteration": {"n_iterations": 50, "tolerance": 1e-6}, "other": 1}
    deep_merge(base, {"iteration": {"tolerance": 1e-8}})
    assert base == {"iteration": {"n_iterations": 50, "tolerance": 1e-8}, "other": 1}


def test_load_options_from_yaml(tmp_path):
    path = tmp_path / "ipm.yaml"
    path.write_text(
        "iteration:\n"
        "  n_iterations: 250\n"
        "  convergence_window: 3\n"
        "  unknown_key: ignored\n"
        "plotting:\n"
        "  dpi: 300\n"
    )
    opts = load_options(path, overrides={"iteration": {"tolerance": 1e-8}})
    assert opts.n_iterations == 250
    assert opts.convergence_window == 3
    assert opts.tolerance == 1e-8
    assert opts.lifetable_ages == 50


def test_empty_yaml_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_options(path) == IterationOptions()


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_options(tmp_path / "nope.yaml")


def test_bad_section(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("iteration: [1, 2]\n")
    with pytest.raises(ValueError):
        load_options(path)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"n_iterations": 0},
        {"tolerance": 0.0},
        {"convergence_window": 0},
        {"n_iterations": 5, "convergence_window": 6},
        {"lifetable_ages": 0},
        {"singular_tolerance": -1.0},
    ],
)
def test_validation(kwargs):
    with pytest.raises(ValueError):
        validate_options(IterationOptions(**kwargs))


def test_engine_rejects_invalid_options():
    with pytest.raises(ValueError):
        IterationEngine(simple_size_ipm(n_bins=5), IterationOptions(tolerance=-1.0))
