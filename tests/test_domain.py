import numpy as np
import pytest

from ipm_analysis import DimensionMismatch, DiscreteState, Domain, Eviction, build_mesh, define_domain
from ipm_analysis.densities import dnorm, get_distribution
from ipm_analysis.domain import grid, rescale_columns, truncate_density


def test_mesh_midpoints_and_width():
    dom = define_domain("z", 0.0, 10.0, 50)
    mids, width = build_mesh(dom)
    assert width == pytest.approx(0.2)
    assert mids.shape == (50,)
    assert mids[0] == pytest.approx(0.1)
    assert mids[-1] == pytest.approx(9.9)
    assert np.allclose(np.diff(mids), width)
    assert dom.edges[0] == 0.0 and dom.edges[-1] == 10.0


@pytest.mark.parametrize(
    "lower, upper, n",
    [(1.0, 1.0, 10), (2.0, 1.0, 10), (0.0, 1.0, 0), (0.0, 1.0, -3), (0.0, 1.0, 2.5), (0.0, np.inf, 10)],
)
def test_invalid_domains(lower, upper, n):
    with pytest.raises(ValueError):
        Domain("z", lower, upper, n)


def test_discrete_state():
    b = DiscreteState("b")
    assert b.n == 1 and b.width == 1.0 and not b.is_continuous
    with pytest.raises(ValueError):
        DiscreteState("b", 0)


def test_grid_rows_are_destinations():
    a = Domain("a", 0.0, 3.0, 3)
    b = Domain("b", 0.0, 4.0, 4)
    src, dest = grid(a, b)
    assert src.shape == (4, 3) and dest.shape == (4, 3)
    assert np.allclose(src[:, 1], a.midpoints[1])
    assert np.allclose(dest[2, :], b.midpoints[2])


def test_rescale_columns_restores_unit_mass():
    dom = Domain("z", 0.0, 10.0, 50)
    src, dest = grid(dom, dom)
    values = dnorm(dest, 0.5 * src, 1.0)
    assert values.sum(axis=0)[0] * dom.width < 0.9
    fixed = rescale_columns(values, dom.width)
    assert np.allclose(fixed.sum(axis=0) * dom.width, 1.0, atol=1e-8)


def test_rescale_columns_needs_a_grid():
    with pytest.raises(DimensionMismatch):
        rescale_columns(np.ones(4), 0.1)


def test_truncate_density_gives_unit_mass():
    dom = Domain("z", 0.0, 10.0, 200)
    src, dest = grid(dom, dom)
    mu = 0.5 * src
    values = dnorm(dest, mu, 1.0)
    fixed = truncate_density(values, get_distribution("norm"), dom, [mu, 1.0])
    assert np.allclose(fixed.sum(axis=0) * dom.width, 1.0, atol=1e-8)


def test_eviction_methods():
    assert Eviction("g").method == "rescale"
    assert Eviction("g", "truncated_distribution", "lnorm").resolve_distribution("dnorm").name == "lnorm"
    assert Eviction("g", "truncated_distribution").resolve_distribution("dnorm").name == "norm"
    with pytest.raises(ValueError):
        Eviction("g", "reflect")
    with pytest.raises(ValueError):
        get_distribution("cauchy")
