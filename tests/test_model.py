import numpy as np
import pytest

from ipm_analysis import IPM, Block, BlockLayout, DimensionMismatch, IndexSet, seedbank_ipm, simple_size_ipm


def test_simple_model_builds_two_kernels():
    ipm = simple_size_ipm()
    assert not ipm.is_built
    sks = ipm.subkernels
    assert ipm.is_built
    assert set(sks) == {"P", "F"}
    assert sks["P"].shape == (50, 50)
    assert [sk.name for sk in ipm.subkernels_by_role(["survival"])] == ["P"]
    assert ipm.continuous_width() == pytest.approx(0.2)


def test_redefining_a_kernel_invalidates_the_build():
    ipm = simple_size_ipm()
    ipm.build()
    ipm.define_kernel("F", "CC", "0.0", role="fecundity")
    assert not ipm.is_built
    assert len(ipm.kernels) == 2
    assert np.all(ipm.subkernels["F"].matrix == 0)


def test_multi_state_model_needs_explicit_states():
    ipm = seedbank_ipm()
    with pytest.raises(ValueError):
        ipm.define_kernel("X", "CC", "0.1")


def test_model_without_kernels_does_not_build():
    ipm = IPM()
    ipm.define_domain("z", 0, 1, 5)
    with pytest.raises(ValueError):
        ipm.build()


def test_kernel_index_set_must_match_model():
    ipm = IPM(index_set=IndexSet.ages(2))
    ipm.define_domain("z", 0, 1, 5)
    ipm.define_kernel("P", "CC", "0.5", role="survival", index_set=None)
    with pytest.raises(ValueError):
        ipm.build()


def test_seedbank_layout():
    ipm = seedbank_ipm(n_bins=10)
    layout = ipm.layout()
    assert layout.blocks == [Block("z"), Block("b")]
    assert layout.size == 11
    assert layout.slice(Block("b")) == slice(10, 11)
    shapes = {name: sk.shape for name, sk in ipm.subkernels.items()}
    assert shapes == {
        "P": (10, 10),
        "F": (10, 10),
        "go_discrete": (1, 10),
        "stay_discrete": (1, 1),
        "leave_discrete": (10, 1),
    }
    assert ipm.continuous_width() == pytest.approx(0.8)


def test_continuous_width_needs_a_continuous_state():
    ipm = IPM()
    ipm.define_discrete_state("n")
    with pytest.raises(ValueError):
        ipm.continuous_width()


def test_indexed_layout_is_index_major():
    ipm = IPM(index_set=IndexSet.ages(1))
    ipm.define_domain("z", 0, 1, 3)
    ipm.define_discrete_state("b")
    layout = ipm.layout()
    assert [b.label for b in layout.blocks] == ["z_0", "b_0", "z_1", "b_1", "z_2", "b_2"]
    assert layout.size == 12
    assert layout.local_size == 4
    assert layout.index_slice(1) == slice(4, 8)
    assert layout.local_slice("b") == slice(3, 4)


def test_split_and_join():
    ipm = seedbank_ipm(n_bins=4)
    layout = ipm.layout()
    vec = np.arange(5, dtype=float)
    parts = layout.split(vec)
    assert np.array_equal(parts[Block("b")], [4.0])
    assert np.array_equal(layout.join(parts), vec)
    assert np.array_equal(layout.join({"b": [2.0]}), [0, 0, 0, 0, 2.0])
    with pytest.raises(DimensionMismatch):
        layout.split(np.ones(3))
    with pytest.raises(DimensionMismatch):
        layout.join({"z": [1.0]})
    with pytest.raises(KeyError):
        layout.join({"q": [1.0]})


def test_destinations_follow_index_targets():
    ipm = IPM(index_set=IndexSet.ages(2, absorbing=False))
    ipm.define_domain("z", 0, 1, 3)
    ipm.define_kernel("P", "CC", "0.5", role="survival")
    ipm.define_kernel("F", "CC", "0.1", role="fecundity")
    ipm.define_kernel("M", "CC", "0.1", role="other")
    layout = ipm.layout()
    sks = ipm.subkernels
    assert layout.destination(sks["P_0"]) == Block("z", 1)
    assert layout.destination(sks["P_2"]) is None
    assert layout.destination(sks["F_2"]) == Block("z", 0)
    assert layout.destination(sks["M_1"]) == Block("z", 1)


def test_layout_requires_states():
    with pytest.raises(ValueError):
        BlockLayout({})


def test_summary_mentions_states_and_kernels():
    text = seedbank_ipm().summary()
    assert "state z" in text and "discrete" in text
    assert "kernel leave_discrete [DC, survival]: b -> z" in text
