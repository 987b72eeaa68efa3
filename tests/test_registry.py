import pytest
import sympy as sp

from ipm_analysis import (
    CoefficientModel,
    Eviction,
    IndexSet,
    IndexTarget,
    KernelFamily,
    KernelRole,
    MissingBinding,
    UnresolvedIdentifier,
    define,
    expand,
    update_expression,
    update_params,
)
from ipm_analysis.parser import identifiers


GROWTH_PARAMS = {"s_int": 2.0, "s_z": -0.3, "g_z": 0.5, "sd_g": 1.0}


def growth_template(**kwargs):
    return define(
        "P",
        "CC",
        "s * g",
        {
            "s": "plogis(s_int + s_z * z_1)",
            "g": "dnorm(z_2, mu_g, sd_g)",
            "mu_g": "g_z * z_1",
        },
        GROWTH_PARAMS,
        role="survival",
        evict=Eviction("g"),
        **kwargs,
    )


def test_define_resolves_everything():
    t = growth_template()
    assert t.family == KernelFamily.CC
    assert t.role == KernelRole.SURVIVAL
    assert t.instance_names() == ["P"]
    assert t.placeholders == {"z_1", "z_2"}
    assert t.params["s_int"] == 2.0


def test_missing_parameter_is_reported_by_name():
    params = dict(GROWTH_PARAMS)
    del params["s_z"]
    with pytest.raises(UnresolvedIdentifier) as err:
        define("P", "CC", "s", {"s": "plogis(s_int + s_z * z_1)"}, params)
    assert err.value.identifiers == ("s_z",)
    assert err.value.kernel == "P"
    assert err.value.where == "s"
    assert isinstance(err.value, MissingBinding)
    assert isinstance(err.value, ValueError)


def test_unknown_function_is_unresolved():
    with pytest.raises(UnresolvedIdentifier):
        define("P", "CC", "dweird(z_2, 0, 1)")


def test_wrong_placeholder_is_unresolved():
    with pytest.raises(UnresolvedIdentifier):
        define("P", "CC", "x_1 * 0.5")


def test_callable_parameter_can_be_called():
    t = define(
        "P",
        "CC",
        "surv(z_1) * dnorm(z_2, z_1, 1)",
        params={"surv": CoefficientModel(-1.0, [0.5], link="logit")},
    )
    assert callable(t.params["surv"])


def test_circular_subterms_are_rejected():
    with pytest.raises(UnresolvedIdentifier) as err:
        define("P", "CC", "a", {"a": "b + 1", "b": "a * 2"})
    assert err.value.where == "circular sub-term references"
    assert set(err.value.identifiers) >= {"a", "b"}


def test_name_clashes_are_rejected():
    with pytest.raises(ValueError):
        define("P", "CC", "s", {"s": "0.5"}, {"s": 0.1})
    with pytest.raises(ValueError):
        define("P", "CC", "z_1", None, {"z_1": 0.1})


def test_eviction_target_must_be_a_subterm():
    with pytest.raises(UnresolvedIdentifier):
        define("P", "CC", "dnorm(z_2, z_1, 1)", evict=Eviction("g"))


def test_update_expression_returns_a_validated_copy():
    t = growth_template()
    with pytest.raises(UnresolvedIdentifier) as err:
        update_expression(t, "mu_g", "g_int + g_z * z_1")
    assert err.value.identifiers == ("g_int",)

    t2 = update_params(t, {"g_int": 0.2})
    t3 = update_expression(t2, "mu_g", "g_int + g_z * z_1")
    assert identifiers(t3.subterms["mu_g"])[0] == {"g_int", "g_z", "z_1"}
    # the original is untouched
    assert identifiers(t.subterms["mu_g"])[0] == {"g_z", "z_1"}


def test_update_expression_can_replace_the_formula():
    t = update_expression(growth_template(), "formula", "s * g * 0.9")
    assert identifiers(t.formula)[0] == {"s", "g"}
    assert float(t.formula.subs({sp.Symbol("s"): 1, sp.Symbol("g"): 1})) == pytest.approx(0.9)


def test_update_params_merges_by_default():
    t = update_params(growth_template(), {"s_int": 1.0, "extra": 3})
    assert t.params["s_int"] == 1.0
    assert t.params["s_z"] == -0.3
    assert t.params["extra"] == 3.0


def test_update_params_replace_revalidates():
    with pytest.raises(UnresolvedIdentifier):
        update_params(growth_template(), {"s_int": 1.0}, replace=True)


def test_default_index_targets_follow_roles():
    assert define("P", "CC", "0.5", role="survival").target == IndexTarget.ADVANCE
    assert define("F", "CC", "0.5", role="fecundity").target == IndexTarget.FIRST
    assert define("O", "CC", "0.5").target == IndexTarget.SAME
    assert define("P", "CC", "0.5", role="survival", index_target="same").target == IndexTarget.SAME


def test_several_states_need_explicit_ends():
    with pytest.raises(ValueError):
        define("P", "CD", "0.5", states=("z", "b"))
    t = define("P", "CD", "plogis(z_1)", states=("z", "b"), state_start="z", state_end="b")
    assert t.placeholders == {"z_1", "z_2", "b_1", "b_2"}


# -----------------------------
# Index sets and expansion
# -----------------------------


def test_index_set_ages():
    idx = IndexSet.ages(20)
    assert idx.values == tuple(range(21))
    assert idx.all_values[-1] == 21
    assert idx.terminal.value == 21 and idx.terminal.absorbing
    assert idx.next_value(20) == 21
    assert idx.next_value(21) == 21
    assert idx.next_value(5) == 6


def test_index_set_without_absorbing_class():
    idx = IndexSet.ages(3, absorbing=False)
    assert idx.terminal.value == 3 and not idx.terminal.absorbing
    assert idx.next_value(3) is None


def test_index_set_with_gaps_advances_to_the_next_value():
    idx = IndexSet("age", (0, 2, 4), 6)
    assert idx.all_values == (0, 2, 4, 6)
    assert idx.next_value(0) == 2
    assert idx.next_value(4) == 6
    assert idx.next_value(6) == 6


@pytest.mark.parametrize(
    "values, absorbing",
    [((), None), ((0, 2, 1), None), ((0, 0), None), ((0, 1, 2), 2)],
)
def test_invalid_index_sets(values, absorbing):
    with pytest.raises(ValueError):
        IndexSet("age", values, absorbing)


def test_expand_substitutes_the_index_value():
    idx = IndexSet.ages(3)
    t = define(
        "P",
        "CC",
        "s * g",
        {"s": "plogis(b0 + b1 * age)", "g": "dnorm(z_2, z_1, 1)"},
        {"b0": 1.0, "b1": -0.2},
        index_set=idx,
        role="survival",
    )
    instances = expand(t)
    assert [i.name for i in instances] == ["P_0", "P_1", "P_2", "P_3", "P_4"]
    assert [i.index for i in instances] == [0, 1, 2, 3, 4]
    p2 = instances[2]
    assert "age" not in identifiers(p2.subterms["s"])[0]
    assert p2.subterms["s"] == sp.Function("plogis")(sp.Symbol("b0") + 2 * sp.Symbol("b1"))


def test_expand_renames_index_suffixed_parameters():
    idx = IndexSet("age", (0, 1, 2))
    params = {"s_int_0": 1.0, "s_int_1": 1.5, "s_int_2": 2.0}
    t = define("P", "CC", "plogis(s_int_age) * dnorm(z_2, z_1, 1)", None, params, index_set=idx)
    formulas = [i.formula for i in expand(t)]
    assert "s_int_1" in identifiers(formulas[1])[0]
    assert "s_int_age" not in identifiers(formulas[1])[0]


def test_missing_indexed_parameter_names_the_instance():
    idx = IndexSet("age", (0, 1, 2))
    params = {"s_int_0": 1.0, "s_int_1": 1.5}
    with pytest.raises(UnresolvedIdentifier) as err:
        define("P", "CC", "plogis(s_int_age)", None, params, index_set=idx)
    assert err.value.kernel == "P_2"
    assert err.value.identifiers == ("s_int_2",)


def test_index_substitution_leaves_longer_names_alone():
    idx = IndexSet("age", (0, 1))
    t = define("P", "CC", "page * age + 0.1", None, {"page": 0.5}, index_set=idx)
    p1 = expand(t)[1]
    assert identifiers(p1.formula)[0] == {"page"}
    assert float(p1.formula.subs(sp.Symbol("page"), 2.0)) == pytest.approx(2.1)


def test_index_variable_cannot_shadow_a_parameter():
    idx = IndexSet("age", (0, 1))
    with pytest.raises(ValueError):
        define("P", "CC", "age * 0.1", None, {"age": 1.0}, index_set=idx)


def test_instances_are_ordered_by_subterm_dependencies():
    t = growth_template()
    (inst,) = expand(t)
    order = list(inst.order)
    assert order.index("mu_g") < order.index("g")
