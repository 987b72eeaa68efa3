from __future__ import annotations

from .domain import Eviction
from .model import IPM
from .registry import IndexSet


def simple_size_ipm(n_bins: int = 50) -> IPM:
    """A size-structured IPM on z in [0, 10].

    Kernels:
        P = s(z) * g(z', z)
        F = p_r * f_n(z) * f_d(z')

    with logistic survival (intercept 2, slope -0.3), normal growth with mean
    0.5 * z and sd 1, exponential seed production and a recruit-size
    distribution with fixed mean. Both densities are eviction-corrected by
    column rescaling.
    """
    ipm = IPM(name="simple_size")
    ipm.define_domain("z", 0.0, 10.0, n_bins)

    ipm.define_kernel(
        "P",
        "CC",
        "s * g",
        {
            "s": "plogis(s_int + s_z * z_1)",
            "g": "dnorm(z_2, mu_g, sd_g)",
            "mu_g": "g_z * z_1",
        },
        {"s_int": 2.0, "s_z": -0.3, "g_z": 0.5, "sd_g": 1.0},
        role="survival",
        evict=Eviction("g", "rescale"),
    )
    ipm.define_kernel(
        "F",
        "CC",
        "p_r * f_n * f_d",
        {
            "f_n": "exp(f_int + f_z * z_1)",
            "f_d": "dnorm(z_2, mu_r, sd_r)",
        },
        {"p_r": 0.3, "f_int": -1.0, "f_z": 0.4, "mu_r": 1.0, "sd_r": 0.5},
        role="fecundity",
        evict=Eviction("f_d", "rescale"),
    )
    return ipm


# Soay sheep age x size parameterization (log body mass).
SHEEP_PARAMS = {
    "surv_int": -1.70e1,
    "surv_z": 6.68e0,
    "surv_a": -3.34e-1,
    "grow_int": 1.27e0,
    "grow_z": 6.12e-1,
    "grow_a": -7.24e-3,
    "grow_sd": 7.87e-2,
    "repr_int": -7.88e0,
    "repr_z": 3.11e0,
    "repr_a": -7.80e-2,
    "recr_int": 1.11e0,
    "recr_a": 1.84e-1,
    "rcsz_int": 3.62e-1,
    "rcsz_z": 7.09e-1,
    "rcsz_sd": 1.59e-1,
}


def age_size_ipm(max_age: int = 20, n_bins: int = 100) -> IPM:
    """Age x size IPM with ages ``0..max_age`` and an absorbing class ``max_age + 1``.

    Kernels (one instance per age):
        P_age = s_age(z) * g_age(z', z)
        F_age = s_age(z) * pb_age(z) * pr_age * rcsz(z', z) / 2

    Offspring enter age 0 regardless of the parent's age. Growth and
    recruit-size densities are truncated normals on [1.6, 3.7].
    """
    index = IndexSet.ages(max_age)
    ipm = IPM(name="age_size", index_set=index)
    ipm.define_domain("z", 1.6, 3.7, n_bins)

    survival = "plogis(surv_int + surv_z * z_1 + surv_a * age)"
    ipm.define_kernel(
        "P",
        "CC",
        "s * g",
        {
            "s": survival,
            "g": "dnorm(z_2, mu_g, grow_sd)",
            "mu_g": "grow_int + grow_z * z_1 + grow_a * age",
        },
        SHEEP_PARAMS,
        role="survival",
        evict=Eviction("g", "truncated_distribution"),
    )
    ipm.define_kernel(
        "F",
        "CC",
        "s * pb * pr * rcsz / 2",
        {
            "s": survival,
            "pb": "plogis(repr_int + repr_z * z_1 + repr_a * age)",
            "pr": "plogis(recr_int + recr_a * age)",
            "rcsz": "dnorm(z_2, rcsz_mu, rcsz_sd)",
            "rcsz_mu": "rcsz_int + rcsz_z * z_1",
        },
        SHEEP_PARAMS,
        role="fecundity",
        evict=Eviction("rcsz", "truncated_distribution"),
    )
    return ipm


def seedbank_ipm(n_bins: int = 50) -> IPM:
    """A general IPM with a continuous size ``z`` and a discrete seed bank ``b``.

    Kernels:
        P               (CC) survival and growth of plants
        F               (CC) seeds that germinate straight away
        go_discrete     (CD) seeds entering the seed bank
        stay_discrete   (DD) seeds staying in the bank
        leave_discrete  (DC) seeds germinating out of the bank
    """
    ipm = IPM(name="seedbank")
    ipm.define_domain("z", 0.0, 8.0, n_bins)
    ipm.define_discrete_state("b")

    params = {
        "s_int": 0.5,
        "s_z": 0.3,
        "g_int": 0.8,
        "g_z": 0.7,
        "sd_g": 0.6,
        "f_int": -0.5,
        "f_z": 0.45,
        "p_b": 0.4,
        "e_g": 0.15,
        "s_sb": 0.6,
        "g_r": 0.2,
        "mu_r": 1.0,
        "sd_r": 0.4,
    }

    ipm.define_kernel(
        "P",
        "CC",
        "s * g",
        {
            "s": "plogis(s_int + s_z * z_1)",
            "g": "dnorm(z_2, g_int + g_z * z_1, sd_g)",
        },
        params,
        state_start="z",
        state_end="z",
        role="survival",
        evict=Eviction("g", "rescale"),
    )
    ipm.define_kernel(
        "F",
        "CC",
        "f_s * (1 - p_b) * e_g * r_d",
        {
            "f_s": "exp(f_int + f_z * z_1)",
            "r_d": "dnorm(z_2, mu_r, sd_r)",
        },
        params,
        state_start="z",
        state_end="z",
        role="fecundity",
        evict=Eviction("r_d", "rescale"),
    )
    ipm.define_kernel(
        "go_discrete",
        "CD",
        "f_s * p_b",
        {"f_s": "exp(f_int + f_z * z_1)"},
        params,
        state_start="z",
        state_end="b",
        role="fecundity",
    )
    ipm.define_kernel(
        "stay_discrete",
        "DD",
        "s_sb * (1 - g_r)",
        None,
        params,
        state_start="b",
        state_end="b",
        role="survival",
    )
    ipm.define_kernel(
        "leave_discrete",
        "DC",
        "s_sb * g_r * r_d",
        {"r_d": "dnorm(z_2, mu_r, sd_r)"},
        params,
        state_start="b",
        state_end="z",
        role="survival",
        evict=Eviction("r_d", "rescale"),
    )
    return ipm
