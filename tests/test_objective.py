import pytest

import numpy as np
import pandas as pd
from ddmfit.basic_simulators.parameters import ModelParameters
from ddmfit.basic_simulators.simulator import simulate_experiment
from ddmfit.config import PENALTY_COST
from ddmfit.fitting.binning import binned_proportions, make_bin_edges
from ddmfit.fitting.objective import (
    ObjectiveFunction,
    chi2_loss,
    nll_loss,
    objective,
    sse_loss,
)

DT = 0.005


@pytest.fixture(scope="module")
def true_params():
    return ModelParameters(
        mean_v=0.15, a=0.8, mean_z=0.4, s=0.3, mean_ter=0.12, sv=0.1, sz=0.02, st0=0.03
    )


@pytest.fixture(scope="module")
def bin_edges():
    return make_bin_edges(max_t=3.0, nbins=16)


@pytest.fixture(scope="module")
def target_table(true_params, bin_edges):
    target = simulate_experiment(true_params, n_trials=2000, dt=DT, random_state=2024)
    return binned_proportions(target, bin_edges)


@pytest.fixture(scope="module")
def fixed_params(true_params):
    return {
        key: value
        for key, value in true_params.to_dict().items()
        if key not in ["mean_v", "a"]
    }


def test_objective_prefers_true_parameters(target_table, fixed_params, bin_edges):
    kwargs = dict(
        target_bin_table=target_table,
        fixed_params=fixed_params,
        n_sim=2000,
        bin_edges=bin_edges,
        param_names=["mean_v", "a"],
        dt=DT,
        random_state=1,
    )
    cost_true = objective([0.15, 0.8], **kwargs)
    cost_wrong_drift = objective([-0.3, 0.8], **kwargs)
    cost_wrong_bound = objective([0.15, 1.4], **kwargs)
    assert 0 <= cost_true < cost_wrong_drift
    assert cost_true < cost_wrong_bound

    for loss in ["nll", "chi2"]:
        assert objective([0.15, 0.8], loss=loss, **kwargs) < objective(
            [-0.3, 0.8], loss=loss, **kwargs
        )


def test_objective_accepts_dict_candidates(target_table, fixed_params, bin_edges):
    kwargs = dict(
        target_bin_table=target_table,
        fixed_params=fixed_params,
        n_sim=300,
        bin_edges=bin_edges,
        dt=DT,
        random_state=3,
    )
    assert objective({"mean_v": 0.15, "a": 0.8}, **kwargs) == objective(
        [0.15, 0.8], param_names=["mean_v", "a"], **kwargs
    )


def test_objective_is_stochastic_unless_seeded(target_table, fixed_params, bin_edges):
    kwargs = dict(
        target_bin_table=target_table,
        fixed_params=fixed_params,
        n_sim=500,
        bin_edges=bin_edges,
        param_names=["mean_v", "a"],
        dt=DT,
    )
    assert objective([0.15, 0.8], random_state=5, **kwargs) == objective(
        [0.15, 0.8], random_state=5, **kwargs
    )
    assert objective([0.15, 0.8], random_state=5, **kwargs) != objective(
        [0.15, 0.8], random_state=6, **kwargs
    )


def test_infeasible_parameters_are_penalized(target_table, fixed_params, bin_edges):
    kwargs = dict(
        target_bin_table=target_table,
        n_sim=100,
        bin_edges=bin_edges,
        dt=DT,
        random_state=1,
    )
    # mean_z = 0.4 is fixed, so a <= 0.4 violates 0 < mean_z < a
    assert (
        objective([0.15, 0.3], fixed_params=fixed_params, param_names=["mean_v", "a"], **kwargs)
        == PENALTY_COST
    )
    assert (
        objective([0.15, np.nan], fixed_params=fixed_params, param_names=["mean_v", "a"], **kwargs)
        == PENALTY_COST
    )
    fixed_without_s = {key: value for key, value in fixed_params.items() if key != "s"}
    assert (
        objective(
            [0.15, 0.8, -0.3],
            fixed_params=fixed_without_s,
            param_names=["mean_v", "a", "s"],
            **kwargs,
        )
        == PENALTY_COST
    )
    assert (
        objective(
            [0.15, 0.8],
            fixed_params=fixed_params,
            param_names=["mean_v", "a"],
            penalty=123.0,
            **kwargs,
        )
        != 123.0
    )


def test_configuration_errors_fail_fast(target_table, fixed_params, bin_edges):
    kwargs = dict(
        target_bin_table=target_table,
        fixed_params=fixed_params,
        n_sim=100,
        bin_edges=bin_edges,
        param_names=["mean_v", "a"],
        dt=DT,
    )
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "bin_edges": make_bin_edges(3.0, nbins=10)})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "bin_edges": bin_edges[::-1]})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "loss": "kl"})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "n_sim": 0})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "param_names": []})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "param_names": ["mean_v", "w"]})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "param_names": ["mean_v", "mean_v"]})
    with pytest.raises(ValueError):
        objective([0.15, 0.8], **{**kwargs, "fixed_params": {"s": 0.3}})

    # Target tables must hold exactly the choices the model produces
    only_upper = target_table[target_table["choice"] == 1]
    extra_choice = pd.concat(
        [target_table, target_table[target_table["choice"] == 1].assign(choice=2)],
        ignore_index=True,
    )
    for table in [only_upper, extra_choice]:
        with pytest.raises(ValueError):
            objective([0.15, 0.8], **{**kwargs, "target_bin_table": table})
        with pytest.raises(ValueError):
            ObjectiveFunction(
                target_bin_table=table,
                param_names=["mean_v", "a"],
                fixed_params=fixed_params,
                n_sim=100,
                bin_edges=bin_edges,
            )


def test_losses():
    target = np.array([[0.2, 0.3], [0.0, 0.4]])
    sim = np.array([[0.1, 0.3], [0.0, 0.0]])

    assert sse_loss(sim, target) == pytest.approx(0.01 + 0.16)
    assert sse_loss(target, target) == 0.0

    # Empty cells in both tables contribute nothing, empty simulated cells are floored
    nll = nll_loss(sim, target, eps=1e-10)
    expected = -(0.2 * np.log(0.1) + 0.3 * np.log(0.3) + 0.4 * np.log(1e-10))
    assert np.isfinite(nll)
    assert nll == pytest.approx(expected)

    chi2 = chi2_loss(sim, target, eps=1e-10)
    assert chi2 == pytest.approx(0.01 / 0.3 + 0.16 / 0.4)
    assert chi2_loss(target, sim) == pytest.approx(chi2)


def test_chi2_tail_cells_stay_on_scale():
    # One simulated trial (out of 1000) in a tail bin the target left empty,
    # and the reverse in the neighbouring cell
    n_sim = 1000
    target = np.array([[0.5, 0.499], [0.0, 1 / n_sim]])
    sim = np.array([[0.5, 0.499], [1 / n_sim, 0.0]])
    cost = chi2_loss(sim, target)
    assert cost == pytest.approx(2 / n_sim)

    shifted = np.array([[0.45, 0.549], [0.0, 1 / n_sim]])
    assert cost < chi2_loss(shifted, target)


def test_objective_function_seed_policies(target_table, fixed_params, bin_edges):
    kwargs = dict(
        target_bin_table=target_table,
        param_names=["mean_v", "a"],
        fixed_params=fixed_params,
        n_sim=300,
        bin_edges=bin_edges,
        dt=DT,
        random_state=10,
    )
    common = ObjectiveFunction(seed_policy="common", **kwargs)
    assert common([0.15, 0.8]) == common([0.15, 0.8])
    assert common.n_evals == 2

    fresh = ObjectiveFunction(seed_policy="per_evaluation", **kwargs)
    values = [fresh([0.15, 0.8]) for _ in range(3)]
    assert len(set(values)) == 3

    fresh_again = ObjectiveFunction(seed_policy="per_evaluation", **kwargs)
    assert [fresh_again([0.15, 0.8]) for _ in range(3)] == values

    assert fresh.to_params([0.2, 0.9]) == ModelParameters(**fixed_params, mean_v=0.2, a=0.9)


def test_objective_function_validates_on_construction(
    target_table, fixed_params, bin_edges
):
    kwargs = dict(
        target_bin_table=target_table,
        param_names=["mean_v", "a"],
        fixed_params=fixed_params,
        n_sim=300,
        bin_edges=bin_edges,
    )
    with pytest.raises(ValueError):
        ObjectiveFunction(**{**kwargs, "seed_policy": "sometimes"})
    with pytest.raises(ValueError):
        ObjectiveFunction(**{**kwargs, "param_names": ["mean_v"]})
    with pytest.raises(ValueError):
        ObjectiveFunction(**{**kwargs, "bin_edges": make_bin_edges(2.0, nbins=16)})
