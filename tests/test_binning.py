import pytest

import numpy as np
import pandas as pd
from ddmfit.basic_simulators.parameters import ModelParameters
from ddmfit.basic_simulators.simulator import simulate_experiment
from ddmfit.fitting.binning import (
    bin_table_edges,
    bin_table_to_array,
    binned_proportions,
    check_matching_edges,
    make_bin_edges,
    make_quantile_bin_edges,
    timeout_fraction,
    validate_bin_edges,
)


@pytest.fixture(scope="module")
def sim_data():
    params = ModelParameters(
        mean_v=0.15, a=0.8, mean_z=0.4, s=0.3, mean_ter=0.12, sv=0.1, sz=0.02, st0=0.03
    )
    # Small step budget, so that a share of the trials times out
    with pytest.warns(UserWarning):
        return simulate_experiment(
            params, n_trials=1000, dt=0.005, max_steps=300, random_state=17
        )


@pytest.fixture(scope="module")
def hand_data():
    return pd.DataFrame(
        {
            "choice": pd.array([1, 1, 1, 1, 0, 0, pd.NA, 1], dtype="Int64"),
            "rt": [0.0, 0.5, 1.0, 1.2, 0.25, 0.75, np.nan, 0.49],
        }
    )


def test_mass_conservation(sim_data):
    edges = make_bin_edges(max_t=3.0, nbins=20)
    table = binned_proportions(sim_data, edges)
    n_timeouts = sim_data["metadata"]["n_timeouts"]

    assert n_timeouts > 0
    assert table.attrs["n_timeouts"] == n_timeouts
    assert timeout_fraction(table) == pytest.approx(n_timeouts / 1000)
    assert table["proportion"].sum() + timeout_fraction(table) == pytest.approx(1.0)
    assert table["count"].sum() + n_timeouts == 1000


def test_table_layout(sim_data):
    edges = make_bin_edges(max_t=2.0, nbins=10)
    table = binned_proportions(sim_data, edges)
    assert list(table.columns) == ["bin_lower", "bin_upper", "choice", "count", "proportion"]
    assert table.shape[0] == 2 * (len(edges) - 1)
    assert table["choice"].tolist() == [0] * 10 + [1] * 10
    np.testing.assert_array_equal(bin_table_edges(table), edges)
    assert bin_table_to_array(table).shape == (10, 2)


def test_binning_is_idempotent(sim_data):
    edges = make_bin_edges(max_t=3.0, bin_dt=0.1)
    table_1 = binned_proportions(sim_data, edges)
    table_2 = binned_proportions(sim_data, edges)
    pd.testing.assert_frame_equal(table_1, table_2)

    shuffled = sim_data["data"].sample(frac=1.0, random_state=0)
    pd.testing.assert_frame_equal(table_1, binned_proportions(shuffled, edges))


def test_bin_intervals_and_timeouts(hand_data):
    table = binned_proportions(hand_data, [0.0, 0.5, 1.0])
    counts = bin_table_to_array(table) * len(hand_data)

    # Lower bound inclusive, last bin closed, 1.2 falls outside the edges
    np.testing.assert_allclose(counts[:, 1], [2, 2])
    np.testing.assert_allclose(counts[:, 0], [1, 1])
    # Timeout stays in the denominator only
    assert table.attrs["n_timeouts"] == 1
    assert table.loc[table["choice"] == 1, "proportion"].sum() == pytest.approx(4 / 8)
    assert table["proportion"].sum() + timeout_fraction(table) < 1.0


def test_real_data_with_float_choices():
    data = pd.DataFrame({"choice": [1.0, 0.0, np.nan], "rt": [0.3, 0.6, np.nan]})
    table = binned_proportions(data, [0.0, 0.5, np.inf])
    np.testing.assert_allclose(bin_table_to_array(table), [[0, 1 / 3], [1 / 3, 0]])
    assert timeout_fraction(table) == pytest.approx(1 / 3)


def test_validate_bin_edges():
    np.testing.assert_array_equal(validate_bin_edges([0, 1, np.inf]), [0.0, 1.0, np.inf])
    for bad in [
        [0.5],
        [0.0, 1.0, 0.5],
        [0.0, 1.0, 1.0],
        [0.0, np.nan, 1.0],
        [0.0, np.inf, np.inf],
        [[0.0, 1.0], [1.0, 2.0]],
    ]:
        with pytest.raises(ValueError):
            validate_bin_edges(bad)
    with pytest.raises(ValueError):
        binned_proportions(pd.DataFrame({"choice": [1], "rt": [0.5]}), [1.0, 0.0])


def test_check_matching_edges(sim_data):
    edges = make_bin_edges(max_t=3.0, nbins=20)
    table = binned_proportions(sim_data, edges)
    check_matching_edges(table, edges)
    with pytest.raises(ValueError):
        check_matching_edges(table, make_bin_edges(max_t=3.0, nbins=21))
    with pytest.raises(ValueError):
        check_matching_edges(table, make_bin_edges(max_t=2.5, nbins=20))


def test_make_bin_edges():
    edges = make_bin_edges(max_t=2.0, bin_dt=0.5)
    np.testing.assert_allclose(edges, [0.0, 2 / 3, 4 / 3, 2.0, np.inf])
    np.testing.assert_allclose(
        make_bin_edges(max_t=2.0, nbins=4, open_ended=False), [0.0, 0.5, 1.0, 1.5, 2.0]
    )
    with pytest.raises(ValueError):
        make_bin_edges(max_t=0.0)


def test_make_quantile_bin_edges(sim_data):
    edges = make_quantile_bin_edges(sim_data)
    assert edges[0] == 0.0
    assert edges[-1] == np.inf
    assert len(edges) == 7
    assert np.all(np.diff(edges) > 0)

    table = binned_proportions(sim_data, edges)
    assert table["proportion"].sum() + timeout_fraction(table) == pytest.approx(1.0)
