from ddmfit.basic_simulators.simulator import POSSIBLE_CHOICES, get_trial_frame
import numpy as np
import pandas as pd

"""
This module turns trial data into binned reaction time proportions,
separately by choice, which is the summary statistic the objective
function compares between simulated and target data.
"""

from typing import Any, Dict, Sequence

BIN_TABLE_COLUMNS = ["bin_lower", "bin_upper", "choice", "count", "proportion"]


def validate_bin_edges(bin_edges: Sequence[float] | np.ndarray) -> np.ndarray:
    """Check that bin edges are a 1d, strictly increasing sequence.

    A final edge of +inf is allowed (open ended last bin).

    Returns
    -------
        np.ndarray: bin edges as float64 array

    Raises
    ------
        ValueError: If the edges are malformed.
    """
    edges = np.asarray(bin_edges, dtype=np.float64)
    if edges.ndim != 1:
        raise ValueError(f"bin_edges must be one dimensional, got shape {edges.shape}")
    if edges.shape[0] < 2:
        raise ValueError("bin_edges must contain at least two edges")
    if np.any(np.isnan(edges)) or np.any(np.isinf(edges[:-1])) or edges[-1] == -np.inf:
        raise ValueError(
            f"bin_edges must be finite (only the last edge may be +inf), got {edges}"
        )
    if np.any(np.diff(edges) <= 0):
        raise ValueError(f"bin_edges must be strictly increasing, got {edges}")
    return edges


def make_bin_edges(
    max_t: float, nbins: int = 0, bin_dt: float = 0.04, open_ended: bool = True
) -> np.ndarray:
    """Make linearly spaced bin edges starting at 0.

    Arguments
    ---------
        max_t: float
            Largest finite edge.
        nbins: int <default=0>
            Number of bins. If 0, bin_dt determines the number of bins.
        bin_dt: float <default=0.04>
            Bin width used when nbins is 0.
        open_ended: bool <default=True>
            If True, the last bin reaches from max_t to +inf, so that no RT is
            lost to the right of the edges.

    Returns
    -------
        np.ndarray of nbins + 1 edges
    """
    if max_t <= 0:
        raise ValueError(f"max_t must be positive, got {max_t}")
    if nbins == 0:
        nbins = int(max_t / bin_dt)
    if nbins < 1:
        raise ValueError(f"nbins / bin_dt give less than one bin (max_t={max_t}, bin_dt={bin_dt})")

    if open_ended:
        if nbins == 1:
            return np.array([0.0, np.inf])
        return np.append(np.linspace(0, max_t, nbins), np.inf)
    return np.linspace(0, max_t, nbins + 1)


def make_quantile_bin_edges(
    dataset: Dict[str, Any] | pd.DataFrame,
    quantiles: Sequence[float] = (0.1, 0.3, 0.5, 0.7, 0.9),
) -> np.ndarray:
    """Bin edges at the quantiles of the valid RTs (pooled over choices).

    The edges are bracketed by 0 and +inf. Ties between quantiles are merged.
    """
    data = get_trial_frame(dataset)
    valid = data["choice"].notna() & data["rt"].notna()
    rts = data.loc[valid, "rt"].to_numpy(dtype=np.float64)
    if rts.shape[0] == 0:
        raise ValueError("dataset contains no valid (non-timeout) trials")
    q = np.quantile(rts, quantiles)
    edges = np.unique(np.concatenate([[0.0], q[q > 0], [np.inf]]))
    return validate_bin_edges(edges)


def binned_proportions(
    dataset: Dict[str, Any] | pd.DataFrame,
    bin_edges: Sequence[float] | np.ndarray,
    possible_choices: Sequence[int] = POSSIBLE_CHOICES,
) -> pd.DataFrame:
    """Turn trial data into RT histogram proportions by choice.

    Bins are half open [e_i, e_i+1), the last bin is closed on the right.
    RTs outside the edges are not counted.

    Arguments
    ---------
        dataset: dict or pd.DataFrame
            Output of simulate_experiment() or a DataFrame with 'choice' and 'rt'
            columns. Rows with missing choice or rt are timeouts.
        bin_edges: sequence of float
            Strictly increasing bin edges.
        possible_choices: sequence of int <default=[0, 1]>
            Choice labels to tabulate.

    Returns
    -------
        pd.DataFrame with columns bin_lower, bin_upper, choice, count, proportion,
        ordered by choice and bin. The proportions are relative to all trials,
        timeouts included, so that proportions plus the timeout fraction sum to 1
        (given edges covering all RTs). table.attrs holds n_trials, n_timeouts
        and bin_edges.
    """
    edges = validate_bin_edges(bin_edges)
    data = get_trial_frame(dataset)
    n_trials = len(data)
    if n_trials == 0:
        raise ValueError("dataset contains no trials")

    valid = (data["choice"].notna() & data["rt"].notna()).to_numpy(dtype=bool)
    rts = data["rt"].to_numpy(dtype=np.float64, na_value=np.nan)

    tables = []
    for choice in possible_choices:
        mask = valid & (data["choice"] == choice).fillna(False).to_numpy(dtype=bool)
        counts = np.histogram(rts[mask], bins=edges)[0]
        tables.append(
            pd.DataFrame(
                {
                    "bin_lower": edges[:-1],
                    "bin_upper": edges[1:],
                    "choice": choice,
                    "count": counts.astype(np.int64),
                    "proportion": counts / n_trials,
                }
            )
        )

    table = pd.concat(tables, ignore_index=True)[BIN_TABLE_COLUMNS]
    table.attrs["n_trials"] = n_trials
    table.attrs["n_timeouts"] = int((~valid).sum())
    table.attrs["bin_edges"] = edges.tolist()
    return table


def bin_table_edges(table: pd.DataFrame) -> np.ndarray:
    """Recover the bin edges from a bin table.

    Raises
    ------
        ValueError: If the choices in the table do not share the same edges.
    """
    edges = None
    for choice, sub in table.groupby("choice", sort=True):
        choice_edges = np.append(
            sub["bin_lower"].to_numpy(dtype=np.float64),
            sub["bin_upper"].to_numpy(dtype=np.float64)[-1],
        )
        if edges is None:
            edges = choice_edges
        elif not np.array_equal(edges, choice_edges):
            raise ValueError(f"Bin edges for choice {choice} differ from other choices")
    if edges is None:
        raise ValueError("bin table is empty")
    return edges


def check_matching_edges(
    table: pd.DataFrame, bin_edges: Sequence[float] | np.ndarray
) -> None:
    """Fail if a bin table was computed with edges other than bin_edges."""
    table_edges = bin_table_edges(table)
    edges = validate_bin_edges(bin_edges)
    if table_edges.shape != edges.shape or not np.array_equal(table_edges, edges):
        raise ValueError(
            "Bin edges of the target table do not match the bin edges used for "
            f"simulation.\n target: {table_edges.tolist()}\n simulation: {edges.tolist()}"
        )


def bin_table_to_array(table: pd.DataFrame) -> np.ndarray:
    """Proportions as an array of shape (n_bins, n_choices), choices sorted."""
    wide = table.pivot(index="bin_lower", columns="choice", values="proportion")
    return wide.sort_index().sort_index(axis=1).to_numpy(dtype=np.float64)


def timeout_fraction(table: pd.DataFrame) -> float:
    """Fraction of timeout trials in the data the table was computed from."""
    if "n_trials" not in table.attrs or "n_timeouts" not in table.attrs:
        raise ValueError("bin table carries no trial counts (table.attrs)")
    return table.attrs["n_timeouts"] / table.attrs["n_trials"]
