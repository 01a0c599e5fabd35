from ddmfit.config.config import DEFAULT_SIM_PARAMS, PENALTY_COST, PROB_EPS
from ddmfit.basic_simulators.parameters import (
    PARAM_NAMES,
    ModelParameters,
    assemble_parameters,
)
from ddmfit.basic_simulators.simulator import POSSIBLE_CHOICES, simulate_experiment
from ddmfit.fitting.binning import (
    bin_table_to_array,
    binned_proportions,
    check_matching_edges,
    validate_bin_edges,
)
from ddmfit.support_utils.utils import derive_seed, resolve_seed
import numpy as np
import pandas as pd

"""
This module defines the objective function used for parameter recovery:
simulate an experiment at the candidate parameters, bin it, and measure the
distance between simulated and target bin proportions.

The objective is stochastic. Every evaluation simulates fresh trials, so two
calls at the same parameter vector return different values unless the calls
are seeded. ObjectiveFunction fixes a seeding policy per optimization run.
"""

from typing import Callable, Dict, Sequence

SEED_POLICIES = ["per_evaluation", "common"]


def sse_loss(sim: np.ndarray, target: np.ndarray, eps: float = PROB_EPS) -> float:
    """Sum of squared differences of bin proportions."""
    return float(np.sum((sim - target) ** 2))


def nll_loss(sim: np.ndarray, target: np.ndarray, eps: float = PROB_EPS) -> float:
    """Multinomial cross entropy of the target proportions under the simulated ones.

    Cells without target mass contribute 0, simulated proportions are floored
    at eps where the target has mass.
    """
    has_mass = target > 0
    return float(-np.sum(target[has_mass] * np.log(np.maximum(sim[has_mass], eps))))


def chi2_loss(sim: np.ndarray, target: np.ndarray, eps: float = PROB_EPS) -> float:
    """Symmetric chi-square distance, cells where both tables are empty are skipped.

    Dividing by sim + target keeps cells that only one table populates bounded:
    such a cell contributes its own proportion, not proportion / eps.
    """
    has_mass = (target > 0) | (sim > 0)
    diff = sim[has_mass] - target[has_mass]
    return float(np.sum(diff**2 / np.maximum(sim[has_mass] + target[has_mass], eps)))


LOSSES: Dict[str, Callable[..., float]] = {
    "sse": sse_loss,
    "nll": nll_loss,
    "chi2": chi2_loss,
}


def check_param_names(param_names: Sequence[str] | None) -> list[str] | None:
    if param_names is None:
        return None
    param_names = list(param_names)
    if len(param_names) == 0:
        raise ValueError("param_names is empty")
    unknown = [name for name in param_names if name not in PARAM_NAMES]
    if unknown:
        raise ValueError(f"Unknown parameter names: {unknown}, valid names: {PARAM_NAMES}")
    if len(set(param_names)) != len(param_names):
        raise ValueError(f"param_names contains duplicates: {param_names}")
    return param_names


def _check_target(
    target_bin_table: pd.DataFrame, bin_edges: Sequence[float] | np.ndarray
) -> tuple[np.ndarray, np.ndarray, list]:
    """Validate the target table against the bin edges.

    Returns the validated edges, the target proportion array and the choices.
    """
    edges = validate_bin_edges(bin_edges)
    if not isinstance(target_bin_table, pd.DataFrame):
        raise ValueError("target_bin_table must be a DataFrame from binned_proportions()")
    missing = [
        col for col in ["bin_lower", "bin_upper", "choice", "proportion"]
        if col not in target_bin_table.columns
    ]
    if missing:
        raise ValueError(f"target_bin_table is missing columns: {missing}")
    check_matching_edges(target_bin_table, edges)
    choices = sorted(target_bin_table["choice"].unique().tolist())
    if choices != sorted(POSSIBLE_CHOICES):
        raise ValueError(
            f"target_bin_table holds choices {choices}, "
            f"the model produces choices {sorted(POSSIBLE_CHOICES)}"
        )
    return edges, bin_table_to_array(target_bin_table), choices


def _evaluate(
    params: ModelParameters,
    target: np.ndarray,
    choices: list,
    edges: np.ndarray,
    n_sim: int,
    dt: float,
    max_steps: int,
    random_state: int | np.random.Generator | None,
    loss_fun: Callable[..., float],
    eps: float,
    penalty: float,
    n_cpus: int | str,
) -> float:
    if not params.is_valid():
        return penalty
    simulations = simulate_experiment(
        params,
        n_trials=n_sim,
        dt=dt,
        max_steps=max_steps,
        random_state=random_state,
        n_cpus=n_cpus,
        timeout_warning_rate=None,
    )
    sim = bin_table_to_array(
        binned_proportions(simulations, edges, possible_choices=choices)
    )
    cost = loss_fun(sim, target, eps=eps)
    # A non-finite cost would derail the optimizer just like an infeasible point
    return cost if np.isfinite(cost) else penalty


def objective(
    candidate_params: Dict[str, float] | Sequence[float] | np.ndarray,
    target_bin_table: pd.DataFrame,
    fixed_params: ModelParameters | Dict[str, float] | None,
    n_sim: int,
    bin_edges: Sequence[float] | np.ndarray,
    param_names: Sequence[str] | None = None,
    dt: float = DEFAULT_SIM_PARAMS["dt"],
    max_steps: int = DEFAULT_SIM_PARAMS["max_steps"],
    random_state: int | np.random.Generator | None = None,
    loss: str = "sse",
    eps: float = PROB_EPS,
    penalty: float = PENALTY_COST,
    n_cpus: int | str = 1,
) -> float:
    """Discrepancy between simulated and target binned RT proportions.

    Arguments
    ---------
        candidate_params: dict or sequence
            Values of the parameters being optimized (sequence aligned with param_names).
        target_bin_table: pd.DataFrame
            Output of binned_proportions() for the target data.
        fixed_params: ModelParameters, dict or None
            Values of the parameters held constant.
        n_sim: int
            Number of trials simulated per evaluation.
        bin_edges: sequence of float
            Bin edges, must equal the edges of target_bin_table.
        param_names: list[str] | None
            Names of the optimized parameters (required for sequence candidates).
        dt, max_steps:
            Simulation settings (see simulate_experiment()). dt should match the
            dt used to produce synthetic target data.
        random_state: int | np.random.Generator | None
            Seed for this evaluation. None draws a fresh seed.
        loss: str <default='sse'>
            One of 'sse', 'nll', 'chi2'.
        eps: float
            Floor for simulated proportions in 'nll' and for the
            chi-square denominator in 'chi2'.
        penalty: float
            Cost returned for parameters violating the model constraints.

    Returns
    -------
        float: the cost (penalty for infeasible parameters)

    Raises
    ------
        ValueError: On configuration errors (bad edges, mismatching target table,
            unknown loss, malformed names, n_sim < 1).
    """
    if loss not in LOSSES:
        raise ValueError(f"Unknown loss '{loss}', choose from {list(LOSSES)}")
    if int(n_sim) != n_sim or n_sim < 1:
        raise ValueError(f"n_sim must be a positive integer, got {n_sim}")
    param_names = check_param_names(param_names)
    edges, target, choices = _check_target(target_bin_table, bin_edges)

    params = assemble_parameters(candidate_params, fixed_params, param_names)
    return _evaluate(
        params,
        target,
        choices,
        edges,
        int(n_sim),
        dt,
        max_steps,
        random_state,
        LOSSES[loss],
        eps,
        penalty,
        n_cpus,
    )


class ObjectiveFunction:
    """Callable objective for one optimization run.

    Validates its configuration once and then maps parameter vectors
    (aligned with param_names) to costs.

    Attributes
    ----------
        param_names: list[str]
            Names of the optimized parameters.
        seed: int
            Seed of the run. Evaluation seeds are derived from it.
        seed_policy: str
            'per_evaluation': evaluation k simulates with derive_seed(seed, 1, k),
                so each call draws fresh trials but the run as a whole is reproducible.
            'common': every evaluation uses the same seed (common random numbers),
                which makes the objective deterministic within the run.
            Under 'per_evaluation' the simplex of Nelder-Mead rarely meets its
            fatol criterion, because repeated calls at one point differ by the
            simulation noise (roughly 1 / n_sim for 'sse'). Most runs then end at
            max_iter, and 'converged' mostly marks a favourable noise draw. Use
            'common' with fatol scaled to n_sim when convergence labels matter.
        n_evals: int
            Number of evaluations so far.
    """

    def __init__(
        self,
        target_bin_table: pd.DataFrame,
        param_names: Sequence[str],
        fixed_params: ModelParameters | Dict[str, float] | None,
        n_sim: int,
        bin_edges: Sequence[float] | np.ndarray,
        dt: float = DEFAULT_SIM_PARAMS["dt"],
        max_steps: int = DEFAULT_SIM_PARAMS["max_steps"],
        random_state: int | np.random.Generator | None = None,
        loss: str = "sse",
        seed_policy: str = "per_evaluation",
        eps: float = PROB_EPS,
        penalty: float = PENALTY_COST,
        n_cpus: int | str = 1,
    ):
        if loss not in LOSSES:
            raise ValueError(f"Unknown loss '{loss}', choose from {list(LOSSES)}")
        if seed_policy not in SEED_POLICIES:
            raise ValueError(
                f"Unknown seed_policy '{seed_policy}', choose from {SEED_POLICIES}"
            )
        if int(n_sim) != n_sim or n_sim < 1:
            raise ValueError(f"n_sim must be a positive integer, got {n_sim}")
        names = check_param_names(param_names)
        if names is None:
            raise ValueError("param_names is required")

        self.param_names = names
        self.edges, self.target, self.choices = _check_target(target_bin_table, bin_edges)
        # Catches names that are neither optimized nor fixed before any simulation
        assemble_parameters(np.zeros(len(names)), fixed_params, names)
        self.fixed_params = fixed_params
        self.n_sim = int(n_sim)
        self.dt = dt
        self.max_steps = max_steps
        self.seed = resolve_seed(random_state)
        self.loss = loss
        self.seed_policy = seed_policy
        self.eps = eps
        self.penalty = penalty
        self.n_cpus = n_cpus
        self.n_evals = 0

    def evaluation_seed(self, k: int) -> int:
        if self.seed_policy == "common":
            return derive_seed(self.seed, 1, 0)
        return derive_seed(self.seed, 1, k)

    def to_params(self, x: Sequence[float] | np.ndarray) -> ModelParameters:
        return assemble_parameters(x, self.fixed_params, self.param_names)

    def __call__(self, x: Sequence[float] | np.ndarray) -> float:
        x = np.asarray(x, dtype=np.float64)
        seed = self.evaluation_seed(self.n_evals)
        self.n_evals += 1
        if not np.all(np.isfinite(x)):
            return self.penalty
        return _evaluate(
            self.to_params(x),
            self.target,
            self.choices,
            self.edges,
            self.n_sim,
            self.dt,
            self.max_steps,
            seed,
            LOSSES[self.loss],
            self.eps,
            self.penalty,
            self.n_cpus,
        )
