from ddmfit.config.config import recovery_config
from ddmfit.basic_simulators.parameters import ModelParameters, assemble_parameters
from ddmfit.fitting.objective import ObjectiveFunction, check_param_names
from ddmfit.support_utils.utils import (
    as_param_vector,
    derive_seed,
    get_ncpus,
    resolve_seed,
)
import numpy as np
import pandas as pd
import warnings
from dataclasses import dataclass, field
from functools import partial
from numpy.random import default_rng
from pathos.multiprocessing import ProcessingPool as Pool
from scipy.optimize import minimize

"""
This module defines the multi-start optimizer used for parameter recovery.

Each start draws a starting vector around user supplied means, runs a bounded,
derivative free local optimizer against the (stochastic) objective function,
and records the outcome. All runs are kept, the best one is selected among the
converged runs.

Starts are independent and can be spread over processes. Start i always uses
the random stream derive_seed(seed, i), so results do not depend on the number
of processes.
"""

from typing import Any, Dict, List, Sequence

SUPPORTED_METHODS = ["Nelder-Mead", "Powell"]


@dataclass(frozen=True)
class OptimizationRun:
    """Outcome of one local optimization run."""

    start_index: int
    seed: int
    x0: Dict[str, float]
    estimate: Dict[str, float]
    fun: float
    status: str  # 'converged', 'max_iter' or 'failed'
    n_iter: int
    n_fev: int
    message: str = ""
    at_bounds: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == "converged"


@dataclass(frozen=True)
class RecoveryResult:
    """Best run plus all runs of a multi-start parameter recovery.

    Attributes
    ----------
        best: OptimizationRun
            Lowest objective among converged runs, or among all runs if none
            converged (convergence_quality is 'not_converged' then).
        runs: list[OptimizationRun]
            All finished runs, ordered by start index.
        param_names: list[str]
            Names of the optimized parameters.
        fixed_params: dict
            Values of the parameters held constant.
        convergence_quality: str
            'converged' or 'not_converged'.
        cancelled: bool
            True if remaining starts were abandoned after a cancellation request.
        n_starts_requested: int
        seed: int
            Global seed of the recovery.
    """

    best: OptimizationRun
    runs: List[OptimizationRun]
    param_names: List[str]
    fixed_params: Dict[str, float]
    convergence_quality: str
    cancelled: bool
    n_starts_requested: int
    seed: int

    @property
    def estimate(self) -> Dict[str, float]:
        return self.best.estimate

    @property
    def fun(self) -> float:
        return self.best.fun

    @property
    def status(self) -> str:
        return self.best.status

    @property
    def best_params(self) -> ModelParameters:
        return assemble_parameters(self.best.estimate, self.fixed_params)

    def runs_to_dataframe(self) -> pd.DataFrame:
        """One row per run, e.g. for diagnostic tables or plots."""
        rows = []
        for run in self.runs:
            row = {
                "start_index": run.start_index,
                "status": run.status,
                "fun": run.fun,
                "n_iter": run.n_iter,
                "n_fev": run.n_fev,
                "is_best": run.start_index == self.best.start_index,
            }
            row.update({"x0_" + name: run.x0[name] for name in self.param_names})
            row.update({"est_" + name: run.estimate[name] for name in self.param_names})
            row["at_bounds"] = ",".join(run.at_bounds)
            rows.append(row)
        return pd.DataFrame(rows)

    def diagnostics(self) -> Dict[str, Any]:
        """Summaries of the spread of the runs (multi-modality, bound hits)."""
        funs = np.array([run.fun for run in self.runs], dtype=np.float64)
        estimates = np.array(
            [[run.estimate[name] for name in self.param_names] for run in self.runs],
            dtype=np.float64,
        )
        statuses = [run.status for run in self.runs]
        return {
            "n_runs": len(self.runs),
            "n_converged": statuses.count("converged"),
            "n_max_iter": statuses.count("max_iter"),
            "n_failed": statuses.count("failed"),
            "fun_min": float(funs.min()),
            "fun_max": float(funs.max()),
            "fun_spread": float(funs.max() - funs.min()),
            "fun_std": float(funs.std()),
            "at_bounds_rate": float(np.mean([len(run.at_bounds) > 0 for run in self.runs])),
            "bound_hits": {
                name: float(np.mean([name in run.at_bounds for run in self.runs]))
                for name in self.param_names
            },
            "estimate_std": {
                name: float(estimates[:, i].std())
                for i, name in enumerate(self.param_names)
            },
        }


def _status_from_result(res) -> str:
    if res.success:
        return "converged"
    # Nelder-Mead and Powell: 1 -> max evaluations, 2 -> max iterations
    if res.status in (1, 2):
        return "max_iter"
    return "failed"


def select_best_run(runs: Sequence[OptimizationRun]) -> tuple[OptimizationRun, str]:
    """Pick the lowest objective run among the converged ones.

    Falls back to the lowest objective run overall, with convergence quality
    'not_converged', if no run converged.
    """
    if len(runs) == 0:
        raise ValueError("No optimization runs to select from")
    converged = [run for run in runs if run.converged]
    if converged:
        return min(converged, key=lambda run: run.fun), "converged"
    return min(runs, key=lambda run: run.fun), "not_converged"


def _run_start(
    start_index: int,
    seed: int,
    param_names: List[str],
    initial_means: np.ndarray,
    initial_sds: np.ndarray,
    lower_bounds: np.ndarray,
    upper_bounds: np.ndarray,
    objective_kwargs: Dict[str, Any],
    method: str,
    max_iter: int,
    minimize_options: Dict[str, Any],
    bound_tol: float,
) -> OptimizationRun:
    """Run one start of the multi-start optimizer."""
    start_seed = derive_seed(seed, start_index)
    rng = default_rng(start_seed)
    x0 = np.clip(rng.normal(initial_means, initial_sds), lower_bounds, upper_bounds)

    fun = ObjectiveFunction(
        param_names=param_names, random_state=start_seed, **objective_kwargs
    )
    res = minimize(
        fun,
        x0,
        method=method,
        bounds=list(zip(lower_bounds, upper_bounds)),
        options={"maxiter": max_iter, **minimize_options},
    )

    estimate = np.clip(np.asarray(res.x, dtype=np.float64), lower_bounds, upper_bounds)
    tol = bound_tol * (upper_bounds - lower_bounds)
    at_bounds = [
        name
        for i, name in enumerate(param_names)
        if estimate[i] - lower_bounds[i] <= tol[i] or upper_bounds[i] - estimate[i] <= tol[i]
    ]
    return OptimizationRun(
        start_index=start_index,
        seed=start_seed,
        x0=dict(zip(param_names, x0.tolist())),
        estimate=dict(zip(param_names, estimate.tolist())),
        fun=float(res.fun),
        status=_status_from_result(res),
        n_iter=int(getattr(res, "nit", 0)),
        n_fev=int(getattr(res, "nfev", fun.n_evals)),
        message=str(res.message),
        at_bounds=at_bounds,
    )


def recover_parameters(
    n_starts: int,
    target_bin_table: pd.DataFrame,
    param_names: Sequence[str],
    initial_means: Sequence[float] | Dict[str, float],
    initial_sds: Sequence[float] | Dict[str, float],
    lower_bounds: Sequence[float] | Dict[str, float],
    upper_bounds: Sequence[float] | Dict[str, float],
    fixed_params: ModelParameters | Dict[str, float] | None,
    n_sim: int,
    bin_edges: Sequence[float] | np.ndarray,
    max_iter: int = recovery_config["max_iter"],
    dt: float = recovery_config["dt"],
    max_steps: int = recovery_config["max_steps"],
    random_state: int | np.random.Generator | None = None,
    method: str = recovery_config["method"],
    loss: str = recovery_config["loss"],
    seed_policy: str = recovery_config["seed_policy"],
    n_cpus: int | str = recovery_config["n_cpus"],
    cancel_event=None,
    minimize_options: Dict[str, Any] | None = None,
    bound_tol: float = recovery_config["bound_tol"],
    verbose: bool = False,
) -> RecoveryResult:
    """Recover model parameters from a target bin table by multi-start optimization.

    Arguments
    ---------
        n_starts: int
            Number of optimization runs.
        target_bin_table: pd.DataFrame
            Output of binned_proportions() for the target data.
        param_names: list[str]
            Names of the parameters to optimize.
        initial_means, initial_sds: sequence or dict
            Start i draws x0 ~ Normal(initial_means, initial_sds), clamped into
            the bounds.
        lower_bounds, upper_bounds: sequence or dict
            Box constraints for the local optimizer.
        fixed_params: ModelParameters, dict or None
            Values of the remaining parameters. If a full ModelParameters record
            is passed, the entries for param_names are ignored.
        n_sim: int
            Number of trials simulated per objective evaluation.
        bin_edges: sequence of float
            Bin edges, must equal the edges of target_bin_table.
        max_iter: int <default=200>
            Iteration limit of each local optimization run.
        dt, max_steps:
            Simulation settings of the forward model.
        random_state: int | np.random.Generator | None
            Global seed. Start i uses derive_seed(seed, i).
        method: str <default='Nelder-Mead'>
            'Nelder-Mead' or 'Powell' (both bounded and derivative free).
        loss: str <default='sse'>
            Loss of the objective function ('sse', 'nll', 'chi2').
        seed_policy: str <default='per_evaluation'>
            Seeding of objective evaluations within a run (see ObjectiveFunction).
            With 'per_evaluation' the objective is noisy within a run, so most
            Nelder-Mead runs stop at max_iter and the converged / max_iter split
            says little about fit quality. For meaningful convergence labels pass
            seed_policy='common' and a fatol scaled to n_sim through
            minimize_options, e.g. {'fatol': 0.1 / n_sim}.
        n_cpus: int | str <default=1>
            Number of processes for running starts in parallel ('all' for all
            physical cores).
        cancel_event: threading.Event | None
            Checked between starts (between rounds of n_cpus starts when running
            in parallel). Once set, running starts finish and the remaining ones
            are abandoned.
        minimize_options: dict | None
            Extra options passed to scipy.optimize.minimize (e.g. xatol, fatol).
        bound_tol: float <default=1e-3>
            Relative distance (fraction of the bound range) under which an
            estimate counts as sitting at a bound.
        verbose: bool <default=False>
            Print progress.

    Returns
    -------
        RecoveryResult

    Raises
    ------
        ValueError: On malformed configuration, before any simulation is run.
        RuntimeError: If cancelled before the first start finished.
    """
    # Checks -----------------------------------------
    if int(n_starts) != n_starts or n_starts < 1:
        raise ValueError(f"n_starts must be a positive integer, got {n_starts}")
    if int(max_iter) != max_iter or max_iter < 1:
        raise ValueError(f"max_iter must be a positive integer, got {max_iter}")
    if method not in SUPPORTED_METHODS:
        raise ValueError(
            f"method must be one of {SUPPORTED_METHODS} (bounded, derivative free), "
            f"got {method}"
        )
    names = check_param_names(param_names)
    if names is None:
        raise ValueError("param_names is required")

    initial_means = as_param_vector(initial_means, names, "initial_means")
    initial_sds = as_param_vector(initial_sds, names, "initial_sds")
    lower_bounds = as_param_vector(lower_bounds, names, "lower_bounds")
    upper_bounds = as_param_vector(upper_bounds, names, "upper_bounds")
    if np.any(initial_sds < 0):
        raise ValueError(f"initial_sds must be non-negative, got {initial_sds}")
    if np.any(lower_bounds >= upper_bounds):
        raise ValueError(
            "lower_bounds must be smaller than upper_bounds, got "
            f"{lower_bounds} and {upper_bounds}"
        )

    if isinstance(fixed_params, ModelParameters):
        fixed_params = {
            key: value for key, value in fixed_params.to_dict().items() if key not in names
        }
    fixed_params = {} if fixed_params is None else dict(fixed_params)

    objective_kwargs = {
        "target_bin_table": target_bin_table,
        "fixed_params": fixed_params,
        "n_sim": n_sim,
        "bin_edges": bin_edges,
        "dt": dt,
        "max_steps": max_steps,
        "loss": loss,
        "seed_policy": seed_policy,
    }
    # Validates target table, edges, loss, seed policy and the fixed / free split
    ObjectiveFunction(param_names=names, random_state=0, **objective_kwargs)

    n_cpus = get_ncpus(n_cpus)
    seed = resolve_seed(random_state)
    run_start = partial(
        _run_start,
        seed=seed,
        param_names=names,
        initial_means=initial_means,
        initial_sds=initial_sds,
        lower_bounds=lower_bounds,
        upper_bounds=upper_bounds,
        objective_kwargs=objective_kwargs,
        method=method,
        max_iter=int(max_iter),
        minimize_options={} if minimize_options is None else dict(minimize_options),
        bound_tol=bound_tol,
    )

    # Run starts -----------------------------------------
    round_size = min(n_cpus, n_starts)
    rounds = [
        list(range(i, min(i + round_size, n_starts)))
        for i in range(0, n_starts, round_size)
    ]
    if n_cpus == 1 and verbose:
        print("No Multiprocessing, since only one cpu requested!")

    runs: List[OptimizationRun] = []
    cancelled = False
    pool = Pool(nodes=round_size) if round_size > 1 else None
    try:
        for i, start_indices in enumerate(rounds):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            if verbose:
                print("optimization round:", i + 1, " of", len(rounds))
            if pool is not None:
                round_runs = pool.map(run_start, start_indices)
            else:
                round_runs = [run_start(k) for k in start_indices]
            runs += round_runs
            if verbose:
                for run in round_runs:
                    print(
                        "start:", run.start_index,
                        "status:", run.status,
                        "fun:", run.fun,
                        "estimate:", run.estimate,
                    )
    finally:
        if pool is not None:
            pool.close()
            pool.join()
            pool.clear()

    if len(runs) == 0:
        raise RuntimeError("Parameter recovery was cancelled before any start finished")

    best, convergence_quality = select_best_run(runs)
    if convergence_quality == "not_converged":
        warnings.warn(
            f"None of the {len(runs)} optimization runs converged. Returning the run "
            f"with the lowest objective value (start {best.start_index}, "
            f"status '{best.status}')."
        )

    return RecoveryResult(
        best=best,
        runs=runs,
        param_names=names,
        fixed_params=fixed_params,
        convergence_quality=convergence_quality,
        cancelled=cancelled,
        n_starts_requested=int(n_starts),
        seed=seed,
    )
