from ddmfit.config.config import DEFAULT_SIM_PARAMS, model_config
from ddmfit.basic_simulators.parameters import ModelParameters
from ddmfit.support_utils.utils import derive_seed, get_ncpus, make_rng, resolve_seed
import numpy as np
import pandas as pd
import warnings
from functools import partial
from numpy.random import default_rng
from pathos.multiprocessing import ProcessingPool as Pool

"""
This module defines the basic simulators which are the main
workhorse of the package: a single trial generator and an experiment
generator that runs many independent trials of the drift diffusion model
with trial-to-trial variability in drift, starting point and non-decision time.

Both share one vectorized kernel (_simulate_batch) which advances a batch of
trials through the Euler-Maruyama discretization in blocks of time steps.
"""

from typing import Any, Dict, Sequence

MODEL_NAME = "ddm_sv_sz_st"
POSSIBLE_CHOICES = model_config[MODEL_NAME]["possible_choices"]

# Internal code for trials that did not reach a boundary within max_steps.
_TIMEOUT = -1


def _check_sim_settings(dt: float, max_steps: int, chunk_size: int) -> None:
    if not np.isfinite(dt) or dt <= 0:
        raise ValueError(f"dt must be a positive number, got {dt}")
    if int(max_steps) != max_steps or max_steps < 1:
        raise ValueError(f"max_steps must be a positive integer, got {max_steps}")
    if int(chunk_size) != chunk_size or chunk_size < 1:
        raise ValueError(f"chunk_size must be a positive integer, got {chunk_size}")


def _sample_trial_params(
    params: ModelParameters, n_trials: int, rng: np.random.Generator
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Draw per-trial drift, starting point and non-decision time.

    The variates are always drawn and scaled by the respective width, so that
    a width of 0 yields the mean and the layout of the random stream does not
    depend on the parameter values.
    """
    v = params.mean_v + params.sv * rng.standard_normal(n_trials)
    z = params.mean_z + params.sz * (rng.random(n_trials) - 0.5)
    ter = params.mean_ter + params.st0 * (rng.random(n_trials) - 0.5)

    # Starting point has to stay strictly inside (0, a)
    z = np.clip(z, np.nextafter(0.0, 1.0), np.nextafter(params.a, 0.0))
    ter = np.maximum(ter, 0.0)
    return v, z, ter


def _simulate_batch(
    v: np.ndarray,
    z: np.ndarray,
    a: float,
    s: float,
    dt: float,
    max_steps: int,
    rng: np.random.Generator,
    chunk_size: int = DEFAULT_SIM_PARAMS["chunk_size"],
    return_paths: bool = False,
) -> Dict[str, Any]:
    """Run the Euler-Maruyama scheme for a batch of trials until absorption.

    Arguments
    ---------
        v, z: np.ndarray
            Per-trial drift and starting point.
        a: float
            Upper boundary (lower boundary at 0).
        s: float
            Diffusion coefficient.
        dt: float
            Step size.
        max_steps: int
            Step budget. Trials without a boundary crossing after max_steps
            steps are timeouts.
        rng: np.random.Generator
            Random source. Noise is drawn for the full batch in every block
            (also for trials that already finished) so that trial i sees the
            same noise sequence regardless of the other trials.
        chunk_size: int
            Number of steps simulated per block.
        return_paths: bool
            Whether to collect the evidence trajectories.

    Returns
    -------
        dict with 'choices' (1 upper, 0 lower, -1 timeout),
        'n_steps' (steps until absorption, max_steps for timeouts)
        and 'paths' (list of np.ndarray or None).
    """
    n = v.shape[0]
    x = z.astype(np.float64).copy()
    choices = np.full(n, _TIMEOUT, dtype=np.int64)
    n_steps = np.full(n, max_steps, dtype=np.int64)
    paths = [[np.array([z[i]])] for i in range(n)] if return_paths else None

    active = np.arange(n)
    noise_scale = s * np.sqrt(dt)
    steps_done = 0
    while steps_done < max_steps and active.size > 0:
        block = min(chunk_size, max_steps - steps_done)
        noise = rng.standard_normal((n, block))[active]

        traj = x[active, None] + np.cumsum(
            v[active, None] * dt + noise_scale * noise, axis=1
        )
        upper = traj >= a
        crossed = upper | (traj <= 0)
        hit = crossed.any(axis=1)
        first = crossed.argmax(axis=1)

        hit_idx = active[hit]
        choices[hit_idx] = upper[hit, first[hit]].astype(np.int64)
        n_steps[hit_idx] = steps_done + first[hit] + 1
        x[active[~hit]] = traj[~hit, -1]

        if return_paths:
            for row, trial in enumerate(active):
                stop = first[row] + 1 if hit[row] else block
                paths[trial].append(traj[row, :stop])

        active = active[~hit]
        steps_done += block

    if return_paths:
        paths = [np.concatenate(segments) for segments in paths]
    return {"choices": choices, "n_steps": n_steps, "paths": paths}


def simulate_trial(
    params: ModelParameters | Dict[str, float] | Sequence[float],
    dt: float = DEFAULT_SIM_PARAMS["dt"],
    max_steps: int = DEFAULT_SIM_PARAMS["max_steps"],
    random_state: int | np.random.Generator | None = None,
    return_path: bool = False,
    chunk_size: int = DEFAULT_SIM_PARAMS["chunk_size"],
) -> Dict[str, Any]:
    """Simulate a single trial of the drift diffusion model.

    Arguments
    ---------
        params: ModelParameters, dict, list or np.ndarray
            Model parameters (see ModelParameters.from_any()).
        dt: float <default=0.001>
            Step size of the discretization (conceptually measured in seconds).
        max_steps: int <default=20000>
            Maximum number of steps before the trial counts as a timeout.
        random_state: int | np.random.Generator | None
            Seed or generator. A passed generator is consumed.
        return_path: bool <default=False>
            If True, the evidence trajectory is returned under 'path'.

    Returns
    -------
        dict with keys 'choice' (1 upper, 0 lower, None for timeouts),
        'rt' (decision time + non-decision time, None for timeouts),
        'decision_time', 'n_steps', and the sampled 'v', 'z', 'ter'.
    """
    params = ModelParameters.from_any(params).validate()
    _check_sim_settings(dt, max_steps, chunk_size)
    rng, _ = make_rng(random_state)

    v, z, ter = _sample_trial_params(params, 1, rng)
    out = _simulate_batch(
        v,
        z,
        a=params.a,
        s=params.s,
        dt=dt,
        max_steps=int(max_steps),
        rng=rng,
        chunk_size=int(chunk_size),
        return_paths=return_path,
    )

    choice = int(out["choices"][0])
    n_steps = int(out["n_steps"][0])
    if choice == _TIMEOUT:
        choice, decision_time, rt = None, None, None
    else:
        decision_time = n_steps * dt
        rt = decision_time + float(ter[0])

    trial = {
        "choice": choice,
        "rt": rt,
        "decision_time": decision_time,
        "n_steps": n_steps,
        "v": float(v[0]),
        "z": float(z[0]),
        "ter": float(ter[0]),
    }
    if return_path:
        trial["path"] = out["paths"][0]
    return trial


def _run_batch(
    batch: tuple[int, int],
    params: ModelParameters,
    dt: float,
    max_steps: int,
    seed: int,
    chunk_size: int,
) -> Dict[str, np.ndarray]:
    """Simulate one batch of trials from its own derived random stream."""
    batch_index, n_batch = batch
    rng = default_rng(derive_seed(seed, batch_index))
    v, z, ter = _sample_trial_params(params, n_batch, rng)
    out = _simulate_batch(
        v, z, a=params.a, s=params.s, dt=dt, max_steps=max_steps, rng=rng,
        chunk_size=chunk_size,
    )
    return {"choices": out["choices"], "n_steps": out["n_steps"], "v": v, "z": z, "ter": ter}


def simulate_experiment(
    params: ModelParameters | Dict[str, float] | Sequence[float],
    n_trials: int = DEFAULT_SIM_PARAMS["n_trials"],
    dt: float = DEFAULT_SIM_PARAMS["dt"],
    max_steps: int = DEFAULT_SIM_PARAMS["max_steps"],
    random_state: int | np.random.Generator | None = None,
    return_trial_params: bool = False,
    n_cpus: int | str = 1,
    batch_size: int = DEFAULT_SIM_PARAMS["batch_size"],
    chunk_size: int = DEFAULT_SIM_PARAMS["chunk_size"],
    timeout_warning_rate: float | None = DEFAULT_SIM_PARAMS["timeout_warning_rate"],
) -> Dict[str, Any]:
    """Simulate an experiment of n_trials independent trials.

    Arguments
    ---------
        params: ModelParameters, dict, list or np.ndarray
            Model parameters shared by all trials.
        n_trials: int <default=1000>
            Number of trials.
        dt: float <default=0.001>
            Step size of the discretization.
        max_steps: int <default=20000>
            Step budget per trial.
        random_state: int | np.random.Generator | None
            Global seed. Batch i of trials uses the stream derive_seed(seed, i).
        return_trial_params: bool <default=False>
            Whether to include the sampled per-trial 'v', 'z', 'ter' columns.
        n_cpus: int | str <default=1>
            Number of processes to spread the batches over ('all' for all
            physical cores). Does not influence the result.
        batch_size: int <default=256>
            Number of trials per batch (and per random stream).
        timeout_warning_rate: float | None <default=0.05>
            Emit a warning if the fraction of timeout trials exceeds this value.
            None disables the warning.

    Returns
    -------
        dict with
            'data': pd.DataFrame with columns trial_index, choice (Int64, <NA> for
                timeouts), rt (NaN for timeouts) and optionally v, z, ter
            'metadata': dict with the simulation settings and timeout counts
    """
    params = ModelParameters.from_any(params).validate()
    _check_sim_settings(dt, max_steps, chunk_size)
    if int(n_trials) != n_trials or n_trials < 1:
        raise ValueError(f"n_trials must be a positive integer, got {n_trials}")
    if int(batch_size) != batch_size or batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size}")
    n_trials, batch_size = int(n_trials), int(batch_size)

    seed = resolve_seed(random_state)
    batches = [
        (i, min(batch_size, n_trials - start))
        for i, start in enumerate(range(0, n_trials, batch_size))
    ]
    run_batch = partial(
        _run_batch,
        params=params,
        dt=dt,
        max_steps=int(max_steps),
        seed=seed,
        chunk_size=int(chunk_size),
    )

    n_cpus = get_ncpus(n_cpus)
    if n_cpus > 1 and len(batches) > 1:
        pool = Pool(nodes=min(n_cpus, len(batches)))
        try:
            out_list = pool.map(run_batch, batches)
        finally:
            pool.close()
            pool.join()
            pool.clear()
    else:
        out_list = [run_batch(batch) for batch in batches]

    out = {
        key: np.concatenate([batch_out[key] for batch_out in out_list])
        for key in out_list[0].keys()
    }

    timeout = out["choices"] == _TIMEOUT
    rts = np.where(timeout, np.nan, out["n_steps"] * dt + out["ter"])
    data = pd.DataFrame(
        {
            "trial_index": np.arange(n_trials),
            "choice": pd.arrays.IntegerArray(out["choices"], timeout),
            "rt": rts,
        }
    )
    if return_trial_params:
        data["v"] = out["v"]
        data["z"] = out["z"]
        data["ter"] = out["ter"]

    n_timeouts = int(timeout.sum())
    timeout_rate = n_timeouts / n_trials
    if timeout_warning_rate is not None and timeout_rate > timeout_warning_rate:
        warnings.warn(
            f"{n_timeouts} of {n_trials} trials ({timeout_rate:.1%}) did not reach a "
            f"boundary within max_steps={max_steps}. Parameters {params.to_dict()} "
            "may lie in a degenerate region."
        )

    metadata = {
        "model": MODEL_NAME,
        "params": params.to_dict(),
        "n_trials": n_trials,
        "n_timeouts": n_timeouts,
        "timeout_rate": timeout_rate,
        "dt": dt,
        "max_steps": int(max_steps),
        "max_t": int(max_steps) * dt,
        "seed": seed,
        "batch_size": batch_size,
        "possible_choices": list(POSSIBLE_CHOICES),
    }
    return {"data": data, "metadata": metadata}


def simulate_experiments(
    param_sets: Sequence[ModelParameters | Dict[str, float]],
    n_trials: int = DEFAULT_SIM_PARAMS["n_trials"],
    random_state: int | np.random.Generator | None = None,
    **kwargs,
) -> list[Dict[str, Any]]:
    """Simulate one experiment per parameter set.

    Experiment k is seeded with derive_seed(seed, k). Remaining keyword
    arguments are passed on to simulate_experiment().
    """
    seed = resolve_seed(random_state)
    return [
        simulate_experiment(
            theta, n_trials=n_trials, random_state=derive_seed(seed, k), **kwargs
        )
        for k, theta in enumerate(param_sets)
    ]


def get_trial_frame(dataset: Dict[str, Any] | pd.DataFrame) -> pd.DataFrame:
    """Return the per-trial table of an experiment dataset.

    Accepts the output of simulate_experiment() or any DataFrame with 'choice'
    and 'rt' columns (e.g. observed data).
    """
    if isinstance(dataset, dict):
        if "data" not in dataset:
            raise ValueError("dataset dictionary has no 'data' entry")
        dataset = dataset["data"]
    if not isinstance(dataset, pd.DataFrame):
        raise ValueError(
            "dataset must be the output of simulate_experiment() or a pandas DataFrame"
        )
    missing = [col for col in ["choice", "rt"] if col not in dataset.columns]
    if missing:
        raise ValueError(f"dataset is missing columns: {missing}")
    return dataset


def choice_summary(
    dataset: Dict[str, Any] | pd.DataFrame,
    possible_choices: Sequence[int] = POSSIBLE_CHOICES,
) -> Dict[str, Any]:
    """Choice probabilities, omission probability and mean RT by choice.

    Probabilities are relative to all trials, timeouts included.
    """
    data = get_trial_frame(dataset)
    n = len(data)
    valid = data["choice"].notna() & data["rt"].notna()
    choice_p = {}
    mean_rt = {}
    for choice in possible_choices:
        mask = valid & (data["choice"] == choice).fillna(False)
        choice_p[choice] = float(mask.sum()) / n if n > 0 else np.nan
        mean_rt[choice] = float(data.loc[mask, "rt"].mean()) if mask.any() else np.nan
    return {
        "choice_p": choice_p,
        "omission_p": float((~valid).sum()) / n if n > 0 else np.nan,
        "mean_rt": mean_rt,
        "n_trials": n,
    }
