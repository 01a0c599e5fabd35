"""
Configuration dictionaries for the simulator and the parameter recovery routines.

The dictionaries are plain python objects so that they can be copied and modified
by users before they are passed on (e.g. deepcopy(recovery_config) and then
overriding 'n_starts').
"""

# Cost returned by the objective for parameter vectors that violate the
# model constraints (e.g. mean_z >= a). Large but finite, so that
# optimizers can step away from the infeasible region.
PENALTY_COST = 1e10

# Floor for simulated bin proportions in log based losses.
PROB_EPS = 1e-10

DEFAULT_SIM_PARAMS = {
    "dt": 0.001,
    "max_steps": 20000,
    "n_trials": 1000,
    "batch_size": 256,
    "chunk_size": 512,
    "timeout_warning_rate": 0.05,
    "random_state": None,
}

model_config = {
    "ddm_sv_sz_st": {
        "name": "ddm_sv_sz_st",
        "params": ["mean_v", "a", "mean_z", "s", "mean_ter", "sv", "sz", "st0"],
        "param_bounds": [
            [-3.0, 0.05, 0.01, 0.01, 0.0, 0.0, 0.0, 0.0],
            [3.0, 3.0, 2.99, 2.0, 2.0, 2.0, 1.0, 1.0],
        ],
        "default_params": [0.15, 0.8, 0.4, 0.3, 0.12, 0.1, 0.02, 0.03],
        "n_params": 8,
        "possible_choices": [0, 1],
    },
}

recovery_config = {
    "n_starts": 10,
    "n_sim": 1000,
    "max_iter": 200,
    "method": "Nelder-Mead",
    "loss": "sse",
    "seed_policy": "per_evaluation",  # noisy within a run, see recover_parameters()
    "dt": DEFAULT_SIM_PARAMS["dt"],
    "max_steps": DEFAULT_SIM_PARAMS["max_steps"],
    "n_cpus": 1,
    "bound_tol": 1e-3,
}
