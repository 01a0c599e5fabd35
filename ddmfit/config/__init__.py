# from .config import *
from .config import (
    model_config,
    recovery_config,
    DEFAULT_SIM_PARAMS,
    PENALTY_COST,
    PROB_EPS,
)

__all__ = [
    "model_config",
    "recovery_config",
    "DEFAULT_SIM_PARAMS",
    "PENALTY_COST",
    "PROB_EPS",
]
