from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, List, Sequence
import numpy as np
import pandas as pd

"""
This module defines the parameter record of the drift diffusion model with
trial-to-trial variability, together with the helpers that build complete
parameter sets from partial ones (the 'optimize a subset, fix the rest' pattern
used during parameter recovery).
"""

PARAM_NAMES: List[str] = ["mean_v", "a", "mean_z", "s", "mean_ter", "sv", "sz", "st0"]


@dataclass(frozen=True)
class ModelParameters:
    """Parameters of the drift diffusion model with trial-to-trial variability.

    Attributes
    ----------
        mean_v: float
            Mean drift rate. Per-trial drift ~ Normal(mean_v, sv).
        a: float
            Boundary separation (upper boundary at a, lower boundary at 0).
        mean_z: float
            Mean starting point, in absolute units (0 < mean_z < a).
        s: float
            Within-trial noise scale (diffusion coefficient).
        mean_ter: float
            Mean non-decision time.
        sv: float
            Standard deviation of the per-trial drift.
        sz: float
            Width of the uniform starting point distribution.
        st0: float
            Width of the uniform non-decision time distribution.
    """

    mean_v: float
    a: float
    mean_z: float
    s: float
    mean_ter: float
    sv: float = 0.0
    sz: float = 0.0
    st0: float = 0.0

    def __post_init__(self):
        for f in fields(self):
            object.__setattr__(self, f.name, float(getattr(self, f.name)))

    @classmethod
    def from_any(cls, theta: Any) -> "ModelParameters":
        """Build parameters from a ModelParameters, dict, pd.Series, list or 1d np.ndarray.

        Lists and arrays have to follow the ordering in PARAM_NAMES.

        Raises
        ------
            ValueError: If theta has unknown / missing names or the wrong length.
        """
        if isinstance(theta, cls):
            return theta
        if isinstance(theta, pd.Series):
            theta = theta.to_dict()
        if isinstance(theta, dict):
            unknown = [key for key in theta if key not in PARAM_NAMES]
            if unknown:
                raise ValueError(f"Unknown parameter names: {unknown}")
            missing = [
                name for name in PARAM_NAMES[:5] if name not in theta
            ]  # variability widths default to 0
            if missing:
                raise ValueError(f"Missing parameters: {missing}")
            return cls(**theta)
        if isinstance(theta, (list, tuple, np.ndarray)):
            theta = np.asarray(theta, dtype=np.float64)
            if theta.ndim != 1 or theta.shape[0] != len(PARAM_NAMES):
                raise ValueError(
                    f"theta array must be 1d with {len(PARAM_NAMES)} entries "
                    f"ordered as {PARAM_NAMES}, got shape {theta.shape}"
                )
            return cls(*theta)
        raise ValueError(
            "theta is not supplied as ModelParameters, dictionary, pandas Series, "
            "list or numpy array!"
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    def to_array(self, names: Sequence[str] | None = None) -> np.ndarray:
        names = PARAM_NAMES if names is None else names
        return np.array([getattr(self, name) for name in names], dtype=np.float64)

    def replace(self, **overrides) -> "ModelParameters":
        unknown = [key for key in overrides if key not in PARAM_NAMES]
        if unknown:
            raise ValueError(f"Unknown parameter names: {unknown}")
        return replace(self, **overrides)

    def violations(self) -> List[str]:
        """List the model constraints violated by this parameter set."""
        out = []
        values = self.to_dict()
        non_finite = [name for name, value in values.items() if not np.isfinite(value)]
        if non_finite:
            # Comparisons below are meaningless with nan / inf
            return [f"non-finite values for {non_finite}"]
        if self.a <= 0:
            out.append(f"a must be > 0 (a={self.a})")
        if not 0 < self.mean_z < self.a:
            out.append(f"mean_z must lie in (0, a) (mean_z={self.mean_z}, a={self.a})")
        if self.s <= 0:
            out.append(f"s must be > 0 (s={self.s})")
        if self.mean_ter < 0:
            out.append(f"mean_ter must be >= 0 (mean_ter={self.mean_ter})")
        for name in ["sv", "sz", "st0"]:
            if values[name] < 0:
                out.append(f"{name} must be >= 0 ({name}={values[name]})")
        return out

    def is_valid(self) -> bool:
        return len(self.violations()) == 0

    def validate(self) -> "ModelParameters":
        """Raise ValueError listing every violated constraint, return self otherwise."""
        problems = self.violations()
        if problems:
            raise ValueError("Invalid model parameters: " + "; ".join(problems))
        return self


def merge_parameters(
    base: ModelParameters | Dict[str, float], overrides: Dict[str, float] | None = None
) -> ModelParameters:
    """Merge a partial override into a complete parameter set."""
    base = ModelParameters.from_any(base)
    if not overrides:
        return base
    return base.replace(**overrides)


def assemble_parameters(
    candidate: Dict[str, float] | Sequence[float] | np.ndarray,
    fixed: ModelParameters | Dict[str, float] | None = None,
    param_names: Sequence[str] | None = None,
) -> ModelParameters:
    """Build a complete parameter set from the optimized subset and the fixed rest.

    Arguments
    ---------
        candidate: dict or sequence
            Values of the parameters being optimized. If a sequence, it is
            aligned with param_names.
        fixed: ModelParameters, dict or None
            Values held constant. A full ModelParameters record is allowed, in
            which case the candidate values override its entries.
        param_names: list[str] | None
            Names of the optimized parameters. Required if candidate is a sequence.

    Returns
    -------
        ModelParameters (not validated, see ModelParameters.validate())

    Raises
    ------
        ValueError: If names are unknown, a parameter is both optimized and
            fixed (dict input), or a parameter is neither.
    """
    if isinstance(candidate, dict):
        candidate_dict = dict(candidate)
    else:
        if param_names is None:
            raise ValueError("param_names is required when candidate is not a dict")
        values = np.asarray(candidate, dtype=np.float64).ravel()
        if values.shape[0] != len(param_names):
            raise ValueError(
                f"candidate has {values.shape[0]} entries, "
                f"expected {len(param_names)} ({list(param_names)})"
            )
        candidate_dict = dict(zip(param_names, values))

    unknown = [name for name in candidate_dict if name not in PARAM_NAMES]
    if unknown:
        raise ValueError(f"Unknown parameter names: {unknown}")

    if isinstance(fixed, ModelParameters):
        return fixed.replace(**candidate_dict)

    fixed_dict = {} if fixed is None else dict(fixed)
    unknown = [name for name in fixed_dict if name not in PARAM_NAMES]
    if unknown:
        raise ValueError(f"Unknown fixed parameter names: {unknown}")
    overlap = [name for name in candidate_dict if name in fixed_dict]
    if overlap:
        raise ValueError(f"Parameters are both optimized and fixed: {overlap}")
    missing = [
        name
        for name in PARAM_NAMES
        if name not in candidate_dict and name not in fixed_dict
    ]
    if missing:
        raise ValueError(f"Parameters neither optimized nor fixed: {missing}")
    return ModelParameters(**fixed_dict, **candidate_dict)
