import numpy as np
import psutil
from numpy.random import default_rng
from threading import Lock
from typing import Any, Dict, Sequence

_global_rng = default_rng()
_rng_lock = Lock()


def get_unique_seed() -> int:
    """
    Generate a unique seed for the random number generator.
    """
    with _rng_lock:
        return int(_global_rng.integers(0, 2**32 - 1))


def derive_seed(seed: int, *keys: int) -> int:
    """Derive a child seed from a parent seed and a sequence of integer keys.

    The derivation goes through numpy's SeedSequence, so the child streams
    for different keys are statistically independent and the mapping
    (seed, keys) -> child seed is fixed. This is what keeps parallel runs
    reproducible: batch / start i always gets the same stream, no matter
    which worker picks it up or in which order.

    Arguments
    ---------
        seed: int
            Parent seed.
        *keys: int
            E.g. a batch index or (start index, evaluation index).

    Returns
    -------
        int: child seed in [0, 2**32)
    """
    # SeedSequence drops trailing zero words, the key count keeps
    # (seed,) / (seed, 0) and (seed, 1) / (seed, 1, 0) apart
    entropy = [int(seed), len(keys)] + [int(k) for k in keys]
    return int(np.random.SeedSequence(entropy).generate_state(1, dtype=np.uint32)[0])


def make_rng(random_state: int | np.random.Generator | None = None):
    """Turn the random_state argument accepted across the package into a Generator.

    Returns
    -------
        tuple (np.random.Generator, int | None): the generator and the seed it was
        built from (None if a Generator was passed in).
    """
    if isinstance(random_state, np.random.Generator):
        return random_state, None
    if random_state is None:
        random_state = get_unique_seed()
    if isinstance(random_state, (bool, np.bool_)) or not isinstance(
        random_state, (int, np.integer)
    ):
        raise ValueError(
            "random_state must be None, an integer or a numpy Generator, "
            f"got {type(random_state).__name__}"
        )
    return default_rng(int(random_state)), int(random_state)


def resolve_seed(random_state: int | np.random.Generator | None = None) -> int:
    """Turn random_state into an integer seed that child seeds can be derived from."""
    if isinstance(random_state, np.random.Generator):
        return int(random_state.integers(0, 2**32 - 1))
    return make_rng(random_state)[1]


def get_ncpus(n_cpus: int | str = 1) -> int:
    """Get the number of cpus to use for parallelization."""
    if n_cpus == "all":
        return psutil.cpu_count(logical=False) or 1
    if not isinstance(n_cpus, (int, np.integer)) or n_cpus < 1:
        raise ValueError(f"n_cpus must be a positive integer or 'all', got {n_cpus}")
    return int(n_cpus)


def as_param_vector(
    values: Sequence[float] | Dict[str, Any] | np.ndarray,
    param_names: Sequence[str],
    label: str = "values",
) -> np.ndarray:
    """Align a per-parameter setting (sequence or dict keyed by name) with param_names.

    Raises
    ------
        ValueError: if the lengths / keys do not match or values are not finite.
    """
    if isinstance(values, dict):
        missing = [name for name in param_names if name not in values]
        extra = [name for name in values if name not in param_names]
        if missing or extra:
            raise ValueError(
                f"{label} keys do not match param_names "
                f"(missing: {missing}, unexpected: {extra})"
            )
        out = np.array([values[name] for name in param_names], dtype=np.float64)
    else:
        out = np.asarray(values, dtype=np.float64).ravel()
        if out.shape[0] != len(param_names):
            raise ValueError(
                f"{label} has {out.shape[0]} entries, "
                f"but {len(param_names)} param_names were supplied"
            )

    if not np.all(np.isfinite(out)):
        raise ValueError(f"{label} contains non-finite entries: {out}")
    return out
