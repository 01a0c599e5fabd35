from . import binning
from . import objective
from . import recovery

__all__ = ["binning", "objective", "recovery"]
