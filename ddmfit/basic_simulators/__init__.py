from . import parameters
from . import simulator

__all__ = ["parameters", "simulator"]
