# import importlib.metadata
from . import basic_simulators
from . import fitting
from . import config
from . import support_utils

__version__ = "0.1.0"  # importlib.metadata.version(__package__ or __name__)

__all__ = ["basic_simulators", "fitting", "config", "support_utils"]
