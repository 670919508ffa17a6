"""
DEBtox2019 core: toxicokinetic-toxicodynamic model for growth, reproduction and survival

This package exposes the main model classes from `core.py`, the exposure scenario helpers
from `scenario.py` and the BYOM-style adapter for convenience.
"""

from .core import (
    HAZARD_CAP,
    ModelParameters,
    ModelSwitches,
    Trajectory,
    DEBtoxModel,
    integrate,
)
from .scenario import (
    InterpolationMode,
    ScenarioTable,
    ScenarioSet,
    TimeVarying,
    lookup_concentration,
)
from .adapter import build_model, call_deri, load_run_file, run_from_config
from .errors import DEBtoxError, InvalidParameter, InvalidScenarioTable, SolverDivergence
