"""
Adapter between BYOM-style named parameter bags and the DEBtox core.

DEBtox2019 keeps its settings in two structures:

  - `par` : model parameters; each entry is either a plain number or a row
            [value, fit-flag, min, max, log-flag], of which only the value is used
  - `glo` : global settings (FBV, KRV, kap, yP, Lm_ref, MF, feedb, moa) and the
            exposure scenarios (int_scen, int_coll, int_type, timevar)

This module turns those mappings into `ModelParameters`, `ModelSwitches` and an
already-selected scenario table, and offers `call_deri`, which takes the same
arguments as the compiled derivatives routine and returns plain arrays.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import numpy as np
import yaml
from numpy.typing import ArrayLike

from .core import DEBtoxModel, ModelParameters, ModelSwitches
from .errors import InvalidParameter, InvalidScenarioTable
from .scenario import InterpolationMode, ScenarioSet, ScenarioTable, TimeVarying

logger = logging.getLogger(__name__)

# names read from `par`; the first group has no default
PAR_REQUIRED = ("L0", "Lp", "Lm", "rB", "Rm", "f", "hb", "kd", "zb", "zs")
PAR_OPTIONAL = ("bb", "bs", "Lf", "Tlag", "Lj", "a")

# names read from `glo`
GLO_OPTIONAL = ("FBV", "KRV", "kap", "yP", "Lm_ref", "MF")


def _scalar(bag: Mapping[str, Any], name: str, where: str) -> float:
    if name not in bag or bag[name] is None:
        raise InvalidParameter(f"{where}.{name} is missing")
    arr = np.asarray(bag[name], dtype=float).ravel()
    if arr.size == 0:
        raise InvalidParameter(f"{where}.{name} is empty")
    return float(arr[0])


def params_from_structs(par: Mapping[str, Any], glo: Mapping[str, Any]) -> ModelParameters:
    """Build ModelParameters from the `par` and `glo` mappings."""
    values: Dict[str, float] = {}
    for name in PAR_REQUIRED:
        values[name] = _scalar(par, name, "par")
    for name in PAR_OPTIONAL:
        if name in par:
            values[name] = _scalar(par, name, "par")
        else:
            logger.debug("par.%s not given, using the default", name)
    for name in GLO_OPTIONAL:
        if name in glo:
            values[name] = _scalar(glo, name, "glo")
        else:
            logger.debug("glo.%s not given, using the default", name)
    return ModelParameters(**values)


def switches_from_glo(glo: Mapping[str, Any]) -> ModelSwitches:
    kwargs = {}
    if "feedb" in glo:
        kwargs["feedb"] = glo["feedb"]
    if "moa" in glo:
        kwargs["moa"] = glo["moa"]
    return ModelSwitches(**kwargs)


def time_varying_from_glo(glo: Mapping[str, Any]) -> TimeVarying:
    """
    `glo["timevar"]` is [flag] or [flag, row]; the row is one-based and only
    counts when positive.
    """
    raw = np.asarray(glo.get("timevar", [0]), dtype=float).ravel()
    if raw.size == 0:
        return TimeVarying()
    enabled = int(raw[0]) == 1
    fixed_index = None
    if raw.size == 2 and raw[1] > 0:
        fixed_index = int(raw[1]) - 1
    return TimeVarying(enabled=enabled, fixed_index=fixed_index)


def scenario_set_from_glo(glo: Mapping[str, Any]) -> ScenarioSet:
    for key in ("int_scen", "int_coll", "int_type"):
        if key not in glo:
            raise InvalidScenarioTable(f"glo.{key} is missing")
    identifiers = [float(v) for v in np.asarray(glo["int_scen"], dtype=float).ravel()]
    modes = glo["int_type"]
    if np.ndim(modes) > 0:
        modes = [int(m) for m in np.asarray(modes).ravel()]
    return ScenarioSet.from_tables(identifiers, glo["int_coll"], modes)


def build_model(
    par: Mapping[str, Any],
    c: float,
    glo: Mapping[str, Any],
    logger: Optional[logging.Logger] = None,
) -> DEBtoxModel:
    """
    Model for one run. With time-varying exposure, `c` is the scenario
    identifier and selects the table; otherwise it is the concentration.
    """
    params = params_from_structs(par, glo)
    switches = switches_from_glo(glo)
    time_varying = time_varying_from_glo(glo)

    if time_varying.enabled:
        table, mode = scenario_set_from_glo(glo).select(float(c))
    else:
        table, mode = ScenarioTable.empty(), InterpolationMode.CONSTANT

    return DEBtoxModel(
        params,
        switches=switches,
        concentration=c,
        scenario=table,
        mode=mode,
        time_varying=time_varying,
        logger=logger,
    )


def call_deri(
    t: ArrayLike,
    X0: ArrayLike,
    par: Mapping[str, Any],
    c: float,
    glo: Mapping[str, Any],
    dt: float,
    abstol: float,
    reltol: float,
    max_step: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Integrate one run and return (times (n,), states (n, 4)).

    Argument order follows the compiled routine: output times, initial state,
    par, concentration, glo, initial step, absolute and relative tolerance,
    maximum step size.
    """
    model = build_model(par, c, glo)
    traj = model.simulate(t, X0, first_step=dt, atol=abstol, rtol=reltol, max_step=max_step)
    return traj.t, traj.y


# ---------------------------------------------------------------------------
#  Run files
# ---------------------------------------------------------------------------

def load_run_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a YAML run description with `par`, `glo` and `run` sections.

    `run` holds: t (list, or mapping with start/stop/n), X0, c, dt, abstol,
    reltol, max_step.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    if not isinstance(cfg, dict):
        raise InvalidParameter(f"{path}: expected a mapping at the top level")
    for section in ("par", "glo", "run"):
        if section not in cfg:
            raise InvalidParameter(f"{path}: section '{section}' is missing")
    return cfg


def times_from_config(grid: Any) -> np.ndarray:
    if isinstance(grid, Mapping):
        try:
            return np.linspace(float(grid["start"]), float(grid["stop"]), int(grid["n"]))
        except KeyError as exc:
            raise InvalidParameter(f"time grid needs start/stop/n, missing {exc}") from None
    return np.asarray(grid, dtype=float)


def run_from_config(cfg: Mapping[str, Any], logger: Optional[logging.Logger] = None):
    """Run the model described by a loaded run file; returns the Trajectory."""
    run = cfg["run"]
    for key in ("t", "X0", "dt", "abstol", "reltol", "max_step"):
        if key not in run:
            raise InvalidParameter(f"run.{key} is missing")
    model = build_model(cfg["par"], run.get("c", 0.0), cfg["glo"], logger=logger)
    return model.simulate(
        times_from_config(run["t"]),
        run["X0"],
        first_step=run["dt"],
        atol=run["abstol"],
        rtol=run["reltol"],
        max_step=run["max_step"],
    )
