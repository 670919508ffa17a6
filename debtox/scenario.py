"""
Exposure scenarios: breakpoint tables and the concentration lookup.

A scenario table has one row per breakpoint:

    column 0 : breakpoint time (strictly increasing)
    column 1 : concentration at the breakpoint (or base concentration)
    column 2 : slope, only needed for linear ramps

The interpolation codes follow the DEBtox2019 `int_type` convention
(1 = constant, 2 = step/hold, 3 = exponential decay, 4 = linear ramp).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, Iterable, Optional, Tuple

import numpy as np
from numpy.typing import ArrayLike

from .errors import InvalidScenarioTable

logger = logging.getLogger(__name__)


class InterpolationMode(Enum):
    """How the concentration evolves between two breakpoints."""

    CONSTANT = 1
    STEP = 2
    EXPONENTIAL = 3
    LINEAR = 4

    @classmethod
    def from_code(cls, code) -> "InterpolationMode":
        try:
            return cls(int(code))
        except (TypeError, ValueError) as exc:
            raise InvalidScenarioTable(f"unknown interpolation type {code!r}") from exc


# ---------------------------------------------------------------------------
#  Scenario table
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ScenarioTable:
    """
    Breakpoint table for one exposure scenario.

    An empty table (0 rows) is allowed; it is what a run with constant
    exposure carries. Any attempt to look a concentration up in it fails.
    """

    data: np.ndarray

    def __post_init__(self) -> None:
        arr = np.array(self.data, dtype=float)
        if arr.size == 0:
            arr = np.zeros((0, 2), dtype=float)
        if arr.ndim != 2 or arr.shape[1] not in (2, 3):
            raise InvalidScenarioTable(
                f"scenario table must have 2 or 3 columns, got shape {arr.shape}"
            )
        if not np.all(np.isfinite(arr)):
            raise InvalidScenarioTable("scenario table contains non-finite values")
        if arr.shape[0] > 1 and not np.all(np.diff(arr[:, 0]) > 0.0):
            raise InvalidScenarioTable("breakpoint times must be strictly increasing")
        arr.setflags(write=False)
        object.__setattr__(self, "data", arr)

    @classmethod
    def empty(cls) -> "ScenarioTable":
        return cls(np.zeros((0, 2), dtype=float))

    @property
    def times(self) -> np.ndarray:
        return self.data[:, 0]

    @property
    def concentrations(self) -> np.ndarray:
        return self.data[:, 1]

    @property
    def has_slope(self) -> bool:
        return self.data.shape[1] == 3

    def __len__(self) -> int:
        return int(self.data.shape[0])

    def row_index(self, t: float) -> int:
        """
        Index of the most recent breakpoint at or before `t`.

        Times before the first breakpoint map to the first row.
        """
        if len(self) == 0:
            raise InvalidScenarioTable("cannot look up a concentration in an empty scenario table")
        idx = int(np.searchsorted(self.times, t, side="right")) - 1
        return max(idx, 0)


@dataclass(frozen=True)
class TimeVarying:
    """
    Time-varying exposure switch.

    `fixed_index` (zero-based) pins the lookup to one breakpoint row instead of
    searching the table; used when the active interval is known beforehand.
    """

    enabled: bool = False
    fixed_index: Optional[int] = None


# ---------------------------------------------------------------------------
#  Lookup
# ---------------------------------------------------------------------------

def lookup_concentration(
    t: float,
    mode: InterpolationMode,
    table: ScenarioTable,
    fixed_index: Optional[int] = None,
    multiplier: float = 1.0,
) -> float:
    """
    External concentration at time `t` for a breakpoint table.

      STEP        : MF * c_i
      EXPONENTIAL : MF * c_i * exp(-k (t - t_i)), k = concentration of the LAST row
      LINEAR      : MF * (c_i + (t - t_i) * slope_i)

    where i is `fixed_index` when given, otherwise the last breakpoint with
    t_i <= t.
    """
    if mode is InterpolationMode.CONSTANT:
        raise InvalidScenarioTable("constant exposure does not use the scenario table")

    n_rows = len(table)
    if n_rows == 0:
        raise InvalidScenarioTable("cannot look up a concentration in an empty scenario table")

    if fixed_index is not None:
        if not 0 <= fixed_index < n_rows:
            raise InvalidScenarioTable(
                f"fixed breakpoint index {fixed_index} outside table with {n_rows} rows"
            )
        i = fixed_index
    else:
        i = table.row_index(t)

    t_i = table.data[i, 0]
    c_i = table.data[i, 1]

    if mode is InterpolationMode.STEP:
        return multiplier * c_i

    if mode is InterpolationMode.EXPONENTIAL:
        # the last row's concentration doubles as the decay rate
        kc = table.data[n_rows - 1, 1]
        return multiplier * c_i * math.exp(-kc * (t - t_i))

    if mode is InterpolationMode.LINEAR:
        if not table.has_slope:
            raise InvalidScenarioTable("linear interpolation needs a slope column")
        return multiplier * (c_i + (t - t_i) * table.data[i, 2])

    raise InvalidScenarioTable(f"unsupported interpolation mode {mode!r}")


# ---------------------------------------------------------------------------
#  Scenario collection
# ---------------------------------------------------------------------------

@dataclass
class ScenarioSet:
    """
    All exposure scenarios of a data set, keyed by scenario identifier.

    The identifier is normally the nominal concentration that labels the
    treatment. Selection happens once per run, outside the derivative
    evaluation.
    """

    scenarios: Dict[Hashable, Tuple[ScenarioTable, InterpolationMode]] = field(default_factory=dict)

    @classmethod
    def from_tables(
        cls,
        identifiers: Iterable[Hashable],
        tables: Iterable[ArrayLike],
        modes,
    ) -> "ScenarioSet":
        """
        Build from parallel sequences. `modes` may be a single code/mode shared
        by all scenarios or one per scenario.
        """
        identifiers = list(identifiers)
        tables = list(tables)
        if len(identifiers) != len(tables):
            raise InvalidScenarioTable(
                f"{len(identifiers)} scenario identifiers but {len(tables)} tables"
            )

        if isinstance(modes, (InterpolationMode, int, float, np.integer, np.floating)):
            modes = [modes] * len(identifiers)
        else:
            modes = list(modes)
            if len(modes) == 1:
                modes = modes * len(identifiers)
        if len(modes) != len(identifiers):
            raise InvalidScenarioTable(
                f"{len(identifiers)} scenario identifiers but {len(modes)} interpolation types"
            )

        scenarios: Dict[Hashable, Tuple[ScenarioTable, InterpolationMode]] = {}
        for ident, tab, mode in zip(identifiers, tables, modes):
            if not isinstance(mode, InterpolationMode):
                mode = InterpolationMode.from_code(mode)
            table = tab if isinstance(tab, ScenarioTable) else ScenarioTable(np.asarray(tab, dtype=float))
            if ident in scenarios:
                logger.warning("duplicate scenario identifier %r; keeping the first table", ident)
                continue
            scenarios[ident] = (table, mode)
        return cls(scenarios)

    def __len__(self) -> int:
        return len(self.scenarios)

    def __contains__(self, identifier: Hashable) -> bool:
        return identifier in self.scenarios

    def select(self, identifier: Hashable) -> Tuple[ScenarioTable, InterpolationMode]:
        try:
            return self.scenarios[identifier]
        except KeyError:
            raise InvalidScenarioTable(f"no scenario table for identifier {identifier!r}") from None
