"""
core.py: DEBtox2019 toxicokinetic-toxicodynamic model (scaled damage, growth, reproduction, survival)

The model is split in the same blocks as the DEBtox2019 `derivatives` routine:

  - TK        : scaled damage D with four optional feedbacks (surface:volume on uptake and
                elimination, growth dilution, losses with reproduction)
  - Energy    : von Bertalanffy growth of body length L under stress, with the two-stage
                starvation rules (stop growth, then shrink)
  - Repro     : cumulative reproduction above the length at puberty
  - Survival  : survival probability under effect hazard + background hazard (optionally Weibull)

State ordering (fixed):

    y = [D, L, R, S]

Exposure is either a constant concentration or a time-varying scenario looked up through
`debtox.scenario.lookup_concentration` at every right-hand-side evaluation.

**DEBtox2019 numerical safeguards:**
  - The effect hazard is capped at 111 d-1 (99% mortality in one hour); very high hazard
    rates make the system stiff, which mostly shows up when the multiplication factor is
    raised during ECx/EPx searches.
  - Reverse growth dilution (damage concentrated by shrinking) is switched OFF.
  - Below half the initial length the body length is frozen.

Integration uses SciPy's RK45 (Dormand–Prince 5(4)) with dense output; states are reported
only at the requested output times.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike
from scipy.integrate import RK45

from .errors import InvalidParameter, InvalidScenarioTable, SolverDivergence
from .scenario import InterpolationMode, ScenarioTable, TimeVarying, lookup_concentration

logger = logging.getLogger(__name__)

# maximum effect hazard rate (1/d)
HAZARD_CAP = 111.0

N_STATES = 4
IDX_DAMAGE = 0
IDX_LENGTH = 1
IDX_REPRO = 2
IDX_SURVIVAL = 3


# ---------------------------------------------------------------------------
#  Parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelParameters:
    """
    Scalar parameters of one model run.

    Life history:
      L0, Lp, Lm : length at start, at puberty, maximum length (mm)
      rB         : von Bertalanffy growth rate constant (1/d)
      Rm         : maximum reproduction rate (#/d)
      f          : scaled functional response (-)
      hb         : background hazard rate (1/d)

    Toxicant response:
      kd         : dominant rate constant (1/d)
      zb, bb     : threshold / effect strength for energy-budget effects
      zs, bs     : threshold / effect strength for survival

    Global settings and extras (defaults are the DEBtox2019 defaults):
      FBV, KRV   : dry weight egg / structure, part. coeff. repro buffer and structure
      kap        : approximation for kappa
      yP         : product of yVA and yAV
      Lf         : body length at half-saturation feeding (0 = off)
      Tlag       : lag time before development starts (d)
      Lj         : length at metamorphosis (0 = off)
      Lm_ref     : reference maximum length for surface:volume scaling
      MF         : multiplication factor on the exposure scenario
      a          : Weibull shape of background hazard (1 = constant hazard)
    """

    L0: float
    Lp: float
    Lm: float
    rB: float
    Rm: float
    f: float
    hb: float
    kd: float
    zb: float
    zs: float

    bb: float = 0.0
    bs: float = 0.0
    FBV: float = 0.02
    KRV: float = 1.0
    kap: float = 0.8
    yP: float = 0.64
    Lf: float = 0.0
    Tlag: float = 0.0
    Lj: float = 0.0
    Lm_ref: float = 0.0
    MF: float = 1.0
    a: float = 1.0

    # order of the flat parameter vector of the compiled DEBtox2019 routine
    VECTOR_ORDER = (
        "FBV", "KRV", "kap", "yP",
        "L0", "Lp", "Lm", "rB", "Rm", "f", "hb",
        "Lf", "Tlag",
        "kd", "zb", "bb", "zs", "bs",
        "Lj", "Lm_ref", "MF", "a",
    )

    def __post_init__(self) -> None:
        for fld in fields(self):
            value = getattr(self, fld.name)
            try:
                value = float(value)
            except (TypeError, ValueError) as exc:
                raise InvalidParameter(f"parameter {fld.name} is not a number: {value!r}") from exc
            if not math.isfinite(value):
                raise InvalidParameter(f"parameter {fld.name} must be finite, got {value}")
            object.__setattr__(self, fld.name, value)

        if self.L0 <= 0.0:
            raise InvalidParameter(f"L0 must be positive, got {self.L0}")
        if self.Lm <= 0.0:
            raise InvalidParameter(f"Lm must be positive, got {self.Lm}")
        if self.Lm == self.Lp:
            raise InvalidParameter("Lm and Lp must differ")
        if not 0.0 < self.kap < 1.0:
            raise InvalidParameter(f"kap must lie in (0, 1), got {self.kap}")
        if self.yP <= 0.0:
            raise InvalidParameter(f"yP must be positive, got {self.yP}")
        if self.a <= 0.0:
            raise InvalidParameter(f"Weibull shape a must be positive, got {self.a}")

    def as_vector(self) -> np.ndarray:
        """Parameters as the flat 22-element vector (see VECTOR_ORDER)."""
        return np.array([getattr(self, name) for name in self.VECTOR_ORDER], dtype=float)


def _as_float_tuple(name: str, values: Sequence[float], size: int) -> Tuple[float, ...]:
    arr = np.asarray(values, dtype=float).ravel()
    if arr.shape != (size,):
        raise InvalidParameter(f"{name} needs {size} entries, got {arr.size}")
    if not np.all(np.isfinite(arr)):
        raise InvalidParameter(f"{name} contains non-finite values")
    return tuple(float(v) for v in arr)


@dataclass(frozen=True)
class ModelSwitches:
    """
    Feedback switches and mode-of-action weights.

      feedb : [surface:volume on uptake, surface:volume on elimination,
               growth dilution, losses with reproduction]
      moa   : [assimilation, maintenance, growth costs, reproduction costs,
               hazard to reproduction]

    A feedback switch of 0 disables that feedback; any other value scales it.
    """

    feedb: Tuple[float, ...] = (0.0, 0.0, 0.0, 0.0)
    moa: Tuple[float, ...] = (0.0, 1.0, 0.0, 0.0, 0.0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "feedb", _as_float_tuple("feedb", self.feedb, 4))
        object.__setattr__(self, "moa", _as_float_tuple("moa", self.moa, 5))


# ---------------------------------------------------------------------------
#  Trajectory
# ---------------------------------------------------------------------------

@dataclass
class Trajectory:
    """
    States at the requested output times.

      t       : (n,)    output times, as requested
      y       : (n, 4)  states [D, L, R, S]
      n_steps : accepted solver steps
    """

    t: np.ndarray
    y: np.ndarray
    n_steps: int = 0

    def __len__(self) -> int:
        return int(self.t.shape[0])

    @property
    def damage(self) -> np.ndarray:
        return self.y[:, IDX_DAMAGE]

    @property
    def length(self) -> np.ndarray:
        return self.y[:, IDX_LENGTH]

    @property
    def reproduction(self) -> np.ndarray:
        return self.y[:, IDX_REPRO]

    @property
    def survival(self) -> np.ndarray:
        return self.y[:, IDX_SURVIVAL]

    def final_state(self) -> Dict[str, float]:
        D, L, R, S = self.y[-1]
        return {
            "t": float(self.t[-1]),
            "damage": float(D),
            "length": float(L),
            "reproduction": float(R),
            "survival": float(S),
        }

    def as_dict(self) -> Dict[str, List[float]]:
        return {
            "t": self.t.tolist(),
            "damage": self.damage.tolist(),
            "length": self.length.tolist(),
            "reproduction": self.reproduction.tolist(),
            "survival": self.survival.tolist(),
        }


# ---------------------------------------------------------------------------
#  Integrator
# ---------------------------------------------------------------------------

def _positive(name: str, value: float) -> float:
    value = float(value)
    if not math.isfinite(value) or value <= 0.0:
        raise InvalidParameter(f"{name} must be positive and finite, got {value}")
    return value


def integrate(
    fun: Callable[[float, np.ndarray], np.ndarray],
    y0: ArrayLike,
    times: ArrayLike,
    *,
    first_step: float,
    atol: float,
    rtol: float,
    max_step: float,
) -> Trajectory:
    """
    Integrate dy/dt = fun(t, y) and record y at each of `times`.

    The Dormand–Prince stepper takes its own adaptive steps between times[0] and
    times[-1] (never longer than `max_step`); every requested time that falls inside
    an accepted step is filled from that step's dense interpolant. The first row of
    the result is `y0` itself.

    Raises SolverDivergence (no partial output) when the stepper cannot meet the
    tolerances.
    """
    t_req = np.asarray(times, dtype=float)
    if t_req.ndim != 1 or t_req.size == 0:
        raise InvalidParameter("output times must be a non-empty 1-D sequence")
    if not np.all(np.isfinite(t_req)):
        raise InvalidParameter("output times must be finite")
    if t_req.size > 1 and not np.all(np.diff(t_req) > 0.0):
        raise InvalidParameter("output times must be strictly increasing")

    y_start = np.array(y0, dtype=float).ravel()
    if not np.all(np.isfinite(y_start)):
        raise InvalidParameter("initial state must be finite")

    first_step = _positive("first_step", first_step)
    atol = _positive("atol", atol)
    rtol = _positive("rtol", rtol)
    max_step = _positive("max_step", max_step)

    Y = np.empty((t_req.size, y_start.size), dtype=float)
    Y[0] = y_start
    if t_req.size == 1:
        return Trajectory(t=t_req, y=Y, n_steps=0)

    span = t_req[-1] - t_req[0]
    if first_step > span:
        logger.debug("first step %g longer than the output span %g; clamped", first_step, span)
    solver = RK45(
        fun,
        t_req[0],
        y_start,
        t_req[-1],
        first_step=min(first_step, span),
        max_step=max_step,
        rtol=rtol,
        atol=atol,
    )

    idx = 1
    n_steps = 0
    while idx < t_req.size:
        message = solver.step()
        if solver.status == "failed":
            raise SolverDivergence(solver.t, message or "step failed")
        n_steps += 1

        interpolant = None
        while idx < t_req.size and t_req[idx] <= solver.t:
            if t_req[idx] == solver.t:
                Y[idx] = solver.y
            else:
                if interpolant is None:
                    interpolant = solver.dense_output()
                Y[idx] = interpolant(t_req[idx])
            idx += 1

    return Trajectory(t=t_req, y=Y, n_steps=n_steps)


# ---------------------------------------------------------------------------
#  Core model
# ---------------------------------------------------------------------------

class DEBtoxModel:
    """
    DEBtox2019 right-hand side plus the run-level settings it needs.

    One instance corresponds to one run: one parameter set, one exposure
    (fixed concentration or an already-selected scenario table) and one
    mode-of-action / feedback configuration. Instances are not mutated by
    `derivatives` or `simulate`, so independent runs can be farmed out freely.

    `logger` is an optional diagnostic channel; the module logger is used when
    it is not given.
    """

    def __init__(
        self,
        params: ModelParameters,
        switches: Optional[ModelSwitches] = None,
        concentration: float = 0.0,
        scenario: Optional[ScenarioTable] = None,
        mode: InterpolationMode = InterpolationMode.CONSTANT,
        time_varying: Optional[TimeVarying] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.p = params
        self.switches = switches if switches is not None else ModelSwitches()
        self.c = float(concentration)
        self.scenario = scenario if scenario is not None else ScenarioTable.empty()
        self.mode = mode if isinstance(mode, InterpolationMode) else InterpolationMode.from_code(mode)
        self.time_varying = time_varying if time_varying is not None else TimeVarying()
        self.log = logger if logger is not None else logging.getLogger(__name__)

        if not math.isfinite(self.c):
            raise InvalidParameter(f"concentration must be finite, got {self.c}")

        # the lookup only runs for table modes; CONSTANT falls back to the fixed concentration
        self._use_lookup = bool(self.time_varying.enabled) and self.mode is not InterpolationMode.CONSTANT

        if self._use_lookup:
            if len(self.scenario) == 0:
                raise InvalidScenarioTable("time-varying exposure requested with an empty scenario table")
            fixed = self.time_varying.fixed_index
            if fixed is not None and not 0 <= fixed < len(self.scenario):
                raise InvalidScenarioTable(
                    f"fixed breakpoint index {fixed} outside table with {len(self.scenario)} rows"
                )
            if self.mode is InterpolationMode.LINEAR and not self.scenario.has_slope:
                raise InvalidScenarioTable("linear interpolation needs a slope column")

    # ------------------------------------------------------------------
    #  Initial state
    # ------------------------------------------------------------------

    def make_initial_state(
        self,
        damage: float = 0.0,
        length: Optional[float] = None,
        reproduction: float = 0.0,
        survival: float = 1.0,
    ) -> np.ndarray:
        """Initial state [D, L, R, S]; the length defaults to L0."""
        if length is None:
            length = self.p.L0
        return np.array([damage, length, reproduction, survival], dtype=float)

    # ------------------------------------------------------------------
    #  Helpers
    # ------------------------------------------------------------------

    def concentration(self, t: float) -> float:
        """External concentration experienced at time t."""
        if not self._use_lookup:
            return self.c
        return lookup_concentration(
            t,
            self.mode,
            self.scenario,
            fixed_index=self.time_varying.fixed_index,
            multiplier=self.p.MF,
        )

    def background_hazard(self, t: float) -> float:
        """
        Background hazard rate; Weibull a * hb^a * t^(a-1) when a != 1.

        At t <= 0 the Weibull hazard is 0 (the cumulative hazard (hb t)^a is 0 there).
        """
        a = self.p.a
        hb = self.p.hb
        if a == 1.0:
            return hb
        if t <= 0.0:
            return 0.0
        return a * hb ** a * t ** (a - 1.0)

    def stress_and_hazard(self, damage: float) -> Tuple[float, float]:
        """Stress level s and (capped) effect hazard h for a scaled damage level."""
        s = self.p.bb * max(0.0, damage - self.p.zb)
        h = self.p.bs * max(0.0, damage - self.p.zs)
        return s, min(HAZARD_CAP, h)

    # ------------------------------------------------------------------
    #  Right-hand side: dy/dt
    # ------------------------------------------------------------------

    def derivatives(self, t: float, y: np.ndarray) -> np.ndarray:
        p = self.p
        fb = self.switches.feedb
        moa = self.switches.moa

        # states are not allowed to go negative
        D = max(float(y[IDX_DAMAGE]), 0.0)
        L = max(float(y[IDX_LENGTH]), 0.0)
        S = max(float(y[IDX_SURVIVAL]), 0.0)

        hb = self.background_hazard(t)
        c = self.concentration(t)

        L = max(1e-3 * p.L0, L)

        f = p.f
        if p.Lf > 0.0:
            f = f / (1.0 + (p.Lf ** 3) / (L ** 3))  # hyperbolic in body volume
        if p.Lj > 0.0:
            f = f * min(1.0, L / p.Lj)  # acceleration until metamorphosis

        s, h = self.stress_and_hazard(D)

        # --- Mode of action ----------------------------------------------
        sA = min(1.0, moa[0] * s)  # keeps 1 - sA non-negative
        sM = moa[1] * s
        sG = moa[2] * s
        sR = moa[3] * s
        sH = moa[4] * s

        # --- Growth and starvation ---------------------------------------
        dL = p.rB * ((1.0 + sM) / (1.0 + sG)) * (f * p.Lm * ((1.0 - sA) / (1.0 + sM)) - L)

        fR = f
        if dL < 0.0:
            if sA < 1.0:
                fR = (f - p.kap * (L / p.Lm) * ((1.0 + sM) / (1.0 - sA))) / (1.0 - p.kap)
            else:
                fR = -math.inf  # feeding fully blocked
            if fR >= 0.0:
                # stage 1: the 1-kappa branch pays maintenance, growth stops
                dL = 0.0
            else:
                # stage 2: shrink to pay maintenance, nothing left for reproduction
                fR = 0.0
                dL = (p.rB * (1.0 + sM) / p.yP) * ((f * p.Lm / p.kap) * ((1.0 - sA) / (1.0 + sM)) - L)

        # --- Reproduction and survival -----------------------------------
        R = 0.0
        if L >= p.Lp:
            R = max(
                0.0,
                (math.exp(-sH) * p.Rm / (1.0 + sR))
                * (fR * p.Lm * (L * L) * (1.0 - sA) - (p.Lp ** 3) * (1.0 + sM))
                / (p.Lm ** 3 - p.Lp ** 3),
            )

        dS = -(h + hb) * S

        # --- Damage with feedbacks ---------------------------------------
        xu = fb[0] * p.Lm_ref / L
        if xu == 0.0:
            xu = 1.0
        xe = fb[1] * p.Lm_ref / L
        if xe == 0.0:
            xe = 1.0
        # reverse growth dilution (shrinking) is switched off
        xG = max(0.0, fb[2] * (3.0 / L) * dL)
        xR = fb[3] * R * p.FBV * p.KRV

        dD = p.kd * (xu * c - xe * D) - (xG + xR) * D

        if L <= 0.5 * p.L0:
            dL = 0.0

        if t < p.Tlag:
            return np.zeros(N_STATES, dtype=float)

        return np.array([dD, dL, R, dS], dtype=float)

    # ------------------------------------------------------------------
    #  Simulation
    # ------------------------------------------------------------------

    def simulate(
        self,
        times: ArrayLike,
        y0: ArrayLike,
        *,
        first_step: float,
        atol: float,
        rtol: float,
        max_step: float,
    ) -> Trajectory:
        """
        Integrate the model and return the states at `times`.

        All solver controls are required; see `integrate` for their meaning.
        """
        y_start = np.asarray(y0, dtype=float).ravel()
        if y_start.shape != (N_STATES,):
            raise InvalidParameter(f"initial state needs {N_STATES} entries, got {y_start.size}")

        t_req = np.asarray(times, dtype=float)
        if self._use_lookup and t_req.size and t_req[0] < self.scenario.times[0]:
            self.log.warning(
                "run starts at t=%g before the first breakpoint t=%g; using the first row",
                t_req[0],
                self.scenario.times[0],
            )

        self.log.debug(
            "integrating %d output times over [%g, %g] (c=%g, time-varying=%s, mode=%s)",
            t_req.size,
            t_req[0] if t_req.size else float("nan"),
            t_req[-1] if t_req.size else float("nan"),
            self.c,
            self._use_lookup,
            self.mode.name,
        )

        try:
            traj = integrate(
                self.derivatives,
                y_start,
                t_req,
                first_step=first_step,
                atol=atol,
                rtol=rtol,
                max_step=max_step,
            )
        except SolverDivergence as exc:
            self.log.error("DEBtox run failed at t=%g: %s", exc.t_reached, exc.message)
            raise

        self.log.debug("run finished after %d solver steps", traj.n_steps)
        return traj
