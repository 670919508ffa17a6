from pathlib import Path

import numpy as np
import pytest

from debtox.adapter import (
    build_model,
    call_deri,
    load_run_file,
    params_from_structs,
    run_from_config,
    scenario_set_from_glo,
    switches_from_glo,
    time_varying_from_glo,
    times_from_config,
)
from debtox.core import DEBtoxModel, ModelParameters, ModelSwitches
from debtox.errors import InvalidParameter, InvalidScenarioTable
from debtox.scenario import InterpolationMode, ScenarioTable, TimeVarying

EXAMPLE_RUN = Path(__file__).resolve().parents[1] / "examples" / "daphnia_pulsed.yaml"

PULSES = [[0.0, 10.0], [2.0, 0.0], [7.0, 10.0], [9.0, 0.0]]


@pytest.fixture
def par():
    # BYOM rows: [value, fit-flag, min, max, log-flag]
    return {
        "L0": [0.9, 0, 0.5, 1.0, 1],
        "Lp": [2.42, 0],
        "Lm": [4.8, 0],
        "rB": [0.13, 1],
        "Rm": [11.3, 1],
        "f": 1.0,
        "hb": [0.01, 1],
        "Lf": [0.0, 0],
        "Tlag": [0.0, 0],
        "kd": [0.5, 1],
        "zb": [2.0, 1],
        "bb": [0.2, 1],
        "zs": [3.0, 1],
        "bs": [0.3, 1],
        "Lj": [0.0, 0],
        "a": [1.0, 0],
    }


@pytest.fixture
def glo():
    return {
        "FBV": 0.02,
        "KRV": 1.0,
        "kap": 0.8,
        "yP": 0.64,
        "Lm_ref": 4.8,
        "MF": 1.5,
        "feedb": [1, 1, 0, 0],
        "moa": [0, 1, 0, 0, 0],
        "timevar": [1, 0],
        "int_scen": [0, 10],
        "int_type": 2,
        "int_coll": [[[0.0, 0.0]], PULSES],
    }


def test_params_take_first_element_of_rows(par, glo):
    p = params_from_structs(par, glo)
    assert p.L0 == 0.9
    assert p.f == 1.0
    assert p.MF == 1.5
    assert p.Lm_ref == 4.8


def test_missing_required_parameter(par, glo):
    del par["kd"]
    with pytest.raises(InvalidParameter):
        params_from_structs(par, glo)


def test_optional_parameters_fall_back_to_defaults(par):
    for name in ("Lf", "Tlag", "Lj", "a"):
        del par[name]
    p = params_from_structs(par, {})
    assert p.a == 1.0
    assert p.Tlag == 0.0
    assert p.MF == 1.0
    assert p.kap == 0.8


def test_non_finite_parameter_from_struct(par, glo):
    par["kd"] = [float("nan"), 1]
    with pytest.raises(InvalidParameter):
        params_from_structs(par, glo)


@pytest.mark.parametrize(
    "timevar, expected",
    [
        ([1, 0], TimeVarying(enabled=True, fixed_index=None)),
        ([1, 3], TimeVarying(enabled=True, fixed_index=2)),
        ([1], TimeVarying(enabled=True, fixed_index=None)),
        ([0], TimeVarying(enabled=False, fixed_index=None)),
    ],
)
def test_time_varying_flag(timevar, expected):
    assert time_varying_from_glo({"timevar": timevar}) == expected


def test_switches_from_glo(glo):
    switches = switches_from_glo(glo)
    assert switches.feedb == (1.0, 1.0, 0.0, 0.0)
    assert switches.moa == (0.0, 1.0, 0.0, 0.0, 0.0)
    assert switches_from_glo({}) == ModelSwitches()


def test_scenario_set_from_glo(glo):
    scenarios = scenario_set_from_glo(glo)
    table, mode = scenarios.select(10.0)
    assert mode is InterpolationMode.STEP
    assert len(table) == 4

    del glo["int_coll"]
    with pytest.raises(InvalidScenarioTable):
        scenario_set_from_glo(glo)


def test_build_model_selects_scenario_by_concentration(par, glo):
    model = build_model(par, 10, glo)
    assert model.mode is InterpolationMode.STEP
    assert model.concentration(1.0) == pytest.approx(15.0)  # MF = 1.5
    assert model.concentration(3.0) == 0.0

    with pytest.raises(InvalidScenarioTable):
        build_model(par, 5, glo)


def test_build_model_without_time_varying_uses_concentration(par, glo):
    glo["timevar"] = [0]
    model = build_model(par, 5, glo)
    assert len(model.scenario) == 0
    assert model.concentration(3.0) == 5.0


def test_call_deri_matches_direct_model(par, glo):
    t = np.linspace(0.0, 21.0, 22)
    X0 = [0.0, 0.9, 0.0, 1.0]
    times, states = call_deri(t, X0, par, 10, glo, 0.1, 1e-9, 1e-7, 0.1)

    model = DEBtoxModel(
        ModelParameters(
            L0=0.9, Lp=2.42, Lm=4.8, rB=0.13, Rm=11.3, f=1.0, hb=0.01,
            kd=0.5, zb=2.0, bb=0.2, zs=3.0, bs=0.3, Lm_ref=4.8, MF=1.5,
        ),
        switches=ModelSwitches(feedb=(1, 1, 0, 0), moa=(0, 1, 0, 0, 0)),
        concentration=10.0,
        scenario=ScenarioTable(np.array(PULSES)),
        mode=InterpolationMode.STEP,
        time_varying=TimeVarying(enabled=True),
    )
    direct = model.simulate(t, X0, first_step=0.1, atol=1e-9, rtol=1e-7, max_step=0.1)

    np.testing.assert_array_equal(times, t)
    assert states.shape == (22, 4)
    np.testing.assert_allclose(states, direct.y)


def test_times_from_config():
    np.testing.assert_allclose(times_from_config({"start": 0, "stop": 2, "n": 5}), [0, 0.5, 1, 1.5, 2])
    np.testing.assert_allclose(times_from_config([0, 1, 3]), [0, 1, 3])
    with pytest.raises(InvalidParameter):
        times_from_config({"start": 0, "n": 5})


def test_example_run_file():
    cfg = load_run_file(EXAMPLE_RUN)
    traj = run_from_config(cfg)
    assert len(traj) == 22
    assert np.all(np.diff(traj.survival) <= 1e-12)
    assert traj.length[-1] > traj.length[0]
    assert traj.reproduction[-1] > 0.0


def test_run_file_missing_section(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("par: {L0: 1.0}\nglo: {}\n", encoding="utf-8")
    with pytest.raises(InvalidParameter):
        load_run_file(path)


def test_run_config_missing_solver_control(par, glo):
    cfg = {"par": par, "glo": glo, "run": {"t": [0, 1], "X0": [0, 0.9, 0, 1], "dt": 0.1}}
    with pytest.raises(InvalidParameter):
        run_from_config(cfg)
