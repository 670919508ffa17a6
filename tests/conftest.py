import pytest

from debtox.core import DEBtoxModel, ModelParameters, ModelSwitches


@pytest.fixture
def control_params():
    # thresholds out of reach: no toxic effect at all
    return ModelParameters(
        kap=0.8, Lm=20.0, L0=0.1, Lp=5.0, rB=0.05, Rm=5.0, f=1.0,
        hb=0.0, kd=0.1, zb=1e6, zs=1e6,
    )


@pytest.fixture
def control_model(control_params):
    return DEBtoxModel(control_params, concentration=0.0)


@pytest.fixture
def toxic_params():
    return ModelParameters(
        L0=0.9, Lp=2.42, Lm=4.8, rB=0.13, Rm=11.3, f=1.0, hb=0.01,
        kd=0.5, zb=2.0, bb=0.2, zs=3.0, bs=0.3, Lm_ref=4.8,
    )


@pytest.fixture
def solver_kwargs():
    return dict(first_step=0.1, atol=1e-10, rtol=1e-8, max_step=0.5)


@pytest.fixture
def maintenance_switches():
    return ModelSwitches(feedb=(0, 0, 0, 0), moa=(0, 1, 0, 0, 0))
