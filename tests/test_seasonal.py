"""
Unit tests for seasonal module.
"""

import pytest
import pandas as pd
import numpy as np
from pathlib import Path

# Adjust path to import the module
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tideflood.deviations import build_deviations
from tideflood.errors import InsufficientDataError
from tideflood.seasonal import TROPICAL_YEAR_DAYS, fit_seasonal, remove_seasonal


@pytest.fixture
def seasonal_series():
    """Four years of hourly deviations with a known annual cycle."""
    rng = np.random.default_rng(1)
    times = pd.date_range(start="2000-01-01", end="2003-12-31 23:00", freq="h")
    t_days = (times - times[0]) / pd.Timedelta(days=1)
    angle = 2 * np.pi * np.asarray(t_days) / TROPICAL_YEAR_DAYS
    values = 0.02 + 0.10 * np.sin(angle) + 0.05 * np.cos(angle) + rng.normal(0, 0.01, len(times))
    return pd.Series(values, index=times, name="deviation")


def test_harmonic_fit_recovers_cycle(seasonal_series):
    model = fit_seasonal(seasonal_series, n_harmonics=1)

    assert model.param_names == ["const", "sin_1", "cos_1"]
    assert model.params[0] == pytest.approx(0.02, abs=1e-3)
    assert model.params[1] == pytest.approx(0.10, abs=1e-3)
    assert model.params[2] == pytest.approx(0.05, abs=1e-3)
    assert model.amplitudes()[0] == pytest.approx(np.hypot(0.10, 0.05), abs=1e-3)
    assert model.r_squared > 0.95


def test_extra_harmonics_near_zero(seasonal_series):
    model = fit_seasonal(seasonal_series, n_harmonics=3)
    amps = model.amplitudes()
    assert len(amps) == 3
    assert amps[1] < 0.005
    assert amps[2] < 0.005


def test_fit_from_deviation_series(seasonal_series):
    predicted = pd.Series(0.0, index=seasonal_series.index)
    dev = build_deviations(seasonal_series, predicted)
    model = fit_seasonal(dev, n_harmonics=2)
    assert model.n_obs == len(seasonal_series)


def test_remove_seasonal_keeps_gaps(seasonal_series):
    series = seasonal_series.copy()
    series.iloc[500:520] = np.nan
    model = fit_seasonal(series, n_harmonics=1)

    resid = remove_seasonal(series, model)

    assert resid.name == "residual"
    assert len(resid) == len(series)
    assert resid.iloc[500:520].isna().all()
    assert resid.std() == pytest.approx(0.01, abs=2e-3)


def test_monthly_effects():
    times = pd.date_range(start="2001-01-01", end="2001-12-31 23:00", freq="h")
    values = pd.Series(0.01 * times.month.to_numpy(), index=times)

    model = fit_seasonal(values, monthly=True)

    np.testing.assert_allclose(model.monthly_offsets.to_numpy(), 0.01 * np.arange(1, 13), atol=1e-10)
    assert model.evaluate(pd.DatetimeIndex(["2030-07-15"])).iloc[0] == pytest.approx(0.07)
    with pytest.raises(ValueError):
        model.amplitudes()


def test_monthly_effects_need_every_month():
    times = pd.date_range(start="2001-01-01", end="2001-03-31 23:00", freq="h")
    values = pd.Series(0.0, index=times)
    with pytest.raises(InsufficientDataError, match="month"):
        fit_seasonal(values, monthly=True)


def test_invalid_settings(seasonal_series):
    with pytest.raises(ValueError):
        fit_seasonal(seasonal_series, n_harmonics=4)
    with pytest.raises(InsufficientDataError):
        fit_seasonal(seasonal_series.iloc[:20], n_harmonics=2)
