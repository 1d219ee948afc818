"""
Unit tests for trend module.
"""

import pytest
from dataclasses import FrozenInstanceError
import pandas as pd
import numpy as np
from pathlib import Path
from scipy.signal import lfilter

# Adjust path to import the module
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tideflood.errors import InsufficientDataError, InvalidWindowSpecification
from tideflood.trend import TrendSettings, slr_change, slr_change_comp, slr_slope
from tideflood.windows import WindowSpec


def years_since(index):
    return np.asarray((index - index[0]) / pd.Timedelta(days=365.2425))


@pytest.fixture
def monthly_levels():
    """30 years of monthly means rising 3 mm/yr with 2 mm noise."""
    rng = np.random.default_rng(2)
    index = pd.date_range(start="1990-01-01", end="2019-12-01", freq="MS")
    values = 3.0 * years_since(index) + rng.normal(0, 2.0, len(index))
    return pd.Series(values, index=index)


def test_hourly_trend_recovery():
    rng = np.random.default_rng(0)
    index = pd.date_range(start="1980-01-01", end="2019-12-31 23:00", freq="h")
    levels = pd.Series(3.0 * years_since(index) + rng.normal(0, 5.0, len(index)), index=index)

    est = slr_slope(levels, unit="hour")

    assert est.slope == pytest.approx(3.0, rel=0.10)
    assert est.slope_se < 0.05 * est.slope
    assert est.n == len(index)
    assert est.accepted
    assert not est.partial


def test_monthly_slope(monthly_levels):
    est = slr_slope(monthly_levels, span=WindowSpec.years(10))

    assert est.n == 120
    assert est.start == pd.Timestamp("2010-01-01")
    assert est.end == pd.Timestamp("2019-12-01")
    assert est.completeness == pytest.approx(1.0)
    assert est.slope == pytest.approx(3.0, abs=0.5)
    assert est.p_value < 1e-6
    assert est.rho is None


def test_years_equal_duration(monthly_levels):
    by_years = slr_slope(monthly_levels, span=WindowSpec.years(10))
    by_duration = slr_slope(monthly_levels, span=WindowSpec.duration("3652D"))

    assert by_years.n == by_duration.n
    assert by_years.slope == pytest.approx(by_duration.slope)
    assert by_years.slope_se == pytest.approx(by_duration.slope_se)


def test_incomplete_window_flagged(monthly_levels):
    levels = monthly_levels.copy()
    levels.iloc[-60:-10] = np.nan

    est = slr_slope(levels, span=WindowSpec.years(10))

    assert est.n == 70
    assert est.completeness == pytest.approx(70 / 120)
    assert not est.accepted
    assert np.isfinite(est.slope)


def test_partial_window_reports_actual_dates(monthly_levels):
    levels = monthly_levels.copy()
    levels.iloc[-6:] = np.nan

    est = slr_slope(levels, span=WindowSpec.years(10))

    assert est.partial
    assert est.end == pd.Timestamp("2019-06-01")
    assert est.nominal_end == pd.Timestamp("2019-12-01")


def test_too_few_points(monthly_levels):
    levels = monthly_levels.copy()
    levels.iloc[-119:] = np.nan
    levels.iloc[-1] = 1.0
    with pytest.raises(InsufficientDataError):
        slr_slope(levels, span=WindowSpec.years(10))
    with pytest.raises(ValueError):
        slr_slope(monthly_levels, method="wls")


def test_gls_with_autocorrelated_errors():
    rng = np.random.default_rng(4)
    index = pd.date_range(start="1980-01-01", end="2019-12-01", freq="MS")
    noise = lfilter([1.0], [1.0, -0.6], rng.normal(0, 10.0, len(index)))
    levels = pd.Series(3.0 * years_since(index) + noise, index=index)

    ols = slr_slope(levels, method="ols")
    gls = slr_slope(levels, method="gls")

    assert gls.method == "gls"
    assert 0.3 < gls.rho < 0.85
    assert gls.slope == pytest.approx(3.0, abs=1.0)
    assert gls.slope_se > ols.slope_se


def test_gls_handles_gaps():
    rng = np.random.default_rng(5)
    index = pd.date_range(start="1990-01-01", end="2019-12-01", freq="MS")
    noise = lfilter([1.0], [1.0, -0.5], rng.normal(0, 5.0, len(index)))
    levels = pd.Series(3.0 * years_since(index) + noise, index=index)
    levels.iloc[100:130] = np.nan

    est = slr_slope(levels, method="gls")
    assert est.n == len(index) - 30
    assert est.slope == pytest.approx(3.0, abs=1.0)


def test_slr_change_hinge():
    rng = np.random.default_rng(6)
    index = pd.date_range(start="1990-01-01", end="2019-12-01", freq="MS")
    t = years_since(index)
    tb = years_since(pd.DatetimeIndex([index[0], pd.Timestamp("2010-01-01")]))[1]
    values = 2.0 * t + 4.0 * np.clip(t - tb, 0, None) + rng.normal(0, 0.5, len(index))
    levels = pd.Series(values, index=index)

    res = slr_change(levels, WindowSpec.years(10))

    assert res.breakpoint == pd.Timestamp("2010-01-01")
    assert res.historic.slope == pytest.approx(2.0, abs=0.1)
    assert res.recent.slope == pytest.approx(6.0, abs=0.2)
    assert res.difference == pytest.approx(4.0, abs=0.2)
    assert res.recent_start == pd.Timestamp("2010-01-01")
    assert res.recent_end == pd.Timestamp("2019-12-01")
    assert res.recent.n == 120
    assert res.historic.n == 240
    assert res.difference_p_value < 1e-6


def test_slr_change_needs_history(monthly_levels):
    with pytest.raises(InsufficientDataError):
        slr_change(monthly_levels, WindowSpec.years(40))


def test_change_comp_ranks_recent_window():
    rng = np.random.default_rng(7)
    index = pd.date_range(start="1990-01-01", end="2019-12-01", freq="MS")
    t = years_since(index)
    levels = pd.Series(0.1 * t ** 2 + rng.normal(0, 0.5, len(index)), index=index)

    res = slr_change_comp(levels, WindowSpec.years(10), WindowSpec.years(1))
    table = res.windows

    assert not table.loc[0, "in_comparison"]
    assert table.loc[0, "is_recent"]
    assert res.n_valid_historic == 20
    assert int(table["in_comparison"].sum()) == res.n_valid_historic
    assert 0 <= res.n_greater_equal <= res.n_valid_historic
    assert res.n_greater_equal == 0
    assert res.fraction_greater_equal == 0.0
    assert (table.loc[table.index > 20, "reason"] == "starts before record").all()


def test_change_comp_exclude_overlap():
    rng = np.random.default_rng(8)
    index = pd.date_range(start="1990-01-01", end="2019-12-01", freq="MS")
    levels = pd.Series(3.0 * years_since(index) + rng.normal(0, 2.0, len(index)), index=index)

    res = slr_change_comp(levels, WindowSpec.years(10), WindowSpec.years(1),
                          exclude_overlap=True)

    assert res.n_valid_historic == 11
    assert (res.windows.loc[1:9, "reason"] == "overlaps recent window").all()
    assert res.windows.loc[10, "in_comparison"]


def test_change_comp_workers_and_modes(monthly_levels):
    serial = slr_change_comp(monthly_levels, WindowSpec.count(120), WindowSpec.count(12))
    threaded = slr_change_comp(monthly_levels, WindowSpec.count(120), WindowSpec.count(12),
                               workers=2, executor="thread")

    assert serial.n_valid_historic == threaded.n_valid_historic
    assert serial.n_greater_equal == threaded.n_greater_equal
    assert serial.recent.slope == pytest.approx(threaded.recent.slope)

    with pytest.raises(InvalidWindowSpecification):
        slr_change_comp(monthly_levels, WindowSpec.years(10), WindowSpec.count(12))


def test_partial_final_year_flagged(monthly_levels):
    levels = monthly_levels.loc[:"2019-06-01"]

    est = slr_slope(levels, span=WindowSpec.years(10))

    assert est.start == pd.Timestamp("2010-01-01")
    assert est.end == pd.Timestamp("2019-06-01")
    assert est.n == 114
    assert est.n_expected == 120
    assert est.completeness == pytest.approx(114 / 120)
    assert est.partial
    assert est.accepted
    assert est.min_completeness == 0.75

    full = slr_slope(monthly_levels, span=WindowSpec.years(10))
    assert not full.partial
    assert full.min_completeness == 0.75


def test_change_comp_reports_partial_recent_window(monthly_levels):
    levels = monthly_levels.loc[:"2019-06-01"]

    res = slr_change_comp(levels, WindowSpec.years(10), WindowSpec.years(1))
    table = res.windows

    assert res.recent.partial
    assert table.loc[0, "partial"]
    assert table.loc[0, "n"] == 114
    assert table.loc[1, "n"] == 120
    assert not table.loc[1, "partial"]


def test_duration_shorter_than_sampling_rejected(monthly_levels):
    with pytest.raises(InvalidWindowSpecification, match="sampling interval"):
        slr_slope(monthly_levels, span=WindowSpec.duration("1s"))
    with pytest.raises(InvalidWindowSpecification):
        slr_slope(monthly_levels, span=WindowSpec.parse("duration:3652"))


def test_settings_are_frozen_dataclasses(monthly_levels):
    change = slr_change(monthly_levels, WindowSpec.years(10), min_completeness=0.8)
    comp = slr_change_comp(monthly_levels, WindowSpec.years(10), WindowSpec.years(5),
                           exclude_overlap=True)

    assert isinstance(change.settings, TrendSettings)
    assert change.settings.breakpoint == "years:10"
    assert change.settings.min_completeness == 0.8
    assert change.settings.span is None
    assert change.recent.min_completeness == 0.8

    assert comp.settings == TrendSettings(
        unit="month", method="ols", min_completeness=0.75, span="years:10",
        interval="years:5", exclude_overlap=True, n_candidates=len(comp.windows))
    assert comp.settings.to_dict()["n_candidates"] == len(comp.windows)
    with pytest.raises(FrozenInstanceError):
        comp.settings.method = "gls"


def test_change_comp_process_pool(monthly_levels):
    serial = slr_change_comp(monthly_levels, WindowSpec.years(10), WindowSpec.years(2))
    pooled = slr_change_comp(monthly_levels, WindowSpec.years(10), WindowSpec.years(2),
                             workers=2, executor="process")

    assert serial.n_valid_historic == pooled.n_valid_historic
    assert serial.n_greater_equal == pooled.n_greater_equal
    pd.testing.assert_series_equal(serial.windows["slope"], pooled.windows["slope"])
