"""
Unit tests for windows module.
"""

import datetime
import pytest
import numpy as np
import pandas as pd
from pathlib import Path

# Adjust path to import the module
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tideflood.errors import InvalidWindowSpecification
from tideflood.windows import (
    WindowMode, WindowSpec, expected_count, resolve_window, step_windows, units_per_year
)


@pytest.fixture
def monthly_index():
    return pd.date_range(start="2000-01-01", end="2019-12-01", freq="MS")


def test_constructors_and_parse():
    assert WindowSpec.years(10) == WindowSpec(WindowMode.YEARS, 10)
    assert WindowSpec.years(10.0).value == 10
    assert WindowSpec.count(120).mode is WindowMode.COUNT
    assert WindowSpec.duration("3652D").value == pd.Timedelta(days=3652)

    assert WindowSpec.parse("years:10") == WindowSpec.years(10)
    assert WindowSpec.parse("count: 120") == WindowSpec.count(120)
    assert WindowSpec.parse("duration:3652D") == WindowSpec.duration(pd.Timedelta(days=3652))
    assert str(WindowSpec.years(5)) == "years:5"


@pytest.mark.parametrize("build", [
    lambda: WindowSpec.years(0),
    lambda: WindowSpec.years(2.5),
    lambda: WindowSpec.count(True),
    lambda: WindowSpec.duration("-5D"),
    lambda: WindowSpec.duration("soon"),
    lambda: WindowSpec.parse("weeks:3"),
    lambda: WindowSpec.parse("years"),
    lambda: WindowSpec.parse("count:many"),
    lambda: WindowSpec("years", 3),
])
def test_invalid_specs(build):
    with pytest.raises(InvalidWindowSpecification):
        build()


def test_units_per_year():
    assert units_per_year("month") == pytest.approx(12.0)
    assert units_per_year("day") == pytest.approx(365.2425)
    assert units_per_year("hour") == pytest.approx(365.2425 * 24)
    with pytest.raises(ValueError):
        units_per_year("fortnight")


def test_years_and_duration_cover_same_rows(monthly_index):
    by_years = resolve_window(monthly_index, WindowSpec.years(10))
    by_duration = resolve_window(monthly_index, WindowSpec.duration("3652D"))

    assert by_years.size == 120
    assert (by_years.lo, by_years.hi) == (by_duration.lo, by_duration.hi)
    assert monthly_index[by_years.lo] == pd.Timestamp("2010-01-01")
    assert by_years.nominal_start == pd.Timestamp("2010-01-01")
    assert not by_duration.start_inclusive


def test_count_window(monthly_index):
    bounds = resolve_window(monthly_index, WindowSpec.count(12))
    assert bounds.size == 12
    assert bounds.nominal_start == pd.Timestamp("2019-01-01")

    early = resolve_window(monthly_index, WindowSpec.count(12), end_pos=5)
    assert (early.lo, early.hi) == (0, 6)
    assert early.nominal_start < monthly_index[0]


def test_expected_count(monthly_index):
    span = WindowSpec.years(10)
    bounds = resolve_window(monthly_index, span)
    assert expected_count(bounds, span, "month") == 120

    span = WindowSpec.duration("3652D")
    bounds = resolve_window(monthly_index, span)
    assert expected_count(bounds, span, "month") == 120


def test_step_windows_years(monthly_index):
    windows = step_windows(monthly_index, WindowSpec.years(5), WindowSpec.years(1))

    assert [k for k, _ in windows] == list(range(20))
    recent = windows[0][1]
    assert recent.nominal_start == pd.Timestamp("2015-01-01")
    assert recent.size == 60

    k, previous = windows[1]
    assert previous.end_is_boundary
    assert previous.nominal_start == pd.Timestamp("2014-01-01")
    assert previous.nominal_end == pd.Timestamp("2019-01-01")
    assert previous.size == 60
    assert expected_count(previous, WindowSpec.years(5), "month") == 60


def test_step_windows_count_and_duration(monthly_index):
    by_count = step_windows(monthly_index, WindowSpec.count(24), WindowSpec.count(12))
    assert len(by_count) == 20
    assert by_count[1][1].hi == len(monthly_index) - 12

    by_duration = step_windows(monthly_index, WindowSpec.duration("730D"),
                               WindowSpec.duration("365D"))
    assert by_duration[0][1].nominal_end == monthly_index[-1]
    assert by_duration[1][1].nominal_end == monthly_index[-1] - pd.Timedelta(days=365)


def test_step_windows_mode_mismatch(monthly_index):
    with pytest.raises(InvalidWindowSpecification, match="same mode"):
        step_windows(monthly_index, WindowSpec.years(5), WindowSpec.count(12))


@pytest.mark.parametrize("value", [3652, 3652.0, "3652", " 10 ", True])
def test_duration_needs_a_unit(value):
    with pytest.raises(InvalidWindowSpecification, match="no unit"):
        WindowSpec.duration(value)
    with pytest.raises(InvalidWindowSpecification):
        WindowSpec.parse(f"duration:{value}")


def test_duration_accepts_timedelta_types():
    assert WindowSpec.duration(pd.Timedelta(days=10)).value == pd.Timedelta(days=10)
    assert WindowSpec.duration(datetime.timedelta(days=10)).value == pd.Timedelta(days=10)
    assert WindowSpec.duration(np.timedelta64(10, "D")).value == pd.Timedelta(days=10)


def test_duration_shorter_than_step(monthly_index):
    with pytest.raises(InvalidWindowSpecification, match="sampling interval"):
        resolve_window(monthly_index, WindowSpec.duration("12h"))
    with pytest.raises(InvalidWindowSpecification, match="sampling interval"):
        step_windows(monthly_index, WindowSpec.duration("730D"), WindowSpec.duration("1min"))


def test_years_window_on_partial_final_year():
    index = pd.date_range(start="2000-01-01", end="2019-06-01", freq="MS")
    span = WindowSpec.years(10)

    bounds = resolve_window(index, span)

    assert bounds.size == 114
    assert bounds.nominal_end == pd.Timestamp("2019-06-01")
    assert bounds.period_end == pd.Timestamp("2020-01-01")
    assert expected_count(bounds, span, "month") == 120

    stepped = step_windows(index, span, WindowSpec.years(1))[1][1]
    assert stepped.period_end == stepped.nominal_end == pd.Timestamp("2019-01-01")
    assert expected_count(stepped, span, "month") == 120
