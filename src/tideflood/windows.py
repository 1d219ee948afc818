# src/tideflood/windows.py
"""
Module: windows.py
Responsibilities:
- WindowSpec: window span given as a calendar-year count, a duration, or an
  observation count (exactly one mode per window)
- Resolve a WindowSpec against a timestamp index and an end point
- Step window end points back through the record for rolling comparisons
- Time units used to annualise slopes
"""
import datetime
import logging
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from tideflood.errors import InvalidWindowSpecification

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.2425
UNIT_LENGTHS = {
    'hour': pd.Timedelta(hours=1),
    'day': pd.Timedelta(days=1),
    'month': pd.Timedelta(days=DAYS_PER_YEAR / 12.0),
    'year': pd.Timedelta(days=DAYS_PER_YEAR),
}


def unit_length(unit: str) -> pd.Timedelta:
    try:
        return UNIT_LENGTHS[unit]
    except KeyError:
        raise ValueError(f"unit must be one of {sorted(UNIT_LENGTHS)}, got {unit!r}")


def units_per_year(unit: str) -> float:
    return UNIT_LENGTHS['year'] / unit_length(unit)


def _is_number(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


class WindowMode(Enum):
    YEARS = 'years'
    DURATION = 'duration'
    COUNT = 'count'


@dataclass(frozen=True)
class WindowSpec:
    """
    A window span in one of three modes.

    Build with :meth:`years`, :meth:`duration` or :meth:`count` (or
    :meth:`parse` for strings such as ``'years:10'``, ``'duration:3652D'``,
    ``'count:120'``).
    """
    mode: WindowMode
    value: Union[int, pd.Timedelta]

    def __post_init__(self):
        if not isinstance(self.mode, WindowMode):
            raise InvalidWindowSpecification(f"Unknown window mode: {self.mode!r}")
        if self.mode is WindowMode.DURATION:
            if not isinstance(self.value, pd.Timedelta):
                raise InvalidWindowSpecification(
                    f"Duration window needs a Timedelta, got {type(self.value).__name__}")
            if self.value <= pd.Timedelta(0):
                raise InvalidWindowSpecification(f"Duration must be positive, got {self.value}")
        else:
            if isinstance(self.value, bool) or not isinstance(self.value, numbers.Integral):
                raise InvalidWindowSpecification(
                    f"{self.mode.value} window needs an integer, got {self.value!r}")
            if self.value < 1:
                raise InvalidWindowSpecification(
                    f"{self.mode.value} window must be >= 1, got {self.value}")

    @staticmethod
    def _as_int(n, what: str) -> int:
        if isinstance(n, bool):
            raise InvalidWindowSpecification(f"{what} must be an integer, got {n!r}")
        if isinstance(n, numbers.Integral):
            return int(n)
        if isinstance(n, float) and n.is_integer():
            return int(n)
        raise InvalidWindowSpecification(f"{what} must be an integer, got {n!r}")

    @classmethod
    def years(cls, n) -> 'WindowSpec':
        return cls(WindowMode.YEARS, cls._as_int(n, 'Year count'))

    @classmethod
    def duration(cls, d) -> 'WindowSpec':
        """
        Duration window from a Timedelta or a string with units ('3652D').

        Bare numbers are rejected: pandas would read them as nanoseconds.
        """
        if not isinstance(d, (datetime.timedelta, np.timedelta64)):
            if isinstance(d, (bool, numbers.Number)):
                raise InvalidWindowSpecification(
                    f"Duration {d!r} has no unit; use e.g. '3652D' or a Timedelta")
            if isinstance(d, str) and _is_number(d):
                raise InvalidWindowSpecification(
                    f"Duration {d!r} has no unit; use e.g. '{d.strip()}D'")
        try:
            td = pd.Timedelta(d)
        except (TypeError, ValueError) as e:
            raise InvalidWindowSpecification(f"Cannot interpret duration {d!r}: {e}")
        if pd.isna(td):
            raise InvalidWindowSpecification(f"Cannot interpret duration {d!r}")
        return cls(WindowMode.DURATION, td)

    @classmethod
    def count(cls, n) -> 'WindowSpec':
        return cls(WindowMode.COUNT, cls._as_int(n, 'Observation count'))

    @classmethod
    def parse(cls, text: str) -> 'WindowSpec':
        mode, sep, value = str(text).partition(':')
        if not sep:
            raise InvalidWindowSpecification(
                f"Window must look like 'years:N', 'duration:TD' or 'count:N', got {text!r}")
        mode = mode.strip().lower()
        value = value.strip()
        if mode == 'duration':
            return cls.duration(value)
        if mode not in ('years', 'count'):
            raise InvalidWindowSpecification(f"Unknown window mode {mode!r}")
        try:
            number = float(value)
        except ValueError:
            raise InvalidWindowSpecification(f"{mode} window needs a number, got {value!r}")
        return cls.years(number) if mode == 'years' else cls.count(number)

    @property
    def label(self) -> str:
        if self.mode is WindowMode.DURATION:
            return f"duration:{self.value}"
        return f"{self.mode.value}:{self.value}"

    def __str__(self) -> str:
        return self.label



@dataclass(frozen=True)
class WindowBounds:
    """
    Nominal bounds of a resolved window and its position slice [lo, hi).

    ``end_is_boundary`` marks windows whose nominal end is an exclusive
    calendar boundary rather than the timestamp of the last sample.
    ``period_end`` is the exclusive end of the last calendar year a YEARS
    window claims to cover (1 Jan of the following year); a window whose
    data stop before it covers a partial final year.
    """
    nominal_start: pd.Timestamp
    nominal_end: pd.Timestamp
    lo: int
    hi: int
    start_inclusive: bool = True
    end_is_boundary: bool = False
    period_end: Optional[pd.Timestamp] = None

    @property
    def size(self) -> int:
        return self.hi - self.lo


def _median_step(index: pd.DatetimeIndex) -> pd.Timedelta:
    if len(index) < 2:
        return pd.Timedelta(0)
    return pd.Timedelta(int(np.median(np.diff(index.asi8))), 'ns')


def resolve_window(
    index: pd.DatetimeIndex,
    span: WindowSpec,
    end=None,
    end_pos: int = None,
    end_is_boundary: bool = False
) -> WindowBounds:
    """
    Positions of ``index`` covered by a window of ``span`` ending at ``end``.

    YEARS(n) covers the calendar years end.year-n+1 .. end.year up to
    ``end``; DURATION(d) covers (end - d, end]; COUNT(n) covers the n rows
    up to and including ``end`` (or ``end_pos``). With ``end_is_boundary``
    the end itself is excluded (YEARS mode only).

    Raises
    ------
    InvalidWindowSpecification
        If a DURATION is shorter than the median sampling interval.
    """
    index = pd.DatetimeIndex(index)
    if len(index) == 0:
        raise ValueError("Cannot resolve a window on an empty index")

    if span.mode is WindowMode.COUNT:
        if end_pos is None:
            end_ts = index[-1] if end is None else pd.Timestamp(end)
            end_pos = int(index.searchsorted(end_ts, side='right')) - 1
        if end_pos < 0:
            raise ValueError("Window end precedes the first observation")
        hi = end_pos + 1
        lo = hi - span.value
        if lo < 0:
            start_ts = index[0] - _median_step(index) * (-lo)
        else:
            start_ts = index[lo]
        return WindowBounds(start_ts, index[hi - 1], max(lo, 0), hi)

    end_ts = index[-1] if end is None else pd.Timestamp(end)
    if span.mode is WindowMode.YEARS:
        if end_is_boundary:
            hi = int(index.searchsorted(end_ts, side='left'))
            last_year = (end_ts - pd.Timedelta(1, 'ns')).year
            period_end = end_ts
        else:
            hi = int(index.searchsorted(end_ts, side='right'))
            last_year = end_ts.year
            period_end = pd.Timestamp(year=last_year + 1, month=1, day=1)
        start_ts = pd.Timestamp(year=last_year - span.value + 1, month=1, day=1)
        lo = int(index.searchsorted(start_ts, side='left'))
        return WindowBounds(start_ts, end_ts, lo, hi,
                            start_inclusive=True, end_is_boundary=end_is_boundary,
                            period_end=period_end)

    if span.value < _median_step(index):
        raise InvalidWindowSpecification(
            f"Duration {span.value} is shorter than the sampling interval "
            f"({_median_step(index)})")
    hi = int(index.searchsorted(end_ts, side='right'))
    start_ts = end_ts - span.value
    lo = int(index.searchsorted(start_ts, side='right'))
    return WindowBounds(start_ts, end_ts, lo, hi, start_inclusive=False)


def expected_count(bounds: WindowBounds, span: WindowSpec, unit: str) -> int:
    """
    Number of samples a gap-free series at ``unit`` spacing would hold in
    the window.
    """
    length = unit_length(unit)
    if span.mode is WindowMode.DURATION:
        n = int(round(span.value / length))
    elif span.mode is WindowMode.YEARS:
        if bounds.period_end is not None:
            stop = bounds.period_end
        elif bounds.end_is_boundary:
            stop = bounds.nominal_end
        else:
            stop = bounds.nominal_end + length
        n = int(round((stop - bounds.nominal_start) / length))
    else:
        n = max(span.value, int(round((bounds.nominal_end - bounds.nominal_start) / length)) + 1)
    return max(n, 1)


def step_windows(
    index: pd.DatetimeIndex,
    span: WindowSpec,
    interval: WindowSpec
) -> List[Tuple[int, WindowBounds]]:
    """
    Windows of ``span`` ending at the last timestamp and stepping back by
    ``interval`` until a window would end before the record starts.

    Returns
    -------
    list of (k, WindowBounds)
        k = 0 is the most recent window.
    """
    if span.mode is not interval.mode:
        raise InvalidWindowSpecification(
            f"Span ({span.label}) and interval ({interval.label}) must use the same mode")

    index = pd.DatetimeIndex(index)
    if interval.mode is WindowMode.DURATION and interval.value < _median_step(index):
        raise InvalidWindowSpecification(
            f"Interval {interval.label} is shorter than the sampling interval")
    first, last = index[0], index[-1]
    windows = []
    k = 0
    while True:
        if span.mode is WindowMode.COUNT:
            end_pos = len(index) - 1 - k * interval.value
            if end_pos < 0:
                break
            bounds = resolve_window(index, span, end_pos=end_pos)
        elif span.mode is WindowMode.YEARS:
            if k == 0:
                bounds = resolve_window(index, span, end=last)
            else:
                boundary = pd.Timestamp(year=last.year - k * interval.value + 1, month=1, day=1)
                if boundary <= first:
                    break
                bounds = resolve_window(index, span, end=boundary, end_is_boundary=True)
        else:
            end_ts = last - k * interval.value
            if end_ts < first:
                break
            bounds = resolve_window(index, span, end=end_ts)
        windows.append((k, bounds))
        k += 1
    logger.info(f"Generated {len(windows)} candidate windows of {span.label} every {interval.label}")
    return windows
