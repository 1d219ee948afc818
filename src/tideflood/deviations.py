# src/tideflood/deviations.py
"""
Module: deviations.py
Responsibilities:
- Normalize observed/predicted timestamps to naive UTC
- Align both series onto a regular grid (default hourly)
- Compute deviation = observed - predicted
- Mark gaps explicitly (no interpolation, no zero-filling)
- Report completeness and reject spans below a minimum fraction
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr

from tideflood.data_io import TideObservation, observations_to_frame
from tideflood.errors import DataAlignmentError

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DEFAULT_FREQ = 'h'
DEFAULT_MIN_FRACTION = 0.5


@dataclass
class DeviationSeries:
    """
    Deviations on a regular time grid.

    ``frame`` is indexed by every expected instant between ``start`` and
    ``end``. Instants where either input is missing have ``gap=True`` and a NaN
    deviation.
    """
    frame: pd.DataFrame
    freq: str
    start: pd.Timestamp
    end: pd.Timestamp
    n_expected: int
    n_valid: int
    n_off_grid: int

    @property
    def n_gaps(self) -> int:
        return self.n_expected - self.n_valid

    @property
    def completeness(self) -> float:
        return self.n_valid / self.n_expected if self.n_expected else 0.0

    @property
    def deviation(self) -> pd.Series:
        return self.frame['deviation']

    def valid(self) -> pd.DataFrame:
        """Rows with a usable deviation."""
        return self.frame[~self.frame['gap']]

    def to_dataset(self) -> xr.Dataset:
        ds = xr.Dataset.from_dataframe(self.frame.rename_axis('datetime'))
        ds.attrs.update({
            'freq': self.freq,
            'n_expected': self.n_expected,
            'n_valid': self.n_valid,
            'completeness': self.completeness,
        })
        return ds


@dataclass(frozen=True)
class EpochDeviation:
    """Deviation statistics over a tidal epoch (years inclusive)."""
    epoch_start: int
    epoch_end: int
    n: int
    mean: float
    std: float

    @property
    def relative_mean(self) -> float:
        """|mean| / std; near zero when predictions are calibrated to the epoch."""
        if not np.isfinite(self.std) or self.std == 0:
            return float('nan')
        return abs(self.mean) / self.std


def _to_naive_utc(index: pd.Index, label: str) -> pd.DatetimeIndex:
    try:
        idx = pd.DatetimeIndex(index)
    except (TypeError, ValueError) as e:
        raise DataAlignmentError(f"{label} series index is not datetime-like: {e}")
    if idx.tz is not None:
        idx = idx.tz_convert('UTC').tz_localize(None)
    return idx


def _check_ordering(index: pd.DatetimeIndex, label: str) -> None:
    if index.has_duplicates:
        n_dup = int(index.duplicated().sum())
        raise DataAlignmentError(f"{label} series has {n_dup} duplicated timestamps")
    if not index.is_monotonic_increasing:
        raise DataAlignmentError(f"{label} series timestamps are not strictly increasing")


def _prepare(series: pd.Series, label: str) -> pd.Series:
    if not isinstance(series, pd.Series):
        raise TypeError(f"{label} must be a pandas Series indexed by timestamp")
    out = series.astype(float).copy()
    out.index = _to_naive_utc(series.index, label)
    _check_ordering(out.index, label)
    return out


def build_deviations(
    observed: Union[pd.Series, pd.DataFrame],
    predicted: Optional[pd.Series] = None,
    start=None,
    end=None,
    freq: str = DEFAULT_FREQ,
    min_fraction: float = DEFAULT_MIN_FRACTION
) -> DeviationSeries:
    """
    Align observed and predicted levels and compute deviations.

    Parameters
    ----------
    observed : pd.Series or pd.DataFrame
        Observed levels indexed by timestamp, or a DataFrame with 'observed'
        and 'predicted' columns (then ``predicted`` must be None).
    predicted : pd.Series, optional
        Predicted levels indexed by timestamp.
    start, end : timestamp-like, optional
        Requested span; defaults to the span covered by either input.
    freq : str, default='h'
        Expected sampling interval of the grid.
    min_fraction : float, default=0.5
        Minimum fraction of expected instants that must carry both values.

    Returns
    -------
    DeviationSeries

    Raises
    ------
    DataAlignmentError
        If timestamps are unordered/duplicated, or too few instants match.
    """
    if isinstance(observed, pd.DataFrame):
        if predicted is not None:
            raise ValueError("Pass either a DataFrame or two Series, not both")
        missing = [c for c in ('observed', 'predicted') if c not in observed.columns]
        if missing:
            raise ValueError(f"DataFrame missing columns: {', '.join(missing)}")
        observed, predicted = observed['observed'], observed['predicted']
    elif predicted is None:
        raise ValueError("predicted series is required when observed is a Series")

    if not 0 < min_fraction <= 1:
        raise ValueError(f"min_fraction must be in (0, 1], got {min_fraction}")

    obs = _prepare(observed, 'observed')
    pred = _prepare(predicted, 'predicted')

    if obs.empty or pred.empty:
        raise DataAlignmentError("observed or predicted series is empty")

    span_start = pd.Timestamp(start) if start is not None else min(obs.index[0], pred.index[0])
    span_end = pd.Timestamp(end) if end is not None else max(obs.index[-1], pred.index[-1])
    if span_start.tzinfo is not None:
        span_start = span_start.tz_convert('UTC').tz_localize(None)
    if span_end.tzinfo is not None:
        span_end = span_end.tz_convert('UTC').tz_localize(None)
    if span_end < span_start:
        raise DataAlignmentError(f"Requested span ends before it starts: {span_start} > {span_end}")

    grid = pd.date_range(span_start.ceil(freq), span_end.floor(freq), freq=freq)
    if len(grid) == 0:
        raise DataAlignmentError(f"No {freq} grid points between {span_start} and {span_end}")

    obs_span = obs[(obs.index >= grid[0]) & (obs.index <= grid[-1])]
    pred_span = pred[(pred.index >= grid[0]) & (pred.index <= grid[-1])]
    n_off_grid = int((~obs_span.index.isin(grid)).sum() + (~pred_span.index.isin(grid)).sum())
    if n_off_grid:
        logger.warning(f"Dropped {n_off_grid} off-grid timestamps (freq={freq})")

    frame = pd.DataFrame({
        'observed': obs_span.reindex(grid),
        'predicted': pred_span.reindex(grid),
    }, index=grid)
    frame.index.name = 'timestamp'
    frame['deviation'] = frame['observed'] - frame['predicted']
    frame['gap'] = frame['deviation'].isna()
    frame['year'] = frame.index.year
    frame['month'] = frame.index.month
    frame['dayofyear'] = frame.index.dayofyear

    n_expected = len(grid)
    n_valid = int((~frame['gap']).sum())
    fraction = n_valid / n_expected
    logger.info(f"Aligned {n_valid}/{n_expected} instants ({fraction:.1%}) "
                f"from {grid[0]} to {grid[-1]}")

    if fraction < min_fraction:
        raise DataAlignmentError(
            f"Only {fraction:.1%} of expected instants have both observed and predicted "
            f"values (minimum {min_fraction:.1%})"
        )
    if n_valid < n_expected:
        logger.warning(f"{n_expected - n_valid} instants marked as gaps")

    return DeviationSeries(
        frame=frame,
        freq=freq,
        start=grid[0],
        end=grid[-1],
        n_expected=n_expected,
        n_valid=n_valid,
        n_off_grid=n_off_grid,
    )


def from_observations(
    observations: Iterable[TideObservation],
    **kwargs
) -> DeviationSeries:
    """Build deviations from TideObservation records."""
    df = observations_to_frame(observations)
    return build_deviations(df, **kwargs)


def epoch_mean_deviation(
    deviations: DeviationSeries,
    epoch: Tuple[int, int]
) -> EpochDeviation:
    """
    Mean and standard deviation of deviations over a tidal epoch.

    Predictions are calibrated over the epoch, so the mean deviation there is
    expected to be near zero relative to its spread.

    Parameters
    ----------
    deviations : DeviationSeries
    epoch : (int, int)
        First and last calendar year of the epoch (inclusive).
    """
    first, last = epoch
    dev = deviations.frame
    mask = (dev['year'] >= first) & (dev['year'] <= last) & ~dev['gap']
    values = dev.loc[mask, 'deviation'].to_numpy()
    if values.size == 0:
        raise DataAlignmentError(f"No valid deviations within epoch {first}-{last}")
    mean = float(np.mean(values))
    std = float(np.std(values, ddof=1)) if values.size > 1 else float('nan')
    return EpochDeviation(
        epoch_start=int(first),
        epoch_end=int(last),
        n=int(values.size),
        mean=mean,
        std=std,
    )
