# src/tideflood/floods.py
"""
Module: floods.py
Responsibilities:
- Group hourly water levels into UTC calendar days
- Count flood days (a day with at least one value above threshold)
- Historical flood frequency per year (floodfreq) and across-year
  dispersion diagnostics (floodmean)
- Highest astronomical tide over a tidal epoch

A flood day is any calendar day (UTC) whose maximum valid value is strictly
greater than the threshold. Days without a valid value are excluded from the
denominator.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from tideflood.errors import InsufficientDataError

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DAYS_PER_YEAR = 365.25
HOURS_PER_YEAR = 8766
DEFAULT_MIN_YEAR_OBS = int(0.75 * HOURS_PER_YEAR)
STATISTICS = ('max', 'mean')
PARTIAL_YEAR_POLICIES = ('raise', 'drop')


class DailyGrouper:
    """
    Precomputed day boundaries for a sorted DatetimeIndex.

    Built once and reused across many value arrays sharing the same index
    (e.g. every run of a simulation ensemble).
    """

    def __init__(self, index: pd.DatetimeIndex):
        index = pd.DatetimeIndex(index)
        if len(index) == 0:
            raise ValueError("Cannot group an empty index into days")
        if not index.is_monotonic_increasing:
            raise ValueError("Index must be sorted to group into days")
        days = index.normalize()
        day_values = days.asi8
        self.starts = np.flatnonzero(np.r_[True, day_values[1:] != day_values[:-1]])
        self.days = days[self.starts]
        self.size = len(index)

    @property
    def n_days(self) -> int:
        return len(self.starts)

    def reduce(self, values: np.ndarray, statistic: str = 'max') -> Tuple[np.ndarray, np.ndarray]:
        """
        Daily statistic and count of valid values per day.

        Returns
        -------
        (np.ndarray, np.ndarray)
            Daily statistic (NaN for days without data) and valid counts.
        """
        if statistic not in STATISTICS:
            raise ValueError(f"statistic must be one of {STATISTICS}, got {statistic!r}")
        values = np.asarray(values, dtype=float)
        if values.shape[0] != self.size:
            raise ValueError(f"Expected {self.size} values, got {values.shape[0]}")

        valid = ~np.isnan(values)
        counts = np.add.reduceat(valid.astype(np.int64), self.starts)
        if statistic == 'max':
            stat = np.fmax.reduceat(values, self.starts)
        else:
            sums = np.add.reduceat(np.where(valid, values, 0.0), self.starts)
            with np.errstate(invalid='ignore', divide='ignore'):
                stat = sums / counts
        stat = np.where(counts > 0, stat, np.nan)
        return stat, counts

    def flood_days(
        self,
        values: np.ndarray,
        threshold: float,
        statistic: str = 'max',
        min_day_obs: int = 1
    ) -> Tuple[int, int]:
        """Return (flood days, valid days)."""
        stat, counts = self.reduce(values, statistic)
        valid_days = counts >= min_day_obs
        flooded = valid_days & (stat > threshold)
        return int(flooded.sum()), int(valid_days.sum())


def count_flood_days(
    levels: pd.Series,
    threshold: float,
    statistic: str = 'max',
    min_day_obs: int = 1
) -> pd.DataFrame:
    """
    Daily flood table for an hourly water-level series.

    Parameters
    ----------
    levels : pd.Series
        Water levels indexed by timestamp; NaN marks missing hours.
    threshold : float
        Flood threshold in the same datum as ``levels``.
    statistic : {'max', 'mean'}
        Daily statistic compared with the threshold.
    min_day_obs : int, default=1
        Minimum valid values for a day to count.

    Returns
    -------
    pd.DataFrame
        Indexed by day with columns 'n_obs', 'level', 'valid', 'flooded'.
        The input series is not modified.
    """
    if not isinstance(levels, pd.Series):
        raise TypeError("levels must be a pandas Series indexed by timestamp")
    if not np.isfinite(threshold):
        raise ValueError(f"threshold must be finite, got {threshold}")
    if min_day_obs < 1:
        raise ValueError(f"min_day_obs must be >= 1, got {min_day_obs}")

    series = levels.sort_index()
    grouper = DailyGrouper(series.index)
    stat, counts = grouper.reduce(series.to_numpy(dtype=float), statistic)
    valid = counts >= min_day_obs
    daily = pd.DataFrame({
        'n_obs': counts,
        'level': stat,
        'valid': valid,
        'flooded': valid & (stat > threshold),
    }, index=grouper.days)
    daily.index.name = 'date'
    return daily


@dataclass(frozen=True)
class FrequencySettings:
    """Settings that produced a flood-frequency result."""
    threshold: float
    min_year_obs: int
    partial_years: str
    statistic: str
    min_day_obs: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class FloodFrequency:
    """Historical flood-day frequency, per year and overall."""
    table: pd.DataFrame
    threshold: float
    probability: float
    n_days: int
    flood_days: int
    n_years: int
    settings: FrequencySettings

    @property
    def annual_rate(self) -> float:
        return self.probability * DAYS_PER_YEAR


@dataclass
class FloodMean(FloodFrequency):
    """FloodFrequency plus across-year dispersion diagnostics."""
    mean_annual: float = float('nan')
    variance: float = float('nan')
    poisson_dispersion: float = float('nan')
    binomial_variance: float = float('nan')


def floodfreq(
    levels: pd.Series,
    threshold: float,
    min_year_obs: int = DEFAULT_MIN_YEAR_OBS,
    partial_years: str = 'raise',
    statistic: str = 'max',
    min_day_obs: int = 1
) -> FloodFrequency:
    """
    Observed daily flood probability and annualised flood count.

    Parameters
    ----------
    levels : pd.Series
        Observed hourly levels indexed by timestamp.
    threshold : float
        Flood threshold (same datum as ``levels``).
    min_year_obs : int
        Minimum valid hourly values for a year to count as complete.
    partial_years : {'raise', 'drop'}
        'raise' fails on any incomplete year; 'drop' keeps it in the table
        flagged ``complete=False`` and excludes it from the statistics.

    Returns
    -------
    FloodFrequency

    Raises
    ------
    InsufficientDataError
        If a year is incomplete under 'raise', or no complete year remains.
    """
    if partial_years not in PARTIAL_YEAR_POLICIES:
        raise ValueError(f"partial_years must be one of {PARTIAL_YEAR_POLICIES}, got {partial_years!r}")

    daily = count_flood_days(levels, threshold, statistic=statistic, min_day_obs=min_day_obs)
    obs_per_year = levels.groupby(pd.DatetimeIndex(levels.index).year).count()

    by_year = daily.groupby(daily.index.year)
    table = pd.DataFrame({
        'n_obs': obs_per_year,
        'n_days': by_year['valid'].sum(),
        'flood_days': by_year['flooded'].sum(),
    }).fillna(0).astype(int)
    table.index.name = 'year'
    with np.errstate(invalid='ignore', divide='ignore'):
        table['probability'] = table['flood_days'] / table['n_days'].where(table['n_days'] > 0)
    table['annual_count'] = table['probability'] * DAYS_PER_YEAR
    table['complete'] = table['n_obs'] >= min_year_obs

    incomplete = table.index[~table['complete']].tolist()
    if incomplete:
        if partial_years == 'raise':
            raise InsufficientDataError(
                f"Year(s) {incomplete} have fewer than {min_year_obs} valid observations"
            )
        logger.warning(f"Excluding incomplete year(s) {incomplete} (< {min_year_obs} observations)")

    complete = table[table['complete']]
    if complete.empty:
        raise InsufficientDataError(f"No year has at least {min_year_obs} valid observations")

    n_days = int(complete['n_days'].sum())
    n_flood = int(complete['flood_days'].sum())
    probability = n_flood / n_days if n_days else float('nan')
    logger.info(f"Observed {n_flood} flood days out of {n_days} over {len(complete)} year(s) "
                f"above {threshold:.3f}")

    return FloodFrequency(
        table=table,
        threshold=float(threshold),
        probability=float(probability),
        n_days=n_days,
        flood_days=n_flood,
        n_years=int(len(complete)),
        settings=FrequencySettings(
            threshold=float(threshold),
            min_year_obs=int(min_year_obs),
            partial_years=partial_years,
            statistic=statistic,
            min_day_obs=int(min_day_obs),
        ),
    )


def floodmean(
    levels: pd.Series,
    threshold: float,
    min_year_obs: int = DEFAULT_MIN_YEAR_OBS,
    partial_years: str = 'raise',
    statistic: str = 'max',
    min_day_obs: int = 1
) -> FloodMean:
    """
    Mean annual flood count and its variance across years.

    ``poisson_dispersion`` is variance / mean of per-year annualised counts
    (1 for a Poisson process); ``binomial_variance`` is 365.25 p (1 - p).
    """
    freq = floodfreq(
        levels, threshold,
        min_year_obs=min_year_obs,
        partial_years=partial_years,
        statistic=statistic,
        min_day_obs=min_day_obs,
    )
    counts = freq.table.loc[freq.table['complete'], 'annual_count'].to_numpy(dtype=float)
    variance = float(np.var(counts, ddof=1)) if counts.size > 1 else float('nan')
    mean_annual = freq.annual_rate
    dispersion = variance / mean_annual if mean_annual > 0 else float('nan')
    p = freq.probability

    if counts.size < 2:
        logger.warning("Only one complete year; across-year variance is undefined")

    return FloodMean(
        table=freq.table,
        threshold=freq.threshold,
        probability=freq.probability,
        n_days=freq.n_days,
        flood_days=freq.flood_days,
        n_years=freq.n_years,
        settings=freq.settings,
        mean_annual=mean_annual,
        variance=variance,
        poisson_dispersion=dispersion,
        binomial_variance=DAYS_PER_YEAR * p * (1.0 - p),
    )


def highest_astronomical_tide(
    predicted: pd.Series,
    epoch: Optional[Tuple[int, int]] = None
) -> float:
    """Highest predicted level, optionally restricted to a tidal epoch."""
    series = predicted.dropna()
    if epoch is not None:
        years = pd.DatetimeIndex(series.index).year
        series = series[(years >= epoch[0]) & (years <= epoch[1])]
    if series.empty:
        raise InsufficientDataError("No predicted values available for HAT")
    return float(series.max())
