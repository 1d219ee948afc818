# src/tideflood/simulate.py
"""
Module: simulate.py
Responsibilities:
- Static-offset ("bathtub") flood forecasts from the historical record
- Monte Carlo flood forecasts from simulated deviations (AR mode)
- Summaries of the simulated flood-day distribution (mean, spread, Monte
  Carlo standard error, quantiles) and export via xarray
- Helpers for the default epoch index and the starting water-level adjustment
"""
import logging
import concurrent.futures
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr
from tqdm import tqdm

from tideflood.ar_model import DeviationModel
from tideflood.errors import InsufficientDataError
from tideflood.floods import DAYS_PER_YEAR, DailyGrouper, STATISTICS

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DEFAULT_N_SIM = 1000
DEFAULT_QUANTILES = (0.05, 0.5, 0.95)
DEFAULT_MIN_YEAR_DAYS = 274  # ~75% of a year
EPOCH_YEARS = 19
SOURCES = ('predicted', 'observed')


@dataclass(frozen=True)
class ForecastSettings:
    """Settings that produced a forecast, kept with the result."""
    mode: str
    threshold: float
    offsets: Tuple[float, ...]
    start_adjust: float
    statistic: str
    min_day_obs: int
    source: Optional[str] = None
    n_sim: Optional[int] = None
    seed: Optional[int] = None
    method: Optional[str] = None
    quantiles: Optional[Tuple[float, ...]] = None
    min_year_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TubForecast:
    """
    Bathtub forecast per SLR offset.

    ``table`` is indexed by offset; ``per_year`` holds the annualised flood
    count of every included year for each offset.
    """
    table: pd.DataFrame
    per_year: pd.DataFrame
    settings: ForecastSettings


@dataclass
class SimulationEnsemble:
    """
    Summary of simulated annual flood-day counts per SLR offset.

    ``standard_error`` is the Monte Carlo error of the mean (std / sqrt(N)),
    not a confidence interval for model bias.
    """
    summary: pd.DataFrame
    distribution: Optional[np.ndarray]
    n_days: int
    settings: ForecastSettings

    @property
    def offsets(self) -> np.ndarray:
        return self.summary.index.to_numpy(dtype=float)

    @property
    def mean(self) -> pd.Series:
        return self.summary['mean']

    @property
    def standard_error(self) -> pd.Series:
        return self.summary['standard_error']

    def to_dataset(self) -> xr.Dataset:
        """Ensemble as an xarray Dataset (run x offset)."""
        if self.distribution is None:
            raise ValueError("Ensemble was run with keep_distribution=False")
        n_sim = self.distribution.shape[0]
        ds = xr.Dataset(
            data_vars={
                'annual_flood_days': (('run', 'offset'), self.distribution),
                'mean': ('offset', self.summary['mean'].to_numpy()),
                'standard_error': ('offset', self.summary['standard_error'].to_numpy()),
            },
            coords={'run': np.arange(n_sim), 'offset': self.offsets},
        )
        attrs = {k: (list(v) if isinstance(v, tuple) else v)
                 for k, v in self.settings.to_dict().items() if v is not None}
        ds.attrs.update(attrs)
        ds.attrs['n_days'] = self.n_days
        return ds


def epoch_hourly_index(epoch_start: int, epoch_end: int) -> pd.DatetimeIndex:
    """Hourly timestamps covering calendar years epoch_start..epoch_end."""
    if epoch_end < epoch_start:
        raise ValueError(f"Epoch ends before it starts: {epoch_start}-{epoch_end}")
    return pd.date_range(f"{epoch_start}-01-01", f"{epoch_end}-12-31 23:00", freq='h')


def epoch_adjustment(
    rate_per_year: float,
    epoch_start: int,
    epoch_end: int,
    year: float
) -> float:
    """
    Water-level change from the tidal-epoch centre to ``year`` at a constant
    rate, used as the starting water-level adjustment.
    """
    centre = (epoch_start + epoch_end + 1) / 2.0
    return float(rate_per_year) * (float(year) - centre)


def _as_offsets(offsets: Union[float, Sequence[float]]) -> np.ndarray:
    arr = np.atleast_1d(np.asarray(offsets, dtype=float))
    if arr.size == 0:
        raise ValueError("At least one SLR offset is required")
    if not np.isfinite(arr).all():
        raise ValueError(f"SLR offsets must be finite, got {arr.tolist()}")
    if np.unique(arr).size != arr.size:
        raise ValueError(f"SLR offsets must be unique, got {arr.tolist()}")
    return arr


def floodcast_tub(
    data: Union[pd.DataFrame, pd.Series],
    threshold: float,
    offsets: Union[float, Sequence[float]],
    source: str = 'predicted',
    start_adjust: float = 0.0,
    statistic: str = 'max',
    min_day_obs: int = 1,
    min_year_days: int = DEFAULT_MIN_YEAR_DAYS
) -> TubForecast:
    """
    Bathtub flood forecast: raise the historical series by each offset.

    Parameters
    ----------
    data : pd.DataFrame or pd.Series
        Hourly levels; a DataFrame must hold a ``source`` column.
    threshold : float
        Flood threshold (same datum as the levels).
    offsets : float or sequence of float
        SLR offsets to evaluate.
    source : {'predicted', 'observed'}
        Column of ``data`` to shift.
    start_adjust : float, default=0.0
        Extra offset applied to every scenario (e.g. epoch-to-present rise).
    statistic : {'max', 'mean'}
        Daily statistic compared with the threshold.
    min_year_days : int
        Years with fewer valid days are excluded from the statistics.

    Returns
    -------
    TubForecast
        Flood-day probability, annualised count and its standard error across
        years, per offset.
    """
    if source not in SOURCES:
        raise ValueError(f"source must be one of {SOURCES}, got {source!r}")
    if statistic not in STATISTICS:
        raise ValueError(f"statistic must be one of {STATISTICS}, got {statistic!r}")
    offs = _as_offsets(offsets)

    if isinstance(data, pd.DataFrame):
        if source not in data.columns:
            raise ValueError(f"DataFrame has no '{source}' column")
        levels = data[source]
    elif isinstance(data, pd.Series):
        levels = data
    else:
        raise TypeError("data must be a pandas DataFrame or Series")

    levels = levels.sort_index()
    grouper = DailyGrouper(levels.index)
    stat, counts = grouper.reduce(levels.to_numpy(dtype=float), statistic)
    valid = counts >= min_day_obs
    years = grouper.days.year.to_numpy()

    # days x offsets
    flooded = valid[:, None] & ((stat[:, None] + offs[None, :] + start_adjust) > threshold)

    per_year_days = pd.Series(valid, index=years).groupby(level=0).sum()
    keep_years = per_year_days.index[per_year_days >= min_year_days]
    dropped = sorted(set(per_year_days.index) - set(keep_years))
    if dropped:
        logger.warning(f"Excluding year(s) {dropped} with fewer than {min_year_days} valid days")
    if len(keep_years) == 0:
        raise InsufficientDataError(f"No year has at least {min_year_days} valid days")

    flood_by_year = pd.DataFrame(flooded, index=years).groupby(level=0).sum().loc[keep_years]
    days_by_year = per_year_days.loc[keep_years]
    per_year = flood_by_year.div(days_by_year, axis=0) * DAYS_PER_YEAR
    per_year.index.name = 'year'

    n_days = int(days_by_year.sum())
    n_years = len(keep_years)
    flood_days = flood_by_year.sum(axis=0).to_numpy()
    probability = flood_days / n_days
    if n_years > 1:
        se = per_year.std(axis=0, ddof=1).to_numpy() / np.sqrt(n_years)
    else:
        se = np.full(len(offs), np.nan)

    table = pd.DataFrame({
        'flood_days': flood_days.astype(int),
        'flood_day_probability': probability,
        'annual_flood_days': probability * DAYS_PER_YEAR,
        'annual_flood_days_se': se,
        'n_years': n_years,
        'n_days': n_days,
    }, index=pd.Index(offs, name='offset'))
    per_year.columns = pd.Index(offs, name='offset')

    settings = ForecastSettings(
        mode='tub',
        threshold=float(threshold),
        offsets=tuple(float(o) for o in offs),
        start_adjust=float(start_adjust),
        statistic=statistic,
        min_day_obs=int(min_day_obs),
        source=source,
        min_year_days=int(min_year_days),
    )
    logger.info(f"Bathtub forecast over {n_years} year(s), {len(offs)} offset(s), "
                f"threshold {threshold:.3f}")
    return TubForecast(table=table, per_year=per_year, settings=settings)


def _simulate_chunk(
    seeds: List[np.random.SeedSequence],
    model: DeviationModel,
    index: pd.DatetimeIndex,
    predicted: np.ndarray,
    offsets: np.ndarray,
    threshold: float,
    start_adjust: float,
    method: str,
    statistic: str,
    min_day_obs: int
) -> np.ndarray:
    """
    Top-level helper for the executor. Returns annualised flood-day counts,
    shape (len(seeds), len(offsets)).
    """
    grouper = DailyGrouper(index)
    out = np.empty((len(seeds), len(offsets)))
    for i, ss in enumerate(seeds):
        deviation = model.sample(index, seed=ss, method=method).to_numpy()
        water = predicted + deviation + start_adjust
        stat, counts = grouper.reduce(water, statistic)
        valid = counts >= min_day_obs
        n_valid = int(valid.sum())
        flood = (stat[valid][:, None] + offsets[None, :]) > threshold
        out[i] = flood.sum(axis=0) / n_valid * DAYS_PER_YEAR
    return out


def floodcast_ar(
    model: DeviationModel,
    predicted: pd.Series,
    threshold: float,
    offsets: Union[float, Sequence[float]],
    n_sim: int = DEFAULT_N_SIM,
    seed: Optional[int] = None,
    start_adjust: float = 0.0,
    method: str = 'gaussian',
    statistic: str = 'max',
    min_day_obs: int = 1,
    workers: int = 1,
    executor: str = 'process',
    keep_distribution: bool = True,
    quantiles: Sequence[float] = DEFAULT_QUANTILES,
    chunks: Optional[int] = None
) -> SimulationEnsemble:
    """
    Monte Carlo flood forecast from simulated deviations.

    Each run draws a synthetic deviation sequence over the predicted-tide
    index, adds the predictions, ``start_adjust`` and each SLR offset, and
    counts days with at least one hourly value above ``threshold``. Counts are
    annualised (flood days / valid days * 365.25).

    Parameters
    ----------
    model : DeviationModel
        Fitted seasonal + AR deviation model.
    predicted : pd.Series
        Evenly spaced astronomical predictions, typically one tidal epoch of
        hourly values (see ``epoch_hourly_index``).
    n_sim : int, default=1000
        Number of simulated records.
    seed : int, optional
        Root seed; per-run seeds are spawned from it so results do not
        depend on ``workers``.
    method : {'gaussian', 'bootstrap'}
        AR innovation sampling.
    workers : int, default=1
        Parallel workers; <= 1 runs serially.
    executor : {'process', 'thread'}
    keep_distribution : bool, default=True
        Keep the full (n_sim x offsets) array.

    Returns
    -------
    SimulationEnsemble
    """
    if not isinstance(model, DeviationModel):
        raise TypeError("model must be a fitted DeviationModel")
    if not isinstance(predicted, pd.Series):
        raise TypeError("predicted must be a pandas Series indexed by timestamp")
    if n_sim < 1:
        raise ValueError(f"n_sim must be >= 1, got {n_sim}")
    if statistic not in STATISTICS:
        raise ValueError(f"statistic must be one of {STATISTICS}, got {statistic!r}")
    if executor not in ('process', 'thread'):
        raise ValueError(f"executor must be 'process' or 'thread', got {executor!r}")
    q = tuple(float(x) for x in quantiles)
    if any(not 0 <= x <= 1 for x in q):
        raise ValueError(f"quantiles must lie in [0, 1], got {q}")
    offs = _as_offsets(offsets)

    predicted = predicted.sort_index()
    index = pd.DatetimeIndex(predicted.index)
    if len(index) > 2 and np.unique(np.diff(index.asi8)).size != 1:
        raise ValueError("predicted must be evenly spaced; reindex onto a regular grid first")
    pred_values = predicted.to_numpy(dtype=float)
    if np.isnan(pred_values).all():
        raise InsufficientDataError("predicted series has no valid values")
    if min_day_obs < 1:
        raise ValueError(f"min_day_obs must be >= 1, got {min_day_obs}")
    grouper = DailyGrouper(index)
    n_days = grouper.n_days
    _, day_counts = grouper.reduce(pred_values, statistic)
    n_valid_days = int((day_counts >= min_day_obs).sum())
    if n_valid_days == 0:
        raise InsufficientDataError(
            f"No day of the predicted series has {min_day_obs} or more valid values")

    seeds = np.random.SeedSequence(seed).spawn(n_sim)
    n_chunks = chunks or (max(workers, 1) * 4 if workers and workers > 1 else 1)
    n_chunks = min(n_chunks, n_sim)
    bounds = np.linspace(0, n_sim, n_chunks + 1).astype(int)
    batches = [seeds[bounds[i]:bounds[i + 1]] for i in range(n_chunks)]

    func = partial(
        _simulate_chunk,
        model=model,
        index=index,
        predicted=pred_values,
        offsets=offs,
        threshold=float(threshold),
        start_adjust=float(start_adjust),
        method=method,
        statistic=statistic,
        min_day_obs=min_day_obs,
    )

    logger.info(f"Simulating {n_sim} records of {len(index)} samples "
                f"({n_valid_days} of {n_days} days valid) for {len(offs)} offset(s)")
    if workers and workers > 1:
        pool_cls = (concurrent.futures.ProcessPoolExecutor if executor == 'process'
                    else concurrent.futures.ThreadPoolExecutor)
        with pool_cls(max_workers=workers) as pool:
            parts = list(tqdm(pool.map(func, batches), total=len(batches), desc='Simulations'))
    else:
        parts = [func(batch) for batch in tqdm(batches, desc='Simulations', disable=len(batches) == 1)]

    dist = np.vstack(parts)
    std = dist.std(axis=0, ddof=1) if n_sim > 1 else np.full(len(offs), np.nan)
    summary = pd.DataFrame({
        'mean': dist.mean(axis=0),
        'std': std,
        'standard_error': std / np.sqrt(n_sim),
    }, index=pd.Index(offs, name='offset'))
    for level in q:
        summary[f"q{level:g}"] = np.quantile(dist, level, axis=0)

    settings = ForecastSettings(
        mode='ar',
        threshold=float(threshold),
        offsets=tuple(float(o) for o in offs),
        start_adjust=float(start_adjust),
        statistic=statistic,
        min_day_obs=int(min_day_obs),
        n_sim=int(n_sim),
        seed=seed,
        method=method,
        quantiles=q,
    )
    logger.info("Simulated annual flood days: " + ", ".join(
        f"{o:+.2f}: {m:.1f} ± {s:.2f}" for o, m, s in
        zip(offs, summary['mean'], summary['standard_error'])))

    return SimulationEnsemble(
        summary=summary,
        distribution=dist if keep_distribution else None,
        n_days=n_days,
        settings=settings,
    )
