# src/tideflood/trend.py
"""
Module: trend.py
Responsibilities:
- Linear SLR rate over a single window (slr_slope), by OLS or by GLS with
  continuous-time AR(1) errors
- Two-segment hinge model with a breakpoint before the series end (slr_change)
- Rolling windows over the record and a rank comparison of the most recent
  slope against all earlier windows (slr_change_comp)

Slopes are fitted per ``unit`` of time and annualised with the unit's mean
length (month = 365.2425 / 12 days). GLS errors use correlation rho**dt where
dt is the actual spacing in units between consecutive valid observations, so
gaps and irregular spacing are handled without imputation.
"""
import logging
import concurrent.futures
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.optimize import minimize_scalar
from tqdm import tqdm

from tideflood.errors import InsufficientDataError, ModelFitError
from tideflood.windows import (
    WindowBounds, WindowMode, WindowSpec, expected_count, resolve_window,
    step_windows, unit_length, units_per_year
)

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
METHODS = ('ols', 'gls')
DEFAULT_MIN_COMPLETENESS = 0.75
MIN_POINTS = 3
RHO_MAX = 0.9999
RHO_BOUND_TOL = 1e-4


@dataclass
class SlopeEstimate:
    """Annualised linear rate over one window."""
    label: str
    slope: float
    slope_se: float
    p_value: float
    n: int
    start: pd.Timestamp
    end: pd.Timestamp
    nominal_start: pd.Timestamp
    nominal_end: pd.Timestamp
    n_expected: int
    completeness: float
    min_completeness: float
    accepted: bool
    method: str
    unit: str
    rho: Optional[float] = None
    partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrendSettings:
    """Settings that produced a trend result, kept with the result."""
    unit: str
    method: str
    min_completeness: float
    breakpoint: Optional[str] = None
    span: Optional[str] = None
    interval: Optional[str] = None
    exclude_overlap: Optional[bool] = None
    n_candidates: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChangeEstimate:
    """Historic and recent slopes from a hinge model."""
    historic: SlopeEstimate
    recent: SlopeEstimate
    breakpoint: pd.Timestamp
    difference: float
    difference_se: float
    difference_p_value: float
    rho: Optional[float]
    settings: TrendSettings

    @property
    def recent_start(self) -> pd.Timestamp:
        return self.recent.start

    @property
    def recent_end(self) -> pd.Timestamp:
        return self.recent.end


@dataclass
class ChangeComparison:
    """
    Most recent window slope ranked against every earlier valid window.

    ``windows`` lists every candidate window, including rejected ones with
    the reason they were rejected.
    """
    recent: SlopeEstimate
    windows: pd.DataFrame
    n_valid_historic: int
    n_greater_equal: int
    settings: TrendSettings

    @property
    def fraction_greater_equal(self) -> float:
        if self.n_valid_historic == 0:
            return float('nan')
        return self.n_greater_equal / self.n_valid_historic


def _check_series(levels: pd.Series) -> pd.Series:
    if not isinstance(levels, pd.Series):
        raise TypeError("levels must be a pandas Series indexed by timestamp")
    if not isinstance(levels.index, pd.DatetimeIndex):
        raise TypeError("levels must have a DatetimeIndex")
    if levels.index.has_duplicates:
        raise ValueError("levels index has duplicated timestamps")
    if not levels.index.is_monotonic_increasing:
        levels = levels.sort_index()
    return levels.astype(float)


def _car1_transform(t: np.ndarray, rho: float) -> Tuple[np.ndarray, np.ndarray]:
    """Per-row AR coefficient rho**dt and innovation scale sqrt(1 - phi**2)."""
    dt = np.diff(t)
    phi = np.power(rho, dt)
    scale = np.sqrt(np.clip(1.0 - phi ** 2, 1e-12, None))
    return phi, scale


def _whiten(values: np.ndarray, phi: np.ndarray, scale: np.ndarray) -> np.ndarray:
    if values.ndim == 2:
        phi, scale = phi[:, None], scale[:, None]
    out = np.empty_like(values, dtype=float)
    out[0] = values[0]
    out[1:] = (values[1:] - phi * values[:-1]) / scale
    return out


def _neg2_profile_loglik(rho: float, t: np.ndarray, y: np.ndarray, X: np.ndarray) -> float:
    phi, scale = _car1_transform(t, rho)
    yw = _whiten(y, phi, scale)
    Xw = _whiten(X, phi, scale)
    beta, _, _, _ = np.linalg.lstsq(Xw, yw, rcond=None)
    rss = float(np.sum((yw - Xw @ beta) ** 2))
    n = len(y)
    return n * np.log(rss / n) + 2.0 * float(np.sum(np.log(scale)))


def _fit_design(
    t: np.ndarray,
    y: np.ndarray,
    X: np.ndarray,
    method: str
) -> Tuple[Any, Optional[float]]:
    """
    Fit y ~ X by OLS, or by GLS with continuous-time AR(1) errors.

    Returns the statsmodels results object (on whitened data for GLS) and
    the estimated rho.

    Raises
    ------
    ModelFitError
        If rho estimation does not converge or runs onto its bound.
    """
    if method == 'ols':
        return sm.OLS(y, X).fit(), None

    opt = minimize_scalar(
        _neg2_profile_loglik,
        bounds=(0.0, RHO_MAX),
        args=(t, y, X),
        method='bounded',
    )
    if not opt.success:
        raise ModelFitError(f"AR(1) error correlation did not converge: {opt.message}")
    rho = float(opt.x)
    if rho > RHO_MAX - RHO_BOUND_TOL:
        raise ModelFitError(f"AR(1) error correlation reached its bound ({rho:.5f}); "
                            f"the series may be non-stationary at this resolution")
    phi, scale = _car1_transform(t, rho)
    result = sm.OLS(_whiten(y, phi, scale), _whiten(X, phi, scale)).fit()
    return result, rho


def _time_in_units(index: pd.DatetimeIndex, origin: pd.Timestamp, unit: str) -> np.ndarray:
    return np.asarray((index - origin) / unit_length(unit), dtype=float)


def _window_label(bounds: WindowBounds) -> str:
    return f"{bounds.nominal_start:%Y-%m-%d}/{bounds.nominal_end:%Y-%m-%d}"


def _is_partial(first, last, bounds: WindowBounds, unit: str) -> bool:
    tol = unit_length(unit)
    if bounds.period_end is not None:
        end_ref = bounds.period_end - tol
    elif bounds.end_is_boundary:
        end_ref = bounds.nominal_end - tol
    else:
        end_ref = bounds.nominal_end
    return bool((first - bounds.nominal_start) > tol or (end_ref - last) > tol)


def _estimate_window(
    window: pd.Series,
    bounds: WindowBounds,
    span: Optional[WindowSpec],
    unit: str,
    method: str,
    min_completeness: float,
    label: Optional[str] = None
) -> SlopeEstimate:
    valid = window.dropna()
    n = len(valid)
    if n < MIN_POINTS:
        raise InsufficientDataError(f"Window {_window_label(bounds)} has {n} valid points; "
                                    f"at least {MIN_POINTS} required")

    if span is None:
        span_for_count = WindowSpec.count(max(len(window), 1))
    else:
        span_for_count = span
    n_expected = expected_count(bounds, span_for_count, unit)
    completeness = min(n / n_expected, 1.0)

    index = pd.DatetimeIndex(valid.index)
    t = _time_in_units(index, index[0], unit)
    X = sm.add_constant(t, has_constant='add')
    result, rho = _fit_design(t, valid.to_numpy(), X, method)

    scale = units_per_year(unit)
    estimate = SlopeEstimate(
        label=label or _window_label(bounds),
        slope=float(result.params[1]) * scale,
        slope_se=float(result.bse[1]) * scale,
        p_value=float(result.pvalues[1]),
        n=n,
        start=index[0],
        end=index[-1],
        nominal_start=bounds.nominal_start,
        nominal_end=bounds.nominal_end,
        n_expected=n_expected,
        completeness=completeness,
        min_completeness=min_completeness,
        accepted=completeness >= min_completeness,
        method=method,
        unit=unit,
        rho=rho,
        partial=_is_partial(index[0], index[-1], bounds, unit),
    )
    return estimate


def slr_slope(
    levels: pd.Series,
    span: Optional[WindowSpec] = None,
    end=None,
    unit: str = 'month',
    method: str = 'ols',
    min_completeness: float = DEFAULT_MIN_COMPLETENESS,
    label: Optional[str] = None
) -> SlopeEstimate:
    """
    Annualised linear sea-level trend over one window.

    Parameters
    ----------
    levels : pd.Series
        Water levels (e.g. monthly means) indexed by timestamp, sampled once
        per ``unit``. NaN marks missing samples.
    span : WindowSpec, optional
        Window ending at ``end``; None uses the whole series.
    end : timestamp-like, optional
        Window end; defaults to the last timestamp.
    unit : {'hour', 'day', 'month', 'year'}
        Sampling interval and time unit of the raw slope.
    method : {'ols', 'gls'}
        Ordinary least squares or AR(1)-error GLS.
    min_completeness : float, default=0.75
        Windows below this completeness are returned with accepted=False.

    Returns
    -------
    SlopeEstimate
        Slope and standard error in level units per year, with the dates and
        sample counts actually used.
    """
    if method not in METHODS:
        raise ValueError(f"method must be one of {METHODS}, got {method!r}")
    unit_length(unit)
    levels = _check_series(levels)
    if levels.empty:
        raise InsufficientDataError("levels series is empty")

    if span is None:
        bounds = WindowBounds(levels.index[0], levels.index[-1], 0, len(levels))
        if end is not None:
            end_ts = pd.Timestamp(end)
            hi = int(levels.index.searchsorted(end_ts, side='right'))
            bounds = WindowBounds(levels.index[0], end_ts, 0, hi)
    else:
        bounds = resolve_window(levels.index, span, end=end)

    window = levels.iloc[bounds.lo:bounds.hi]
    estimate = _estimate_window(window, bounds, span, unit, method, min_completeness, label)

    if not estimate.accepted:
        logger.warning(f"Window {estimate.label} is {estimate.completeness:.1%} complete "
                       f"(minimum {min_completeness:.0%}); reporting with accepted=False")
    if estimate.partial:
        logger.warning(f"Window {estimate.label} uses data from {estimate.start} to {estimate.end}, "
                       f"short of its nominal bounds")
    logger.info(f"Slope {estimate.slope:.4g} ± {estimate.slope_se:.2g} per year "
                f"({method.upper()}, n={estimate.n})")
    return estimate


def slr_change(
    levels: pd.Series,
    breakpoint: WindowSpec,
    unit: str = 'month',
    method: str = 'ols',
    min_completeness: float = DEFAULT_MIN_COMPLETENESS
) -> ChangeEstimate:
    """
    Two-segment continuous linear model with a breakpoint before the end.

    The recent segment is the window given by ``breakpoint`` ending at the
    last timestamp; the historic segment is everything before it. The model
    is y = a + b1 t + b2 max(0, t - tb): the historic slope is b1, the recent
    slope b1 + b2, and the change b2.

    Returns
    -------
    ChangeEstimate
        Includes the effective start/end of the recent segment.
    """
    if method not in METHODS:
        raise ValueError(f"method must be one of {METHODS}, got {method!r}")
    levels = _check_series(levels)
    if levels.empty:
        raise InsufficientDataError("levels series is empty")

    bounds = resolve_window(levels.index, breakpoint)
    tb_ts = levels.index[bounds.lo] if breakpoint.mode is WindowMode.COUNT else bounds.nominal_start
    if bounds.nominal_start <= levels.index[0] or bounds.lo == 0:
        raise InsufficientDataError(f"Breakpoint {breakpoint.label} leaves no historic segment")

    valid = levels.dropna()
    index = pd.DatetimeIndex(valid.index)
    if breakpoint.mode is WindowMode.DURATION:
        recent_mask = index > tb_ts
    else:
        recent_mask = index >= tb_ts
    n_recent, n_hist = int(recent_mask.sum()), int((~recent_mask).sum())
    if n_recent < 2 or n_hist < 2:
        raise InsufficientDataError(f"Need at least 2 valid points per segment, got "
                                    f"{n_hist} historic and {n_recent} recent")
    if n_recent + n_hist < MIN_POINTS + 1:
        raise InsufficientDataError("Too few valid points for a two-segment fit")

    origin = index[0]
    t = _time_in_units(index, origin, unit)
    tb = float((tb_ts - origin) / unit_length(unit))
    X = np.column_stack([np.ones_like(t), t, np.clip(t - tb, 0.0, None)])
    result, rho = _fit_design(t, valid.to_numpy(), X, method)

    params = np.asarray(result.params, dtype=float)
    cov = np.asarray(result.cov_params(), dtype=float)
    df_resid = float(result.df_resid)
    scale = units_per_year(unit)

    b1, b2 = params[1], params[2]
    se_hist = np.sqrt(cov[1, 1])
    se_recent = np.sqrt(cov[1, 1] + cov[2, 2] + 2.0 * cov[1, 2])
    p_recent = float(2.0 * stats.t.sf(abs((b1 + b2) / se_recent), df_resid))

    recent_span_n = expected_count(bounds, breakpoint, unit)
    recent_completeness = min(n_recent / recent_span_n, 1.0)
    hist_bounds = WindowBounds(levels.index[0], tb_ts, 0, bounds.lo)
    hist_expected = max(int(round((tb_ts - levels.index[0]) / unit_length(unit))), 1)
    hist_completeness = min(n_hist / hist_expected, 1.0)
    hist_index = index[~recent_mask]
    rec_index = index[recent_mask]

    historic = SlopeEstimate(
        label='historic',
        slope=float(b1) * scale,
        slope_se=float(se_hist) * scale,
        p_value=float(result.pvalues[1]),
        n=n_hist,
        start=hist_index[0],
        end=hist_index[-1],
        nominal_start=hist_bounds.nominal_start,
        nominal_end=hist_bounds.nominal_end,
        n_expected=hist_expected,
        completeness=hist_completeness,
        min_completeness=min_completeness,
        accepted=hist_completeness >= min_completeness,
        method=method,
        unit=unit,
        rho=rho,
    )
    recent = SlopeEstimate(
        label='recent',
        slope=float(b1 + b2) * scale,
        slope_se=float(se_recent) * scale,
        p_value=p_recent,
        n=n_recent,
        start=rec_index[0],
        end=rec_index[-1],
        nominal_start=bounds.nominal_start,
        nominal_end=bounds.nominal_end,
        n_expected=recent_span_n,
        completeness=recent_completeness,
        min_completeness=min_completeness,
        accepted=recent_completeness >= min_completeness,
        method=method,
        unit=unit,
        rho=rho,
        partial=_is_partial(rec_index[0], rec_index[-1], bounds, unit),
    )

    if not recent.accepted:
        logger.warning(f"Recent segment is {recent_completeness:.1%} complete "
                       f"(minimum {min_completeness:.0%})")
    logger.info(f"Breakpoint at {tb_ts}: historic {historic.slope:.4g}/yr, recent {recent.slope:.4g}/yr; "
                f"recent segment used {recent.start} to {recent.end}")

    return ChangeEstimate(
        historic=historic,
        recent=recent,
        breakpoint=tb_ts,
        difference=float(b2) * scale,
        difference_se=float(np.sqrt(cov[2, 2])) * scale,
        difference_p_value=float(result.pvalues[2]),
        rho=rho,
        settings=TrendSettings(
            unit=unit,
            method=method,
            min_completeness=min_completeness,
            breakpoint=breakpoint.label,
        ),
    )


def _window_job(
    job: Tuple[int, WindowBounds, pd.Series],
    span: WindowSpec,
    unit: str,
    method: str,
    min_completeness: float
) -> Tuple[int, Optional[SlopeEstimate], str]:
    """
    Top-level helper for the executor. Fits one window, returning
    (k, estimate or None, rejection reason).
    """
    k, bounds, window = job
    try:
        est = _estimate_window(window, bounds, span, unit, method, min_completeness)
    except InsufficientDataError as e:
        return k, None, f"too few points: {e}"
    reason = '' if est.accepted else 'incomplete'
    return k, est, reason


def slr_change_comp(
    levels: pd.Series,
    span: WindowSpec,
    interval: WindowSpec,
    unit: str = 'month',
    method: str = 'ols',
    min_completeness: float = DEFAULT_MIN_COMPLETENESS,
    exclude_overlap: bool = False,
    workers: int = 1,
    executor: str = 'process'
) -> ChangeComparison:
    """
    Compare the most recent window slope against every earlier window.

    Windows of ``span`` end at the last timestamp and step back by
    ``interval`` (same mode as ``span``). A historic window is valid when it
    starts within the record, has at least three points and meets
    ``min_completeness``. The comparison counts valid historic windows whose
    slope is >= the recent slope; no parametric p-value is computed because
    overlapping, autocorrelated windows are not independent.

    Parameters
    ----------
    exclude_overlap : bool, default=False
        Drop historic windows that overlap the recent window.
    workers : int, default=1
        Parallel workers; <= 1 runs serially.
    executor : {'process', 'thread'}
        Executor type used when workers > 1.

    Returns
    -------
    ChangeComparison
    """
    if method not in METHODS:
        raise ValueError(f"method must be one of {METHODS}, got {method!r}")
    if executor not in ('process', 'thread'):
        raise ValueError(f"executor must be 'process' or 'thread', got {executor!r}")
    levels = _check_series(levels)
    if levels.empty:
        raise InsufficientDataError("levels series is empty")

    candidates = step_windows(levels.index, span, interval)
    record_start = levels.index[0]

    rows: Dict[int, Dict[str, Any]] = {}
    jobs = []
    for k, bounds in candidates:
        row = {
            'k': k,
            'label': _window_label(bounds),
            'nominal_start': bounds.nominal_start,
            'nominal_end': bounds.nominal_end,
            'is_recent': k == 0,
        }
        rows[k] = row
        if k > 0 and bounds.nominal_start < record_start:
            row['reason'] = 'starts before record'
            continue
        jobs.append((k, bounds, levels.iloc[bounds.lo:bounds.hi]))

    func = partial(_window_job, span=span, unit=unit, method=method,
                   min_completeness=min_completeness)
    if workers and workers > 1:
        pool_cls = (concurrent.futures.ProcessPoolExecutor if executor == 'process'
                    else concurrent.futures.ThreadPoolExecutor)
        logger.info(f"Fitting {len(jobs)} windows with {workers} {executor} worker(s)")
        with pool_cls(max_workers=workers) as pool:
            results = list(tqdm(pool.map(func, jobs), total=len(jobs), desc='Windows'))
    else:
        results = [func(job) for job in jobs]

    estimates: Dict[int, SlopeEstimate] = {}
    for k, est, reason in results:
        rows[k]['reason'] = reason
        if est is not None:
            estimates[k] = est
            rows[k].update({
                'start': est.start,
                'end': est.end,
                'n': est.n,
                'completeness': est.completeness,
                'partial': est.partial,
                'slope': est.slope,
                'slope_se': est.slope_se,
                'p_value': est.p_value,
                'accepted': est.accepted,
            })

    if 0 not in estimates:
        raise InsufficientDataError(f"Most recent window has too few points: {rows[0].get('reason')}")
    recent = estimates[0]
    if not recent.accepted:
        logger.warning(f"Most recent window {recent.label} is only {recent.completeness:.1%} complete")
    if recent.partial:
        logger.warning(f"Most recent window {recent.label} covers {recent.start} to {recent.end}, "
                       f"short of its nominal span {span.label}")

    recent_bounds = dict(candidates)[0]

    def _overlaps(est: SlopeEstimate) -> bool:
        if recent_bounds.start_inclusive:
            return est.end >= recent_bounds.nominal_start
        return est.end > recent_bounds.nominal_start

    historic = []
    for k, est in estimates.items():
        if k == 0 or not est.accepted:
            continue
        if exclude_overlap and _overlaps(est):
            rows[k]['reason'] = 'overlaps recent window'
            continue
        historic.append(est)
        rows[k]['in_comparison'] = True

    n_valid = len(historic)
    n_ge = int(sum(est.slope >= recent.slope for est in historic))

    table = pd.DataFrame([rows[k] for k in sorted(rows)]).set_index('k')
    for col, default in (('accepted', False), ('partial', False), ('in_comparison', False)):
        if col not in table:
            table[col] = default
        table[col] = table[col].fillna(default).astype(bool)

    logger.info(f"{n_ge} of {n_valid} historic windows have slope >= recent "
                f"({recent.slope:.4g}/yr)")

    return ChangeComparison(
        recent=recent,
        windows=table,
        n_valid_historic=n_valid,
        n_greater_equal=n_ge,
        settings=TrendSettings(
            unit=unit,
            method=method,
            min_completeness=min_completeness,
            span=span.label,
            interval=interval.label,
            exclude_overlap=exclude_overlap,
            n_candidates=len(candidates),
        ),
    )
