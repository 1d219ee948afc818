# src/tideflood/ar_model.py
"""
Module: ar_model.py
Responsibilities:
- Fit AR(p) models (plus an optional ~25-hour seasonal lag) to the
  seasonally-adjusted deviation residuals
- Select the order by information criterion over a bounded range
- Simulate synthetic deviation sequences with matching autocorrelation
- Combine seasonal curve and AR sampler into a DeviationModel

Gap policy: residuals stay on their regular grid with NaN at gaps, and any
regression row whose target or lag touches a gap is dropped. The effective
sample size and the number of dropped rows are reported on the model.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.signal import lfilter
from statsmodels.tsa.arima_process import ArmaProcess

from tideflood.deviations import DeviationSeries
from tideflood.errors import ModelFitError
from tideflood.seasonal import (
    DEFAULT_HARMONICS, SeasonalModel, fit_seasonal, remove_seasonal
)

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DEFAULT_MAX_ORDER = 10
DEFAULT_SEASONAL_LAG = 25  # samples; ~ one lunar day at hourly resolution
DEFAULT_MAX_MISSING = 0.5
DEFAULT_MIN_OBS_FACTOR = 10
CRITERIA = ('aic', 'bic')
SAMPLE_METHODS = ('gaussian', 'bootstrap')


@dataclass
class ARModel:
    """
    Fitted autoregressive model of deviation residuals.

    ``coefficients`` are aligned with ``lags``; ``intercept`` is the regression
    constant, so the process mean is intercept / (1 - sum(coefficients)).
    """
    order: int
    seasonal_lag: Optional[int]
    lags: List[int]
    intercept: float
    coefficients: np.ndarray
    sigma2: float
    residuals: np.ndarray
    n_obs: int
    n_dropped: int
    criterion: str
    criterion_value: float
    selection: Dict[int, float] = field(default_factory=dict)
    gap_policy: str = 'drop-rows'

    @property
    def max_lag(self) -> int:
        return max(self.lags)

    @property
    def ar_polynomial(self) -> np.ndarray:
        """Lag polynomial [1, -phi_1, ..., -phi_maxlag] in ArmaProcess convention."""
        poly = np.zeros(self.max_lag + 1)
        poly[0] = 1.0
        for lag, coef in zip(self.lags, self.coefficients):
            poly[lag] -= coef
        return poly

    @property
    def mean(self) -> float:
        return self.intercept / (1.0 - float(np.sum(self.coefficients)))

    @property
    def is_stationary(self) -> bool:
        return bool(ArmaProcess(self.ar_polynomial, [1.0]).isstationary)

    def theoretical_acf(self, nlags: int = 1) -> np.ndarray:
        """Autocorrelation at lags 0..nlags implied by the fitted coefficients."""
        return ArmaProcess(self.ar_polynomial, [1.0]).acf(lags=nlags + 1)

    def sample(
        self,
        length: int,
        seed=None,
        method: str = 'gaussian',
        burn_in: Optional[int] = None
    ) -> np.ndarray:
        """
        Draw a synthetic residual sequence.

        Parameters
        ----------
        length : int
            Number of samples to return.
        seed : int, SeedSequence or Generator, optional
            Anything accepted by ``numpy.random.default_rng``; a fixed seed
            gives an identical draw.
        method : {'gaussian', 'bootstrap'}
            Gaussian innovations with the fitted variance, or innovations
            resampled from the empirical residuals.
        burn_in : int, optional
            Discarded warm-up samples; defaults to max(500, 10 * max_lag).
        """
        if length <= 0:
            raise ValueError(f"length must be positive, got {length}")
        if method not in SAMPLE_METHODS:
            raise ValueError(f"method must be one of {SAMPLE_METHODS}, got {method!r}")

        rng = np.random.default_rng(seed)
        burn = max(500, 10 * self.max_lag) if burn_in is None else int(burn_in)
        total = length + burn

        if method == 'gaussian':
            innovations = rng.normal(0.0, np.sqrt(self.sigma2), total)
        else:
            centered = self.residuals - self.residuals.mean()
            innovations = rng.choice(centered, size=total, replace=True)

        x = lfilter([1.0], self.ar_polynomial, innovations + self.intercept)
        return x[burn:]


def _lag_columns(order: int, seasonal_lag: Optional[int]) -> List[int]:
    lags = list(range(1, order + 1))
    if seasonal_lag is not None and seasonal_lag > order:
        lags.append(seasonal_lag)
    return lags


def _lagged_design(values: np.ndarray, max_lag: int) -> np.ndarray:
    """Matrix whose column j holds values shifted by j (j = 0..max_lag)."""
    n = len(values)
    mat = np.full((n - max_lag, max_lag + 1), np.nan)
    for j in range(max_lag + 1):
        mat[:, j] = values[max_lag - j:n - j]
    return mat


def _check_regular(index: pd.Index) -> None:
    if not isinstance(index, pd.DatetimeIndex) or len(index) < 3:
        return
    steps = np.unique(np.diff(index.asi8))
    if steps.size != 1:
        raise ModelFitError("AR model must be fitted on an evenly spaced series; "
                            "reindex onto a regular grid and leave gaps as NaN")


def fit_ar(
    residuals: Union[pd.Series, np.ndarray],
    order: Optional[int] = None,
    max_order: int = DEFAULT_MAX_ORDER,
    seasonal_lag: Optional[int] = DEFAULT_SEASONAL_LAG,
    criterion: str = 'aic',
    max_missing: float = DEFAULT_MAX_MISSING,
    min_obs_factor: int = DEFAULT_MIN_OBS_FACTOR
) -> ARModel:
    """
    Fit an AR model by lagged OLS regression.

    Parameters
    ----------
    residuals : pd.Series or np.ndarray
        Evenly spaced residual series; NaN marks gaps.
    order : int, optional
        Fixed AR order. If None the order is selected over 1..max_order.
    max_order : int, default=10
        Upper bound of the order search.
    seasonal_lag : int or None, default=25
        Additional seasonal lag term; None disables it.
    criterion : {'aic', 'bic'}
        Information criterion for order selection.
    max_missing : float, default=0.5
        Reject the fit when more than this fraction of samples is missing.
    min_obs_factor : int, default=10
        Minimum effective sample per unit of (p + L).

    Returns
    -------
    ARModel

    Raises
    ------
    ModelFitError
        If the series is too short or too gappy for the requested order, or
        the fitted process is not stationary.
    """
    if criterion not in CRITERIA:
        raise ValueError(f"criterion must be one of {CRITERIA}, got {criterion!r}")
    if order is not None and order < 1:
        raise ValueError(f"order must be >= 1, got {order}")
    if max_order < 1:
        raise ValueError(f"max_order must be >= 1, got {max_order}")
    if seasonal_lag is not None and seasonal_lag < 1:
        raise ValueError(f"seasonal_lag must be >= 1 or None, got {seasonal_lag}")

    if isinstance(residuals, pd.Series):
        _check_regular(residuals.index)
        values = residuals.to_numpy(dtype=float)
    else:
        values = np.asarray(residuals, dtype=float)

    candidates = [order] if order is not None else list(range(1, max_order + 1))
    top = max(candidates)
    max_lag = max(top, seasonal_lag or 0)
    n_total = len(values)

    if n_total < max_lag + 1 + len(_lag_columns(top, seasonal_lag)):
        raise ModelFitError(f"Series of length {n_total} is too short for AR order {top} "
                            f"with seasonal lag {seasonal_lag}")

    missing = float(np.isnan(values).mean())
    if missing > max_missing:
        raise ModelFitError(f"{missing:.1%} of residuals are missing "
                            f"(maximum {max_missing:.1%}); not fitting AR model")

    design = _lagged_design(values, max_lag)
    y_all = design[:, 0]

    # common sample so criteria are comparable across orders
    common_cols = [0] + _lag_columns(top, seasonal_lag)
    common = ~np.isnan(design[:, common_cols]).any(axis=1)

    selection: Dict[int, float] = {}
    if order is None:
        if common.sum() < min_obs_factor * (top + (seasonal_lag or 0)):
            raise ModelFitError(f"Only {int(common.sum())} complete rows for order search "
                                f"up to {top}; need {min_obs_factor * (top + (seasonal_lag or 0))}")
        for p in candidates:
            cols = _lag_columns(p, seasonal_lag)
            X = sm.add_constant(design[common][:, cols], has_constant='add')
            res = sm.OLS(y_all[common], X).fit()
            selection[p] = float(getattr(res, criterion))
        chosen = min(selection, key=selection.get)
        logger.info(f"Selected AR order {chosen} by {criterion.upper()} "
                    f"(searched 1-{top}, seasonal lag {seasonal_lag})")
    else:
        chosen = order

    lags = _lag_columns(chosen, seasonal_lag)
    rows = ~np.isnan(design[:, [0] + lags]).any(axis=1)
    n_eff = int(rows.sum())
    n_dropped = int(len(rows) - n_eff)
    needed = min_obs_factor * (chosen + (seasonal_lag or 0))
    if n_eff < needed:
        raise ModelFitError(f"Effective sample of {n_eff} rows is below the minimum {needed} "
                            f"for order {chosen} with seasonal lag {seasonal_lag}")
    if n_dropped:
        logger.warning(f"Dropped {n_dropped} regression rows touching gaps; "
                       f"effective sample size {n_eff}")

    X = sm.add_constant(design[rows][:, lags], has_constant='add')
    result = sm.OLS(y_all[rows], X).fit()
    params = np.asarray(result.params, dtype=float)

    model = ARModel(
        order=chosen,
        seasonal_lag=seasonal_lag if seasonal_lag is not None and seasonal_lag > chosen else None,
        lags=lags,
        intercept=float(params[0]),
        coefficients=params[1:],
        sigma2=float(result.scale),
        residuals=np.asarray(result.resid, dtype=float),
        n_obs=n_eff,
        n_dropped=n_dropped,
        criterion=criterion,
        criterion_value=float(getattr(result, criterion)),
        selection=selection,
    )

    if not model.is_stationary:
        raise ModelFitError(f"Fitted AR({chosen}) process is not stationary; "
                            f"coefficients {np.round(model.coefficients, 4).tolist()}")

    logger.info(f"AR({chosen}) fitted on {n_eff} rows: sigma^2={model.sigma2:.4g}, "
                f"lag-1 acf={model.theoretical_acf(1)[1]:.3f}")
    return model


@dataclass
class DeviationModel:
    """Seasonal curve plus AR residual process."""
    seasonal: SeasonalModel
    ar: ARModel

    def sample(
        self,
        index: pd.DatetimeIndex,
        seed=None,
        method: str = 'gaussian'
    ) -> pd.Series:
        """Synthetic deviations at ``index`` (seasonal curve + AR draw)."""
        index = pd.DatetimeIndex(index)
        curve = self.seasonal.evaluate(index).to_numpy()
        draw = self.ar.sample(len(index), seed=seed, method=method)
        return pd.Series(curve + draw, index=index, name='deviation')


def fit_deviation_model(
    deviations: Union[DeviationSeries, pd.Series],
    n_harmonics: int = DEFAULT_HARMONICS,
    monthly: bool = False,
    order: Optional[int] = None,
    max_order: int = DEFAULT_MAX_ORDER,
    seasonal_lag: Optional[int] = DEFAULT_SEASONAL_LAG,
    criterion: str = 'aic',
    max_missing: float = DEFAULT_MAX_MISSING,
    min_obs_factor: int = DEFAULT_MIN_OBS_FACTOR
) -> DeviationModel:
    """
    Fit the seasonal decomposer then the AR model on its residuals.
    """
    seasonal = fit_seasonal(deviations, n_harmonics=n_harmonics, monthly=monthly)
    resid = remove_seasonal(deviations, seasonal)
    ar = fit_ar(
        resid,
        order=order,
        max_order=max_order,
        seasonal_lag=seasonal_lag,
        criterion=criterion,
        max_missing=max_missing,
        min_obs_factor=min_obs_factor,
    )
    return DeviationModel(seasonal=seasonal, ar=ar)
