# src/tideflood/seasonal.py
"""
Module: seasonal.py
Responsibilities:
- Fit a low-order annual Fourier basis (or monthly effects) to deviations by OLS
- Evaluate the fitted seasonal curve at arbitrary timestamps
- Remove the seasonal curve to produce the residual series for AR fitting
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm

from tideflood.deviations import DeviationSeries
from tideflood.errors import InsufficientDataError

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
TROPICAL_YEAR_DAYS = 365.2422
DEFAULT_HARMONICS = 2
MAX_HARMONICS = 3
MIN_OBS_PER_PARAM = 10


@dataclass
class SeasonalModel:
    """
    Fitted seasonal component of the deviation series.

    For harmonic fits ``params`` is ``[c, a_1, b_1, ..., a_K, b_K]`` (sine then
    cosine per harmonic); for monthly fits it holds the 12 month means.
    """
    params: np.ndarray
    param_names: List[str]
    origin: pd.Timestamp
    n_harmonics: int
    monthly: bool
    n_obs: int
    r_squared: float
    period_days: float = TROPICAL_YEAR_DAYS

    @property
    def monthly_offsets(self) -> Optional[pd.Series]:
        if not self.monthly:
            return None
        return pd.Series(self.params, index=range(1, 13), name='monthly_offset')

    def amplitudes(self) -> np.ndarray:
        """Amplitude of each harmonic, sqrt(a_k^2 + b_k^2)."""
        if self.monthly:
            raise ValueError("Monthly seasonal model has no harmonic amplitudes")
        ab = self.params[1:].reshape(-1, 2)
        return np.hypot(ab[:, 0], ab[:, 1])

    def phases(self) -> np.ndarray:
        if self.monthly:
            raise ValueError("Monthly seasonal model has no harmonic phases")
        ab = self.params[1:].reshape(-1, 2)
        return np.arctan2(ab[:, 1], ab[:, 0])

    def evaluate(self, index: pd.DatetimeIndex) -> pd.Series:
        """Seasonal curve at ``index``."""
        index = pd.DatetimeIndex(index)
        X = _design_matrix(index, self.origin, self.n_harmonics, self.monthly, self.period_days)
        return pd.Series(X @ self.params, index=index, name='seasonal')


def _design_matrix(
    index: pd.DatetimeIndex,
    origin: pd.Timestamp,
    n_harmonics: int,
    monthly: bool,
    period_days: float = TROPICAL_YEAR_DAYS
) -> np.ndarray:
    if monthly:
        months = index.month.to_numpy()
        return (months[:, None] == np.arange(1, 13)[None, :]).astype(float)

    t_days = (index - origin) / pd.Timedelta(days=1)
    t_days = np.asarray(t_days, dtype=float)
    cols = [np.ones_like(t_days)]
    for k in range(1, n_harmonics + 1):
        angle = 2.0 * np.pi * k * t_days / period_days
        cols.append(np.sin(angle))
        cols.append(np.cos(angle))
    return np.column_stack(cols)


def _param_names(n_harmonics: int, monthly: bool) -> List[str]:
    if monthly:
        return [f"month_{m:02d}" for m in range(1, 13)]
    names = ['const']
    for k in range(1, n_harmonics + 1):
        names.extend([f"sin_{k}", f"cos_{k}"])
    return names


def fit_seasonal(
    deviations: Union[DeviationSeries, pd.Series],
    n_harmonics: int = DEFAULT_HARMONICS,
    monthly: bool = False,
    period_days: float = TROPICAL_YEAR_DAYS
) -> SeasonalModel:
    """
    Fit the seasonal curve to deviations by ordinary least squares.

    Parameters
    ----------
    deviations : DeviationSeries or pd.Series
        Deviation series; NaN instants are ignored.
    n_harmonics : int, default=2
        Number of annual harmonics K (1-3). Ignored when ``monthly`` is True.
    monthly : bool, default=False
        Use categorical month effects instead of harmonics.
    period_days : float, default=365.2422
        Period of the fundamental harmonic.

    Returns
    -------
    SeasonalModel

    Raises
    ------
    ValueError
        If n_harmonics is out of range
    InsufficientDataError
        If there are too few valid samples for the number of parameters, or a
        calendar month has no data in monthly mode
    """
    if not monthly and not 1 <= n_harmonics <= MAX_HARMONICS:
        raise ValueError(f"n_harmonics must be between 1 and {MAX_HARMONICS}, got {n_harmonics}")

    series = deviations.deviation if isinstance(deviations, DeviationSeries) else deviations
    if not isinstance(series, pd.Series):
        raise TypeError("deviations must be a DeviationSeries or pandas Series")

    valid = series.dropna()
    index = pd.DatetimeIndex(valid.index)
    origin = pd.DatetimeIndex(series.index)[0]
    names = _param_names(n_harmonics, monthly)
    n_params = len(names)

    if len(valid) < MIN_OBS_PER_PARAM * n_params:
        raise InsufficientDataError(
            f"Seasonal fit needs at least {MIN_OBS_PER_PARAM * n_params} valid samples "
            f"for {n_params} parameters, got {len(valid)}"
        )

    if monthly:
        present = set(index.month.unique())
        absent = sorted(set(range(1, 13)) - present)
        if absent:
            raise InsufficientDataError(f"No deviations in month(s) {absent}; cannot fit monthly effects")

    X = _design_matrix(index, origin, n_harmonics, monthly, period_days)
    result = sm.OLS(valid.to_numpy(), X).fit()
    r_squared = float(result.rsquared) if not monthly else float(
        1.0 - result.ssr / np.sum((valid.to_numpy() - valid.mean()) ** 2)
    )

    model = SeasonalModel(
        params=np.asarray(result.params, dtype=float),
        param_names=names,
        origin=origin,
        n_harmonics=0 if monthly else n_harmonics,
        monthly=monthly,
        n_obs=int(len(valid)),
        r_squared=r_squared,
        period_days=period_days,
    )
    kind = 'monthly effects' if monthly else f"{n_harmonics} harmonic(s)"
    logger.info(f"Seasonal fit with {kind} on {len(valid)} samples: R^2={r_squared:.3f}")
    return model


def remove_seasonal(
    deviations: Union[DeviationSeries, pd.Series],
    model: SeasonalModel
) -> pd.Series:
    """
    Subtract the seasonal curve from deviations.

    The result keeps the input's grid, so gaps stay NaN.
    """
    series = deviations.deviation if isinstance(deviations, DeviationSeries) else deviations
    seasonal = model.evaluate(series.index)
    resid = series - seasonal.to_numpy()
    resid.name = 'residual'
    return resid
