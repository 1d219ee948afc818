# src/tideflood/cli.py

"""
CLI wrapper for the tideflood toolkit.

Sub-commands:
  floodfreq : Observed flood-day frequency and across-year dispersion
  tub       : Bathtub flood forecast for a list of SLR offsets
  ar        : Monte Carlo flood forecast from an AR deviation model
  slope     : Linear SLR rate over one window
  change    : Historic vs recent rate with a breakpoint
  compare   : Rank the most recent window rate against all earlier windows
"""

import argparse
import json
import logging
import multiprocessing
import os
import sys
from dataclasses import is_dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from tideflood.ar_model import fit_deviation_model
from tideflood.data_io import StationDataCache, load_station_csv, load_station_info
from tideflood.deviations import build_deviations
from tideflood.errors import InsufficientDataError
from tideflood.floods import DEFAULT_MIN_YEAR_OBS, floodmean
from tideflood.simulate import (
    DEFAULT_N_SIM, epoch_adjustment, epoch_hourly_index, floodcast_ar, floodcast_tub
)
from tideflood.trend import (
    DEFAULT_MIN_COMPLETENESS, slr_change, slr_change_comp, slr_slope
)
from tideflood.windows import WindowSpec

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

DEFAULT_MIN_COVERAGE = 0.5

_CACHE = StationDataCache()


def ensure_json_serializable(obj):
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    elif isinstance(obj, float):
        return None if not np.isfinite(obj) else obj
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        if np.isnan(obj) or np.isinf(obj):
            return None
        return float(obj)
    elif isinstance(obj, (pd.Timestamp, datetime)):
        return obj.isoformat()
    elif isinstance(obj, pd.Timedelta):
        return str(obj)
    elif isinstance(obj, np.ndarray):
        return [ensure_json_serializable(x) for x in obj.tolist()]
    elif isinstance(obj, pd.DataFrame):
        frame = obj.reset_index()
        return [ensure_json_serializable(rec) for rec in frame.to_dict(orient='records')]
    elif isinstance(obj, pd.Series):
        return {str(k): ensure_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [ensure_json_serializable(x) for x in obj]
    elif isinstance(obj, dict):
        return {str(k): ensure_json_serializable(v) for k, v in obj.items()}
    elif is_dataclass(obj):
        return ensure_json_serializable(
            {f: getattr(obj, f) for f in obj.__dataclass_fields__})
    else:
        return str(obj)


def _load_levels(csv_path: str, station: Optional[str] = None) -> pd.DataFrame:
    key = StationDataCache.make_key(station or os.path.basename(csv_path), kind=csv_path)
    return _CACHE.get(key, lambda: load_station_csv(csv_path))


def _resolve_threshold(args) -> float:
    if args.threshold is not None:
        return float(args.threshold)
    if not args.station_info:
        raise ValueError("Provide --threshold or --station-info with --severity")
    info = load_station_info(args.station_info)
    threshold = info.derived_thresholds()[args.severity]
    logger.info(f"Using NOAA derived {args.severity} threshold {threshold:.3f} {info.units}")
    return threshold


def _monthly_means(df: pd.DataFrame, column: str, min_hours: int) -> pd.Series:
    """Monthly means of an hourly column, NaN for months with too few hours."""
    grouped = df[column].resample('MS')
    means = grouped.mean()
    counts = grouped.count()
    return means.where(counts >= min_hours)


def _write_output(result: Dict[str, Any], output: Optional[str]) -> None:
    payload = ensure_json_serializable(result)
    text = json.dumps(payload, indent=2)
    if output:
        os.makedirs(os.path.dirname(os.path.abspath(output)), exist_ok=True)
        with open(output, 'w') as f:
            f.write(text)
        logger.info(f"Wrote {output}")
    else:
        print(text)


def run_floodfreq(args) -> Dict[str, Any]:
    df = _load_levels(args.input_csv)
    threshold = _resolve_threshold(args)
    res = floodmean(
        df['observed'], threshold,
        min_year_obs=args.min_year_obs,
        partial_years=args.partial_years,
    )
    return {
        'command': 'floodfreq',
        'settings': res.settings,
        'probability': res.probability,
        'annual_rate': res.annual_rate,
        'variance': res.variance,
        'poisson_dispersion': res.poisson_dispersion,
        'binomial_variance': res.binomial_variance,
        'n_years': res.n_years,
        'per_year': res.table,
    }


def run_tub(args) -> Dict[str, Any]:
    df = _load_levels(args.input_csv)
    threshold = _resolve_threshold(args)
    res = floodcast_tub(
        df, threshold, args.offsets,
        source=args.source,
        start_adjust=args.start_adjust,
    )
    return {'command': 'tub', 'settings': res.settings, 'forecast': res.table}


def run_ar(args) -> Dict[str, Any]:
    df = _load_levels(args.input_csv)
    threshold = _resolve_threshold(args)
    deviations = build_deviations(df, min_fraction=args.min_fraction)
    model = fit_deviation_model(
        deviations,
        n_harmonics=args.harmonics,
        monthly=args.monthly,
        max_order=args.max_order,
        seasonal_lag=None if args.seasonal_lag <= 0 else args.seasonal_lag,
    )

    start_adjust = args.start_adjust
    if args.station_info:
        info = load_station_info(args.station_info)
        index = epoch_hourly_index(info.epoch_start, info.epoch_end)
        if args.rate is not None and args.target_year is not None:
            start_adjust += epoch_adjustment(args.rate, info.epoch_start,
                                             info.epoch_end, args.target_year)
    else:
        index = deviations.frame.index
    predicted = df['predicted'].reindex(index)
    coverage = float(predicted.notna().mean())
    logger.info(f"Predictions cover {coverage:.1%} of {index[0]} to {index[-1]}")
    if coverage < args.min_coverage:
        raise InsufficientDataError(
            f"Predictions cover only {coverage:.1%} of the simulation period "
            f"{index[0]:%Y-%m-%d} to {index[-1]:%Y-%m-%d} (minimum {args.min_coverage:.0%}); "
            f"supply predictions for the whole tidal epoch")

    workers = args.workers if args.workers > 0 else multiprocessing.cpu_count()
    ens = floodcast_ar(
        model, predicted, threshold, args.offsets,
        n_sim=args.n_sim,
        seed=args.seed,
        start_adjust=start_adjust,
        method=args.innovations,
        workers=workers,
    )
    if args.save_distribution:
        ens.to_dataset().to_netcdf(args.save_distribution)
        logger.info(f"Saved ensemble distribution to {args.save_distribution}")
    return {
        'command': 'ar',
        'settings': ens.settings,
        'ar_order': model.ar.order,
        'ar_seasonal_lag': model.ar.seasonal_lag,
        'ar_effective_n': model.ar.n_obs,
        'summary': ens.summary,
    }


def _series_for_trend(args) -> pd.Series:
    df = _load_levels(args.input_csv)
    if args.unit == 'month':
        return _monthly_means(df, args.column, args.min_hours)
    return df[args.column]


def run_slope(args) -> Dict[str, Any]:
    levels = _series_for_trend(args)
    span = WindowSpec.parse(args.span) if args.span else None
    est = slr_slope(levels, span=span, unit=args.unit, method=args.method,
                    min_completeness=args.min_completeness)
    return {'command': 'slope', 'span': args.span, 'estimate': est}


def run_change(args) -> Dict[str, Any]:
    levels = _series_for_trend(args)
    res = slr_change(levels, WindowSpec.parse(args.breakpoint), unit=args.unit,
                     method=args.method, min_completeness=args.min_completeness)
    return {'command': 'change', 'result': res}


def run_compare(args) -> Dict[str, Any]:
    levels = _series_for_trend(args)
    workers = args.workers if args.workers > 0 else multiprocessing.cpu_count()
    res = slr_change_comp(
        levels, WindowSpec.parse(args.span), WindowSpec.parse(args.interval),
        unit=args.unit, method=args.method,
        min_completeness=args.min_completeness,
        exclude_overlap=args.exclude_overlap,
        workers=workers,
    )
    return {
        'command': 'compare',
        'settings': res.settings,
        'recent': res.recent,
        'n_valid_historic': res.n_valid_historic,
        'n_greater_equal': res.n_greater_equal,
        'fraction_greater_equal': res.fraction_greater_equal,
        'windows': res.windows,
    }


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument('--input-csv', required=True,
                   help='Station CSV with timestamp, observed, predicted columns')
    p.add_argument('--output-json', default=None,
                   help='Write results here (default: stdout)')


def _add_threshold(p: argparse.ArgumentParser) -> None:
    p.add_argument('--threshold', type=float, default=None,
                   help='Flood threshold in station datum')
    p.add_argument('--station-info', default=None,
                   help='Station metadata JSON (epoch, datums)')
    p.add_argument('--severity', choices=['minor', 'moderate', 'major'], default='minor',
                   help='NOAA derived threshold used when --threshold is omitted')


def _add_trend(p: argparse.ArgumentParser) -> None:
    p.add_argument('--column', choices=['observed', 'predicted'], default='observed',
                   help='Level column to fit')
    p.add_argument('--unit', choices=['hour', 'day', 'month', 'year'], default='month',
                   help="Time unit; 'month' fits monthly means of the hourly data")
    p.add_argument('--min-hours', type=int, default=504,
                   help='Minimum hourly values for a monthly mean')
    p.add_argument('--method', choices=['ols', 'gls'], default='ols',
                   help='OLS or AR(1)-error GLS')
    p.add_argument('--min-completeness', type=float, default=DEFAULT_MIN_COMPLETENESS,
                   help='Minimum window completeness')


def setup_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Coastal flood-frequency forecasts under SLR')
    sub = parser.add_subparsers(dest='command', required=True)

    p_freq = sub.add_parser('floodfreq', help='Observed flood-day frequency')
    _add_common(p_freq)
    _add_threshold(p_freq)
    p_freq.add_argument('--min-year-obs', type=int, default=DEFAULT_MIN_YEAR_OBS,
                        help='Minimum hourly values for a complete year')
    p_freq.add_argument('--partial-years', choices=['raise', 'drop'], default='drop',
                        help='Fail on, or drop, incomplete years')

    p_tub = sub.add_parser('tub', help='Bathtub flood forecast')
    _add_common(p_tub)
    _add_threshold(p_tub)
    p_tub.add_argument('--offsets', nargs='+', type=float, required=True,
                       help='SLR offsets (same units as levels)')
    p_tub.add_argument('--source', choices=['predicted', 'observed'], default='predicted',
                       help='Series to raise')
    p_tub.add_argument('--start-adjust', type=float, default=0.0,
                       help='Starting water-level adjustment')

    p_ar = sub.add_parser('ar', help='Monte Carlo flood forecast')
    _add_common(p_ar)
    _add_threshold(p_ar)
    p_ar.add_argument('--offsets', nargs='+', type=float, required=True,
                      help='SLR offsets (same units as levels)')
    p_ar.add_argument('--n-sim', type=int, default=DEFAULT_N_SIM,
                      help='Number of simulated records')
    p_ar.add_argument('--seed', type=int, default=None, help='Root random seed')
    p_ar.add_argument('--harmonics', type=int, default=2, help='Annual harmonics (1-3)')
    p_ar.add_argument('--monthly', action='store_true',
                      help='Monthly effects instead of harmonics')
    p_ar.add_argument('--max-order', type=int, default=10, help='Largest AR order searched')
    p_ar.add_argument('--seasonal-lag', type=int, default=25,
                      help='Seasonal AR lag in samples (0 disables)')
    p_ar.add_argument('--innovations', choices=['gaussian', 'bootstrap'], default='gaussian',
                      help='AR innovation sampling')
    p_ar.add_argument('--min-fraction', type=float, default=0.5,
                      help='Minimum fraction of aligned instants')
    p_ar.add_argument('--start-adjust', type=float, default=0.0,
                      help='Starting water-level adjustment')
    p_ar.add_argument('--rate', type=float, default=None,
                      help='SLR rate per year for the epoch-to-target adjustment')
    p_ar.add_argument('--target-year', type=float, default=None,
                      help='Year the adjustment brings the epoch to')
    p_ar.add_argument('--min-coverage', type=float, default=DEFAULT_MIN_COVERAGE,
                      help='Minimum fraction of the simulation period with predictions')
    p_ar.add_argument('--save-distribution', default=None,
                      help='Write the ensemble to this NetCDF file')
    p_ar.add_argument('--workers', type=int, default=0,
                      help='Parallel workers (0 = all cores)')

    p_slope = sub.add_parser('slope', help='Linear SLR rate')
    _add_common(p_slope)
    _add_trend(p_slope)
    p_slope.add_argument('--span', default=None,
                         help="Window, e.g. 'years:19', 'duration:3652D', 'count:120'")

    p_change = sub.add_parser('change', help='Historic vs recent rate')
    _add_common(p_change)
    _add_trend(p_change)
    p_change.add_argument('--breakpoint', required=True,
                          help="Recent segment length, e.g. 'years:10'")

    p_comp = sub.add_parser('compare', help='Rank recent rate against earlier windows')
    _add_common(p_comp)
    _add_trend(p_comp)
    p_comp.add_argument('--span', required=True, help="Window length, e.g. 'years:10'")
    p_comp.add_argument('--interval', required=True, help="Step, e.g. 'years:1'")
    p_comp.add_argument('--exclude-overlap', action='store_true',
                        help='Ignore windows overlapping the recent one')
    p_comp.add_argument('--workers', type=int, default=1,
                        help='Parallel workers (0 = all cores)')
    return parser


COMMANDS = {
    'floodfreq': run_floodfreq,
    'tub': run_tub,
    'ar': run_ar,
    'slope': run_slope,
    'change': run_change,
    'compare': run_compare,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = setup_parser()
    args = parser.parse_args(argv)
    try:
        result = COMMANDS[args.command](args)
    except (ValueError, KeyError, FileNotFoundError) as e:
        logger.error(f"{args.command} failed: {type(e).__name__}: {e}")
        return 1
    _write_output(result, args.output_json)
    return 0


if __name__ == '__main__':
    sys.exit(main())
