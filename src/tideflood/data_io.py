# src/tideflood/data_io.py
"""
Module: data_io.py
Responsibilities:
- Validate station file paths
- Load station water-level CSV (timestamp, observed, predicted) into pandas
- Load station metadata JSON (tidal epoch, datum offsets)
- Derive NOAA high-tide-flooding thresholds from station datums
- Keyed cache for station data so each station/date-range is read once
"""
import os
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
MISSING_SENTINEL = -99.9999
REQUIRED_COLUMNS = ['timestamp', 'observed', 'predicted']
REQUIRED_DATUMS = ['MHHW', 'MLLW']

# NOAA derived flood thresholds (Sweet et al. 2018), metres above MHHW:
# threshold = slope * GT + intercept, GT = MHHW - MLLW
DERIVED_THRESHOLD_COEFFS = {
    'minor': (0.04, 0.50),
    'moderate': (0.03, 0.80),
    'major': (0.04, 1.17),
}


@dataclass(frozen=True)
class TideObservation:
    """One hourly record from a tide gauge."""
    timestamp: pd.Timestamp
    observed_level: float
    predicted_level: float
    datum_reference: str = 'STND'


@dataclass(frozen=True)
class StationInfo:
    """
    Station metadata supplied by the data-access layer.

    Datum offsets are elevations relative to the fixed station datum (STND),
    in the same units as the water-level series.
    """
    station_id: str
    epoch_start: int
    epoch_end: int
    datums: Dict[str, float] = field(default_factory=dict)
    name: str = ''
    units: str = 'm'

    def datum_offset(self, datum: str) -> float:
        key = datum.upper()
        if key == 'STND':
            return 0.0
        if key not in self.datums:
            raise KeyError(f"Datum '{datum}' not available for station {self.station_id}; "
                           f"known datums: {sorted(self.datums)}")
        return float(self.datums[key])

    def to_station_datum(self, level: float, datum: str) -> float:
        """Convert a level referenced to ``datum`` into station datum."""
        return float(level) + self.datum_offset(datum)

    def from_station_datum(self, level: float, datum: str) -> float:
        return float(level) - self.datum_offset(datum)

    @property
    def great_diurnal_range(self) -> float:
        return self.datum_offset('MHHW') - self.datum_offset('MLLW')

    def derived_thresholds(self) -> Dict[str, float]:
        """
        NOAA derived minor/moderate/major flood thresholds in station datum.

        Returns
        -------
        Dict[str, float]
            Threshold elevation (station datum) per severity.
        """
        missing = [d for d in REQUIRED_DATUMS if d not in self.datums]
        if missing:
            raise KeyError(f"Station {self.station_id} missing datums needed for "
                           f"derived thresholds: {', '.join(missing)}")
        scale = 1.0 if self.units == 'm' else 0.3048
        gt_m = self.great_diurnal_range * scale
        thresholds = {}
        for severity, (slope, intercept) in DERIVED_THRESHOLD_COEFFS.items():
            above_mhhw = (slope * gt_m + intercept) / scale
            thresholds[severity] = self.to_station_datum(above_mhhw, 'MHHW')
        return thresholds


def validate_paths(*paths: str) -> bool:
    """
    Ensure every path exists and is readable.

    Raises
    ------
    FileNotFoundError
        If a path doesn't exist
    PermissionError
        If a path exists but isn't readable
    """
    for path in paths:
        if not os.path.exists(path):
            raise FileNotFoundError(f"File not found: {path}")
        if not os.access(path, os.R_OK):
            raise PermissionError(f"File is not readable: {path}")
    logger.info(f"Verified {len(paths)} path(s)")
    return True


def observations_to_frame(observations: Iterable[TideObservation]) -> pd.DataFrame:
    """
    Convert TideObservation records into a DataFrame indexed by UTC timestamp.

    Raises
    ------
    ValueError
        If no observations are given or more than one datum is mixed in
    """
    rows = list(observations)
    if not rows:
        raise ValueError("No observations supplied")
    datums = {obs.datum_reference for obs in rows}
    if len(datums) > 1:
        raise ValueError(f"Observations mix datum references: {sorted(datums)}")

    df = pd.DataFrame({
        'timestamp': [obs.timestamp for obs in rows],
        'observed': [obs.observed_level for obs in rows],
        'predicted': [obs.predicted_level for obs in rows],
    })
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True).dt.tz_localize(None)
    df = df.set_index('timestamp')
    df.attrs['datum'] = datums.pop()
    return df


def load_station_csv(path: str, datum: str = 'STND') -> pd.DataFrame:
    """
    Load a station water-level CSV.

    Parameters
    ----------
    path : str
        CSV with columns 'timestamp', 'observed', 'predicted'
    datum : str, default='STND'
        Datum the levels in the file are referenced to

    Returns
    -------
    pd.DataFrame
        Indexed by naive UTC timestamp, columns 'observed' and 'predicted'.
        Missing sentinel values are replaced with NaN; rows are not reordered.

    Raises
    ------
    ValueError
        If the file is empty or missing required columns
    """
    validate_paths(path)
    try:
        df = pd.read_csv(path)
    except pd.errors.EmptyDataError:
        raise ValueError(f"Station file is empty: {path}")
    except pd.errors.ParserError as e:
        raise ValueError(f"Error parsing station file: {e}")

    if df.empty:
        raise ValueError(f"Station file contains no data: {path}")

    missing_columns = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing_columns:
        raise ValueError(f"Station CSV missing required columns: {', '.join(missing_columns)}")

    df = df[REQUIRED_COLUMNS].copy()
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True).dt.tz_localize(None)
    for col in ('observed', 'predicted'):
        df[col] = df[col].astype(float).replace(MISSING_SENTINEL, np.nan)
    df = df.set_index('timestamp')
    df.attrs['datum'] = datum

    logger.info(f"Loaded {len(df)} rows from {os.path.basename(path)} "
                f"({df.index.min()} to {df.index.max()})")
    return df


def load_station_info(path: str) -> StationInfo:
    """
    Load station metadata JSON.

    Expected keys: 'station_id', 'epoch_start', 'epoch_end', 'datums'
    (mapping of datum name to elevation above station datum); optional
    'name' and 'units'.
    """
    validate_paths(path)
    with open(path, 'r') as f:
        meta = json.load(f)

    for key in ('station_id', 'epoch_start', 'epoch_end'):
        if key not in meta:
            raise KeyError(f"Station metadata missing '{key}': {path}")

    epoch_start, epoch_end = int(meta['epoch_start']), int(meta['epoch_end'])
    if epoch_end < epoch_start:
        raise ValueError(f"Tidal epoch ends before it starts: {epoch_start}-{epoch_end}")

    datums = {str(k).upper(): float(v) for k, v in meta.get('datums', {}).items()}
    info = StationInfo(
        station_id=str(meta['station_id']),
        epoch_start=epoch_start,
        epoch_end=epoch_end,
        datums=datums,
        name=meta.get('name', ''),
        units=meta.get('units', 'm'),
    )
    logger.info(f"Loaded station {info.station_id}: epoch {epoch_start}-{epoch_end}, "
                f"{len(datums)} datums")
    return info


CacheKey = Tuple[str, Optional[str], Optional[str], str]


class StationDataCache:
    """
    Keyed cache for data-access results.

    Keys are ``(station_id, start, end, kind)``. The loader passed to
    :meth:`get` runs only on a miss; :meth:`invalidate` clears one station or
    everything.
    """

    def __init__(self):
        self._store: Dict[CacheKey, pd.DataFrame] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(station_id: str, start=None, end=None, kind: str = 'water_level') -> CacheKey:
        start_s = None if start is None else pd.Timestamp(start).isoformat()
        end_s = None if end is None else pd.Timestamp(end).isoformat()
        return (str(station_id), start_s, end_s, kind)

    def get(self, key: CacheKey, loader: Callable[[], pd.DataFrame]) -> pd.DataFrame:
        if key in self._store:
            self.hits += 1
            return self._store[key]
        self.misses += 1
        logger.info(f"Cache miss for {key}; loading")
        value = loader()
        self._store[key] = value
        return value

    def invalidate(self, station_id: Optional[str] = None) -> int:
        """Drop cached entries; returns how many were removed."""
        if station_id is None:
            removed = len(self._store)
            self._store.clear()
        else:
            keys = [k for k in self._store if k[0] == str(station_id)]
            for k in keys:
                del self._store[k]
            removed = len(keys)
        logger.info(f"Invalidated {removed} cache entr{'y' if removed == 1 else 'ies'}")
        return removed

    def keys(self) -> List[Hashable]:
        return list(self._store)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)
