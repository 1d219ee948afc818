"""
Unit tests for data_io module.
"""

import json
import pytest
import pandas as pd
import numpy as np
from pathlib import Path
import tempfile

# Adjust path to import the module
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tideflood.data_io import (
    MISSING_SENTINEL, StationDataCache, StationInfo, TideObservation,
    load_station_csv, load_station_info, observations_to_frame, validate_paths
)


@pytest.fixture
def sample_station_dir():
    """Create a temporary directory with a station CSV and metadata JSON."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        tmp_path = Path(tmp_dir)

        times = pd.date_range(start="2020-01-01", periods=48, freq="h")
        predicted = 0.5 * np.sin(2 * np.pi * np.arange(48) / 12.42)
        observed = predicted + 0.05
        observed[5] = MISSING_SENTINEL
        df = pd.DataFrame({
            "timestamp": times.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "observed": observed,
            "predicted": predicted,
        })
        csv_path = tmp_path / "8443970.csv"
        df.to_csv(csv_path, index=False)

        meta = {
            "station_id": "8443970",
            "name": "Boston, MA",
            "epoch_start": 1983,
            "epoch_end": 2001,
            "datums": {"mhhw": 1.5, "MLLW": 0.0, "MSL": 0.75},
        }
        meta_path = tmp_path / "8443970.json"
        with open(meta_path, "w") as f:
            json.dump(meta, f)

        yield {"dir": tmp_path, "csv": csv_path, "meta": meta_path}


def test_validate_paths(sample_station_dir):
    assert validate_paths(str(sample_station_dir["csv"]), str(sample_station_dir["meta"]))
    with pytest.raises(FileNotFoundError):
        validate_paths(str(sample_station_dir["dir"] / "missing.csv"))


def test_load_station_csv(sample_station_dir):
    df = load_station_csv(str(sample_station_dir["csv"]))

    assert list(df.columns) == ["observed", "predicted"]
    assert len(df) == 48
    assert df.index.tz is None
    assert df.index[0] == pd.Timestamp("2020-01-01 00:00")
    # Sentinel becomes NaN, nothing else is touched
    assert np.isnan(df["observed"].iloc[5])
    assert df["observed"].isna().sum() == 1
    assert df.attrs["datum"] == "STND"


def test_load_station_csv_missing_columns(sample_station_dir):
    bad = sample_station_dir["dir"] / "bad.csv"
    pd.DataFrame({"timestamp": ["2020-01-01"], "observed": [1.0]}).to_csv(bad, index=False)
    with pytest.raises(ValueError, match="predicted"):
        load_station_csv(str(bad))


def test_load_station_info_and_thresholds(sample_station_dir):
    info = load_station_info(str(sample_station_dir["meta"]))

    assert info.station_id == "8443970"
    assert (info.epoch_start, info.epoch_end) == (1983, 2001)
    assert info.datums["MHHW"] == 1.5
    assert info.great_diurnal_range == pytest.approx(1.5)

    thresholds = info.derived_thresholds()
    assert thresholds["minor"] == pytest.approx(1.5 + 0.04 * 1.5 + 0.50)
    assert thresholds["moderate"] == pytest.approx(1.5 + 0.03 * 1.5 + 0.80)
    assert thresholds["major"] == pytest.approx(1.5 + 0.04 * 1.5 + 1.17)
    assert thresholds["minor"] < thresholds["moderate"] < thresholds["major"]


def test_datum_conversion():
    info = StationInfo("1", 1983, 2001, datums={"MHHW": 1.5, "MLLW": 0.0})
    assert info.to_station_datum(0.5, "MHHW") == pytest.approx(2.0)
    assert info.from_station_datum(2.0, "mhhw") == pytest.approx(0.5)
    assert info.to_station_datum(0.3, "STND") == pytest.approx(0.3)
    with pytest.raises(KeyError):
        info.datum_offset("NAVD88")
    with pytest.raises(KeyError):
        StationInfo("2", 1983, 2001, datums={"MSL": 0.7}).derived_thresholds()


def test_load_station_info_bad_epoch(sample_station_dir):
    meta_path = sample_station_dir["dir"] / "bad.json"
    with open(meta_path, "w") as f:
        json.dump({"station_id": "1", "epoch_start": 2001, "epoch_end": 1983}, f)
    with pytest.raises(ValueError):
        load_station_info(str(meta_path))


def test_observations_to_frame():
    obs = [
        TideObservation(pd.Timestamp("2020-01-01 00:00", tz="UTC"), 1.0, 0.9),
        TideObservation(pd.Timestamp("2020-01-01 01:00", tz="UTC"), 1.1, 1.0),
    ]
    df = observations_to_frame(obs)
    assert list(df.columns) == ["observed", "predicted"]
    assert df.index.tz is None

    mixed = obs + [TideObservation(pd.Timestamp("2020-01-01 02:00"), 1.2, 1.1, "MLLW")]
    with pytest.raises(ValueError, match="datum"):
        observations_to_frame(mixed)
    with pytest.raises(ValueError):
        observations_to_frame([])


def test_station_data_cache():
    cache = StationDataCache()
    calls = []

    def loader():
        calls.append(1)
        return pd.DataFrame({"observed": [1.0]})

    key_a = cache.make_key("A", "2020-01-01", "2020-12-31")
    key_b = cache.make_key("B", "2020-01-01", "2020-12-31")

    first = cache.get(key_a, loader)
    second = cache.get(key_a, loader)
    assert first is second
    assert len(calls) == 1
    assert (cache.hits, cache.misses) == (1, 1)

    cache.get(key_b, loader)
    assert len(cache) == 2
    assert cache.invalidate("A") == 1
    assert key_a not in cache
    assert key_b in cache
    assert cache.invalidate() == 1
    assert len(cache) == 0
