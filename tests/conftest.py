"""
Shared fixtures for frigate_hmm tests.

Tracks are simulated from a known three-state movement HMM (resting,
soaring, gliding) so tests can check preparation, fitting and labelling
against the generating parameters.
"""

import os
from datetime import datetime, timedelta

import numpy as np
import polars as pl
import pytest
import yaml

from frigate_hmm.config import load_settings
from frigate_hmm.hmm.movement_hmm import MovementHMM

# ---------------------------------------------------------------------------
# Simulation constants
# ---------------------------------------------------------------------------
# Ascension Island, fixes every 60 s, two birds with one long gap each
START_LAT, START_LON = -7.95, -14.36
FIX_INTERVAL_S = 60
FIXES_PER_BURST = 120
BURSTS_PER_BIRD = 2
BURST_GAP_S = 3_600
BIRDS = ("AI-101", "AI-102")
EARTH_RADIUS_M = 6_371_000.0

# Generating parameters, states ordered resting, soaring, gliding
TRUE_STEP_MEAN = np.array([4.0, 250.0, 900.0])
TRUE_STEP_SD = np.array([2.5, 90.0, 200.0])
TRUE_ANGLE_MEAN = np.array([0.0, 0.9, 0.0])
TRUE_ANGLE_KAPPA = np.array([0.3, 1.5, 12.0])
TRUE_ALT_MEAN = np.array([8.0, 700.0, 350.0])
TRUE_ALT_SD = np.array([4.0, 200.0, 120.0])


def build_true_model(use_altitude=True):
    """MovementHMM carrying the generating parameters."""
    model = MovementHMM(n_components=3, use_altitude=use_altitude, init_params="")
    model.startprob_ = np.array([0.5, 0.25, 0.25])
    model.transmat_ = np.array(
        [
            [0.92, 0.05, 0.03],
            [0.04, 0.90, 0.06],
            [0.03, 0.07, 0.90],
        ]
    )
    model.step_mean_ = TRUE_STEP_MEAN.copy()
    model.step_sd_ = TRUE_STEP_SD.copy()
    model.angle_mean_ = TRUE_ANGLE_MEAN.copy()
    model.angle_kappa_ = TRUE_ANGLE_KAPPA.copy()
    if use_altitude:
        model.alt_mean_ = TRUE_ALT_MEAN.copy()
        model.alt_sd_ = TRUE_ALT_SD.copy()
    return model


def walk_positions(steps, angles, lat0, lon0, heading0):
    """Turn step lengths and turning angles into fix coordinates.

    Row t of the observations is the step from fix t to fix t+1 and the turn
    made at fix t, so heading_t = heading_{t-1} + angle_t.
    """
    n = steps.shape[0]
    lat = np.empty(n)
    lon = np.empty(n)
    lat[0], lon[0] = lat0, lon0
    heading = heading0
    for t in range(n - 1):
        if t > 0:
            heading = heading + angles[t]
        north = steps[t] * np.cos(heading)
        east = steps[t] * np.sin(heading)
        lat[t + 1] = lat[t] + np.degrees(north / EARTH_RADIUS_M)
        lon[t + 1] = lon[t] + np.degrees(east / (EARTH_RADIUS_M * np.cos(np.radians(lat[t]))))
    return lat, lon


def simulate_tracks(seed=7):
    """Simulated Movebank-style rows plus the generating state per fix."""
    model = build_true_model()
    rng = np.random.default_rng(seed)
    rows = []
    states_out = []
    t0 = datetime(2013, 6, 1, 6, 0, 0)
    for bird_idx, bird in enumerate(BIRDS):
        ts = t0
        lat0, lon0 = START_LAT + 0.01 * bird_idx, START_LON
        for burst in range(BURSTS_PER_BIRD):
            X, states = model.sample(FIXES_PER_BURST, random_state=seed + 10 * bird_idx + burst)
            lat, lon = walk_positions(X[:, 0], X[:, 1], lat0, lon0, rng.uniform(-np.pi, np.pi))
            baro = X[:, 2] + rng.normal(0.0, 2.0, size=FIXES_PER_BURST)
            gps = X[:, 2] + rng.normal(0.0, 15.0, size=FIXES_PER_BURST)
            for i in range(FIXES_PER_BURST):
                rows.append(
                    {
                        "individual-local-identifier": bird,
                        "timestamp": ts.strftime("%Y-%m-%d %H:%M:%S.000"),
                        "location-long": float(lon[i]),
                        "location-lat": float(lat[i]),
                        "height-above-msl": float(gps[i]),
                        "barometric-height": float(baro[i]),
                    }
                )
                states_out.append(
                    {"bird_id": bird, "timestamp": ts, "true_state": int(states[i])}
                )
                ts = ts + timedelta(seconds=FIX_INTERVAL_S)
            ts = ts + timedelta(seconds=BURST_GAP_S)
            lat0, lon0 = float(lat[-1]), float(lon[-1])
    return pl.DataFrame(rows), pl.DataFrame(states_out)


@pytest.fixture(scope="session")
def simulated():
    """(movebank rows, true states) from the generating model."""
    return simulate_tracks()


@pytest.fixture
def true_model():
    return build_true_model()


@pytest.fixture
def track_csv(tmp_path, simulated):
    """CSV export with the simulated rows, one duplicate fix and one fix without coordinates."""
    rows, _ = simulated
    duplicate = rows.head(1)
    broken = rows.slice(5, 1).with_columns(pl.lit(None, dtype=pl.Float64).alias("location-lat"))
    path = tmp_path / "data" / "frigatebirds.csv"
    path.parent.mkdir(parents=True, exist_ok=True)
    pl.concat([rows, duplicate, broken]).write_csv(path)
    return path


@pytest.fixture
def settings_file(tmp_path):
    """Settings YAML under tmp_path/configs with fast fit options."""
    payload = {
        "paths": {
            "data_root": "./data",
            "artifacts_root": "./artifacts",
            "logs_root": "./logs",
        },
        "hmm": {
            "n_states": 3,
            "n_iter": 60,
            "tol": 1e-3,
            "random_state": 3,
            "n_starts": 2,
            "kmeans_n_init": 5,
        },
        "sweep": {"components_default": [2, 3]},
    }
    path = tmp_path / "configs" / "settings.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def settings(settings_file, monkeypatch):
    for key in list(os.environ):
        if key.startswith("FRIGATE_HMM_"):
            monkeypatch.delenv(key, raising=False)
    return load_settings(settings_file)


@pytest.fixture
def small_track():
    """Hand-built canonical fixes: one bird heading east, then north, then a long gap."""
    t0 = datetime(2013, 6, 1, 12, 0, 0)
    return pl.DataFrame(
        {
            "bird_id": ["B1"] * 6,
            "timestamp": [
                t0,
                t0 + timedelta(seconds=60),
                t0 + timedelta(seconds=120),
                t0 + timedelta(seconds=180),
                t0 + timedelta(seconds=240),
                t0 + timedelta(seconds=4_000),
            ],
            "lon": [0.0, 0.001, 0.002, 0.002, 0.002, 0.003],
            "lat": [0.0, 0.0, 0.0, 0.001, 0.002, 0.002],
            "alt_gps": [10.0, None, 30.0, -5.0, 40.0, 50.0],
            "alt_baro": [12.0, 20.0, 31.0, 0.0, 41.0, 49.0],
        }
    )
