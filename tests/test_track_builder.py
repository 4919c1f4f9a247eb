import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ca_seeding.config import SeedingConfig
from ca_seeding.data import ClusterStore, Vertex
from ca_seeding.extender import Chain
from ca_seeding.track_builder import RunningStats, TrackBuilder

CONFIG = SeedingConfig(start_layer=45, min_layer=39, length_scale=1e-3)
VERTEX = Vertex(0.1, -0.2, 0.3)


def _clusters():
    df = pd.DataFrame(
        {
            "key": [10, 11, 12],
            "x": [90.0, 78.0, 67.0],
            "y": [0.0, 0.0, 0.0],
            "z": [0.0, 0.0, 0.0],
            "cov_xx": [0.01, 1.0, 1.0],
            "cov_xy": [0.002, 0.0, 0.0],
            "cov_xz": [0.0, 0.0, 0.0],
            "cov_yy": [0.02, 1.0, 1.0],
            "cov_yz": [0.0, 0.0, 0.0],
            "cov_zz": [0.03, 1.0, 1.0],
        }
    )
    return ClusterStore(df)


def _chain(curvatures, start_phi=1.0, start_eta=0.5):
    n = len(curvatures) + 1
    return Chain(
        keys=[10, 11, 12][:n],
        layers=[45, 44, 43][:n],
        curvatures=list(curvatures),
        phi_slopes=[-2e-4 * (1 + 0.1 * i) for i in range(n - 1)],
        eta_slopes=[1e-5 * i for i in range(n - 1)],
        start_phi=start_phi,
        start_eta=start_eta,
    )


def test_running_stats_matches_numpy():
    values = [0.3, -1.2, 4.5, 2.25, 0.0, 7.75]
    rs = RunningStats(values)
    assert rs.n == len(values)
    assert rs.mean == pytest.approx(np.mean(values))
    assert rs.std == pytest.approx(np.std(values, ddof=1))

    one = RunningStats([2.0])
    assert one.mean == 2.0 and np.isnan(one.std)
    assert np.isnan(RunningStats().mean)


def test_statistics_give_pt_and_error():
    stats = TrackBuilder(CONFIG).statistics(_chain([-1.0e-3, -1.2e-3]))
    k_mean = -1.1e-3
    k_std = np.std([-1.0e-3, -1.2e-3], ddof=1)
    bq = CONFIG.pt_constant
    assert stats.n_hits == 3
    assert stats.curvature_mean == pytest.approx(k_mean)
    assert stats.curvature_std == pytest.approx(k_std)
    assert stats.pt == pytest.approx(bq / abs(k_mean))
    assert stats.pt_error == pytest.approx(bq * k_std / k_mean**2)
    assert stats.phi_slope_mean == pytest.approx(-2.1e-4)
    assert stats.eta_slope_std == pytest.approx(np.std([0.0, 1e-5], ddof=1))


def test_build_kinematics_and_covariance():
    builder = TrackBuilder(CONFIG)
    track = builder.build(_chain([-1.0e-3, -1.2e-3]), VERTEX, _clusters())
    stats = track.stats
    pt = stats.pt

    assert track.hit_keys == [10, 11, 12]
    assert track.layers == [45, 44, 43]
    assert track.n_hits == 3
    assert track.ndf == 1
    assert track.id == -1
    np.testing.assert_allclose(track.position, [0.1, -0.2, 0.3])
    np.testing.assert_allclose(track.momentum, [pt * np.cos(1.0), pt * np.sin(1.0), pt * np.sinh(0.5)])
    assert track.pt == pytest.approx(pt)

    cov = track.covariance
    assert cov.shape == (6, 6)
    np.testing.assert_allclose(cov[:3, :3], [[0.01, 0.002, 0.0], [0.002, 0.02, 0.0], [0.0, 0.0, 0.03]])
    dpt2 = stats.pt_error**2
    np.testing.assert_allclose(
        np.diag(cov)[3:], [dpt2 * np.cos(1.0) ** 2, dpt2 * np.sin(1.0) ** 2, dpt2 * np.sinh(0.5) ** 2]
    )
    off = cov.copy()
    off[:3, :3] = 0.0
    np.fill_diagonal(off, 0.0)
    assert not off.any()


def test_charge_from_helicity():
    builder = TrackBuilder(CONFIG)
    clusters = _clusters()
    assert builder.build(_chain([-1e-3, -1e-3]), VERTEX, clusters).charge == 1
    assert builder.build(_chain([1e-3, 1e-3]), VERTEX, clusters).charge == -1
    # start azimuth exactly zero counts as positive helicity
    assert builder.build(_chain([-1e-3, -1e-3], start_phi=0.0), VERTEX, clusters).charge == -1


def test_build_rejections():
    clusters = _clusters()
    assert TrackBuilder(CONFIG).build(_chain([-1e-3]), VERTEX, clusters) is None
    assert TrackBuilder(CONFIG).build(_chain([1e-3, -1e-3]), VERTEX, clusters) is None

    strict = CONFIG.replace(max_relative_pt_error=0.01)
    assert TrackBuilder(strict).build(_chain([-1.0e-3, -1.2e-3]), VERTEX, clusters) is None
    assert TrackBuilder(strict).build(_chain([-1.0e-3, -1.0e-3]), VERTEX, clusters) is not None


def test_two_hit_tracks_when_allowed():
    cfg = CONFIG.replace(min_hits=2)
    track = TrackBuilder(cfg).build(_chain([-1e-3]), VERTEX, _clusters())
    assert track.n_hits == 2
    assert track.ndf == -1
    assert np.isnan(track.stats.pt_error)
