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
from ca_seeding.keys import make_cluster_key
from ca_seeding.seeding import CASeeder, EventStatus, SeedingContext, run_seeding
from ca_seeding.simulate import evenly_spaced_geometry, helix_points, make_event
from ca_seeding.sink import TrackCollection

CONFIG = SeedingConfig(start_layer=45, min_layer=39, length_scale=1e-3)
GEOMETRY = evenly_spaced_geometry(first_layer=39, n_layers=7, r_min=20.0, r_max=90.0)


def _single_track(charge=1, pt=1.0, phi0=2.0, eta=0.4, vertex=Vertex(0.0, 0.0, 0.0)):
    layers = GEOMETRY.layers
    xyz = helix_points(
        [GEOMETRY.radius(l) for l in layers], pt=pt, charge=charge, phi0=phi0, eta=eta,
        b_field=CONFIG.b_field, length_scale=CONFIG.length_scale, origin=(vertex.x, vertex.y, vertex.z),
    )
    df = pd.DataFrame(xyz, columns=["x", "y", "z"])
    df.insert(0, "key", [make_cluster_key(l, 0) for l in layers])
    return ClusterStore(df), vertex, [make_cluster_key(l, 0) for l in reversed(layers)]


def test_single_helix_end_to_end():
    clusters, vertex, keys = _single_track(charge=1, pt=1.0)
    sink = TrackCollection()
    result = CASeeder().process_event(SeedingContext(CONFIG, GEOMETRY, clusters, vertex), sink)

    assert result.ok and result.status is EventStatus.OK
    assert result.n_tracks == 1 and len(sink) == 1
    assert result.n_indexed == 7 and result.n_duplicates == 0
    assert result.n_start_hits == 1 and result.n_pairs == 1 and result.n_rejected == 0

    track = sink[0]
    assert track.id == 0
    assert track.hit_keys == keys
    assert track.n_hits == 7 and track.ndf == 9
    assert track.charge == 1
    assert track.pt == pytest.approx(1.0, rel=0.05)
    assert track.momentum[2] == pytest.approx(np.sinh(0.4) * track.pt, rel=1e-3)


def test_displaced_vertex_and_negative_charge():
    clusters, vertex, keys = _single_track(charge=-1, pt=2.5, phi0=6.2, eta=-0.8, vertex=Vertex(0.5, -0.3, 4.0))
    result = run_seeding(clusters, GEOMETRY, vertex, CONFIG)
    assert result.n_tracks == 1
    track = result.tracks[0]
    assert track.hit_keys == keys
    assert track.charge == -1
    assert track.pt == pytest.approx(2.5, rel=0.05)
    np.testing.assert_allclose(track.position, [0.5, -0.3, 4.0])


def test_charge_is_recovered_on_random_events():
    correct = 0
    for seed in range(100):
        rng = np.random.default_rng(seed)
        clusters, vertex, truth = make_event(GEOMETRY, 1, config=CONFIG, rng=rng)
        result = run_seeding(clusters, GEOMETRY, vertex, CONFIG)
        if result.n_tracks == 1 and result.tracks[0].charge == int(truth["charge"].iloc[0]):
            correct += 1
    assert correct >= 99


def test_many_tracks_with_noise():
    rng = np.random.default_rng(11)
    clusters, vertex, truth = make_event(GEOMETRY, 20, config=CONFIG, rng=rng, noise_hits_per_layer=20)
    sink = TrackCollection()
    result = CASeeder().process_event(SeedingContext(CONFIG, GEOMETRY, clusters, vertex), sink)

    assert [t.id for t in sink] == list(range(len(sink)))
    found = {tuple(t.hit_keys[:2]) for t in sink}
    n_found = sum(1 for keys in truth["hit_keys"] if (keys[-1], keys[-2]) in found)
    assert n_found >= 18
    for t in sink:
        assert all(a > b for a, b in zip(t.layers, t.layers[1:]))

    frame = sink.to_frame()
    assert len(frame) == result.n_tracks
    assert {"track_id", "charge", "pt", "pt_error", "hit_keys", "ndf"} <= set(frame.columns)
    hits = sink.hits_frame()
    assert len(hits) == sum(t.n_hits for t in sink)


def test_repeated_runs_are_identical():
    rng = np.random.default_rng(5)
    clusters, vertex, _ = make_event(GEOMETRY, 10, config=CONFIG, rng=rng, noise_hits_per_layer=5)
    context = SeedingContext(CONFIG, GEOMETRY, clusters, vertex)
    seeder = CASeeder()
    first = seeder.process_event(context)
    second = seeder.process_event(context)
    assert [t.hit_keys for t in first.tracks] == [t.hit_keys for t in second.tracks]
    for a, b in zip(first.tracks, second.tracks):
        np.testing.assert_array_equal(a.momentum, b.momentum)
        np.testing.assert_array_equal(a.covariance, b.covariance)


def test_missing_input_aborts_event():
    clusters, _, _ = _single_track()
    sink = TrackCollection()
    result = CASeeder().process_event(SeedingContext(CONFIG, GEOMETRY, clusters, None), sink)
    assert result.status is EventStatus.ABORTED
    assert not result.ok
    assert "vertex" in result.message
    assert result.n_tracks == 0 and len(sink) == 0


def test_empty_index_yields_no_tracks():
    clusters, vertex, _ = _single_track()
    cfg = CONFIG.replace(start_layer=101, min_layer=100)
    result = run_seeding(clusters, GEOMETRY, vertex, cfg)
    assert result.ok
    assert result.n_indexed == 0 and result.n_tracks == 0


def test_second_iteration_starts_lower():
    clusters, vertex, keys = _single_track()
    cfg = CONFIG.replace(n_iterations=2, iteration_layer_step=3, max_extension_steps=3)
    result = run_seeding(clusters, GEOMETRY, vertex, cfg)
    assert [t.layers for t in result.tracks] == [[45, 44, 43, 42, 41], [42, 41, 40, 39]]
    assert [t.id for t in result.tracks] == [0, 1]


def test_iteration_outside_geometry_is_skipped():
    clusters, vertex, _ = _single_track()
    cfg = CONFIG.replace(n_iterations=2, iteration_layer_step=7)
    result = run_seeding(clusters, GEOMETRY, vertex, cfg)
    assert result.ok and result.n_tracks == 1


def test_outer_hits_beyond_eta_range_are_not_seeds():
    clusters, vertex, _ = _single_track(eta=1.5)
    result = run_seeding(clusters, GEOMETRY, vertex, CONFIG.replace(start_eta_range=1.0))
    assert result.n_start_hits == 0 and result.n_tracks == 0
