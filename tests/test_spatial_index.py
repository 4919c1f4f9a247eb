import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ca_seeding.data import ClusterStore, Vertex
from ca_seeding.keys import make_cluster_key
from ca_seeding.spatial_index import SpatialIndex

TWO_PI = 2.0 * np.pi


def _keyset(index, *box):
    _, keys = index.query(*box)
    return set(keys.tolist())


def test_box_query_and_layer_window():
    index = SpatialIndex()
    index.insert_many([1.0, 1.0, 1.0, 2.0], [0.1, 0.1, 0.5, 0.1], [40, 41, 40, 40], [1, 2, 3, 4])
    assert _keyset(index, 0.9, 0.0, 39.5, 1.1, 0.2, 40.5) == {1}
    assert _keyset(index, 0.9, 0.0, 39.5, 1.1, 0.2, 41.5) == {1, 2}
    assert _keyset(index, 0.0, -1.0, 39.5, TWO_PI, 1.0, 40.5) == {1, 3, 4}

    coords, keys = index.query(0.9, 0.0, 39.5, 1.1, 0.2, 41.5)
    assert coords.shape == (2, 3)
    np.testing.assert_array_equal(coords[:, 2], [40.0, 41.0])
    assert keys.tolist() == [1, 2]


def test_closed_box_edges():
    index = SpatialIndex()
    index.insert(0.5, 0.25, 40, "edge")
    assert _keyset(index, 0.5, 0.25, 40, 0.75, 0.5, 40) == {"edge"}
    assert _keyset(index, 0.25, 0.0, 40, 0.5, 0.25, 40) == {"edge"}


def test_wraparound_matches_union_of_split_boxes():
    rng = np.random.default_rng(7)
    n = 400
    phi = rng.uniform(0.0, TWO_PI, n)
    eta = rng.uniform(-1.0, 1.0, n)
    index = SpatialIndex()
    index.insert_many(phi, eta, np.full(n, 45), np.arange(n))

    low = _keyset(index, -0.3, -0.5, 44.5, 0.2, 0.5, 45.5)
    split = _keyset(index, 0.0, -0.5, 44.5, 0.2, 0.5, 45.5) | _keyset(index, TWO_PI - 0.3, -0.5, 44.5, TWO_PI, 0.5, 45.5)
    brute = {i for i in range(n) if (phi[i] <= 0.2 or phi[i] >= TWO_PI - 0.3) and abs(eta[i]) <= 0.5}
    assert low == split == brute

    high = _keyset(index, TWO_PI - 0.2, -0.5, 44.5, TWO_PI + 0.3, 0.5, 45.5)
    brute = {i for i in range(n) if (phi[i] >= TWO_PI - 0.2 or phi[i] <= 0.3) and abs(eta[i]) <= 0.5}
    assert high == brute


def test_azimuth_is_wrapped_on_insert():
    index = SpatialIndex()
    index.insert(-0.1, 0.0, 40, "neg")
    index.insert(TWO_PI + 0.1, 0.0, 40, "over")
    df = index.to_frame().set_index("key")
    assert df.loc["neg", "phi"] == pytest.approx(TWO_PI - 0.1)
    assert df.loc["over", "phi"] == pytest.approx(0.1)


def test_duplicates_first_wins_per_layer():
    index = SpatialIndex(duplicate_tolerance=1e-5)
    n = index.insert_many([1.0, 1.0 + 5e-6, 1.0], [0.2, 0.2 - 5e-6, 0.2], [40, 40, 41], ["a", "b", "c"])
    assert n == 2
    assert index.n_duplicates == 1
    assert len(index) == 2
    assert set(index.to_frame()["key"]) == {"a", "c"}

    assert index.insert(1.0 + 2e-6, 0.2, 40, "late") is False
    assert index.n_duplicates == 2


def test_duplicate_count_independent_of_order():
    phi = [2.0, 2.0 + 3e-6, 3.0]
    eta = [0.0, 1e-6, 0.0]
    counts = []
    for order in ([0, 1, 2], [1, 0, 2], [2, 1, 0]):
        index = SpatialIndex()
        index.insert_many([phi[i] for i in order], [eta[i] for i in order], [40] * 3, order)
        counts.append((len(index), index.n_duplicates))
    assert counts == [(2, 1)] * 3


def test_duplicate_chain_matches_sequential_insertion():
    tol = 1e-5
    phi = [1.0, 1.0 + 0.8 * tol, 1.0 + 1.6 * tol]
    batch = SpatialIndex(tol)
    batch.insert_many(phi, [0.0] * 3, [40] * 3, [0, 1, 2])
    one_by_one = SpatialIndex(tol)
    for i, p in enumerate(phi):
        one_by_one.insert(p, 0.0, 40, i)
    assert set(batch.to_frame()["key"]) == set(one_by_one.to_frame()["key"]) == {0, 2}


def test_duplicate_across_azimuth_seam():
    index = SpatialIndex()
    index.insert_many([1e-6, TWO_PI - 1e-6], [0.0, 0.0], [40, 40], [0, 1])
    assert len(index) == 1 and index.n_duplicates == 1


def test_clear_resets_everything():
    index = SpatialIndex()
    index.insert_many([1.0, 1.0], [0.0, 0.0], [40, 40], [0, 1])
    index.clear()
    assert len(index) == 0 and index.n_duplicates == 0 and index.layers == []
    assert _keyset(index, 0.0, -1.0, 0, TWO_PI, 1.0, 100) == set()


def test_populate_from_vertex_skips_low_layers():
    vertex = Vertex(1.0, -1.0, 2.0)
    rows = [
        (make_cluster_key(38, 0), 1.0 + 10.0, -1.0, 2.0),
        (make_cluster_key(39, 0), 1.0, -1.0 + 20.0, 2.0 + 20.0 * np.sinh(0.5)),
        (make_cluster_key(40, 0), 1.0 - 30.0, -1.0, 2.0),
        (make_cluster_key(40, 1), 1.0, -1.0, 5.0),  # on the beam axis through the vertex
    ]
    clusters = ClusterStore(pd.DataFrame(rows, columns=["key", "x", "y", "z"]))
    index = SpatialIndex()
    stats = index.populate(clusters, vertex, min_layer=39)

    assert stats.n_input == 4
    assert stats.n_below_min_layer == 1
    assert stats.n_invalid == 1
    assert stats.n_inserted == 2
    assert index.layers == [39, 40]

    df = index.to_frame().set_index("key")
    assert df.loc[make_cluster_key(39, 0), "phi"] == pytest.approx(np.pi / 2)
    assert df.loc[make_cluster_key(39, 0), "eta"] == pytest.approx(0.5)
    assert df.loc[make_cluster_key(40, 0), "phi"] == pytest.approx(np.pi)
    assert df.loc[make_cluster_key(40, 0), "eta"] == pytest.approx(0.0)


def test_keys_come_back_with_their_own_type():
    index = SpatialIndex()
    index.insert(1.0, 0.0, 40, 7)
    index.insert(2.0, 0.0, 40, "s")
    index.insert(3.0, 0.0, 40, (40, 3))
    _, keys = index.query(0.0, -1.0, 39.5, TWO_PI, 1.0, 40.5)
    assert keys.dtype == object
    assert keys.tolist() == [7, "s", (40, 3)]
    assert type(keys[0]) is int

    _, empty = index.query(0.0, -1.0, 40.5, TWO_PI, 1.0, 41.5)
    assert empty.size == 0 and empty.dtype == object


def test_cluster_keys_survive_mixed_insertions():
    key = make_cluster_key(40, 0)
    clusters = ClusterStore(pd.DataFrame([(key, 10.0, 0.0, 0.0)], columns=["key", "x", "y", "z"]))
    index = SpatialIndex()
    index.populate(clusters, Vertex(0.0, 0.0, 0.0), min_layer=39)
    index.insert(1.0, 0.0, 40, "extra")

    _, keys = index.query(0.0, -1.0, 39.5, TWO_PI, 1.0, 40.5)
    assert set(keys.tolist()) == {key, "extra"}
    found = [k for k in keys.tolist() if k != "extra"]
    assert found == [key]
    assert clusters.covariance(found[0]).shape == (3, 3)
