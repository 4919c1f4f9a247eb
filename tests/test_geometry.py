import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ca_seeding.errors import GeometryConflictError, SeedingInputError
from ca_seeding.geometry import LayerGeometry


def test_sources_use_raw_or_centre_radius():
    geo = LayerGeometry.from_sources(
        pixel=[(0, 2.5, 0.1), (1, 3.5, 0.1)],
        strip=pd.DataFrame({"layer": [10], "radius": [30.0], "thickness": [1.0]}),
        readout=[(40, 50.0, 2.0)],
    )
    assert geo.radius(0) == pytest.approx(2.5)
    assert geo.radius(10) == pytest.approx(30.5)
    assert geo.radius(40) == pytest.approx(51.0)
    assert geo.layers == [0, 1, 10, 40]
    assert len(geo) == 4 and 10 in geo and 11 not in geo


def test_unknown_layer_and_dead_steps():
    geo = LayerGeometry({39: 20.0, 40: 30.0, 41: 30.0})
    assert geo.radius(38) is None
    assert geo.radius_step(40, 39) == pytest.approx(10.0)
    assert geo.radius_step(39, 38) is None
    assert geo.radius_step(41, 40) is None


def test_strict_conflict_raises():
    with pytest.raises(GeometryConflictError, match="Layer 5"):
        LayerGeometry.from_sources(pixel=[(5, 10.0, 0.0)], readout=[(5, 20.0, 0.0)])


def test_agreeing_sources_are_not_a_conflict():
    geo = LayerGeometry.from_sources(pixel=[(5, 10.0, 0.0)], strip=[(5, 9.5, 1.0)])
    assert geo.radius(5) == pytest.approx(10.0)


def test_last_policy_pixel_wins(caplog):
    with caplog.at_level("WARNING"):
        geo = LayerGeometry.from_sources(
            pixel=[(5, 10.0, 0.0)], strip=[(5, 15.0, 0.0)], readout=[(5, 20.0, 0.0)], on_conflict="last"
        )
    assert geo.radius(5) == pytest.approx(10.0)
    assert "overriding" in caplog.text


def test_empty_and_invalid_sources():
    with pytest.raises(SeedingInputError):
        LayerGeometry({})
    with pytest.raises(SeedingInputError):
        LayerGeometry.from_sources()
    with pytest.raises(SeedingInputError):
        LayerGeometry.from_sources(pixel=[(1, float("nan"), 0.0)])
    with pytest.raises(ValueError):
        LayerGeometry.from_sources(pixel=[(1, 1.0, 0.0)], on_conflict="first")


def test_ordered_by_radius_and_frame():
    geo = LayerGeometry({3: 5.0, 1: 7.0, 2: 6.0})
    assert geo.ordered_by_radius() == [3, 2, 1]
    df = geo.to_frame()
    assert df["layer"].tolist() == [1, 2, 3]
    assert df["radius"].tolist() == [7.0, 6.0, 5.0]


def test_non_numeric_source_values():
    with pytest.raises(SeedingInputError, match="strip"):
        LayerGeometry.from_sources(
            strip=pd.DataFrame({"layer": [10], "radius": ["abc"], "thickness": [1.0]})
        )
    with pytest.raises(SeedingInputError, match="pixel"):
        LayerGeometry.from_sources(pixel=[("inner", 2.5, 0.1)])
