from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Hashable, Optional, Tuple

import numpy as np
import pandas as pd

from ca_seeding.errors import SeedingInputError
from ca_seeding.geometry import LayerGeometry
from ca_seeding.keys import layers_from_keys

logger = logging.getLogger(__name__)

COV_COLUMNS: Tuple[str, ...] = ("cov_xx", "cov_xy", "cov_xz", "cov_yy", "cov_yz", "cov_zz")

# (row, col) of each COV_COLUMNS entry in the symmetric 3x3 block
_COV_INDEX: Tuple[Tuple[int, int], ...] = ((0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2))

GEOMETRY_FILES: Dict[str, str] = {
    "pixel": "geometry_pixel.csv",
    "strip": "geometry_strip.csv",
    "readout": "geometry_readout.csv",
}


@dataclass(frozen=True, slots=True)
class Vertex:
    """Reference point (event vertex) from which hit directions are measured."""

    x: float
    y: float
    z: float

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "Vertex":
        r"""
        Read the first row of a ``x, y, z`` frame.

        Raises
        ------
        SeedingInputError
            If the frame is empty, lacks columns, or holds non-numeric or
            non-finite values.
        """
        if df.empty or not {"x", "y", "z"} <= set(df.columns):
            raise SeedingInputError("Vertex table must have one row with columns x, y, z")
        if len(df) > 1:
            logger.warning("Vertex table has %d rows; using the first one", len(df))
        row = df.iloc[0]
        try:
            v = cls(float(row["x"]), float(row["y"]), float(row["z"]))
        except (TypeError, ValueError) as e:
            raise SeedingInputError(f"Vertex is not numeric: {e}") from e
        if not np.isfinite(v.as_array()).all():
            raise SeedingInputError(f"Vertex is not finite: {v}")
        return v


class ClusterStore:
    r"""
    Read-only, key-addressable view of one event's clusters.

    Wraps a :class:`pandas.DataFrame` with columns ``key, x, y, z`` and,
    optionally, ``layer`` and the six unique covariance entries
    ``cov_xx, cov_xy, cov_xz, cov_yy, cov_yz, cov_zz``. The input frame is
    never mutated; coordinates are materialized once into contiguous
    ``float64`` arrays, rows are ordered by key so that iteration order (and
    therefore duplicate resolution in the spatial index) is deterministic.

    Missing ``layer`` is derived from the key with
    :func:`ca_seeding.keys.layers_from_keys`. Missing covariance columns are
    filled with zeros (a warning is logged).

    Parameters
    ----------
    clusters : pandas.DataFrame
        Cluster table.

    Raises
    ------
    SeedingInputError
        If the table is ``None``, lacks ``key/x/y/z``, holds duplicate keys or
        non-numeric coordinates.
    """

    __slots__ = ("_keys", "_layers", "_xyz", "_cov", "_row_of_key")

    def __init__(self, clusters: Optional[pd.DataFrame]) -> None:
        if clusters is None:
            raise SeedingInputError("No cluster table provided")
        missing = [c for c in ("key", "x", "y", "z") if c not in clusters.columns]
        if missing:
            raise SeedingInputError(f"Cluster table is missing column(s): {', '.join(missing)}")

        df = clusters.sort_values("key", kind="mergesort")
        keys = df["key"].to_numpy(copy=True)
        if pd.Index(keys).has_duplicates:
            raise SeedingInputError("Cluster keys must be unique")

        try:
            if "layer" in df.columns:
                layers = df["layer"].to_numpy(dtype=np.int64, copy=True)
            else:
                layers = layers_from_keys(keys)
            xyz = np.ascontiguousarray(df[["x", "y", "z"]].to_numpy(dtype=np.float64))
            cov_cols = {name: df[name].to_numpy(dtype=np.float64) for name in COV_COLUMNS if name in df.columns}
        except (TypeError, ValueError) as e:
            raise SeedingInputError(f"Cluster table has non-numeric values: {e}") from e

        cov = np.zeros((len(df), 3, 3), dtype=np.float64)
        present = [c for c in COV_COLUMNS if c in cov_cols]
        if len(present) < len(COV_COLUMNS) and len(df):
            logger.warning(
                "Cluster table lacks covariance column(s) %s; using zeros",
                ", ".join(c for c in COV_COLUMNS if c not in present),
            )
        for name, (i, j) in zip(COV_COLUMNS, _COV_INDEX):
            vals = cov_cols.get(name)
            if vals is None:
                continue
            cov[:, i, j] = vals
            cov[:, j, i] = vals

        self._keys = keys
        self._layers = layers
        self._xyz = xyz
        self._cov = cov
        self._row_of_key: Dict[Hashable, int] = {k: i for i, k in enumerate(keys.tolist())}

    @property
    def keys(self) -> np.ndarray:
        return self._keys

    @property
    def layers(self) -> np.ndarray:
        return self._layers

    @property
    def positions(self) -> np.ndarray:
        """``(N, 3)`` cluster positions."""
        return self._xyz

    def position(self, key: Hashable) -> np.ndarray:
        return self._xyz[self._row(key)].copy()

    def covariance(self, key: Hashable) -> np.ndarray:
        """``(3, 3)`` symmetric position covariance of one cluster."""
        return self._cov[self._row(key)].copy()

    def layer(self, key: Hashable) -> int:
        return int(self._layers[self._row(key)])

    def _row(self, key: Hashable) -> int:
        try:
            return self._row_of_key[key]
        except KeyError:
            raise KeyError(f"Unknown cluster key: {key!r}") from None

    def __contains__(self, key: object) -> bool:
        return key in self._row_of_key

    def __len__(self) -> int:
        return int(self._keys.size)

    def to_frame(self) -> pd.DataFrame:
        """Cluster table in the canonical column layout."""
        out = pd.DataFrame(
            {
                "key": self._keys,
                "layer": self._layers,
                "x": self._xyz[:, 0],
                "y": self._xyz[:, 1],
                "z": self._xyz[:, 2],
            }
        )
        for name, (i, j) in zip(COV_COLUMNS, _COV_INDEX):
            out[name] = self._cov[:, i, j]
        return out


def load_event(event_dir: Path | str) -> Tuple[ClusterStore, LayerGeometry, Vertex]:
    r"""
    Load one event from a directory of CSV files.

    Expected files
    --------------
    - ``clusters.csv``: ``key, [layer,] x, y, z, [cov_xx, cov_xy, cov_xz, cov_yy, cov_yz, cov_zz]``
    - ``vertex.csv``: ``x, y, z`` (first row used)
    - at least one of ``geometry_pixel.csv``, ``geometry_strip.csv``,
      ``geometry_readout.csv`` with columns ``layer, radius, thickness``

    Parameters
    ----------
    event_dir : path-like
        Event directory.

    Returns
    -------
    clusters : ClusterStore
    geometry : LayerGeometry
    vertex : Vertex

    Raises
    ------
    SeedingInputError
        If a required file is missing or malformed.
    """
    root = Path(event_dir)
    clusters_path = root / "clusters.csv"
    vertex_path = root / "vertex.csv"
    for p in (clusters_path, vertex_path):
        if not p.is_file():
            raise SeedingInputError(f"Missing event file: {p}")

    sources: Dict[str, pd.DataFrame] = {}
    for name, fname in GEOMETRY_FILES.items():
        p = root / fname
        if p.is_file():
            sources[name] = pd.read_csv(p)
    if not sources:
        raise SeedingInputError(f"No geometry files in {root}")

    try:
        geometry = LayerGeometry.from_sources(**sources)
    except KeyError as e:
        raise SeedingInputError(str(e)) from e
    clusters = ClusterStore(pd.read_csv(clusters_path))
    vertex = Vertex.from_frame(pd.read_csv(vertex_path))

    logger.info(
        "Loaded event %s: %d clusters, %d layers, vertex=(%.4g, %.4g, %.4g)",
        root.name, len(clusters), len(geometry), vertex.x, vertex.y, vertex.z,
    )
    return clusters, geometry, vertex


def write_event(
    event_dir: Path | str,
    clusters: ClusterStore,
    geometry: LayerGeometry,
    vertex: Vertex,
) -> Path:
    r"""
    Write an event in the layout read by :func:`load_event`.

    The geometry is written as a single pixel-type source so that the radii
    read back are identical to ``geometry``.
    """
    root = Path(event_dir)
    root.mkdir(parents=True, exist_ok=True)
    clusters.to_frame().to_csv(root / "clusters.csv", index=False)
    pd.DataFrame({"x": [vertex.x], "y": [vertex.y], "z": [vertex.z]}).to_csv(
        root / "vertex.csv", index=False
    )
    geo = geometry.to_frame()
    geo["thickness"] = 0.0
    geo.to_csv(root / GEOMETRY_FILES["pixel"], index=False)
    return root
