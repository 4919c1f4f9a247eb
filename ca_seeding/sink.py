from __future__ import annotations

import abc
from typing import Iterator, List

import numpy as np
import pandas as pd

from ca_seeding.track_builder import TrackRecord


class TrackSink(abc.ABC):
    """Destination of finished track records; assigns each one an identifier."""

    @abc.abstractmethod
    def insert(self, track: TrackRecord) -> int:
        """Take ownership of ``track`` and return the sink's identifier for it."""

    def extend(self, tracks: List[TrackRecord]) -> List[int]:
        return [self.insert(t) for t in tracks]


class TrackCollection(TrackSink):
    r"""
    In-memory track sink.

    The identifier of a track is its position in the collection. Tabular
    exports:

    - :meth:`to_frame`: one row per track (kinematics, covariance diagonal,
      chain statistics, hit keys as a list column);
    - :meth:`hits_frame`: one row per ``(track_id, hit_key)`` pair, in chain order.
    """

    __slots__ = ("_tracks",)

    def __init__(self) -> None:
        self._tracks: List[TrackRecord] = []

    def insert(self, track: TrackRecord) -> int:
        self._tracks.append(track)
        return len(self._tracks) - 1

    def clear(self) -> None:
        self._tracks.clear()

    def __len__(self) -> int:
        return len(self._tracks)

    def __iter__(self) -> Iterator[TrackRecord]:
        return iter(self._tracks)

    def __getitem__(self, i: int) -> TrackRecord:
        return self._tracks[i]

    def to_frame(self) -> pd.DataFrame:
        cols = [
            "track_id", "n_hits", "charge", "px", "py", "pz", "pt", "pt_error",
            "x", "y", "z", "sigma_x", "sigma_y", "sigma_z", "sigma_px", "sigma_py", "sigma_pz",
            "curvature_mean", "curvature_std", "phi_slope_mean", "phi_slope_std",
            "eta_slope_mean", "eta_slope_std", "ndf", "hit_keys",
        ]
        rows = []
        for t in self._tracks:
            sig = np.sqrt(np.clip(np.diag(t.covariance), 0.0, None))
            s = t.stats
            rows.append(
                {
                    "track_id": t.id,
                    "n_hits": t.n_hits,
                    "charge": t.charge,
                    "px": t.momentum[0], "py": t.momentum[1], "pz": t.momentum[2],
                    "pt": s.pt, "pt_error": s.pt_error,
                    "x": t.position[0], "y": t.position[1], "z": t.position[2],
                    "sigma_x": sig[0], "sigma_y": sig[1], "sigma_z": sig[2],
                    "sigma_px": sig[3], "sigma_py": sig[4], "sigma_pz": sig[5],
                    "curvature_mean": s.curvature_mean, "curvature_std": s.curvature_std,
                    "phi_slope_mean": s.phi_slope_mean, "phi_slope_std": s.phi_slope_std,
                    "eta_slope_mean": s.eta_slope_mean, "eta_slope_std": s.eta_slope_std,
                    "ndf": t.ndf,
                    "hit_keys": list(t.hit_keys),
                }
            )
        return pd.DataFrame.from_records(rows, columns=cols)

    def hits_frame(self) -> pd.DataFrame:
        track_ids = [t.id for t in self._tracks for _ in t.hit_keys]
        keys = [k for t in self._tracks for k in t.hit_keys]
        order = [i for t in self._tracks for i in range(t.n_hits)]
        return pd.DataFrame({"track_id": track_ids, "hit_key": keys, "hit_index": order})
