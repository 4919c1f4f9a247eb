import logging
from typing import Iterable, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from ca_seeding.data import ClusterStore
from ca_seeding.spatial_index import SpatialIndex
from ca_seeding.track_builder import TrackRecord

logger = logging.getLogger(__name__)


def _show_and_close(fig, *, do_show: bool = True, out_path: Optional[str] = None) -> None:
    r"""
    Optionally save and show a Matplotlib figure, then always close it.

    Safe in headless mode where ``plt.show()`` may be patched to a no-op.
    """
    fig.tight_layout()
    if out_path:
        fig.savefig(out_path, dpi=120)
    if do_show:
        plt.show()
    plt.close(fig)


def plot_seeds_xy(
    clusters: ClusterStore,
    tracks: Iterable[TrackRecord],
    *,
    max_tracks: Optional[int] = None,
    show: bool = True,
    out_path: Optional[str] = None,
):
    r"""
    Transverse view of all clusters with the seed chains drawn on top.

    Each track is drawn as a polyline through its clusters in chain order
    (outer hit first), colored by charge (red :math:`+1`, blue :math:`-1`).

    Parameters
    ----------
    clusters : ClusterStore
        Event clusters.
    tracks : iterable of TrackRecord
        Seeds to overlay.
    max_tracks : int, optional
        Draw at most this many tracks.
    show : bool, optional
        Call ``plt.show()`` (default ``True``).
    out_path : str, optional
        If set, save the figure there.

    Returns
    -------
    matplotlib.figure.Figure
    """
    xyz = clusters.positions
    fig, ax = plt.subplots(figsize=(9, 9))
    ax.scatter(xyz[:, 0], xyz[:, 1], s=3, c="0.6", alpha=0.6, label="clusters")
    n = 0
    for track in tracks:
        if max_tracks is not None and n >= max_tracks:
            break
        pts = np.array([clusters.position(k) for k in track.hit_keys])
        ax.plot(pts[:, 0], pts[:, 1], "-o", ms=3, lw=1.2, color="tab:red" if track.charge > 0 else "tab:blue")
        n += 1
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.set_aspect("equal")
    ax.set_title(f"Clusters and {n} seed(s)")
    ax.grid(True, alpha=0.3)
    logger.debug("Plotted %d seeds over %d clusters", n, len(clusters))
    _show_and_close(fig, do_show=show, out_path=out_path)
    return fig


def plot_index_phi_eta(
    index: SpatialIndex,
    *,
    show: bool = True,
    out_path: Optional[str] = None,
):
    r"""
    Indexed points in the :math:`(\phi, \eta)` plane, colored by layer.

    Returns
    -------
    matplotlib.figure.Figure or None
        ``None`` when the index is empty.
    """
    df: pd.DataFrame = index.to_frame()
    if df.empty:
        logger.info("Spatial index is empty; nothing to plot.")
        return None
    fig, ax = plt.subplots(figsize=(11, 6))
    sc = ax.scatter(df["phi"], df["eta"], c=df["layer"], cmap="viridis", s=4)
    fig.colorbar(sc, ax=ax, label="layer")
    ax.set_xlim(0.0, 2.0 * np.pi)
    ax.set_xlabel(r"$\phi$")
    ax.set_ylabel(r"$\eta$")
    ax.set_title(f"Spatial index ({len(df)} points)")
    ax.grid(True, alpha=0.3)
    _show_and_close(fig, do_show=show, out_path=out_path)
    return fig
