from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Hashable, List, NamedTuple, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from ca_seeding.data import ClusterStore, Vertex
from ca_seeding.kernels import TWO_PI, wrap_phi

logger = logging.getLogger(__name__)


class IndexedPoint(NamedTuple):
    """One index entry: direction of a hit seen from the vertex, its layer and key."""

    phi: float
    eta: float
    layer: int
    key: Hashable


@dataclass(frozen=True, slots=True)
class PopulateStats:
    """Bookkeeping of one :meth:`SpatialIndex.populate` call."""

    n_input: int
    n_below_min_layer: int
    n_invalid: int
    n_duplicates: int
    n_inserted: int


def _empty_result() -> Tuple[np.ndarray, np.ndarray]:
    return np.empty((0, 3), dtype=np.float64), np.empty((0,), dtype=object)


def _as_key_array(keys: Sequence[Hashable] | np.ndarray) -> np.ndarray:
    """1-D ``object`` array holding each key unchanged (ints stay ints, tuples stay tuples)."""
    if isinstance(keys, np.ndarray) and keys.ndim == 1:
        return keys.astype(object)
    items = list(keys)
    out = np.empty(len(items), dtype=object)
    for i, k in enumerate(items):
        out[i] = k
    return out


def _ball_wrapped(tree: cKDTree, queries: np.ndarray, r: float) -> List[List[int]]:
    r"""
    Chebyshev-ball neighbours of each query row, periodic in azimuth.

    A point :math:`q_j` is a neighbour of :math:`p` when
    :math:`|\Delta\phi| \le r` (circularly) and :math:`|\Delta\eta| \le r`.
    Queries within ``r`` of the :math:`0/2\pi` seam are repeated with their
    azimuth shifted by :math:`\pm 2\pi`.
    """
    out = [list(h) for h in tree.query_ball_point(queries, r=r, p=np.inf)]
    for shift, near_seam in ((TWO_PI, queries[:, 0] < r), (-TWO_PI, queries[:, 0] > TWO_PI - r)):
        rows = np.flatnonzero(near_seam)
        if rows.size == 0:
            continue
        shifted = queries[rows].copy()
        shifted[:, 0] += shift
        for row, extra in zip(rows.tolist(), tree.query_ball_point(shifted, r=r, p=np.inf)):
            out[row].extend(extra)
    return out


class SpatialIndex:
    r"""
    Range-queryable index over (azimuth, pseudorapidity, layer).

    Layers are discrete, so the index keeps one :class:`scipy.spatial.cKDTree`
    per layer over the 2D points :math:`(\phi, \eta)` with
    :math:`\phi\in[0, 2\pi)`. A closed query box

    .. math::

        [\phi_{min}, \phi_{max}] \times [\eta_{min}, \eta_{max}] \times [l_{min}, l_{max}]

    selects every layer :math:`l` with :math:`l_{min} \le l \le l_{max}` and,
    per layer, runs a Chebyshev (:math:`p=\infty`) ball pre-select around the
    box centre followed by an exact box mask.

    Azimuth wrap-around
    -------------------
    A box with :math:`\phi_{min} < 0` additionally queries
    :math:`[2\pi + \phi_{min}, 2\pi]`, and one with :math:`\phi_{max} > 2\pi`
    additionally queries :math:`[0, \phi_{max} - 2\pi]`; all results are
    concatenated.

    Duplicate suppression
    ---------------------
    Before a point is stored, the box of half-width ``duplicate_tolerance`` in
    :math:`\phi` and :math:`\eta` (and :math:`\pm 0.5` in layer) around it is
    searched among points already stored, **including points stored earlier
    in the same batch**. Any hit discards the new point and increments
    :attr:`n_duplicates`.

    Parameters
    ----------
    duplicate_tolerance : float, optional
        Half-width of the duplicate box (default ``1e-5``).

    Notes
    -----
    Trees are rebuilt after every insertion batch, so :meth:`insert_many` (or
    :meth:`populate`) should be preferred to repeated :meth:`insert` calls for
    large inputs. The index is read-only between insertions, which makes
    concurrent queries safe.
    """

    __slots__ = ("duplicate_tolerance", "_pts", "_keys", "_trees", "_n_duplicates")

    def __init__(self, duplicate_tolerance: float = 1e-5) -> None:
        self.duplicate_tolerance = float(duplicate_tolerance)
        self._pts: Dict[int, np.ndarray] = {}
        self._keys: Dict[int, np.ndarray] = {}
        self._trees: Dict[int, cKDTree] = {}
        self._n_duplicates = 0

    # ------------------------------------------------------------------ #
    # population
    # ------------------------------------------------------------------ #
    def clear(self) -> None:
        """Remove all points and reset the duplicate counter."""
        self._pts.clear()
        self._keys.clear()
        self._trees.clear()
        self._n_duplicates = 0

    def insert(self, phi: float, eta: float, layer: int, key: Hashable) -> bool:
        """Insert one point; ``False`` if it was discarded as a duplicate."""
        return self.insert_many([phi], [eta], [layer], [key]) == 1

    def insert_many(
        self,
        phi: Sequence[float] | np.ndarray,
        eta: Sequence[float] | np.ndarray,
        layer: Sequence[int] | np.ndarray,
        keys: Sequence[Hashable] | np.ndarray,
    ) -> int:
        r"""
        Insert a batch of points through the duplicate filter.

        Points are considered in input order; the rule is exactly that of
        inserting them one at a time.

        Parameters
        ----------
        phi, eta : array_like of float
            Direction coordinates. Azimuth is wrapped into :math:`[0, 2\pi)`.
        layer : array_like of int
            Layer ids.
        keys : array_like
            Hit keys aligned with the coordinates. Keys are stored and returned
            as given, whatever their type.

        Returns
        -------
        int
            Number of points actually stored.

        Raises
        ------
        ValueError
            If the inputs have mismatched lengths.
        """
        phi_a = wrap_phi(np.atleast_1d(np.asarray(phi, dtype=np.float64)))
        eta_a = np.atleast_1d(np.asarray(eta, dtype=np.float64))
        lay_a = np.atleast_1d(np.asarray(layer, dtype=np.int64))
        key_a = _as_key_array(keys)
        n = phi_a.size
        if not (eta_a.size == lay_a.size == key_a.size == n):
            raise ValueError("phi, eta, layer and keys must have the same length.")
        if n == 0:
            return 0

        tol = self.duplicate_tolerance
        inserted = 0
        # Stable order keeps the per-layer insertion order of the batch
        order = np.argsort(lay_a, kind="mergesort")
        lay_s = lay_a[order]
        bounds = np.flatnonzero(np.r_[True, lay_s[1:] != lay_s[:-1], True])
        for a, b in zip(bounds[:-1], bounds[1:]):
            rows = order[a:b]
            lay = int(lay_s[a])
            new_pts = np.column_stack((phi_a[rows], eta_a[rows]))
            new_keys = key_a[rows]

            old_pts = self._pts.get(lay)
            old_n = 0 if old_pts is None else old_pts.shape[0]
            all_pts = new_pts if old_pts is None else np.vstack((old_pts, new_pts))
            all_keys = new_keys if old_pts is None else np.concatenate((self._keys[lay], new_keys))

            nbrs = _ball_wrapped(cKDTree(all_pts), new_pts, tol)
            keep = np.ones(all_pts.shape[0], dtype=bool)
            for j, nb in enumerate(nbrs):
                jj = old_n + j
                if any(keep[i] for i in nb if i < jj):
                    keep[jj] = False

            n_kept = int(keep[old_n:].sum())
            self._n_duplicates += (b - a) - n_kept
            inserted += n_kept
            if n_kept == 0:
                continue
            pts = np.ascontiguousarray(all_pts[keep])
            self._pts[lay] = pts
            self._keys[lay] = all_keys[keep]
            self._trees[lay] = cKDTree(pts, balanced_tree=True, compact_nodes=True)
        return inserted

    def populate(self, clusters: ClusterStore, vertex: Vertex, min_layer: int) -> PopulateStats:
        r"""
        Index one event's clusters as seen from ``vertex``.

        For the relative position :math:`(x, y, z)` of each cluster,

        .. math::

            \phi = \operatorname{atan2}(y, x) \bmod 2\pi, \qquad
            \eta = \operatorname{asinh}\!\left(z / \sqrt{x^2+y^2}\right).

        Clusters on layers below ``min_layer`` are skipped; clusters with a
        non-finite direction (on the beam axis through the vertex) are dropped
        with a warning. Insertion happens in cluster-key order.

        Returns
        -------
        PopulateStats
        """
        rel = clusters.positions - vertex.as_array()
        layers = clusters.layers
        rho = np.hypot(rel[:, 0], rel[:, 1])
        with np.errstate(divide="ignore", invalid="ignore"):
            phi = wrap_phi(np.arctan2(rel[:, 1], rel[:, 0]))
            eta = np.arcsinh(rel[:, 2] / rho)

        in_range = layers >= int(min_layer)
        valid = np.isfinite(phi) & np.isfinite(eta) & (rho > 0.0)
        n_invalid = int((in_range & ~valid).sum())
        if n_invalid:
            logger.warning("Dropped %d clusters with undefined direction from the vertex", n_invalid)

        sel = in_range & valid
        before = self._n_duplicates
        n_inserted = self.insert_many(phi[sel], eta[sel], layers[sel], clusters.keys[sel])
        stats = PopulateStats(
            n_input=len(clusters),
            n_below_min_layer=int((~in_range).sum()),
            n_invalid=n_invalid,
            n_duplicates=self._n_duplicates - before,
            n_inserted=n_inserted,
        )
        logger.info(
            "Indexed %d/%d clusters (%d duplicates, %d below layer %d)",
            stats.n_inserted, stats.n_input, stats.n_duplicates, stats.n_below_min_layer, min_layer,
        )
        return stats

    # ------------------------------------------------------------------ #
    # queries
    # ------------------------------------------------------------------ #
    def _box(self, layer: int, phimin: float, phimax: float, etamin: float, etamax: float) -> np.ndarray:
        if phimax < phimin or etamax < etamin:
            return np.empty((0,), dtype=np.intp)
        pts = self._pts[layer]
        centre = ((phimin + phimax) * 0.5, (etamin + etamax) * 0.5)
        half = max(phimax - phimin, etamax - etamin) * 0.5
        # slack covers rounding of the centre; the exact mask below decides
        idx = self._trees[layer].query_ball_point(centre, r=half * (1.0 + 1e-9) + 1e-15, p=np.inf,
                                                  return_sorted=True)
        if not idx:
            return np.empty((0,), dtype=np.intp)
        idx = np.asarray(idx, dtype=np.intp)
        sel = pts[idx]
        mask = (sel[:, 0] >= phimin) & (sel[:, 0] <= phimax) & (sel[:, 1] >= etamin) & (sel[:, 1] <= etamax)
        return idx[mask]

    def _query_layer(self, layer: int, phimin: float, etamin: float, phimax: float, etamax: float) -> np.ndarray:
        parts = [self._box(layer, phimin, phimax, etamin, etamax)]
        if phimin < 0.0:
            parts.append(self._box(layer, TWO_PI + phimin, TWO_PI, etamin, etamax))
        if phimax > TWO_PI:
            parts.append(self._box(layer, 0.0, phimax - TWO_PI, etamin, etamax))
        return np.concatenate(parts)

    def query(
        self,
        phimin: float,
        etamin: float,
        lmin: float,
        phimax: float,
        etamax: float,
        lmax: float,
    ) -> Tuple[np.ndarray, np.ndarray]:
        r"""
        All points inside a closed box, with azimuth wrap-around.

        Parameters
        ----------
        phimin, etamin, lmin : float
            Lower box corner.
        phimax, etamax, lmax : float
            Upper box corner.

        Returns
        -------
        coords : ndarray, shape (M, 3)
            ``(phi, eta, layer)`` of each match, grouped by ascending layer.
        keys : ndarray, shape (M,)
            ``object`` array of hit keys aligned with ``coords``.

        Notes
        -----
        A point may in principle be returned twice by the wrap split; callers
        only rely on existence and nearest-match semantics.
        """
        coords: List[np.ndarray] = []
        keys: List[np.ndarray] = []
        for layer in sorted(self._pts):
            if layer < lmin or layer > lmax:
                continue
            idx = self._query_layer(layer, phimin, etamin, phimax, etamax)
            if idx.size == 0:
                continue
            pts = self._pts[layer][idx]
            coords.append(np.column_stack((pts, np.full(idx.size, float(layer)))))
            keys.append(self._keys[layer][idx])
        if not coords:
            return _empty_result()
        return np.vstack(coords), np.concatenate(keys)

    def query_points(
        self,
        phimin: float,
        etamin: float,
        lmin: float,
        phimax: float,
        etamax: float,
        lmax: float,
    ) -> List[IndexedPoint]:
        """:meth:`query` as a list of :class:`IndexedPoint`."""
        coords, keys = self.query(phimin, etamin, lmin, phimax, etamax, lmax)
        return [
            IndexedPoint(float(c[0]), float(c[1]), int(c[2]), k)
            for c, k in zip(coords, keys.tolist())
        ]

    # ------------------------------------------------------------------ #
    # introspection
    # ------------------------------------------------------------------ #
    @property
    def n_duplicates(self) -> int:
        """Points discarded by the duplicate filter since the last :meth:`clear`."""
        return self._n_duplicates

    @property
    def layers(self) -> List[int]:
        return sorted(self._pts)

    def layer_size(self, layer: int) -> int:
        pts = self._pts.get(int(layer))
        return 0 if pts is None else int(pts.shape[0])

    def __len__(self) -> int:
        return sum(p.shape[0] for p in self._pts.values())

    def to_frame(self) -> pd.DataFrame:
        """All stored points as a ``phi, eta, layer, key`` frame (by layer, then insertion)."""
        if not self._pts:
            return pd.DataFrame({"phi": [], "eta": [], "layer": [], "key": []})
        layers = self.layers
        pts = np.vstack([self._pts[l] for l in layers])
        return pd.DataFrame(
            {
                "phi": pts[:, 0],
                "eta": pts[:, 1],
                "layer": np.concatenate([np.full(self._pts[l].shape[0], l, dtype=np.int64) for l in layers]),
                "key": np.concatenate([self._keys[l] for l in layers]),
            }
        )
