from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Hashable, List, Optional

import numpy as np

from ca_seeding.config import SeedingConfig
from ca_seeding.geometry import LayerGeometry
from ca_seeding.kernels import best_candidate, curvature_from_slope, phi_diff_scalar
from ca_seeding.spatial_index import IndexedPoint, SpatialIndex

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Chain:
    r"""
    Ordered hit chain grown from a seed pair.

    The first two entries are the seed pair (outer hit first); each further
    entry comes from one successful extension step on a lower layer. The
    per-step lists are parallel and hold one value per *segment*, so they are
    one shorter than :attr:`keys`.

    Attributes
    ----------
    keys : list
        Hit keys, start layer first.
    layers : list of int
        Layer of each key, strictly decreasing.
    curvatures : list of float
        Signed local curvature :math:`\kappa` of each segment.
    phi_slopes : list of float
        :math:`d\phi/dr` of each segment.
    eta_slopes : list of float
        :math:`d\eta/dr` of each segment.
    start_phi, start_eta : float
        Direction of the outer seed hit.
    failures : int
        Number of layer steps that produced no hit.
    """

    keys: List[Hashable]
    layers: List[int]
    curvatures: List[float]
    phi_slopes: List[float]
    eta_slopes: List[float]
    start_phi: float
    start_eta: float
    failures: int = 0

    def append(self, key: Hashable, layer: int, curvature: float, dphidr: float, detadr: float) -> None:
        """Add one accepted extension hit and its segment estimates."""
        self.keys.append(key)
        self.layers.append(int(layer))
        self.curvatures.append(float(curvature))
        self.phi_slopes.append(float(dphidr))
        self.eta_slopes.append(float(detadr))

    def __len__(self) -> int:
        return len(self.keys)


class SeedExtender:
    r"""
    Grow a two-hit seed inward, one layer at a time.

    The trajectory is modelled locally as linear in :math:`(\phi, r)` and
    :math:`(\eta, r)`. From the seed pair on layers :math:`L` and
    :math:`L-1` with radii :math:`r_L, r_{L-1}`:

    .. math::

        \frac{d\phi}{dr} = \frac{\Delta\phi(\phi_O, \phi_I)}{r_L - r_{L-1}}, \qquad
        \frac{d\eta}{dr} = \frac{\eta_O - \eta_I}{r_L - r_{L-1}}, \qquad
        \kappa = \operatorname{sign}\!\left(\frac{d\phi}{dr}\right)
                 \frac{2}{\sqrt{\bar r^2 + (d\phi/dr)^{-2}}},

    with :math:`\bar r` the mean radius of the two layers and :math:`\Delta\phi`
    the circular difference in :math:`(-\pi, \pi]`.

    Each step on a new layer :math:`n` predicts

    .. math::

        \phi_{pred} = \phi_{cur} - \frac{d\phi}{dr}\,(r_{last} - r_n)

    and queries the box :math:`\phi_{pred} \pm \delta_\phi`,
    :math:`\eta_{cur} \pm \delta_\eta`, :math:`n \pm 0.5`. The best hit
    minimizes :math:`|\Delta\phi(\phi_j, \phi_{pred})| + |\eta_j - \eta_{cur}|`;
    slopes and curvature are re-estimated over the segment from the last
    accepted layer, :math:`\phi_{cur}` moves to the hit and :math:`\eta_{cur}`
    moves halfway towards it. On these steps :math:`\bar r` is half the radial
    distance travelled, :math:`(r_{last} - r_n)/2`, unless
    ``step_curvature_radius="midpoint"`` selects the mean radius.

    Every step without a usable hit counts as a failure (an empty window, a
    layer without radius, or a hit giving a zero azimuth slope). Failures are
    cumulative over the chain; once they exceed ``max_failures`` the chain is
    abandoned and rejected.

    Parameters
    ----------
    index : SpatialIndex
        Populated index of the event.
    geometry : LayerGeometry
        Layer radii.
    config : SeedingConfig
        Tolerances and policy constants.
    """

    __slots__ = ("index", "geometry", "config")

    def __init__(self, index: SpatialIndex, geometry: LayerGeometry, config: SeedingConfig) -> None:
        self.index = index
        self.geometry = geometry
        self.config = config

    def _mid_radius(self, outer: int, inner: int) -> float:
        return 0.5 * (self.geometry.radius(outer) + self.geometry.radius(inner))

    def _step_radius(self, last_layer: int, new_layer: int, step_dr: float) -> float:
        if self.config.step_curvature_radius == "midpoint":
            return self._mid_radius(last_layer, new_layer)
        return 0.5 * step_dr

    def extend(self, outer: IndexedPoint, inner: IndexedPoint) -> Optional[Chain]:
        r"""
        Run the extension for one seed pair.

        Parameters
        ----------
        outer : IndexedPoint
            Seed hit on the start layer.
        inner : IndexedPoint
            Seed hit on the layer below.

        Returns
        -------
        Chain or None
            The finished chain, or ``None`` if the pair carries no usable slope
            or the chain collected more than ``max_failures`` failures.
        """
        cfg = self.config
        dr = self.geometry.radius_step(outer.layer, inner.layer)
        if dr is None:
            logger.debug("Seed pair on layers %d/%d has no radial lever arm", outer.layer, inner.layer)
            return None

        dphidr = phi_diff_scalar(outer.phi, inner.phi) / dr
        if dphidr == 0.0:
            logger.debug("Seed pair %r/%r has zero azimuth slope; dropped", outer.key, inner.key)
            return None
        detadr = (outer.eta - inner.eta) / dr
        kappa = curvature_from_slope(dphidr, self._mid_radius(outer.layer, inner.layer))

        chain = Chain(
            keys=[outer.key, inner.key],
            layers=[int(outer.layer), int(inner.layer)],
            curvatures=[kappa],
            phi_slopes=[dphidr],
            eta_slopes=[detadr],
            start_phi=float(outer.phi),
            start_eta=float(outer.eta),
        )
        logger.debug(
            "Seed pair phi=(%.5f, %.5f) eta=(%.5f, %.5f) dphi/dr=%.4g deta/dr=%.4g",
            outer.phi, inner.phi, outer.eta, inner.eta, dphidr, detadr,
        )

        current_phi = float(inner.phi)
        current_eta = float(inner.eta)
        last_layer = int(inner.layer)
        failures = 0
        dphi = cfg.step_phi_window
        deta = cfg.step_eta_window

        for step in range(cfg.max_extension_steps):
            new_layer = int(inner.layer) - 1 - step
            accepted = False
            step_dr = self.geometry.radius_step(last_layer, new_layer)
            if step_dr is not None:
                pred_phi = current_phi - dphidr * step_dr
                coords, keys = self.index.query(
                    pred_phi - dphi, current_eta - deta, new_layer - 0.5,
                    pred_phi + dphi, current_eta + deta, new_layer + 0.5,
                )
                if keys.size:
                    j, dist = best_candidate(
                        np.ascontiguousarray(coords[:, 0]),
                        np.ascontiguousarray(coords[:, 1]),
                        pred_phi,
                        current_eta,
                    )
                    cand_phi = float(coords[j, 0])
                    cand_eta = float(coords[j, 1])
                    new_dphidr = phi_diff_scalar(current_phi, cand_phi) / step_dr
                    if new_dphidr != 0.0:
                        dphidr = new_dphidr
                        detadr = (current_eta - cand_eta) / step_dr
                        kappa = curvature_from_slope(dphidr, self._step_radius(last_layer, new_layer, step_dr))
                        chain.append(keys[j], new_layer, kappa, dphidr, detadr)
                        logger.debug(
                            "Layer %d: %d candidate(s), picked phi=%.5f eta=%.5f dist=%.3g",
                            new_layer, keys.size, cand_phi, cand_eta, dist,
                        )
                        current_phi = cand_phi
                        current_eta = 0.5 * (current_eta + cand_eta)
                        last_layer = new_layer
                        accepted = True
                    else:
                        logger.debug("Layer %d: zero azimuth slope, candidate dropped", new_layer)

            if not accepted:
                failures += 1
                if failures > cfg.max_failures:
                    break

        chain.failures = failures
        if failures > cfg.max_failures:
            logger.debug("Chain from %r rejected after %d failures", outer.key, failures)
            return None
        return chain
