from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Hashable, Iterable, List, Optional

import numpy as np

from ca_seeding.config import SeedingConfig
from ca_seeding.data import ClusterStore, Vertex
from ca_seeding.extender import Chain

logger = logging.getLogger(__name__)


class RunningStats:
    r"""
    Single-pass mean / sample standard deviation accumulator.

    Uses Welford's update on :math:`(n, \mu, M_2)`:

    .. math::

        \mu_n = \mu_{n-1} + \frac{x_n-\mu_{n-1}}{n}, \qquad
        M_{2,n} = M_{2,n-1} + (x_n-\mu_{n-1})(x_n-\mu_n),

    with :math:`s = \sqrt{M_2/(n-1)}` (``nan`` for :math:`n<2`).
    """

    __slots__ = ("n", "_mean", "_m2")

    def __init__(self, values: Iterable[float] = ()) -> None:
        self.n = 0
        self._mean = 0.0
        self._m2 = 0.0
        for v in values:
            self.push(v)

    def push(self, x: float) -> None:
        self.n += 1
        delta = float(x) - self._mean
        self._mean += delta / self.n
        self._m2 += delta * (float(x) - self._mean)

    @property
    def mean(self) -> float:
        return self._mean if self.n else math.nan

    @property
    def std(self) -> float:
        if self.n < 2:
            return math.nan
        return math.sqrt(max(self._m2, 0.0) / (self.n - 1))


@dataclass(frozen=True, slots=True)
class ChainStatistics:
    r"""
    Spread of the propagated estimates along one chain.

    ``pt`` and ``pt_error`` follow from the curvature statistics:

    .. math::

        p_T = \frac{BQ}{|\bar\kappa|}, \qquad
        \sigma_{p_T} = \frac{BQ\,\sigma_\kappa}{\bar\kappa^2}.
    """

    n_hits: int
    curvature_mean: float
    curvature_std: float
    phi_slope_mean: float
    phi_slope_std: float
    eta_slope_mean: float
    eta_slope_std: float
    pt: float
    pt_error: float


@dataclass(slots=True)
class TrackRecord:
    r"""
    Seed track handed to the output sink.

    Attributes
    ----------
    id : int
        Sequential id within the event (``-1`` until assigned).
    hit_keys : list
        Cluster keys, outer hit first.
    charge : int
        :math:`\pm 1`.
    momentum : ndarray, shape (3,)
        :math:`(p_x, p_y, p_z)` in GeV.
    position : ndarray, shape (3,)
        Reference point (the event vertex).
    covariance : ndarray, shape (6, 6)
        Symmetric error block over :math:`(x, y, z, p_x, p_y, p_z)`.
    ndf : int
        :math:`2\,n_{hits} - 5`.
    stats : ChainStatistics
        Estimates from which the record was built.
    """

    hit_keys: List[Hashable]
    charge: int
    momentum: np.ndarray
    position: np.ndarray
    covariance: np.ndarray
    ndf: int
    stats: ChainStatistics
    id: int = -1
    layers: List[int] = field(default_factory=list)

    @property
    def pt(self) -> float:
        return float(np.hypot(self.momentum[0], self.momentum[1]))

    @property
    def n_hits(self) -> int:
        return len(self.hit_keys)


class TrackBuilder:
    r"""
    Turn accepted chains into :class:`TrackRecord` objects.

    Kinematics
    ----------
    With start direction :math:`(\phi_0, \eta_0)` of the outer seed hit,
    polar angle :math:`\theta = 2\arctan e^{-\eta_0}` and mean curvature
    :math:`\bar\kappa`:

    .. math::

        \vec p = \left(p_T\cos\phi_0,\; p_T\sin\phi_0,\; p_T/\tan\theta\right).

    The helicity is :math:`h=-1` if :math:`\phi_0\,\bar\kappa < 0` and
    :math:`h=+1` otherwise; the charge is :math:`q=-h`.

    Error model
    -----------
    The upper-left :math:`3\times3` block is the outer hit's position
    covariance; the momentum diagonal is
    :math:`\sigma_{p_T}^2\cos^2\phi_0`, :math:`\sigma_{p_T}^2\sin^2\phi_0`,
    :math:`\sigma_{p_T}^2/\tan^2\theta`. All other entries are zero.

    Parameters
    ----------
    config : SeedingConfig
        Supplies ``pt_constant``, ``min_hits`` and ``max_relative_pt_error``.
    """

    __slots__ = ("config",)

    def __init__(self, config: SeedingConfig) -> None:
        self.config = config

    def statistics(self, chain: Chain) -> ChainStatistics:
        """Means and sample standard deviations of the chain's per-segment estimates."""
        curv = RunningStats(chain.curvatures)
        phi = RunningStats(chain.phi_slopes)
        eta = RunningStats(chain.eta_slopes)
        bq = self.config.pt_constant
        k_mean = curv.mean
        if k_mean == 0.0 or not math.isfinite(k_mean):
            pt = math.inf
            pt_error = math.nan
        else:
            pt = bq / abs(k_mean)
            pt_error = bq * curv.std / (k_mean * k_mean)
        return ChainStatistics(
            n_hits=len(chain),
            curvature_mean=k_mean,
            curvature_std=curv.std,
            phi_slope_mean=phi.mean,
            phi_slope_std=phi.std,
            eta_slope_mean=eta.mean,
            eta_slope_std=eta.std,
            pt=pt,
            pt_error=pt_error,
        )

    def build(self, chain: Chain, vertex: Vertex, clusters: ClusterStore) -> Optional[TrackRecord]:
        r"""
        Build one track record.

        Parameters
        ----------
        chain : Chain
            Accepted chain from :class:`~ca_seeding.extender.SeedExtender`.
        vertex : Vertex
            Event vertex; becomes the track reference position.
        clusters : ClusterStore
            Source of the outer hit's position covariance.

        Returns
        -------
        TrackRecord or None
            ``None`` if the chain is shorter than ``min_hits``, has no finite
            curvature, or exceeds ``max_relative_pt_error``.
        """
        cfg = self.config
        if len(chain) < cfg.min_hits:
            logger.debug("Chain with %d hits below min_hits=%d", len(chain), cfg.min_hits)
            return None

        stats = self.statistics(chain)
        if not math.isfinite(stats.pt):
            logger.debug("Chain from %r has no curvature signal", chain.keys[0])
            return None
        if cfg.max_relative_pt_error is not None and stats.pt_error > cfg.max_relative_pt_error * stats.pt:
            logger.debug(
                "Chain from %r rejected: pt=%.3g +- %.3g", chain.keys[0], stats.pt, stats.pt_error
            )
            return None

        phi0 = chain.start_phi
        helicity = -1 if phi0 * stats.curvature_mean < 0.0 else 1
        charge = -helicity

        pt = stats.pt
        cos_p, sin_p = math.cos(phi0), math.sin(phi0)
        tan_theta = math.tan(2.0 * math.atan(math.exp(-chain.start_eta)))
        momentum = np.array([pt * cos_p, pt * sin_p, pt / tan_theta], dtype=np.float64)

        cov = np.zeros((6, 6), dtype=np.float64)
        cov[:3, :3] = clusters.covariance(chain.keys[0])
        dpt2 = stats.pt_error * stats.pt_error
        cov[3, 3] = dpt2 * cos_p * cos_p
        cov[4, 4] = dpt2 * sin_p * sin_p
        cov[5, 5] = dpt2 / (tan_theta * tan_theta)

        return TrackRecord(
            hit_keys=list(chain.keys),
            charge=charge,
            momentum=momentum,
            position=vertex.as_array(),
            covariance=cov,
            ndf=2 * len(chain) - 5,
            stats=stats,
            layers=list(chain.layers),
        )
