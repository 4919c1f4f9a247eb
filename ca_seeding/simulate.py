from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ca_seeding.config import PT_PER_TESLA_METER, SeedingConfig
from ca_seeding.data import COV_COLUMNS, ClusterStore, Vertex
from ca_seeding.geometry import LayerGeometry
from ca_seeding.keys import make_cluster_key

logger = logging.getLogger(__name__)


def evenly_spaced_geometry(
    first_layer: int = 39,
    n_layers: int = 7,
    r_min: float = 20.0,
    r_max: float = 90.0,
) -> LayerGeometry:
    """Layers ``first_layer .. first_layer+n_layers-1`` at evenly spaced radii."""
    radii = np.linspace(r_min, r_max, n_layers)
    return LayerGeometry({first_layer + i: float(r) for i, r in enumerate(radii)})


def helix_points(
    radii: Sequence[float] | np.ndarray,
    *,
    pt: float,
    charge: int,
    phi0: float,
    eta: float,
    b_field: float,
    length_scale: float,
    origin: Sequence[float] = (0.0, 0.0, 0.0),
) -> np.ndarray:
    r"""
    Points where a helix from ``origin`` crosses cylinders of the given radii.

    The transverse radius of curvature (in input length units) is

    .. math::

        R = \frac{p_T}{0.299792458\,B\,s}.

    For a chord of length :math:`r` from the origin the half turning angle is
    :math:`\alpha/2 = \arcsin(r/2R)`, so with initial azimuth :math:`\phi_0`

    .. math::

        \phi(r) = \phi_0 - q \arcsin\frac{r}{2R}, \qquad
        z(r) = 2R \arcsin\frac{r}{2R}\,\sinh\eta .

    A positive charge in a field along :math:`+z` bends clockwise.

    Parameters
    ----------
    radii : array_like
        Cylinder radii; each must be below :math:`2R`.
    pt : float
        Transverse momentum in GeV.
    charge : int
        :math:`\pm 1`.
    phi0 : float
        Initial azimuth of the momentum.
    eta : float
        Pseudorapidity of the momentum.
    b_field : float
        Field in Tesla.
    length_scale : float
        Meters per length unit.
    origin : sequence of float, optional
        Production point.

    Returns
    -------
    ndarray, shape (N, 3)

    Raises
    ------
    ValueError
        If the helix does not reach the outermost radius.
    """
    r = np.asarray(radii, dtype=np.float64)
    big_r = pt / (PT_PER_TESLA_METER * b_field * length_scale)
    if (r >= 2.0 * big_r).any():
        raise ValueError(f"Helix with R={big_r:.4g} does not reach radius {r.max():.4g}")
    half_turn = np.arcsin(r / (2.0 * big_r))
    phi = phi0 - np.sign(charge) * half_turn
    z = 2.0 * big_r * half_turn * np.sinh(eta)
    ox, oy, oz = (float(v) for v in origin)
    return np.column_stack((ox + r * np.cos(phi), oy + r * np.sin(phi), oz + z))


def make_event(
    geometry: LayerGeometry,
    n_tracks: int = 10,
    *,
    config: Optional[SeedingConfig] = None,
    rng: Optional[np.random.Generator] = None,
    pt_range: Tuple[float, float] = (0.5, 5.0),
    eta_range: Tuple[float, float] = (-1.0, 1.0),
    vertex: Optional[Vertex] = None,
    noise_hits_per_layer: int = 0,
    position_sigma: float = 0.0,
    layers: Optional[Sequence[int]] = None,
) -> Tuple[ClusterStore, Vertex, pd.DataFrame]:
    r"""
    Generate a synthetic event of helices crossing every layer.

    Parameters
    ----------
    geometry : LayerGeometry
        Layers and radii crossed by every track.
    n_tracks : int, optional
        Number of particles.
    config : SeedingConfig, optional
        Supplies ``b_field`` and ``length_scale`` (defaults otherwise).
    rng : numpy.random.Generator, optional
        Random source; a default generator is used if omitted.
    pt_range, eta_range : (float, float), optional
        Uniform ranges of :math:`p_T` (GeV) and :math:`\eta`.
    vertex : Vertex, optional
        Production point of all tracks (origin by default).
    noise_hits_per_layer : int, optional
        Random hits added on each layer.
    position_sigma : float, optional
        Isotropic Gaussian smearing of hit positions; also written into the
        covariance columns as :math:`\sigma^2 I_3`.
    layers : sequence of int, optional
        Restrict hits to these layers (default: all layers of ``geometry``).

    Returns
    -------
    clusters : ClusterStore
    vertex : Vertex
    truth : pandas.DataFrame
        One row per particle: ``particle_id, pt, charge, phi0, eta, hit_keys``.
    """
    cfg = config or SeedingConfig()
    rng = np.random.default_rng() if rng is None else rng
    vertex = vertex or Vertex(0.0, 0.0, 0.0)
    use_layers = list(layers) if layers is not None else geometry.layers
    radii = np.array([geometry.radius(l) for l in use_layers], dtype=np.float64)

    next_index = {l: 0 for l in use_layers}
    rows = []
    truth = []
    for pid in range(n_tracks):
        pt = float(rng.uniform(*pt_range))
        charge = int(rng.choice((-1, 1)))
        phi0 = float(rng.uniform(0.0, 2.0 * np.pi))
        eta = float(rng.uniform(*eta_range))
        pts = helix_points(
            radii, pt=pt, charge=charge, phi0=phi0, eta=eta,
            b_field=cfg.b_field, length_scale=cfg.length_scale,
            origin=(vertex.x, vertex.y, vertex.z),
        )
        if position_sigma > 0.0:
            pts = pts + rng.normal(scale=position_sigma, size=pts.shape)
        keys = []
        for layer, p in zip(use_layers, pts):
            key = make_cluster_key(layer, next_index[layer])
            next_index[layer] += 1
            keys.append(key)
            rows.append((key, layer, *p))
        truth.append({"particle_id": pid, "pt": pt, "charge": charge, "phi0": phi0, "eta": eta, "hit_keys": keys})

    for layer, r in zip(use_layers, radii):
        for _ in range(int(noise_hits_per_layer)):
            phi = rng.uniform(0.0, 2.0 * np.pi)
            z = r * np.sinh(rng.uniform(*eta_range))
            key = make_cluster_key(layer, next_index[layer])
            next_index[layer] += 1
            rows.append((key, layer, vertex.x + r * np.cos(phi), vertex.y + r * np.sin(phi), vertex.z + z))

    df = pd.DataFrame.from_records(rows, columns=["key", "layer", "x", "y", "z"])
    var = float(position_sigma) ** 2
    for name in COV_COLUMNS:
        df[name] = var if name in ("cov_xx", "cov_yy", "cov_zz") else 0.0

    logger.debug("Simulated %d tracks, %d clusters", n_tracks, len(df))
    return ClusterStore(df), vertex, pd.DataFrame(truth, columns=["particle_id", "pt", "charge", "phi0", "eta", "hit_keys"])
