from __future__ import annotations

import math
from typing import Tuple

import numpy as np
from numba import njit

__all__ = [
    "TWO_PI",
    "wrap_phi",
    "phi_diff",
    "phi_diff_scalar",
    "curvature_from_slope",
    "best_candidate",
]

TWO_PI = 2.0 * np.pi


def wrap_phi(phi: np.ndarray) -> np.ndarray:
    r"""
    Map azimuth values into :math:`[0, 2\pi)`.

    .. math::

        \phi' = \phi - 2\pi\,\lfloor \phi / 2\pi \rfloor

    Values that round up to exactly :math:`2\pi` are folded to ``0``.
    """
    phi = np.asarray(phi, dtype=np.float64)
    out = phi - TWO_PI * np.floor(phi / TWO_PI)
    return np.where(out >= TWO_PI, 0.0, out)


def phi_diff(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    r"""
    Circular difference :math:`a - b` mapped into :math:`(-\pi, \pi]`.

    .. math::

        \Delta = (a-b) - 2\pi\,\left\lceil \frac{(a-b) - \pi}{2\pi} \right\rceil

    Works element-wise on arrays and on scalars.
    """
    d = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    return d - TWO_PI * np.ceil((d - np.pi) / TWO_PI)


@njit(cache=True)
def phi_diff_scalar(a: float, b: float) -> float:
    """Scalar :func:`phi_diff` for use inside compiled kernels."""
    d = a - b
    return d - TWO_PI * math.ceil((d - math.pi) / TWO_PI)


@njit(cache=True)
def curvature_from_slope(dphidr: float, radius: float) -> float:
    r"""
    Local helix curvature from the azimuth-vs-radius slope.

    For a helix through the reference point with transverse radius :math:`R`,
    :math:`d\phi/dr = \pm 1/\sqrt{4R^2 - r^2}`, hence

    .. math::

        \kappa = \operatorname{sign}\!\left(\frac{d\phi}{dr}\right)
                 \frac{2}{\sqrt{r^2 + (d\phi/dr)^{-2}}} = \pm\frac{1}{R}.

    Parameters
    ----------
    dphidr : float
        Slope :math:`d\phi/dr`; must be non-zero and finite.
    radius : float
        Radius :math:`r` at which the slope is evaluated.

    Returns
    -------
    float
        Signed curvature, or ``nan`` for a zero or non-finite slope.
    """
    if dphidr == 0.0 or not math.isfinite(dphidr):
        return math.nan
    return math.copysign(2.0 / math.sqrt(radius * radius + 1.0 / (dphidr * dphidr)), dphidr)


@njit(cache=True)
def best_candidate(phis: np.ndarray, etas: np.ndarray, pred_phi: float, cur_eta: float) -> Tuple[int, float]:
    r"""
    Arg-min of the L1 angular distance to a predicted position.

    .. math::

        d_j = |\Delta\phi(\phi_j, \phi_{pred})| + |\eta_j - \eta_{cur}|

    Ties resolve to the first candidate.

    Returns
    -------
    index : int
        Position of the best candidate, ``-1`` if there are none.
    distance : float
        Its distance (``inf`` if there are none).
    """
    best = -1
    best_d = math.inf
    for j in range(phis.shape[0]):
        d = abs(phi_diff_scalar(phis[j], pred_phi)) + abs(etas[j] - cur_eta)
        if d < best_d:
            best_d = d
            best = j
    return best, best_d
