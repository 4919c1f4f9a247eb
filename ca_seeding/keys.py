r"""
Cluster key codec.

Cluster keys are opaque 64-bit integers laid out as

.. code-block:: text

    bits 56..63  detector id
    bits 48..55  layer id
    bits 32..47  detector-specific sub-address
    bits  0..31  cluster index within the hit set

so the layer of a cluster can always be recovered from its key alone.
"""
from __future__ import annotations

import numpy as np

_DETECTOR_SHIFT = 56
_LAYER_SHIFT = 48
_SUBADDRESS_SHIFT = 32
_BYTE = 0xFF
_SUBADDRESS_MASK = 0xFFFF
_INDEX_MASK = 0xFFFFFFFF


def make_cluster_key(layer: int, index: int, *, detector: int = 0, subaddress: int = 0) -> int:
    r"""
    Pack a cluster key.

    Parameters
    ----------
    layer : int
        Layer id, ``0 <= layer < 256``.
    index : int
        Cluster index within its hit set, ``0 <= index < 2**32``.
    detector : int, optional
        Detector id, ``0 <= detector < 256``.
    subaddress : int, optional
        Detector-specific sub-address, ``0 <= subaddress < 2**16``.

    Returns
    -------
    int
        The packed key.

    Raises
    ------
    ValueError
        If a field does not fit its bit range.

    Examples
    --------
    >>> layer_from_key(make_cluster_key(42, 7))
    42
    """
    if not 0 <= layer <= _BYTE:
        raise ValueError(f"layer out of range: {layer}")
    if not 0 <= detector <= _BYTE:
        raise ValueError(f"detector out of range: {detector}")
    if not 0 <= subaddress <= _SUBADDRESS_MASK:
        raise ValueError(f"subaddress out of range: {subaddress}")
    if not 0 <= index <= _INDEX_MASK:
        raise ValueError(f"index out of range: {index}")
    return (
        (int(detector) << _DETECTOR_SHIFT)
        | (int(layer) << _LAYER_SHIFT)
        | (int(subaddress) << _SUBADDRESS_SHIFT)
        | int(index)
    )


def layer_from_key(key: int) -> int:
    """Layer id encoded in a cluster key."""
    return (int(key) >> _LAYER_SHIFT) & _BYTE


def layers_from_keys(keys: np.ndarray) -> np.ndarray:
    r"""
    Vectorized :func:`layer_from_key`.

    Parameters
    ----------
    keys : array_like of int
        Cluster keys. Values up to :math:`2^{64}-1` are accepted.

    Returns
    -------
    ndarray of int64
    """
    k = np.asarray(keys, dtype=np.uint64)
    return ((k >> np.uint64(_LAYER_SHIFT)) & np.uint64(_BYTE)).astype(np.int64)
