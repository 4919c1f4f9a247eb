from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ca_seeding.errors import GeometryConflictError, SeedingInputError

logger = logging.getLogger(__name__)

GeometrySource = Union[pd.DataFrame, Iterable[Tuple[int, float, float]]]

_GEOMETRY_COLUMNS = ("layer", "radius", "thickness")


def _as_geometry_frame(source: GeometrySource, name: str) -> pd.DataFrame:
    r"""
    Normalize one geometry source into a ``layer, radius, thickness`` frame.

    Parameters
    ----------
    source : DataFrame or iterable of (layer, radius, thickness)
        Layered geometry records.
    name : str
        Source name used in error messages.

    Raises
    ------
    KeyError
        If a DataFrame source lacks one of the required columns.
    SeedingInputError
        If a column is not numeric, radii or thicknesses are not finite, or
        radii are negative.
    """
    if isinstance(source, pd.DataFrame):
        missing = [c for c in _GEOMETRY_COLUMNS if c not in source.columns]
        if missing:
            raise KeyError(f"Geometry source '{name}' is missing column(s): {', '.join(missing)}")
        df = source.loc[:, list(_GEOMETRY_COLUMNS)]
    else:
        df = pd.DataFrame.from_records(list(source), columns=list(_GEOMETRY_COLUMNS))

    try:
        layer = df["layer"].to_numpy(dtype=np.int64)
        radius = df["radius"].to_numpy(dtype=np.float64)
        thickness = df["thickness"].to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise SeedingInputError(f"Geometry source '{name}' has non-numeric values: {e}") from e
    if not (np.isfinite(radius).all() and np.isfinite(thickness).all()):
        raise SeedingInputError(f"Geometry source '{name}' has non-finite radius/thickness")
    if (radius < 0.0).any():
        raise SeedingInputError(f"Geometry source '{name}' has negative radii")
    return pd.DataFrame(
        {
            "layer": layer,
            "radius": radius,
            "thickness": thickness,
        }
    )


class LayerGeometry:
    r"""
    Static per-event mapping ``layer id -> radius``.

    The table is assembled from up to three layered geometry sources:

    - **pixel** layers, which contribute their raw sensitive radius :math:`R`;
    - **strip** and **continuous-readout** layers, which contribute the centre
      of the sensitive volume :math:`R + t/2` with thickness :math:`t`.

    Lookups of unconfigured layers return ``None``; callers treat such a layer
    step as dead.

    Parameters
    ----------
    radii : dict[int, float]
        Final ``layer -> radius`` mapping.

    Raises
    ------
    SeedingInputError
        If ``radii`` is empty.
    """

    __slots__ = ("_radii",)

    def __init__(self, radii: Dict[int, float]) -> None:
        if not radii:
            raise SeedingInputError("Layer geometry is empty")
        self._radii: Dict[int, float] = {int(k): float(v) for k, v in radii.items()}

    @classmethod
    def from_sources(
        cls,
        pixel: Optional[GeometrySource] = None,
        strip: Optional[GeometrySource] = None,
        readout: Optional[GeometrySource] = None,
        *,
        on_conflict: str = "strict",
        atol: float = 1e-6,
    ) -> "LayerGeometry":
        r"""
        Merge the three layered geometry sources.

        Sources are applied in the order **readout → strip → pixel**. A layer id
        seen in more than one source is resolved by ``on_conflict``:

        - ``"strict"``: radii must agree within ``atol``; otherwise
          :class:`~ca_seeding.errors.GeometryConflictError` is raised.
        - ``"last"``: the source applied last wins and a warning is logged.

        Parameters
        ----------
        pixel, strip, readout : DataFrame or iterable of (layer, radius, thickness), optional
            Geometry records of each detector type.
        on_conflict : {"strict", "last"}, optional
            Conflict policy (default ``"strict"``).
        atol : float, optional
            Absolute radius tolerance for ``"strict"``.

        Returns
        -------
        LayerGeometry

        Raises
        ------
        ValueError
            For an unknown ``on_conflict``.
        SeedingInputError
            If no source contributes any layer.
        """
        if on_conflict not in ("strict", "last"):
            raise ValueError(f"on_conflict must be 'strict' or 'last', got {on_conflict!r}")

        radii: Dict[int, float] = {}
        origin: Dict[int, str] = {}
        ordered = (("readout", readout, True), ("strip", strip, True), ("pixel", pixel, False))
        for name, source, use_half_thickness in ordered:
            if source is None:
                continue
            df = _as_geometry_frame(source, name)
            r = df["radius"].to_numpy()
            if use_half_thickness:
                r = r + 0.5 * df["thickness"].to_numpy()
            for layer, radius in zip(df["layer"].tolist(), r.tolist()):
                prev = radii.get(layer)
                if prev is not None and abs(prev - radius) > atol:
                    if on_conflict == "strict":
                        raise GeometryConflictError(
                            f"Layer {layer}: radius {prev:.6g} from '{origin[layer]}' "
                            f"conflicts with {radius:.6g} from '{name}'"
                        )
                    logger.warning(
                        "Layer %d: overriding radius %.6g (%s) with %.6g (%s)",
                        layer, prev, origin[layer], radius, name,
                    )
                radii[layer] = radius
                origin[layer] = name

        if not radii:
            raise SeedingInputError("No geometry source provided any layer")
        logger.debug("Layer geometry: %d layers from %s", len(radii), sorted(set(origin.values())))
        return cls(radii)

    def radius(self, layer: int) -> Optional[float]:
        """Radius of ``layer`` or ``None`` if the layer is not configured."""
        return self._radii.get(int(layer))

    def radius_step(self, outer: int, inner: int) -> Optional[float]:
        r"""
        Radial distance :math:`r_{outer} - r_{inner}` between two layers.

        Returns ``None`` if either layer is unconfigured or the distance is zero,
        i.e. when the step cannot carry a slope estimate.
        """
        r_out = self._radii.get(int(outer))
        r_in = self._radii.get(int(inner))
        if r_out is None or r_in is None:
            return None
        dr = r_out - r_in
        if dr == 0.0:
            return None
        return dr

    @property
    def layers(self) -> List[int]:
        """Configured layer ids, ascending."""
        return sorted(self._radii)

    def ordered_by_radius(self) -> List[int]:
        """Layer ids ordered by increasing radius (ties by id)."""
        return [k for k, _ in sorted(self._radii.items(), key=lambda kv: (kv[1], kv[0]))]

    def to_frame(self) -> pd.DataFrame:
        """Two-column ``layer, radius`` frame sorted by layer."""
        layers = self.layers
        return pd.DataFrame(
            {"layer": np.asarray(layers, dtype=np.int64),
             "radius": np.asarray([self._radii[k] for k in layers], dtype=np.float64)}
        )

    def __contains__(self, layer: object) -> bool:
        return layer in self._radii

    def __len__(self) -> int:
        return len(self._radii)

    def __iter__(self) -> Iterator[int]:
        return iter(self.layers)

    def __repr__(self) -> str:
        return f"LayerGeometry(n_layers={len(self._radii)})"
