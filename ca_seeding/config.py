from __future__ import annotations

import dataclasses
import logging
import numbers
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import orjson

from ca_seeding.errors import ConfigError

logger = logging.getLogger(__name__)

# GeV / (T * m) for a unit charge
PT_PER_TESLA_METER = 0.299792458

STEP_CURVATURE_RADII = ("half_step", "midpoint")


@dataclass(frozen=True, slots=True)
class SeedingConfig:
    r"""
    Tunable constants of one seeding pass.

    The configuration is immutable and is carried by the per-event
    :class:`~ca_seeding.seeding.SeedingContext` into every component, so no
    component reads process-wide state.

    Attributes
    ----------
    start_layer : int
        Outermost layer of the seed pair. The inner seed hit is searched on
        ``start_layer - 1`` and extension proceeds inward from ``start_layer - 2``.
    min_layer : int
        Layers below this id are not indexed (only the continuous-readout
        region takes part in seeding).
    pair_phi_tolerance, pair_eta_tolerance : float
        Half-widths of the window around the outer hit in which inner seed hits
        are searched.
    step_phi_tolerance, step_eta_tolerance : float
        Half-widths of the layer-to-layer extension window around the predicted
        position.
    phi_scale, eta_scale : float
        Multipliers applied to both the pair and step tolerances in azimuth and
        pseudorapidity respectively.
    max_failures : int
        A chain is abandoned (and rejected) as soon as the cumulative number of
        empty layer lookups exceeds this value.
    max_extension_steps : int
        Number of layers visited after the seed pair.
    step_curvature_radius : {"half_step", "midpoint"}
        Radius :math:`\bar r` fed to the curvature relation on extension
        steps: half the radial distance from the last accepted layer
        (``"half_step"``, default) or the mean radius of the two layers
        (``"midpoint"``). The seed pair always uses the mean radius.
    duplicate_tolerance : float
        Half-width in azimuth and pseudorapidity of the duplicate-suppression box.
    start_eta_range : float
        Outer seed hits are taken from :math:`|\eta| \le` ``start_eta_range``.
    b_field : float
        Axial magnetic field in Tesla.
    length_scale : float
        Meters per length unit of the input positions (``0.01`` for cm,
        ``1e-3`` for mm).
    min_hits : int
        Minimum number of hits of an emitted track.
    max_relative_pt_error : float or None
        If set, tracks with :math:`\sigma_{p_T}/p_T` above this value are dropped.
    n_iterations : int
        Number of seeding iterations per event.
    iteration_layer_step : int
        Start layer decrement applied between iterations.
    """

    start_layer: int = 54
    min_layer: int = 39
    pair_phi_tolerance: float = 0.01
    pair_eta_tolerance: float = 0.007
    step_phi_tolerance: float = 0.002
    step_eta_tolerance: float = 0.006
    phi_scale: float = 1.0
    eta_scale: float = 1.0
    max_failures: int = 2
    max_extension_steps: int = 6
    step_curvature_radius: str = "half_step"
    duplicate_tolerance: float = 1e-5
    start_eta_range: float = 3.0
    b_field: float = 1.4
    length_scale: float = 0.01
    min_hits: int = 3
    max_relative_pt_error: Optional[float] = None
    n_iterations: int = 1
    iteration_layer_step: int = 7

    @property
    def pt_constant(self) -> float:
        r"""
        Conversion :math:`B\,Q\,c` between curvature and transverse momentum.

        .. math::

            p_T\,[\mathrm{GeV}] = \frac{0.299792458\;B\,[\mathrm{T}]\;s}{|\kappa|},

        where :math:`s` is ``length_scale`` and :math:`\kappa` is expressed in
        inverse input length units.
        """
        return PT_PER_TESLA_METER * self.b_field * self.length_scale

    @property
    def pair_phi_window(self) -> float:
        return self.pair_phi_tolerance * self.phi_scale

    @property
    def pair_eta_window(self) -> float:
        return self.pair_eta_tolerance * self.eta_scale

    @property
    def step_phi_window(self) -> float:
        return self.step_phi_tolerance * self.phi_scale

    @property
    def step_eta_window(self) -> float:
        return self.step_eta_tolerance * self.eta_scale

    def replace(self, **changes: Any) -> "SeedingConfig":
        """Return a validated copy with ``changes`` applied."""
        try:
            cfg = dataclasses.replace(self, **changes)
        except TypeError as e:
            raise ConfigError(str(e)) from e
        return cfg.validate()

    def validate(self) -> "SeedingConfig":
        r"""
        Check ranges of all fields.

        Returns
        -------
        SeedingConfig
            ``self``, to allow chaining.

        Raises
        ------
        ConfigError
            If any field has the wrong type or is out of range.
        """
        self._check_types()
        positive = (
            "pair_phi_tolerance", "pair_eta_tolerance", "step_phi_tolerance",
            "step_eta_tolerance", "phi_scale", "eta_scale", "duplicate_tolerance",
            "start_eta_range", "b_field", "length_scale",
        )
        for name in positive:
            if not getattr(self, name) > 0.0:
                raise ConfigError(f"{name} must be > 0 (got {getattr(self, name)!r})")
        if self.max_failures < 0:
            raise ConfigError("max_failures must be >= 0")
        if self.max_extension_steps < 0:
            raise ConfigError("max_extension_steps must be >= 0")
        if self.step_curvature_radius not in STEP_CURVATURE_RADII:
            raise ConfigError(
                f"step_curvature_radius must be one of {', '.join(STEP_CURVATURE_RADII)} "
                f"(got {self.step_curvature_radius!r})"
            )
        if self.min_hits < 2:
            raise ConfigError("min_hits must be >= 2")
        if self.n_iterations < 1:
            raise ConfigError("n_iterations must be >= 1")
        if self.iteration_layer_step < 0:
            raise ConfigError("iteration_layer_step must be >= 0")
        if self.start_layer - 1 < self.min_layer:
            raise ConfigError(
                f"start_layer={self.start_layer} leaves no inner seed layer above "
                f"min_layer={self.min_layer}"
            )
        if self.max_relative_pt_error is not None and not self.max_relative_pt_error > 0.0:
            raise ConfigError("max_relative_pt_error must be > 0 when set")
        return self

    def _check_types(self) -> None:
        # field kinds follow the defaults; None marks an optional real
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            default = f.default
            if isinstance(value, bool):
                ok = False
            elif isinstance(default, int):
                ok = isinstance(value, numbers.Integral)
            elif isinstance(default, float):
                ok = isinstance(value, numbers.Real)
            elif isinstance(default, str):
                ok = isinstance(value, str)
            else:
                ok = value is None or isinstance(value, numbers.Real)
            if not ok:
                kind = "a number or null" if default is None else type(default).__name__
                raise ConfigError(f"{f.name} must be {kind} (got {value!r})")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SeedingConfig":
        r"""
        Build a configuration from a plain mapping.

        If ``data`` has a ``"seeding"`` block it is used, otherwise ``data``
        itself is taken as the block. Unknown keys are rejected.

        Raises
        ------
        ConfigError
            On unknown keys or invalid values.
        """
        block = data.get("seeding", data)
        if not isinstance(block, Mapping):
            raise ConfigError("'seeding' block must be a JSON object")
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(block) - known)
        if unknown:
            raise ConfigError(f"Unknown seeding option(s): {', '.join(unknown)}")
        return cls(**dict(block)).validate()


def load_config(config_path: Path | str) -> SeedingConfig:
    r"""
    Load a :class:`SeedingConfig` from a JSON file using :mod:`orjson`.

    Parameters
    ----------
    config_path : path-like
        JSON file, either a flat object of options or ``{"seeding": {...}}``.

    Returns
    -------
    SeedingConfig

    Raises
    ------
    ConfigError
        If the file is missing, cannot be parsed, or holds invalid options.
    """
    path = Path(config_path)
    try:
        data = orjson.loads(path.read_bytes())
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except orjson.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    cfg = SeedingConfig.from_mapping(data)
    logger.debug("Loaded seeding config from %s: %s", path, cfg)
    return cfg
