from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ca_seeding.config import SeedingConfig
from ca_seeding.data import ClusterStore, Vertex
from ca_seeding.errors import SeedingInputError
from ca_seeding.extender import SeedExtender
from ca_seeding.geometry import LayerGeometry
from ca_seeding.kernels import TWO_PI
from ca_seeding.sink import TrackSink
from ca_seeding.spatial_index import SpatialIndex
from ca_seeding.track_builder import TrackBuilder, TrackRecord

logger = logging.getLogger(__name__)


class EventStatus(Enum):
    """Outcome of one seeding pass."""
    OK = "ok"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class SeedingContext:
    r"""
    Everything one seeding pass reads: configuration plus the event inputs.

    Any of ``geometry``, ``clusters`` or ``vertex`` may be ``None`` when the
    upstream service could not provide it; :meth:`validate` then raises and the
    event is aborted.
    """

    config: SeedingConfig
    geometry: Optional[LayerGeometry]
    clusters: Optional[ClusterStore]
    vertex: Optional[Vertex]

    def validate(self) -> None:
        """Raise :class:`~ca_seeding.errors.SeedingInputError` for missing inputs."""
        missing = [
            name for name, obj in (("geometry", self.geometry), ("clusters", self.clusters), ("vertex", self.vertex))
            if obj is None
        ]
        if missing:
            raise SeedingInputError(f"Missing event input(s): {', '.join(missing)}")


@dataclass(slots=True)
class SeedingResult:
    r"""
    Summary of one :meth:`CASeeder.process_event` call.

    Attributes
    ----------
    status : EventStatus
        ``OK`` or ``ABORTED``.
    tracks : list of TrackRecord
        Tracks emitted for the event (empty when aborted).
    n_indexed : int
        Points stored in the spatial index.
    n_duplicates : int
        Clusters discarded by the duplicate filter.
    n_start_hits : int
        Outer seed hits found on the start layer(s).
    n_pairs : int
        Seed pairs handed to the extender.
    n_rejected : int
        Pairs that did not yield a track.
    elapsed_s : float
        Wall-clock time of the pass.
    message : str
        Abort reason, empty on success.
    """

    status: EventStatus
    tracks: List[TrackRecord] = field(default_factory=list)
    n_indexed: int = 0
    n_duplicates: int = 0
    n_start_hits: int = 0
    n_pairs: int = 0
    n_rejected: int = 0
    elapsed_s: float = 0.0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is EventStatus.OK

    @property
    def n_tracks(self) -> int:
        return len(self.tracks)


class CASeeder:
    r"""
    Seeding driver: one full pass per event.

    Pipeline
    --------
    1. Clear and populate the :class:`~ca_seeding.spatial_index.SpatialIndex`
       from the event clusters as seen from the vertex.
    2. For each iteration :math:`i` (``n_iterations``, default one) take the
       start layer :math:`L_i = L - i\cdot` ``iteration_layer_step`` and query
       every outer hit on :math:`L_i` with :math:`|\eta| \le` ``start_eta_range``.
    3. For each outer hit query the inner layer :math:`L_i-1` within
       :math:`\pm\delta_\phi^{pair}`, :math:`\pm\delta_\eta^{pair}`.
    4. Extend every (outer, inner) pair with
       :class:`~ca_seeding.extender.SeedExtender` and build accepted chains with
       :class:`~ca_seeding.track_builder.TrackBuilder`; ids are assigned
       sequentially from ``0``.
    5. Emit all tracks to the sink.

    Missing inputs abort the event: the result has status
    :attr:`EventStatus.ABORTED`, no tracks, and nothing reaches the sink.

    Attributes
    ----------
    index : SpatialIndex
        Index of the most recent event (rebuilt on every call).
    """

    __slots__ = ("index",)

    def __init__(self) -> None:
        self.index = SpatialIndex()

    def process_event(self, context: SeedingContext, sink: Optional[TrackSink] = None) -> SeedingResult:
        r"""
        Run seeding on one event.

        Parameters
        ----------
        context : SeedingContext
            Configuration and event inputs.
        sink : TrackSink, optional
            Receives every track once the pass succeeded.

        Returns
        -------
        SeedingResult
        """
        t0 = time.perf_counter()
        try:
            result = self._seed(context)
        except SeedingInputError as e:
            logger.error("Event aborted: %s", e)
            return SeedingResult(
                status=EventStatus.ABORTED, elapsed_s=time.perf_counter() - t0, message=str(e)
            )

        if sink is not None:
            sink.extend(result.tracks)
        result.elapsed_s = time.perf_counter() - t0
        logger.info(
            "Seeding: %d tracks from %d pairs (%d start hits, %d rejected) in %.3f s",
            result.n_tracks, result.n_pairs, result.n_start_hits, result.n_rejected, result.elapsed_s,
        )
        return result

    def _seed(self, context: SeedingContext) -> SeedingResult:
        context.validate()
        cfg = context.config
        geometry, clusters, vertex = context.geometry, context.clusters, context.vertex

        self.index.clear()
        self.index.duplicate_tolerance = cfg.duplicate_tolerance
        pop = self.index.populate(clusters, vertex, cfg.min_layer)

        result = SeedingResult(
            status=EventStatus.OK, n_indexed=pop.n_inserted, n_duplicates=pop.n_duplicates
        )
        if pop.n_inserted == 0:
            logger.info("Spatial index is empty; no seeds")
            return result

        extender = SeedExtender(self.index, geometry, cfg)
        builder = TrackBuilder(cfg)
        pair_dphi = cfg.pair_phi_window
        pair_deta = cfg.pair_eta_window

        for iteration in range(cfg.n_iterations):
            start_layer = cfg.start_layer - iteration * cfg.iteration_layer_step
            if geometry.radius(start_layer) is None or geometry.radius(start_layer - 1) is None:
                logger.warning("Start layers %d/%d are not in the geometry; skipping iteration %d",
                               start_layer, start_layer - 1, iteration)
                continue

            starts = self.index.query_points(
                0.0, -cfg.start_eta_range, start_layer - 0.5,
                TWO_PI, cfg.start_eta_range, start_layer + 0.5,
            )
            result.n_start_hits += len(starts)
            logger.debug("Iteration %d: %d hits on start layer %d", iteration, len(starts), start_layer)

            for outer in starts:
                inners = self.index.query_points(
                    outer.phi - pair_dphi, outer.eta - pair_deta, start_layer - 1.5,
                    outer.phi + pair_dphi, outer.eta + pair_deta, start_layer - 0.5,
                )
                for inner in inners:
                    result.n_pairs += 1
                    chain = extender.extend(outer, inner)
                    track = None if chain is None else builder.build(chain, vertex, clusters)
                    if track is None:
                        result.n_rejected += 1
                        continue
                    track.id = len(result.tracks)
                    result.tracks.append(track)
        return result


def run_seeding(
    clusters: Optional[ClusterStore],
    geometry: Optional[LayerGeometry],
    vertex: Optional[Vertex],
    config: Optional[SeedingConfig] = None,
    sink: Optional[TrackSink] = None,
) -> SeedingResult:
    """One-shot convenience wrapper around :class:`CASeeder`."""
    context = SeedingContext(config or SeedingConfig(), geometry, clusters, vertex)
    return CASeeder().process_event(context, sink)
