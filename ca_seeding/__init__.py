__all__ = [
    "SeedingConfig", "load_config", "PT_PER_TESLA_METER",
    "SeedingError", "ConfigError", "SeedingInputError", "GeometryConflictError",
    "make_cluster_key", "layer_from_key", "layers_from_keys",
    "LayerGeometry",
    "ClusterStore", "Vertex", "load_event", "write_event",
    "SpatialIndex", "IndexedPoint", "PopulateStats",
    "Chain", "SeedExtender",
    "RunningStats", "ChainStatistics", "TrackRecord", "TrackBuilder",
    "TrackSink", "TrackCollection",
    "EventStatus", "SeedingContext", "SeedingResult", "CASeeder", "run_seeding",
    "evenly_spaced_geometry", "helix_points", "make_event",
]

# Configuration & errors
from .config import PT_PER_TESLA_METER, SeedingConfig, load_config
from .errors import ConfigError, GeometryConflictError, SeedingError, SeedingInputError

# Event inputs
from .keys import layer_from_key, layers_from_keys, make_cluster_key
from .geometry import LayerGeometry
from .data import ClusterStore, Vertex, load_event, write_event

# Spatial index
from .spatial_index import IndexedPoint, PopulateStats, SpatialIndex

# Seeding
from .extender import Chain, SeedExtender
from .track_builder import ChainStatistics, RunningStats, TrackBuilder, TrackRecord
from .sink import TrackCollection, TrackSink
from .seeding import CASeeder, EventStatus, SeedingContext, SeedingResult, run_seeding

# Synthetic events
from .simulate import evenly_spaced_geometry, helix_points, make_event
