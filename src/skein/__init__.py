from .core import ComponentMetrics, Entity, Event, FeatureRecord, Merge
from .oracles import BruteForceOracle, NetworkxOracle
from .project import SkeinProject, connect
from .store import MemoryGraphStore, SqliteGraphStore

__all__ = [
    # core
    "Entity",
    "Event",
    "ComponentMetrics",
    "Merge",
    "FeatureRecord",
    # stores
    "MemoryGraphStore",
    "SqliteGraphStore",
    # oracles
    "NetworkxOracle",
    "BruteForceOracle",
    # project
    "SkeinProject",
    "connect",
]
