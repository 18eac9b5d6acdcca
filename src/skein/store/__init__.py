from .base import BaseGraphStore
from .factory import StoreKind
from .memory import MemoryGraphStore
from .sqlite import SqliteGraphStore

__all__ = ["BaseGraphStore", "MemoryGraphStore", "SqliteGraphStore", "StoreKind"]
