"""
Relational persistence for the state store.
"""

from .connection import session_scope
from .engine import create_session_factory, create_store_engine, ensure_schema
from .models import Base, ContainerRecord, NodeRecord, SnapshotRecord, StorageVolumeRecord, VMRecord

__all__ = [
    "Base",
    "ContainerRecord",
    "NodeRecord",
    "SnapshotRecord",
    "StorageVolumeRecord",
    "VMRecord",
    "create_session_factory",
    "create_store_engine",
    "ensure_schema",
    "session_scope",
]
