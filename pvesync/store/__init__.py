"""
State Store: current reconciled state plus snapshot history.
"""

from .state_store import SnapshotHistory, StateStore

__all__ = ["SnapshotHistory", "StateStore"]
