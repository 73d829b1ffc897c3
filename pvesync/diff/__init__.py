"""
Diff Engine: two-way diffs and three-way conflict detection.
"""

from .engine import DiffEngine, ThreeWayResult, diff

__all__ = ["DiffEngine", "ThreeWayResult", "diff"]
