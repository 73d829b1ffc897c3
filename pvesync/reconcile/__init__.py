"""
Reconciler state machine, conflict policies and hypervisor task polling.
"""

from .policies import ConflictPolicy, Manual, PreferLocal, PreferRemote, get_policy, merge_desired
from .reconciler import ReconcileOptions, ReconcileResult, Reconciler, ReconcilerState
from .tasks import TaskOutcome, TaskPoller, TaskResult, parse_upid

__all__ = [
    "ConflictPolicy",
    "Manual",
    "PreferLocal",
    "PreferRemote",
    "ReconcileOptions",
    "ReconcileResult",
    "Reconciler",
    "ReconcilerState",
    "TaskOutcome",
    "TaskPoller",
    "TaskResult",
    "get_policy",
    "merge_desired",
    "parse_upid",
]
