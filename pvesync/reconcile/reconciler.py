"""
Reconciler: discovery, diffing, conflict check and commit as one run.

States::

    IDLE -> DISCOVERING -> DIFFING -> CONFLICT_CHECK -> COMMITTING -> IDLE
                 \\             \\             \\               \\
                  +-------------+-------------+---------------+--> ABORTED -> IDLE

A dry run stops after CONFLICT_CHECK and returns to IDLE without committing.
Every abort leaves the State Store at its last committed snapshot.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Dict, List, Optional, Sequence, Tuple

import anyio

from pvesync.config import SyncContext
from pvesync.diff.engine import DiffEngine, ThreeWayResult
from pvesync.discovery.adapter import DiscoveryAdapter
from pvesync.errors import ConcurrentSyncError, DiscoveryCancelledError, PartialDiscoveryError, ReconciliationConflict
from pvesync.model.diff import Conflict, Diff, Snapshot
from pvesync.model.resource_set import ResourceSet
from pvesync.reconcile.policies import ConflictPolicy, Manual, get_policy, merge_desired
from pvesync.store.state_store import StateStore

logger = logging.getLogger(__name__)


class ReconcilerState(Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    DIFFING = "diffing"
    CONFLICT_CHECK = "conflictCheck"
    COMMITTING = "committing"
    ABORTED = "aborted"


TRANSITIONS = {
    ReconcilerState.IDLE: {ReconcilerState.DISCOVERING},
    ReconcilerState.DISCOVERING: {ReconcilerState.DIFFING, ReconcilerState.ABORTED},
    ReconcilerState.DIFFING: {ReconcilerState.CONFLICT_CHECK, ReconcilerState.ABORTED},
    ReconcilerState.CONFLICT_CHECK: {ReconcilerState.COMMITTING, ReconcilerState.ABORTED, ReconcilerState.IDLE},
    ReconcilerState.COMMITTING: {ReconcilerState.IDLE, ReconcilerState.ABORTED},
    ReconcilerState.ABORTED: {ReconcilerState.IDLE},
}


@dataclass
class ReconcileOptions:
    """Per-run options; unset values fall back to the SyncContext."""
    dry_run: bool = False
    allow_partial: Optional[bool] = None
    node_filter: Optional[Sequence[str]] = None
    local: Optional[ResourceSet] = None
    policy: Optional[str] = None
    audit: Sequence[str] = ()
    cancel: Optional[asyncio.Event] = None


@dataclass
class ReconcileResult:
    """Outcome of one reconciler run."""
    diff: Diff
    remote: ResourceSet
    desired: ResourceSet
    base: ResourceSet
    base_head: int
    snapshot: Optional[Snapshot] = None
    skipped_nodes: Dict[str, str] = field(default_factory=dict)
    three_way: Optional[ThreeWayResult] = None

    @property
    def partial(self) -> bool:
        return bool(self.skipped_nodes)

    @property
    def conflicts(self) -> Tuple[Conflict, ...]:
        return self.diff.conflicts


class Reconciler:
    """
    Sequences one reconciliation run.

    Usage:
        reconciler = Reconciler(context, adapter, store)
        result = await reconciler.run(ReconcileOptions(allow_partial=True))
    """

    def __init__(
        self,
        context: SyncContext,
        adapter: DiscoveryAdapter,
        store: StateStore,
        engine: Optional[DiffEngine] = None,
    ):
        self.context = context
        self.adapter = adapter
        self.store = store
        self.engine = engine or DiffEngine(context.significant_extensions)
        self.state = ReconcilerState.IDLE
        self.transitions: List[Tuple[ReconcilerState, ReconcilerState]] = []

    def _transition(self, new_state: ReconcilerState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid reconciler transition {self.state.value} -> {new_state.value}")
        logger.debug("Reconciler %s -> %s", self.state.value, new_state.value)
        self.transitions.append((self.state, new_state))
        self.state = new_state

    async def run(self, options: Optional[ReconcileOptions] = None) -> ReconcileResult:
        options = options or ReconcileOptions()
        if self.state != ReconcilerState.IDLE:
            raise ConcurrentSyncError("A reconciler run is already in progress", state=self.state.value)

        self._transition(ReconcilerState.DISCOVERING)
        try:
            discovered, skipped = await self._discover(options)

            self._transition(ReconcilerState.DIFFING)
            stored, head = await anyio.to_thread.run_sync(self.store.current_with_head)
            if skipped or options.node_filter:
                remote = self._merge_partial(stored, discovered, skipped, options.node_filter)
            else:
                remote = discovered
            diff = self.engine.diff(stored, remote)

            self._transition(ReconcilerState.CONFLICT_CHECK)
            desired, three_way = self._check_conflicts(stored, head, remote, options)
            if three_way is not None:
                diff = replace(diff, conflicts=three_way.conflicts)

            result = ReconcileResult(
                diff=diff,
                remote=remote,
                desired=desired,
                base=stored,
                base_head=head,
                skipped_nodes=skipped,
                three_way=three_way,
            )
            if options.dry_run:
                self._transition(ReconcilerState.IDLE)
                logger.info("Dry run complete: %s", diff.summary())
                return result

            self._transition(ReconcilerState.COMMITTING)
            result.snapshot = await anyio.to_thread.run_sync(
                partial(self.store.commit, remote, diff, expected_head=head, audit=tuple(options.audit))
            )
            self._transition(ReconcilerState.IDLE)
            return result
        except BaseException as e:
            self._abort(e)
            raise

    @staticmethod
    def _merge_partial(
        stored: ResourceSet,
        discovered: ResourceSet,
        skipped: Dict[str, str],
        node_filter: Optional[Sequence[str]],
    ) -> ResourceSet:
        """
        Stored records survive only for nodes discovery did not look at:
        skipped nodes and nodes outside ``node_filter``. Nodes that left the
        cluster are dropped; discovered records always win.
        """
        untouched = set(skipped)
        if node_filter:
            untouched |= stored.node_names() - set(node_filter)
        return stored.for_nodes(untouched).with_resources(discovered.values()).with_detached_volumes()

    async def _discover(self, options: ReconcileOptions) -> Tuple[ResourceSet, Dict[str, str]]:
        if options.allow_partial is None:
            allow_partial = options.dry_run or self.context.allow_partial
        else:
            allow_partial = options.allow_partial
        timeout = self.context.discovery_timeout
        try:
            discovered = await asyncio.wait_for(
                self.adapter.discover(options.node_filter, options.cancel), timeout=timeout
            )
        except PartialDiscoveryError as e:
            if not allow_partial:
                raise
            logger.warning("Continuing with partial discovery: %s", e.message)
            return e.resource_set, e.failures
        except asyncio.TimeoutError as e:
            raise DiscoveryCancelledError(
                f"Discovery exceeded its {timeout:.0f}s timeout", timeout=timeout
            ) from e
        return discovered, {}

    def _check_conflicts(
        self,
        stored: ResourceSet,
        head: int,
        remote: ResourceSet,
        options: ReconcileOptions,
    ) -> Tuple[ResourceSet, Optional[ThreeWayResult]]:
        if not self.context.three_way or options.local is None:
            return remote, None

        three_way = self.engine.three_way(stored, remote, options.local)
        policy: ConflictPolicy = get_policy(options.policy or self.context.conflict_policy)
        conflicts = three_way.conflicts
        if options.dry_run and isinstance(policy, Manual):
            # Report instead of raising; conflicting identities keep the remote value.
            resolved = {}
        else:
            try:
                resolved = policy.resolve(conflicts, remote, options.local)
            except ReconciliationConflict as e:
                e.context["sequence"] = head
                raise
        return merge_desired(remote, options.local, three_way, resolved), three_way

    def _abort(self, error: BaseException) -> None:
        if self.state == ReconcilerState.IDLE:
            return
        self._transition(ReconcilerState.ABORTED)
        logger.warning("Reconciler run aborted: %s: %s", type(error).__name__, error)
        self._transition(ReconcilerState.IDLE)
