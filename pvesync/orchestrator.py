"""
Sync Orchestrator: the ``sync``, ``plan`` and ``apply`` entry points.

Data flows one way per operation:

* ``sync``  remote -> State Store -> artifacts
* ``plan``  artifacts / State Store -> diff, no mutation
* ``apply`` artifacts -> remote (through the API client) -> re-sync
"""
import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anyio

from pvesync.artifacts.generator import ArtifactGenerator, WriteResult
from pvesync.client.base import ApiClient
from pvesync.config import SyncContext
from pvesync.diff.engine import DiffEngine
from pvesync.discovery.adapter import DiscoveryAdapter
from pvesync.errors import ReconciliationConflict, UnsupportedOperationError
from pvesync.model.diff import Conflict, Diff, Snapshot
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Guest, Identity, Resource, ResourceKind
from pvesync.reconcile.policies import Manual, PreferLocal, PreferRemote, get_policy
from pvesync.reconcile.reconciler import ReconcileOptions, Reconciler
from pvesync.reconcile.tasks import TaskPoller, TaskResult, parse_upid
from pvesync.store.state_store import StateStore

logger = logging.getLogger(__name__)

# Phases run in this order; deletes remove volumes before the guests using them.
PHASES = ("create", "update", "status", "delete")
_KIND_RANK = {ResourceKind.NODE: 0, ResourceKind.VM: 1, ResourceKind.CONTAINER: 1, ResourceKind.STORAGE: 2}


@dataclass
class SyncReport:
    diff: Diff
    snapshot: Snapshot
    artifacts: WriteResult
    skipped_nodes: Dict[str, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.skipped_nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.snapshot.sequence,
            "summary": self.diff.summary(),
            "diff": self.diff.to_dict(),
            "artifacts": self.artifacts.to_dict(),
            "skipped_nodes": dict(self.skipped_nodes),
            "partial": self.partial,
        }


@dataclass
class PlanReport:
    """
    ``drift`` is Diff(State Store -> artifacts), the edits ``apply`` would
    push; ``remote`` is Diff(State Store -> remote) from a dry-run discovery.
    """
    drift: Diff
    remote: Optional[Diff] = None
    conflicts: Tuple[Conflict, ...] = ()
    skipped_nodes: Dict[str, str] = field(default_factory=dict)
    head: int = 0
    artifacts_present: bool = True

    @property
    def has_changes(self) -> bool:
        return not self.drift.is_empty or bool(self.remote and not self.remote.is_empty)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "head": self.head,
            "artifacts_present": self.artifacts_present,
            "drift": self.drift.to_dict(),
            "remote": self.remote.to_dict() if self.remote is not None else None,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "skipped_nodes": dict(self.skipped_nodes),
        }


@dataclass
class Mutation:
    """One change ``apply`` pushes to the hypervisor."""
    action: str
    identity: Identity
    payload: Dict[str, Any] = field(default_factory=dict)
    upid: Optional[str] = None

    def describe(self) -> str:
        if self.action == "status":
            return f"status {self.identity} -> {self.payload['status']}"
        if self.action == "update":
            return f"update {self.identity} ({', '.join(sorted(self.payload))})"
        return f"{self.action} {self.identity}"

    def sort_key(self) -> Tuple[Any, ...]:
        rank = _KIND_RANK[self.identity.kind]
        if self.action == "delete":
            rank = -rank
        return (PHASES.index(self.action), rank, self.identity.sort_key())

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "identity": str(self.identity), "payload": self.payload, "upid": self.upid}


@dataclass
class ApplyReport:
    mutations: List[Mutation]
    tasks: List[TaskResult] = field(default_factory=list)
    sync: Optional[SyncReport] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return all(t.success for t in self.tasks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "mutations": [m.to_dict() for m in self.mutations],
            "tasks": [t.to_dict() for t in self.tasks],
            "success": self.success,
            "sync": self.sync.to_dict() if self.sync else None,
        }


class SyncOrchestrator:
    """
    Top-level entry point sequencing the Reconciler and the Artifact Generator.

    Usage:
        orchestrator = SyncOrchestrator(context, client, store)
        report = await orchestrator.sync()
    """

    def __init__(
        self,
        context: SyncContext,
        client: ApiClient,
        store: StateStore,
        generator: Optional[ArtifactGenerator] = None,
        engine: Optional[DiffEngine] = None,
    ):
        self.context = context
        self.client = client
        self.store = store
        self.generator = generator or ArtifactGenerator(render_terraform=context.render_terraform)
        self.engine = engine or DiffEngine(context.significant_extensions)
        self.reconciler = Reconciler(context, DiscoveryAdapter(context, client), store, self.engine)
        self.poller = TaskPoller(
            client,
            initial=context.task_poll_initial,
            maximum=context.task_poll_max,
            timeout=context.task_timeout,
        )

    async def _local(self) -> Optional[ResourceSet]:
        """The parsed artifact tree, or None when nothing has been generated yet."""
        root = self.context.artifact_dir
        if not await anyio.to_thread.run_sync(self.generator.has_artifacts, root):
            return None
        return await anyio.to_thread.run_sync(self.generator.parse, root)

    async def sync(
        self,
        allow_partial: Optional[bool] = None,
        node_filter: Optional[Sequence[str]] = None,
        policy: Optional[str] = None,
        audit: Sequence[str] = (),
        cancel: Optional[asyncio.Event] = None,
    ) -> SyncReport:
        """Discover, reconcile, commit a snapshot and regenerate artifacts."""
        local = await self._local() if self.context.three_way else None
        result = await self.reconciler.run(
            ReconcileOptions(
                allow_partial=allow_partial,
                node_filter=node_filter,
                local=local,
                policy=policy,
                audit=audit,
                cancel=cancel,
            )
        )
        rendered = self.generator.render(result.desired)
        written = await anyio.to_thread.run_sync(self.generator.write, self.context.artifact_dir, rendered)
        logger.info(
            "Sync committed snapshot %d: %s",
            result.snapshot.sequence,
            result.diff.summary(),
        )
        return SyncReport(
            diff=result.diff,
            snapshot=result.snapshot,
            artifacts=written,
            skipped_nodes=result.skipped_nodes,
        )

    async def plan(
        self,
        refresh: bool = True,
        node_filter: Optional[Sequence[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PlanReport:
        """Report drift and remote changes without mutating anything."""
        local = await self._local()
        stored, head = await anyio.to_thread.run_sync(self.store.current_with_head)
        drift = self.engine.diff(stored, local) if local is not None else Diff()
        report = PlanReport(drift=drift, head=head, artifacts_present=local is not None)
        if refresh:
            result = await self.reconciler.run(
                ReconcileOptions(dry_run=True, node_filter=node_filter, local=local, cancel=cancel)
            )
            report.remote = result.diff
            report.conflicts = result.diff.conflicts
            report.skipped_nodes = result.skipped_nodes
        return report

    async def apply(
        self,
        dry_run: bool = False,
        policy: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ApplyReport:
        """Push artifact edits to the hypervisor, wait for their tasks, then re-sync."""
        local = await self._local()
        if local is None:
            logger.info("No artifacts to apply")
            return ApplyReport(mutations=[], dry_run=dry_run)

        result = await self.reconciler.run(ReconcileOptions(dry_run=True, allow_partial=False, cancel=cancel))
        three_way = self.engine.three_way(result.base, result.remote, local)
        conflict_policy = get_policy(policy or self.context.conflict_policy)
        skipped: set = set()
        if three_way.conflicts:
            if isinstance(conflict_policy, Manual):
                raise ReconciliationConflict(three_way.conflicts, sequence=result.base_head)
            if isinstance(conflict_policy, PreferRemote):
                skipped = set(three_way.conflict_identities)

        edits = [i for i in sorted(three_way.local.identities(), key=Identity.sort_key) if i not in skipped]
        mutations = self._mutations(edits, result.remote, local)
        if dry_run or not mutations:
            return ApplyReport(mutations=mutations, dry_run=dry_run)

        tasks: List[TaskResult] = []
        executed: List[Mutation] = []
        for phase in PHASES:
            batch = [m for m in mutations if m.action == phase]
            if not batch:
                continue
            phase_tasks = await self._execute(batch, cancel)
            executed.extend(batch)
            tasks.extend(phase_tasks)
            if not all(t.success for t in phase_tasks):
                logger.warning("Stopping apply after failed %s phase", phase)
                break

        audit = [m.describe() for m in executed]
        audit.extend(t.audit_line() for t in tasks)
        # Edits that did not land stay pending in the tree unless the remote side was chosen.
        resync_policy = PreferRemote.name if isinstance(conflict_policy, PreferRemote) else PreferLocal.name
        report = ApplyReport(mutations=mutations, tasks=tasks)
        report.sync = await self.sync(policy=resync_policy, audit=audit, cancel=cancel)
        return report

    def _mutations(self, edits: List[Identity], remote: ResourceSet, local: ResourceSet) -> List[Mutation]:
        mutations: List[Mutation] = []
        for identity in edits:
            current = remote.get(identity)
            desired = local.get(identity)
            if identity.kind == ResourceKind.NODE:
                raise UnsupportedOperationError(
                    "Nodes are discovered, not managed; revert the node artifact edit",
                    identity=str(identity),
                )
            if current is None and desired is not None:
                mutations.append(Mutation("create", identity, _spec(desired)))
                if isinstance(desired, Guest) and desired.status.value == "running":
                    mutations.append(Mutation("status", identity, {"status": "running", "current": "stopped"}))
            elif desired is None and current is not None:
                mutations.append(Mutation("delete", identity))
            elif current is not None and desired is not None:
                mutations.extend(self._updates(identity, current, desired))
        return sorted(mutations, key=Mutation.sort_key)

    def _updates(self, identity: Identity, current: Resource, desired: Resource) -> List[Mutation]:
        changes: Dict[str, Any] = {}
        mutations = []
        for delta in self.engine.field_deltas(current, desired):
            if delta.field == "status":
                mutations.append(Mutation("status", identity, {"status": delta.new, "current": delta.old}))
            elif delta.field == "disks":
                before = {d["slot"]: d for d in delta.old or ()}
                changes["disks"] = [d for d in delta.new or () if before.get(d["slot"]) != d]
            else:
                changes[delta.field] = delta.new
        if changes:
            if identity.kind == ResourceKind.STORAGE:
                raise UnsupportedOperationError(
                    "Storage volumes cannot be modified in place", identity=str(identity), fields=sorted(changes)
                )
            mutations.append(Mutation("update", identity, changes))
        return mutations

    async def _execute(self, batch: List[Mutation], cancel: Optional[asyncio.Event]) -> List[TaskResult]:
        pending = []
        for mutation in batch:
            logger.info("Applying %s", mutation.describe())
            if mutation.action == "create":
                upid = await self.client.create_resource(mutation.identity, mutation.payload)
            elif mutation.action == "update":
                upid = await self.client.update_resource(mutation.identity, mutation.payload)
            elif mutation.action == "status":
                upid = await self.client.set_status(
                    mutation.identity, mutation.payload["status"], current=mutation.payload.get("current")
                )
            else:
                upid = await self.client.delete_resource(mutation.identity)
            mutation.upid = upid
            if upid:
                pending.append(parse_upid(upid))
        return await self.poller.poll_many(pending, concurrency=self.context.discovery_concurrency, cancel=cancel)

    async def history(self, limit: Optional[int] = None) -> List[Snapshot]:
        snapshots = await anyio.to_thread.run_sync(self.store.history, limit)
        return await anyio.to_thread.run_sync(partial(list, snapshots))

    async def show(self, sequence: int) -> Snapshot:
        return await anyio.to_thread.run_sync(self.store.snapshot, sequence)


def _spec(resource: Resource) -> Dict[str, Any]:
    return resource.model_dump(mode="json", exclude={"metrics", "annotations"})
