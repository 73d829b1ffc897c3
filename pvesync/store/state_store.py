"""
State Store: durable record of the last reconciled ResourceSet and the
append-only snapshot history.

All methods are blocking; async callers run them with
``anyio.to_thread.run_sync``. Commits are serialized in-process by a lock and
across processes by SQLite's write lock plus the snapshot primary key.
"""
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple, Union

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from pvesync.database.connection import session_scope
from pvesync.database.engine import create_session_factory, create_store_engine, ensure_schema
from pvesync.database.models import (
    ContainerRecord,
    NodeRecord,
    SnapshotRecord,
    StorageVolumeRecord,
    VMRecord,
)
from pvesync.errors import (
    ConcurrentSyncError,
    InvalidResourceSetError,
    NotFoundError,
    StoreCorruptionError,
    StoreWriteError,
)
from pvesync.model.diff import Diff, Snapshot
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Container, Node, Resource, StorageVolume, VirtualMachine

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 50


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_snapshot(row: SnapshotRecord) -> Snapshot:
    return Snapshot(
        sequence=row.sequence,
        created_at=_aware(row.created_at),
        resources=ResourceSet.from_records(row.resources),
        diff=Diff.from_dict(row.diff),
        audit=tuple(row.audit or ()),
    )


def _to_row(resource: Resource):
    record = resource.to_record()
    if isinstance(resource, Node):
        return NodeRecord(
            name=resource.name,
            role=resource.role,
            cpus=resource.cpus,
            memory=resource.memory,
            status=resource.status.value,
            record=record,
        )
    if isinstance(resource, (VirtualMachine, Container)):
        model = VMRecord if isinstance(resource, VirtualMachine) else ContainerRecord
        return model(
            node_name=resource.node,
            vmid=resource.vmid,
            name=resource.name,
            status=resource.status.value,
            cores=resource.cores,
            memory=resource.memory,
            template=resource.template,
            record=record,
        )
    if isinstance(resource, StorageVolume):
        return StorageVolumeRecord(
            node_name=resource.node,
            volid=resource.volid,
            pool=resource.pool,
            size=resource.size,
            attachment_kind=resource.attachment.kind.value if resource.attachment else None,
            attachment_vmid=resource.attachment.vmid if resource.attachment else None,
            detached=resource.detached,
            record=record,
        )
    raise StoreWriteError(f"Unsupported resource type {type(resource).__name__}")


class SnapshotHistory:
    """
    Lazy, finite, restartable view of snapshots, newest first.

    Each iteration starts from the head as it was when the view was created
    and pages through the table, so iterating twice yields the same sequence
    even if commits land in between.
    """

    def __init__(self, store: "StateStore", limit: Optional[int] = None, page_size: int = HISTORY_PAGE_SIZE):
        self._store = store
        self._limit = limit
        self._page_size = page_size
        self._head = store.head()

    def __iter__(self) -> Iterator[Snapshot]:
        remaining = self._limit
        upper = self._head
        while upper > 0 and (remaining is None or remaining > 0):
            size = self._page_size if remaining is None else min(self._page_size, remaining)
            page = self._store._page(upper, size)
            if not page:
                return
            for snapshot in page:
                yield snapshot
            upper = page[-1].sequence - 1
            if remaining is not None:
                remaining -= len(page)

    def __repr__(self) -> str:
        return f"SnapshotHistory(head={self._head}, limit={self._limit})"


class StateStore:
    """
    Relational repository of reconciled state.

    Usage:
        store = StateStore(context.db_path)
        snapshot = store.commit(resources, diff, expected_head=store.head())
        for snapshot in store.history(limit=10):
            ...
    """

    def __init__(self, db_path: Union[str, Path], commit_wait: bool = False, verify: bool = True):
        self.db_path = Path(db_path)
        self.commit_wait = commit_wait
        self._lock = threading.Lock()
        self._engine = create_store_engine(self.db_path, busy_timeout=30.0 if commit_wait else 1.0)
        self._sessions = create_session_factory(self._engine)
        ensure_schema(self._engine)
        if verify:
            self.verify()

    # ---------- reads ----------

    def head(self) -> int:
        """Sequence number of the newest snapshot, 0 for an empty store."""
        with session_scope(self._sessions) as session:
            return self._head(session)

    def current(self) -> ResourceSet:
        return self.current_with_head()[0]

    def current_with_head(self) -> Tuple[ResourceSet, int]:
        """Current state and the head it belongs to, read in one transaction."""
        with session_scope(self._sessions) as session:
            head = self._head(session)
            records = []
            for model in (NodeRecord, VMRecord, ContainerRecord, StorageVolumeRecord):
                records.extend(session.scalars(select(model.record)).all())
        return ResourceSet.from_records(records), head

    def snapshot(self, sequence: int) -> Snapshot:
        with session_scope(self._sessions) as session:
            row = session.get(SnapshotRecord, sequence)
            if row is None:
                raise NotFoundError(sequence)
            return _to_snapshot(row)

    def at(self, sequence: int) -> ResourceSet:
        """The ResourceSet committed by snapshot ``sequence``."""
        return self.snapshot(sequence).resources

    def history(self, limit: Optional[int] = None) -> SnapshotHistory:
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        return SnapshotHistory(self, limit)

    def verify(self) -> None:
        """Raise StoreCorruptionError unless sequences are exactly 1..head."""
        with session_scope(self._sessions) as session:
            count, low, high = session.execute(
                select(func.count(), func.min(SnapshotRecord.sequence), func.max(SnapshotRecord.sequence))
            ).one()
        if count and (low != 1 or high != count):
            raise StoreCorruptionError(
                f"Snapshot log is not contiguous: {count} snapshot(s) spanning {low}..{high}",
                count=count,
                first=low,
                last=high,
                db_path=str(self.db_path),
            )

    def _page(self, upper: int, size: int) -> List[Snapshot]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(SnapshotRecord)
                .where(SnapshotRecord.sequence <= upper)
                .order_by(SnapshotRecord.sequence.desc())
                .limit(size)
            ).all()
            return [_to_snapshot(row) for row in rows]

    @staticmethod
    def _head(session: Session) -> int:
        return session.scalar(select(func.max(SnapshotRecord.sequence))) or 0

    # ---------- writes ----------

    def commit(
        self,
        resources: ResourceSet,
        diff: Diff,
        expected_head: Optional[int] = None,
        audit: Iterable[str] = (),
    ) -> Snapshot:
        """
        Replace the current state with ``resources`` and append a snapshot.

        Atomic: the new state and its snapshot become visible together or
        not at all.

        Raises:
            StoreWriteError: ``resources`` references a missing node, or the
                write could not be made durable
            ConcurrentSyncError: another commit is in flight (and
                ``commit_wait`` is off) or the head moved past ``expected_head``
        """
        try:
            resources.validate()
        except InvalidResourceSetError as e:
            raise StoreWriteError(
                "Refusing to commit a resource set with dangling node references",
                identities=e.context.get("identities", []),
            ) from e

        if not self._lock.acquire(blocking=self.commit_wait):
            raise ConcurrentSyncError("Another commit is in progress", expected_head=expected_head)
        try:
            return self._commit_locked(resources, diff, expected_head, tuple(audit))
        finally:
            self._lock.release()

    def _commit_locked(
        self,
        resources: ResourceSet,
        diff: Diff,
        expected_head: Optional[int],
        audit: Tuple[str, ...],
    ) -> Snapshot:
        created_at = datetime.now(timezone.utc)
        try:
            with session_scope(self._sessions) as session:
                head = self._head(session)
                if expected_head is not None and head != expected_head:
                    raise ConcurrentSyncError(
                        f"Store head moved from {expected_head} to {head} during the run",
                        expected_head=expected_head,
                        head=head,
                    )
                sequence = head + 1

                for model in (StorageVolumeRecord, ContainerRecord, VMRecord, NodeRecord):
                    session.execute(delete(model))
                session.flush()
                session.add_all(_to_row(r) for r in resources.nodes())
                session.flush()
                session.add_all(_to_row(r) for r in resources.values() if not isinstance(r, Node))
                session.add(
                    SnapshotRecord(
                        sequence=sequence,
                        created_at=created_at,
                        resources=resources.to_records(),
                        diff=diff.to_dict(),
                        audit=list(audit),
                        added_count=len(diff.added),
                        removed_count=len(diff.removed),
                        changed_count=len(diff.changed),
                    )
                )
                session.flush()
        except IntegrityError as e:
            if "snapshots" in str(e.orig):
                raise ConcurrentSyncError(
                    "Another process committed snapshot first", expected_head=expected_head
                ) from e
            raise StoreWriteError(f"Commit violated a storage constraint: {e.orig}") from e
        except OperationalError as e:
            if "locked" in str(e.orig):
                raise ConcurrentSyncError("State database is locked by another writer") from e
            raise StoreWriteError(f"Commit failed: {e.orig}") from e

        logger.info(
            "Committed snapshot %d (%d resources, %s)",
            sequence,
            len(resources),
            diff.summary(),
        )
        return Snapshot(sequence=sequence, created_at=created_at, resources=resources, diff=diff, audit=audit)

    def close(self) -> None:
        self._engine.dispose()
