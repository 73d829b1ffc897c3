"""
SQLAlchemy database models for the pvesync state store.

The ``nodes``, ``vms``, ``containers`` and ``storage_volumes`` tables mirror
the current reconciled ResourceSet; ``snapshots`` is the append-only history.
Every non-node row carries its owning node as a foreign key, so a resource
whose node is absent can never be stored.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict: SQLiteJSON,
        Dict: SQLiteJSON,
        Dict[str, Any]: SQLiteJSON,
        List: SQLiteJSON,
        List[str]: SQLiteJSON,
        List[Dict[str, Any]]: SQLiteJSON,
    }


class NodeRecord(Base):
    """A hypervisor node, root of the ownership hierarchy."""
    __tablename__ = "nodes"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="unknown")
    cpus: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    memory: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Memory in bytes")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="unknown")
    record: Mapped[Dict[str, Any]] = mapped_column(SQLiteJSON, nullable=False, comment="Full resource record")


class _GuestColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vmid: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="unknown")
    cores: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    memory: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Memory in bytes")
    template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    record: Mapped[Dict[str, Any]] = mapped_column(SQLiteJSON, nullable=False, comment="Full resource record")


class VMRecord(_GuestColumns, Base):
    __tablename__ = "vms"

    node_name: Mapped[str] = mapped_column(
        ForeignKey("nodes.name", ondelete="RESTRICT"), nullable=False, index=True
    )

    __table_args__ = (UniqueConstraint("node_name", "vmid", name="uq_vms_node_vmid"),)


class ContainerRecord(_GuestColumns, Base):
    __tablename__ = "containers"

    node_name: Mapped[str] = mapped_column(
        ForeignKey("nodes.name", ondelete="RESTRICT"), nullable=False, index=True
    )

    __table_args__ = (UniqueConstraint("node_name", "vmid", name="uq_containers_node_vmid"),)


class StorageVolumeRecord(Base):
    """
    A storage volume. The attachment columns are a weak reference to a guest
    and intentionally carry no foreign key.
    """
    __tablename__ = "storage_volumes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_name: Mapped[str] = mapped_column(
        ForeignKey("nodes.name", ondelete="RESTRICT"), nullable=False, index=True
    )
    volid: Mapped[str] = mapped_column(String(512), nullable=False)
    pool: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Size in bytes")
    attachment_kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    attachment_vmid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    detached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    record: Mapped[Dict[str, Any]] = mapped_column(SQLiteJSON, nullable=False, comment="Full resource record")

    __table_args__ = (UniqueConstraint("node_name", "volid", name="uq_storage_volumes_node_volid"),)


class SnapshotRecord(Base):
    """
    Append-only snapshot log. Sequence numbers are assigned by the store as
    head + 1; a duplicate insert means another commit won the race.
    """
    __tablename__ = "snapshots"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resources: Mapped[List[Dict[str, Any]]] = mapped_column(
        SQLiteJSON, nullable=False, comment="Committed resource records"
    )
    diff: Mapped[Dict[str, Any]] = mapped_column(SQLiteJSON, nullable=False, comment="Serialized Diff")
    audit: Mapped[List[str]] = mapped_column(SQLiteJSON, nullable=False, default=list)
    added_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    removed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    changed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_snapshots_created_at", "created_at"),)
