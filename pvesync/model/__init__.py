"""
Resource Model shared by every engine component.
"""

from .diff import Conflict, Diff, FieldDelta, ResourceChange, Snapshot
from .resource_set import ResourceSet
from .resources import (
    Attachment,
    Container,
    Disk,
    Guest,
    GuestStatus,
    Identity,
    Node,
    NodeStatus,
    Resource,
    ResourceKind,
    StorageVolume,
    Task,
    TaskStatus,
    VirtualMachine,
    resource_from_record,
)

__all__ = [
    "Attachment",
    "Conflict",
    "Container",
    "Diff",
    "Disk",
    "FieldDelta",
    "Guest",
    "GuestStatus",
    "Identity",
    "Node",
    "NodeStatus",
    "Resource",
    "ResourceChange",
    "ResourceKind",
    "ResourceSet",
    "Snapshot",
    "StorageVolume",
    "Task",
    "TaskStatus",
    "VirtualMachine",
    "resource_from_record",
]
