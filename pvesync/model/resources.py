"""
Resource Model: value objects for nodes, guests, storage volumes and tasks.

Resources are frozen pydantic models. Mutation is always expressed by building
a new instance (``model_copy(update=...)``) inside a new ResourceSet.
"""
from enum import Enum
from typing import Any, ClassVar, Dict, NamedTuple, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResourceKind(str, Enum):
    """Resource kinds, in the order they sort within a ResourceSet."""
    NODE = "node"
    VM = "vm"
    CONTAINER = "container"
    STORAGE = "storage"


_KIND_ORDER = {kind: index for index, kind in enumerate(ResourceKind)}


class NodeStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class GuestStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    UNKNOWN = "unknown"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Identity(NamedTuple):
    """Stable key ``(kind, node, id)`` of a resource."""
    kind: ResourceKind
    node: str
    id: Union[int, str]

    def sort_key(self) -> Tuple[Any, ...]:
        if isinstance(self.id, int):
            id_key: Tuple[Any, ...] = (0, self.id, "")
        else:
            id_key = (1, 0, self.id)
        return (_KIND_ORDER[self.kind], self.node, id_key)

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.node}/{self.id}"

    @classmethod
    def parse(cls, text: str) -> "Identity":
        """Inverse of ``str(identity)``; volids may contain '/'."""
        try:
            kind_text, node, raw_id = text.split("/", 2)
            kind = ResourceKind(kind_text)
        except ValueError as e:
            raise ValueError(f"Invalid identity: {text!r}") from e
        if kind in (ResourceKind.VM, ResourceKind.CONTAINER):
            return cls(kind, node, int(raw_id))
        return cls(kind, node, raw_id)


class FrozenMap(dict):
    """A dict that rejects in-place changes; copies and pickles as itself."""

    def _immutable(self, *args: Any, **kwargs: Any) -> None:
        raise TypeError(f"{type(self).__name__} does not support item assignment")

    __setitem__ = __delitem__ = __ior__ = _immutable
    clear = pop = popitem = setdefault = update = _immutable

    def __reduce__(self):
        return (type(self), (dict(self),))


class Resource(BaseModel):
    """
    Base for everything with an identity.

    ``extensions`` holds hypervisor config fields that are not modeled
    explicitly; ``metrics`` holds volatile runtime counters that are stored
    but never diffed or rendered; ``annotations`` holds fields added by hand
    to an artifact file, round-tripped opaquely.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ClassVar[ResourceKind]
    SIGNIFICANT_FIELDS: ClassVar[Tuple[str, ...]] = ()

    extensions: Dict[str, Any] = Field(default_factory=FrozenMap)
    metrics: Dict[str, Any] = Field(default_factory=FrozenMap)
    annotations: Dict[str, Any] = Field(default_factory=FrozenMap)

    @field_validator("extensions", "metrics", "annotations")
    @classmethod
    def _freeze(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return FrozenMap(value)

    @property
    def identity(self) -> Identity:
        raise NotImplementedError

    @property
    def node_name(self) -> str:
        return self.identity.node

    def significant(self, extension_keys: Tuple[str, ...] = ()) -> Dict[str, Any]:
        """Project the fields that participate in diffing, JSON-normalized."""
        data = self.model_dump(mode="json", include=set(self.SIGNIFICANT_FIELDS))
        for key in extension_keys:
            if key in self.extensions:
                data[f"extensions.{key}"] = self.extensions[key]
        return data

    def to_record(self) -> Dict[str, Any]:
        """Serializable dict including ``kind``, used by the store and snapshots."""
        record = self.model_dump(mode="json", exclude={"annotations"})
        record["kind"] = self.kind.value
        return record


class Node(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.NODE
    SIGNIFICANT_FIELDS: ClassVar[Tuple[str, ...]] = ("role", "status", "cpus", "memory")

    name: str = Field(min_length=1)
    role: str = "unknown"
    cpus: int = Field(default=0, ge=0)
    memory: int = Field(default=0, ge=0, description="Memory in bytes")
    status: NodeStatus = NodeStatus.UNKNOWN

    @property
    def identity(self) -> Identity:
        return Identity(ResourceKind.NODE, self.name, self.name)


class Disk(BaseModel):
    """A disk descriptor of a guest allocation."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    slot: str = Field(min_length=1)
    storage: str = ""
    size: int = Field(default=0, ge=0, description="Size in bytes")


class Guest(Resource):
    """Shared shape of VMs and containers."""
    SIGNIFICANT_FIELDS: ClassVar[Tuple[str, ...]] = ("name", "status", "cores", "memory", "disks")

    node: str = Field(min_length=1)
    vmid: int = Field(ge=1)
    name: str = ""
    status: GuestStatus = GuestStatus.UNKNOWN
    cores: int = Field(default=1, ge=0)
    memory: int = Field(default=0, ge=0, description="Memory in bytes")
    disks: Tuple[Disk, ...] = ()
    template: bool = False

    @field_validator("disks")
    @classmethod
    def _sort_disks(cls, disks: Tuple[Disk, ...]) -> Tuple[Disk, ...]:
        slots = [d.slot for d in disks]
        if len(slots) != len(set(slots)):
            raise ValueError(f"duplicate disk slot in {slots}")
        return tuple(sorted(disks, key=lambda d: d.slot))

    @property
    def identity(self) -> Identity:
        return Identity(self.kind, self.node, self.vmid)


class VirtualMachine(Guest):
    kind: ClassVar[ResourceKind] = ResourceKind.VM


class Container(Guest):
    kind: ClassVar[ResourceKind] = ResourceKind.CONTAINER
    SIGNIFICANT_FIELDS: ClassVar[Tuple[str, ...]] = Guest.SIGNIFICANT_FIELDS + ("swap",)

    swap: int = Field(default=0, ge=0, description="Swap in bytes")


class Attachment(BaseModel):
    """Weak reference from a volume to the guest using it."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ResourceKind
    vmid: int

    @field_validator("kind")
    @classmethod
    def _guest_kind(cls, kind: ResourceKind) -> ResourceKind:
        if kind not in (ResourceKind.VM, ResourceKind.CONTAINER):
            raise ValueError("volumes can only attach to vm or container")
        return kind


class StorageVolume(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.STORAGE
    SIGNIFICANT_FIELDS: ClassVar[Tuple[str, ...]] = ("pool", "size", "attachment", "detached")

    node: str = Field(min_length=1)
    volid: str = Field(min_length=1)
    pool: str = ""
    size: int = Field(default=0, ge=0, description="Size in bytes")
    content: str = "images"
    attachment: Optional[Attachment] = None
    detached: bool = False

    @property
    def identity(self) -> Identity:
        return Identity(ResourceKind.STORAGE, self.node, self.volid)

    def attachment_identity(self) -> Optional[Identity]:
        if self.attachment is None:
            return None
        return Identity(self.attachment.kind, self.node, self.attachment.vmid)


class Task(BaseModel):
    """Handle of an asynchronous hypervisor operation. Never persisted as a resource."""
    model_config = ConfigDict(frozen=True)

    upid: str
    node: str
    type: str = ""
    target: Optional[str] = None
    status: TaskStatus = TaskStatus.QUEUED
    exit_status: Optional[str] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)

    def audit_line(self) -> str:
        parts = [self.upid, self.type or "-", self.target or "-", self.status.value]
        if self.exit_status:
            parts.append(self.exit_status)
        return " ".join(parts)


KIND_MODELS: Dict[ResourceKind, Type[Resource]] = {
    ResourceKind.NODE: Node,
    ResourceKind.VM: VirtualMachine,
    ResourceKind.CONTAINER: Container,
    ResourceKind.STORAGE: StorageVolume,
}


def resource_from_record(record: Dict[str, Any]) -> Resource:
    """Rebuild a resource from ``Resource.to_record`` output."""
    data = dict(record)
    try:
        kind = ResourceKind(data.pop("kind"))
    except (KeyError, ValueError) as e:
        raise ValueError(f"record has no valid kind: {record!r}") from e
    return KIND_MODELS[kind].model_validate(data)
