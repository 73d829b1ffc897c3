"""
Normalization of raw Proxmox API records into Resource Model instances.

Everything here is pure: the adapter fetches, these functions translate.
Volatile runtime counters go to ``metrics`` so that rediscovering an
unchanged cluster produces identical significant fields.
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pvesync.model.resources import (
    Attachment,
    Container,
    Disk,
    GuestStatus,
    Node,
    NodeStatus,
    ResourceKind,
    StorageVolume,
    VirtualMachine,
)

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}

VM_DISK_RE = re.compile(r"^(scsi|sata|ide|virtio)\d+$|^efidisk0$|^tpmstate0$")
CT_DISK_RE = re.compile(r"^rootfs$|^mp\d+$")

# Runtime counters reported by list and status endpoints.
METRIC_KEYS = (
    "uptime", "cpu", "mem", "maxmem", "disk", "maxdisk", "diskread", "diskwrite",
    "netin", "netout", "pid", "qmpstatus", "lock",
)

_VM_MODELED = {"name", "cores", "sockets", "memory", "template", "digest"}
_CT_MODELED = {"hostname", "cores", "memory", "swap", "template", "digest"}


def parse_size(value: Any) -> int:
    """Parse a Proxmox size (``32G``, ``512M``, ``1024``) into bytes."""
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[unit.upper()])


def parse_disk(slot: str, spec: str) -> Optional[Disk]:
    """
    Parse a disk config entry like ``local-lvm:vm-100-disk-0,size=32G``.

    Returns None for CD-ROM media and passthrough entries without a storage.
    """
    parts = str(spec).split(",")
    options = dict(p.split("=", 1) for p in parts[1:] if "=" in p)
    if options.get("media") == "cdrom" or parts[0] in ("none", "cdrom"):
        return None
    storage = parts[0].split(":", 1)[0] if ":" in parts[0] else ""
    size = parse_size(options["size"]) if "size" in options else 0
    return Disk(slot=slot, storage=storage, size=size)


def _status(raw: Dict[str, Any]) -> GuestStatus:
    status = str(raw.get("status") or "").lower()
    qmp = str(raw.get("qmpstatus") or "").lower()
    if qmp in ("paused", "suspended", "prelaunch") or status in ("paused", "suspended"):
        return GuestStatus.PAUSED
    if status == "running":
        return GuestStatus.RUNNING
    if status == "stopped":
        return GuestStatus.STOPPED
    return GuestStatus.UNKNOWN


def _is_true(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _metrics(raw: Dict[str, Any], config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    metrics = {key: raw[key] for key in METRIC_KEYS if raw.get(key) is not None}
    if config and config.get("digest"):
        metrics["digest"] = config["digest"]
    return metrics


def _memory_bytes(config: Dict[str, Any], raw: Dict[str, Any], key: str = "memory") -> int:
    if config.get(key) is not None:
        return int(config[key]) * MIB
    if key == "memory" and raw.get("maxmem") is not None:
        return int(raw["maxmem"])
    return 0


def cluster_role(status: Optional[List[Dict[str, Any]]]) -> str:
    if status is None:
        return "unknown"
    if any(entry.get("type") == "cluster" for entry in status):
        return "member"
    return "standalone"


def normalize_node(raw: Dict[str, Any], role: str = "unknown") -> Node:
    try:
        status = NodeStatus(str(raw.get("status", "unknown")).lower())
    except ValueError:
        status = NodeStatus.UNKNOWN
    return Node(
        name=raw["node"],
        role=role,
        cpus=int(raw.get("maxcpu") or 0),
        memory=int(raw.get("maxmem") or 0),
        status=status,
        metrics=_metrics({k: v for k, v in raw.items() if k != "maxmem"}),
    )


def _split_disks(config: Dict[str, Any], pattern: re.Pattern) -> Tuple[Tuple[Disk, ...], Dict[str, Any]]:
    disks: List[Disk] = []
    rest: Dict[str, Any] = {}
    for key, value in config.items():
        if pattern.match(key):
            disk = parse_disk(key, value)
            if disk is not None:
                disks.append(disk)
                continue
        rest[key] = value
    return tuple(disks), rest


def normalize_vm(node: str, raw: Dict[str, Any], config: Dict[str, Any]) -> VirtualMachine:
    disks, rest = _split_disks(config, VM_DISK_RE)
    cores = int(config.get("cores") or raw.get("cpus") or 1) * int(config.get("sockets") or 1)
    return VirtualMachine(
        node=node,
        vmid=int(raw["vmid"]),
        name=str(config.get("name") or raw.get("name") or ""),
        status=_status(raw),
        cores=cores,
        memory=_memory_bytes(config, raw),
        disks=disks,
        template=_is_true(config.get("template", raw.get("template", 0))),
        extensions={k: v for k, v in rest.items() if k not in _VM_MODELED},
        metrics=_metrics(raw, config),
    )


def normalize_container(node: str, raw: Dict[str, Any], config: Dict[str, Any]) -> Container:
    disks, rest = _split_disks(config, CT_DISK_RE)
    return Container(
        node=node,
        vmid=int(raw["vmid"]),
        name=str(config.get("hostname") or raw.get("name") or ""),
        status=_status(raw),
        cores=int(config.get("cores") or raw.get("cpus") or 1),
        memory=_memory_bytes(config, raw),
        swap=_memory_bytes(config, raw, key="swap"),
        disks=disks,
        template=_is_true(config.get("template", raw.get("template", 0))),
        extensions={k: v for k, v in rest.items() if k not in _CT_MODELED},
        metrics=_metrics(raw, config),
    )


def normalize_volume(
    node: str,
    raw: Dict[str, Any],
    guests: Dict[int, ResourceKind],
) -> StorageVolume:
    """
    Build a volume on ``node``; ``guests`` maps vmid to kind for the guests
    hosted there. An owner vmid with no matching guest marks the volume
    detached.
    """
    owner = raw.get("vmid")
    attachment = None
    detached = False
    if owner not in (None, "", 0):
        kind = guests.get(int(owner))
        if kind is not None:
            attachment = Attachment(kind=kind, vmid=int(owner))
        else:
            detached = True
    volid = raw["volid"]
    extensions = {k: raw[k] for k in ("format",) if raw.get(k)}
    return StorageVolume(
        node=node,
        volid=volid,
        pool=str(raw.get("storage") or volid.split(":", 1)[0]),
        size=int(raw.get("size") or 0),
        content=str(raw.get("content") or "images"),
        attachment=attachment,
        detached=detached,
        extensions=extensions,
        metrics={"used": raw["used"]} if raw.get("used") is not None else {},
    )


def attribute_shared_volumes(
    reported: Dict[str, Iterable[Dict[str, Any]]],
    owners: Dict[int, str],
    complete: bool,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Assign each shared volume to exactly one node.

    ``reported`` maps node name to the shared volume records it listed and
    ``owners`` maps vmid to the node hosting that guest. A volume goes to its
    owner's node; ownerless or orphaned volumes go to the first reporting node
    by name, but only when every node was discovered, since otherwise the
    owner may live on a node that was not queried.
    """
    assigned: Dict[str, List[Dict[str, Any]]] = {name: [] for name in reported}
    seen = set()
    for name in sorted(reported):
        for record in reported[name]:
            volid = record["volid"]
            if volid in seen:
                continue
            owner = record.get("vmid")
            target = owners.get(int(owner)) if owner not in (None, "", 0) else None
            if target is None:
                if not complete:
                    continue
                target = name
            elif target not in assigned:
                continue
            seen.add(volid)
            assigned[target].append(record)
    return assigned
