"""
One-way Terraform export of guests for the Telmate ``proxmox`` provider.

Each VM and container gets its own ``terraform/<kind>_<node>_<vmid>.tf``.
The export is derived from the same ResourceSet as the YAML tree and is
never parsed back.
"""
import json
import re
from typing import Any, Dict, List, Tuple

from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Container, Guest, VirtualMachine

MIB = 1024 * 1024
GIB = 1024 * MIB

TF_HEADER = "# Managed by pvesync. Generated from the reconciled state; do not edit.\n"

_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")


def _resource_name(guest: Guest) -> str:
    base = _NAME_RE.sub("_", guest.name or f"{guest.kind.value}_{guest.vmid}")
    if not base[:1].isalpha():
        base = f"{guest.kind.value}_{base}"
    return f"{base}_{guest.vmid}"


def _value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(str(value))


def _block(lines: List[str], name: str, attributes: Dict[str, Any], indent: str = "  ") -> None:
    lines.append(f"{indent}{name} {{")
    width = max(len(k) for k in attributes)
    for key in sorted(attributes):
        lines.append(f"{indent}  {key.ljust(width)} = {_value(attributes[key])}")
    lines.append(f"{indent}}}")


def _guest_tf(guest: Guest) -> str:
    if isinstance(guest, VirtualMachine):
        resource_type = "proxmox_vm_qemu"
        attributes: Dict[str, Any] = {
            "name": guest.name or f"vm-{guest.vmid}",
            "target_node": guest.node,
            "vmid": guest.vmid,
            "cores": guest.cores,
            "memory": guest.memory // MIB,
            "vm_state": guest.status.value if guest.status.value in ("running", "stopped") else "running",
        }
    else:
        resource_type = "proxmox_lxc"
        attributes = {
            "hostname": guest.name or f"ct-{guest.vmid}",
            "target_node": guest.node,
            "vmid": guest.vmid,
            "cores": guest.cores,
            "memory": guest.memory // MIB,
            "swap": guest.swap // MIB if isinstance(guest, Container) else 0,
            "start": guest.status.value == "running",
        }

    width = max(len(k) for k in attributes)
    lines = [TF_HEADER.rstrip("\n"), "", f'resource "{resource_type}" "{_resource_name(guest)}" {{']
    for key in sorted(attributes):
        lines.append(f"  {key.ljust(width)} = {_value(attributes[key])}")

    for disk in guest.disks:
        lines.append("")
        if isinstance(guest, Container) and disk.slot == "rootfs":
            _block(lines, "rootfs", {"storage": disk.storage, "size": f"{max(1, disk.size // GIB)}G"})
        elif isinstance(guest, Container):
            _block(lines, "mountpoint", {"key": disk.slot, "slot": disk.slot, "storage": disk.storage, "size": f"{max(1, disk.size // GIB)}G"})
        else:
            _block(lines, "disk", {"slot": disk.slot, "storage": disk.storage, "size": f"{max(1, disk.size // GIB)}G"})
    lines.append("}")
    return "\n".join(lines) + "\n"


def render_terraform(resources: ResourceSet) -> List[Tuple[str, str]]:
    """``(path, content)`` pairs for every guest, ordered by identity."""
    files = []
    for guest in resources.of_type(Guest):
        files.append((f"terraform/{guest.kind.value}_{guest.node}_{guest.vmid}.tf", _guest_tf(guest)))
    return files
