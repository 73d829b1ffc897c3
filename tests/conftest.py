import asyncio
import copy
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from click.testing import CliRunner

from pvesync.config import SyncContext
from pvesync.errors import TransportError
from pvesync.model.resources import (
    Attachment,
    Container,
    Disk,
    GuestStatus,
    Identity,
    Node,
    NodeStatus,
    ResourceKind,
    StorageVolume,
    VirtualMachine,
)
from pvesync.store.state_store import StateStore

MIB = 1024 * 1024
GIB = 1024 * MIB


# Skip integration tests unless explicitly enabled
def pytest_addoption(parser):
    parser.addoption("--integration", action="store_true", default=False, help="Run integration tests")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--integration"):
        skip_integration = pytest.mark.skip(reason="need --integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


class FakeApiClient:
    """
    In-memory Proxmox API stand-in.

    Holds raw records in the shape the real API returns them and applies
    mutations to them, so a re-sync after ``apply`` observes the change.
    """

    def __init__(self):
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self.cluster_status: Optional[List[Dict[str, Any]]] = [{"type": "cluster", "name": "lab"}]
        self.vms: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.containers: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.volumes: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_nodes: Dict[str, Exception] = {}
        self.slow_nodes: Dict[str, float] = {}
        self.task_statuses: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.closed = False
        self._pid = 0

    # ----- fixtures -----

    def add_node(self, name: str, status: str = "online", maxcpu: int = 8, maxmem: int = 16 * GIB):
        self.nodes[name] = {"node": name, "status": status, "maxcpu": maxcpu, "maxmem": maxmem, "uptime": 1000}
        self.vms.setdefault(name, {})
        self.containers.setdefault(name, {})
        self.volumes.setdefault(name, [])
        return self

    def add_vm(self, node: str, vmid: int, name: str = "", cores: int = 2, memory: int = 2048,
               status: str = "running", **config: Any):
        self.vms[node][vmid] = {
            "raw": {"vmid": vmid, "name": name, "status": status, "uptime": 42, "cpu": 0.01},
            "config": {"name": name, "cores": cores, "memory": memory, "digest": f"d{vmid}", **config},
        }
        return self

    def add_container(self, node: str, vmid: int, hostname: str = "", cores: int = 1, memory: int = 512,
                      swap: int = 512, status: str = "running", **config: Any):
        self.containers[node][vmid] = {
            "raw": {"vmid": vmid, "name": hostname, "status": status, "uptime": 7},
            "config": {"hostname": hostname, "cores": cores, "memory": memory, "swap": swap, **config},
        }
        return self

    def add_volume(self, node: str, volid: str, size: int = 8 * GIB, vmid: Optional[int] = None,
                   shared: bool = False, content: str = "images"):
        record = {
            "volid": volid,
            "size": size,
            "content": content,
            "format": "raw",
            "storage": volid.split(":", 1)[0],
            "shared": shared,
        }
        if vmid is not None:
            record["vmid"] = vmid
        self.volumes[node].append(record)
        return self

    def _upid(self, node: str, task_type: str, target: Any) -> str:
        self._pid += 1
        return f"UPID:{node}:{self._pid:08X}:00000000:65000000:{task_type}:{target}:root@pam:"

    async def _node_call(self, node: str) -> None:
        if node in self.slow_nodes:
            await asyncio.sleep(self.slow_nodes[node])
        if node in self.fail_nodes:
            raise self.fail_nodes[node]

    # ----- read surface -----

    async def get_nodes(self):
        self.calls.append(("get_nodes",))
        return [dict(raw) for raw in self.nodes.values()]

    async def get_cluster_status(self):
        if self.cluster_status is None:
            raise TransportError("cluster status unavailable", status=500)
        return copy.deepcopy(self.cluster_status)

    async def get_vms(self, node):
        await self._node_call(node)
        return [dict(vm["raw"]) for vm in self.vms.get(node, {}).values()]

    async def get_vm_config(self, node, vmid):
        return dict(self.vms[node][vmid]["config"])

    async def get_containers(self, node):
        await self._node_call(node)
        return [dict(ct["raw"]) for ct in self.containers.get(node, {}).values()]

    async def get_container_config(self, node, vmid):
        return dict(self.containers[node][vmid]["config"])

    async def get_storage_volumes(self, node):
        await self._node_call(node)
        return [dict(v) for v in self.volumes.get(node, [])]

    async def get_task_status(self, node, upid):
        self.calls.append(("get_task_status", upid))
        statuses = self.task_statuses.get(upid)
        if statuses:
            return statuses.pop(0) if len(statuses) > 1 else dict(statuses[0])
        return {"status": "stopped", "exitstatus": "OK", "type": upid.split(":")[5]}

    # ----- mutation surface -----

    def _guests(self, identity: Identity) -> Dict[int, Dict[str, Any]]:
        return self.vms[identity.node] if identity.kind == ResourceKind.VM else self.containers[identity.node]

    async def create_resource(self, identity, spec):
        self.calls.append(("create", str(identity), spec))
        if identity.kind == ResourceKind.STORAGE:
            attachment = spec.get("attachment") or {}
            self.add_volume(identity.node, identity.id, spec.get("size", 0), attachment.get("vmid"))
            return None
        if identity.kind == ResourceKind.VM:
            self.add_vm(identity.node, identity.id, spec.get("name", ""), spec.get("cores", 1),
                        spec.get("memory", 0) // MIB, status="stopped")
            return self._upid(identity.node, "qmcreate", identity.id)
        self.add_container(identity.node, identity.id, spec.get("name", ""), spec.get("cores", 1),
                           spec.get("memory", 0) // MIB, spec.get("swap", 0) // MIB, status="stopped")
        return self._upid(identity.node, "vzcreate", identity.id)

    async def update_resource(self, identity, changes):
        self.calls.append(("update", str(identity), changes))
        config = self._guests(identity)[identity.id]["config"]
        for key, value in changes.items():
            if key == "name":
                config["name" if identity.kind == ResourceKind.VM else "hostname"] = value
            elif key in ("memory", "swap"):
                config[key] = value // MIB
            elif key == "disks":
                for disk in value:
                    config[disk["slot"]] = f"{disk['storage']}:disk-{disk['slot']},size={disk['size']}"
            elif key.startswith("extensions."):
                config[key.split(".", 1)[1]] = value
            else:
                config[key] = value
        if identity.kind == ResourceKind.VM:
            return self._upid(identity.node, "qmconfig", identity.id)
        return None

    async def delete_resource(self, identity):
        self.calls.append(("delete", str(identity)))
        if identity.kind == ResourceKind.STORAGE:
            self.volumes[identity.node] = [v for v in self.volumes[identity.node] if v["volid"] != identity.id]
            return None
        self._guests(identity).pop(identity.id)
        return self._upid(identity.node, "qmdestroy", identity.id)

    async def set_status(self, identity, status, current=None):
        self.calls.append(("status", str(identity), status))
        self._guests(identity)[identity.id]["raw"]["status"] = status
        return self._upid(identity.node, f"qm{status}", identity.id)

    async def close(self):
        self.closed = True

    def mutations(self) -> List[Tuple[Any, ...]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete", "status")]


def make_node(name: str = "pve", **fields: Any) -> Node:
    values = {"role": "member", "cpus": 8, "memory": 16 * GIB, "status": NodeStatus.ONLINE}
    values.update(fields)
    return Node(name=name, **values)


def make_vm(vmid: int = 100, node: str = "pve", **fields: Any) -> VirtualMachine:
    values = {"name": f"vm{vmid}", "status": GuestStatus.RUNNING, "cores": 2, "memory": 2048 * MIB}
    values.update(fields)
    return VirtualMachine(node=node, vmid=vmid, **values)


def make_container(vmid: int = 200, node: str = "pve", **fields: Any) -> Container:
    values = {"name": f"ct{vmid}", "status": GuestStatus.RUNNING, "cores": 1, "memory": 512 * MIB}
    values.update(fields)
    return Container(node=node, vmid=vmid, **values)


def make_volume(volid: str = "local-lvm:vm-100-disk-0", node: str = "pve", vmid: Optional[int] = 100,
                **fields: Any) -> StorageVolume:
    values: Dict[str, Any] = {"pool": volid.split(":", 1)[0], "size": 32 * GIB}
    if vmid is not None:
        values["attachment"] = Attachment(kind=ResourceKind.VM, vmid=vmid)
    values.update(fields)
    return StorageVolume(node=node, volid=volid, **values)


def make_disk(slot: str = "scsi0", storage: str = "local-lvm", size: int = 32 * GIB) -> Disk:
    return Disk(slot=slot, storage=storage, size=size)


@pytest.fixture
def context(tmp_path: Path) -> SyncContext:
    return SyncContext(
        workspace_root=tmp_path,
        db_path=tmp_path / ".pvesync" / "state.db",
        artifact_dir=tmp_path / "infrastructure",
        discovery_timeout=10.0,
        task_timeout=2.0,
        task_poll_initial=0.01,
        task_poll_max=0.05,
    )


@pytest.fixture
def store(context: SyncContext):
    state_store = StateStore(context.db_path)
    yield state_store
    state_store.close()


@pytest.fixture
def fake_client() -> FakeApiClient:
    """One-node cluster: node ``pve`` with VM 100 (2 cores, running)."""
    client = FakeApiClient()
    client.add_node("pve")
    client.add_vm("pve", 100, "web", cores=2)
    return client


@pytest.fixture
def cli_runner():
    return CliRunner()
