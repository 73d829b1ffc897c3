"""
Base interface for the hypervisor API client collaborator.
"""
from typing import Any, Dict, List, Optional, Protocol

from pvesync.model.resources import Identity


class ApiClient(Protocol):
    """
    Protocol for the API client consumed by discovery, task polling and apply.

    The client owns authentication, TLS and HTTP retry semantics. Read calls
    return raw API records (plain dicts) or raise TransportError; mutation
    calls return the hypervisor task id (UPID) of the operation they started,
    or None when the operation completed synchronously.
    """

    # ----- read surface -----

    async def get_nodes(self) -> List[Dict[str, Any]]:
        """Nodes as returned by GET /nodes."""
        ...

    async def get_cluster_status(self) -> List[Dict[str, Any]]:
        """Entries of GET /cluster/status."""
        ...

    async def get_vms(self, node: str) -> List[Dict[str, Any]]:
        ...

    async def get_vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        ...

    async def get_containers(self, node: str) -> List[Dict[str, Any]]:
        ...

    async def get_container_config(self, node: str, vmid: int) -> Dict[str, Any]:
        ...

    async def get_storage_volumes(self, node: str) -> List[Dict[str, Any]]:
        """
        Guest volumes on the node's storage pools. Each record carries the
        content item fields plus ``storage`` (pool name) and ``shared``.
        """
        ...

    async def get_task_status(self, node: str, upid: str) -> Dict[str, Any]:
        ...

    # ----- mutation surface (apply only) -----

    async def create_resource(self, identity: Identity, spec: Dict[str, Any]) -> Optional[str]:
        ...

    async def update_resource(self, identity: Identity, changes: Dict[str, Any]) -> Optional[str]:
        ...

    async def delete_resource(self, identity: Identity) -> Optional[str]:
        ...

    async def set_status(self, identity: Identity, status: str, current: Optional[str] = None) -> Optional[str]:
        ...

    async def close(self) -> None:
        ...
