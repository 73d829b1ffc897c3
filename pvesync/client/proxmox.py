"""
Proxmox VE API client over httpx.

Implements the ApiClient protocol against ``https://host:port/api2/json``
with PVE API token authentication. Read calls are retried with backoff on
transient failures; mutations are never retried.
"""
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from pvesync.config import Settings
from pvesync.errors import TransientTransportError, TransportError, UnsupportedOperationError
from pvesync.model.resources import Identity, ResourceKind
from pvesync.utils.retry import async_retry

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
GIB = 1024 * MIB

# Guest content types worth tracking as volumes; ISOs, templates and backups are not.
GUEST_CONTENT = ("images", "rootdir")


def _gib(size: int) -> int:
    return max(1, -(-int(size) // GIB))


def _guest_path(identity: Identity) -> str:
    kind = {ResourceKind.VM: "qemu", ResourceKind.CONTAINER: "lxc"}.get(identity.kind)
    if kind is None:
        raise UnsupportedOperationError(f"{identity.kind.value} is not a guest", identity=str(identity))
    return f"/nodes/{identity.node}/{kind}/{identity.id}"


class ProxmoxApiClient:
    """
    Client for the Proxmox VE REST API.

    Usage:
        client = ProxmoxApiClient.from_settings(settings)
        nodes = await client.get_nodes()
        await client.close()
    """

    def __init__(
        self,
        host: str,
        port: int = 8006,
        token_id: Optional[str] = None,
        token_secret: Optional[str] = None,
        verify_tls: bool = True,
        timeout_s: float = 10.0,
        retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not token_id or not token_secret:
            raise TransportError("Proxmox API token id and secret are required")
        self.base_url = f"https://{host}:{port}/api2/json"
        self.retries = retries
        self._timeout_s = timeout_s
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"PVEAPIToken={token_id}={token_secret}",
                "Accept": "application/json",
            },
            verify=verify_tls,
            timeout=timeout_s,
            transport=transport,
        )
        logger.info("Initialized Proxmox client base_url=%s verify_tls=%s", self.base_url, verify_tls)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProxmoxApiClient":
        return cls(
            host=settings.API_HOST,
            port=settings.API_PORT,
            token_id=settings.API_TOKEN_ID,
            token_secret=settings.API_TOKEN_SECRET,
            verify_tls=settings.VERIFY_TLS,
            timeout_s=settings.API_TIMEOUT,
            retries=settings.API_RETRIES,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute one request and return the ``data`` member of the response."""
        start_time = time.monotonic()
        try:
            response = await self._client.request(method, path, params=params, data=data)
        except httpx.RequestError as e:
            latency_ms = int((time.monotonic() - start_time) * 1000)
            logger.error("HTTP %s %s failed in %dms: %s", method, path, latency_ms, e)
            raise TransientTransportError(
                f"HTTP request failed: {e.__class__.__name__}: {e}", path=path
            ) from e

        latency_ms = int((time.monotonic() - start_time) * 1000)
        status = response.status_code
        if status >= 500:
            logger.warning("HTTP %s %s -> %s in %dms", method, path, status, latency_ms)
            raise TransientTransportError(f"{method} {path} -> HTTP {status}", status=status, path=path)
        if status in (401, 403):
            raise TransportError(f"Authentication failed for {method} {path}", status=status, path=path)
        if status >= 400:
            raise TransportError(f"{method} {path} -> HTTP {status}: {response.text}", status=status, path=path)

        logger.debug("HTTP %s %s -> %s in %dms", method, path, status, latency_ms)
        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned non-JSON body", status=status, path=path) from e
        return payload.get("data") if isinstance(payload, dict) else payload

    @async_retry(catch_exceptions=TransientTransportError)
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    # ---------- read surface ----------

    async def get_nodes(self) -> List[Dict[str, Any]]:
        return list(await self._get("/nodes") or [])

    async def get_cluster_status(self) -> List[Dict[str, Any]]:
        return list(await self._get("/cluster/status") or [])

    async def get_vms(self, node: str) -> List[Dict[str, Any]]:
        return list(await self._get(f"/nodes/{node}/qemu") or [])

    async def get_vm_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return dict(await self._get(f"/nodes/{node}/qemu/{vmid}/config") or {})

    async def get_containers(self, node: str) -> List[Dict[str, Any]]:
        return list(await self._get(f"/nodes/{node}/lxc") or [])

    async def get_container_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return dict(await self._get(f"/nodes/{node}/lxc/{vmid}/config") or {})

    async def get_storage_volumes(self, node: str) -> List[Dict[str, Any]]:
        volumes: List[Dict[str, Any]] = []
        pools = await self._get(f"/nodes/{node}/storage", params={"enabled": 1}) or []
        for pool in pools:
            content = str(pool.get("content", ""))
            if not any(kind in content.split(",") for kind in GUEST_CONTENT):
                continue
            items = await self._get(f"/nodes/{node}/storage/{pool['storage']}/content") or []
            for item in items:
                if item.get("content") not in GUEST_CONTENT:
                    continue
                volumes.append({**item, "storage": pool["storage"], "shared": bool(pool.get("shared"))})
        return volumes

    async def get_task_status(self, node: str, upid: str) -> Dict[str, Any]:
        return dict(await self._get(f"/nodes/{node}/tasks/{upid}/status") or {})

    # ---------- mutation surface ----------

    async def create_resource(self, identity: Identity, spec: Dict[str, Any]) -> Optional[str]:
        if identity.kind == ResourceKind.NODE:
            raise UnsupportedOperationError("Nodes cannot be created through the API", identity=str(identity))

        if identity.kind == ResourceKind.STORAGE:
            pool = spec.get("pool") or str(identity.id).split(":", 1)[0]
            attachment = spec.get("attachment") or {}
            data = {
                "filename": str(identity.id).split(":", 1)[-1],
                "size": f"{_gib(spec.get('size', 0))}G",
                "vmid": attachment.get("vmid"),
            }
            await self._request("POST", f"/nodes/{identity.node}/storage/{pool}/content", data=data)
            return None

        data = self._guest_payload(identity, spec)
        data["vmid"] = identity.id
        kind = "qemu" if identity.kind == ResourceKind.VM else "lxc"
        if identity.kind == ResourceKind.CONTAINER and "ostemplate" not in data:
            raise UnsupportedOperationError(
                "Container creation requires extensions.ostemplate", identity=str(identity)
            )
        return await self._request("POST", f"/nodes/{identity.node}/{kind}", data=data)

    async def update_resource(self, identity: Identity, changes: Dict[str, Any]) -> Optional[str]:
        if identity.kind in (ResourceKind.NODE, ResourceKind.STORAGE):
            raise UnsupportedOperationError(
                f"{identity.kind.value} resources cannot be updated in place", identity=str(identity)
            )
        path = _guest_path(identity)
        for disk in changes.get("disks") or ():
            await self._request(
                "PUT", f"{path}/resize", data={"disk": disk["slot"], "size": f"{_gib(disk['size'])}G"}
            )
        data = self._guest_payload(identity, {k: v for k, v in changes.items() if k != "disks"})
        if not data:
            return None
        if identity.kind == ResourceKind.VM:
            return await self._request("POST", f"{path}/config", data=data)
        await self._request("PUT", f"{path}/config", data=data)
        return None

    async def delete_resource(self, identity: Identity) -> Optional[str]:
        if identity.kind == ResourceKind.NODE:
            raise UnsupportedOperationError("Nodes cannot be deleted through the API", identity=str(identity))
        if identity.kind == ResourceKind.STORAGE:
            pool = str(identity.id).split(":", 1)[0]
            return await self._request("DELETE", f"/nodes/{identity.node}/storage/{pool}/content/{identity.id}")
        return await self._request("DELETE", _guest_path(identity), params={"purge": 1})

    async def set_status(self, identity: Identity, status: str, current: Optional[str] = None) -> Optional[str]:
        if status == "running":
            verb = "resume" if current == "paused" else "start"
        elif status == "stopped":
            verb = "shutdown"
        elif status == "paused":
            verb = "suspend"
        else:
            raise UnsupportedOperationError(f"Cannot move a guest to status {status!r}", identity=str(identity))
        return await self._request("POST", f"{_guest_path(identity)}/status/{verb}")

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _guest_payload(identity: Identity, spec: Dict[str, Any]) -> Dict[str, Any]:
        """Translate model fields into Proxmox config parameters."""
        data: Dict[str, Any] = {}
        if spec.get("name"):
            data["name" if identity.kind == ResourceKind.VM else "hostname"] = spec["name"]
        if "cores" in spec:
            data["cores"] = spec["cores"]
        if "memory" in spec:
            data["memory"] = max(1, int(spec["memory"]) // MIB)
        if "swap" in spec:
            data["swap"] = int(spec["swap"]) // MIB
        for disk in spec.get("disks") or ():
            data[disk["slot"]] = f"{disk['storage']}:{_gib(disk['size'])}"
        for key, value in (spec.get("extensions") or {}).items():
            if isinstance(value, (str, int, float, bool)):
                data[key] = int(value) if isinstance(value, bool) else value
        for key, value in spec.items():
            if key.startswith("extensions."):
                data[key.split(".", 1)[1]] = value
        return data
