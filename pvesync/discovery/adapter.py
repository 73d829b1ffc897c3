"""
Discovery Adapter.

Queries the API client for the current remote state and normalizes it into a
ResourceSet. Per-node work fans out concurrently, bounded by the context's
discovery concurrency; one node failing never aborts the others.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pvesync.client.base import ApiClient
from pvesync.config import SyncContext
from pvesync.discovery.normalize import (
    attribute_shared_volumes,
    cluster_role,
    normalize_container,
    normalize_node,
    normalize_vm,
    normalize_volume,
)
from pvesync.errors import DiscoveryCancelledError, PartialDiscoveryError, PveSyncError
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Guest, Resource, ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class NodeDiscovery:
    """Raw results for one node before cluster-wide volume attribution."""
    name: str
    guests: List[Guest] = field(default_factory=list)
    local_volumes: List[Dict[str, Any]] = field(default_factory=list)
    shared_volumes: List[Dict[str, Any]] = field(default_factory=list)


class DiscoveryAdapter:
    """
    Builds the remote ResourceSet.

    Usage:
        adapter = DiscoveryAdapter(context, client)
        resources = await adapter.discover(node_filter=["pve1"])
    """

    def __init__(self, context: SyncContext, client: ApiClient):
        self.context = context
        self.client = client

    async def discover(
        self,
        node_filter: Optional[Iterable[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ResourceSet:
        """
        Discover nodes, guests and storage volumes.

        Raises:
            TransportError: the node list itself could not be read
            PartialDiscoveryError: some nodes failed; carries the partial set
            DiscoveryCancelledError: ``cancel`` was set before completion
        """
        self._check_cancel(cancel)
        raw_nodes = await self.client.get_nodes()
        role = await self._cluster_role()

        wanted = set(node_filter) if node_filter else None
        failures: Dict[str, str] = {}
        nodes: List[Resource] = []
        seen = set()
        targets = []
        for raw in sorted(raw_nodes, key=lambda n: n.get("node", "")):
            name = raw.get("node")
            if not name or (wanted is not None and name not in wanted):
                continue
            seen.add(name)
            if str(raw.get("status", "")).lower() == "offline":
                # The node itself is reported; its guests and volumes cannot be read.
                logger.warning("Node %s is offline; skipping its guests and storage", name)
                nodes.append(normalize_node(raw, role))
                failures[name] = f"Node {name} is offline"
                continue
            targets.append(raw)
        if wanted is not None:
            for missing in sorted(wanted - seen):
                failures[missing] = "not a cluster member"

        logger.info(
            "Discovering %d node(s) with concurrency %d",
            len(targets),
            self.context.discovery_concurrency,
        )
        semaphore = asyncio.Semaphore(self.context.discovery_concurrency)
        results = await self._gather(
            [self._discover_node(raw, semaphore, cancel) for raw in targets], cancel
        )

        discovered: List[NodeDiscovery] = []
        for raw, result in zip(targets, results):
            name = raw["node"]
            if isinstance(result, DiscoveryCancelledError):
                raise result
            if isinstance(result, (PveSyncError, ValueError)):
                logger.warning("Discovery of node %s failed: %s", name, result)
                failures[name] = str(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                nodes.append(normalize_node(raw, role))
                discovered.append(result)

        resource_set = self._assemble(nodes, discovered, complete=wanted is None and not failures)
        logger.info(
            "Discovered %d resource(s) on %d node(s), %d node(s) skipped",
            len(resource_set),
            len(nodes),
            len(failures),
        )
        if failures:
            raise PartialDiscoveryError(resource_set, failures)
        return resource_set

    async def _cluster_role(self) -> str:
        try:
            return cluster_role(await self.client.get_cluster_status())
        except PveSyncError as e:
            logger.warning("Could not read cluster status: %s", e)
            return cluster_role(None)

    async def _gather(self, coroutines: List, cancel: Optional[asyncio.Event]) -> List[Any]:
        gathered = asyncio.gather(*coroutines, return_exceptions=True)
        if cancel is None:
            return await gathered
        stopper = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({gathered, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if gathered not in done:
                gathered.cancel()
                await asyncio.gather(gathered, return_exceptions=True)
                raise DiscoveryCancelledError("Discovery cancelled")
            return gathered.result()
        finally:
            stopper.cancel()

    async def _discover_node(
        self,
        raw: Dict[str, Any],
        semaphore: asyncio.Semaphore,
        cancel: Optional[asyncio.Event],
    ) -> NodeDiscovery:
        name = raw["node"]
        async with semaphore:
            self._check_cancel(cancel)
            logger.debug("Discovering node %s", name)
            vms, containers, volumes = await asyncio.gather(
                self.client.get_vms(name),
                self.client.get_containers(name),
                self.client.get_storage_volumes(name),
            )
            result = NodeDiscovery(name)
            for vm in vms:
                self._check_cancel(cancel)
                config = await self.client.get_vm_config(name, int(vm["vmid"]))
                result.guests.append(normalize_vm(name, vm, config))
            for ct in containers:
                self._check_cancel(cancel)
                config = await self.client.get_container_config(name, int(ct["vmid"]))
                result.guests.append(normalize_container(name, ct, config))
            for volume in volumes:
                if volume.get("shared"):
                    result.shared_volumes.append(volume)
                else:
                    result.local_volumes.append(volume)
        return result

    def _assemble(
        self,
        nodes: List[Resource],
        discovered: List[NodeDiscovery],
        complete: bool,
    ) -> ResourceSet:
        owners: Dict[int, str] = {}
        kinds: Dict[str, Dict[int, ResourceKind]] = {}
        for item in discovered:
            kinds[item.name] = {g.vmid: g.kind for g in item.guests}
            for guest in item.guests:
                owners[guest.vmid] = item.name

        shared = attribute_shared_volumes(
            {item.name: item.shared_volumes for item in discovered}, owners, complete
        )
        resources: List[Resource] = list(nodes)
        for item in discovered:
            resources.extend(item.guests)
            for record in item.local_volumes + shared.get(item.name, []):
                resources.append(normalize_volume(item.name, record, kinds[item.name]))
        return ResourceSet(resources).validate().with_detached_volumes()

    @staticmethod
    def _check_cancel(cancel: Optional[asyncio.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise DiscoveryCancelledError("Discovery cancelled")
