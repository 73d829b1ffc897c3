"""
Conflict resolution policies and the desired-state merge.

Policies are injectable strategies: the Reconciler never branches on a policy
name, it asks the policy object to resolve the conflict list.
"""
import logging
from typing import ClassVar, Dict, Iterable, Optional, Type

from pvesync.diff.engine import ThreeWayResult
from pvesync.errors import ReconciliationConflict
from pvesync.model.diff import Conflict
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Identity, Resource

logger = logging.getLogger(__name__)


class ConflictPolicy:
    """Base strategy: pick the winning resource for each conflicting identity."""

    name: ClassVar[str] = ""

    def resolve(
        self,
        conflicts: Iterable[Conflict],
        remote: ResourceSet,
        local: ResourceSet,
    ) -> Dict[Identity, Optional[Resource]]:
        """Map each conflicting identity to its desired resource, None meaning absent."""
        return {c.identity: self.choose(remote.get(c.identity), local.get(c.identity)) for c in conflicts}

    def choose(self, remote: Optional[Resource], local: Optional[Resource]) -> Optional[Resource]:
        raise NotImplementedError


class PreferRemote(ConflictPolicy):
    """The hypervisor's value wins; the artifact edit is overwritten."""

    name = "preferRemote"

    def choose(self, remote, local):
        return remote


class PreferLocal(ConflictPolicy):
    """The artifact value wins and stays pending for ``apply``."""

    name = "preferLocal"

    def choose(self, remote, local):
        return local


class Manual(ConflictPolicy):
    """Abort and surface the conflicts for an operator decision."""

    name = "manual"

    def resolve(self, conflicts, remote, local):
        conflicts = list(conflicts)
        if conflicts:
            raise ReconciliationConflict(conflicts)
        return {}


POLICIES: Dict[str, Type[ConflictPolicy]] = {
    cls.name: cls for cls in (PreferRemote, PreferLocal, Manual)
}


def get_policy(name: str) -> ConflictPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown conflict policy {name!r}; expected one of {sorted(POLICIES)}") from None


def merge_desired(
    remote: ResourceSet,
    local: ResourceSet,
    result: ThreeWayResult,
    resolved: Dict[Identity, Optional[Resource]],
) -> ResourceSet:
    """
    Desired state for the artifact tree: the remote set, overlaid with edits
    made only on the artifact side and with resolved conflicts. Hand-written
    annotations follow each identity that survives.
    """
    overlay: Dict[Identity, Optional[Resource]] = {}
    for identity in result.local_only():
        overlay[identity] = local.get(identity)
    overlay.update(resolved)

    removed = [i for i, r in overlay.items() if r is None]
    desired = remote.without(removed).with_resources(r for r in overlay.values() if r is not None)

    annotated = []
    for identity, resource in desired.items():
        source = local.get(identity)
        if source is not None and source.annotations and resource.annotations != source.annotations:
            annotated.append(resource.model_copy(update={"annotations": source.annotations}))
    if overlay:
        logger.info("Desired state carries %d artifact-side edit(s)", len(overlay))
    return desired.with_resources(annotated) if annotated else desired
