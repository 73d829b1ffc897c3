"""
Diff Engine.

Pure computation over in-memory ResourceSets: no I/O and no suspension
points. Differences are defined over sets keyed by identity, so the order in
which resources were discovered never registers as a change.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pvesync.model.diff import Conflict, Diff, FieldDelta, ResourceChange
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Identity, Resource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreeWayResult:
    """
    Outcome of comparing a remote and a local (artifact) set against their
    common base (the last stored snapshot).
    """
    remote: Diff
    local: Diff
    conflicts: Tuple[Conflict, ...]

    @property
    def conflict_identities(self) -> frozenset:
        return frozenset(c.identity for c in self.conflicts)

    def local_only(self) -> frozenset:
        """Identities changed on the artifact side only."""
        return self.local.identities() - self.remote.identities()


class DiffEngine:
    """
    Computes structured differences restricted to each kind's significant
    fields, plus any extension keys promoted to significance.
    """

    def __init__(self, significant_extensions: Iterable[str] = ()):
        self.significant_extensions: Tuple[str, ...] = tuple(sorted(set(significant_extensions)))

    def significant(self, resource: Optional[Resource]) -> Optional[Dict[str, Any]]:
        if resource is None:
            return None
        return resource.significant(self.significant_extensions)

    def field_deltas(self, old: Resource, new: Resource) -> Tuple[FieldDelta, ...]:
        old_fields = self.significant(old)
        new_fields = self.significant(new)
        deltas = []
        for name in sorted(set(old_fields) | set(new_fields)):
            before = old_fields.get(name)
            after = new_fields.get(name)
            if before != after:
                deltas.append(FieldDelta(name, before, after))
        return tuple(deltas)

    def diff(self, base: ResourceSet, target: ResourceSet) -> Diff:
        """
        Compute Diff(base -> target).

        A guest that moved to another node has a different identity and so
        appears as one removal plus one addition.
        """
        added = tuple(i for i in target if i not in base)
        removed = tuple(i for i in base if i not in target)
        changed: List[ResourceChange] = []
        for identity in target:
            if identity not in base:
                continue
            deltas = self.field_deltas(base[identity], target[identity])
            if deltas:
                changed.append(ResourceChange(identity, deltas))
        diff = Diff(added=added, removed=removed, changed=tuple(changed))
        logger.debug("Computed diff %s", diff.summary())
        return diff

    def three_way(self, base: ResourceSet, remote: ResourceSet, local: ResourceSet) -> ThreeWayResult:
        """
        Compare remote and local against their common base.

        An identity is a conflict only when both sides modified it relative
        to the base and the resulting significant values differ. Identities
        added on both sides with different values conflict as well.
        """
        remote_diff = self.diff(base, remote)
        local_diff = self.diff(base, local)

        both = remote_diff.identities() & local_diff.identities()
        conflicts = []
        for identity in sorted(both, key=Identity.sort_key):
            remote_value = self.significant(remote.get(identity))
            local_value = self.significant(local.get(identity))
            if remote_value != local_value:
                conflicts.append(Conflict(identity, remote_value, local_value))

        if conflicts:
            logger.info("Three-way comparison found %d conflict(s)", len(conflicts))
        return ThreeWayResult(remote=remote_diff, local=local_diff, conflicts=tuple(conflicts))


def diff(base: ResourceSet, target: ResourceSet) -> Diff:
    """Convenience wrapper using the default significant field set."""
    return DiffEngine().diff(base, target)
