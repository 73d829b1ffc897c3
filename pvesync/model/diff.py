"""
Diff and Snapshot value types.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import Identity


@dataclass(frozen=True)
class FieldDelta:
    """Old and new value of one significant field."""
    field: str
    old: Any
    new: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "old": self.old, "new": self.new}


@dataclass(frozen=True)
class ResourceChange:
    identity: Identity
    deltas: Tuple[FieldDelta, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"identity": str(self.identity), "deltas": [d.to_dict() for d in self.deltas]}


@dataclass(frozen=True)
class Conflict:
    """
    A resource modified on both sides since the last stored snapshot.

    ``remote``/``local`` hold the resulting significant fields on each side,
    or None where that side removed the resource.
    """
    identity: Identity
    remote: Optional[Dict[str, Any]]
    local: Optional[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {"identity": str(self.identity), "remote": self.remote, "local": self.local}


@dataclass(frozen=True)
class Diff:
    """Structured difference between two ResourceSets."""
    added: Tuple[Identity, ...] = ()
    removed: Tuple[Identity, ...] = ()
    changed: Tuple[ResourceChange, ...] = ()
    conflicts: Tuple[Conflict, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed or self.conflicts)

    def changed_identities(self) -> Tuple[Identity, ...]:
        return tuple(c.identity for c in self.changed)

    def identities(self) -> FrozenSet[Identity]:
        """Every identity that was added, removed or changed."""
        return frozenset(self.added) | frozenset(self.removed) | frozenset(self.changed_identities())

    def change_for(self, identity: Identity) -> Optional[ResourceChange]:
        for change in self.changed:
            if change.identity == identity:
                return change
        return None

    def summary(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "changed": len(self.changed),
            "conflicts": len(self.conflicts),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": [str(i) for i in self.added],
            "removed": [str(i) for i in self.removed],
            "changed": [c.to_dict() for c in self.changed],
            "conflicts": [c.to_dict() for c in self.conflicts],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Diff":
        data = data or {}
        return cls(
            added=tuple(Identity.parse(i) for i in data.get("added", ())),
            removed=tuple(Identity.parse(i) for i in data.get("removed", ())),
            changed=tuple(
                ResourceChange(
                    identity=Identity.parse(c["identity"]),
                    deltas=tuple(FieldDelta(d["field"], d["old"], d["new"]) for d in c.get("deltas", ())),
                )
                for c in data.get("changed", ())
            ),
            conflicts=tuple(
                Conflict(Identity.parse(c["identity"]), c.get("remote"), c.get("local"))
                for c in data.get("conflicts", ())
            ),
        )


@dataclass(frozen=True)
class Snapshot:
    """Immutable, sequenced record of a committed ResourceSet and its Diff."""
    sequence: int
    created_at: datetime
    resources: ResourceSet
    diff: Diff
    audit: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "resources": len(self.resources),
            "diff": self.diff.to_dict(),
            "audit": list(self.audit),
        }
