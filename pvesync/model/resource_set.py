"""
ResourceSet: an identity-ordered, keys-unique, immutable view of resources.
"""
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Type, TypeVar

from pvesync.errors import InvalidResourceSetError
from pvesync.model.resources import (
    Identity,
    Node,
    Resource,
    ResourceKind,
    StorageVolume,
    resource_from_record,
)

R = TypeVar("R", bound=Resource)


class ResourceSet(Mapping[Identity, Resource]):
    """
    A complete point-in-time view (remote, stored, or artifact-derived).

    Iteration order is the identity sort order, independent of the order the
    resources were supplied in. Constructing a set with two resources sharing
    an identity raises InvalidResourceSetError.
    """

    __slots__ = ("_items",)

    def __init__(self, resources: Iterable[Resource] = ()):
        items: Dict[Identity, Resource] = {}
        for resource in resources:
            identity = resource.identity
            if identity in items:
                raise InvalidResourceSetError(
                    f"Duplicate resource identity {identity}", identities=[str(identity)]
                )
            items[identity] = resource
        self._items = dict(sorted(items.items(), key=lambda item: item[0].sort_key()))

    def __getitem__(self, identity: Identity) -> Resource:
        return self._items[identity]

    def __iter__(self) -> Iterator[Identity]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceSet):
            return NotImplemented
        return self._items == other._items

    def __hash__(self) -> int:
        return hash(tuple(self._items))

    def __repr__(self) -> str:
        return f"ResourceSet({len(self)} resources)"

    # ----- queries -----

    def resources(self) -> List[Resource]:
        return list(self._items.values())

    def of_kind(self, kind: ResourceKind) -> List[Resource]:
        return [r for i, r in self._items.items() if i.kind == kind]

    def of_type(self, model: Type[R]) -> List[R]:
        return [r for r in self._items.values() if isinstance(r, model)]

    def nodes(self) -> List[Node]:
        return self.of_type(Node)

    def node_names(self) -> Set[str]:
        return {i.node for i in self._items if i.kind == ResourceKind.NODE}

    def dangling(self) -> List[Identity]:
        """Non-node identities whose node is not part of this set."""
        names = self.node_names()
        return [i for i in self._items if i.kind != ResourceKind.NODE and i.node not in names]

    def validate(self) -> "ResourceSet":
        """Raise InvalidResourceSetError if any resource references a missing node."""
        dangling = self.dangling()
        if dangling:
            raise InvalidResourceSetError(
                f"{len(dangling)} resource(s) reference missing nodes",
                identities=[str(i) for i in dangling],
            )
        return self

    # ----- derivations (always new sets) -----

    def for_nodes(self, names: Iterable[str]) -> "ResourceSet":
        wanted = set(names)
        return ResourceSet(r for i, r in self._items.items() if i.node in wanted)

    def with_resources(self, resources: Iterable[Resource]) -> "ResourceSet":
        """Insert or replace the given resources by identity."""
        items = dict(self._items)
        for resource in resources:
            items[resource.identity] = resource
        return ResourceSet(items.values())

    def without(self, identities: Iterable[Identity]) -> "ResourceSet":
        dropped = set(identities)
        return ResourceSet(r for i, r in self._items.items() if i not in dropped)

    def with_detached_volumes(self) -> "ResourceSet":
        """
        Mark volumes whose attached guest is absent as detached.

        Attachment is a weak reference: a missing guest never blocks anything,
        the volume simply loses its attachment.
        """
        updated = []
        for resource in self._items.values():
            if isinstance(resource, StorageVolume):
                target = resource.attachment_identity()
                if target is not None and target not in self._items:
                    updated.append(resource.model_copy(update={"attachment": None, "detached": True}))
        return self.with_resources(updated) if updated else self

    # ----- serialization -----

    def to_records(self) -> List[Dict[str, Any]]:
        return [r.to_record() for r in self._items.values()]

    @classmethod
    def from_records(cls, records: Optional[Iterable[Dict[str, Any]]]) -> "ResourceSet":
        return cls(resource_from_record(record) for record in (records or ()))
