"""
Artifact Generator: ResourceSet <-> declarative YAML tree.

Layout (relative to the artifact directory)::

    nodes/<node>.yaml
    vms/<node>/<vmid>.yaml
    containers/<node>/<vmid>.yaml
    storage/<node>.yaml          # the node's volumes, sorted by volid

Rendering is a pure function of the set: keys are emitted in sorted order,
metrics are never written and nothing time-dependent is embedded, so an
unchanged set renders to byte-identical files.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Type

import yaml
from pydantic import ValidationError

from pvesync.artifacts.terraform import render_terraform
from pvesync.errors import ArtifactParseError, InvalidResourceSetError
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import (
    Container,
    Node,
    Resource,
    ResourceKind,
    StorageVolume,
    VirtualMachine,
)

logger = logging.getLogger(__name__)

MANAGED_MARKER = "# Managed by pvesync."
HEADER = (
    MANAGED_MARKER + " Edit modeled fields and run `pvesync apply`;\n"
    "# unknown keys are preserved as annotations.\n"
)

GUEST_DIRS = {ResourceKind.VM: "vms", ResourceKind.CONTAINER: "containers"}
MANAGED_DIRS = ("nodes", "vms", "containers", "storage")

_GUEST_MODELS: Dict[str, Type[Resource]] = {"vms": VirtualMachine, "containers": Container}

Rendered = List[Tuple[str, str]]


def _dump(document: Dict[str, Any]) -> str:
    return HEADER + yaml.safe_dump(
        document, sort_keys=True, default_flow_style=False, allow_unicode=True
    )


def _document(resource: Resource, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Rendered mapping of one resource: modeled fields, extensions, annotations."""
    data = resource.model_dump(mode="json", exclude={"metrics", "annotations", *exclude})
    if not data.get("extensions"):
        data.pop("extensions", None)
    for key, value in resource.annotations.items():
        data.setdefault(key, value)
    return data


def _modeled_keys(model: Type[Resource]) -> set:
    return set(model.model_fields) - {"metrics", "annotations"}


@dataclass
class WriteResult:
    """Files touched by ``ArtifactGenerator.write``; paths are relative to the root."""
    written: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.written or self.removed)

    def to_dict(self) -> Dict[str, Any]:
        return {"written": list(self.written), "removed": list(self.removed), "unchanged": self.unchanged}


class ArtifactGenerator:
    """
    Renders and parses the artifact tree.

    Usage:
        generator = ArtifactGenerator()
        result = generator.write(context.artifact_dir, generator.render(resources))
        desired = generator.parse(context.artifact_dir)
    """

    def __init__(self, render_terraform: bool = False):
        self.render_terraform = render_terraform

    # ---------- render ----------

    def render(self, resources: ResourceSet) -> Rendered:
        """Ordered ``(relative path, content)`` pairs for ``resources``."""
        files: Dict[str, str] = {}
        volumes: Dict[str, List[StorageVolume]] = {}

        for resource in resources.values():
            if isinstance(resource, Node):
                files[f"nodes/{resource.name}.yaml"] = _dump({"kind": "node", **_document(resource)})
            elif isinstance(resource, (VirtualMachine, Container)):
                path = f"{GUEST_DIRS[resource.kind]}/{resource.node}/{resource.vmid}.yaml"
                files[path] = _dump({"kind": resource.kind.value, **_document(resource)})
            elif isinstance(resource, StorageVolume):
                volumes.setdefault(resource.node, []).append(resource)

        for node, node_volumes in volumes.items():
            entries = [_document(v, exclude=("node",)) for v in sorted(node_volumes, key=lambda v: v.volid)]
            files[f"storage/{node}.yaml"] = _dump({"kind": "storage", "node": node, "volumes": entries})

        if self.render_terraform:
            files.update(render_terraform(resources))

        return sorted(files.items())

    # ---------- parse ----------

    def parse(self, root: Path) -> ResourceSet:
        """Parse the YAML tree under ``root``; a missing root parses as empty."""
        root = Path(root)
        contents: Dict[str, str] = {}
        for directory in MANAGED_DIRS:
            base = root / directory
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*.yaml")):
                contents[path.relative_to(root).as_posix()] = path.read_text(encoding="utf-8")
        return self.parse_files(contents)

    def parse_files(self, contents: Mapping[str, str]) -> ResourceSet:
        """Parse ``{relative path: content}``; non-YAML entries are ignored."""
        resources: List[Resource] = []
        for path in sorted(contents):
            if not path.endswith(".yaml"):
                continue
            resources.extend(self._parse_file(path, contents[path]))
        try:
            return ResourceSet(resources)
        except InvalidResourceSetError as e:
            raise ArtifactParseError(e.message, identities=e.context.get("identities")) from e

    def has_artifacts(self, root: Path) -> bool:
        root = Path(root)
        return any((root / d).is_dir() and any((root / d).rglob("*.yaml")) for d in MANAGED_DIRS)

    def _parse_file(self, path: str, content: str) -> List[Resource]:
        parts = PurePosixPath(path).parts
        try:
            document = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ArtifactParseError(f"invalid YAML: {e}", path=path) from e
        if not isinstance(document, dict):
            raise ArtifactParseError("document must be a mapping", path=path)

        directory = parts[0]
        if directory == "nodes" and len(parts) == 2:
            self._expect_kind(path, document, "node")
            node = self._build(path, Node, document)
            self._expect(path, node.name == PurePosixPath(path).stem, f"node name {node.name!r} does not match file name")
            return [node]

        if directory in _GUEST_MODELS and len(parts) == 3:
            model = _GUEST_MODELS[directory]
            self._expect_kind(path, document, model.kind.value)
            guest = self._build(path, model, document)
            self._expect(path, guest.node == parts[1], f"node {guest.node!r} does not match directory {parts[1]!r}")
            self._expect(path, str(guest.vmid) == PurePosixPath(path).stem, f"vmid {guest.vmid} does not match file name")
            return [guest]

        if directory == "storage" and len(parts) == 2:
            self._expect_kind(path, document, "storage")
            node = document.get("node")
            self._expect(path, node == PurePosixPath(path).stem, f"node {node!r} does not match file name")
            entries = document.get("volumes") or []
            self._expect(path, isinstance(entries, list), "volumes must be a list")
            volumes = []
            for index, entry in enumerate(entries):
                self._expect(path, isinstance(entry, dict), f"volumes[{index}] must be a mapping")
                volumes.append(self._build(path, StorageVolume, {**entry, "node": node}))
            return volumes

        raise ArtifactParseError("file is outside the managed layout", path=path)

    @staticmethod
    def _build(path: str, model: Type[Resource], document: Dict[str, Any]) -> Resource:
        known = _modeled_keys(model)
        fields = {k: v for k, v in document.items() if k in known}
        annotations = {k: v for k, v in document.items() if k not in known and k != "kind"}
        try:
            return model.model_validate({**fields, "annotations": annotations})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ArtifactParseError(f"invalid {model.kind.value}: {problems}", path=path) from e

    @staticmethod
    def _expect_kind(path: str, document: Dict[str, Any], kind: str) -> None:
        if document.get("kind") != kind:
            raise ArtifactParseError(f"expected kind {kind!r}, found {document.get('kind')!r}", path=path)

    @staticmethod
    def _expect(path: str, condition: bool, message: str) -> None:
        if not condition:
            raise ArtifactParseError(message, path=path)

    # ---------- write ----------

    def write(self, root: Path, rendered: Rendered) -> WriteResult:
        """
        Materialize ``rendered`` under ``root``.

        Only files whose content differs are rewritten. Managed files (those
        carrying the pvesync header) that are no longer rendered are removed.
        """
        root = Path(root)
        result = WriteResult()
        wanted = dict(rendered)

        for relative, content in rendered:
            target = root / relative
            if target.is_file() and target.read_text(encoding="utf-8") == content:
                result.unchanged += 1
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            result.written.append(relative)

        for directory in (*MANAGED_DIRS, "terraform"):
            base = root / directory
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                relative = path.relative_to(root).as_posix()
                if not path.is_file() or relative in wanted:
                    continue
                if path.read_text(encoding="utf-8", errors="replace").startswith(MANAGED_MARKER):
                    path.unlink()
                    result.removed.append(relative)
            for path in sorted(base.rglob("*"), reverse=True):
                if path.is_dir() and not any(path.iterdir()):
                    path.rmdir()

        if result.changed:
            logger.info(
                "Artifacts updated: %d written, %d removed, %d unchanged",
                len(result.written),
                len(result.removed),
                result.unchanged,
            )
        return result


def render(resources: ResourceSet, render_terraform: bool = False) -> Rendered:
    return ArtifactGenerator(render_terraform).render(resources)


def parse(root: Path) -> ResourceSet:
    return ArtifactGenerator().parse(root)
