"""
Error taxonomy for the reconciliation engine.

Every engine error carries a structured ``context`` dict so callers (the CLI,
or any other surface) can render an actionable message without parsing
exception strings.
"""
from typing import Any, Dict, Iterable, List, Optional


class PveSyncError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/rendering."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "context": {key: _render(value) for key, value in self.context.items()},
        }


def _render(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _render(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_render(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class TransportError(PveSyncError):
    """Remote API unreachable, authentication failure, or retries exhausted."""

    def __init__(self, message: str, status: Optional[int] = None, **context: Any):
        super().__init__(message, status=status, **context)
        self.status = status


class TransientTransportError(TransportError):
    """A transport failure worth retrying (5xx, connection reset, timeout)."""


class PartialDiscoveryError(PveSyncError):
    """
    Some nodes could not be discovered.

    ``resource_set`` covers every node that succeeded; ``failures`` maps each
    skipped node to the reason it was skipped.
    """

    def __init__(self, resource_set, failures: Dict[str, str]):
        super().__init__(
            f"Discovery skipped {len(failures)} node(s): {', '.join(sorted(failures))}",
            skipped_nodes=dict(failures),
            partial=True,
        )
        self.resource_set = resource_set
        self.failures = dict(failures)


class DiscoveryCancelledError(PveSyncError):
    """Discovery was cancelled by the operator or exceeded its timeout."""


class ReconciliationConflict(PveSyncError):
    """Resources were changed on both the remote and the artifact side."""

    def __init__(self, conflicts: Iterable[Any], sequence: Optional[int] = None):
        conflicts = list(conflicts)
        super().__init__(
            f"{len(conflicts)} resource(s) changed both remotely and in artifacts",
            identities=[str(c.identity) for c in conflicts],
            sequence=sequence,
        )
        self.conflicts: List[Any] = conflicts


class StoreWriteError(PveSyncError):
    """A commit violated an invariant or could not be made durable."""


class StoreCorruptionError(PveSyncError):
    """The snapshot log is not contiguous."""


class ConcurrentSyncError(PveSyncError):
    """Another commit is in flight or landed while this run was diffing."""


class ArtifactParseError(PveSyncError):
    """An artifact file is malformed or structurally invalid."""

    def __init__(self, message: str, path: Optional[str] = None, **context: Any):
        super().__init__(f"{path}: {message}" if path else message, path=path, **context)
        self.path = path


class NotFoundError(PveSyncError):
    """The requested snapshot sequence does not exist."""

    def __init__(self, sequence: int):
        super().__init__(f"Snapshot {sequence} not found", sequence=sequence)
        self.sequence = sequence


class InvalidResourceSetError(PveSyncError, ValueError):
    """A ResourceSet violates identity uniqueness or node existence."""


class UnsupportedOperationError(PveSyncError):
    """The requested mutation cannot be expressed against the hypervisor."""
