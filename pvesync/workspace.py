"""
Project workspace management.

A workspace is a directory holding project configuration, the state
database and the generated artifact tree for one Proxmox VE cluster:

    <root>/.pvesync/config.yml
    <root>/.pvesync/state.db
    <root>/infrastructure/...
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from pvesync.config import Settings, SyncContext, get_settings

logger = logging.getLogger(__name__)

CONFIG_DIR = ".pvesync"
CONFIG_FILE = "config.yml"

# Keys written to config.yml map onto Settings fields (lower-case in the file).
_DEFAULT_CONFIG: Dict[str, Any] = {
    "api_host": "localhost",
    "api_port": 8006,
    "verify_tls": True,
    "artifact_dir": "infrastructure",
    "conflict_policy": "manual",
}


class Workspace:
    """A pvesync project directory."""

    def __init__(self, root: Path, config: Optional[Dict[str, Any]] = None):
        self.root = Path(root).resolve()
        self.config: Dict[str, Any] = dict(config or {})

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_DIR / CONFIG_FILE

    @property
    def database_path(self) -> Path:
        return self.root / CONFIG_DIR / "state.db"

    @property
    def artifact_dir(self) -> Path:
        return self.root / self.config.get("artifact_dir", "infrastructure")

    @classmethod
    def create(cls, root: Path, **config: Any) -> "Workspace":
        """Create the directory structure and write config.yml."""
        root = Path(root)
        values = {**_DEFAULT_CONFIG, **{k: v for k, v in config.items() if v is not None}}
        workspace = cls(root, values)
        workspace.config_path.parent.mkdir(parents=True, exist_ok=True)
        workspace.artifact_dir.mkdir(parents=True, exist_ok=True)
        with workspace.config_path.open("w", encoding="utf-8") as fh:
            yaml.safe_dump(values, fh, sort_keys=True, default_flow_style=False)
        logger.info("Created workspace at %s", workspace.root)
        return workspace

    @classmethod
    def detect(cls, search_path: Path) -> Optional["Workspace"]:
        """Walk up from ``search_path`` looking for .pvesync/config.yml."""
        current = Path(search_path).resolve()
        for candidate in (current, *current.parents):
            config_path = candidate / CONFIG_DIR / CONFIG_FILE
            if config_path.is_file():
                with config_path.open("r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
                if not isinstance(data, dict):
                    raise ValueError(f"Workspace config {config_path} must be a mapping")
                return cls(candidate, data)
        return None

    def load_settings(self, **overrides: Any) -> Settings:
        """Settings with workspace file values layered over the environment."""
        file_values = {key.upper(): value for key, value in self.config.items()}
        file_values.setdefault("WORKSPACE", str(self.root))
        file_values.setdefault("DB_PATH", str(self.database_path))
        file_values["ARTIFACT_DIR"] = str(self.artifact_dir)
        file_values.update({k: v for k, v in overrides.items() if v is not None})
        return get_settings(**file_values)

    def context(self, **overrides: Any) -> SyncContext:
        return SyncContext.from_settings(self.load_settings(**overrides), workspace_root=self.root)
