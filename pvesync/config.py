"""
Configuration management for pvesync.

Settings are loaded from environment variables (prefix ``PVESYNC_``), an
optional ``.env`` file and the workspace config file. The engine itself never
reads settings directly: entry points receive an immutable SyncContext built
from them.
"""
from pathlib import Path
from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pvesync.utils.timeparse import parse_time

ConflictPolicyName = Literal["manual", "preferRemote", "preferLocal"]


class Settings(BaseSettings):
    """
    Application settings.

    These settings are loaded from environment variables.
    """

    # Proxmox VE API
    API_HOST: str = "localhost"
    API_PORT: int = 8006
    API_TOKEN_ID: Optional[str] = None  # e.g. "root@pam!pvesync"
    API_TOKEN_SECRET: Optional[str] = None
    VERIFY_TLS: bool = True
    API_TIMEOUT: float = 10.0  # seconds
    API_RETRIES: int = Field(default=3, ge=0)

    # Workspace layout
    WORKSPACE: Optional[str] = None
    DB_PATH: Optional[str] = None
    ARTIFACT_DIR: Optional[str] = None

    # Discovery and task polling
    DISCOVERY_CONCURRENCY: int = Field(default=4, ge=1)
    DISCOVERY_TIMEOUT: str = "5m"
    TASK_TIMEOUT: str = "5m"
    TASK_POLL_INITIAL: float = Field(default=0.5, gt=0)
    TASK_POLL_MAX: float = Field(default=5.0, gt=0)

    # Reconciliation
    ALLOW_PARTIAL: bool = False
    THREE_WAY: bool = True
    CONFLICT_POLICY: ConflictPolicyName = "manual"
    COMMIT_WAIT: bool = False
    SIGNIFICANT_EXTENSIONS: List[str] = []

    # Artifacts
    RENDER_TERRAFORM: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_prefix="PVESYNC_",
        extra="ignore",
    )

    @field_validator("DISCOVERY_TIMEOUT", "TASK_TIMEOUT")
    @classmethod
    def _valid_duration(cls, value: str) -> str:
        parse_time(value)
        return value


def get_settings(**overrides: Any) -> Settings:
    """Build a fresh Settings instance; explicit overrides win over the environment."""
    return Settings(**overrides)


class SyncContext(BaseModel):
    """
    Immutable configuration passed into every engine entry point.
    """
    model_config = ConfigDict(frozen=True)

    workspace_root: Path
    db_path: Path
    artifact_dir: Path
    discovery_concurrency: int = Field(default=4, ge=1)
    discovery_timeout: float = 300.0
    task_timeout: float = 300.0
    task_poll_initial: float = 0.5
    task_poll_max: float = 5.0
    allow_partial: bool = False
    three_way: bool = True
    conflict_policy: ConflictPolicyName = "manual"
    commit_wait: bool = False
    significant_extensions: Tuple[str, ...] = ()
    render_terraform: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, workspace_root: Optional[Path] = None) -> "SyncContext":
        root = Path(workspace_root or settings.WORKSPACE or ".").resolve()
        db_path = Path(settings.DB_PATH) if settings.DB_PATH else root / ".pvesync" / "state.db"
        artifact_dir = Path(settings.ARTIFACT_DIR) if settings.ARTIFACT_DIR else root / "infrastructure"
        return cls(
            workspace_root=root,
            db_path=db_path if db_path.is_absolute() else root / db_path,
            artifact_dir=artifact_dir if artifact_dir.is_absolute() else root / artifact_dir,
            discovery_concurrency=settings.DISCOVERY_CONCURRENCY,
            discovery_timeout=parse_time(settings.DISCOVERY_TIMEOUT),
            task_timeout=parse_time(settings.TASK_TIMEOUT),
            task_poll_initial=settings.TASK_POLL_INITIAL,
            task_poll_max=settings.TASK_POLL_MAX,
            allow_partial=settings.ALLOW_PARTIAL,
            three_way=settings.THREE_WAY,
            conflict_policy=settings.CONFLICT_POLICY,
            commit_wait=settings.COMMIT_WAIT,
            significant_extensions=tuple(settings.SIGNIFICANT_EXTENSIONS),
            render_terraform=settings.RENDER_TERRAFORM,
        )
