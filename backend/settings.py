import os
from pathlib import Path

from pydantic import BaseModel, Field


class LifecycleSettings(BaseModel):
    """Orchestrator settings, read from environment variables."""

    project_root: Path = Field(default_factory=Path.cwd)
    compose_file: str = "docker-compose.yml"
    env_file: str = ".env"
    backup_dir: str = "backups"
    deploy_log: str = "deploy.log"

    container_name: str = "n8n"
    volume_name: str = "n8n_data"

    healthcheck_timeout: float = Field(default=60.0, gt=0, le=3600)
    healthcheck_interval: float = Field(default=5.0, gt=0, le=300)
    healthcheck_backoff: float = Field(default=1.0, ge=1.0, le=4.0)
    healthcheck_max_interval: float = Field(default=30.0, gt=0, le=300)
    probe_timeout: float = Field(default=10.0, gt=0, le=120)

    stop_grace_period: int = Field(default=30, ge=0, le=600)
    converge_timeout: float = Field(default=600.0, gt=0, le=7200)
    volume_timeout: float = Field(default=900.0, gt=0, le=7200)

    backup_retention_count: int = Field(default=10, ge=1, le=1000)
    backup_retention_days: int = Field(default=30, ge=1, le=3650)

    @property
    def root(self) -> Path:
        return Path(self.project_root)

    @property
    def compose_path(self) -> Path:
        return self.root / self.compose_file

    @property
    def env_path(self) -> Path:
        return self.root / self.env_file

    @property
    def backup_path(self) -> Path:
        return self.root / self.backup_dir

    @property
    def deploy_log_path(self) -> Path:
        return self.root / self.deploy_log

    @classmethod
    def from_env(cls) -> "LifecycleSettings":
        """Build settings from N8NCTL_* environment variables."""
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"N8NCTL_{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)


_settings: LifecycleSettings | None = None


def get_settings() -> LifecycleSettings:
    global _settings
    if _settings is None:
        _settings = LifecycleSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for tests)."""
    global _settings
    _settings = None
