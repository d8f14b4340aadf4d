from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

# artifact name -> file name inside a snapshot directory
ARTIFACT_FILES: dict[str, str] = {
    "env": ".env",
    "compose": "docker-compose.yml",
    "dockerfile": "Dockerfile",
    "data_volume": "n8n_data.tar.gz",
    "image_id": "image_id.txt",
    "metadata": "backup_info.json",
}

# Artifacts copied back into the project root on restore
CONFIG_ARTIFACTS = ("env", "compose", "dockerfile")


class SnapshotArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    filename: str
    size_bytes: int = 0
    sha256: str | None = None


class Snapshot(BaseModel):
    """Immutable, self-contained capture of config files and the data volume."""

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    path: Path
    artifacts: list[SnapshotArtifact] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    size_bytes: int = 0
    unit_running: bool = False
    image_id: str | None = None

    def has(self, name: str) -> bool:
        return any(a.name == name for a in self.artifacts)

    def artifact(self, name: str) -> SnapshotArtifact | None:
        for a in self.artifacts:
            if a.name == name:
                return a
        return None

    def artifact_path(self, name: str) -> Path:
        art = self.artifact(name)
        filename = art.filename if art else ARTIFACT_FILES[name]
        return Path(self.path) / filename


class SnapshotSources(BaseModel):
    """What the store should capture for a new snapshot."""

    files: dict[str, Path] = Field(default_factory=dict)
    volume_name: str | None = None
    unit_id: str | None = None
