import asyncio
import hashlib
import logging
import os
import shutil
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from errors import DriverError, ErrorKind, StoreError
from models.snapshot import (
    ARTIFACT_FILES,
    CONFIG_ARTIFACTS,
    Snapshot,
    SnapshotArtifact,
    SnapshotSources,
)
from observability.metrics import METRICS

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "backup_"
STAGING_PREFIX = ".tmp-"


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _dir_size(path: Path) -> int:
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def _parse_id_timestamp(snapshot_id: str) -> datetime | None:
    stamp = snapshot_id.removeprefix(SNAPSHOT_PREFIX)[:15]
    try:
        return datetime.strptime(stamp, "%Y%m%d_%H%M%S").replace(tzinfo=UTC)
    except ValueError:
        return None


class SnapshotStore:
    """Filesystem store of point-in-time captures of the managed unit.

    Each snapshot is a `backup_YYYYmmdd_HHMMSS` directory holding copies of
    the config files, an archive of the data volume and a JSON manifest.
    Snapshots are assembled in a hidden staging directory and renamed into
    place, so a snapshot is either complete or not listed at all. Nothing in
    a snapshot directory is written after that rename.
    """

    def __init__(
        self,
        root: Path,
        targets: dict[str, Path] | None = None,
        volume_name: str | None = None,
        volume_io=None,
        pointer_path: Path | None = None,
        volume_timeout: float = 900.0,
        now: Callable[[], datetime] | None = None,
    ):
        self.root = Path(root)
        self.targets = {k: Path(v) for k, v in (targets or {}).items()}
        self.volume_name = volume_name
        self.volume_io = volume_io
        self.pointer_path = pointer_path
        self.volume_timeout = volume_timeout
        self._now = now or (lambda: datetime.now(UTC))

    # ── capture ──────────────────────────────

    def check_writable(self) -> None:
        """Raise StoreError unless the store location accepts writes."""
        probe = self.root / f"{STAGING_PREFIX}write-check-{os.getpid()}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as e:
            raise StoreError(
                f"Snapshot location {self.root} is not writable: {e}",
                detail={"path": str(self.root)},
            ) from e

    def _new_id(self, created_at: datetime) -> str:
        base = f"{SNAPSHOT_PREFIX}{created_at:%Y%m%d_%H%M%S}"
        candidate = base
        n = 0
        while (self.root / candidate).exists() or (self.root / f"{STAGING_PREFIX}{candidate}").exists():
            n += 1
            candidate = f"{base}_{n:02d}"
        return candidate

    @staticmethod
    def _artifact(name: str, path: Path) -> SnapshotArtifact:
        return SnapshotArtifact(
            name=name,
            filename=path.name,
            size_bytes=path.stat().st_size,
            sha256=_sha256(path),
        )

    async def create(self, sources: SnapshotSources) -> Snapshot:
        """Capture config files and, if the unit is running, its data volume."""
        created_at = self._now()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create snapshot directory {self.root}: {e}") from e

        snapshot_id = self._new_id(created_at)
        staging = self.root / f"{STAGING_PREFIX}{snapshot_id}"
        final = self.root / snapshot_id
        logger.info("Creating snapshot %s...", snapshot_id)

        try:
            staging.mkdir()
            artifacts: list[SnapshotArtifact] = []
            missing: list[str] = []

            for name, src in sources.files.items():
                src = Path(src)
                if not src.is_file():
                    logger.warning("%s not found, not included in snapshot", src)
                    missing.append(name)
                    continue
                dest = staging / ARTIFACT_FILES.get(name, src.name)
                shutil.copy2(src, dest)
                artifacts.append(self._artifact(name, dest))
                logger.info("Backed up %s", src.name)

            unit_running = False
            image_id = None
            if self.volume_io is not None and sources.unit_id:
                unit_running = await self.volume_io.is_managed_unit_running()

            if unit_running:
                image_id = await self.volume_io.image_id(sources.unit_id)
                if image_id:
                    id_file = staging / ARTIFACT_FILES["image_id"]
                    id_file.write_text(image_id + "\n", encoding="utf-8")
                    artifacts.append(self._artifact("image_id", id_file))
                if sources.volume_name:
                    logger.info("Exporting %s volume... (this may take a while)", sources.volume_name)
                    archive = staging / ARTIFACT_FILES["data_volume"]
                    await asyncio.wait_for(
                        self.volume_io.export_volume(sources.volume_name, archive),
                        timeout=self.volume_timeout,
                    )
                    artifacts.append(self._artifact("data_volume", archive))
            else:
                logger.warning("Managed unit is not running, only backing up configuration files")
                if sources.volume_name:
                    missing.append("data_volume")

            artifacts.append(SnapshotArtifact(name="metadata", filename=ARTIFACT_FILES["metadata"]))
            snapshot = Snapshot(
                id=snapshot_id,
                created_at=created_at,
                path=final,
                artifacts=artifacts,
                missing=missing,
                size_bytes=sum(a.size_bytes for a in artifacts),
                unit_running=unit_running,
                image_id=image_id,
            )
            (staging / ARTIFACT_FILES["metadata"]).write_text(
                snapshot.model_dump_json(indent=2), encoding="utf-8"
            )
            os.rename(staging, final)
        except (OSError, DriverError, TimeoutError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise StoreError(
                f"Snapshot {snapshot_id} failed: {str(e) or type(e).__name__}",
                detail={"snapshot_id": snapshot_id, "path": str(final)},
            ) from e

        self._write_pointer(final)
        METRICS.record_snapshot("created")
        logger.info(
            "Snapshot %s created (%d bytes, missing: %s)",
            snapshot_id,
            snapshot.size_bytes,
            ", ".join(missing) or "none",
        )
        return snapshot

    def _write_pointer(self, path: Path) -> None:
        """Atomically record the newest snapshot path for legacy tooling."""
        if self.pointer_path is None:
            return
        tmp = self.pointer_path.with_name(f"{self.pointer_path.name}.tmp")
        try:
            tmp.write_text(f"{path}\n", encoding="utf-8")
            os.replace(tmp, self.pointer_path)
        except OSError as e:
            logger.warning("Could not update %s: %s", self.pointer_path, e)

    # ── lookup ──────────────────────────────

    def _load(self, path: Path) -> Snapshot | None:
        manifest = path / ARTIFACT_FILES["metadata"]
        if manifest.is_file():
            try:
                snap = Snapshot.model_validate_json(manifest.read_text(encoding="utf-8"))
                return snap.model_copy(update={"path": path})
            except (ValidationError, OSError) as e:
                logger.warning("Unreadable manifest in %s, inferring contents: %s", path, e)

        # Directories written by the shell scripts carry no manifest
        artifacts = [
            SnapshotArtifact(name=name, filename=filename, size_bytes=(path / filename).stat().st_size)
            for name, filename in ARTIFACT_FILES.items()
            if (path / filename).is_file()
        ]
        created_at = _parse_id_timestamp(path.name) or datetime.fromtimestamp(
            path.stat().st_mtime, UTC
        )
        return Snapshot(
            id=path.name,
            created_at=created_at,
            path=path,
            artifacts=artifacts,
            size_bytes=_dir_size(path),
            unit_running=any(a.name == "data_volume" for a in artifacts),
        )

    def list_snapshots(self) -> list[Snapshot]:
        """All snapshots, newest first."""
        if not self.root.is_dir():
            return []
        snapshots = []
        for path in self.root.glob(f"{SNAPSHOT_PREFIX}*"):
            if not path.is_dir():
                continue
            snap = self._load(path)
            if snap is not None:
                snapshots.append(snap)
        snapshots.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return snapshots

    def most_recent(self) -> Snapshot | None:
        snapshots = self.list_snapshots()
        return snapshots[0] if snapshots else None

    def get(self, ref: str | Path) -> Snapshot | None:
        """Look up a snapshot by id or by directory path."""
        path = Path(ref)
        if not path.is_absolute() and len(path.parts) == 1:
            path = self.root / path
        if not path.is_dir() or not path.name.startswith(SNAPSHOT_PREFIX):
            return None
        return self._load(path)

    def resolve(self, ref: str | Path | None) -> Snapshot:
        """Resolve an id, a path or "latest"; raise NoSnapshotAvailable otherwise."""
        if ref is None or str(ref) == "latest":
            snap = self.most_recent()
            if snap is None:
                raise StoreError(
                    f"No snapshots found in {self.root}",
                    kind=ErrorKind.NO_SNAPSHOT_AVAILABLE,
                )
            return snap
        snap = self.get(ref)
        if snap is None:
            raise StoreError(
                f"Snapshot not found: {ref}",
                kind=ErrorKind.NO_SNAPSHOT_AVAILABLE,
                detail={"ref": str(ref)},
            )
        return snap

    # ── restore ──────────────────────────────

    async def restore(self, snapshot: Snapshot) -> list[str]:
        """Overwrite every artifact the snapshot holds; leave the rest untouched.

        Returns the names of the restored artifacts.
        """
        path = Path(snapshot.path)
        if not path.is_dir():
            raise StoreError(
                f"Snapshot directory not found: {path}",
                kind=ErrorKind.NO_SNAPSHOT_AVAILABLE,
                detail={"snapshot_id": snapshot.id},
            )

        restored = []
        try:
            for name in CONFIG_ARTIFACTS:
                dest = self.targets.get(name)
                if dest is None:
                    continue
                if not snapshot.has(name):
                    logger.warning("%s not in snapshot %s, leaving it untouched", dest.name, snapshot.id)
                    continue
                tmp = dest.with_name(f"{dest.name}.restore-tmp")
                shutil.copy2(snapshot.artifact_path(name), tmp)
                os.replace(tmp, dest)
                restored.append(name)
                logger.info("Restored %s", dest.name)

            if snapshot.has("data_volume") and self.volume_name and self.volume_io is not None:
                logger.info("Restoring %s volume... (this may take a while)", self.volume_name)
                await asyncio.wait_for(
                    self.volume_io.import_volume(
                        self.volume_name, snapshot.artifact_path("data_volume")
                    ),
                    timeout=self.volume_timeout,
                )
                restored.append("data_volume")
            elif not snapshot.has("data_volume"):
                logger.warning("No data volume archive in snapshot %s", snapshot.id)
        except (OSError, DriverError, TimeoutError) as e:
            raise StoreError(
                f"Restore of {snapshot.id} failed: {str(e) or type(e).__name__}",
                kind=ErrorKind.ROLLBACK_FAILED,
                detail={"snapshot_id": snapshot.id, "restored": restored},
            ) from e

        METRICS.record_snapshot("restored")
        return restored

    # ── retention ──────────────────────────────

    def delete(self, snapshot_id: str) -> bool:
        path = self.root / snapshot_id
        if not snapshot_id.startswith(SNAPSHOT_PREFIX) or not path.is_dir():
            return False
        shutil.rmtree(path)
        METRICS.record_snapshot("deleted")
        logger.info("Deleted snapshot %s", snapshot_id)
        return True

    def delete_older_than(self, age: timedelta) -> int:
        cutoff = self._now() - age
        deleted = 0
        for snap in self.list_snapshots():
            if snap.created_at < cutoff and self.delete(snap.id):
                deleted += 1
        if deleted:
            logger.info("Deleted %d snapshot(s) older than %d days", deleted, age.days)
        else:
            logger.info("No old snapshots to clean up")
        return deleted

    def keep_most_recent(self, count: int) -> int:
        deleted = 0
        for snap in self.list_snapshots()[count:]:
            if self.delete(snap.id):
                deleted += 1
        if deleted:
            logger.info("Cleaned up old snapshots (kept last %d)", count)
        return deleted
