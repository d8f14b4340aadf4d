import asyncio
import functools
import logging
import os
from collections.abc import Callable
from pathlib import Path

from errors import ConcurrentOperationError, ConfigError, ErrorKind
from models.deployment import AppConfig
from models.snapshot import Snapshot

logger = logging.getLogger(__name__)

# Documented defaults shipped in .env.example and the integration tests
INSECURE_DEFAULTS = frozenset({"changeme123", "changeme", "password", "admin123"})

REQUIRED_KEYS = ("HOST_IP", "N8N_BASIC_AUTH_USER", "N8N_BASIC_AUTH_PASSWORD")


def with_timeout(seconds: int = 30):
    """Decorator to enforce timeout on async functions.

    Max allowed timeout is 120 seconds.
    """
    clamped = min(max(seconds, 1), 120)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=clamped)
            except TimeoutError:
                logger.error("Timeout after %ds in %s", clamped, func.__name__)
                raise TimeoutError(f"Operation {func.__name__} timed out after {clamped}s")

        return wrapper

    return decorator


def find_insecure_values(values: dict[str, str]) -> list[str]:
    """Keys whose value is on the insecure-default list."""
    return sorted(k for k, v in values.items() if v is not None and v.strip() in INSECURE_DEFAULTS)


def validate_app_config(config: AppConfig) -> AppConfig:
    """Reject configs that are incomplete or use a known default credential."""
    values = dict(config.values)
    values.setdefault("N8N_BASIC_AUTH_USER", config.basic_auth_user)
    values.setdefault("N8N_BASIC_AUTH_PASSWORD", config.basic_auth_password)
    values.setdefault("HOST_IP", config.host_ip)

    empty = [k for k in REQUIRED_KEYS if not (values.get(k) or "").strip()]
    if empty:
        raise ConfigError(
            f"Required variable(s) not set: {', '.join(empty)}",
            detail={"missing": empty},
        )

    insecure = find_insecure_values(values)
    if insecure:
        raise ConfigError(
            f"Default credential detected in {', '.join(insecure)}. "
            "Please change it before deploying.",
            detail={"insecure_keys": insecure},
        )
    return config


def confirm_restore(snapshot: Snapshot, confirm: Callable[[Snapshot], bool] | None) -> bool:
    """Confirmation gate for a user-requested restore.

    Only an explicit affirmative answer lets the restore proceed.
    """
    if confirm is None:
        logger.warning("Interactive restore requested without a way to confirm; refusing")
        return False
    approved = confirm(snapshot) is True
    if not approved:
        logger.info("Restore of %s cancelled", snapshot.id)
    return approved


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class OperationLock:
    """Lock file keyed by managed-unit identity.

    A second lifecycle operation on the same unit fails fast with
    ConcurrentOperationInProgress. A lock left behind by a dead process is
    reclaimed.
    """

    def __init__(self, lock_dir: Path, unit_id: str):
        self.lock_dir = Path(lock_dir)
        self.unit_id = unit_id
        self.path = self.lock_dir / f"{unit_id}.lock"
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _read_holder(self) -> int | None:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_holder()
                if holder is not None and holder != os.getpid() and not _pid_alive(holder):
                    logger.warning("Removing stale lock %s held by pid %d", self.path, holder)
                    self.path.unlink(missing_ok=True)
                    continue
                raise ConcurrentOperationError(
                    f"Another operation is in progress on '{self.unit_id}' (pid {holder})",
                    kind=ErrorKind.CONCURRENT_OPERATION,
                    phase="preflight",
                    detail={"lock": str(self.path), "pid": holder},
                )
            with os.fdopen(fd, "w") as fh:
                fh.write(str(os.getpid()))
            self._held = True
            logger.debug("Acquired lock %s", self.path)
            return
        raise ConcurrentOperationError(
            f"Could not acquire lock {self.path}",
            phase="preflight",
            detail={"lock": str(self.path)},
        )

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False
        logger.debug("Released lock %s", self.path)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    async def __aenter__(self):
        self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
