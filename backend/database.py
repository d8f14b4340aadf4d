import logging
import os
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from settings import LifecycleSettings, get_settings

logger = logging.getLogger(__name__)

AUDIT_DB_NAME = "n8nctl.db"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def database_url(settings: LifecycleSettings | None = None) -> str:
    """N8NCTL_DATABASE_URL, or a SQLite file next to the project's backups."""
    url = os.getenv("N8NCTL_DATABASE_URL")
    if url:
        return url
    settings = settings or get_settings()
    return f"sqlite+aiosqlite:///{settings.backup_path / AUDIT_DB_NAME}"


def bind(url: str) -> None:
    """Point the module-level engine at url, replacing any previous one."""
    global _engine, _session_factory
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    _engine = create_async_engine(url, echo=False)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.debug("Audit database: %s", parsed.render_as_string(hide_password=True))


def async_session() -> AsyncSession:
    """New session on the audit database, binding the default URL on first use."""
    if _session_factory is None:
        bind(database_url())
    return _session_factory()


async def get_session() -> AsyncSession:
    """Dependency that yields a database session."""
    async with async_session() as session:
        yield session


async def init_db(settings: LifecycleSettings | None = None):
    """Bind to the project's audit database and create missing tables."""
    from db_models import Base

    if settings is not None or _engine is None:
        bind(database_url(settings))
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Dispose the engine connection pool."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
