from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from .config import settings

# plain postgresql:// would load the sync psycopg driver
if settings.DATABASE_URL.startswith("postgresql://"):
    raise RuntimeError(
        f"DATABASE_URL {settings.DATABASE_URL.split('@')[-1]!r} needs an async driver, "
        "use postgresql+asyncpg://... (or sqlite+aiosqlite:// for local runs)"
    )

# sqlite uses a per-connection pool and rejects the sizing options
_pool_options = {}
if not settings.DATABASE_URL.startswith("sqlite"):
    _pool_options = dict(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )

engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, **_pool_options)


async def init_db(target: AsyncEngine | None = None):
    """Create the drivers and rides tables on `target` (the service engine by default)."""
    from .models import metadata
    async with (target or engine).begin() as conn:
        await conn.run_sync(metadata.create_all)
