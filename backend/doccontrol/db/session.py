from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from doccontrol.config import settings
from doccontrol.db.base import Base


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _engine_kwargs(url: str) -> dict:
    if _is_sqlite(url):
        # One connection per checkout; SQLite serialises writers itself.
        return {"poolclass": NullPool, "connect_args": {"timeout": 15}}
    return {"pool_pre_ping": True}


def _begin_immediate(async_engine: AsyncEngine) -> None:
    """Start every SQLite transaction with BEGIN IMMEDIATE so writers queue up front.

    SQLite ignores SELECT ... FOR UPDATE; taking the write lock at BEGIN gives
    the same one-at-a-time guarantee the row lock gives on PostgreSQL.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        # Stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_kwargs(settings.database_url),
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Refresh token store transactions (rotate, revoke, cleanup) must not interleave.
# On SQLite they get their own engine that takes the write lock at BEGIN; request
# sessions keep the driver's lazy BEGIN so a read never blocks a store call.
if _is_sqlite(settings.database_url):
    store_engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        **_engine_kwargs(settings.database_url),
    )
    _begin_immediate(store_engine)
else:
    store_engine = engine
store_session_maker = async_sessionmaker(store_engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    import doccontrol.models  # noqa: F401 - register tables

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
