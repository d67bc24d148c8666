"""Database session and engine setup using SQLAlchemy's async API."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from server.settings import DATABASE_URL


def configure_sqlite_locking(engine: AsyncEngine) -> None:
    """Make SQLite take the write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, which lets two connections
    both hold a read lock and then deadlock on upgrade. Emitting
    ``BEGIN IMMEDIATE`` ourselves makes concurrent writers queue on the busy
    timeout instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str = DATABASE_URL, **kwargs) -> AsyncEngine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": 30})
    engine = create_async_engine(url, echo=False, **kwargs)
    if engine.dialect.name == "sqlite":
        configure_sqlite_locking(engine)
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
        class_=AsyncSession,
    )


engine = build_engine()
SessionLocal = build_sessionmaker(engine)


async def get_db():
    async with SessionLocal() as db:
        yield db
