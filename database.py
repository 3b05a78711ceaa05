from sqlmodel import SQLModel
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from config import DATABASE_URL

# Fail fast: nothing works without a database
if not DATABASE_URL:
    raise ValueError("DATABASE_URL is not set. Please check your .env file.")

IS_SQLITE = DATABASE_URL.startswith("sqlite")

# SQLite connections must not be shared between event loops
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    **({"poolclass": NullPool} if IS_SQLITE else {}),
)

if IS_SQLITE:
    # The driver's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
    # IMMEDIATE takes the write lock up front so writers are serialized.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # Table classes must be registered on the metadata before create_all
    import models  # noqa: F401

    async with engine.begin() as conn:
        # This creates the tables if they don't exist
        await conn.run_sync(SQLModel.metadata.create_all)


async def drop_db():
    import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session
