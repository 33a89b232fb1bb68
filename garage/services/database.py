"""Database connection and transaction management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from garage.exceptions import StoreContentionError
from garage.models.base import Base
from garage.utils.retry import with_retry
from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes PostgreSQL uses for retryable transaction failures
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
_RETRYABLE_MESSAGES = ("database is locked", "could not serialize", "deadlock detected")


def is_contention_error(exc: DBAPIError) -> bool:
    """Return True when a driver error is a transient lock/serialization conflict."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGES)


class Database:
    """Owns the async engine and hands out sessions and transactions.

    Constructed once per process (API lifespan, worker job) and passed to the
    services that need it.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        max_retries: int = 3,
        retry_initial_delay: float = 0.05,
    ):
        self.url = url
        self.max_retries = max_retries
        self.retry_initial_delay = retry_initial_delay

        engine_kwargs = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_async_engine(url, **engine_kwargs)

        if self.engine.dialect.name == "sqlite":
            _use_immediate_transactions(self.engine)

        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        """Create tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> None:
        async with self.session_maker() as session:
            await session.execute(text("SELECT 1"))

    @asynccontextmanager
    async def transaction(self, serializable: bool = False) -> AsyncIterator[AsyncSession]:
        """Open a session inside a transaction that commits on exit.

        Lock and serialization conflicts surface as StoreContentionError.
        """
        async with self.session_maker() as session:
            try:
                async with session.begin():
                    if serializable and self.dialect == "postgresql":
                        await session.connection(
                            execution_options={"isolation_level": "SERIALIZABLE"}
                        )
                    yield session
            except DBAPIError as e:
                if is_contention_error(e):
                    raise StoreContentionError(str(e.orig if e.orig is not None else e)) from e
                raise

    async def run_in_transaction(
        self,
        work: Callable[[AsyncSession], Awaitable[T]],
        operation_name: Optional[str] = None,
        serializable: bool = False,
    ) -> T:
        """Run ``work`` in a fresh transaction, retrying on store contention."""

        async def attempt() -> T:
            async with self.transaction(serializable=serializable) as session:
                return await work(session)

        return await with_retry(
            attempt,
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            retry_on=(StoreContentionError,),
            operation_name=operation_name or getattr(work, "__name__", "transaction"),
        )


def _use_immediate_transactions(engine) -> None:
    """Make SQLite take the write lock at BEGIN so check-then-insert is serialized."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
