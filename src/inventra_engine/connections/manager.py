"""Per-descriptor connection lifecycle for the relational and document engines."""

import asyncio
import logging
import ssl
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Optional
from urllib.parse import quote_plus

from pymongo import AsyncMongoClient
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from inventra_engine.common.config import InventraSettings, get_settings
from inventra_engine.common.exceptions import ConnectionFailedError, PoolExhaustedError
from inventra_engine.descriptors.schemas import (
    MANAGED_MONGO_SCHEME,
    ConnectionDescriptor,
    MongoDBDescriptor,
)
from inventra_engine.descriptors.validator import validate_descriptor
from inventra_engine.entities.tables import metadata
from inventra_engine.isolation.indexes import ALL_ENTITIES

logger = logging.getLogger(__name__)

DRIVERS = {
    "mysql": "mysql+aiomysql",
    "postgresql": "postgresql+asyncpg",
}


@dataclass
class ConnectionHandle:
    """A usable backend session. Relational handles carry ``connection``; document handles carry ``database``."""

    engine_type: str
    connection: Optional[AsyncConnection] = None
    database: Any = None
    dialect: Optional[str] = None

    @property
    def is_document(self) -> bool:
        return self.engine_type == "mongodb"


def backend_message(exc: BaseException) -> str:
    """The backend's own error text, without SQLAlchemy's wrapping."""
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc) or exc.__class__.__name__


class ConnectionManager:
    """
    Acquires and releases backend sessions from per-request descriptors.

    Relational engines share a bounded pool per descriptor fingerprint; the
    document engine opens one client per unit of work. There is no default
    descriptor: every call names the backend it wants.
    """

    def __init__(
        self,
        settings: InventraSettings | None = None,
        mongo_client_factory: Callable[..., Any] | None = None,
    ):
        self.settings = settings or get_settings()
        self._mongo_client_factory = mongo_client_factory or AsyncMongoClient
        self._engines: OrderedDict[str, AsyncEngine] = OrderedDict()
        self._lock = asyncio.Lock()

    # ── URLs ──

    def relational_url(self, descriptor: ConnectionDescriptor) -> URL | str:
        query = {}
        if descriptor.engine == "mysql":
            query["charset"] = descriptor.options.charset
        return URL.create(
            DRIVERS[descriptor.engine],
            username=descriptor.username or None,
            password=descriptor.password.get_secret_value() or None,
            host=descriptor.host,
            port=descriptor.port,
            database=descriptor.database,
            query=query,
        )

    def mongo_uri(self, descriptor: MongoDBDescriptor) -> str:
        """Connection string for a document descriptor.

        Managed clusters need credentials: the descriptor's own, or the
        server-side cluster account.
        """
        host = descriptor.host.strip()
        if descriptor.is_managed:
            if host.startswith(MANAGED_MONGO_SCHEME) and "@" in host:
                return host
            username = descriptor.username or self.settings.managed_mongo_username
            password = descriptor.password.get_secret_value() or self.settings.managed_mongo_password
            if not username or not password:
                raise ConnectionFailedError(
                    "MongoDB Atlas credentials not configured. Set INVENTRA_MANAGED_MONGO_USERNAME "
                    "and INVENTRA_MANAGED_MONGO_PASSWORD on the server.",
                    engine="mongodb",
                    server_misconfigured=True,
                )
            cluster = host.removeprefix(MANAGED_MONGO_SCHEME).rstrip("/")
            return (
                f"{MANAGED_MONGO_SCHEME}{quote_plus(username)}:{quote_plus(password)}@{cluster}/"
                f"{descriptor.database}?retryWrites=true&w=majority"
            )

        if host.startswith("mongodb://"):
            return host
        credentials = ""
        if descriptor.username and descriptor.password.get_secret_value():
            credentials = (
                f"{quote_plus(descriptor.username)}:"
                f"{quote_plus(descriptor.password.get_secret_value())}@"
            )
        return f"mongodb://{credentials}{host}:{descriptor.port}/{descriptor.database}"

    # ── Engines ──

    def _connect_args(self, descriptor: ConnectionDescriptor) -> dict[str, Any]:
        if not descriptor.options.ssl:
            return {}
        if descriptor.engine == "postgresql":
            return {"ssl": "require"}
        return {"ssl": ssl.create_default_context()}

    def _create_engine(self, descriptor: ConnectionDescriptor, pooled: bool = True) -> AsyncEngine:
        kwargs: dict[str, Any] = {"connect_args": self._connect_args(descriptor)}
        if pooled:
            kwargs.update(
                pool_size=descriptor.options.connection_limit,
                max_overflow=0,
                pool_timeout=self.settings.pool_timeout,
                pool_pre_ping=True,
                pool_recycle=300,
            )
        else:
            kwargs["poolclass"] = NullPool
        return create_async_engine(self.relational_url(descriptor), **kwargs)

    async def _get_engine(self, descriptor: ConnectionDescriptor) -> AsyncEngine:
        key = descriptor.fingerprint()
        evicted: list[AsyncEngine] = []
        async with self._lock:
            engine = self._engines.get(key)
            if engine is not None:
                self._engines.move_to_end(key)
                return engine
            try:
                engine = self._create_engine(descriptor)
            except Exception as exc:
                raise ConnectionFailedError(backend_message(exc), engine=descriptor.engine) from exc
            self._engines[key] = engine
            while len(self._engines) > self.settings.max_pools:
                _, old = self._engines.popitem(last=False)
                evicted.append(old)
        for old in evicted:
            # Checked-out connections stay valid and close on release.
            await old.dispose()
        logger.debug("Created %s pool for %s", descriptor.engine, descriptor.host)
        return engine

    @property
    def pool_count(self) -> int:
        return len(self._engines)

    # ── Acquire / release ──

    @asynccontextmanager
    async def acquire(self, descriptor: Any) -> AsyncGenerator[ConnectionHandle, None]:
        """Yield a fully usable handle for ``descriptor``; released on every exit path."""
        descriptor = validate_descriptor(descriptor)
        if descriptor.engine == "mongodb":
            async with self._mongo_session(descriptor) as handle:
                yield handle
        else:
            async with self._relational_session(descriptor) as handle:
                yield handle

    @asynccontextmanager
    async def _relational_session(self, descriptor: ConnectionDescriptor) -> AsyncGenerator[ConnectionHandle, None]:
        engine = await self._get_engine(descriptor)
        try:
            conn = await engine.connect()
        except PoolTimeoutError as exc:
            raise PoolExhaustedError(
                f"No {descriptor.engine} connection available within {self.settings.pool_timeout}s",
                engine=descriptor.engine,
            ) from exc
        except Exception as exc:
            raise ConnectionFailedError(backend_message(exc), engine=descriptor.engine) from exc
        try:
            yield ConnectionHandle(
                engine_type=descriptor.engine,
                connection=conn,
                dialect=engine.dialect.name,
            )
        finally:
            await conn.close()

    def _open_mongo_client(self, descriptor: MongoDBDescriptor):
        uri = self.mongo_uri(descriptor)
        kwargs: dict[str, Any] = {"serverSelectionTimeoutMS": self.settings.mongo_timeout_ms}
        if descriptor.options.ssl and not descriptor.is_managed:
            kwargs["tls"] = True
        try:
            return self._mongo_client_factory(uri, **kwargs)
        except Exception as exc:
            raise ConnectionFailedError(backend_message(exc), engine="mongodb") from exc

    @asynccontextmanager
    async def _mongo_session(self, descriptor: MongoDBDescriptor) -> AsyncGenerator[ConnectionHandle, None]:
        client = self._open_mongo_client(descriptor)
        try:
            await client.admin.command("ping")
        except Exception as exc:
            await client.close()
            raise ConnectionFailedError(backend_message(exc), engine="mongodb") from exc
        try:
            yield ConnectionHandle(engine_type="mongodb", database=client[descriptor.database])
        finally:
            await client.close()

    # ── Operations ──

    async def test_connection(self, descriptor: Any) -> bool:
        """Acquire, make one no-op round trip, release.

        Uses a throwaway engine so probing unsaved credentials leaves no pool
        behind. Returns True, or raises ``ConnectionFailedError``.
        """
        descriptor = validate_descriptor(descriptor)
        if descriptor.engine == "mongodb":
            async with self._mongo_session(descriptor):
                pass
        else:
            try:
                engine = self._create_engine(descriptor, pooled=False)
            except Exception as exc:
                raise ConnectionFailedError(backend_message(exc), engine=descriptor.engine) from exc
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except Exception as exc:
                logger.warning("Connection test failed for %s: %s", descriptor.redacted(), exc)
                raise ConnectionFailedError(backend_message(exc), engine=descriptor.engine) from exc
            finally:
                await engine.dispose()
        logger.info("Connection test succeeded for %s", descriptor.public_fields())
        return True

    async def initialize_schema(self, descriptor: Any) -> list[str]:
        """Create missing entity tables/collections. Returns the store names now present."""
        async with self.acquire(descriptor) as handle:
            if handle.is_document:
                existing = set(await handle.database.list_collection_names())
                for name in ALL_ENTITIES:
                    if name not in existing:
                        await handle.database.create_collection(name)
                        logger.info("Created collection %s", name)
                return list(ALL_ENTITIES)
            async with handle.connection.begin():
                await handle.connection.run_sync(metadata.create_all)
            return list(ALL_ENTITIES)

    async def dispose_all(self) -> None:
        async with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            await engine.dispose()
