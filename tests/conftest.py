"""Shared test fixtures for Inventra-Engine."""

import pytest
from httpx import ASGITransport, AsyncClient

from fake_mongo import FakeMongoServer
from helpers import API_KEY, HMAC_KEY, SQLiteConnectionManager, mysql_config

from inventra_engine.common.config import InventraSettings


@pytest.fixture
def hmac_key():
    return HMAC_KEY


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def settings(tmp_path):
    return InventraSettings(
        hmac_key=HMAC_KEY,
        api_key=API_KEY,
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'control.db'}",
        pool_timeout=1.0,
    )


@pytest.fixture
def mongo_server():
    return FakeMongoServer()


@pytest.fixture
async def manager(tmp_path, settings, mongo_server):
    """Connection manager backed by SQLite files and the in-memory mongo server."""
    mgr = SQLiteConnectionManager(
        tmp_path, settings, mongo_client_factory=mongo_server.client_factory,
    )
    yield mgr
    await mgr.dispose_all()


@pytest.fixture
async def relational(manager):
    """A relational descriptor whose entity tables exist."""
    config = mysql_config()
    await manager.initialize_schema(config)
    return config


@pytest.fixture
def app(tmp_path, monkeypatch, mongo_server):
    """Create a test app with a throwaway control DB and fake tenant backends."""
    monkeypatch.setenv("INVENTRA_DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'control.db'}")
    monkeypatch.setenv("INVENTRA_HMAC_KEY", HMAC_KEY)
    monkeypatch.setenv("INVENTRA_API_KEY", API_KEY)
    for name in ("USERNAME", "PASSWORD", "HOST", "DATABASE"):
        monkeypatch.delenv(f"INVENTRA_MANAGED_MONGO_{name}", raising=False)

    # Clear caches and singletons so new env vars take effect
    from inventra_engine.common.config import get_settings
    get_settings.cache_clear()

    from inventra_engine import deps
    deps.reset_singletons()
    deps._connections = SQLiteConnectionManager(
        tmp_path, get_settings(), mongo_client_factory=mongo_server.client_factory,
    )

    from inventra_engine.app import create_app
    yield create_app()
    get_settings.cache_clear()
    deps.reset_singletons()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from inventra_engine.deps import get_connection_manager, get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await get_connection_manager().dispose_all()
    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Inventra-Api-Key": API_KEY}
