"""Test doubles and descriptor builders shared across the suite."""

from pathlib import Path

from inventra_engine.connections.manager import ConnectionManager

HMAC_KEY = "test-hmac-key-for-unit-tests"
API_KEY = "test-admin-api-key"

TENANT_A = "user_alice_1700000000000"
TENANT_B = "user_bob_1700000000001"


class SQLiteConnectionManager(ConnectionManager):
    """Routes relational descriptors to file-backed SQLite databases under ``root``.

    Each descriptor database name maps to its own file, so the pooling,
    acquire/release and error paths run unchanged.
    """

    def __init__(self, root: Path, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.root = Path(root)

    def relational_url(self, descriptor):
        return f"sqlite+aiosqlite:///{self.root / descriptor.database}.db"


def mysql_config(**overrides) -> dict:
    config = {
        "type": "mysql",
        "host": "localhost",
        "port": 3306,
        "database": "db1",
        "username": "root",
        "password": "secret",
    }
    config.update(overrides)
    return config


def postgres_config(**overrides) -> dict:
    config = mysql_config(type="postgresql", port=5432, username="postgres")
    config.update(overrides)
    return config


def mongo_config(**overrides) -> dict:
    config = {
        "type": "mongodb",
        "host": "localhost",
        "port": 27017,
        "database": "ai_inventory",
    }
    config.update(overrides)
    return config
