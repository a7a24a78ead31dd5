"""Tests for copying legacy per-tenant collections into shared collections."""

import pytest
from bson import ObjectId

from helpers import TENANT_A, TENANT_B, mongo_config, mysql_config

from inventra_engine.common.exceptions import ConfigurationError
from inventra_engine.migration.service import (
    MIGRATIONS_COLLECTION,
    PROVENANCE_FIELD,
    PROVENANCE_INDEX,
    LegacyMigrator,
    parse_legacy_name,
)

LEGACY_PRODUCTS = f"products_{TENANT_A}"
LEGACY_SALES = f"sales_{TENANT_B}"


@pytest.fixture
def migrator(manager):
    return LegacyMigrator(manager)


@pytest.fixture
async def store(mongo_server):
    """A database still laid out one collection per tenant."""
    database = mongo_server.database("ai_inventory")
    await database[LEGACY_PRODUCTS].insert_one({"_id": ObjectId(), "name": "Widget", "stock": 3})
    await database[LEGACY_PRODUCTS].insert_one({"_id": ObjectId(), "name": "Gadget", "stock": 0})
    await database[LEGACY_SALES].insert_one({"_id": ObjectId(), "productName": "Bolt", "quantity": 2})
    return database


class TestParseLegacyName:
    def test_recovers_entity_and_tenant(self):
        legacy = parse_legacy_name(LEGACY_PRODUCTS)
        assert legacy.entity == "products"
        assert legacy.tenant_id == TENANT_A

    def test_handle_with_underscores(self):
        legacy = parse_legacy_name("sales_user_mary_jane_1700000000002")
        assert legacy.entity == "sales"
        assert legacy.handle == "mary_jane"
        assert legacy.tenant_id == "user_mary_jane_1700000000002"

    @pytest.mark.parametrize("name", [
        "products",
        "products_user_alice",
        f"users_{TENANT_A}",
        f"widgets_{TENANT_A}",
        MIGRATIONS_COLLECTION,
    ])
    def test_not_legacy(self, name):
        assert parse_legacy_name(name) is None


class TestMigrate:
    async def test_copies_documents_with_tenant_and_provenance(self, migrator, store):
        report = await migrator.run(mongo_config())

        assert report.inserted == 3
        assert report.failed == 0
        products = store["products"].docs
        assert {d["name"] for d in products} == {"Widget", "Gadget"}
        assert all(d["userId"] == TENANT_A for d in products)
        assert all(d[PROVENANCE_FIELD].startswith(f"{LEGACY_PRODUCTS}:") for d in products)
        [sale] = store["sales"].docs
        assert sale["userId"] == TENANT_B

    async def test_documents_get_new_ids(self, migrator, store):
        old_ids = {d["_id"] for d in store[LEGACY_PRODUCTS].docs}
        await migrator.run(mongo_config())
        new_ids = {d["_id"] for d in store["products"].docs}
        assert old_ids.isdisjoint(new_ids)

    async def test_rerun_inserts_nothing(self, migrator, store):
        await migrator.run(mongo_config())
        report = await migrator.run(mongo_config())

        assert report.inserted == 0
        assert report.duplicates == 3
        assert len(store["products"].docs) == 2

    async def test_legacy_collections_are_kept(self, migrator, store):
        report = await migrator.run(mongo_config())
        assert len(store[LEGACY_PRODUCTS].docs) == 2
        assert f"db.{LEGACY_PRODUCTS}.drop()" in report.drop_commands

    async def test_provenance_index_created(self, migrator, store):
        await migrator.run(mongo_config())
        info = await store["products"].index_information()
        assert info[PROVENANCE_INDEX.name]["unique"] is True
        assert info[PROVENANCE_INDEX.name]["partialFilterExpression"] == {PROVENANCE_FIELD: {"$exists": True}}

    async def test_run_recorded(self, migrator, store):
        await migrator.run(mongo_config())
        record = await store[MIGRATIONS_COLLECTION].find_one({"legacy_collection": LEGACY_PRODUCTS})
        assert record["entity"] == "products"
        assert record["tenant_id"] == TENANT_A
        assert record["inserted"] == 2

    async def test_dry_run_writes_nothing(self, migrator, store):
        report = await migrator.plan(mongo_config())

        assert report.dry_run is True
        assert [c.documents for c in report.collections] == [2, 1]
        assert report.inserted == 0
        assert "products" not in store.collections
        assert MIGRATIONS_COLLECTION not in store.collections

    async def test_nothing_to_migrate(self, migrator, mongo_server):
        mongo_server.database("ai_inventory")
        report = await migrator.run(mongo_config())
        assert report.collections == []

    async def test_relational_descriptor_rejected(self, migrator):
        with pytest.raises(ConfigurationError):
            await migrator.run(mysql_config())
