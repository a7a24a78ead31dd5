"""Tests for the raw-statement audit chain service."""

import json

import pytest

from helpers import HMAC_KEY, TENANT_A, TENANT_B

from inventra_engine.audit.service import RAW_ACCEPTED, RAW_REJECTED, AuditService, statement_text
from inventra_engine.common.config import InventraSettings
from inventra_engine.common.database import DatabaseManager

SQL = "SELECT * FROM products WHERE userId = :tenant_id"


def make_settings(**overrides) -> InventraSettings:
    defaults = {"hmac_key": HMAC_KEY, "db_url": "sqlite+aiosqlite://"}
    defaults.update(overrides)
    return InventraSettings(**defaults)


@pytest.fixture
async def db():
    manager = DatabaseManager(make_settings())
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def audit_svc():
    return AuditService(make_settings())


class TestRecordStatement:
    async def test_record_first_event(self, db, audit_svc):
        async with db.get_session() as session:
            event = await audit_svc.record_statement(
                session, TENANT_A, RAW_ACCEPTED, "mysql", SQL,
            )
            assert event.id is not None
            assert event.tenant_id == TENANT_A
            assert event.sequence == 1
            assert event.actor == "assistant"
            assert event.statement == SQL
            assert event.prev_hash is None
            assert event.event_hash is not None
            assert len(event.signature) == 64  # SHA-256 hex digest

    async def test_record_chained_event(self, db, audit_svc):
        async with db.get_session() as session:
            first = await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            second = await audit_svc.record_statement(
                session, TENANT_A, RAW_REJECTED, "mysql", "DROP TABLE products",
                detail={"reason": "DDL"},
            )
            assert second.prev_hash == first.event_hash
            assert second.sequence == 2
            assert second.event_hash != first.event_hash

    async def test_chains_are_per_tenant(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            other = await audit_svc.record_statement(session, TENANT_B, RAW_ACCEPTED, "mysql", SQL)
            assert other.sequence == 1
            assert other.prev_hash is None

    async def test_mongo_command_stored_as_canonical_json(self, db, audit_svc):
        command = {"find": "products", "filter": {"userId": TENANT_A}}
        async with db.get_session() as session:
            event = await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mongodb", command)
        assert json.loads(event.statement) == command
        assert event.statement == statement_text({"filter": {"userId": TENANT_A}, "find": "products"})

    def test_event_hash_deterministic(self):
        h1 = AuditService._compute_event_hash(RAW_ACCEPTED, "assistant", "mysql", SQL, {}, None)
        h2 = AuditService._compute_event_hash(RAW_ACCEPTED, "assistant", "mysql", SQL, {}, None)
        assert h1 == h2
        h3 = AuditService._compute_event_hash(RAW_ACCEPTED, "assistant", "postgresql", SQL, {}, None)
        assert h3 != h1


class TestVerifyChain:
    async def test_verify_intact_chain(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            await audit_svc.record_statement(session, TENANT_A, RAW_REJECTED, "mysql", "SELECT 1")
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
        async with db.get_session() as session:
            result = await audit_svc.verify_chain(session, TENANT_A)
            assert result["valid"] is True
            assert result["events_checked"] == 3
            assert result["break_at"] is None

    async def test_verify_tampered_statement(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            event2 = await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            # Rewrite history: pretend a different statement ran
            event2.statement = "DELETE FROM products WHERE userId = :tenant_id"
            await session.flush()
        async with db.get_session() as session:
            result = await audit_svc.verify_chain(session, TENANT_A)
            assert result["valid"] is False
            assert result["events_checked"] == 1
            assert result["break_at"] == event2.id

    async def test_verify_tampered_hash(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            event2 = await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            event2.event_hash = "0" * 64
            await session.flush()
        async with db.get_session() as session:
            result = await audit_svc.verify_chain(session, TENANT_A)
            assert result["valid"] is False
            assert result["break_at"] is not None

    async def test_verify_empty_chain(self, db, audit_svc):
        async with db.get_session() as session:
            result = await audit_svc.verify_chain(session, TENANT_A)
            assert result["valid"] is True
            assert result["events_checked"] == 0

    async def test_rotated_keyring_still_verifies(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)

        rotated = AuditService(make_settings(hmac_keys=json.dumps({"0": HMAC_KEY, "1": "next-key"})))
        async with db.get_session() as session:
            newer = await rotated.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            assert newer.signature != audit_svc._sign(newer.event_hash)
        async with db.get_session() as session:
            assert (await rotated.verify_chain(session, TENANT_A))["valid"] is True
            # The old service does not know the new key
            assert (await audit_svc.verify_chain(session, TENANT_A))["valid"] is False


class TestGetEvents:
    async def test_get_events_filtered(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            await audit_svc.record_statement(session, TENANT_A, RAW_REJECTED, "mysql", "SELECT 1")
            await audit_svc.record_statement(session, TENANT_A, RAW_REJECTED, "mysql", "SELECT 2")
        async with db.get_session() as session:
            rejected = await audit_svc.get_events(session, TENANT_A, event_type=RAW_REJECTED)
            assert len(rejected) == 2
            assert [e.statement for e in rejected] == ["SELECT 2", "SELECT 1"]

    async def test_get_events_paginated(self, db, audit_svc):
        async with db.get_session() as session:
            for i in range(5):
                await audit_svc.record_statement(
                    session, TENANT_A, RAW_ACCEPTED, "mysql", SQL, detail={"i": i},
                )
        async with db.get_session() as session:
            page1 = await audit_svc.get_events(session, TENANT_A, limit=2, offset=0)
            page2 = await audit_svc.get_events(session, TENANT_A, limit=2, offset=2)
            assert [e.sequence for e in page1] == [5, 4]
            assert [e.sequence for e in page2] == [3, 2]

    async def test_get_events_scoped_to_tenant(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
        async with db.get_session() as session:
            assert await audit_svc.get_events(session, TENANT_B) == []

    async def test_get_chain_head(self, db, audit_svc):
        async with db.get_session() as session:
            await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
            last = await audit_svc.record_statement(session, TENANT_A, RAW_ACCEPTED, "mysql", SQL)
        async with db.get_session() as session:
            head = await audit_svc.get_chain_head(session, TENANT_A)
            assert head is not None
            assert head.id == last.id
