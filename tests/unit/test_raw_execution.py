"""Tests for the audited raw-statement path of the executor."""

import pytest

from helpers import TENANT_A, TENANT_B, mongo_config

from inventra_engine.audit.service import RAW_ACCEPTED, RAW_FAILED, RAW_REJECTED, AuditService
from inventra_engine.common.database import DatabaseManager
from inventra_engine.common.exceptions import OperationError, RawStatementRejected
from inventra_engine.executor.schemas import RawStatement
from inventra_engine.executor.service import QueryExecutor

WIDGET = {"action": "insert", "entity": "products", "document": {"name": "Widget", "price": 3, "stock": 2}}
SCOPED_SELECT = "SELECT name, userId FROM products WHERE userId = :tenant_id"


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def audit_svc(settings):
    return AuditService(settings)


@pytest.fixture
def executor(manager, audit_svc, db):
    return QueryExecutor(manager, audit=audit_svc, db=db)


async def _events(db, audit_svc, tenant_id=TENANT_A):
    async with db.get_session() as session:
        events = await audit_svc.get_events(session, tenant_id)
    return [e.event_type for e in reversed(events)]


class TestRawSql:
    async def test_scoped_select_sees_only_own_rows(self, executor, relational):
        await executor.execute(relational, TENANT_A, WIDGET)
        await executor.execute(relational, TENANT_B, WIDGET)

        result = await executor.execute_raw(relational, TENANT_A, SCOPED_SELECT)
        assert result.rows == [{"name": "Widget", "userId": TENANT_A}]

    async def test_tenant_placeholder_bound_with_extra_params(self, executor, relational):
        await executor.execute(relational, TENANT_A, WIDGET)
        result = await executor.execute_raw(
            relational, TENANT_A,
            "UPDATE products SET stock = :stock WHERE userId = :tenant_id AND name = :name",
            params={"stock": 9, "name": "Widget"},
        )
        assert result.affected == 1

        rows = (await executor.execute_raw(
            relational, TENANT_A, "SELECT stock FROM products WHERE userId = :tenant_id",
        )).rows
        assert rows == [{"stock": 9}]

    async def test_raw_insert(self, executor, relational):
        result = await executor.execute_raw(
            relational, TENANT_A,
            "INSERT INTO products (id, userId, name, price, stock, minStock) "
            "VALUES ('p1', :tenant_id, 'Raw', 1, 0, 0)",
        )
        assert result.affected == 1
        found = await executor.execute(relational, TENANT_A, {"action": "count", "entity": "products"})
        assert found.affected == 1

    async def test_accepts_raw_statement_model(self, executor, relational):
        statement = RawStatement(statement=SCOPED_SELECT + " AND name = :name", params={"name": "x"})
        result = await executor.execute_raw(relational, TENANT_A, statement)
        assert result.rows == []

    async def test_accepted_statement_is_audited_first(self, executor, relational, db, audit_svc):
        await executor.execute_raw(relational, TENANT_A, SCOPED_SELECT)
        assert await _events(db, audit_svc) == [RAW_ACCEPTED]


class TestRejection:
    async def test_rejected_statement_never_runs(self, executor, relational):
        with pytest.raises(RawStatementRejected):
            await executor.execute_raw(relational, TENANT_A, "DROP TABLE products")
        # Table is still there
        result = await executor.execute(relational, TENANT_A, {"action": "count", "entity": "products"})
        assert result.affected == 0

    async def test_rejection_is_audited_with_reason(self, executor, relational, db, audit_svc):
        with pytest.raises(RawStatementRejected):
            await executor.execute_raw(relational, TENANT_A, "SELECT * FROM products", actor="reporting-bot")

        async with db.get_session() as session:
            [event] = await audit_svc.get_events(session, TENANT_A)
        assert event.event_type == RAW_REJECTED
        assert event.actor == "reporting-bot"
        assert event.engine == "mysql"
        assert "not scoped" in event.detail["reason"]

    async def test_backend_failure_is_audited(self, executor, relational, db, audit_svc):
        with pytest.raises(OperationError):
            await executor.execute_raw(
                relational, TENANT_A, "SELECT * FROM nowhere WHERE userId = :tenant_id",
            )
        assert await _events(db, audit_svc) == [RAW_ACCEPTED, RAW_FAILED]

    async def test_unbound_parameter_is_audited_as_failure(self, executor, relational, db, audit_svc):
        with pytest.raises(OperationError):
            await executor.execute_raw(
                relational, TENANT_A, "SELECT * FROM products WHERE userId = :tenant_id AND name = :name",
            )
        assert await _events(db, audit_svc) == [RAW_ACCEPTED, RAW_FAILED]

    @pytest.mark.parametrize("sql", [
        "UPDATE products SET stock = 0 WHERE (userId = :tenant_id OR 1 = 1)",
        "UPDATE products SET stock = 0 WHERE userId = :tenant_id AND (name = 'Widget' OR 1 = 1) "
        "OR userId <> :tenant_id",
        "DELETE FROM products WHERE userId = :tenant_id AND id IN (SELECT id FROM products)",
    ])
    async def test_cross_tenant_write_never_runs(self, executor, relational, sql):
        await executor.execute(relational, TENANT_A, WIDGET)
        await executor.execute(relational, TENANT_B, WIDGET)

        with pytest.raises(RawStatementRejected):
            await executor.execute_raw(relational, TENANT_A, sql)
        rows = (await executor.execute(relational, TENANT_B, {"action": "find", "entity": "products"})).rows
        assert [(r["name"], r["stock"]) for r in rows] == [("Widget", 2)]

    async def test_cross_tenant_read_through_subquery_rejected(self, executor, relational, db, audit_svc):
        await executor.execute(relational, TENANT_B, WIDGET)
        with pytest.raises(RawStatementRejected):
            await executor.execute_raw(
                relational, TENANT_A,
                "SELECT (SELECT group_concat(userId) FROM products) AS ids FROM products "
                "WHERE userId = :tenant_id",
            )
        assert await _events(db, audit_svc) == [RAW_REJECTED]

    async def test_chain_verifies_after_mixed_outcomes(self, executor, relational, db, audit_svc):
        await executor.execute_raw(relational, TENANT_A, SCOPED_SELECT)
        with pytest.raises(RawStatementRejected):
            await executor.execute_raw(relational, TENANT_A, "DELETE FROM products")
        await executor.execute_raw(relational, TENANT_A, SCOPED_SELECT)

        async with db.get_session() as session:
            result = await audit_svc.verify_chain(session, TENANT_A)
        assert result == {"valid": True, "events_checked": 3, "break_at": None}


class TestRawMongo:
    async def test_pinned_find_returns_command_reply(self, executor):
        config = mongo_config()
        await executor.execute(config, TENANT_A, WIDGET)
        await executor.execute(config, TENANT_B, WIDGET)

        result = await executor.execute_raw(
            config, TENANT_A, {"find": "products", "filter": {"userId": TENANT_A}},
        )
        batch = result.reply["cursor"]["firstBatch"]
        assert [doc["userId"] for doc in batch] == [TENANT_A]
        assert isinstance(batch[0]["_id"], str)

    async def test_unpinned_command_rejected(self, executor, mongo_server, db, audit_svc):
        with pytest.raises(RawStatementRejected):
            await executor.execute_raw(mongo_config(), TENANT_A, {"delete": "products", "deletes": [{"q": {}}]})
        assert mongo_server.database("ai_inventory").commands == []
        assert await _events(db, audit_svc) == [RAW_REJECTED]


class TestWithoutAuditStore:
    async def test_runs_with_log_only_audit(self, manager, relational):
        executor = QueryExecutor(manager)
        result = await executor.execute_raw(relational, TENANT_A, SCOPED_SELECT)
        assert result.rows == []
