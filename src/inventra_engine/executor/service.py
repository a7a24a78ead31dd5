"""
Query/command executor.

Structured operations are translated per engine with the tenant injected
into every filter and every written row. Raw statements are audited, run
through the gate, and only then executed.
"""

import logging
import operator
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure, PyMongoError
from sqlalchemy import and_, delete, func, insert, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, StatementError
from sqlalchemy.types import DateTime

from inventra_engine.audit.service import RAW_ACCEPTED, RAW_FAILED, RAW_REJECTED, statement_text
from inventra_engine.common.exceptions import (
    ConnectionFailedError,
    DuplicateRecordError,
    InventraError,
    OperationError,
    RawStatementRejected,
)
from inventra_engine.common.logging import get_logger
from inventra_engine.common.models import generate_uuid, utcnow
from inventra_engine.common.security import normalize_tenant_id
from inventra_engine.connections.manager import backend_message
from inventra_engine.descriptors.validator import validate_descriptor
from inventra_engine.entities.tables import TABLES
from inventra_engine.executor.gate import TENANT_PLACEHOLDER, RawStatementGate
from inventra_engine.executor.schemas import ExecutionResult, RawStatement, StructuredOperation
from inventra_engine.isolation.enforcer import guard_changes, scope_filter, stamp_document

logger = logging.getLogger(__name__)
audit_logger = get_logger("audit.raw")

# E11000 duplicate key
MONGO_DUPLICATE_KEY = 11000

FIELD_REFERENCE = "$field"
COMPARISONS = {
    "$lt": operator.lt,
    "$lte": operator.le,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$ne": operator.ne,
}
FILTER_OPERATORS = frozenset(COMPARISONS) | {"$in"}


def _stringify_ids(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Mapping):
        return {k: _stringify_ids(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify_ids(v) for v in value]
    return value


def _check_filter(filter: Mapping[str, Any]) -> None:
    for key, value in filter.items():
        if key.startswith("$"):
            raise OperationError(f"Operator '{key}' is not allowed in a structured filter")
        if isinstance(value, list):
            raise OperationError(f"Filter on '{key}' must be a plain value or a comparison")
        if not isinstance(value, Mapping):
            continue
        if not value:
            raise OperationError(f"Filter on '{key}' has an empty comparison")
        for op, arg in value.items():
            if op not in FILTER_OPERATORS:
                raise OperationError(f"Operator '{op}' is not allowed in a structured filter")
            if op == "$in":
                if not isinstance(arg, list) or any(isinstance(a, (Mapping, list)) for a in arg):
                    raise OperationError(f"$in on '{key}' takes a list of plain values")
            elif isinstance(arg, Mapping):
                reference = arg.get(FIELD_REFERENCE)
                if set(arg) != {FIELD_REFERENCE} or not isinstance(reference, str) or reference.startswith("$"):
                    raise OperationError(f"{op} on '{key}' takes a plain value or {{\"{FIELD_REFERENCE}\": name}}")
            elif isinstance(arg, list):
                raise OperationError(f"{op} on '{key}' takes a plain value")


def _object_id_condition(value: Any) -> Any:
    """Match ``_id`` given as a hex string against either stored form."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return {"$in": [value, ObjectId(value)]}
    if isinstance(value, Mapping) and isinstance(value.get("$in"), list):
        expanded = []
        for item in value["$in"]:
            expanded.append(item)
            if isinstance(item, str) and ObjectId.is_valid(item):
                expanded.append(ObjectId(item))
        return {**value, "$in": expanded}
    return value


def _mongo_filter(filter: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a structured filter; field-to-field comparisons become ``$expr``."""
    translated: dict[str, Any] = {}
    expressions = []
    for key, value in filter.items():
        if key == "_id":
            value = _object_id_condition(value)
        if not isinstance(value, Mapping):
            translated[key] = value
            continue
        plain = {}
        for op, arg in value.items():
            if isinstance(arg, Mapping) and FIELD_REFERENCE in arg:
                expressions.append({op: [f"${key}", f"${arg[FIELD_REFERENCE]}"]})
            else:
                plain[op] = arg
        if plain:
            translated[key] = plain
    if expressions:
        translated["$expr"] = expressions[0] if len(expressions) == 1 else {"$and": expressions}
    return translated


class QueryExecutor:
    """Runs tenant-scoped operations against a descriptor's backend."""

    def __init__(self, connections, gate: RawStatementGate | None = None, audit=None, db=None):
        self.connections = connections
        self.gate = gate or RawStatementGate()
        self.audit = audit
        self.db = db

    # ── Structured path ──

    async def execute(self, descriptor: Any, tenant_id: Optional[str], operation: Any) -> ExecutionResult:
        tenant_id = normalize_tenant_id(tenant_id)
        if not isinstance(operation, StructuredOperation):
            try:
                operation = StructuredOperation.model_validate(operation)
            except ValidationError as exc:
                raise OperationError(str(exc)) from exc
        descriptor = validate_descriptor(descriptor)

        filter = scope_filter(operation.filter, tenant_id)
        _check_filter(filter)
        documents = [stamp_document(d, tenant_id) for d in operation.payload()]
        changes = guard_changes(operation.changes) if operation.changes else {}

        async with self.connections.acquire(descriptor) as handle:
            if handle.is_document:
                result = await self._execute_mongo(handle.database, operation, filter, documents, changes)
            else:
                result = await self._execute_relational(handle.connection, operation, filter, documents, changes)

        logger.info(
            "%s on %s", operation.action, operation.entity,
            extra={"tenant_id": tenant_id, "engine": descriptor.engine, "entity": operation.entity},
        )
        return result

    @staticmethod
    def _column(table, name: str):
        try:
            return table.c[name]
        except KeyError:
            raise OperationError(f"Unknown field '{name}' for {table.name}") from None

    @staticmethod
    def _coerce(column, name: str, value: Any) -> Any:
        if isinstance(value, str) and isinstance(column.type, DateTime):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                raise OperationError(f"Field '{name}' expects an ISO-8601 timestamp") from None
        return value

    def _row_values(self, table, values: Mapping[str, Any]) -> dict[str, Any]:
        return {
            name: self._coerce(self._column(table, name), name, value)
            for name, value in values.items()
        }

    def _condition(self, table, name: str, value: Any):
        column = self._column(table, name)
        if not isinstance(value, Mapping):
            return column == self._coerce(column, name, value)
        clauses = []
        for op, arg in value.items():
            if op == "$in":
                clauses.append(column.in_([self._coerce(column, name, a) for a in arg]))
            elif isinstance(arg, Mapping):
                clauses.append(COMPARISONS[op](column, self._column(table, arg[FIELD_REFERENCE])))
            else:
                clauses.append(COMPARISONS[op](column, self._coerce(column, name, arg)))
        return and_(*clauses)

    def _where(self, table, filter: Mapping[str, Any]):
        return and_(*[self._condition(table, k, v) for k, v in filter.items()])

    def _aggregate_query(self, table, op: StructuredOperation, where):
        labels = {}
        for alias, metric in op.metrics.items():
            if metric.op == "count":
                labels[alias] = func.count().label(alias)
            else:
                labels[alias] = getattr(func, metric.op)(self._column(table, metric.field)).label(alias)
        group = [self._column(table, op.group_by)] if op.group_by else []
        query = select(*group, *labels.values()).select_from(table).where(where)
        if group:
            query = query.group_by(*group)
            labels[op.group_by] = group[0]
        for field, direction in op.sort or []:
            query = query.order_by(labels[field].desc() if direction < 0 else labels[field].asc())
        if op.limit:
            query = query.limit(op.limit)
        return query

    async def _execute_relational(self, conn, op: StructuredOperation, filter, documents, changes) -> ExecutionResult:
        table = TABLES[op.entity]
        where = self._where(table, filter)
        now = utcnow()
        try:
            if op.action == "find":
                query = select(table).where(where)
                for field, direction in op.sort or []:
                    column = self._column(table, field)
                    query = query.order_by(column.desc() if direction < 0 else column.asc())
                if op.limit:
                    query = query.limit(op.limit)
                result = await conn.execute(query)
                return ExecutionResult(rows=[dict(r._mapping) for r in result])

            if op.action == "count":
                result = await conn.execute(select(func.count()).select_from(table).where(where))
                return ExecutionResult(affected=int(result.scalar_one()))

            if op.action == "aggregate":
                result = await conn.execute(self._aggregate_query(table, op, where))
                return ExecutionResult(rows=[dict(r._mapping) for r in result])

            async with conn.begin():
                if op.action == "insert":
                    ids = []
                    for document in documents:
                        row = self._row_values(table, document)
                        row.setdefault("id", generate_uuid())
                        for stamp in ("createdAt", "updatedAt"):
                            if stamp in table.c:
                                row.setdefault(stamp, now)
                        await conn.execute(insert(table).values(**row))
                        ids.append(str(row["id"]))
                    return ExecutionResult(affected=len(ids), inserted_ids=ids)

                if op.action == "update":
                    values = self._row_values(table, changes)
                    if "updatedAt" in table.c:
                        values.setdefault("updatedAt", now)
                    result = await conn.execute(update(table).where(where).values(**values))
                    return ExecutionResult(affected=result.rowcount)

                result = await conn.execute(delete(table).where(where))
                return ExecutionResult(affected=result.rowcount)
        except IntegrityError as exc:
            raise DuplicateRecordError(backend_message(exc), engine=conn.dialect.name) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise ConnectionFailedError(backend_message(exc), engine=conn.dialect.name) from exc
            raise OperationError(backend_message(exc), engine=conn.dialect.name) from exc
        except StatementError as exc:
            raise OperationError(backend_message(exc.orig or exc), engine=conn.dialect.name) from exc

    @staticmethod
    def _group_pipeline(op: StructuredOperation, filter: Mapping[str, Any]) -> list[dict[str, Any]]:
        # the tenant-pinned $match always runs first
        group: dict[str, Any] = {"_id": f"${op.group_by}" if op.group_by else None}
        for alias, metric in op.metrics.items():
            group[alias] = {"$sum": 1} if metric.op == "count" else {f"${metric.op}": f"${metric.field}"}
        pipeline = [{"$match": filter}, {"$group": group}]
        if op.sort:
            pipeline.append({"$sort": {
                "_id" if field == op.group_by else field: direction for field, direction in op.sort
            }})
        if op.limit:
            pipeline.append({"$limit": op.limit})
        return pipeline

    async def _execute_mongo(self, database, op: StructuredOperation, filter, documents, changes) -> ExecutionResult:
        collection = database[op.entity]
        filter = _mongo_filter(filter)
        now = utcnow()
        try:
            if op.action == "find":
                cursor = collection.find(filter)
                if op.sort:
                    cursor = cursor.sort([(field, direction) for field, direction in op.sort])
                if op.limit:
                    cursor = cursor.limit(op.limit)
                rows = [_stringify_ids(doc) async for doc in cursor]
                return ExecutionResult(rows=rows)

            if op.action == "count":
                return ExecutionResult(affected=await collection.count_documents(filter))

            if op.action == "aggregate":
                cursor = await collection.aggregate(self._group_pipeline(op, filter))
                rows = []
                async for doc in cursor:
                    key = doc.pop("_id")
                    rows.append(_stringify_ids({op.group_by: key, **doc} if op.group_by else doc))
                if not rows and not op.group_by:
                    # one row for the empty set, as SQL returns
                    rows = [{alias: 0 if m.op == "count" else None for alias, m in op.metrics.items()}]
                return ExecutionResult(rows=rows)

            if op.action == "insert":
                for document in documents:
                    document.setdefault("id", generate_uuid())
                    document.setdefault("createdAt", now)
                    document.setdefault("updatedAt", now)
                if len(documents) == 1:
                    await collection.insert_one(documents[0])
                else:
                    await collection.insert_many(documents)
                ids = [str(document["id"]) for document in documents]
                return ExecutionResult(affected=len(ids), inserted_ids=ids)

            if op.action == "update":
                values = dict(changes)
                values.setdefault("updatedAt", now)
                result = await collection.update_many(filter, {"$set": values})
                return ExecutionResult(affected=result.matched_count)

            result = await collection.delete_many(filter)
            return ExecutionResult(affected=result.deleted_count)
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(str(exc), engine="mongodb") from exc
        except BulkWriteError as exc:
            errors = exc.details.get("writeErrors", [])
            if any(e.get("code") == MONGO_DUPLICATE_KEY for e in errors):
                raise DuplicateRecordError(str(exc), engine="mongodb") from exc
            raise OperationError(str(exc), engine="mongodb") from exc
        except OperationFailure as exc:
            raise OperationError(str(exc), engine="mongodb") from exc
        except PyMongoError as exc:
            raise ConnectionFailedError(str(exc), engine="mongodb") from exc

    # ── Raw path ──

    async def _record(
        self, tenant_id: str, event_type: str, engine: str, statement: Any,
        actor: str, detail: dict[str, Any] | None = None,
    ) -> None:
        audit_logger.info(
            "%s %s", event_type, statement_text(statement),
            extra={"tenant_id": tenant_id, "engine": engine, "actor": actor},
        )
        if self.audit is None or self.db is None:
            return
        async with self.db.get_session() as session:
            await self.audit.record_statement(
                session, tenant_id, event_type, engine, statement,
                actor=actor, detail=detail,
            )

    async def execute_raw(
        self,
        descriptor: Any,
        tenant_id: Optional[str],
        statement: Any,
        params: Optional[Mapping[str, Any]] = None,
        actor: str = "assistant",
    ) -> ExecutionResult:
        """Audit, inspect and run a backend-native statement for one tenant."""
        tenant_id = normalize_tenant_id(tenant_id)
        descriptor = validate_descriptor(descriptor)
        if isinstance(statement, RawStatement):
            params = statement.params
            statement = statement.statement
        engine = descriptor.engine

        try:
            self.gate.inspect(engine, statement, tenant_id)
        except RawStatementRejected as exc:
            await self._record(tenant_id, RAW_REJECTED, engine, statement, actor, {"reason": exc.message})
            raise
        await self._record(tenant_id, RAW_ACCEPTED, engine, statement, actor)

        try:
            async with self.connections.acquire(descriptor) as handle:
                if handle.is_document:
                    return await self._raw_mongo(handle.database, statement)
                return await self._raw_sql(handle.connection, statement, params or {}, tenant_id)
        except InventraError as exc:
            await self._record(
                tenant_id, RAW_FAILED, engine, statement, actor,
                {"error": exc.message, "code": exc.code},
            )
            raise

    async def _raw_sql(self, conn, sql: str, params: Mapping[str, Any], tenant_id: str) -> ExecutionResult:
        bind = dict(params)
        if TENANT_PLACEHOLDER in sql.lower():
            bind["tenant_id"] = tenant_id
        try:
            async with conn.begin():
                result = await conn.execute(text(sql.strip().rstrip(";")), bind)
                if result.returns_rows:
                    return ExecutionResult(rows=[dict(r._mapping) for r in result.fetchall()])
                return ExecutionResult(affected=result.rowcount)
        except IntegrityError as exc:
            raise DuplicateRecordError(backend_message(exc), engine=conn.dialect.name) from exc
        except DBAPIError as exc:
            raise OperationError(backend_message(exc), engine=conn.dialect.name) from exc
        except StatementError as exc:
            # raised before reaching the backend, e.g. an unbound :name parameter
            raise OperationError(backend_message(exc.orig or exc), engine=conn.dialect.name) from exc

    async def _raw_mongo(self, database, command: Mapping[str, Any]) -> ExecutionResult:
        try:
            reply = await database.command(dict(command))
        except OperationFailure as exc:
            if exc.code == MONGO_DUPLICATE_KEY:
                raise DuplicateRecordError(str(exc), engine="mongodb") from exc
            raise OperationError(str(exc), engine="mongodb") from exc
        except PyMongoError as exc:
            raise ConnectionFailedError(str(exc), engine="mongodb") from exc
        return ExecutionResult(reply=_stringify_ids(dict(reply)))
