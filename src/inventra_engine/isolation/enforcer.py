"""
Tenant isolation enforcement.

Two duties: scope every structured read/write to its tenant, and reconcile
live index definitions so that no unique index on a shared store can reject
one tenant's write because of another tenant's row.

Reconciliation only drops and creates indexes; it never touches documents or
rows. It is not safe to run concurrently against the same store.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from pymongo.errors import OperationFailure, PyMongoError
from sqlalchemy import inspect, text
from sqlalchemy.exc import DBAPIError

from inventra_engine.common.exceptions import IsolationViolation, OperationError
from inventra_engine.descriptors.validator import validate_descriptor
from inventra_engine.entities.tables import TABLES, table_index
from inventra_engine.isolation.indexes import (
    ALL_ENTITIES,
    DECLARED_INDEXES,
    TENANT_KEY,
    IndexDescriptor,
    is_tenant_scoped,
    starts_with_tenant_key,
)
from inventra_engine.isolation.schemas import IndexAction, IndexOutcome, ReconcileReport

logger = logging.getLogger(__name__)

# MongoDB IndexOptionsConflict / IndexKeySpecsConflict
MONGO_INDEX_EXISTS_CODES = frozenset({85, 86})
MONGO_DEFAULT_INDEX = "_id_"


# ── Scoping primitives ──

def _check_tenant_field(data: Mapping[str, Any], tenant_id: str, what: str) -> None:
    if TENANT_KEY in data and data[TENANT_KEY] != tenant_id:
        raise IsolationViolation(f"{what} names a different tenant")


def scope_filter(filter: Optional[Mapping[str, Any]], tenant_id: str) -> dict[str, Any]:
    """Pin a read/update/delete filter to ``tenant_id``."""
    scoped = dict(filter or {})
    _check_tenant_field(scoped, tenant_id, "Filter")
    scoped[TENANT_KEY] = tenant_id
    return scoped


def stamp_document(document: Mapping[str, Any], tenant_id: str) -> dict[str, Any]:
    """Return a copy of ``document`` owned by ``tenant_id``."""
    stamped = dict(document)
    _check_tenant_field(stamped, tenant_id, "Document")
    stamped[TENANT_KEY] = tenant_id
    return stamped


def guard_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Reject updates that would move a row to another tenant."""
    if TENANT_KEY in changes:
        raise IsolationViolation(f"{TENANT_KEY} cannot be changed")
    return dict(changes)


def needs_drop(entity: str, fields: Iterable[str], unique: bool, name: str = "") -> bool:
    """A unique index on a tenant-scoped store that does not lead with the tenant key."""
    if name == MONGO_DEFAULT_INDEX or not unique or not is_tenant_scoped(entity):
        return False
    return not starts_with_tenant_key(tuple(fields))


@dataclass
class LiveIndex:
    name: str
    fields: tuple[str, ...]
    unique: bool
    directions: tuple[int, ...] = ()
    is_constraint: bool = False


def _outcome(entity: str, name: str, fields, unique: bool, action: IndexAction, detail: str = "") -> IndexOutcome:
    return IndexOutcome(
        entity=entity, index=name, keys=list(fields), unique=unique,
        action=action, detail=detail,
    )


class IsolationEnforcer:
    """Reconciles live indexes with the declared set."""

    def __init__(self, connections):
        self.connections = connections

    def _entities(self, entities: Optional[Iterable[str]]) -> list[str]:
        selected = list(entities) if entities else list(ALL_ENTITIES)
        unknown = [e for e in selected if e not in DECLARED_INDEXES]
        if unknown:
            raise OperationError(f"Unknown entities: {', '.join(unknown)}")
        return selected

    async def reconcile(self, descriptor: Any, entities: Optional[Iterable[str]] = None) -> ReconcileReport:
        """Drop tenant-unsafe unique indexes and create missing declared ones.

        Idempotent: a second run reports only ``unchanged``.
        """
        descriptor = validate_descriptor(descriptor)
        selected = self._entities(entities)
        async with self.connections.acquire(descriptor) as handle:
            if handle.is_document:
                outcomes = await self._reconcile_mongo(handle.database, selected)
            else:
                outcomes = await handle.connection.run_sync(self._reconcile_relational, selected)
                await handle.connection.commit()

        report = ReconcileReport(
            engine=descriptor.engine, database=descriptor.database, outcomes=outcomes,
        )
        logger.info("Index reconciliation finished: %s", report.summary())
        return report

    # ── Document engine ──

    @staticmethod
    def _mongo_live(info: dict[str, Any]) -> list[LiveIndex]:
        live = []
        for name, spec in info.items():
            keys = [(field, direction) for field, direction in spec["key"]]
            live.append(LiveIndex(
                name=name,
                fields=tuple(k for k, _ in keys),
                unique=bool(spec.get("unique", False)),
                directions=tuple(int(d) if isinstance(d, (int, float)) else d for _, d in keys),
            ))
        return live

    @staticmethod
    def _matches(live: LiveIndex, declared: IndexDescriptor, check_direction: bool) -> bool:
        if live.fields != declared.fields or live.unique != declared.unique:
            return False
        if check_direction and live.directions:
            return live.directions == tuple(d for _, d in declared.keys)
        return True

    async def _reconcile_mongo(self, database, entities: list[str]) -> list[IndexOutcome]:
        outcomes: list[IndexOutcome] = []
        for entity in entities:
            collection = database[entity]
            live = self._mongo_live(await collection.index_information())

            for index in list(live):
                if not needs_drop(entity, index.fields, index.unique, index.name):
                    continue
                try:
                    await collection.drop_index(index.name)
                except PyMongoError as exc:
                    logger.error("Error dropping index %s on %s: %s", index.name, entity, exc)
                    outcomes.append(_outcome(entity, index.name, index.fields, True, IndexAction.FAILED, str(exc)))
                    continue
                live.remove(index)
                logger.info("Dropped tenant-unsafe index %s %s on %s", index.name, index.fields, entity)
                outcomes.append(_outcome(entity, index.name, index.fields, True, IndexAction.DROPPED))

            for declared in DECLARED_INDEXES[entity]:
                if any(self._matches(index, declared, check_direction=True) for index in live):
                    outcomes.append(_outcome(entity, declared.name, declared.fields, declared.unique, IndexAction.UNCHANGED))
                    continue
                try:
                    await collection.create_index(list(declared.keys), **declared.mongo_options())
                except OperationFailure as exc:
                    if exc.code in MONGO_INDEX_EXISTS_CODES:
                        logger.info("Index already exists: %s on %s", declared.name, entity)
                        outcomes.append(_outcome(entity, declared.name, declared.fields, declared.unique, IndexAction.EXISTS, str(exc)))
                    else:
                        logger.error("Error creating index %s on %s: %s", declared.name, entity, exc)
                        outcomes.append(_outcome(entity, declared.name, declared.fields, declared.unique, IndexAction.FAILED, str(exc)))
                    continue
                except PyMongoError as exc:
                    logger.error("Error creating index %s on %s: %s", declared.name, entity, exc)
                    outcomes.append(_outcome(entity, declared.name, declared.fields, declared.unique, IndexAction.FAILED, str(exc)))
                    continue
                logger.info("Created index %s on %s", declared.name, entity)
                outcomes.append(_outcome(entity, declared.name, declared.fields, declared.unique, IndexAction.CREATED))
        return outcomes

    # ── Relational engines ──

    @staticmethod
    def _relational_live(inspector, entity: str) -> list[LiveIndex]:
        found: dict[str, LiveIndex] = {}
        for ix in inspector.get_indexes(entity):
            found[ix["name"]] = LiveIndex(
                name=ix["name"],
                fields=tuple(c for c in ix["column_names"] if c),
                unique=bool(ix.get("unique")),
                is_constraint=bool(ix.get("duplicates_constraint")),
            )
        for uc in inspector.get_unique_constraints(entity):
            name = uc.get("name")
            if name and name not in found:
                found[name] = LiveIndex(
                    name=name, fields=tuple(uc["column_names"]), unique=True, is_constraint=True,
                )
        return list(found.values())

    @staticmethod
    def _drop_relational(sync_conn, entity: str, index: LiveIndex) -> None:
        quote = sync_conn.dialect.identifier_preparer.quote
        dialect = sync_conn.dialect.name
        if index.is_constraint and dialect != "mysql":
            statement = f"ALTER TABLE {quote(entity)} DROP CONSTRAINT {quote(index.name)}"
        elif dialect == "mysql":
            statement = f"DROP INDEX {quote(index.name)} ON {quote(entity)}"
        else:
            statement = f"DROP INDEX {quote(index.name)}"
        sync_conn.execute(text(statement))

    def _reconcile_relational(self, sync_conn, entities: list[str]) -> list[IndexOutcome]:
        outcomes: list[IndexOutcome] = []
        inspector = inspect(sync_conn)
        for entity in entities:
            table = TABLES[entity]
            if not inspector.has_table(entity):
                table.create(sync_conn)
                sync_conn.commit()
                logger.info("Created table %s", entity)
                for declared in DECLARED_INDEXES[entity]:
                    outcomes.append(_outcome(
                        entity, declared.relational_name(entity), declared.fields,
                        declared.unique, IndexAction.CREATED, "table created",
                    ))
                continue

            live = self._relational_live(inspector, entity)
            for index in list(live):
                if not needs_drop(entity, index.fields, index.unique, index.name):
                    continue
                try:
                    self._drop_relational(sync_conn, entity, index)
                    sync_conn.commit()
                except DBAPIError as exc:
                    sync_conn.rollback()
                    logger.error("Error dropping index %s on %s: %s", index.name, entity, exc.orig)
                    outcomes.append(_outcome(entity, index.name, index.fields, True, IndexAction.FAILED, str(exc.orig)))
                    continue
                live.remove(index)
                logger.info("Dropped tenant-unsafe index %s %s on %s", index.name, index.fields, entity)
                outcomes.append(_outcome(entity, index.name, index.fields, True, IndexAction.DROPPED))

            for declared in DECLARED_INDEXES[entity]:
                name = declared.relational_name(entity)
                if any(self._matches(index, declared, check_direction=False) for index in live):
                    outcomes.append(_outcome(entity, name, declared.fields, declared.unique, IndexAction.UNCHANGED))
                    continue
                try:
                    table_index(entity, declared).create(sync_conn)
                    sync_conn.commit()
                except DBAPIError as exc:
                    sync_conn.rollback()
                    message = str(exc.orig)
                    if "already exists" in message or "Duplicate key name" in message:
                        logger.info("Index already exists: %s on %s", name, entity)
                        outcomes.append(_outcome(entity, name, declared.fields, declared.unique, IndexAction.EXISTS, message))
                    else:
                        logger.error("Error creating index %s on %s: %s", name, entity, message)
                        outcomes.append(_outcome(entity, name, declared.fields, declared.unique, IndexAction.FAILED, message))
                    continue
                logger.info("Created index %s on %s", name, entity)
                outcomes.append(_outcome(entity, name, declared.fields, declared.unique, IndexAction.CREATED))
        return outcomes
