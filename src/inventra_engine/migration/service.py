"""
Legacy per-tenant collection migration.

Older deployments kept one physical collection per tenant, named
``{entity}_user_{handle}_{timestamp}``. The migrator copies every document
into the shared ``{entity}`` collection stamped with the recovered tenant id
and a provenance key, so reruns after a partial failure insert nothing new.
Legacy collections are never dropped here.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from inventra_engine.common.exceptions import ConfigurationError, MigrationConflict
from inventra_engine.common.models import utcnow
from inventra_engine.descriptors.validator import validate_descriptor
from inventra_engine.isolation.enforcer import MONGO_INDEX_EXISTS_CODES
from inventra_engine.isolation.indexes import TENANT_KEY, IndexDescriptor, is_tenant_scoped
from inventra_engine.migration.schemas import CollectionReport, MigrationReport

logger = logging.getLogger(__name__)

MIGRATION_VERSION = 1
MIGRATIONS_COLLECTION = "_inventra_migrations"
PROVENANCE_FIELD = "legacySource"

LEGACY_NAME = re.compile(r"^(?P<entity>.+)_user_(?P<handle>.+)_(?P<timestamp>\d+)$")

PROVENANCE_INDEX = IndexDescriptor(
    name="userId_legacySource_unique",
    keys=((TENANT_KEY, 1), (PROVENANCE_FIELD, 1)),
    unique=True,
    partial_filter={PROVENANCE_FIELD: {"$exists": True}},
)


@dataclass(frozen=True)
class LegacyCollection:
    name: str
    entity: str
    handle: str
    timestamp: str

    @property
    def tenant_id(self) -> str:
        return f"user_{self.handle}_{self.timestamp}"


def parse_legacy_name(name: str) -> Optional[LegacyCollection]:
    """Recover entity and tenant from a legacy collection name, or None."""
    match = LEGACY_NAME.match(name)
    if not match or not is_tenant_scoped(match.group("entity")):
        return None
    return LegacyCollection(name=name, **match.groupdict())


class LegacyMigrator:
    """Copies legacy per-tenant collections into the shared collections."""

    def __init__(self, connections):
        self.connections = connections

    async def plan(self, descriptor: Any) -> MigrationReport:
        """What a run would migrate, without writing anything."""
        return await self.run(descriptor, dry_run=True)

    async def run(self, descriptor: Any, dry_run: bool = False) -> MigrationReport:
        descriptor = validate_descriptor(descriptor)
        if descriptor.engine != "mongodb":
            raise ConfigurationError(
                "Legacy collection migration is only supported for MongoDB", engine=descriptor.engine,
            )

        report = MigrationReport(database=descriptor.database, dry_run=dry_run, version=MIGRATION_VERSION)
        async with self.connections.acquire(descriptor) as handle:
            database = handle.database
            names = sorted(await database.list_collection_names())
            legacy = [c for c in (parse_legacy_name(n) for n in names) if c is not None]
            if not legacy:
                logger.info("No legacy collections found in %s", descriptor.database)
                return report

            logger.info("Found %d legacy collections to migrate", len(legacy))
            prepared: set[str] = set()
            for collection in legacy:
                if not dry_run and collection.entity not in prepared:
                    await self._ensure_provenance_index(database[collection.entity])
                    prepared.add(collection.entity)
                report.collections.append(
                    await self._migrate_collection(database, collection, dry_run)
                )

        logger.info(
            "Migration finished: %d inserted, %d duplicates, %d failed",
            report.inserted, report.duplicates, report.failed,
        )
        return report

    async def _ensure_provenance_index(self, target) -> None:
        try:
            await target.create_index(list(PROVENANCE_INDEX.keys), **PROVENANCE_INDEX.mongo_options())
        except OperationFailure as exc:
            if exc.code not in MONGO_INDEX_EXISTS_CODES:
                raise
            logger.info("Provenance index already exists on %s", target.name)

    async def _migrate_collection(self, database, legacy: LegacyCollection, dry_run: bool) -> CollectionReport:
        result = CollectionReport(
            legacy_collection=legacy.name, entity=legacy.entity, tenant_id=legacy.tenant_id,
        )
        documents = [doc async for doc in database[legacy.name].find({})]
        result.documents = len(documents)
        if dry_run or not documents:
            return result

        target = database[legacy.entity]
        for document in documents:
            old_id = document.pop("_id", None)
            document[TENANT_KEY] = legacy.tenant_id
            document[PROVENANCE_FIELD] = f"{legacy.name}:{old_id}"
            try:
                await target.insert_one(document)
            except DuplicateKeyError:
                conflict = MigrationConflict(f"{document[PROVENANCE_FIELD]} already migrated")
                logger.info("Skipping duplicate in %s: %s", legacy.entity, conflict.message)
                result.duplicates += 1
                continue
            except PyMongoError as exc:
                logger.error("Error inserting into %s: %s", legacy.entity, exc)
                result.failed += 1
                result.errors.append(str(exc))
                continue
            result.inserted += 1

        await database[MIGRATIONS_COLLECTION].update_one(
            {"version": MIGRATION_VERSION, "legacy_collection": legacy.name},
            {"$set": {
                "entity": legacy.entity,
                "tenant_id": legacy.tenant_id,
                "inserted": result.inserted,
                "duplicates": result.duplicates,
                "failed": result.failed,
                "completed_at": utcnow(),
            }},
            upsert=True,
        )
        logger.info(
            "Migrated %d documents from %s to %s", result.inserted, legacy.name, legacy.entity,
            extra={"tenant_id": legacy.tenant_id, "entity": legacy.entity},
        )
        return result
