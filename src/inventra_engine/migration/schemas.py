"""Pydantic schemas for legacy-collection migration reports."""

from typing import Optional

from pydantic import BaseModel


class CollectionReport(BaseModel):
    legacy_collection: str
    entity: str
    tenant_id: str
    documents: int = 0
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    errors: list[str] = []


class MigrationReport(BaseModel):
    database: Optional[str] = None
    dry_run: bool = False
    version: int
    collections: list[CollectionReport] = []

    @property
    def inserted(self) -> int:
        return sum(c.inserted for c in self.collections)

    @property
    def duplicates(self) -> int:
        return sum(c.duplicates for c in self.collections)

    @property
    def failed(self) -> int:
        return sum(c.failed for c in self.collections)

    @property
    def drop_commands(self) -> list[str]:
        """Manual cleanup; the migrator never drops legacy collections."""
        return [f"db.{c.legacy_collection}.drop()" for c in self.collections]
