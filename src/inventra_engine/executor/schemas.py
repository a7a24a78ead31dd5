"""Pydantic schemas for structured and raw operations."""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

EntityName = Literal["products", "sales", "settings", "customers", "suppliers", "categories"]
Action = Literal["find", "count", "insert", "update", "delete", "aggregate"]


class Metric(BaseModel):
    """One aggregate column: ``count`` of rows, or ``sum``/``avg``/``min``/``max`` of a field."""

    op: Literal["count", "sum", "avg", "min", "max"]
    field: Optional[str] = None

    @model_validator(mode="after")
    def _check_field(self):
        if self.op != "count" and not self.field:
            raise ValueError(f"{self.op} requires a field")
        if self.field and self.field.startswith("$"):
            raise ValueError("field names cannot start with '$'")
        return self


class StructuredOperation(BaseModel):
    """Backend-agnostic CRUD description. Tenant scoping is added by the executor.

    Filter values are either plain values (equality) or a comparison document
    using ``$lt``, ``$lte``, ``$gt``, ``$gte``, ``$ne`` or ``$in``. A comparison
    against another field of the same row is written ``{"$field": "<name>"}``,
    e.g. ``{"stock": {"$lte": {"$field": "minStock"}}}``.

    ``aggregate`` groups the matching rows by ``group_by`` (or treats them as a
    single group) and returns one row per group holding the named ``metrics``.
    """

    action: Action
    entity: EntityName
    filter: dict[str, Any] = {}
    document: Optional[dict[str, Any]] = None
    documents: Optional[list[dict[str, Any]]] = None
    changes: Optional[dict[str, Any]] = None
    group_by: Optional[str] = None
    metrics: Optional[dict[str, Metric]] = None
    sort: Optional[list[tuple[str, Literal[1, -1]]]] = None
    limit: Optional[int] = Field(default=None, ge=1, le=10000)

    @model_validator(mode="after")
    def _check_payload(self):
        if self.action == "insert" and not (self.document or self.documents):
            raise ValueError("insert requires document or documents")
        if self.action == "update" and not self.changes:
            raise ValueError("update requires changes")
        if self.action == "aggregate":
            if not self.metrics:
                raise ValueError("aggregate requires metrics")
            if self.group_by and self.group_by.startswith("$"):
                raise ValueError("group_by cannot start with '$'")
            if any(alias.startswith("$") or "." in alias for alias in self.metrics):
                raise ValueError("metric names cannot start with '$' or contain '.'")
            if self.group_by in self.metrics:
                raise ValueError("metric names must differ from group_by")
            allowed = set(self.metrics) | {self.group_by}
            for field, _ in self.sort or []:
                if field not in allowed:
                    raise ValueError(f"aggregate can only sort by group_by or a metric, not '{field}'")
        return self

    def payload(self) -> list[dict[str, Any]]:
        if self.documents:
            return list(self.documents)
        return [self.document] if self.document else []


class RawStatement(BaseModel):
    """A backend-native statement: SQL text, or a MongoDB command document."""

    statement: Union[str, dict[str, Any]]
    params: dict[str, Any] = {}


class ExecutionResult(BaseModel):
    success: bool = True
    rows: Optional[list[dict[str, Any]]] = None
    affected: Optional[int] = None
    inserted_ids: Optional[list[str]] = None
    reply: Optional[dict[str, Any]] = None


class ExecuteRequest(BaseModel):
    operation: StructuredOperation
    config: Optional[dict[str, Any]] = None


class RawRequest(BaseModel):
    statement: Union[str, dict[str, Any]]
    params: dict[str, Any] = {}
    actor: str = Field(default="assistant", min_length=1, max_length=255)
    config: Optional[dict[str, Any]] = None
