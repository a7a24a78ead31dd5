"""Pydantic schemas for index reconciliation reports."""

import enum
from typing import Any, Optional

from pydantic import BaseModel


class IndexAction(str, enum.Enum):
    CREATED = "created"
    DROPPED = "dropped"
    UNCHANGED = "unchanged"
    EXISTS = "exists"
    FAILED = "failed"


class IndexOutcome(BaseModel):
    entity: str
    index: str
    keys: list[str]
    unique: bool = False
    action: IndexAction
    detail: str = ""


class ReconcileReport(BaseModel):
    engine: str
    database: Optional[str] = None
    outcomes: list[IndexOutcome] = []

    def _count(self, action: IndexAction) -> int:
        return sum(1 for o in self.outcomes if o.action is action)

    @property
    def created(self) -> int:
        return self._count(IndexAction.CREATED)

    @property
    def dropped(self) -> int:
        return self._count(IndexAction.DROPPED)

    @property
    def failed(self) -> int:
        return self._count(IndexAction.FAILED)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.dropped)

    def summary(self) -> dict[str, int]:
        return {action.value: self._count(action) for action in IndexAction}


class ReconcileRequest(BaseModel):
    entities: Optional[list[str]] = None
    config: Optional[dict[str, Any]] = None
