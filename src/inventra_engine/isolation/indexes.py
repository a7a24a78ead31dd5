"""Declared index set for every entity store."""

from dataclasses import dataclass, field
from typing import Any, Optional

TENANT_KEY = "userId"

TENANT_SCOPED_ENTITIES: tuple[str, ...] = (
    "products",
    "sales",
    "settings",
    "customers",
    "suppliers",
    "categories",
)
# Unique by account identity, independent of tenant.
GLOBAL_ENTITIES: tuple[str, ...] = ("users",)

ALL_ENTITIES: tuple[str, ...] = TENANT_SCOPED_ENTITIES + GLOBAL_ENTITIES


@dataclass(frozen=True)
class IndexDescriptor:
    name: str
    keys: tuple[tuple[str, int], ...]
    unique: bool = False
    partial_filter: Optional[dict[str, Any]] = field(default=None, compare=False, hash=False)

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(k for k, _ in self.keys)

    @property
    def leading_key(self) -> str:
        return self.keys[0][0]

    def mongo_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"name": self.name}
        if self.unique:
            options["unique"] = True
        if self.partial_filter:
            options["partialFilterExpression"] = self.partial_filter
        return options

    def relational_name(self, entity: str) -> str:
        # Relational index names share one namespace per schema on postgresql.
        return f"{entity}_{self.name}"


def _idx(name: str, *keys: tuple[str, int], unique: bool = False) -> IndexDescriptor:
    return IndexDescriptor(name=name, keys=tuple(keys), unique=unique)


DECLARED_INDEXES: dict[str, tuple[IndexDescriptor, ...]] = {
    "products": (
        _idx("userId_name_unique", (TENANT_KEY, 1), ("name", 1), unique=True),
    ),
    "sales": (
        _idx("userId_productId", (TENANT_KEY, 1), ("productId", 1)),
        _idx("userId_date_desc", (TENANT_KEY, 1), ("date", -1)),
    ),
    "settings": (
        _idx("userId_setting_key_unique", (TENANT_KEY, 1), ("setting_key", 1), unique=True),
    ),
    "customers": (
        _idx("userId_email_unique", (TENANT_KEY, 1), ("email", 1), unique=True),
    ),
    "suppliers": (
        _idx("userId_name_unique", (TENANT_KEY, 1), ("name", 1), unique=True),
    ),
    "categories": (
        _idx("userId_name_unique", (TENANT_KEY, 1), ("name", 1), unique=True),
    ),
    "users": (
        _idx("username_unique", ("username", 1), unique=True),
        _idx("userId_unique", (TENANT_KEY, 1), unique=True),
    ),
}


def is_tenant_scoped(entity: str) -> bool:
    return entity in TENANT_SCOPED_ENTITIES


def starts_with_tenant_key(fields: tuple[str, ...] | list[str]) -> bool:
    return bool(fields) and fields[0] == TENANT_KEY
