"""SQLAlchemy Core tables for the relational engines.

Every tenant-scoped table carries ``userId`` and gets its unique constraints
from the declared index set, so the leading key is always the tenant.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

from inventra_engine.isolation.indexes import DECLARED_INDEXES, TENANT_KEY

metadata = MetaData()


def _id() -> Column:
    return Column("id", String(36), primary_key=True)


def _tenant() -> Column:
    return Column(TENANT_KEY, String(255), nullable=False)


def _money(name: str) -> Column:
    return Column(name, Numeric(10, 2, asdecimal=False), nullable=False, default=0)


def _timestamps() -> list[Column]:
    return [
        Column("createdAt", DateTime(timezone=True)),
        Column("updatedAt", DateTime(timezone=True)),
    ]


products = Table(
    "products", metadata,
    _id(), _tenant(),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("category", String(100)),
    _money("price"),
    Column("stock", Integer, nullable=False, default=0),
    Column("minStock", Integer, nullable=False, default=0),
    Column("supplier", String(255)),
    *_timestamps(),
)

sales = Table(
    "sales", metadata,
    _id(), _tenant(),
    Column("productId", String(36), nullable=False),
    Column("productName", String(255)),
    Column("quantity", Integer, nullable=False, default=0),
    _money("price"),
    _money("total"),
    Column("date", DateTime(timezone=True)),
    Column("customer", String(255)),
)

settings = Table(
    "settings", metadata,
    _id(), _tenant(),
    Column("setting_key", String(255), nullable=False),
    Column("value", Text),
    Column("type", String(50), nullable=False, default="string"),
    Column("description", Text),
    Column("isEncrypted", Boolean, nullable=False, default=False),
    *_timestamps(),
)

customers = Table(
    "customers", metadata,
    _id(), _tenant(),
    Column("name", String(255), nullable=False),
    Column("email", String(255)),
    Column("phone", String(50)),
    Column("address", Text),
    *_timestamps(),
)

suppliers = Table(
    "suppliers", metadata,
    _id(), _tenant(),
    Column("name", String(255), nullable=False),
    Column("email", String(255)),
    Column("phone", String(50)),
    Column("address", Text),
    *_timestamps(),
)

categories = Table(
    "categories", metadata,
    _id(), _tenant(),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    *_timestamps(),
)

users = Table(
    "users", metadata,
    _id(),
    Column(TENANT_KEY, String(255), nullable=False),
    Column("username", String(255), nullable=False),
    Column("email", String(255)),
    Column("createdAt", DateTime(timezone=True)),
)

TABLES: dict[str, Table] = {t.name: t for t in metadata.sorted_tables}


def _attach_index(entity: str, declared) -> Index:
    table = TABLES[entity]
    columns = [
        table.c[field].desc() if direction < 0 else table.c[field]
        for field, direction in declared.keys
    ]
    return Index(declared.relational_name(entity), *columns, unique=declared.unique)


def table_index(entity: str, declared) -> Index:
    """The ``Index`` attached to ``entity``'s table for a declared index."""
    name = declared.relational_name(entity)
    for index in TABLES[entity].indexes:
        if index.name == name:
            return index
    raise KeyError(name)


for _entity, _declared in DECLARED_INDEXES.items():
    for _index in _declared:
        # Index() attaches itself to the table through its columns.
        _attach_index(_entity, _index)
