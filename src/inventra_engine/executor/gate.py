"""
Inspection gate for raw backend-native statements.

Raw statements skip automatic tenant injection, so the gate only lets through
statements that are visibly pinned to the caller's tenant. It is a
conservative syntactic check, not a SQL parser: anything it cannot read as
scoped is rejected.

SQL reads and writes must touch a single table with no subqueries, joins or
disjunctions, and their WHERE clause must carry ``userId = :tenant_id`` (or
the caller's own literal) as a top-level conjunct. Inserts must be a single
VALUES row whose ``userId`` value names the caller.
"""

import re
from collections.abc import Mapping
from typing import Any, Optional

from inventra_engine.common.exceptions import RawStatementRejected
from inventra_engine.isolation.indexes import TENANT_KEY

TENANT_PLACEHOLDER = ":tenant_id"

DDL_KEYWORDS = frozenset({"CREATE", "DROP", "ALTER", "TRUNCATE", "GRANT", "REVOKE", "RENAME"})
SQL_ALLOWED = frozenset({"SELECT", "INSERT", "UPDATE", "DELETE"})

_LITERAL = re.compile(r"'(?:[^']|'')*'")
_MASKED_LITERAL = re.compile(r"^'(\d+)'$")
_COMMENT = re.compile(r"--|/\*|#")
_SET_OPERATOR = re.compile(r"\b(UNION|INTERSECT|EXCEPT)\b", re.IGNORECASE)
_DISJUNCTION = re.compile(r"\bOR\b|\bXOR\b|\|\|", re.IGNORECASE)
_SELECT = re.compile(r"\bSELECT\b", re.IGNORECASE)
_JOIN = re.compile(r"\b(JOIN|USING)\b", re.IGNORECASE)
_FROM = re.compile(r"\bFROM\b", re.IGNORECASE)
_UPSERT = re.compile(r"\bON\s+(DUPLICATE|CONFLICT)\b", re.IGNORECASE)
_AND = re.compile(r"\bAND\b", re.IGNORECASE)
_COMMA = re.compile(",")

_IDENT = r"[`\"\[]?\w+[`\"\]]?"
_SELECT_SOURCE = re.compile(
    r"\bFROM\b(?P<source>.*?)(?=\bWHERE\b|\bGROUP\s+BY\b|\bORDER\s+BY\b|\bLIMIT\b|\bHAVING\b|$)",
    re.IGNORECASE | re.DOTALL,
)
_UPDATE_SHAPE = re.compile(rf"^UPDATE\s+{_IDENT}(?:\s+(?:AS\s+)?\w+)?\s+SET\b", re.IGNORECASE)
_DELETE_SHAPE = re.compile(rf"^DELETE\s+FROM\s+{_IDENT}(?:\s+(?:AS\s+)?\w+)?\s+WHERE\b", re.IGNORECASE)
_INSERT_SHAPE = re.compile(
    rf"^INSERT\s+INTO\s+{_IDENT}\s*\((?P<columns>[^()]*)\)\s*VALUES\s*\((?P<values>.*)\)$",
    re.IGNORECASE | re.DOTALL,
)
_WHERE = re.compile(
    r"\bWHERE\b(?P<condition>.*?)"
    r"(?=\bGROUP\s+BY\b|\bORDER\s+BY\b|\bLIMIT\b|\bHAVING\b|\bRETURNING\b|\bFOR\s+UPDATE\b|$)",
    re.IGNORECASE | re.DOTALL,
)
_TENANT_COLUMN = re.compile(rf"^(?:\w+\.)?[`\"\[]?{TENANT_KEY}[`\"\]]?$", re.IGNORECASE)
_TENANT_CONJUNCT = re.compile(
    rf"^(?:\w+\.)?[`\"\[]?{TENANT_KEY}[`\"\]]?\s*=\s*(?P<value>:\w+|'\d+')$", re.IGNORECASE,
)
_TENANT_COMPARISON = re.compile(
    rf"\b{TENANT_KEY}\b[`\"\]]?\s*(?P<op><>|!=|<=|>=|=|<|>|\bIN\b|\bLIKE\b|\bIS\b)"
    rf"\s*(?P<value>:\w+|'\d+'|\S+)?",
    re.IGNORECASE,
)

# command name -> key holding its filter
MONGO_FILTERED = {"find": "filter", "count": "query", "distinct": "query"}
MONGO_WRITES = frozenset({"insert", "update", "delete"})
MONGO_FORBIDDEN_STAGES = frozenset({"$lookup", "$graphLookup", "$unionWith", "$out", "$merge"})


def _reject(message: str, engine: str) -> None:
    raise RawStatementRejected(message, engine=engine)


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _mask_literals(statement: str) -> tuple[str, list[str]]:
    """Replace every string literal with a numbered stand-in such as ``'0'``."""
    literals: list[str] = []

    def _number(match: re.Match) -> str:
        literals.append(match.group(0))
        return f"'{len(literals) - 1}'"

    return _LITERAL.sub(_number, statement), literals


def _names_caller(value: str, literals: list[str], tenant_id: str) -> bool:
    if value.lower() == TENANT_PLACEHOLDER:
        return True
    literal = _MASKED_LITERAL.match(value)
    return bool(literal) and literals[int(literal.group(1))] == _sql_literal(tenant_id)


def _split_top_level(text: str, separator: re.Pattern) -> Optional[list[str]]:
    """Split ``text`` on ``separator`` outside parentheses; None if unbalanced."""
    depth = 0
    for char in text:
        depth += {"(": 1, ")": -1}.get(char, 0)
        if depth < 0:
            return None
    if depth:
        return None
    parts, start = [], 0
    for match in separator.finditer(text):
        prefix = text[: match.start()]
        if prefix.count("(") == prefix.count(")"):
            parts.append(text[start: match.start()].strip())
            start = match.end()
    parts.append(text[start:].strip())
    return parts


def _unwrap(expression: str) -> str:
    """Strip parentheses that enclose the whole expression."""
    while expression.startswith("(") and expression.endswith(")"):
        depth = 0
        for index, char in enumerate(expression):
            depth += {"(": 1, ")": -1}.get(char, 0)
            if depth == 0 and index < len(expression) - 1:
                return expression
        expression = expression[1:-1].strip()
    return expression


def _conjuncts(condition: str) -> list[str]:
    parts = _split_top_level(_unwrap(condition.strip()), _AND)
    if parts is None:
        return []
    flat = []
    for part in parts:
        inner = _unwrap(part)
        flat.extend(_conjuncts(inner) if inner != part else [part])
    return flat


def _has_forbidden_stage(value: Any) -> bool:
    """True if any stage in ``value``, at any depth, reads or writes another collection."""
    if isinstance(value, Mapping):
        if MONGO_FORBIDDEN_STAGES.intersection(value):
            return True
        return any(_has_forbidden_stage(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_forbidden_stage(v) for v in value)
    return False


class RawStatementGate:
    """Rejects raw statements that are not obviously scoped to the caller's tenant."""

    def inspect(self, engine: str, statement: Any, tenant_id: str) -> None:
        if engine == "mongodb":
            self.inspect_command(statement, tenant_id)
        else:
            self.inspect_sql(statement, tenant_id, engine)

    # ── SQL ──

    def inspect_sql(self, sql: Any, tenant_id: str, engine: str = "sql") -> None:
        if not isinstance(sql, str):
            _reject("SQL statement must be a string", engine)
        statement = sql.strip().rstrip(";").strip()
        if not statement:
            _reject("SQL query is required", engine)

        masked, literals = _mask_literals(statement)
        if _COMMENT.search(masked):
            _reject("Comments are not allowed in raw statements", engine)
        if ";" in masked:
            _reject("Multiple statements are not allowed", engine)

        verb = masked.split(None, 1)[0].upper()
        if verb in DDL_KEYWORDS:
            _reject(f"DDL ({verb}) is not allowed in raw statements", engine)
        if verb not in SQL_ALLOWED:
            _reject(f"{verb} statements are not allowed", engine)
        if _SET_OPERATOR.search(masked):
            _reject("Set operators are not allowed in raw statements", engine)
        if _DISJUNCTION.search(masked):
            _reject("OR would bypass tenant scoping", engine)
        if len(_SELECT.findall(masked)) > (1 if verb == "SELECT" else 0):
            _reject("Subqueries are not allowed in raw statements", engine)
        if _JOIN.search(masked):
            _reject("Joins are not allowed in raw statements", engine)

        # Every comparison or assignment on the tenant column must name the caller.
        for match in _TENANT_COMPARISON.finditer(masked):
            if match.group("op") != "=" or not _names_caller(match.group("value") or "", literals, tenant_id):
                _reject(f"Statement binds {TENANT_KEY} to something other than the caller's tenant", engine)

        if verb == "INSERT":
            self._inspect_insert(masked, literals, tenant_id, engine)
            return
        if verb == "SELECT":
            source = _SELECT_SOURCE.search(masked)
            if source and ("," in source.group("source") or "(" in source.group("source")):
                _reject("Raw reads may only name a single table", engine)
        elif verb == "UPDATE":
            if not _UPDATE_SHAPE.match(masked) or _FROM.search(masked):
                _reject("Raw updates may only name a single table", engine)
        elif not _DELETE_SHAPE.match(masked):
            _reject("Raw deletes may only name a single table and need a WHERE clause", engine)

        where = _WHERE.search(masked)
        for conjunct in _conjuncts(where.group("condition")) if where else []:
            pinned = _TENANT_CONJUNCT.match(conjunct)
            if pinned and _names_caller(pinned.group("value"), literals, tenant_id):
                return
        _reject(
            f"Statement is not scoped to the caller's tenant "
            f"(expected {TENANT_KEY} = {TENANT_PLACEHOLDER} in the WHERE clause)",
            engine,
        )

    def _inspect_insert(self, masked: str, literals: list[str], tenant_id: str, engine: str) -> None:
        if _SELECT.search(masked):
            _reject("INSERT ... SELECT is not allowed in raw statements", engine)
        if _UPSERT.search(masked):
            _reject("Upserts are not allowed in raw statements", engine)
        shape = _INSERT_SHAPE.match(masked)
        values = _split_top_level(shape.group("values"), _COMMA) if shape else None
        if values is None:
            _reject("INSERT must be a single VALUES row with an explicit column list", engine)
        columns = _split_top_level(shape.group("columns"), _COMMA)
        tenant_columns = [i for i, column in enumerate(columns) if _TENANT_COLUMN.match(column)]
        if not tenant_columns:
            _reject(f"INSERT must set {TENANT_KEY}", engine)
        if len(columns) != len(values):
            _reject("INSERT column and value counts differ", engine)
        if not _names_caller(values[tenant_columns[0]], literals, tenant_id):
            _reject(f"INSERT must bind {TENANT_KEY} to the caller's tenant", engine)

    # ── MongoDB ──

    def _require_pinned(self, filter: Any, tenant_id: str, what: str) -> None:
        if not isinstance(filter, Mapping) or filter.get(TENANT_KEY) != tenant_id:
            _reject(f"{what} must pin {TENANT_KEY} to the caller's tenant", "mongodb")

    def inspect_command(self, command: Any, tenant_id: str) -> None:
        if not isinstance(command, Mapping) or not command:
            _reject("MongoDB command must be a non-empty document", "mongodb")
        name = next(iter(command))
        if name not in MONGO_FILTERED and name not in MONGO_WRITES and name != "aggregate":
            _reject(f"Command '{name}' is not allowed", "mongodb")
        if not isinstance(command[name], str):
            _reject("Command must name a single collection", "mongodb")

        if name in MONGO_FILTERED:
            self._require_pinned(command.get(MONGO_FILTERED[name], {}), tenant_id, "Filter")
        elif name == "aggregate":
            self._inspect_pipeline(command.get("pipeline"), tenant_id)
        elif name == "insert":
            documents = command.get("documents")
            if not isinstance(documents, list) or not documents:
                _reject("insert requires documents", "mongodb")
            for document in documents:
                self._require_pinned(document, tenant_id, "Inserted document")
        elif name == "update":
            updates = command.get("updates")
            if not isinstance(updates, list) or not updates:
                _reject("update requires updates", "mongodb")
            for entry in updates:
                if not isinstance(entry, Mapping):
                    _reject("Malformed update entry", "mongodb")
                self._require_pinned(entry.get("q"), tenant_id, "Update filter")
                self._inspect_update_doc(entry.get("u"), tenant_id)
        elif name == "delete":
            deletes = command.get("deletes")
            if not isinstance(deletes, list) or not deletes:
                _reject("delete requires deletes", "mongodb")
            for entry in deletes:
                if not isinstance(entry, Mapping):
                    _reject("Malformed delete entry", "mongodb")
                self._require_pinned(entry.get("q"), tenant_id, "Delete filter")

    def _inspect_pipeline(self, pipeline: Any, tenant_id: str) -> None:
        if not isinstance(pipeline, list) or not pipeline:
            _reject("aggregate requires a pipeline", "mongodb")
        first = pipeline[0]
        if not isinstance(first, Mapping) or "$match" not in first:
            _reject("Pipeline must start with a $match on the caller's tenant", "mongodb")
        self._require_pinned(first["$match"], tenant_id, "Pipeline $match")
        # $facet and $lookup carry sub-pipelines; forbidden stages may hide there.
        if _has_forbidden_stage(pipeline):
            _reject("Pipeline stages that read or write other collections are not allowed", "mongodb")

    def _inspect_update_doc(self, update: Any, tenant_id: str) -> None:
        if not isinstance(update, Mapping):
            _reject("Update must be a document", "mongodb")
        operators = [key for key in update if key.startswith("$")]
        if not operators:
            self._require_pinned(update, tenant_id, "Replacement document")
            return
        for operator in operators:
            body = update[operator]
            if isinstance(body, Mapping) and TENANT_KEY in body:
                if operator != "$set" or body[TENANT_KEY] != tenant_id:
                    _reject(f"Update may not change {TENANT_KEY}", "mongodb")
