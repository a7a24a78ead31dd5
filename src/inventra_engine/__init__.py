"""Inventra-Engine: multi-backend, multi-tenant data access for inventory applications."""

from inventra_engine.connections.manager import ConnectionManager
from inventra_engine.descriptors.validator import validate_descriptor
from inventra_engine.executor.gate import RawStatementGate
from inventra_engine.executor.service import QueryExecutor
from inventra_engine.isolation.enforcer import IsolationEnforcer
from inventra_engine.migration.service import LegacyMigrator

__all__ = [
    "ConnectionManager",
    "IsolationEnforcer",
    "LegacyMigrator",
    "QueryExecutor",
    "RawStatementGate",
    "validate_descriptor",
]
__version__ = "0.1.0"
