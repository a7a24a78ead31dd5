"""Dependency injection singletons for Inventra-Engine."""

from inventra_engine.audit.service import AuditService
from inventra_engine.common.config import get_settings
from inventra_engine.common.database import DatabaseManager
from inventra_engine.connections.manager import ConnectionManager
from inventra_engine.descriptors.usernames import UsernameChecker
from inventra_engine.executor.gate import RawStatementGate
from inventra_engine.executor.service import QueryExecutor
from inventra_engine.isolation.enforcer import IsolationEnforcer
from inventra_engine.migration.service import LegacyMigrator

_db: DatabaseManager | None = None
_connections: ConnectionManager | None = None
_usernames: UsernameChecker | None = None
_audit: AuditService | None = None
_executor: QueryExecutor | None = None
_enforcer: IsolationEnforcer | None = None
_migrator: LegacyMigrator | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_connection_manager() -> ConnectionManager:
    global _connections
    if _connections is None:
        _connections = ConnectionManager(get_settings())
    return _connections


def get_username_checker() -> UsernameChecker:
    global _usernames
    if _usernames is None:
        _usernames = UsernameChecker(get_settings(), get_connection_manager())
    return _usernames


def get_audit_service() -> AuditService:
    global _audit
    if _audit is None:
        _audit = AuditService(get_settings())
    return _audit


def get_executor() -> QueryExecutor:
    global _executor
    if _executor is None:
        _executor = QueryExecutor(
            get_connection_manager(),
            gate=RawStatementGate(),
            audit=get_audit_service(),
            db=get_db(),
        )
    return _executor


def get_enforcer() -> IsolationEnforcer:
    global _enforcer
    if _enforcer is None:
        _enforcer = IsolationEnforcer(get_connection_manager())
    return _enforcer


def get_migrator() -> LegacyMigrator:
    global _migrator
    if _migrator is None:
        _migrator = LegacyMigrator(get_connection_manager())
    return _migrator


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _connections, _usernames, _audit, _executor, _enforcer, _migrator
    _db = None
    _connections = None
    _usernames = None
    _audit = None
    _executor = None
    _enforcer = None
    _migrator = None
