"""Inventra-Engine exception hierarchy."""


class InventraError(Exception):
    """Base exception for all Inventra errors."""

    status_code = 500

    def __init__(self, message: str = "", code: str = "INVENTRA_ERROR", engine: str | None = None):
        self.message = message
        self.code = code
        self.engine = engine
        super().__init__(message)


class ConfigurationError(InventraError):
    """Raised when a connection descriptor is rejected before any connection attempt."""

    status_code = 400

    def __init__(self, message: str = "Invalid database configuration", engine: str | None = None):
        super().__init__(message, code="INVALID_CONFIG", engine=engine)


class ConnectionFailedError(InventraError):
    """Raised when a backend is unreachable or rejects the connection.

    The backend's own message is kept verbatim. ``server_misconfigured``
    marks failures caused by this server's setup (e.g. missing managed
    cluster credentials) rather than by the client's descriptor.
    """

    status_code = 502

    def __init__(
        self,
        message: str = "Connection failed",
        engine: str | None = None,
        server_misconfigured: bool = False,
    ):
        super().__init__(message, code="CONNECTION_FAILED", engine=engine)
        self.server_misconfigured = server_misconfigured
        if server_misconfigured:
            self.code = "SERVER_MISCONFIGURED"
            self.status_code = 500


class PoolExhaustedError(ConnectionFailedError):
    """Raised when no pool slot frees up within the wait timeout."""

    status_code = 503

    def __init__(self, message: str = "Connection pool exhausted", engine: str | None = None):
        super().__init__(message, engine=engine)
        self.code = "POOL_EXHAUSTED"


class IsolationViolation(InventraError):
    """Raised when an operation cannot be scoped to its tenant."""

    status_code = 403

    def __init__(self, message: str = "Operation is not scoped to a tenant", engine: str | None = None):
        super().__init__(message, code="ISOLATION_VIOLATION", engine=engine)


class RawStatementRejected(IsolationViolation):
    """Raised when the raw-statement gate refuses a backend-native statement."""

    def __init__(self, message: str = "Raw statement rejected", engine: str | None = None):
        super().__init__(message, engine=engine)
        self.code = "RAW_STATEMENT_REJECTED"


class OperationError(InventraError):
    """Raised when a structured operation does not fit the target entity."""

    status_code = 400

    def __init__(self, message: str = "Invalid operation", engine: str | None = None):
        super().__init__(message, code="INVALID_OPERATION", engine=engine)


class MigrationConflict(InventraError):
    """Duplicate-key during migration. Recorded in the run report, never raised out of a run."""

    status_code = 409

    def __init__(self, message: str = "Document already migrated", engine: str | None = "mongodb"):
        super().__init__(message, code="MIGRATION_CONFLICT", engine=engine)


class DuplicateRecordError(OperationError):
    """Raised when a write collides with an existing record of the same tenant."""

    status_code = 409

    def __init__(self, message: str = "Record already exists", engine: str | None = None):
        super().__init__(message, engine=engine)
        self.code = "DUPLICATE_RECORD"


class CollaboratorError(InventraError):
    """Raised when an external collaborator (extraction, structuring) fails or is unreachable."""

    status_code = 502

    def __init__(self, message: str = "Collaborator request failed", service: str | None = None):
        super().__init__(message, code="COLLABORATOR_ERROR")
        self.service = service
