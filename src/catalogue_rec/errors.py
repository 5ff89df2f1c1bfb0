"""Error kinds raised by the catalogue engine."""


class CatalogueError(Exception):
    """Base class for catalogue engine errors."""


class RepositoryError(CatalogueError):
    """
    Storage access failed (locked database, I/O error, broken connection).

    Distinct from a query that ran and matched nothing: callers must never
    read this as an empty result.
    """


class AuditWriteError(CatalogueError):
    """Persisting an inference result failed."""

    def __init__(self, message: str, audit_id: int | None = None):
        super().__init__(message)
        # Set when the audit row was committed before the failure
        self.audit_id = audit_id
