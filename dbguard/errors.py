from __future__ import annotations


class DbGuardError(Exception):
    """Base exception for dbguard errors."""


class ConfigurationError(DbGuardError, ValueError):
    """Invalid configuration, option combination or hook output."""


class GuardrailExceeded(DbGuardError):
    """A per-query, per-table or global statement ceiling was exceeded."""

    def __init__(self, message: str, category: str, limit: int) -> None:
        super().__init__(message)
        self.category = category
        self.limit = limit


class UnsafeOperation(DbGuardError):
    """The operation was refused because it could silently damage data."""


class DriverError(DbGuardError):
    """Any failure raised by the underlying SQL driver."""


class ConstraintViolation(DriverError):
    """
    A delete was rejected by a foreign key.

    The native message is replaced with one naming the tables and the column
    involved.
    """

    def __init__(
        self,
        referenced_table: str,
        referencing_table: str,
        referencing_column: str,
        referenced_column: str | None = None,
    ) -> None:
        super().__init__(
            f"You're trying to delete a row from table {referenced_table!r} "
            f"that is referenced in the table {referencing_table!r}, "
            f"in {referencing_column!r} field"
        )
        self.referenced_table = referenced_table
        self.referencing_table = referencing_table
        self.referencing_column = referencing_column
        self.referenced_column = referenced_column


class CacheStoreError(DbGuardError):
    """The external cache store failed."""
