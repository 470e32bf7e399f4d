"""
Custom exceptions for the warehouse client.

Provides structured error handling so callers can tell transient failures
(worth a retry with backoff) from permanent ones.
"""


class WarehouseError(Exception):
    """Base operational error for warehouse access."""

    pass


class RetryableError(WarehouseError):
    """Temporary errors that should be retried with backoff."""

    pass


class TimeoutExceeded(RetryableError):
    """Query or connection timeout errors."""

    pass


class ConstraintViolation(WarehouseError):
    """Constraint violations (check, not-null, type mismatch)."""

    pass


def map_db_error(e: Exception) -> WarehouseError:
    import psycopg
    import psycopg.errors as E

    if isinstance(e, E.QueryCanceled):
        return TimeoutExceeded(str(e))
    if isinstance(
        e,
        (E.SerializationFailure, E.DeadlockDetected, E.TooManyConnections, psycopg.OperationalError),
    ):
        return RetryableError(str(e))
    if isinstance(
        e,
        (
            E.UniqueViolation,
            E.CheckViolation,
            E.NotNullViolation,
            E.ForeignKeyViolation,
            E.DataError,
        ),
    ):
        return ConstraintViolation(str(e))
    return WarehouseError(str(e))
