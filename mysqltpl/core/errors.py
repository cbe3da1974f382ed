"""
Error taxonomy for templating, connecting and executing.

TemplateCompileError and DBConnectionError also inherit the builtin
ValueError / ConnectionError so callers catching those keep working.
"""

from typing import Any


class DatabaseError(Exception):
    """Base class for every error raised by mysqltpl."""


class TemplateCompileError(DatabaseError, ValueError):
    """Malformed directive, unknown helper or strict access to a missing key."""


class DBConnectionError(DatabaseError, ConnectionError):
    """Pool creation, tunnel establishment or the readiness check failed."""


class TunnelTransportError(DBConnectionError):
    """Transport-level failure reported by the SSH tunnel's error channel."""


class TransactionClosedError(DatabaseError):
    """A transaction was used after commit or rollback."""


class SQLError(DatabaseError):
    """
    Statement failed against a live connection.

    ``raw_message`` always holds the driver's text; ``str(error)`` is the
    generic "SQL error" when raised in hardened mode.
    """

    GENERIC_MESSAGE = "SQL error"

    def __init__(
        self,
        message: str,
        *,
        raw_message: str | None = None,
        sql: str | None = None,
        errno: int | None = None,
    ) -> None:
        super().__init__(message)
        self.raw_message = raw_message if raw_message is not None else message
        self.sql = sql
        self.errno = errno

    @classmethod
    def from_driver_error(
        cls, error: BaseException, sql: str, *, hardened: bool = False
    ) -> "SQLError":
        """Wrap a driver exception; pymysql errors carry ``(errno, msg)`` in args."""
        errno: int | None = None
        raw = str(error)
        args: Any = getattr(error, "args", ())
        if len(args) >= 2 and isinstance(args[0], int):
            errno = args[0]
            raw = str(args[1])
        message = cls.GENERIC_MESSAGE if hardened else raw
        return cls(message, raw_message=raw, sql=sql, errno=errno)
