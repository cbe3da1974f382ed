"""
mysqltpl: templated SQL on top of an asyncio MySQL pool.
"""

from mysqltpl.core.config import DatabaseSettings, QueryConfig, resolve_settings
from mysqltpl.core.errors import (
    DatabaseError,
    DBConnectionError,
    SQLError,
    TemplateCompileError,
    TransactionClosedError,
    TunnelTransportError,
)
from mysqltpl.core.pool.base import ConnectionState
from mysqltpl.db import Database, init
from mysqltpl.engines.sql.executor import Transaction

__all__ = [
    "ConnectionState",
    "Database",
    "DatabaseError",
    "DatabaseSettings",
    "DBConnectionError",
    "QueryConfig",
    "SQLError",
    "TemplateCompileError",
    "Transaction",
    "TransactionClosedError",
    "TunnelTransportError",
    "init",
    "resolve_settings",
]
