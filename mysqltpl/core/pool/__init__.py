"""
MySQL connection layer: driver adapter, readiness check, SSH tunnel and the
connection lifecycle manager.

Only the driver-level helpers are re-exported here; import the manager and
tunnel from their modules.
"""

from .connect import ResultSetHeader, create_pool, escape, escape_id, execute
from .health import health_check

__all__ = [
    "ResultSetHeader",
    "create_pool",
    "escape",
    "escape_id",
    "execute",
    "health_check",
]
