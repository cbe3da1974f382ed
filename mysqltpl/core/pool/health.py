"""
Readiness check for the pool.
"""

from typing import Any

from .connect import execute

HEALTH_CHECK_SQL = "SELECT 1;"


async def health_check(pool: Any) -> None:
    """
    Run ``SELECT 1`` once on a pooled connection. Raises whatever the driver
    raises; the caller decides what a failure means.
    """
    async with pool.acquire() as conn:
        await execute(conn, HEALTH_CHECK_SQL)
