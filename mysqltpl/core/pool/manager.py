"""
Connection lifecycle: lazy pool creation, optional SSH tunnel, single-flight
connect and graceful disconnect.

State machine::

    disconnected -> connecting -> connected -> disconnecting -> disconnected
                         \\-> disconnected (tunnel, pool or health check failure)

Only one transition is in flight at a time. It is kept as a single pending
task; concurrent callers await that same task (through ``asyncio.shield`` so
one caller's cancellation does not abort the others) and share its outcome.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mysqltpl.core.config import DatabaseSettings, SshTunnelSettings
from mysqltpl.core.errors import DBConnectionError

from .base import ConnectionState
from .connect import create_pool, execute
from .health import health_check
from .tunnel import SshTunnel, open_tunnel

_log = logging.getLogger(__name__)

PoolFactory = Callable[..., Awaitable[Any]]
TunnelFactory = Callable[[SshTunnelSettings], Awaitable[SshTunnel]]


class PooledConnection:
    """A connection checked out of the pool until ``release``."""

    def __init__(self, pool: Any, conn: Any) -> None:
        self._pool = pool
        self._conn = conn
        self._released = False

    @property
    def raw(self) -> Any:
        return self._conn

    async def query(self, sql: str) -> tuple[Any, Any]:
        return await execute(self._conn, sql)

    async def begin(self) -> None:
        await self._conn.begin()

    async def commit(self) -> None:
        await self._conn.commit()

    async def rollback(self) -> None:
        await self._conn.rollback()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pool.release(self._conn)


class ConnectionManager:
    """Live backend: owns the aiomysql pool and the optional SSH tunnel."""

    def __init__(
        self,
        settings: DatabaseSettings,
        *,
        pool_factory: PoolFactory = create_pool,
        tunnel_factory: TunnelFactory = open_tunnel,
    ) -> None:
        self._settings = settings
        self._pool_factory = pool_factory
        self._tunnel_factory = tunnel_factory
        self._state = ConnectionState.DISCONNECTED
        self._pending: asyncio.Future[Any] | None = None
        self._pool: Any = None
        self._tunnel: SshTunnel | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pool(self) -> Any:
        return self._pool

    @property
    def tunnel(self) -> SshTunnel | None:
        return self._tunnel

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def connect(self) -> Any:
        """Return the pool, connecting first if needed. Joins an in-flight connect."""
        while True:
            if self._state is ConnectionState.CONNECTED:
                return self._pool
            if self._pending is None:
                self._state = ConnectionState.CONNECTING
                self._pending = asyncio.ensure_future(self._establish())
            if self._state is ConnectionState.CONNECTING:
                return await asyncio.shield(self._pending)
            # a disconnect is in flight: let it finish, then connect again
            await asyncio.shield(self._pending)

    async def disconnect(self) -> None:
        """Close the pool (in-flight queries finish first), then the tunnel."""
        while self._pending is not None:
            try:
                await asyncio.shield(self._pending)
            except DBConnectionError:
                # the failed connect already left us disconnected
                pass
        if self._state is not ConnectionState.CONNECTED:
            return
        self._state = ConnectionState.DISCONNECTING
        self._pending = asyncio.ensure_future(self._close())
        await asyncio.shield(self._pending)

    async def _establish(self) -> Any:
        try:
            host: str | None = None
            port: int | None = None
            if self._settings.ssh_tunnel.enabled:
                self._tunnel = await self._tunnel_factory(self._settings.ssh_tunnel)
                host, port = self._tunnel.local_address
            self._pool = await self._pool_factory(self._settings, host=host, port=port)
            await health_check(self._pool)
        except asyncio.CancelledError:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            _log.error("error connecting to the db: %s", e)
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            if isinstance(e, DBConnectionError):
                raise
            raise DBConnectionError(f"Could not connect to the database: {e}") from e
        else:
            self._state = ConnectionState.CONNECTED
            _log.debug("connected to db")
            return self._pool
        finally:
            self._pending = None

    async def _close(self) -> None:
        try:
            await self._teardown()
        finally:
            self._state = ConnectionState.DISCONNECTED
            self._pending = None
        _log.debug("disconnected from db")

    async def _teardown(self) -> None:
        """Pool first, tunnel second; errors are logged and dropped."""
        pool, self._pool = self._pool, None
        if pool is not None:
            try:
                pool.close()
                await pool.wait_closed()
            except Exception as e:
                _log.debug("error closing pool: %s", e)
        tunnel, self._tunnel = self._tunnel, None
        if tunnel is not None:
            try:
                await tunnel.close()
            except Exception as e:
                _log.debug("error closing ssh tunnel: %s", e)

    # ------------------------------------------------------------------
    # Execution primitives
    # ------------------------------------------------------------------

    def _require_pool(self) -> Any:
        if self._state is not ConnectionState.CONNECTED or self._pool is None:
            raise DBConnectionError(f"Not connected (state: {self._state.value})")
        return self._pool

    async def query(self, sql: str) -> tuple[Any, Any]:
        """Run *sql* on any free pooled connection."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            return await execute(conn, sql)

    async def get_connection(self) -> PooledConnection:
        pool = self._require_pool()
        conn = await pool.acquire()
        return PooledConnection(pool, conn)

    async def begin_transaction(self) -> PooledConnection:
        connection = await self.get_connection()
        try:
            await connection.begin()
        except BaseException:
            await connection.release()
            raise
        return connection
