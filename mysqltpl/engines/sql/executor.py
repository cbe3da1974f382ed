"""
Query execution: connect-if-needed -> format -> execute -> classify errors ->
normalize casing.

The same executor drives the live pool and the test double; both implement
``mysqltpl.core.pool.base.Backend``.
"""

import logging
from collections.abc import Mapping
from typing import Any

from mysqltpl.core.config import DatabaseSettings, QueryConfig
from mysqltpl.core.errors import (
    DBConnectionError,
    SQLError,
    TransactionClosedError,
)
from mysqltpl.core.pool.base import Backend, Connection, ConnectionState
from mysqltpl.engines.sql.binder import ParameterBinder, get_binder, layout
from mysqltpl.engines.sql.casing import to_application_casing
from mysqltpl.engines.sql.template_engine import TemplateCompiler, get_compiler

_log = logging.getLogger(__name__)

ROLLBACK_SQL = "ROLLBACK;"


class QueryFormatter:
    """Template -> final SQL: directives, then bind markers, then layout."""

    def __init__(
        self,
        compiler: TemplateCompiler | None = None,
        binder: ParameterBinder | None = None,
    ) -> None:
        self._compiler = compiler or get_compiler()
        self._binder = binder or get_binder()

    def format(self, sql: str, params: Mapping[str, Any] | None = None) -> str:
        """Without *params* the SQL is returned untouched (plain SQL, no templating)."""
        if params is None:
            return sql
        skeleton = self._compiler.compile(sql, params)
        return layout(self._binder.bind(skeleton, params))


class QueryExecutor:
    def __init__(
        self,
        backend: Backend,
        settings: DatabaseSettings,
        formatter: QueryFormatter | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self._formatter = formatter or QueryFormatter()

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    async def ensure_connected(self) -> None:
        if self._backend.state is ConnectionState.CONNECTED:
            return
        if not self._settings.lazy_connect:
            raise DBConnectionError(
                "Not connected and lazy connect is disabled; call connect() first"
            )
        await self._backend.connect()

    async def execute(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        query_config: QueryConfig | Mapping[str, Any] | None = None,
        *,
        connection: Connection | None = None,
    ) -> Any:
        """
        Run *sql* (a template when *params* is given) and return its rows.

        - ``native_query``: return the driver's ``(results, fields)`` untouched.
        - ``keep_original_casing``: skip the snake_case -> camelCase conversion.
        - *connection*: run on this checked-out connection (transactions)
          instead of any pooled one.
        """
        config = self._settings.query_config.merged(query_config)
        if connection is None:
            await self.ensure_connected()

        final_sql = self._formatter.format(sql, params)
        _log.debug("%s", final_sql)

        try:
            if connection is not None:
                results, fields = await connection.query(final_sql)
            else:
                results, fields = await self._backend.query(final_sql)
        except DBConnectionError:
            raise
        except Exception as e:
            _log.error("SQL execution failed: %s. SQL: %s", e, final_sql)
            await self.rollback_quietly(connection)
            raise SQLError.from_driver_error(
                e, final_sql, hardened=self._settings.hardened
            ) from e

        if config.native_query:
            return results, fields
        if not config.keep_original_casing:
            to_application_casing(results)
        return results

    async def rollback_quietly(self, connection: Connection | None) -> None:
        """Best effort; a failing rollback must not mask the original error."""
        try:
            if connection is not None:
                await connection.rollback()
                return
            pooled = await self._backend.get_connection()
            try:
                await pooled.rollback()
            finally:
                await pooled.release()
        except Exception as e:
            _log.debug("rollback after error failed: %s", e)

    async def begin_transaction(self) -> "Transaction":
        await self.ensure_connected()
        connection = await self._backend.begin_transaction()
        return Transaction(self, connection)


class Transaction:
    """
    One logical transaction pinned to one checked-out connection.

    Every statement, the commit and the rollback go through that connection;
    it goes back to the pool exactly once, when the transaction ends. Can be
    used as ``async with await db.begin_transaction() as tx``: commits on
    success, rolls back on error.
    """

    def __init__(self, executor: QueryExecutor, connection: Connection) -> None:
        self._executor = executor
        self._connection = connection
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def get_connection(self) -> Connection:
        return self._connection

    def _check_open(self) -> None:
        if self._closed:
            raise TransactionClosedError("Transaction already committed or rolled back")

    async def query(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        query_config: QueryConfig | Mapping[str, Any] | None = None,
    ) -> Any:
        self._check_open()
        try:
            return await self._executor.execute(
                sql, params, query_config, connection=self._connection
            )
        except SQLError:
            # the executor already rolled the connection back
            await self._finish()
            raise

    async def commit(self) -> None:
        self._check_open()
        try:
            await self._connection.commit()
        except Exception as e:
            await self._executor.rollback_quietly(self._connection)
            raise SQLError.from_driver_error(
                e, "COMMIT;", hardened=self._executor.settings.hardened
            ) from e
        finally:
            await self._finish()

    async def rollback(self) -> None:
        if self._closed:
            return
        try:
            await self._connection.rollback()
        except Exception as e:
            raise SQLError.from_driver_error(
                e, ROLLBACK_SQL, hardened=self._executor.settings.hardened
            ) from e
        finally:
            await self._finish()

    async def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._connection.release()

    async def __aenter__(self) -> "Transaction":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if self._closed:
            return False
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False
