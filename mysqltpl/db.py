"""
Public entry point.

    db = init(host="db", user="app", database="shows")
    rows = await db.query("SELECT * FROM tv_shows WHERE id = :id", {"id": 7})

The backend (live pool or in-memory test double) is chosen once here, from
``testMode``; the query path above it is the same for both.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from mysqltpl.core.config import DatabaseSettings, QueryConfig, resolve_settings
from mysqltpl.core.pool.base import Backend, Connection, ConnectionState
from mysqltpl.core.pool.connect import escape, escape_id
from mysqltpl.core.pool.manager import ConnectionManager
from mysqltpl.engines.mock import MockBackend
from mysqltpl.engines.sql.executor import QueryExecutor, QueryFormatter, Transaction

_log = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _configure_logging(level: str) -> None:
    """
    Set the level of the package-wide ``mysqltpl`` logger. Loggers are
    process global, so with several ``Database`` instances the one built last
    decides the level.
    """
    logging.getLogger("mysqltpl").setLevel(_LOG_LEVELS.get(level.lower(), logging.ERROR))


class Database:
    def __init__(
        self,
        config: Mapping[str, Any] | DatabaseSettings | None = None,
        *,
        backend: Backend | None = None,
        **options: Any,
    ) -> None:
        if isinstance(config, DatabaseSettings):
            self._settings = config
        else:
            self._settings = resolve_settings(config, **options)
        _configure_logging(self._settings.resolved_log_level)

        if backend is not None:
            self._backend = backend
        elif self._settings.test_mode:
            _log.debug("test mode: queries go to the in-memory backend")
            self._backend = MockBackend()
        else:
            self._backend = ConnectionManager(self._settings)
        self._formatter = QueryFormatter()
        self._executor = QueryExecutor(self._backend, self._settings, self._formatter)

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def state(self) -> ConnectionState:
        return self._backend.state

    @property
    def backend(self) -> Backend:
        return self._backend

    async def connect(self) -> Any:
        """Connect (or join an in-flight connect) and return the pool."""
        return await self._backend.connect()

    async def disconnect(self) -> None:
        await self._backend.disconnect()

    async def query(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        query_config: QueryConfig | Mapping[str, Any] | None = None,
    ) -> Any:
        return await self._executor.execute(sql, params, query_config)

    async def begin_transaction(self) -> Transaction:
        return await self._executor.begin_transaction()

    async def get_connection(self) -> Connection:
        """Check out a raw connection; the caller must ``release()`` it."""
        await self._executor.ensure_connected()
        return await self._backend.get_connection()

    # ad-hoc helpers

    @staticmethod
    def escape(value: Any) -> str:
        return escape(value)

    @staticmethod
    def escape_id(value: Any, forbid_qualified: bool = False) -> str:
        return escape_id(value, forbid_qualified)

    def format(self, sql: str, params: Mapping[str, Any] | None = None) -> str:
        """The final SQL ``query`` would send, without sending it."""
        return self._formatter.format(sql, params)

    async def __aenter__(self) -> "Database":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    # test mode

    @property
    def mock(self) -> MockBackend:
        if not isinstance(self._backend, MockBackend):
            raise RuntimeError("Only available in test mode (testMode=True)")
        return self._backend

    def get_last_query(self) -> str | None:
        return self.mock.get_last_query()

    def set_results_by_match(self, entries: Iterable[Any]) -> None:
        self.mock.set_results_by_match(entries)

    def get_last_transaction(self) -> str | None:
        return self.mock.get_last_transaction()

    def clear_last_query(self) -> None:
        self.mock.clear_last_query()

    def clear_results_by_match(self) -> None:
        self.mock.clear_results_by_match()

    def clear_last_transaction(self) -> None:
        self.mock.clear_last_transaction()

    def clear_all(self) -> None:
        self.mock.clear_all()


def init(config: Mapping[str, Any] | None = None, **options: Any) -> Database:
    """Build a ``Database`` from *config* / keyword options and the environment."""
    return Database(config, **options)
