"""
In-memory backend for tests: no network, deterministic canned results.

Implements the same ``Backend`` interface as the live connection manager so
the query executor runs unchanged on top of it. Every executed statement is
the final, fully bound SQL.
"""

import copy
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from mysqltpl.core.errors import DBConnectionError
from mysqltpl.core.pool.base import ConnectionState

_log = logging.getLogger(__name__)

TRANSACTION_START = "START TRANSACTION"
TRANSACTION_COMMIT = "COMMIT"
TRANSACTION_ROLLBACK = "ROLLBACK"


class MatchRule:
    """A matcher (substring or compiled regex) and what a matching query gets."""

    def __init__(
        self,
        matcher: str | re.Pattern[str],
        result: Any = None,
        error: BaseException | None = None,
    ) -> None:
        if not isinstance(matcher, (str, re.Pattern)):
            raise TypeError(
                f"matcher must be a str or compiled pattern, got {type(matcher).__name__}"
            )
        self.matcher = matcher
        self.result = [] if result is None else result
        self.error = error

    def matches(self, sql: str) -> bool:
        if isinstance(self.matcher, re.Pattern):
            return self.matcher.search(sql) is not None
        return self.matcher in sql

    @classmethod
    def from_entry(cls, entry: Any) -> "MatchRule":
        if isinstance(entry, MatchRule):
            return entry
        if isinstance(entry, Mapping):
            matcher = entry.get("match", entry.get("regex"))
            return cls(matcher, entry.get("result"), entry.get("error"))
        matcher, result = entry
        return cls(matcher, result)


def render_transaction(statements: list[str]) -> str:
    """['START TRANSACTION', 'A;', 'COMMIT'] -> 'START TRANSACTION;\\nA;\\nCOMMIT;'"""
    return ";\n".join(s.strip().rstrip(";").rstrip() for s in statements) + ";"


class MockConnection:
    """Checked-out connection of the test double; accumulates a transaction log."""

    def __init__(self, backend: "MockBackend") -> None:
        self._backend = backend
        self._statements: list[str] | None = None

    @property
    def raw(self) -> "MockConnection":
        return self

    async def query(self, sql: str) -> tuple[Any, Any]:
        if self._statements is not None:
            self._statements.append(sql)
        return self._backend.respond(sql)

    async def begin(self) -> None:
        self._statements = [TRANSACTION_START]

    async def commit(self) -> None:
        self._end(TRANSACTION_COMMIT)

    async def rollback(self) -> None:
        self._end(TRANSACTION_ROLLBACK)

    async def release(self) -> None:
        pass

    def _end(self, terminal: str) -> None:
        if self._statements is None:
            return
        self._statements.append(terminal)
        self._backend.record_transaction(render_transaction(self._statements))
        self._statements = None


class MockBackend:
    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._rules: list[MatchRule] = []
        self._last_query: str | None = None
        self._last_transaction: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def connect(self) -> "MockBackend":
        if self._state is not ConnectionState.CONNECTED:
            self._state = ConnectionState.CONNECTED
            _log.debug("connected to mock db")
        return self

    async def disconnect(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            self._state = ConnectionState.DISCONNECTED

    def _require_connected(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise DBConnectionError(f"Not connected (state: {self._state.value})")

    async def query(self, sql: str) -> tuple[Any, Any]:
        self._require_connected()
        return self.respond(sql)

    async def get_connection(self) -> MockConnection:
        self._require_connected()
        return MockConnection(self)

    async def begin_transaction(self) -> MockConnection:
        connection = await self.get_connection()
        await connection.begin()
        return connection

    # ------------------------------------------------------------------
    # Fixture
    # ------------------------------------------------------------------

    def respond(self, sql: str) -> tuple[Any, Any]:
        """Record *sql* as the last query and answer with the first matching rule."""
        self._last_query = sql
        for rule in self._rules:
            if rule.matches(sql):
                if rule.error is not None:
                    raise rule.error
                return copy.deepcopy(rule.result), None
        return [], None

    def record_transaction(self, log: str) -> None:
        self._last_transaction = log

    def set_results_by_match(self, entries: Iterable[Any]) -> None:
        """
        Replace the matcher list. Entries are tried in order and the first
        match wins; each is ``{"match": str | re.Pattern, "result": ...}``
        (``regex`` is accepted for ``match``, ``error`` instead of ``result``
        raises), a ``(matcher, result)`` pair or a ``MatchRule``.
        """
        self._rules = [MatchRule.from_entry(e) for e in entries]

    def get_last_query(self) -> str | None:
        return self._last_query

    def get_last_transaction(self) -> str | None:
        return self._last_transaction

    def clear_last_query(self) -> None:
        self._last_query = None

    def clear_results_by_match(self) -> None:
        self._rules = []

    def clear_last_transaction(self) -> None:
        self._last_transaction = None

    def clear_all(self) -> None:
        self.clear_last_query()
        self.clear_results_by_match()
        self.clear_last_transaction()
