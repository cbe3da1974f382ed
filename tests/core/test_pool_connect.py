"""Unit tests for core.pool: escaping, pool creation, execute, health_check."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from pymysql.constants import CLIENT

from mysqltpl.core.config import DatabaseSettings
from mysqltpl.core.pool import (
    ResultSetHeader,
    create_pool,
    escape,
    escape_id,
    execute,
    health_check,
)
from mysqltpl.core.pool.connect import session_init_command


def _run(coro) -> object:
    return asyncio.run(coro)


class _FakeCursor:
    """Async cursor replaying a list of (description, rows, rowcount, lastrowid)."""

    def __init__(self, sets: list[tuple]) -> None:
        self._sets = sets
        self._i = 0
        self.executed: list[str] = []

    async def __aenter__(self) -> "_FakeCursor":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    async def execute(self, sql: str) -> None:
        self.executed.append(sql)

    @property
    def description(self):
        return self._sets[self._i][0]

    @property
    def rowcount(self) -> int:
        return self._sets[self._i][2]

    @property
    def lastrowid(self) -> int:
        return self._sets[self._i][3]

    async def fetchall(self) -> list[dict]:
        return self._sets[self._i][1]

    async def nextset(self) -> bool | None:
        if self._i + 1 < len(self._sets):
            self._i += 1
            return True
        return None


def _conn(sets: list[tuple]) -> tuple[MagicMock, _FakeCursor]:
    cur = _FakeCursor(sets)
    conn = MagicMock()
    conn.cursor.return_value = cur
    return conn, cur


class TestEscape:
    def test_scalars(self):
        assert escape(1) == "1"
        assert escape(None) == "NULL"
        assert escape("a'b") == "'a\\'b'"

    def test_sequence(self):
        assert escape([1, "a"]) == "1, 'a'"

    def test_nested_sequence(self):
        assert escape([[1, 2], [3, 4]]) == "(1, 2), (3, 4)"

    def test_mapping(self):
        assert escape({"a": 1, "b": "x"}) == "`a` = 1, `b` = 'x'"


class TestEscapeId:
    def test_simple(self):
        assert escape_id("users") == "`users`"

    def test_qualified(self):
        assert escape_id("t.col") == "`t`.`col`"
        assert escape_id("t.col", forbid_qualified=True) == "`t.col`"

    def test_backtick_doubled(self):
        assert escape_id("we`ird") == "`we``ird`"

    def test_sequence(self):
        assert escape_id(["a", "b"]) == "`a`, `b`"


def test_session_init_command():
    s = DatabaseSettings(timezone="+02:00", max_execution_time=5000, group_concat_max_len=1024)
    assert session_init_command(s) == (
        "SET time_zone = '+02:00', max_execution_time = 5000, group_concat_max_len = 1024"
    )


class TestCreatePool:
    @patch("mysqltpl.core.pool.connect.aiomysql.create_pool", new_callable=AsyncMock)
    def test_options(self, mock_create: AsyncMock):
        s = DatabaseSettings(
            host="db", port=3306, user="u", password="p", database="app", connection_limit=4
        )
        _run(create_pool(s))
        kwargs = mock_create.await_args.kwargs
        assert kwargs["host"] == "db"
        assert kwargs["port"] == 3306
        assert kwargs["maxsize"] == 4
        assert kwargs["minsize"] == 0
        assert kwargs["db"] == "app"
        assert kwargs["autocommit"] is True
        assert kwargs["client_flag"] & CLIENT.MULTI_STATEMENTS
        assert kwargs["init_command"].startswith("SET time_zone")

    @patch("mysqltpl.core.pool.connect.aiomysql.create_pool", new_callable=AsyncMock)
    def test_address_override(self, mock_create: AsyncMock):
        s = DatabaseSettings(host="db", port=3306, multiple_statements=False)
        _run(create_pool(s, host="127.0.0.1", port=40000))
        kwargs = mock_create.await_args.kwargs
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 40000
        assert kwargs["client_flag"] == 0


class TestExecute:
    def test_single_select(self):
        desc = (("id",),)
        conn, cur = _conn([(desc, [{"id": 1}], 1, 0)])
        results, fields = _run(execute(conn, "SELECT id FROM t"))
        assert results == [{"id": 1}]
        assert fields == desc
        assert cur.executed == ["SELECT id FROM t"]

    def test_single_write(self):
        conn, _ = _conn([(None, [], 2, 17)])
        results, fields = _run(execute(conn, "INSERT INTO t VALUES (1), (2)"))
        assert results == ResultSetHeader(affected_rows=2, insert_id=17)
        assert fields is None

    def test_ok_packet_details(self):
        conn, cur = _conn([(None, [], 2, 0)])
        cur._result = SimpleNamespace(warning_count=1, message=b"Rows matched: 2  Changed: 2")
        results, _ = _run(execute(conn, "UPDATE t SET a = 1"))
        assert results.warning_count == 1
        assert results.info == "Rows matched: 2  Changed: 2"

    def test_multi_statement(self):
        desc = (("n",),)
        conn, _ = _conn([(None, [], 1, 0), (desc, [{"n": 5}], 1, 0)])
        results, fields = _run(execute(conn, "UPDATE t SET a = 1; SELECT 5 AS n"))
        assert results == [ResultSetHeader(affected_rows=1), [{"n": 5}]]
        assert fields == [None, desc]


def test_health_check_runs_select_one():
    conn, cur = _conn([((("1",),), [{"1": 1}], 1, 0)])
    acquire_cm = MagicMock()
    acquire_cm.__aenter__ = AsyncMock(return_value=conn)
    acquire_cm.__aexit__ = AsyncMock(return_value=None)
    pool = MagicMock()
    pool.acquire.return_value = acquire_cm
    _run(health_check(pool))
    assert cur.executed == ["SELECT 1;"]
