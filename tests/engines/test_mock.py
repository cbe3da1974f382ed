"""Unit tests for engines.mock (in-memory test backend)."""

import asyncio
import re

import pytest

from mysqltpl.core.errors import DBConnectionError
from mysqltpl.core.pool.base import ConnectionState
from mysqltpl.engines.mock import MatchRule, MockBackend, render_transaction


def _run(coro) -> object:
    return asyncio.run(coro)


def _connected() -> MockBackend:
    backend = MockBackend()
    _run(backend.connect())
    return backend


class TestMatchRule:
    def test_substring(self):
        rule = MatchRule("FROM users")
        assert rule.matches("SELECT * FROM users WHERE 1")
        assert not rule.matches("SELECT * FROM groups")

    def test_regex_search(self):
        rule = MatchRule(re.compile(r"users\s+WHERE"))
        assert rule.matches("SELECT * FROM users  WHERE 1")

    def test_from_entry_forms(self):
        assert MatchRule.from_entry({"match": "a", "result": [1]}).result == [1]
        assert MatchRule.from_entry({"regex": re.compile("a")}).result == []
        assert MatchRule.from_entry(("a", [2])).result == [2]
        rule = MatchRule("a")
        assert MatchRule.from_entry(rule) is rule

    def test_bad_matcher(self):
        with pytest.raises(TypeError):
            MatchRule(42)  # type: ignore[arg-type]


class TestMockBackend:
    def test_state(self):
        backend = MockBackend()
        assert backend.state is ConnectionState.DISCONNECTED
        _run(backend.connect())
        assert backend.state is ConnectionState.CONNECTED
        _run(backend.disconnect())
        assert backend.state is ConnectionState.DISCONNECTED

    def test_query_requires_connection(self):
        with pytest.raises(DBConnectionError):
            _run(MockBackend().query("SELECT 1"))

    def test_default_result(self):
        backend = _connected()
        assert _run(backend.query("SELECT 1")) == ([], None)
        assert backend.get_last_query() == "SELECT 1"

    def test_first_match_wins(self):
        backend = _connected()
        backend.set_results_by_match(
            [
                {"match": "users", "result": [{"id": 1}]},
                {"regex": re.compile(".*"), "result": [{"id": 2}]},
            ]
        )
        assert _run(backend.query("SELECT * FROM users")) == ([{"id": 1}], None)
        assert _run(backend.query("SELECT * FROM groups")) == ([{"id": 2}], None)

    def test_result_is_copied(self):
        backend = _connected()
        backend.set_results_by_match([("users", [{"id": 1}])])
        rows, _ = _run(backend.query("users"))
        rows[0]["id"] = 99
        assert _run(backend.query("users")) == ([{"id": 1}], None)

    def test_error_rule_raises(self):
        backend = _connected()
        backend.set_results_by_match([{"match": "BAD", "error": RuntimeError("boom")}])
        with pytest.raises(RuntimeError, match="boom"):
            _run(backend.query("BAD SQL"))
        assert backend.get_last_query() == "BAD SQL"

    def test_transaction_log(self):
        backend = _connected()

        async def scenario():
            conn = await backend.begin_transaction()
            await conn.query("A;")
            await conn.query("B")
            await conn.commit()

        _run(scenario())
        assert backend.get_last_transaction() == "START TRANSACTION;\nA;\nB;\nCOMMIT;"
        assert backend.get_last_query() == "B"

    def test_rollback_log(self):
        backend = _connected()

        async def scenario():
            conn = await backend.begin_transaction()
            await conn.query("A")
            await conn.rollback()

        _run(scenario())
        assert backend.get_last_transaction() == "START TRANSACTION;\nA;\nROLLBACK;"

    def test_clear_all(self):
        backend = _connected()
        backend.set_results_by_match([("a", [1])])
        _run(backend.query("a"))
        backend.record_transaction("START TRANSACTION;\nCOMMIT;")
        backend.clear_all()
        assert backend.get_last_query() is None
        assert backend.get_last_transaction() is None
        assert _run(backend.query("a")) == ([], None)


def test_render_transaction():
    assert render_transaction(["START TRANSACTION", " x ; ", "COMMIT"]) == (
        "START TRANSACTION;\nx;\nCOMMIT;"
    )
