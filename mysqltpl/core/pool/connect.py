"""
MySQL driver adapter: escaping primitives, pool creation and statement execution.

aiomysql provides the asyncio pool; value escaping is PyMySQL's (the same
converters aiomysql uses internally). Final SQL is executed without driver
side formatting because binding already happened in the formatter.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiomysql
from pymysql.constants import CLIENT
from pymysql.converters import escape_item

if TYPE_CHECKING:
    from mysqltpl.core.config import DatabaseSettings

_CHARSET = "utf8mb4"


@dataclass
class ResultSetHeader:
    """Metadata of a statement that produced no result set (DDL/DML)."""

    affected_rows: int = 0
    insert_id: int | None = None
    warning_count: int = 0
    info: str = ""


def escape(value: Any) -> str:
    """
    Turn *value* into a SQL literal.

    - Mapping -> `k` = v pairs, comma separated (for ``SET :row``).
    - list/tuple/set -> comma separated literals; nested sequences become
      parenthesised groups (for bulk ``VALUES :rows``).
    - everything else -> PyMySQL ``escape_item`` (None -> NULL, str quoted).
    """
    if isinstance(value, Mapping):
        return ", ".join(f"{escape_id(k)} = {escape(v)}" for k, v in value.items())
    if isinstance(value, (list, tuple, set, frozenset)):
        parts = []
        for v in value:
            if isinstance(v, (list, tuple)):
                parts.append("(" + escape(v) + ")")
            else:
                parts.append(escape(v))
        return ", ".join(parts)
    return escape_item(value, _CHARSET)


def escape_id(value: Any, forbid_qualified: bool = False) -> str:
    """
    Quote an identifier with backticks; a.b -> `a`.`b` unless
    *forbid_qualified*; sequences are escaped item by item and comma joined.
    """
    if isinstance(value, (list, tuple)):
        return ", ".join(escape_id(v, forbid_qualified) for v in value)
    s = str(value).replace("`", "``")
    if not forbid_qualified:
        s = s.replace(".", "`.`")
    return f"`{s}`"


def session_init_command(settings: DatabaseSettings) -> str:
    """Session settings applied to every new physical connection."""
    return (
        f"SET time_zone = {escape(settings.timezone)}, "
        f"max_execution_time = {int(settings.max_execution_time)}, "
        f"group_concat_max_len = {int(settings.group_concat_max_len)}"
    )


async def create_pool(
    settings: DatabaseSettings,
    *,
    host: str | None = None,
    port: int | None = None,
) -> aiomysql.Pool:
    """
    Create the aiomysql pool. *host*/*port* override the configured address
    (the local end of an SSH tunnel). No connection is opened until the first
    acquire.
    """
    client_flag = CLIENT.MULTI_STATEMENTS if settings.multiple_statements else 0
    return await aiomysql.create_pool(
        minsize=0,
        maxsize=settings.connection_limit,
        host=host or settings.host or "localhost",
        port=int(port or settings.port),
        user=settings.user,
        password=settings.password or "",
        db=settings.database,
        charset=_CHARSET,
        autocommit=True,
        client_flag=client_flag,
        init_command=session_init_command(settings),
        connect_timeout=settings.connect_timeout,
        cursorclass=aiomysql.DictCursor,
    )


def _ok_info(raw: Any) -> str:
    message = getattr(raw, "message", None) or ""
    if isinstance(message, bytes):
        return message.decode("utf-8", "replace")
    return str(message)


async def execute(conn: Any, sql: str) -> tuple[Any, Any]:
    """
    Run final *sql* on *conn* and collect every result set.

    Returns ``(results, fields)``: for a single statement ``results`` is its
    row list (or ``ResultSetHeader``) and ``fields`` its cursor description;
    for several statements both are lists with one entry per statement.
    """
    results: list[Any] = []
    fields: list[Any] = []
    async with conn.cursor(aiomysql.DictCursor) as cur:
        await cur.execute(sql)
        while True:
            if cur.description:
                rows = await cur.fetchall()
                results.append([dict(r) for r in rows])
                fields.append(cur.description)
            else:
                # the driver keeps the OK packet details on the raw result
                raw = getattr(cur, "_result", None)
                results.append(
                    ResultSetHeader(
                        affected_rows=max(cur.rowcount or 0, 0),
                        insert_id=cur.lastrowid or None,
                        warning_count=getattr(raw, "warning_count", 0) or 0,
                        info=_ok_info(raw),
                    )
                )
                fields.append(None)
            if not await cur.nextset():
                break
    if len(results) == 1:
        return results[0], fields[0]
    return results, fields

