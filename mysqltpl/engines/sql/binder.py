"""
Bind markers: ``::name`` (identifier) and ``:name`` (value).

The skeleton is scanned once, left to right. Quoted regions and comments
are copied verbatim, so literals produced by the template helpers are never
scanned a second time. A marker whose key is absent from the parameters is
left as is.
"""

import re
import textwrap
from collections.abc import Callable, Mapping
from typing import Any

from mysqltpl.core.errors import TemplateCompileError
from mysqltpl.core.pool.connect import escape, escape_id
from mysqltpl.engines.sql.casing import to_wire_casing

_TOKEN_RE = re.compile(
    r"""
      (?P<quoted>'(?:[^'\\]|\\.|'')*'
               |"(?:[^"\\]|\\.|"")*"
               |`(?:[^`]|``)*`
               |--[^\n]*
               |/\*.*?\*/)
    | (?<![\w:])(?P<marker>::?)(?P<key>\w+)
    """,
    re.VERBOSE | re.DOTALL,
)


class ParameterBinder:
    """Substitutes bind markers using the driver's escape primitives."""

    def __init__(
        self,
        escape: Callable[[Any], str] = escape,
        escape_id: Callable[[Any], str] = escape_id,
    ) -> None:
        self._escape = escape
        self._escape_id = escape_id

    def escape_value(self, value: Any) -> str:
        return self._escape(value)

    def escape_path(self, path: Any) -> str:
        """'tvShows.updatedAt' -> `tv_shows`.`updated_at`"""
        if path is None or isinstance(path, (dict, list, tuple)):
            raise TemplateCompileError(f"Cannot use {path!r} as an identifier")
        return ".".join(
            self._escape_id(to_wire_casing(part)) for part in str(path).split(".")
        )

    def bind(self, skeleton: str, params: Mapping[str, Any]) -> str:
        if not isinstance(params, Mapping):
            raise TemplateCompileError(
                f"Query parameters must be a mapping, got {type(params).__name__}"
            )

        def _replace(m: re.Match[str]) -> str:
            if m.group("quoted") is not None:
                return m.group(0)
            key = m.group("key")
            if key not in params:
                return m.group(0)
            if m.group("marker") == "::":
                return self.escape_path(params[key])
            return self._escape(params[key])

        return _TOKEN_RE.sub(_replace, skeleton)


def _split_statements(sql: str) -> list[str]:
    """
    Split on ``;`` outside quoted strings and comments, so a semicolon inside
    an escaped literal never breaks the literal apart. Empty pieces are
    kept so trailing separators survive the layout.
    """
    pieces: list[str] = []
    current: list[str] = []
    i = 0
    length = len(sql)

    while i < length:
        ch = sql[i]

        if ch in ("'", '"', "`"):
            quote = ch
            current.append(ch)
            i += 1
            while i < length:
                c = sql[i]
                current.append(c)
                if c == quote:
                    if i + 1 < length and sql[i + 1] == quote:
                        current.append(sql[i + 1])
                        i += 2
                        continue
                    i += 1
                    break
                if c == "\\" and quote != "`" and i + 1 < length:
                    current.append(sql[i + 1])
                    i += 2
                    continue
                i += 1
            continue

        if ch == "-" and i + 1 < length and sql[i + 1] == "-":
            end = sql.find("\n", i)
            end = length if end == -1 else end
            current.append(sql[i:end])
            i = end
            continue

        if ch == "/" and i + 1 < length and sql[i + 1] == "*":
            end = sql.find("*/", i + 2)
            end = length if end == -1 else end + 2
            current.append(sql[i:end])
            i = end
            continue

        if ch == ";":
            pieces.append("".join(current))
            current = []
            i += 1
            continue

        current.append(ch)
        i += 1

    pieces.append("".join(current))
    return pieces


def _endent(piece: str) -> str:
    lines = piece.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return textwrap.dedent("\n".join(lines))


def layout(sql: str) -> str:
    """Dedent every statement and separate statements with a blank line."""
    return ";\n\n".join(_endent(piece) for piece in _split_statements(sql))


_default_binder: ParameterBinder | None = None


def get_binder() -> ParameterBinder:
    global _default_binder
    if _default_binder is None:
        _default_binder = ParameterBinder()
    return _default_binder


def bind(skeleton: str, params: Mapping[str, Any]) -> str:
    """Bind *params* into *skeleton* with the default MySQL escaping."""
    return get_binder().bind(skeleton, params)
