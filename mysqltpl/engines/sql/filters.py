"""
Helpers and the output finalizer of the SQL template environment.

Every helper returns ``SqlSafe`` so the ``finalize`` callback knows the value
has already been escaped and does not escape it a second time. Anything else
printed with ``{{ }}`` is value-escaped by ``finalize``.
"""

from collections.abc import Callable, Mapping
from typing import Any

from jinja2 import Undefined

from mysqltpl.core.errors import TemplateCompileError
from mysqltpl.engines.sql.binder import ParameterBinder


class SqlSafe(str):
    """String subclass marking a value as already SQL-escaped."""


def _defined(value: Any) -> Any:
    if isinstance(value, Undefined):
        # StrictUndefined raises UndefinedError on str()
        str(value)
    return value


def truthy(value: Any) -> bool:
    """Handlebars truthiness: mappings are truthy even when empty."""
    value = _defined(value)
    if isinstance(value, Mapping):
        return True
    return bool(value)


def iterate(value: Any) -> list[tuple[Any, Any, int, bool, bool]]:
    """(key, item, index, first, last) for a list or a mapping; nothing for scalars."""
    value = _defined(value)
    if isinstance(value, Mapping):
        pairs = list(value.items())
    elif isinstance(value, (list, tuple)):
        pairs = list(enumerate(value))
    else:
        pairs = []
    last = len(pairs) - 1
    return [(k, v, i, i == 0, i == last) for i, (k, v) in enumerate(pairs)]


def lookup(value: Any, *segments: str) -> Any:
    """Strict path lookup: a missing key fails instead of rendering nothing."""
    for seg in segments:
        if isinstance(value, Mapping) and seg in value:
            value = value[seg]
        elif isinstance(value, (list, tuple)) and seg.isdigit() and int(seg) < len(value):
            value = value[int(seg)]
        else:
            raise TemplateCompileError(
                f'"{".".join(segments)}" not defined in {type(value).__name__}'
            )
    return value


def make_finalize(binder: ParameterBinder) -> Callable[[Any], str]:
    def sql_finalize(value: Any) -> str:
        if isinstance(value, SqlSafe):
            return str(value)
        return binder.escape_value(_defined(value))

    return sql_finalize


def make_helpers(binder: ParameterBinder) -> dict[str, Any]:
    """Template globals bound to *binder*'s escape primitives."""

    def sql_escape_id(value: Any) -> SqlSafe:
        return SqlSafe(binder.escape_path(_defined(value)))

    def sql_escape(value: Any) -> SqlSafe:
        return SqlSafe(binder.escape_value(_defined(value)))

    def sql_block(items: Any, caller: Any = None) -> SqlSafe:
        items = _defined(items)
        if not isinstance(items, (list, tuple)):
            items = [items]
        rendered = []
        for item in items:
            params = item if isinstance(item, Mapping) else {}
            rendered.append(binder.bind(caller(item), params))
        return SqlSafe("\n".join(rendered))

    return {
        "_truthy": truthy,
        "_iterate": iterate,
        "_lookup": lookup,
        "_sqlEscapeId": sql_escape_id,
        "_sqlEscape": sql_escape,
        "_sql": sql_block,
    }
