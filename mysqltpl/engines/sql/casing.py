"""
Key casing between the database (snake_case) and the application (camelCase).

Word splitting follows the usual change-case rules: a lower/digit followed by
an upper letter starts a new word, so does the last capital of an acronym
followed by a lower letter ("HTTPServer" -> "HTTP", "Server"); any run of
non-alphanumerics is a separator.
"""

import re
from typing import Any

_SPLIT_LOWER_UPPER = re.compile(r"([a-z0-9])([A-Z])")
_SPLIT_UPPER_UPPER = re.compile(r"([A-Z])([A-Z][a-z])")
_STRIP = re.compile(r"[^A-Za-z0-9]+")


def _words(s: str) -> list[str]:
    s = _SPLIT_LOWER_UPPER.sub(r"\1 \2", str(s))
    s = _SPLIT_UPPER_UPPER.sub(r"\1 \2", s)
    s = _STRIP.sub(" ", s)
    return s.split()


def camel_case(s: str) -> str:
    """updated_at -> updatedAt, ID -> id. A word starting with a digit keeps its underscore."""
    out: list[str] = []
    for i, word in enumerate(_words(s)):
        if i == 0:
            out.append(word.lower())
        elif word[0].isdigit():
            out.append("_" + word.lower())
        else:
            out.append(word[0].upper() + word[1:].lower())
    return "".join(out)


def snake_case(s: str) -> str:
    """updatedAt -> updated_at."""
    return "_".join(w.lower() for w in _words(s))


def to_wire_casing(key: str) -> str:
    """Application-facing name -> database column convention."""
    return snake_case(key)


def _convert_row(row: dict[str, Any]) -> None:
    items = list(row.items())
    row.clear()
    for key, value in items:
        row[camel_case(key) if isinstance(key, str) else key] = value


def to_application_casing(results: Any) -> Any:
    """
    Rename every column of every row to camelCase, in place.

    Nested lists (one per statement of a multi-statement query) are walked
    recursively; ``ResultSetHeader`` rows and non-list input are left alone.
    """
    if not isinstance(results, list):
        return results
    for result in results:
        if isinstance(result, list):
            to_application_casing(result)
        elif isinstance(result, dict):
            _convert_row(result)
    return results
