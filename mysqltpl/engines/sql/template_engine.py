"""
SQL template compiler.

Templates use Handlebars-style block directives::

    {{#if search}} ... {{else}} ... {{/if}}
    {{#unless @last}}AND{{/unless}}
    {{#each search}}{{sqlEscapeId @key}} = {{sqlEscape this}}{{/each}}
    {{#sql rows}}(:id, :name){{/sql}}

The directive source is translated once into Jinja2 source and compiled in a
private ``Environment`` whose helpers are bound to a ``ParameterBinder``. The
environment is built once per compiler and only read afterwards, so
concurrent compiles never touch shared mutable state. Compiled templates are
cached in an LRU dict keyed by source hash. Literal text between directives
is handed to the template as pre-escaped data, never parsed as Jinja.

Bind markers (``::id``, ``:value``) are not touched here; they are resolved
by the binder after the directives, except inside ``{{#sql}}`` bodies which
are bound per item.
"""

import hashlib
import re
import threading
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from jinja2 import Environment, StrictUndefined, Template, TemplateError, UndefinedError

from mysqltpl.core.errors import TemplateCompileError
from mysqltpl.engines.sql.binder import ParameterBinder, get_binder
from mysqltpl.engines.sql.filters import SqlSafe, make_finalize, make_helpers

_CACHE_MAX_SIZE = 512

_Compiled = tuple[Template, tuple[SqlSafe, ...]]

_TAG_RE = re.compile(
    r"\{\{(?P<open>~?)"
    r"(?:!--(?P<long_comment>.*?)--|!(?P<comment>.*?)|\{(?P<triple>.*?)\}|(?P<body>.*?))"
    r"(?P<close>~?)\}\}",
    re.DOTALL,
)
_ARG_RE = re.compile(r'"[^"]*"|\'[^\']*\'|\S+')
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
_DATA_VARS = {"@key": "key", "@index": "index", "@first": "first", "@last": "last"}
_LITERALS = {"true": "True", "false": "False", "null": "None", "undefined": "None"}

BLOCK_HELPERS = ("if", "unless", "each", "sql")
INLINE_HELPERS = {"sqlEscapeId": "_sqlEscapeId", "sqlEscape": "_sqlEscape"}


@dataclass
class _Frame:
    kind: str
    ctx: str | None = None
    ident: int = 0
    in_else: bool = False


def _jinja_str(s: str) -> str:
    return "'" + s.replace("\\", "\\\\").replace("'", "\\'") + "'"


class _Translator:
    """Directive source -> Jinja2 source."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.stack: list[_Frame] = [_Frame("root", ctx="_ctx0")]
        self.counter = 0
        # literal SQL never goes through the Jinja parser; it is emitted by index
        self.texts: list[str] = []

    # -- lexing ------------------------------------------------------------

    def _tokens(self) -> list[dict[str, Any]]:
        tokens: list[dict[str, Any]] = []
        pos = 0
        for m in _TAG_RE.finditer(self.source):
            tokens.append({"type": "text", "value": self.source[pos : m.start()]})
            if m.group("long_comment") is not None or m.group("comment") is not None:
                kind, body = "comment", ""
            elif m.group("triple") is not None:
                kind, body = "output", m.group("triple").strip()
            else:
                kind, body = "tag", m.group("body").strip()
            tokens.append(
                {
                    "type": kind,
                    "value": body,
                    "open": bool(m.group("open")),
                    "close": bool(m.group("close")),
                }
            )
            pos = m.end()
        tokens.append({"type": "text", "value": self.source[pos:]})

        # "~" strips every whitespace character on its side of the tag
        for i, tok in enumerate(tokens):
            if tok["type"] == "text":
                continue
            if tok["open"] and i > 0 and tokens[i - 1]["type"] == "text":
                tokens[i - 1]["value"] = tokens[i - 1]["value"].rstrip()
            if tok["close"] and i + 1 < len(tokens) and tokens[i + 1]["type"] == "text":
                tokens[i + 1]["value"] = tokens[i + 1]["value"].lstrip()
        return tokens

    # -- expressions -------------------------------------------------------

    def _context_frames(self) -> list[_Frame]:
        return [f for f in self.stack if f.ctx is not None and not f.in_else]

    def _each_frame(self, name: str) -> _Frame:
        for frame in reversed(self.stack):
            if frame.kind == "each" and not frame.in_else:
                return frame
        raise TemplateCompileError(f"{name} used outside of an #each block")

    def _expr(self, token: str) -> str:
        if token[0] in "\"'" and token[-1] == token[0] and len(token) >= 2:
            return _jinja_str(token[1:-1])
        if _NUMBER_RE.match(token):
            return token
        if token in _LITERALS:
            return _LITERALS[token]
        if token in _DATA_VARS:
            frame = self._each_frame(token)
            return f"_{_DATA_VARS[token]}{frame.ident}"

        frames = self._context_frames()
        if token.startswith("@root"):
            frames = frames[:1]
            token = token[len("@root") :].lstrip("./") or "this"
        while token.startswith("../"):
            if len(frames) > 1:
                frames = frames[:-1]
            token = token[3:]
        base = frames[-1].ctx

        segments = [s for s in re.split(r"[./]", token) if s]
        if segments and segments[0] == "this":
            segments = segments[1:]
        if not segments:
            return str(base)
        args = ", ".join(_jinja_str(s) for s in segments)
        return f"_lookup({base}, {args})"

    # -- tags --------------------------------------------------------------

    def _open_block(self, body: str) -> str:
        parts = _ARG_RE.findall(body)
        if not parts:
            raise TemplateCompileError("Empty block directive '{{#}}'")
        name, args = parts[0], parts[1:]
        if name not in BLOCK_HELPERS:
            raise TemplateCompileError(f"Unknown block directive '#{name}'")
        if len(args) != 1:
            raise TemplateCompileError(f"'#{name}' expects exactly one argument")
        expr = self._expr(args[0])

        if name == "if":
            self.stack.append(_Frame("if"))
            return f"{{% if _truthy({expr}) %}}"
        if name == "unless":
            self.stack.append(_Frame("unless"))
            return f"{{% if not _truthy({expr}) %}}"

        self.counter += 1
        n = self.counter
        if name == "each":
            self.stack.append(_Frame("each", ctx=f"_ctx{n}", ident=n))
            return (
                f"{{% for _key{n}, _ctx{n}, _index{n}, _first{n}, _last{n} "
                f"in _iterate({expr}) %}}"
            )
        self.stack.append(_Frame("sql", ctx=f"_ctx{n}", ident=n))
        return f"{{% call(_ctx{n}) _sql({expr}) %}}"

    def _close_block(self, name: str) -> str:
        frame = self.stack[-1]
        if frame.kind == "root":
            raise TemplateCompileError(f"'{{{{/{name}}}}}' closes a block that was never opened")
        if frame.kind != name:
            raise TemplateCompileError(
                f"'{{{{/{name}}}}}' does not match the open '#{frame.kind}' block"
            )
        self.stack.pop()
        if name == "each":
            return "{% endfor %}"
        if name == "sql":
            return "{% endcall %}"
        return "{% endif %}"

    def _else(self) -> str:
        frame = self.stack[-1]
        if frame.kind not in ("if", "unless", "each") or frame.in_else:
            raise TemplateCompileError("'{{else}}' outside of an #if, #unless or #each block")
        frame.in_else = True
        return "{% else %}"

    def _tag(self, body: str) -> str:
        if not body:
            raise TemplateCompileError("Empty directive '{{}}'")
        if body[0] == "#":
            return self._open_block(body[1:].strip())
        if body[0] == "/":
            return self._close_block(body[1:].strip())
        if body in ("else", "^"):
            return self._else()
        if body[0] in ">^&":
            raise TemplateCompileError(f"Unsupported directive '{{{{{body}}}}}'")

        parts = _ARG_RE.findall(body)
        if len(parts) == 1 and parts[0] not in INLINE_HELPERS:
            return f"{{{{ {self._expr(parts[0])} }}}}"
        helper, args = parts[0], parts[1:]
        if helper not in INLINE_HELPERS:
            raise TemplateCompileError(f"Unknown helper '{helper}'")
        if len(args) != 1:
            raise TemplateCompileError(f"'{helper}' expects exactly one argument")
        return f"{{{{ {INLINE_HELPERS[helper]}({self._expr(args[0])}) }}}}"

    def _text(self, text: str) -> str:
        if not text:
            return ""
        self.texts.append(text)
        return f"{{{{ _text[{len(self.texts) - 1}] }}}}"

    def translate(self) -> str:
        out: list[str] = []
        for tok in self._tokens():
            if tok["type"] == "text":
                out.append(self._text(tok["value"]))
            elif tok["type"] == "output":
                out.append(f"{{{{ {self._expr(tok['value'])} }}}}")
            elif tok["type"] == "tag":
                out.append(self._tag(tok["value"]))
        if len(self.stack) > 1:
            raise TemplateCompileError(f"Unclosed '#{self.stack[-1].kind}' block")
        return "".join(out)


def translate(template: str) -> str:
    """Translate directive syntax into Jinja2 source (exposed for debugging)."""
    return _Translator(template).translate()


class TemplateCompiler:
    """Compiles a query template against a parameter mapping into a SQL skeleton."""

    def __init__(self, binder: ParameterBinder | None = None) -> None:
        self._binder = binder or get_binder()
        self._env = Environment(
            autoescape=False,
            undefined=StrictUndefined,
            finalize=make_finalize(self._binder),
            keep_trailing_newline=True,
        )
        self._env.globals.update(make_helpers(self._binder))
        self._cache: OrderedDict[str, _Compiled] = OrderedDict()
        self._cache_lock = threading.Lock()

    def _compile_cached(self, source: str) -> _Compiled:
        key = hashlib.md5(source.encode(), usedforsecurity=False).hexdigest()
        with self._cache_lock:
            compiled = self._cache.get(key)
            if compiled is not None:
                self._cache.move_to_end(key)
                return compiled
        translator = _Translator(source)
        tpl = self._env.from_string(translator.translate())
        compiled = (tpl, tuple(SqlSafe(t) for t in translator.texts))
        with self._cache_lock:
            self._cache[key] = compiled
            if len(self._cache) > _CACHE_MAX_SIZE:
                self._cache.popitem(last=False)
        return compiled

    def compile(self, template: str, params: Mapping[str, Any]) -> str:
        """Resolve every directive of *template*; bind markers stay literal."""
        if not isinstance(params, Mapping):
            raise TemplateCompileError(
                f"Query parameters must be a mapping, got {type(params).__name__}"
            )
        try:
            tpl, texts = self._compile_cached(template)
            return tpl.render(_ctx0=params, _text=texts)
        except TemplateCompileError:
            raise
        except UndefinedError as e:
            raise TemplateCompileError(
                f"SQL template variable not found: {e}. "
                f"Available params: {list(params.keys())}."
            ) from e
        except TemplateError as e:
            snippet = template[:500] + "..." if len(template) > 500 else template
            raise TemplateCompileError(
                f"SQL template error: {e}. Template preview:\n{snippet}"
            ) from e


_default_compiler: TemplateCompiler | None = None
_default_lock = threading.Lock()


def get_compiler() -> TemplateCompiler:
    """Return the shared compiler built on the default MySQL binder."""
    global _default_compiler
    if _default_compiler is None:
        with _default_lock:
            if _default_compiler is None:
                _default_compiler = TemplateCompiler()
    return _default_compiler
