"""Default expression evaluator for ``{{...}}`` and ``${...}`` blocks.

Supported block bodies:

* ``name``, ``name.path``, ``name[3]``, ``name[3].path`` with an optional
  ``:format`` suffix passed to :func:`format`;
* ``func(arg, ...)`` / ``ns.func(arg, key: value)`` calls into the function
  table, arguments being references, quoted strings or numbers.

``None`` renders as an empty string. A block whose root name is not in the
context, or that calls an unknown function, is left in place.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from .scanner import BLOCK_RE

LOG = logging.getLogger("deckfill")

CALL_RE = re.compile(r"^(?P<func>[A-Za-z_][\w.]*)\s*\((?P<args>.*)\)\s*(?::(?P<fmt>.*))?$", re.DOTALL)
VALUE_RE = re.compile(
    r"^(?P<root>[A-Za-z_]\w*(?:\[\d+\])?)(?P<path>(?:\.[A-Za-z_]\w*)*)\s*(?::(?P<fmt>.*))?$", re.DOTALL
)
KWARG_RE = re.compile(r"^(?P<key>[A-Za-z_]\w*)\s*[:=]\s*(?P<value>.+)$", re.DOTALL)
NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


class Evaluator(Protocol):
    def evaluate(self, text: str, context: Mapping[str, Any]) -> str:
        ...


class Unresolved(Exception):
    """Raised internally when a block cannot be rendered and must stay verbatim."""


def contains_expressions(text: Optional[str]) -> bool:
    return bool(text) and BLOCK_RE.search(text) is not None


def _image(src: Any, width: Any = None, height: Any = None, **_: Any) -> Any:
    return src


def _default(value: Any, fallback: Any = "") -> Any:
    return fallback if value is None or value == "" else value


def _join(values: Any, sep: str = ", ") -> str:
    if values is None:
        return ""
    if isinstance(values, (list, tuple)):
        return str(sep).join("" if v is None else str(v) for v in values)
    return str(values)


def _upper(value: Any) -> Any:
    return None if value is None else str(value).upper()


def _lower(value: Any) -> Any:
    return None if value is None else str(value).lower()


def _format(value: Any, spec: str = "") -> str:
    return format_value(value, spec)


BUILTIN_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "image": _image,
    "default": _default,
    "join": _join,
    "upper": _upper,
    "lower": _lower,
    "format": _format,
}


def format_value(value: Any, fmt: Optional[str]) -> str:
    if value is None:
        return ""
    if fmt:
        try:
            return format(value, fmt)
        except (ValueError, TypeError):
            LOG.debug("Format spec %r not applicable to %r; using plain text", fmt, value)
    return str(value)


def _split_args(raw: str) -> List[str]:
    args: List[str] = []
    depth = 0
    quote: Optional[str] = None
    current: List[str] = []
    for ch in raw:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]" and depth > 0:
            depth -= 1
        elif ch == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail or args:
        args.append(tail)
    return args


def lookup(context: Mapping[str, Any], expression: str) -> Any:
    """Resolve ``root[.path]`` against ``context``; raise :class:`Unresolved` for an unknown root."""
    if expression in context:
        return context[expression]
    match = VALUE_RE.match(expression)
    if not match or match.group("fmt") is not None:
        raise Unresolved(expression)
    root = match.group("root")
    if root not in context:
        raise Unresolved(expression)
    value = context[root]
    path = match.group("path")
    for attr in path.split(".")[1:] if path else []:
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(attr)
        else:
            value = getattr(value, attr, None)
    return value


class DefaultEvaluator:
    def __init__(self, functions: Optional[Mapping[str, Callable[..., Any]]] = None) -> None:
        self.functions: Dict[str, Callable[..., Any]] = dict(BUILTIN_FUNCTIONS)
        if functions:
            self.functions.update({name.lower(): fn for name, fn in functions.items()})

    def evaluate(self, text: str, context: Mapping[str, Any]) -> str:
        if not contains_expressions(text):
            return text
        return BLOCK_RE.sub(lambda m: self._render_block(m, context), text)

    def _render_block(self, match: "re.Match[str]", context: Mapping[str, Any]) -> str:
        body = match.group("dollar") if match.group("dollar") is not None else match.group("brace")
        body = body.strip()
        try:
            return self.evaluate_expression(body, context)
        except Unresolved:
            return match.group(0)

    def evaluate_expression(self, body: str, context: Mapping[str, Any]) -> str:
        call = CALL_RE.match(body)
        if call:
            value = self._call(call.group("func"), call.group("args"), context)
            return format_value(value, call.group("fmt"))
        match = VALUE_RE.match(body)
        if not match:
            raise Unresolved(body)
        expression = match.group("root") + match.group("path")
        return format_value(lookup(context, expression), match.group("fmt"))

    def _call(self, func_name: str, raw_args: str, context: Mapping[str, Any]) -> Any:
        func = self.functions.get(func_name.split(".")[-1].lower())
        if func is None:
            raise Unresolved(func_name)
        args, kwargs = self._parse_args(raw_args, context)
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            LOG.warning("Function %s failed: %s", func_name, exc)
            raise Unresolved(func_name) from exc

    def _parse_args(self, raw_args: str, context: Mapping[str, Any]) -> Tuple[List[Any], Dict[str, Any]]:
        args: List[Any] = []
        kwargs: Dict[str, Any] = {}
        for raw in _split_args(raw_args):
            kwarg = KWARG_RE.match(raw)
            if kwarg and not raw.startswith(("'", '"')):
                kwargs[kwarg.group("key")] = self._argument(kwarg.group("value").strip(), context)
            else:
                args.append(self._argument(raw, context))
        return args, kwargs

    def _argument(self, raw: str, context: Mapping[str, Any]) -> Any:
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
            return raw[1:-1]
        if NUMBER_RE.match(raw):
            return float(raw) if "." in raw else int(raw)
        if raw in {"true", "false"}:
            return raw == "true"
        if raw in {"null", "None", ""}:
            return None
        try:
            return lookup(context, raw)
        except Unresolved:
            return None
