"""Discovery and rewriting of indexed collection references in slide text.

A reference is ``name[index]`` with an optional ``.property.path``. It can show
up in three ways:

* inside an expression block, ``{{Items[0].Name}}`` or ``${Items[0].Name:,.2f}``;
* bare, e.g. as an argument written outside any block;
* wrapped in a function call, ``{{image(Items[1].Photo, 120)}}`` or
  ``image(Items[1].Photo)``.

Text is split into disjoint segments (expression blocks and the text between
them) and each segment is matched once with the same pattern, so a single
occurrence can never be reported twice.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .model import ContentUnit, Element

BLOCK_RE = re.compile(r"\$\{(?P<dollar>[^{}]*)\}|\{\{(?P<brace>(?:(?!\}\}).)*)\}\}", re.DOTALL)
REFERENCE_RE = re.compile(
    r"(?<![\w.])(?P<name>[A-Za-z_]\w*)\[(?P<index>\d+)\](?P<path>(?:\.[A-Za-z_]\w*)*)"
)


@dataclass(frozen=True)
class IndexReference:
    collection: str
    index: int
    path: Optional[str] = None
    fmt: Optional[str] = None
    inside_function: bool = False
    delimited: bool = False
    start: int = field(default=0, compare=False)
    end: int = field(default=0, compare=False)
    index_start: int = field(default=0, compare=False)
    index_end: int = field(default=0, compare=False)

    @property
    def key(self) -> str:
        return f"{self.collection}[{self.index}]"

    @property
    def full_key(self) -> str:
        return f"{self.key}.{self.path}" if self.path else self.key

    def shifted(self, offset: int) -> "IndexReference":
        return replace(self, index=self.index + offset)


@dataclass
class ElementReference:
    element: Element
    reference: IndexReference


def _paren_depths(body: str) -> List[int]:
    """Paren nesting depth before each character of ``body``, ignoring quoted text."""
    depths: List[int] = []
    depth = 0
    quote: Optional[str] = None
    for ch in body:
        depths.append(depth)
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1
    depths.append(depth)
    return depths


def _scan_segment(text: str, seg_start: int, seg_end: int, delimited: bool) -> List[IndexReference]:
    body = text[seg_start:seg_end]
    if "[" not in body:
        return []
    depths = _paren_depths(body)
    refs: List[IndexReference] = []
    for match in REFERENCE_RE.finditer(body):
        inside_function = depths[match.start()] > 0
        fmt = None
        if delimited and not inside_function and body[match.end() : match.end() + 1] == ":":
            fmt = body[match.end() + 1 :].strip() or None
        path = match.group("path")
        refs.append(
            IndexReference(
                collection=match.group("name"),
                index=int(match.group("index")),
                path=path[1:] if path else None,
                fmt=fmt,
                inside_function=inside_function,
                delimited=delimited,
                start=seg_start + match.start(),
                end=seg_start + match.end(),
                index_start=seg_start + match.start("index"),
                index_end=seg_start + match.end("index"),
            )
        )
    return refs


def _segments(text: str) -> Iterable[Tuple[int, int, bool]]:
    cursor = 0
    for block in BLOCK_RE.finditer(text):
        if block.start() > cursor:
            yield cursor, block.start(), False
        group = "dollar" if block.group("dollar") is not None else "brace"
        yield block.start(group), block.end(group), True
        cursor = block.end()
    if cursor < len(text):
        yield cursor, len(text), False


def scan_text(text: Optional[str]) -> List[IndexReference]:
    if not text or "[" not in text:
        return []
    refs: List[IndexReference] = []
    for seg_start, seg_end, delimited in _segments(text):
        refs.extend(_scan_segment(text, seg_start, seg_end, delimited))
    return refs


def scan_element(element: Element) -> List[IndexReference]:
    return scan_text(element.get_text())


def scan_unit(unit: ContentUnit) -> List[ElementReference]:
    found: List[ElementReference] = []
    for element in unit.iter_elements():
        for ref in scan_element(element):
            found.append(ElementReference(element=element, reference=ref))
    return found


def group_by_collection(refs: Iterable[IndexReference]) -> Dict[str, List[IndexReference]]:
    grouped: Dict[str, List[IndexReference]] = {}
    for ref in refs:
        grouped.setdefault(ref.collection, []).append(ref)
    return grouped


def max_index_by_collection(refs: Iterable[IndexReference]) -> Dict[str, int]:
    return {name: max(r.index for r in group) for name, group in group_by_collection(refs).items()}


def rewrite_indices(text: str, offsets: Mapping[str, int]) -> str:
    """Return ``text`` with every reference to a collection in ``offsets`` shifted.

    Pure: the result depends only on ``text`` and ``offsets``. Property paths,
    format specs and surrounding text are left untouched.
    """
    if not text or not offsets or not any(offsets.values()):
        return text
    parts: List[str] = []
    cursor = 0
    for ref in scan_text(text):
        offset = offsets.get(ref.collection, 0)
        if not offset:
            continue
        parts.append(text[cursor : ref.index_start])
        parts.append(str(ref.index + offset))
        cursor = ref.index_end
    if not parts:
        return text
    parts.append(text[cursor:])
    return "".join(parts)


def contains_references(text: Optional[str], collection: Optional[str] = None) -> bool:
    refs = scan_text(text)
    if collection is None:
        return bool(refs)
    return any(ref.collection == collection for ref in refs)
