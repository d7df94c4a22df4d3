"""Read and write HTML slide decks (one ``<section>`` per slide)."""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from .model import (
    REL_HYPERLINK,
    REL_IMAGE,
    REL_LAYOUT,
    REL_NOTES,
    REL_UNIT,
    ContentUnit,
    Document,
    Element,
    IdentityAllocator,
    Layout,
    Relation,
    Resource,
)

LOG = logging.getLogger("deckfill")

SLIDES_MARKER = "deckfill:slides"
GEOMETRY_KEYS = ("left", "top", "width", "height")


@dataclass
class DeckContainer:
    soup: Any


def _require_bs4():
    try:
        from bs4 import BeautifulSoup, Comment  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc
    return BeautifulSoup, Comment


def _parse_px(value: str) -> Optional[int]:
    match = re.match(r"^\s*(-?\d+(?:\.\d+)?)\s*(?:px)?\s*$", value or "")
    if not match:
        return None
    return int(round(float(match.group(1))))


def parse_style(style: str) -> Tuple[Dict[str, int], Optional[float], bool, List[str]]:
    """Split an inline style into geometry (px), opacity, visibility and the untouched declarations."""
    geometry: Dict[str, int] = {}
    opacity: Optional[float] = None
    hidden = False
    rest: List[str] = []
    for decl in (style or "").split(";"):
        if ":" not in decl:
            continue
        key, value = decl.split(":", 1)
        key = key.strip().lower()
        value = value.strip()
        if key in GEOMETRY_KEYS and _parse_px(value) is not None:
            geometry[key] = _parse_px(value)  # type: ignore[assignment]
        elif key == "opacity":
            try:
                opacity = float(value)
            except ValueError:
                rest.append(f"{key}:{value}")
        elif key == "visibility" and value.lower() == "hidden":
            hidden = True
        else:
            rest.append(f"{key}:{value}")
    return geometry, opacity, hidden, rest


def render_style(element: Element, rest: str) -> str:
    decls = [d for d in (rest or "").split(";") if d.strip()]
    for key, value in (("left", element.x), ("top", element.y), ("width", element.width), ("height", element.height)):
        if value is not None:
            decls.append(f"{key}:{value}px")
    if element.fill_opacity != 1.0:
        decls.append(f"opacity:{element.fill_opacity:g}")
    if element.hidden:
        decls.append("visibility:hidden")
    return ";".join(decls)


def _slide_sections(soup) -> List[Any]:
    return [s for s in soup.find_all("section") if s.find_parent("section") is None]


def _text_nodes(node) -> List[Any]:
    """Text nodes under ``node`` in document order; comments, CDATA and doctypes are skipped."""
    from bs4.element import PreformattedString  # type: ignore

    return [s for s in node.find_all(string=True) if not isinstance(s, PreformattedString)]


def _element_from_tag(tag, element_id: int) -> Element:
    attrs: Dict[str, str] = {}
    for key, value in tag.attrs.items():
        if isinstance(value, list):
            value = " ".join(value)
        attrs[key] = value
    geometry, opacity, style_hidden, rest = parse_style(attrs.pop("style", ""))
    if rest:
        attrs["style"] = ";".join(rest)
    hidden = attrs.pop("hidden", None) is not None or style_hidden
    name = attrs.get("data-name") or attrs.get("id") or f"{tag.name}-{element_id}"
    markup = "".join(str(child) for child in tag.contents)
    runs = [str(node) for node in _text_nodes(tag)]
    return Element(
        element_id=element_id,
        tag=tag.name,
        name=name,
        runs=runs,
        x=geometry.get("left"),
        y=geometry.get("top"),
        width=geometry.get("width"),
        height=geometry.get("height"),
        hidden=hidden,
        fill_opacity=1.0 if opacity is None else opacity,
        attrs=attrs,
        markup=markup,
    )


def _section_to_unit(section, unit_id: int, index: int, allocator: IdentityAllocator, layouts: Dict[str, Layout]) -> ContentUnit:
    attrs: Dict[str, str] = {}
    for key, value in section.attrs.items():
        attrs[key] = " ".join(value) if isinstance(value, list) else value
    name = attrs.pop("id", None) or f"slide-{index + 1}"
    attrs.pop("data-slide-id", None)
    layout_name = attrs.pop("data-layout", None)
    unit = ContentUnit(unit_id=unit_id, name=name, attrs=attrs)

    if layout_name:
        layout = layouts.setdefault(layout_name, Layout(layout_name))
        unit.relations.append(Relation(rel_id=unit.next_rel_id(), kind=REL_LAYOUT, target=layout))

    for tag in section.find_all(recursive=False):
        classes = tag.get("class") or []
        if tag.name == "aside" and "notes" in classes:
            notes = Resource(name=allocator.next_part_name("notes"), kind="notes", data=tag.get_text())
            notes.relations.append(Relation(rel_id="rId1", kind=REL_UNIT, target=unit))
            unit.relations.append(Relation(rel_id=unit.next_rel_id(), kind=REL_NOTES, target=notes))
            continue

        element = _element_from_tag(tag, unit.next_element_id())
        if tag.name == "img":
            src = element.attrs.pop("src", "")
            image = Resource(name=allocator.next_part_name("image"), kind="image", data=src)
            rel = Relation(rel_id=unit.next_rel_id(), kind=REL_IMAGE, target=image)
            unit.relations.append(rel)
            element.rel_id = rel.rel_id
        elif tag.name == "a" and element.attrs.get("href"):
            href = element.attrs.pop("href")
            rel = Relation(rel_id=unit.next_rel_id(), kind=REL_HYPERLINK, target=href, external=True)
            unit.relations.append(rel)
            element.rel_id = rel.rel_id
        unit.elements.append(element)
    return unit


def parse_deck(html: str) -> Document:
    BeautifulSoup, Comment = _require_bs4()
    soup = BeautifulSoup(html, "html.parser")
    sections = _slide_sections(soup)
    allocator = IdentityAllocator()

    explicit: Dict[int, int] = {}
    for i, section in enumerate(sections):
        raw = section.get("data-slide-id")
        if raw is not None and str(raw).isdigit():
            allocator.reserve_unit_id(int(raw))
            explicit[i] = int(raw)

    layouts: Dict[str, Layout] = {}
    units: List[ContentUnit] = []
    for i, section in enumerate(sections):
        unit_id = explicit[i] if i in explicit else allocator.next_unit_id()
        units.append(_section_to_unit(section, unit_id, i, allocator, layouts))

    if sections:
        sections[0].insert_before(Comment(SLIDES_MARKER))
        for section in sections:
            section.extract()
    else:
        body = soup.body if soup.body is not None else soup
        body.append(Comment(SLIDES_MARKER))

    LOG.info("Loaded deck with %d slide(s)", len(units))
    return Document(units=units, allocator=allocator, container=DeckContainer(soup=soup))


def load_deck(path: Path) -> Document:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise RuntimeError(f"Unable to read template deck {path}: {exc}") from exc
    return parse_deck(raw)


def _unique_id(value: str, used: Set[str]) -> str:
    candidate = value
    i = 1
    while candidate in used:
        candidate = f"{value}__{i}"
        i += 1
    used.add(candidate)
    return candidate


def _write_runs(tag, element: Element) -> None:
    """Put ``element.runs`` back into the text nodes of its markup, keeping the tags around them."""
    BeautifulSoup, _ = _require_bs4()
    if element.markup is None:
        if element.runs:
            tag.string = element.get_text()
        return

    fragment = BeautifulSoup(element.markup, "html.parser")
    nodes = _text_nodes(fragment)
    if len(element.runs) == len(nodes):
        values = list(element.runs)
    else:
        # Runs were joined or cleared; the first text node carries the whole text.
        values = [element.get_text()] + [""] * (len(nodes) - 1)
    for node, value in zip(nodes, values):
        if value != str(node):
            node.replace_with(value)
    if not nodes and element.runs:
        fragment.append(element.get_text())
    for child in list(fragment.contents):
        tag.append(child.extract())


def _render_element(soup, unit: ContentUnit, element: Element, used_ids: Set[str]):
    tag = soup.new_tag(element.tag)
    for key, value in element.attrs.items():
        if key == "style":
            continue
        tag[key] = _unique_id(value, used_ids) if key == "id" else value
    style = render_style(element, element.attrs.get("style", ""))
    if style:
        tag["style"] = style
    if element.hidden:
        tag["hidden"] = ""

    rel = unit.relation(element.rel_id) if element.rel_id else None
    if element.tag == "img":
        if rel is not None and isinstance(rel.target, Resource):
            tag["src"] = rel.target.data or ""
        return tag
    if element.tag == "a" and rel is not None and rel.external:
        tag["href"] = rel.target

    _write_runs(tag, element)
    return tag


def _render_unit(soup, unit: ContentUnit, used_ids: Set[str]):
    section = soup.new_tag("section")
    section["id"] = _unique_id(unit.name, used_ids)
    section["data-slide-id"] = str(unit.unit_id)
    for key, value in unit.attrs.items():
        section[key] = value
    for rel in unit.related(REL_LAYOUT):
        section["data-layout"] = rel.target.name
    for element in unit.elements:
        section.append(_render_element(soup, unit, element, used_ids))
    for rel in unit.related(REL_NOTES):
        aside = soup.new_tag("aside")
        aside["class"] = "notes"
        aside.string = str(rel.target.data or "")
        section.append(aside)
    return section


def render_deck(document: Document) -> str:
    BeautifulSoup, Comment = _require_bs4()
    container = document.container
    if isinstance(container, DeckContainer):
        soup = copy.copy(container.soup)
    else:
        soup = BeautifulSoup("<html><body></body></html>", "html.parser")
        soup.body.append(Comment(SLIDES_MARKER))

    marker = soup.find(string=lambda s: isinstance(s, Comment) and s.strip() == SLIDES_MARKER)
    used_ids: Set[str] = set()
    for unit in document.units:
        section = _render_unit(soup, unit, used_ids)
        if marker is not None:
            marker.insert_before(section)
        else:
            (soup.body or soup).append(section)
    if marker is not None:
        marker.extract()
    return str(soup)


def save_deck(document: Document, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_deck(document), encoding="utf-8", newline="\n")
