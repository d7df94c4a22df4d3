"""In-memory slide deck model shared by the replication pipeline."""

from __future__ import annotations

import copy
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

LOG = logging.getLogger("deckfill")

OFFSCREEN_OFFSET = -10_000_000
MIN_UNIT_ID = 256
MAX_UNIT_ID = 2_147_483_647

REL_LAYOUT = "layout"
REL_IMAGE = "image"
REL_NOTES = "notes"
REL_HYPERLINK = "hyperlink"
REL_UNIT = "unit"

# Relation kinds whose targets belong to the unit and are cloned with it.
OWNED_RELATION_KINDS = frozenset({REL_IMAGE, REL_NOTES})

_PART_NAME_RE = re.compile(r"^(?P<kind>[A-Za-z_]+?)(?P<number>\d+)$")


class IdentityCollisionError(RuntimeError):
    """No unique unit ID or insert position is left for a new slide."""


class DuplicationError(RuntimeError):
    """A resource could not be copied into a replica."""


@dataclass(frozen=True)
class Layout:
    name: str


@dataclass(eq=False)
class Resource:
    name: str
    kind: str
    data: Any = None
    relations: List["Relation"] = field(default_factory=list)

    def clone(self, name: str) -> "Resource":
        return Resource(name=name, kind=self.kind, data=copy.deepcopy(self.data))


@dataclass(eq=False)
class Relation:
    rel_id: str
    kind: str
    target: Any
    external: bool = False


@dataclass(eq=False)
class Element:
    element_id: int
    tag: str = "p"
    name: str = ""
    runs: List[str] = field(default_factory=list)
    x: Optional[int] = None
    y: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    hidden: bool = False
    fill_opacity: float = 1.0
    rel_id: Optional[str] = None
    attrs: Dict[str, str] = field(default_factory=dict)
    # Inner markup of the source node; runs are its text nodes in document order.
    markup: Optional[str] = None
    # Template runs captured when the element was copied into a replica.
    source_runs: Optional[List[str]] = None
    # Offsets last applied by the remapper, keyed by collection name.
    remap_offsets: Optional[Dict[str, int]] = None

    def get_text(self) -> str:
        return "".join(self.runs)

    def set_text(self, text: str) -> None:
        self.runs = [text] if text else []


@dataclass(eq=False)
class ContentUnit:
    unit_id: int
    name: str = ""
    elements: List[Element] = field(default_factory=list)
    relations: List[Relation] = field(default_factory=list)
    attrs: Dict[str, str] = field(default_factory=dict)

    def iter_elements(self) -> Iterator[Element]:
        return iter(self.elements)

    def relation(self, rel_id: str) -> Optional[Relation]:
        for rel in self.relations:
            if rel.rel_id == rel_id:
                return rel
        return None

    def related(self, kind: str) -> List[Relation]:
        return [rel for rel in self.relations if rel.kind == kind]

    def next_rel_id(self) -> str:
        used = {rel.rel_id for rel in self.relations}
        i = len(used) + 1
        while f"rId{i}" in used:
            i += 1
        return f"rId{i}"

    def next_element_id(self) -> int:
        return max((el.element_id for el in self.elements), default=0) + 1


class IdentityAllocator:
    """Hands out unit IDs and part names; the one serialized point of a document."""

    def __init__(self, max_unit_id: int = MAX_UNIT_ID) -> None:
        self._lock = threading.Lock()
        self._max_unit_id = max_unit_id
        self._unit_ids: set = set()
        self._next_unit_id = MIN_UNIT_ID
        self._part_names: set = set()
        self._part_counters: Dict[str, int] = {}

    def reserve_unit_id(self, unit_id: int) -> None:
        with self._lock:
            if unit_id in self._unit_ids:
                raise IdentityCollisionError(f"Unit ID already in use: {unit_id}")
            self._unit_ids.add(unit_id)
            if unit_id >= self._next_unit_id:
                self._next_unit_id = unit_id + 1

    def next_unit_id(self) -> int:
        with self._lock:
            candidate = self._next_unit_id
            while candidate in self._unit_ids:
                candidate += 1
            if candidate > self._max_unit_id:
                raise IdentityCollisionError(
                    f"No free unit ID left (limit {self._max_unit_id}, {len(self._unit_ids)} in use)"
                )
            self._unit_ids.add(candidate)
            self._next_unit_id = candidate + 1
            return candidate

    def reserve_part_name(self, name: str) -> None:
        with self._lock:
            self._part_names.add(name)
            match = _PART_NAME_RE.match(name)
            if match:
                kind = match.group("kind")
                number = int(match.group("number"))
                if number > self._part_counters.get(kind, 0):
                    self._part_counters[kind] = number

    def next_part_name(self, kind: str) -> str:
        with self._lock:
            number = self._part_counters.get(kind, 0) + 1
            while f"{kind}{number}" in self._part_names:
                number += 1
            name = f"{kind}{number}"
            self._part_counters[kind] = number
            self._part_names.add(name)
            return name


@dataclass(eq=False)
class Document:
    units: List[ContentUnit] = field(default_factory=list)
    allocator: IdentityAllocator = field(default_factory=IdentityAllocator)
    # Container specific state kept for write-back (e.g. the parsed page around the slides).
    container: Any = None

    @classmethod
    def from_units(cls, units: Iterable[ContentUnit], allocator: Optional[IdentityAllocator] = None) -> "Document":
        doc = cls(units=[], allocator=allocator or IdentityAllocator())
        for unit in units:
            doc.allocator.reserve_unit_id(unit.unit_id)
            for resource in iter_resources(unit):
                doc.allocator.reserve_part_name(resource.name)
            doc.units.append(unit)
        return doc

    def position(self, unit: ContentUnit) -> int:
        for i, candidate in enumerate(self.units):
            if candidate is unit:
                return i
        raise ValueError(f"Unit {unit.unit_id} is not part of this document")

    def insert_unit(self, unit: ContentUnit, position: int) -> None:
        if position < 0 or position > len(self.units):
            raise IdentityCollisionError(f"Insert position out of range: {position}")
        if any(existing.unit_id == unit.unit_id for existing in self.units):
            raise IdentityCollisionError(f"Unit ID already present in document: {unit.unit_id}")
        self.units.insert(position, unit)


def iter_resources(unit: ContentUnit) -> Iterator[Resource]:
    for rel in unit.relations:
        if not rel.external and isinstance(rel.target, Resource):
            yield rel.target
