"""Structural duplication of template slides."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .capacity import PageBatch
from .model import (
    OWNED_RELATION_KINDS,
    REL_LAYOUT,
    ContentUnit,
    Document,
    DuplicationError,
    Element,
    IdentityCollisionError,
    Relation,
    Resource,
)

LOG = logging.getLogger("deckfill")


@dataclass(eq=False)
class Replica:
    unit: ContentUnit
    ordinal: int
    batches: Dict[str, PageBatch] = field(default_factory=dict)
    faults: List[str] = field(default_factory=list)

    @property
    def batch(self) -> Optional[PageBatch]:
        for batch in self.batches.values():
            return batch
        return None

    @property
    def offsets(self) -> Dict[str, int]:
        return {name: batch.start for name, batch in self.batches.items()}


@dataclass
class ReplicationResult:
    replicas: List[Replica]
    requested: int
    aborted: bool = False
    faults: List[str] = field(default_factory=list)


class _GraphCopier:
    """Copies one slide and the parts it owns into fresh objects.

    ``memo`` maps the identity of every source node already reached to its copy.
    A node met a second time is linked to that copy instead of being copied
    again, which is what stops notes -> slide -> notes style cycles.
    """

    def __init__(self, document: Document) -> None:
        self.document = document
        self.memo: Dict[int, Any] = {}
        self.faults: List[str] = []

    def copy_unit(self, source: ContentUnit, unit_id: int, name: str) -> ContentUnit:
        target = ContentUnit(unit_id=unit_id, name=name, attrs=dict(source.attrs))
        self.memo[id(source)] = target
        target.elements = [copy_element(el) for el in source.elements]
        dropped = set()
        for rel in source.relations:
            copied = self.copy_relation(rel, owner=source.name)
            if copied is None:
                dropped.add(rel.rel_id)
                continue
            target.relations.append(copied)
        if dropped:
            for el in target.elements:
                if el.rel_id in dropped:
                    el.rel_id = None
        return target

    def copy_relation(self, rel: Relation, owner: str) -> Optional[Relation]:
        if rel.external or rel.kind == REL_LAYOUT:
            return Relation(rel_id=rel.rel_id, kind=rel.kind, target=rel.target, external=rel.external)
        key = id(rel.target)
        if key in self.memo:
            return Relation(rel_id=rel.rel_id, kind=rel.kind, target=self.memo[key])
        if rel.kind in OWNED_RELATION_KINDS and isinstance(rel.target, Resource):
            try:
                copied = self.copy_resource(rel.target)
            except DuplicationError as exc:
                message = f"{owner}: {rel.kind} relation {rel.rel_id} omitted: {exc}"
                LOG.warning("Replica of %s", message)
                self.faults.append(message)
                return None
            return Relation(rel_id=rel.rel_id, kind=rel.kind, target=copied)
        # Anything else (other slides, shared parts) is linked, never descended into.
        return Relation(rel_id=rel.rel_id, kind=rel.kind, target=rel.target)

    def copy_resource(self, source: Resource) -> Resource:
        name = self.document.allocator.next_part_name(source.kind)
        try:
            copied = source.clone(name)
        except Exception as exc:
            raise DuplicationError(f"unable to copy {source.kind} {source.name}: {exc}") from exc
        self.memo[id(source)] = copied
        for rel in source.relations:
            child = self.copy_relation(rel, owner=source.name)
            if child is not None:
                copied.relations.append(child)
        return copied


def copy_element(source: Element) -> Element:
    return Element(
        element_id=source.element_id,
        tag=source.tag,
        name=source.name,
        runs=list(source.runs),
        x=source.x,
        y=source.y,
        width=source.width,
        height=source.height,
        hidden=source.hidden,
        fill_opacity=source.fill_opacity,
        rel_id=source.rel_id,
        attrs=dict(source.attrs),
        markup=source.markup,
        source_runs=list(source.source_runs if source.source_runs is not None else source.runs),
        remap_offsets=None,
    )


def _unique_unit_name(document: Document, base: str, ordinal: int) -> str:
    used = {unit.name for unit in document.units}
    candidate = f"{base}__{ordinal}"
    i = ordinal
    while candidate in used:
        i += 1
        candidate = f"{base}__{i}"
    return candidate


def duplicate_unit(document: Document, source: ContentUnit, unit_id: int, name: str) -> Tuple[ContentUnit, List[str]]:
    copier = _GraphCopier(document)
    unit = copier.copy_unit(source, unit_id, name)
    return unit, copier.faults


def replicate_unit(
    document: Document,
    template: ContentUnit,
    page_count: int,
    on_replica: Optional[Callable[[int, int, Replica], None]] = None,
) -> ReplicationResult:
    """Create ``page_count - 1`` copies of ``template`` right after it in the document."""
    requested = max(0, page_count - 1)
    result = ReplicationResult(replicas=[], requested=requested)
    if requested == 0:
        return result

    position = document.position(template)
    for ordinal in range(1, page_count):
        try:
            unit_id = document.allocator.next_unit_id()
        except IdentityCollisionError as exc:
            LOG.error("Replication of %s stopped at page %d: %s", template.name, ordinal + 1, exc)
            result.aborted = True
            result.faults.append(str(exc))
            break

        unit, faults = duplicate_unit(document, template, unit_id, _unique_unit_name(document, template.name, ordinal + 1))
        try:
            document.insert_unit(unit, position + ordinal)
        except IdentityCollisionError as exc:
            LOG.error("Replication of %s stopped at page %d: %s", template.name, ordinal + 1, exc)
            result.aborted = True
            result.faults.append(str(exc))
            break

        replica = Replica(unit=unit, ordinal=ordinal, faults=faults)
        result.replicas.append(replica)
        result.faults.extend(faults)
        if on_replica is not None:
            on_replica(ordinal, requested, replica)
    return result
