"""Index remapping and out-of-range suppression for replicated slides."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Tuple

from .capacity import PageBatch
from .model import OFFSCREEN_OFFSET, ContentUnit, Element
from .scanner import IndexReference, rewrite_indices, scan_element, scan_text

LOG = logging.getLogger("deckfill")

HIDDEN_MARKER = "data-deckfill-hidden"
ORIGINAL_SIZE_ATTR = "data-original-size"
ORIGINAL_OFFSET_ATTR = "data-original-offset"


def _effective_offsets(offsets: Mapping[str, int]) -> Dict[str, int]:
    return {name: int(value) for name, value in offsets.items() if value}


def _rewrite_runs(runs: List[str], offsets: Mapping[str, int]) -> List[str]:
    per_run = sum(len(scan_text(run)) for run in runs)
    joined = "".join(runs)
    if len(scan_text(joined)) != per_run:
        # A reference is split across runs; rewrite the joined text as one run.
        rewritten = rewrite_indices(joined, offsets)
        return [rewritten] if rewritten else []
    return [rewrite_indices(run, offsets) for run in runs]


def remap_element(element: Element, offsets: Mapping[str, int]) -> bool:
    wanted = _effective_offsets(offsets)
    applied = element.remap_offsets
    if applied == wanted:
        return False

    if element.source_runs is not None:
        new_runs = _rewrite_runs(element.source_runs, wanted) if wanted else list(element.source_runs)
    else:
        # No template snapshot: current runs carry ``applied``; shift by the difference.
        previous = applied or {}
        delta = {name: wanted.get(name, 0) - previous.get(name, 0) for name in set(wanted) | set(previous)}
        new_runs = _rewrite_runs(element.runs, delta)

    element.remap_offsets = wanted
    if new_runs == element.runs:
        return False
    element.runs = new_runs
    return True


def remap_unit(unit: ContentUnit, offsets: Mapping[str, int]) -> int:
    """Shift every collection reference on ``unit`` by its batch start.

    Each element is rewritten from its template runs, so the outcome depends
    only on the template text and ``offsets``; the applied offsets are tagged on
    the element and a repeated call with the same offsets changes nothing.
    """
    changed = 0
    for element in unit.iter_elements():
        if remap_element(element, offsets):
            changed += 1
    if changed:
        LOG.debug("Remapped %d element(s) on %s with offsets %s", changed, unit.name, dict(offsets))
    return changed


def out_of_range_references(element: Element, batches: Mapping[str, PageBatch]) -> List[IndexReference]:
    found = []
    for ref in scan_element(element):
        batch = batches.get(ref.collection)
        if batch is not None and batch.is_out_of_range(ref.index):
            found.append(ref)
    return found


def _clear_text(element: Element) -> None:
    element.set_text("")


def _collapse_size(element: Element) -> None:
    if ORIGINAL_SIZE_ATTR not in element.attrs and element.width is not None and element.height is not None:
        element.attrs[ORIGINAL_SIZE_ATTR] = f"{element.width},{element.height}"
    element.width = 1
    element.height = 1


def _move_offscreen(element: Element) -> None:
    if ORIGINAL_OFFSET_ATTR not in element.attrs and element.x is not None and element.y is not None:
        element.attrs[ORIGINAL_OFFSET_ATTR] = f"{element.x},{element.y}"
    element.x = OFFSCREEN_OFFSET
    element.y = OFFSCREEN_OFFSET


def _set_hidden(element: Element) -> None:
    element.hidden = True
    element.attrs[HIDDEN_MARKER] = "1"


def _set_transparent(element: Element) -> None:
    element.fill_opacity = 0.0


NEUTRALIZERS: Tuple[Tuple[str, Callable[[Element], None]], ...] = (
    ("clear-text", _clear_text),
    ("collapse-size", _collapse_size),
    ("move-offscreen", _move_offscreen),
    ("hidden-flag", _set_hidden),
    ("transparent-fill", _set_transparent),
)


def neutralize_element(element: Element) -> List[str]:
    """Apply every hiding mechanism; return the names of those that failed."""
    failed: List[str] = []
    for name, apply in NEUTRALIZERS:
        try:
            apply(element)
        except Exception as exc:
            LOG.warning("Unable to apply %s to element %s: %s", name, element.name or element.element_id, exc)
            failed.append(name)
    return failed


def restore_element(element: Element) -> None:
    """Undo the geometry and visibility changes made by ``neutralize_element`` (text stays cleared)."""
    size = element.attrs.pop(ORIGINAL_SIZE_ATTR, None)
    if size:
        width, height = size.split(",", 1)
        element.width, element.height = int(width), int(height)
    offset = element.attrs.pop(ORIGINAL_OFFSET_ATTR, None)
    if offset:
        x, y = offset.split(",", 1)
        element.x, element.y = int(x), int(y)
    element.attrs.pop(HIDDEN_MARKER, None)
    element.hidden = False
    element.fill_opacity = 1.0


@dataclass
class GuardResult:
    hidden: List[Element] = field(default_factory=list)
    exposed: List[Element] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


def guard_unit(unit: ContentUnit, batches: Mapping[str, PageBatch]) -> GuardResult:
    """Neutralize elements that address indices past the data of their batch."""
    result = GuardResult()
    if not batches:
        return result

    for element in unit.iter_elements():
        refs = out_of_range_references(element, batches)
        if not refs:
            continue
        LOG.debug(
            "Hiding element %s on %s: %s beyond available data",
            element.name or element.element_id,
            unit.name,
            ", ".join(ref.key for ref in refs),
        )
        failed = neutralize_element(element)
        result.hidden.append(element)
        result.failures.extend(f"{element.element_id}:{name}" for name in failed)

    for element in unit.iter_elements():
        if not element.hidden and out_of_range_references(element, batches):
            LOG.error("Element %s on %s still exposes out-of-range references", element.name or element.element_id, unit.name)
            result.exposed.append(element)

    if result.hidden:
        LOG.info("Hid %d element(s) on %s with references beyond available data", len(result.hidden), unit.name)
    return result
