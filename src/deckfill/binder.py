"""Per-page variable contexts and expression substitution."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from .capacity import PageBatch
from .evaluator import Evaluator, contains_expressions
from .model import ContentUnit, Element
from .scanner import BLOCK_RE

LOG = logging.getLogger("deckfill")


def item_properties(item: Any) -> Dict[str, Any]:
    """Top-level fields of a data item, used for ``name[i].field`` shortcuts."""
    if item is None or isinstance(item, (str, bytes, int, float, bool)):
        return {}
    if isinstance(item, Mapping):
        return {str(key): value for key, value in item.items()}
    if dataclasses.is_dataclass(item) and not isinstance(item, type):
        return {f.name: getattr(item, f.name) for f in dataclasses.fields(item)}
    try:
        attrs = vars(item)
    except TypeError:
        return {}
    return {key: value for key, value in attrs.items() if not key.startswith("_")}


def batch_metadata(batch: PageBatch) -> Dict[str, int]:
    return {
        "_batch_index": batch.ordinal,
        "_batch_start": batch.start,
        "_batch_end": batch.end,
        "_batch_size": batch.size,
        "_total_items": batch.total,
    }


def _bind_item(context: Dict[str, Any], key: str, item: Any) -> None:
    context[key] = item
    for prop, value in item_properties(item).items():
        context[f"{key}.{prop}"] = value


def build_context(
    batches: Mapping[str, PageBatch],
    collections: Mapping[str, Sequence[Any]],
    variables: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a fresh variable map for one page.

    Both the page-local key ``name[i]`` and the remapped key ``name[start + i]``
    point at item ``start + i``; slots past the end of the data hold ``None``.
    """
    context: Dict[str, Any] = {
        key: value for key, value in (variables or {}).items() if key not in batches
    }
    all_batches: Dict[str, Dict[str, int]] = {}
    for name, batch in batches.items():
        items = collections.get(name) or []
        for i in range(batch.items_per_page):
            global_index = batch.start + i
            item = items[global_index] if global_index < len(items) else None
            _bind_item(context, f"{name}[{i}]", item)
            if global_index != i:
                _bind_item(context, f"{name}[{global_index}]", item)
        all_batches[name] = batch_metadata(batch)
    for batch in batches.values():
        context.update(batch_metadata(batch))
        break
    context["_batches"] = all_batches
    return context


def _crosses_runs(runs: Sequence[str]) -> bool:
    per_run = sum(len(BLOCK_RE.findall(run)) for run in runs)
    return len(BLOCK_RE.findall("".join(runs))) != per_run


def bind_element(element: Element, context: Mapping[str, Any], evaluator: Evaluator) -> bool:
    runs = list(element.runs)
    if not runs:
        return False
    if _crosses_runs(runs):
        text = element.get_text()
        rendered = evaluator.evaluate(text, context)
        if rendered == text:
            return False
        element.set_text(rendered)
        return True

    rendered_runs = [evaluator.evaluate(run, context) if contains_expressions(run) else run for run in runs]
    if rendered_runs == runs:
        return False
    if len(rendered_runs) == 1:
        element.set_text(rendered_runs[0])
    else:
        element.runs = rendered_runs
    return True


def bind_unit(unit: ContentUnit, context: Mapping[str, Any], evaluator: Evaluator) -> int:
    changed = 0
    for element in unit.iter_elements():
        if bind_element(element, context, evaluator):
            changed += 1
    LOG.debug("Bound %d element(s) on %s", changed, unit.name)
    return changed
