"""Items-per-page and page-count estimation for collection-bound slides."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from .scanner import IndexReference

LOG = logging.getLogger("deckfill")

DEFAULT_ITEMS_PER_PAGE_CEILING = 100
DEFAULT_MAX_PAGES_FROM_TEMPLATE = 100


@dataclass(frozen=True)
class PageBatch:
    ordinal: int
    start: int
    items_per_page: int
    available: int
    total: int

    @property
    def end(self) -> int:
        """Last global index covered by real data, ``start - 1`` for an empty batch."""
        return self.start + self.available - 1

    @property
    def size(self) -> int:
        return self.available

    def is_out_of_range(self, index: int) -> bool:
        return index >= self.start + self.available

    def to_dict(self) -> Dict[str, int]:
        return {
            "index": self.ordinal,
            "start": self.start,
            "end": self.end,
            "size": self.size,
            "items_per_page": self.items_per_page,
            "total": self.total,
        }


def make_batch(ordinal: int, items_per_page: int, total: int) -> PageBatch:
    start = ordinal * items_per_page
    available = max(0, min(total - start, items_per_page))
    return PageBatch(ordinal=ordinal, start=start, items_per_page=items_per_page, available=available, total=total)


@dataclass
class CapacityPlan:
    collection: str
    length: int
    items_per_page: int
    page_count: int
    required_pages: int
    clamped: bool = False
    truncated: bool = False

    @property
    def replicate(self) -> bool:
        return self.page_count > 1

    def batch(self, ordinal: int) -> PageBatch:
        return make_batch(ordinal, self.items_per_page, self.length)

    def batches(self) -> List[PageBatch]:
        return [self.batch(ordinal) for ordinal in range(self.page_count)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "length": self.length,
            "items_per_page": self.items_per_page,
            "page_count": self.page_count,
            "required_pages": self.required_pages,
            "clamped": self.clamped,
            "truncated": self.truncated,
        }


def estimate_capacity(
    collection: str,
    references: Iterable[IndexReference],
    length: int,
    *,
    items_per_page_ceiling: int = DEFAULT_ITEMS_PER_PAGE_CEILING,
    max_pages: int = DEFAULT_MAX_PAGES_FROM_TEMPLATE,
) -> CapacityPlan:
    indices = [ref.index for ref in references]
    if not indices:
        raise ValueError(f"No references to estimate capacity for collection {collection!r}")
    length = max(0, int(length))
    ceiling = max(1, int(items_per_page_ceiling))
    max_pages = max(1, int(max_pages))

    items_per_page = max(indices) + 1
    clamped = False
    if items_per_page > ceiling:
        LOG.warning(
            "Collection %s: highest index %d exceeds the items-per-page ceiling %d; clamping "
            "(check the slide for a reference that is not meant as a page slot)",
            collection,
            items_per_page - 1,
            ceiling,
        )
        items_per_page = ceiling
        clamped = True

    if length <= items_per_page:
        return CapacityPlan(
            collection=collection,
            length=length,
            items_per_page=items_per_page,
            page_count=1,
            required_pages=1,
            clamped=clamped,
        )

    required = math.ceil(length / items_per_page)
    page_count = min(required, max_pages)
    truncated = page_count < required
    if truncated:
        LOG.warning(
            "Collection %s needs %d pages of %d items; truncated to %d pages (%d of %d items rendered)",
            collection,
            required,
            items_per_page,
            page_count,
            page_count * items_per_page,
            length,
        )
    return CapacityPlan(
        collection=collection,
        length=length,
        items_per_page=items_per_page,
        page_count=page_count,
        required_pages=required,
        clamped=clamped,
        truncated=truncated,
    )
