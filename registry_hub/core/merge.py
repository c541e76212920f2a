"""Merging of per-source records into one record per registry identifier.

Records are visited in a fixed source-priority order, so the outcome does
not depend on which source answered first:

1. The first record seen for a registry identifier is kept as the base
2. Scalar fields missing from the base are filled from later records
3. Detail collections (establishments, announcements, documents) are
   unioned by their own identifier
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from registry_hub.core.data_models import (
    MERGEABLE_FIELDS,
    CompanyRecord,
    SourceResult,
    is_present,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY: Sequence[str] = ("local", "sirene", "rne", "bodacc")

_COLLECTION_KEYS = {
    "establishments": "establishment_id",
    "announcements": "announcement_id",
    "documents": "reference",
}


class RecordMerger:
    """Deduplicates records by registry identifier."""

    def __init__(self, priority: Optional[Sequence[str]] = None) -> None:
        """Initialize the merger.

        Args:
            priority: Source names, highest priority first
        """
        self.priority = list(priority or DEFAULT_PRIORITY)
        self.logger = logging.getLogger(self.__class__.__name__)

    def order(self, sources: Iterable[str]) -> List[str]:
        """Sort source names by priority; unknown sources go last, by name."""
        rank = {name: index for index, name in enumerate(self.priority)}
        return sorted(sources, key=lambda name: (rank.get(name, len(rank)), name))

    def merge(self, results: Iterable[SourceResult]) -> List[CompanyRecord]:
        """Merge the records of all results.

        Args:
            results: Source results, in any order

        Returns:
            One record per registry identifier, in merge order
        """
        by_source: Dict[str, SourceResult] = {result.source: result for result in results}

        merged: Dict[str, CompanyRecord] = {}
        seen = 0
        for source in self.order(by_source):
            for record in by_source[source].records:
                seen += 1
                existing = merged.get(record.registry_id)
                if existing is None:
                    merged[record.registry_id] = self._adopt(record, source)
                else:
                    self._fill(existing, record, source)

        if seen != len(merged):
            self.logger.debug("Merged %d records into %d unique records", seen, len(merged))
        return list(merged.values())

    def _adopt(self, record: CompanyRecord, source: str) -> CompanyRecord:
        base = record.copy()
        if not base.source_breakdown:
            base.source_breakdown = {source: base.present_fields()}
        return base

    def _fill(self, base: CompanyRecord, other: CompanyRecord, source: str) -> None:
        """Fill fields of ``base`` that ``other`` has and ``base`` lacks."""
        contributed: List[str] = []
        for name in MERGEABLE_FIELDS:
            theirs = getattr(other, name)
            if not is_present(theirs):
                continue

            if name in _COLLECTION_KEYS:
                added = self._union(getattr(base, name), theirs, _COLLECTION_KEYS[name])
                if added:
                    contributed.append(name)
            elif not is_present(getattr(base, name)):
                setattr(base, name, theirs)
                contributed.append(name)

        fields = base.source_breakdown.setdefault(source, [])
        fields.extend(name for name in contributed if name not in fields)
        if other.last_updated > base.last_updated:
            base.last_updated = other.last_updated

    @staticmethod
    def _union(mine: List[Any], theirs: List[Any], id_attr: str) -> int:
        known = {getattr(item, id_attr) for item in mine}
        added = 0
        for item in theirs:
            identity = getattr(item, id_attr)
            if identity not in known:
                mine.append(item)
                known.add(identity)
                added += 1
        return added
