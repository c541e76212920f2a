"""Narrowing, ordering and paging of merged search records.

Filters run on the merged records, after every source has answered, so a
field contributed by any source can satisfy them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from registry_hub.core.data_models import CompanyRecord
from registry_hub.core.errors import ValidationError

_CODE_NOISE_RE = re.compile(r"[\s.]")


def _normalize_code(value: str) -> str:
    return _CODE_NOISE_RE.sub("", value).upper()


def _by_name(record: CompanyRecord) -> Tuple[bool, str]:
    return record.legal_name is None, (record.legal_name or "").casefold()


def _by_creation_date(record: CompanyRecord) -> Tuple[bool, int]:
    created = record.creation_date
    return created is None, -(created or date.min).toordinal()


def _by_capital(record: CompanyRecord) -> Tuple[bool, Decimal]:
    amount = record.capital.amount if record.capital else None
    return amount is None, -(amount or Decimal(0))


# Sort order name -> key; "relevance" keeps the merge order
SORT_KEYS: Dict[str, Optional[Callable[[CompanyRecord], Any]]] = {
    "relevance": None,
    "name": _by_name,
    "creation_date": _by_creation_date,
    "capital": _by_capital,
}


@dataclass(frozen=True)
class SearchFilters:
    """Optional filters and paging of a search.

    ``legal_form`` matches case-insensitively anywhere in the legal form
    label.  ``activity_code`` is a prefix of the activity code, dots and
    spaces ignored (``"70"`` matches ``"70.10Z"``).  ``active`` keeps only
    records whose state is known and equal.  Newest creation dates and
    largest capitals come first; records lacking the sort field go last.
    """

    legal_form: Optional[str] = None
    activity_code: Optional[str] = None
    active: Optional[bool] = None
    sort_by: str = "relevance"
    page: int = 1
    page_size: Optional[int] = None

    def __post_init__(self) -> None:
        if self.sort_by not in SORT_KEYS:
            raise ValidationError(
                f"unknown sort order '{self.sort_by}', expected one of: {', '.join(SORT_KEYS)}"
            )
        if self.page < 1:
            raise ValidationError("page must be 1 or greater")
        if self.page_size is not None and self.page_size < 1:
            raise ValidationError("page_size must be 1 or greater")

    @property
    def is_default(self) -> bool:
        return self == SearchFilters()

    def cache_params(self) -> Dict[str, Any]:
        """Parameters that distinguish the filtered result in a cache key."""
        if self.is_default:
            return {}
        return {
            "legal_form": self.legal_form,
            "activity_code": _normalize_code(self.activity_code) if self.activity_code else None,
            "active": self.active,
            "sort_by": self.sort_by,
            "page": self.page,
            "page_size": self.page_size,
        }

    def matches(self, record: CompanyRecord) -> bool:
        if self.legal_form:
            label = (record.legal_form or "").casefold()
            if self.legal_form.strip().casefold() not in label:
                return False
        if self.activity_code:
            code = _normalize_code(record.activity_code or "")
            if not code.startswith(_normalize_code(self.activity_code)):
                return False
        if self.active is not None and record.active is not self.active:
            return False
        return True

    def apply(self, records: Sequence[CompanyRecord]) -> Tuple[List[CompanyRecord], int]:
        """Filter, sort and cut one page.

        Returns:
            ``(page_records, matched)`` where ``matched`` counts every
            record passing the filters
        """
        selected = [record for record in records if self.matches(record)]
        key = SORT_KEYS[self.sort_by]
        if key is not None:
            selected.sort(key=key)

        matched = len(selected)
        if self.page_size is not None:
            start = (self.page - 1) * self.page_size
            selected = selected[start:start + self.page_size]
        return selected, matched
