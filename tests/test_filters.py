"""Tests for search filters and paging."""

from datetime import date
from decimal import Decimal

import pytest

from registry_hub.core.data_models import Capital, CompanyRecord
from registry_hub.core.errors import ValidationError
from registry_hub.core.filters import SearchFilters


def _company(registry_id, name, **values):
    return CompanyRecord.build("sirene", registry_id, legal_name=name, **values)


DANONE = _company(
    "552032534",
    "DANONE",
    legal_form="SA à conseil d'administration",
    activity_code="70.10Z",
    active=True,
    creation_date=date(1955, 1, 1),
    capital=Capital(Decimal("168514140")),
)
MICHELIN = _company(
    "775670417",
    "MICHELIN",
    legal_form="SCA",
    activity_code="70.10Z",
    active=True,
    creation_date=date(1863, 7, 15),
    capital=Capital(Decimal("357000000")),
)
BOULANGERIE = _company(
    "820026490",
    "BOULANGERIE DU PORT",
    legal_form="SAS, société par actions simplifiée",
    activity_code="10.71C",
    active=False,
    creation_date=date(2016, 5, 2),
)
UNKNOWN = _company("100000001", "ATELIER")

RECORDS = [DANONE, MICHELIN, BOULANGERIE, UNKNOWN]


def _names(records):
    return [record.legal_name for record in records]


class TestMatching:
    """Tests for record selection."""

    def test_default_keeps_everything(self):
        """Test empty filters keep order and every record."""
        shown, matched = SearchFilters().apply(RECORDS)
        assert _names(shown) == _names(RECORDS)
        assert matched == 4

    def test_legal_form_substring(self):
        """Test the legal form matches anywhere, ignoring case."""
        shown, _ = SearchFilters(legal_form=" sas ").apply(RECORDS)
        assert _names(shown) == ["BOULANGERIE DU PORT"]

        shown, _ = SearchFilters(legal_form="sa").apply(RECORDS)
        assert _names(shown) == ["DANONE", "BOULANGERIE DU PORT"]

    def test_activity_code_prefix(self):
        """Test activity codes match by prefix with dots ignored."""
        assert _names(SearchFilters(activity_code="70").apply(RECORDS)[0]) == [
            "DANONE",
            "MICHELIN",
        ]
        assert _names(SearchFilters(activity_code="1071c").apply(RECORDS)[0]) == [
            "BOULANGERIE DU PORT"
        ]
        assert SearchFilters(activity_code="71").apply(RECORDS)[0] == []

    def test_active_state(self):
        """Test unknown activity state never matches an active filter."""
        assert _names(SearchFilters(active=True).apply(RECORDS)[0]) == ["DANONE", "MICHELIN"]
        assert _names(SearchFilters(active=False).apply(RECORDS)[0]) == ["BOULANGERIE DU PORT"]

    def test_filters_combine(self):
        """Test every given filter must match."""
        filters = SearchFilters(legal_form="SCA", activity_code="70", active=True)
        assert _names(filters.apply(RECORDS)[0]) == ["MICHELIN"]


class TestOrdering:
    """Tests for sort orders."""

    def test_by_name(self):
        shown, _ = SearchFilters(sort_by="name").apply(RECORDS)
        assert _names(shown) == ["ATELIER", "BOULANGERIE DU PORT", "DANONE", "MICHELIN"]

    def test_newest_first_missing_last(self):
        """Test creation dates sort newest first and missing dates last."""
        shown, _ = SearchFilters(sort_by="creation_date").apply(RECORDS)
        assert _names(shown) == ["BOULANGERIE DU PORT", "DANONE", "MICHELIN", "ATELIER"]

    def test_largest_capital_first(self):
        shown, _ = SearchFilters(sort_by="capital").apply(RECORDS)
        assert _names(shown)[:2] == ["MICHELIN", "DANONE"]
        assert set(_names(shown)[2:]) == {"BOULANGERIE DU PORT", "ATELIER"}

    def test_input_not_reordered(self):
        """Test sorting works on a copy of the merged list."""
        records = list(RECORDS)
        SearchFilters(sort_by="name").apply(records)
        assert records == RECORDS


class TestPaging:
    """Tests for offset pagination."""

    def test_pages(self):
        """Test pages cut the sorted selection and matched counts all of it."""
        first, matched = SearchFilters(sort_by="name", page_size=3).apply(RECORDS)
        second, _ = SearchFilters(sort_by="name", page=2, page_size=3).apply(RECORDS)

        assert matched == 4
        assert _names(first) == ["ATELIER", "BOULANGERIE DU PORT", "DANONE"]
        assert _names(second) == ["MICHELIN"]

    def test_page_past_the_end(self):
        shown, matched = SearchFilters(page=5, page_size=2).apply(RECORDS)
        assert shown == []
        assert matched == 4

    def test_page_without_size_shows_everything(self):
        shown, _ = SearchFilters(page=3).apply(RECORDS)
        assert len(shown) == 4


class TestValidation:
    """Tests for invalid filter values."""

    @pytest.mark.parametrize(
        "values",
        [{"sort_by": "size"}, {"page": 0}, {"page_size": 0}, {"page_size": -5}],
    )
    def test_rejected(self, values):
        with pytest.raises(ValidationError):
            SearchFilters(**values)

    def test_unknown_sort_lists_choices(self):
        with pytest.raises(ValidationError, match="creation_date"):
            SearchFilters(sort_by="size")


class TestCacheParams:
    """Tests for the cache key contribution."""

    def test_default_adds_nothing(self):
        """Test the unfiltered search keeps its plain key."""
        assert SearchFilters().cache_params() == {}
        assert SearchFilters().is_default

    def test_equivalent_codes_share_params(self):
        """Test activity codes are normalized before keying."""
        dotted = SearchFilters(activity_code="70.10").cache_params()
        plain = SearchFilters(activity_code="7010").cache_params()
        assert dotted == plain
        assert dotted["activity_code"] == "7010"

    def test_pages_differ(self):
        first = SearchFilters(page_size=10).cache_params()
        second = SearchFilters(page=2, page_size=10).cache_params()
        assert first != second
