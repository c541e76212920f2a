"""Tests for the command-line interface."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from registry_hub.cli import (
    handle_cache,
    handle_enrich,
    handle_search,
    handle_validate,
    parse_args,
)
from registry_hub.core.config import Config
from registry_hub.core.data_models import AggregatedResult, CompanyRecord, QueryMode
from registry_hub.core.errors import ValidationError
from registry_hub.core.filters import SearchFilters


def _hub(result: AggregatedResult) -> MagicMock:
    hub = MagicMock()
    hub.search = AsyncMock(return_value=result)
    hub.enrich = AsyncMock(return_value=result)
    hub.clear_cache = AsyncMock(return_value=3)
    hub.cache_stats.return_value = {"hits": 1, "misses": 2}
    return hub


DANONE = AggregatedResult(
    query="danone",
    records=(CompanyRecord(registry_id="552032534", legal_name="DANONE"),),
)


class TestParseArgs:
    """Tests for argument parsing."""

    def test_search(self):
        """Test search arguments."""
        args = parse_args(["search", "danone", "--sources", "sirene,bodacc", "-n", "5"])
        assert args.command == "search"
        assert args.query == "danone"
        assert args.sources == "sirene,bodacc"
        assert args.limit == 5
        assert args.log_level == "WARNING"

    def test_search_filters(self):
        """Test filter and paging options."""
        args = parse_args(
            [
                "search", "boulangerie",
                "--legal-form", "SAS",
                "--activity-code", "10.71",
                "--inactive",
                "--sort", "capital",
                "--page", "2",
                "--page-size", "5",
            ]
        )
        assert args.legal_form == "SAS"
        assert args.activity_code == "10.71"
        assert args.active is False
        assert args.sort == "capital"
        assert (args.page, args.page_size) == (2, 5)

        assert parse_args(["search", "x"]).active is None
        assert parse_args(["search", "x", "--active"]).active is True
        with pytest.raises(SystemExit):
            parse_args(["search", "x", "--active", "--inactive"])
        with pytest.raises(SystemExit):
            parse_args(["search", "x", "--sort", "size"])

    def test_global_options(self):
        """Test logging options before the command."""
        args = parse_args(["--log-level", "DEBUG", "--json-logs", "enrich", "552032534"])
        assert args.log_level == "DEBUG"
        assert args.json_logs is True
        assert args.registry_id == "552032534"

    def test_cache_action_choices(self):
        """Test unknown cache actions are rejected."""
        with pytest.raises(SystemExit):
            parse_args(["cache", "purge"])

    def test_command_required(self):
        """Test a command must be given."""
        with pytest.raises(SystemExit):
            parse_args([])


class TestHandlers:
    """Tests for command handlers."""

    @pytest.mark.asyncio
    async def test_search_prints_json(self, capsys):
        """Test search output and source splitting."""
        hub = _hub(DANONE)
        args = parse_args(["search", "danone", "--sources", "sirene, bodacc"])

        assert await handle_search(args, hub) == 0

        hub.search.assert_awaited_once_with(
            "danone", sources=["sirene", "bodacc"], limit=20, filters=SearchFilters()
        )
        output = json.loads(capsys.readouterr().out)
        assert output["records"][0]["legal_name"] == "DANONE"

    @pytest.mark.asyncio
    async def test_search_passes_filters(self):
        """Test filter options reach the hub."""
        hub = _hub(DANONE)
        args = parse_args(["search", "danone", "--active", "--page-size", "10"])

        await handle_search(args, hub)

        filters = hub.search.await_args.kwargs["filters"]
        assert filters == SearchFilters(active=True, page_size=10)

    @pytest.mark.asyncio
    async def test_search_rejects_bad_page(self):
        """Test a page below 1 is refused before searching."""
        hub = _hub(DANONE)
        with pytest.raises(ValidationError):
            await handle_search(parse_args(["search", "danone", "--page", "0"]), hub)
        hub.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enrich_not_found(self, capsys):
        """Test an unknown company exits with 1."""
        hub = _hub(AggregatedResult(query="775670417", mode=QueryMode.DETAIL))
        args = parse_args(["enrich", "775670417"])

        assert await handle_enrich(args, hub) == 1
        assert json.loads(capsys.readouterr().out)["total"] == 0

    @pytest.mark.asyncio
    async def test_cache_clear(self, capsys):
        """Test cache clear reports the removed entries."""
        hub = _hub(DANONE)
        assert await handle_cache(parse_args(["cache", "clear"]), hub) == 0
        assert json.loads(capsys.readouterr().out) == {"cleared": 3}

    def test_validate_strict(self, capsys):
        """Test strict validation fails on errors."""
        config = Config.from_dict({"cache": {"backend": "memcached"}})

        assert handle_validate(parse_args(["validate", "--strict"]), config) == 1
        assert handle_validate(parse_args(["validate"]), config) == 0
        assert "cache.backend" in capsys.readouterr().out
