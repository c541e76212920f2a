#!/usr/bin/env python3
"""Command-line interface for the registry hub.

Runs the same aggregation as the HTTP API from the terminal and prints
JSON on stdout.

Commands:
- search: Search companies by name or identifier
- enrich: Detail view of one company
- cache: Show statistics or clear the response cache
- validate: Validate configuration
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from registry_hub.core.config import Config
from registry_hub.core.errors import ValidationError
from registry_hub.core.filters import SORT_KEYS, SearchFilters
from registry_hub.core.logging_setup import configure_logging
from registry_hub.core.service import RegistryHub

logger = logging.getLogger(__name__)


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Registry hub CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  registry-hub search danone
  registry-hub search "552 032 534" --sources sirene,bodacc
  registry-hub search boulangerie --activity-code 10.71 --active --page-size 10
  registry-hub enrich 552032534
  registry-hub cache stats
  registry-hub validate --strict
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML or TOML configuration file",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Write logs to this file as well",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Use JSON structured logging format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Search
    search_parser = subparsers.add_parser("search", help="Search companies")
    search_parser.add_argument("query", help="Company name, registry or establishment id")
    search_parser.add_argument(
        "--sources", help="Comma-separated source names (default: configured sources)"
    )
    search_parser.add_argument(
        "--limit", "-n", type=int, default=20, help="Maximum records per source (default: 20)"
    )
    search_parser.add_argument("--legal-form", help="Keep legal forms containing this text")
    search_parser.add_argument("--activity-code", help="Keep activity codes starting with this")
    state = search_parser.add_mutually_exclusive_group()
    state.add_argument(
        "--active", dest="active", action="store_true", default=None, help="Active companies only"
    )
    state.add_argument(
        "--inactive",
        dest="active",
        action="store_false",
        default=None,
        help="Closed companies only",
    )
    search_parser.add_argument(
        "--sort", choices=list(SORT_KEYS), default="relevance", help="Order of the records"
    )
    search_parser.add_argument("--page", type=int, default=1, help="Page to show (default: 1)")
    search_parser.add_argument("--page-size", type=int, help="Records per page (default: all)")

    # Enrich
    enrich_parser = subparsers.add_parser("enrich", help="Detail view of one company")
    enrich_parser.add_argument("registry_id", help="9-digit registry identifier")
    enrich_parser.add_argument("--sources", help="Comma-separated source names")

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Manage the response cache")
    cache_parser.add_argument(
        "cache_action",
        choices=["stats", "clear"],
        help="Cache action to perform",
    )

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate configuration")
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with error code if validation fails",
    )

    return parser.parse_args(argv)


def _split_sources(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [name.strip() for name in value.split(",") if name.strip()]


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def handle_search(args: argparse.Namespace, hub: RegistryHub) -> int:
    """Handle the search command."""
    filters = SearchFilters(
        legal_form=args.legal_form,
        activity_code=args.activity_code,
        active=args.active,
        sort_by=args.sort,
        page=args.page,
        page_size=args.page_size,
    )
    result = await hub.search(
        args.query, sources=_split_sources(args.sources), limit=args.limit, filters=filters
    )
    _print_json(result.to_dict())
    return 0


async def handle_enrich(args: argparse.Namespace, hub: RegistryHub) -> int:
    """Handle the enrich command."""
    result = await hub.enrich(args.registry_id, sources=_split_sources(args.sources))
    _print_json(result.to_dict())
    return 0 if result.total else 1


async def handle_cache(args: argparse.Namespace, hub: RegistryHub) -> int:
    """Handle the cache command."""
    if args.cache_action == "clear":
        cleared = await hub.clear_cache()
        _print_json({"cleared": cleared})
    else:
        _print_json(hub.cache_stats())
    return 0


def handle_validate(args: argparse.Namespace, config: Config) -> int:
    """Handle the validate command."""
    result = config.validate()
    print(result)

    if args.strict and not result.is_valid:
        return 1
    return 0


async def main_async(args: argparse.Namespace) -> int:
    config = Config(str(args.config) if args.config else None)

    configure_logging(
        log_file=args.log_file,
        level=getattr(logging, args.log_level),
        use_json=args.json_logs,
    )

    if args.command == "validate":
        return handle_validate(args, config)

    handlers = {
        "search": handle_search,
        "enrich": handle_enrich,
        "cache": handle_cache,
    }
    async with RegistryHub.from_config(config) as hub:
        try:
            return await handlers[args.command](args, hub)
        except ValidationError as e:
            print(f"Invalid input: {e.message}", file=sys.stderr)
            return 2


def main() -> None:
    args = parse_args(sys.argv[1:])
    try:
        exit_code = asyncio.run(main_async(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nAborted by user")
        sys.exit(130)
    except ValueError as e:
        # Invalid configuration
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
