"""
pricemesh entry point.
Runs one product search across all configured backends, or one enriched
product details lookup, and prints JSON.
"""

import argparse
import asyncio
import json
import sys

from loguru import logger

from pricemesh.app import build_application
from pricemesh.services.errors import QuotaExceededError, ServiceError
from pricemesh.services.types import (
    DetailOptions,
    FilterType,
    ProductFilter,
    SearchOptions,
    SortOrder,
)
from pricemesh.settings import load_settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search products across backends")
    parser.add_argument("query", nargs="?", help="Search text")
    parser.add_argument(
        "--backend",
        action="append",
        dest="backends",
        help="Restrict to a backend (repeatable)",
    )
    parser.add_argument("--max-results", type=int, default=50)
    parser.add_argument(
        "--sort",
        choices=[o.value for o in SortOrder],
        default=SortOrder.RELEVANCE.value,
    )
    parser.add_argument("--brand", help="Brand substring filter")
    parser.add_argument("--category", help="Category substring filter")
    parser.add_argument("--price-range", help="Price range filter, e.g. 10-50")
    parser.add_argument("--in-stock", action="store_true", help="Only in-stock items")
    parser.add_argument(
        "--compare", action="store_true", help="Include cross-source price comparisons"
    )

    details = parser.add_argument_group("details lookup")
    details.add_argument("--details", metavar="PRODUCT_ID", help="Look up one product")
    details.add_argument(
        "--from", dest="source", metavar="BACKEND", help="Backend that owns PRODUCT_ID"
    )
    details.add_argument(
        "--no-related", action="store_true", help="Skip related products"
    )
    details.add_argument(
        "--no-compare", action="store_true", help="Skip prices at other backends"
    )

    args = parser.parse_args(argv)
    if args.details:
        if not args.source:
            parser.error("--details requires --from BACKEND")
    elif not args.query:
        parser.error("a search query is required unless --details is given")
    return args


def build_options(args: argparse.Namespace) -> SearchOptions:
    filters = []
    if args.brand:
        filters.append(ProductFilter(type=FilterType.BRAND, value=args.brand))
    if args.category:
        filters.append(ProductFilter(type=FilterType.CATEGORY, value=args.category))
    if args.price_range:
        filters.append(ProductFilter(type=FilterType.PRICE_RANGE, value=args.price_range))
    if args.in_stock:
        filters.append(ProductFilter(type=FilterType.IN_STOCK_ONLY, value="true"))

    return SearchOptions(
        max_results=args.max_results,
        sort_order=SortOrder(args.sort),
        filters=tuple(filters),
        include_cross_source_comparison=args.compare,
    )


def build_detail_options(args: argparse.Namespace) -> DetailOptions:
    return DetailOptions(
        include_cross_source_comparison=not args.no_compare,
        include_related_products=not args.no_related,
    )


async def main(argv: list[str] | None = None) -> int:
    """Main function."""
    args = parse_args(argv)
    settings = load_settings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    app = build_application(settings)
    async with app:
        try:
            if args.details:
                details = await app.coordinator.details(
                    args.details, args.source, build_detail_options(args)
                )
            else:
                result = await app.coordinator.search(
                    args.query, backends=args.backends, options=build_options(args)
                )
        except QuotaExceededError as e:
            logger.error(f"{e}. {e.retry_hint}")
            return 2
        except ServiceError as e:
            logger.error(f"{'Details lookup' if args.details else 'Search'} failed: {e}")
            return 1

    if args.details:
        payload = details.model_dump(mode="json")
        payload["best_price"] = details.best_price
        print(json.dumps(payload, indent=2))
    else:
        print(result.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
