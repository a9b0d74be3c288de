"""
Product aggregation with cross-source deduplication, filtering and sorting.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from loguru import logger

from pricemesh.services.types import (
    CrossSourcePrice,
    FilterType,
    Product,
    ProductFilter,
    SearchOptions,
    SortOrder,
)

DEFAULT_PRICE_BUCKETS: tuple[tuple[float, str], ...] = (
    (25.0, "budget"),
    (100.0, "low"),
    (300.0, "mid"),
    (1000.0, "high"),
)


def normalize_text(text: str) -> str:
    """Lowercase, drop non-alphanumerics, collapse whitespace."""
    text = text.lower()
    text = re.sub(r"[^a-z0-9\s]", "", text)
    return " ".join(text.split())


class ProductMatcher:
    """Finds equivalent products by Jaccard similarity of their names."""

    def __init__(self, threshold: float = 0.8):
        self.threshold = threshold

    @staticmethod
    def similarity(name1: str, name2: str) -> float:
        """Jaccard similarity between normalized word sets."""
        words1 = set(normalize_text(name1).split())
        words2 = set(normalize_text(name2).split())

        if not words1 or not words2:
            return 0.0

        union = len(words1 | words2)
        return len(words1 & words2) / union if union > 0 else 0.0

    def find_matches(
        self,
        name: str,
        candidates: Iterable[Product],
        threshold: float | None = None,
    ) -> list[tuple[Product, float]]:
        """Candidates scoring above the threshold, best first."""
        threshold = self.threshold if threshold is None else threshold
        scored = [(p, self.similarity(name, p.name)) for p in candidates]
        matches = [(p, score) for p, score in scored if score > threshold]
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches


@dataclass
class ProductAggregator:
    """
    Merges products that describe the same physical item across backends.

    Two products are the same item when brand, name and price bucket agree
    after normalization. Merging is idempotent.
    """

    multi_source_name: str = "Multi-Source"
    price_buckets: tuple[tuple[float, str], ...] = DEFAULT_PRICE_BUCKETS
    top_bucket: str = "premium"
    matcher: ProductMatcher = field(default_factory=ProductMatcher)

    def price_bucket(self, price: float | None) -> str:
        if price is None:
            return "unknown"
        for upper, label in self.price_buckets:
            if price < upper:
                return label
        return self.top_bucket

    def group_key(self, product: Product) -> tuple[str, str, str]:
        return (
            normalize_text(product.brand),
            normalize_text(product.name),
            self.price_bucket(product.price),
        )

    def merge_key(self, product: Product) -> str:
        """Stable string form of the group key, unique per merged group."""
        return "|".join(self.group_key(product))

    def deduplicate_and_merge(self, products: Iterable[Product]) -> list[Product]:
        """Collapse same-item groups, keeping first-encountered group order."""
        groups: dict[tuple[str, str, str], list[Product]] = {}
        count = 0
        for product in products:
            groups.setdefault(self.group_key(product), []).append(product)
            count += 1

        merged = [
            group[0] if len(group) == 1 else self.merge_group(group)
            for group in groups.values()
        ]

        if count != len(merged):
            logger.debug(
                f"Product aggregation: {count} → {len(merged)} "
                f"(removed {count - len(merged)} duplicates)"
            )
        return merged

    def merge_group(self, group: list[Product]) -> Product:
        """Most complete member as base, best price, any stock, all images."""
        base = group[0]
        best_score = completeness_score(base)
        for product in group[1:]:
            score = completeness_score(product)
            if score > best_score:
                base, best_score = product, score

        prices = [p.price for p in group if p.price is not None]
        images: list[str] = []
        for product in group:
            for url in product.image_urls:
                if url not in images:
                    images.append(url)

        return base.model_copy(
            update={
                "price": min(prices) if prices else base.price,
                "in_stock": any(p.in_stock for p in group),
                "image_urls": tuple(images),
                "source_name": self.multi_source_name,
                "merge_key": self.merge_key(base),
            }
        )

    def price_comparisons(
        self,
        products: Iterable[Product],
    ) -> dict[str, list[CrossSourcePrice]]:
        """Member prices of every multi-source group, keyed by ``merge_key``."""
        groups: dict[tuple[str, str, str], list[Product]] = {}
        for product in products:
            groups.setdefault(self.group_key(product), []).append(product)

        comparisons: dict[str, list[CrossSourcePrice]] = {}
        for group in groups.values():
            if len(group) < 2:
                continue
            comparisons[self.merge_key(group[0])] = [
                CrossSourcePrice(
                    source_name=p.source_name,
                    price=p.price,
                    url=p.product_url,
                    in_stock=p.in_stock,
                )
                for p in sorted(
                    group,
                    key=lambda p: p.price if p.price is not None else float("inf"),
                )
            ]
        return comparisons

    def apply_filters(
        self,
        products: list[Product],
        filters: Iterable[ProductFilter],
    ) -> list[Product]:
        """Apply brand, category, price range and in-stock predicates in turn."""
        by_type: dict[FilterType, list[ProductFilter]] = {}
        for f in filters:
            by_type.setdefault(f.type, []).append(f)

        filtered = products
        for filter_type in (
            FilterType.BRAND,
            FilterType.CATEGORY,
            FilterType.PRICE_RANGE,
            FilterType.IN_STOCK_ONLY,
        ):
            for f in by_type.get(filter_type, []):
                filtered = _apply_filter(filtered, f)
        return filtered

    def sort(
        self,
        products: list[Product],
        order: SortOrder,
        filters: Iterable[ProductFilter] = (),
    ) -> list[Product]:
        """Filter, then order. Sorting is stable."""
        filtered = self.apply_filters(products, filters)

        if order == SortOrder.RELEVANCE:
            return sorted(filtered, key=relevance_score, reverse=True)
        if order == SortOrder.PRICE_LOW_TO_HIGH:
            return sorted(
                filtered, key=lambda p: p.price if p.price is not None else float("inf")
            )
        if order == SortOrder.PRICE_HIGH_TO_LOW:
            return sorted(
                filtered,
                key=lambda p: p.price if p.price is not None else 0.0,
                reverse=True,
            )
        if order == SortOrder.RATING:
            return sorted(filtered, key=lambda p: p.rating or 0.0, reverse=True)
        if order == SortOrder.NEWEST:
            return sorted(filtered, key=_newest_key)
        return filtered

    @staticmethod
    def paginate(products: list[Product], max_results: int) -> tuple[list[Product], int]:
        """Prefix of ``max_results`` items and the unpaginated total."""
        return products[:max_results], len(products)

    def aggregate(
        self,
        products: Iterable[Product],
        options: SearchOptions,
    ) -> tuple[list[Product], int]:
        """Merge, filter, sort and paginate in one pass."""
        merged = self.deduplicate_and_merge(products)
        ordered = self.sort(merged, options.sort_order, options.filters)
        return self.paginate(ordered, options.max_results)


def completeness_score(product: Product) -> int:
    """Count of informative fields that are present."""
    return sum(
        (
            bool(product.name),
            bool(product.description),
            product.price is not None,
            bool(product.image_urls),
            bool(product.brand),
            bool(product.category),
            product.rating is not None,
            product.review_count is not None,
        )
    )


def relevance_score(product: Product) -> float:
    score = 0.0
    if product.rating is not None:
        score += product.rating * 10
    if product.review_count is not None:
        score += min(20.0, product.review_count / 100)
    if product.in_stock:
        score += 15
    if product.price is not None:
        score += 10
    if product.image_urls:
        score += 5
    return score


def parse_price_range(value: str) -> tuple[float, float] | None:
    parts = value.split("-")
    if len(parts) != 2:
        return None
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        return None


def _apply_filter(products: list[Product], f: ProductFilter) -> list[Product]:
    value = f.value.lower()

    if f.type == FilterType.BRAND:
        return [p for p in products if value in p.brand.lower()]

    if f.type == FilterType.CATEGORY:
        return [p for p in products if p.category and value in p.category.lower()]

    if f.type == FilterType.PRICE_RANGE:
        bounds = parse_price_range(f.value)
        if bounds is None:
            return products
        low, high = bounds
        return [p for p in products if p.price is not None and low <= p.price <= high]

    if f.type == FilterType.IN_STOCK_ONLY:
        if value != "true":
            return products
        return [p for p in products if p.in_stock]

    return products


def _newest_key(product: Product) -> tuple[bool, float, str]:
    listed: datetime | None = product.listed_at
    return (
        listed is None,
        -listed.timestamp() if listed is not None else 0.0,
        product.source_name,
    )
