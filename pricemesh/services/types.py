"""
Product search types using Pydantic models.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Product(BaseModel):
    """Canonical result item returned by a backend.

    Values come from untrusted upstream responses; ``price`` may exceed
    ``original_price`` and is not corrected here.
    """

    model_config = ConfigDict(frozen=True)

    id: str  # Source-scoped identifier
    name: str
    description: str | None = None
    price: float | None = None
    original_price: float | None = None
    currency: str = "USD"
    image_urls: tuple[str, ...] = ()
    brand: str = ""
    source_name: str
    category: str | None = None
    in_stock: bool = False
    rating: float | None = None
    review_count: int | None = None
    product_url: str | None = None
    listed_at: datetime | None = None
    merge_key: str | None = None  # Set on merged products, keys price_comparisons


class SortOrder(str, Enum):
    """Result orderings."""

    RELEVANCE = "relevance"
    PRICE_LOW_TO_HIGH = "priceLowToHigh"
    PRICE_HIGH_TO_LOW = "priceHighToLow"
    RATING = "rating"
    NEWEST = "newest"


class FilterType(str, Enum):
    BRAND = "brand"
    CATEGORY = "category"
    PRICE_RANGE = "priceRange"
    IN_STOCK_ONLY = "inStockOnly"


class ProductFilter(BaseModel):
    """Single filter predicate. ``priceRange`` values look like ``"10-50"``."""

    model_config = ConfigDict(frozen=True)

    type: FilterType
    value: str


class SearchOptions(BaseModel):
    """Result shaping options for a search."""

    model_config = ConfigDict(frozen=True)

    max_results: int = Field(default=50, ge=0)
    sort_order: SortOrder = SortOrder.RELEVANCE
    filters: tuple[ProductFilter, ...] = ()
    include_cross_source_comparison: bool = False


class DetailOptions(BaseModel):
    """Enrichment options for a product details lookup."""

    model_config = ConfigDict(frozen=True)

    include_cross_source_comparison: bool = True
    include_related_products: bool = True


class CrossSourcePrice(BaseModel):
    """Price of an equivalent product at another source."""

    source_name: str
    price: float | None = None
    url: str | None = None
    in_stock: bool = False


class AggregatedResult(BaseModel):
    """Outcome of one coordinated search. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    query: str
    products: list[Product] = Field(default_factory=list)
    source_results: dict[str, list[Product]] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    total_before_pagination: int = 0
    processed_at: datetime
    from_cache: bool = False
    # Merged product merge_key -> member prices, filled on request
    price_comparisons: dict[str, list[CrossSourcePrice]] = Field(default_factory=dict)

    @property
    def succeeded_sources(self) -> list[str]:
        return sorted(self.source_results)

    @property
    def failed_sources(self) -> list[str]:
        return sorted(self.errors)


class EnrichedDetails(BaseModel):
    """Product details with optional cross-source enrichment."""

    model_config = ConfigDict(frozen=True)

    base_product: Product
    cross_source_prices: list[CrossSourcePrice] = Field(default_factory=list)
    related_products: list[Product] = Field(default_factory=list)
    availability: dict[str, bool] = Field(default_factory=dict)

    @property
    def best_price(self) -> float | None:
        prices = [p.price for p in self.cross_source_prices if p.price is not None]
        if self.base_product.price is not None:
            prices.append(self.base_product.price)
        return min(prices) if prices else None
