"""
Service layer - resilience and aggregation for product search backends.

Provides:
- SlidingWindowRateLimiter: Per-backend admission over second/minute/hour windows
- CircuitBreaker: Stops calls to failing backends
- TieredCache: Memory tier backed by a durable disk tier
- RequestDeduplicator: Collapses concurrent identical requests
- QuotaGovernor: Hard daily and monthly budget for live calls
- ProductAggregator: Cross-source merge, filter, sort and paginate

The SearchCoordinator lives in ``pricemesh.services.coordinator``.
"""

from pricemesh.services.errors import (
    ServiceError,
    CacheError,
    RateLimitError,
    QueueFullError,
    QueueTimeoutError,
    ServiceUnavailableError,
    CircuitOpenError,
    RequestTimeoutError,
    BackendError,
    BackendErrorKind,
    QuotaExceededError,
    UnknownBackendError,
    MissingCredentialError,
)
from pricemesh.services.types import (
    Product,
    AggregatedResult,
    SearchOptions,
    DetailOptions,
    SortOrder,
    FilterType,
    ProductFilter,
    CrossSourcePrice,
    EnrichedDetails,
)
from pricemesh.services.rate_limiter import (
    SlidingWindowRateLimiter,
    RateLimitConfig,
    RequestPriority,
)
from pricemesh.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from pricemesh.services.cache import TieredCache, CacheEntry, CacheStats
from pricemesh.services.deduplicator import (
    RequestDeduplicator,
    generate_search_key,
    generate_details_key,
)
from pricemesh.services.quota import QuotaGovernor, QuotaState, MonthlyUsageTracker
from pricemesh.services.aggregator import ProductAggregator, ProductMatcher

__all__ = [
    # Errors
    "ServiceError",
    "CacheError",
    "RateLimitError",
    "QueueFullError",
    "QueueTimeoutError",
    "ServiceUnavailableError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "BackendError",
    "BackendErrorKind",
    "QuotaExceededError",
    "UnknownBackendError",
    "MissingCredentialError",
    # Types
    "Product",
    "AggregatedResult",
    "SearchOptions",
    "DetailOptions",
    "SortOrder",
    "FilterType",
    "ProductFilter",
    "CrossSourcePrice",
    "EnrichedDetails",
    # Rate limiter
    "SlidingWindowRateLimiter",
    "RateLimitConfig",
    "RequestPriority",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Cache
    "TieredCache",
    "CacheEntry",
    "CacheStats",
    # Deduplicator
    "RequestDeduplicator",
    "generate_search_key",
    "generate_details_key",
    # Quota
    "QuotaGovernor",
    "QuotaState",
    "MonthlyUsageTracker",
    # Aggregator
    "ProductAggregator",
    "ProductMatcher",
]
