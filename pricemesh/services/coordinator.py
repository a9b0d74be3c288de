"""
SearchCoordinator - Fans a product search out to every backend.

Combines:
- TieredCache for aggregated results
- QuotaGovernor to gate live calls
- RequestDeduplicator for concurrent identical searches
- CircuitBreakerRegistry and SlidingWindowRateLimiter per backend
- ProductAggregator to merge, filter, sort and paginate
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from loguru import logger

from pricemesh.datasource.base import BackendMode, BaseBackend
from pricemesh.datasource.registry import BackendRegistry
from pricemesh.services.aggregator import ProductAggregator
from pricemesh.services.cache import TieredCache, utcnow
from pricemesh.services.circuit_breaker import CircuitBreakerRegistry
from pricemesh.services.deduplicator import (
    RequestDeduplicator,
    generate_details_key,
    generate_search_key,
    normalize_query,
)
from pricemesh.services.errors import (
    BackendError,
    BackendErrorKind,
    CircuitOpenError,
    QuotaExceededError,
    RequestTimeoutError,
    ServiceError,
)
from pricemesh.services.quota import QuotaGovernor
from pricemesh.services.rate_limiter import RequestPriority, SlidingWindowRateLimiter
from pricemesh.services.types import (
    AggregatedResult,
    CrossSourcePrice,
    DetailOptions,
    EnrichedDetails,
    Product,
    SearchOptions,
)

T = TypeVar("T")


@dataclass
class CoordinatorConfig:
    """Caching and timeout policy."""

    search_ttl: timedelta = timedelta(minutes=5)
    popular_ttl: timedelta = timedelta(hours=1)
    details_ttl: timedelta = timedelta(minutes=10)
    popular_queries: frozenset[str] = field(default_factory=frozenset)
    request_timeout: float = 10.0


class SearchCoordinator:
    """
    Top-level orchestrator for searches and product details.

    Per search: cache check, quota check, dedup join, then one branch per
    backend (circuit breaker, rate limiter, call, record outcome), then
    aggregation and a cache write. A failing backend only fills its slot
    in ``AggregatedResult.errors``.

    Usage:
        coordinator = SearchCoordinator(registry, limiter, breakers, cache, dedup, quota)
        result = await coordinator.search("usb c hub", options=SearchOptions(max_results=20))
    """

    def __init__(
        self,
        registry: BackendRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        circuit_breakers: CircuitBreakerRegistry,
        cache: TieredCache,
        deduplicator: RequestDeduplicator,
        quota: QuotaGovernor,
        aggregator: ProductAggregator | None = None,
        config: CoordinatorConfig | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._circuit_breakers = circuit_breakers
        self._cache = cache
        self._deduplicator = deduplicator
        self._quota = quota
        self._aggregator = aggregator or ProductAggregator()
        self._config = config or CoordinatorConfig()
        self._now = now
        self._popular = frozenset(normalize_query(q) for q in self._config.popular_queries)

    async def search(
        self,
        query: str,
        backends: Iterable[str] | None = None,
        options: SearchOptions | None = None,
        purpose: str = "search",
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> AggregatedResult:
        """
        Search all (or the given) backends and return the merged result.

        Raises:
            ValueError: Empty query
            UnknownBackendError: A requested backend is not registered
            QuotaExceededError: Live calls refused and nothing cached
        """
        if not query.strip():
            raise ValueError("Search query must not be empty")

        options = options or SearchOptions()
        names = self._registry.resolve(backends)
        key = generate_search_key(query, names, options)

        cached = await self._cache.get(key, AggregatedResult)
        if cached is not None:
            logger.debug(f"Search '{query}' served from cache")
            return cached.model_copy(update={"from_cache": True})

        if self._uses_live_backend(names):
            await self._quota.check(purpose)

        return await self._deduplicator.join_or_start(
            key, lambda: self._perform_search(key, query, names, options, priority)
        )

    async def _perform_search(
        self,
        key: str,
        query: str,
        names: list[str],
        options: SearchOptions,
        priority: RequestPriority,
    ) -> AggregatedResult:
        started = time.perf_counter()

        outcomes = await asyncio.gather(
            *(self._search_backend(name, query, priority) for name in names)
        )

        source_results: dict[str, list[Product]] = {}
        errors: dict[str, str] = {}
        for name, products, error in outcomes:
            if error is not None:
                errors[name] = error
            else:
                source_results[name] = products

        all_products = [p for name in names for p in source_results.get(name, [])]
        page, total = self._aggregator.aggregate(all_products, options)

        comparisons = {}
        if options.include_cross_source_comparison:
            page_keys = {p.merge_key for p in page if p.merge_key}
            comparisons = {
                merge_key: prices
                for merge_key, prices in self._aggregator.price_comparisons(
                    all_products
                ).items()
                if merge_key in page_keys
            }

        result = AggregatedResult(
            query=query,
            products=page,
            source_results=source_results,
            errors=errors,
            total_before_pagination=total,
            processed_at=self._now(),
            price_comparisons=comparisons,
        )

        if source_results:
            await self._cache.set(key, result, ttl=self._search_ttl(query))

        logger.info(
            f"Search '{query}': {len(page)}/{total} products from "
            f"{len(source_results)}/{len(names)} backends "
            f"in {time.perf_counter() - started:.2f}s"
        )
        return result

    async def _search_backend(
        self,
        name: str,
        query: str,
        priority: RequestPriority,
    ) -> tuple[str, list[Product], str | None]:
        """One fan-out branch. Never raises except on cancellation."""
        try:
            products = await self._guarded_call(name, lambda b: b.search(query), priority)
        except ServiceError as e:
            logger.warning(f"[{name}] search failed: {e}")
            return name, [], str(e)
        return name, products, None

    async def _guarded_call(
        self,
        name: str,
        operation: Callable[[BaseBackend], Awaitable[T]],
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> T:
        """
        Call a backend behind its circuit breaker and rate limiter.

        Outcomes are recorded only for calls that completed or definitively
        failed; a cancelled call hands its half-open trial back. Outcomes
        carry the breaker generation the call started in.
        """
        backend = self._registry.get(name)
        breaker = self._circuit_breakers.get(name)

        if not breaker.can_execute():
            raise CircuitOpenError(name, breaker.get_time_until_reset() or 0.0)
        generation = breaker.generation

        try:
            await self._rate_limiter.acquire(name, priority)
        except BaseException:
            breaker.release_trial(generation)
            raise

        timeout = self._config.request_timeout
        try:
            result = await asyncio.wait_for(operation(backend), timeout=timeout)
        except asyncio.TimeoutError as e:
            breaker.record_failure(generation)
            raise RequestTimeoutError(name, timeout) from e
        except asyncio.CancelledError:
            breaker.release_trial(generation)
            raise
        except BackendError as e:
            if e.counts_as_failure:
                breaker.record_failure(generation)
            else:
                # The backend answered, the request was the problem
                breaker.record_success(generation)
            raise
        except ServiceError:
            breaker.record_failure(generation)
            raise
        except Exception as e:
            breaker.record_failure(generation)
            raise BackendError(name, BackendErrorKind.OTHER, str(e)) from e

        breaker.record_success(generation)
        if backend.mode == BackendMode.LIVE:
            await self._quota.record_request()
        return result

    async def details(
        self,
        product_id: str,
        backend_name: str,
        options: DetailOptions | None = None,
        purpose: str = "details",
    ) -> EnrichedDetails:
        """
        Fetch one product and enrich it with related products and prices
        of equivalent products at other backends.

        Raises:
            UnknownBackendError: ``backend_name`` is not registered
            QuotaExceededError: Live calls refused and nothing cached
            ServiceError: The base product could not be fetched
        """
        options = options or DetailOptions()
        backend = self._registry.get(backend_name)
        key = generate_details_key(product_id, backend_name, options)

        cached = await self._cache.get(key, EnrichedDetails)
        if cached is not None:
            logger.debug(f"Details {backend_name}/{product_id} served from cache")
            return cached

        if backend.mode == BackendMode.LIVE:
            await self._quota.check(purpose)

        return await self._deduplicator.join_or_start(
            key, lambda: self._perform_details(key, product_id, backend_name, options)
        )

    async def _perform_details(
        self,
        key: str,
        product_id: str,
        backend_name: str,
        options: DetailOptions,
    ) -> EnrichedDetails:
        base = await self._guarded_call(backend_name, lambda b: b.details(product_id))

        related: list[Product] = []
        if options.include_related_products:
            try:
                related = await self._guarded_call(
                    backend_name, lambda b: b.related_products(product_id)
                )
            except ServiceError as e:
                logger.warning(f"[{backend_name}] related products failed: {e}")

        cross_prices: list[CrossSourcePrice] = []
        availability = {backend_name: base.in_stock}
        if options.include_cross_source_comparison:
            cross_prices = await self._find_cross_source_prices(base, backend_name)
            for price in cross_prices:
                availability[price.source_name] = (
                    availability.get(price.source_name, False) or price.in_stock
                )

        details = EnrichedDetails(
            base_product=base,
            cross_source_prices=cross_prices,
            related_products=related,
            availability=availability,
        )
        await self._cache.set(key, details, ttl=self._config.details_ttl)
        return details

    async def _find_cross_source_prices(
        self,
        base: Product,
        backend_name: str,
    ) -> list[CrossSourcePrice]:
        others = [name for name in self._registry.names if name != backend_name]
        if not others:
            return []

        try:
            result = await self.search(base.name, backends=others, purpose="details")
        except (QuotaExceededError, ValueError) as e:
            logger.info(f"Cross-source comparison skipped for '{base.name}': {e}")
            return []

        candidates = [p for products in result.source_results.values() for p in products]
        return [
            CrossSourcePrice(
                source_name=product.source_name,
                price=product.price,
                url=product.product_url,
                in_stock=product.in_stock,
            )
            for product, _ in self._aggregator.matcher.find_matches(base.name, candidates)
        ]

    def _uses_live_backend(self, names: list[str]) -> bool:
        return any(self._registry.get(n).mode == BackendMode.LIVE for n in names)

    def _search_ttl(self, query: str) -> timedelta:
        if normalize_query(query) in self._popular:
            return self._config.popular_ttl
        return self._config.search_ttl

    async def close(self) -> None:
        """Cancel in-flight work and close backends."""
        await self._deduplicator.cancel_all()
        self._rate_limiter.cancel_all()
        await self._registry.close_all()
        logger.debug("SearchCoordinator closed")

    async def __aenter__(self) -> "SearchCoordinator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def health_status(self) -> dict[str, Any]:
        """Get health status of all components."""
        return {
            "backends": {
                name: self._registry.get(name).mode.value for name in self._registry.names
            },
            "cache": self._cache.get_stats().to_dict(),
            "circuit_breakers": self._circuit_breakers.get_all_status(),
            "open_circuits": self._circuit_breakers.get_open_circuits(),
            "rate_limiter": self._rate_limiter.get_status(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "quota": (await self._quota.status()).to_dict(),
        }
