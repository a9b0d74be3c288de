"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from pricemesh.datasource.base import BackendMode, BaseBackend
from pricemesh.datasource.registry import BackendRegistry
from pricemesh.services.aggregator import ProductAggregator
from pricemesh.services.cache import TieredCache
from pricemesh.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from pricemesh.services.coordinator import CoordinatorConfig, SearchCoordinator
from pricemesh.services.deduplicator import RequestDeduplicator
from pricemesh.services.errors import BackendError, BackendErrorKind
from pricemesh.services.quota import QuotaGovernor
from pricemesh.services.rate_limiter import RateLimitConfig, SlidingWindowRateLimiter
from pricemesh.services.types import Product

REPO_ROOT = Path(__file__).resolve().parent.parent


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, initial_time: float = 1000.0):
        self.t = initial_time

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeWallClock:
    """Timezone-aware wall clock advanced by hand."""

    def __init__(self, initial: datetime | None = None):
        self.current = initial or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeCalendar:
    """``date.today`` replacement."""

    def __init__(self, initial: date = date(2024, 6, 1)):
        self.current = initial

    def __call__(self) -> date:
        return self.current

    def next_day(self) -> None:
        self.current += timedelta(days=1)


class ScriptedBackend(BaseBackend):
    """In-test backend whose behaviour is set per test."""

    def __init__(
        self,
        name: str,
        products: list[Product] | None = None,
        mode: BackendMode = BackendMode.FIXTURE,
        delay: float = 0.0,
    ):
        super().__init__(name)
        self._mode = mode
        self.products = [p.model_copy(update={"source_name": name}) for p in products or []]
        self.delay = delay
        self.error: Exception | None = None
        self.search_calls: list[str] = []
        self.details_calls: list[str] = []
        self.related: list[Product] = []
        self.closed = False

    @property
    def mode(self) -> BackendMode:
        return self._mode

    def is_configured(self) -> bool:
        return True

    async def search(self, query: str) -> list[Product]:
        self.search_calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.products)

    async def details(self, product_id: str) -> Product:
        self.details_calls.append(product_id)
        if self.error is not None:
            raise self.error
        for product in self.products:
            if product.id == product_id:
                return product
        raise BackendError(self.name, BackendErrorKind.NO_DATA, product_id)

    async def related_products(self, product_id: str) -> list[Product]:
        return list(self.related)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def make_product() -> Callable[..., Product]:
    """Factory for products with sensible defaults."""

    def _make(
        id: str = "p-1",
        name: str = "Widget 100",
        source_name: str = "alpha",
        **kwargs,
    ) -> Product:
        return Product(id=id, name=name, source_name=source_name, **kwargs)

    return _make


@pytest.fixture
def scripted_backend() -> type[ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture
def coordinator_factory(tmp_path, fake_clock, wall_clock, calendar):
    """Build a coordinator around the given backends with fresh components."""

    def _build(
        backends: list[BaseBackend],
        rate_limit: RateLimitConfig | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        quota: QuotaGovernor | None = None,
        config: CoordinatorConfig | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> SearchCoordinator:
        registry = BackendRegistry()
        for backend in backends:
            registry.register(backend)

        return SearchCoordinator(
            registry,
            limiter
            or SlidingWindowRateLimiter(
                default_config=rate_limit
                or RateLimitConfig(
                    requests_per_second=100,
                    requests_per_minute=1000,
                    requests_per_hour=10000,
                    queue_size=100,
                ),
                clock=fake_clock,
            ),
            breakers or CircuitBreakerRegistry(breaker_config, clock=fake_clock),
            TieredCache(cache_dir=tmp_path / "cache", now=wall_clock),
            RequestDeduplicator(clock=fake_clock),
            quota or QuotaGovernor(daily_limit=100, today=calendar),
            aggregator=ProductAggregator(),
            config=config or CoordinatorConfig(request_timeout=1.0),
            now=wall_clock,
        )

    return _build
