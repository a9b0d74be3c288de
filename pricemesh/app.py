"""
Application wiring.

Every component is constructed once here and handed to the components
that use it; nothing in the package keeps module-level state.
"""

from dataclasses import dataclass

from loguru import logger

from pricemesh.datasource.credentials import EnvCredentialProvider
from pricemesh.datasource.registry import BackendRegistry, load_backends
from pricemesh.datastore.engine import Database
from pricemesh.services.aggregator import ProductAggregator, ProductMatcher
from pricemesh.services.cache import TieredCache
from pricemesh.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from pricemesh.services.coordinator import CoordinatorConfig, SearchCoordinator
from pricemesh.services.deduplicator import RequestDeduplicator
from pricemesh.services.quota import MonthlyUsageTracker, QuotaGovernor
from pricemesh.services.rate_limiter import SlidingWindowRateLimiter
from pricemesh.services.scheduler import MaintenanceScheduler
from pricemesh.settings import Settings


@dataclass
class Application:
    """All long-lived components. Use as an async context manager."""

    settings: Settings
    database: Database
    registry: BackendRegistry
    rate_limiter: SlidingWindowRateLimiter
    circuit_breakers: CircuitBreakerRegistry
    cache: TieredCache
    deduplicator: RequestDeduplicator
    quota: QuotaGovernor
    coordinator: SearchCoordinator
    scheduler: MaintenanceScheduler

    async def start(self) -> None:
        await self.database.init()
        await self.quota.load()
        self.scheduler.start()
        logger.info(f"pricemesh started with backends: {', '.join(self.registry.names)}")

    async def stop(self) -> None:
        if self.scheduler.is_running():
            self.scheduler.stop()
        await self.coordinator.close()
        await self.database.close()
        logger.info("pricemesh stopped")

    async def __aenter__(self) -> "Application":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()


def build_application(
    settings: Settings,
    registry: BackendRegistry | None = None,
) -> Application:
    """Construct every component from settings."""
    if registry is None:
        registry = load_backends(
            settings.backends_config_path,
            credentials=EnvCredentialProvider(prefix=settings.credential_prefix),
        )

    database = Database(settings.database_url, echo=settings.database_echo)

    rate_limiter = SlidingWindowRateLimiter(
        configs=registry.rate_limit_configs(),
        queue_timeout=settings.rate_limit_queue_timeout_seconds,
        debug=settings.debug,
    )
    circuit_breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(
            failure_threshold=settings.breaker_failure_threshold,
            rolling_window=settings.breaker_rolling_window_seconds,
            cool_down=settings.breaker_cool_down_seconds,
        )
    )
    cache = TieredCache(
        cache_dir=settings.cache_dir,
        memory_limit_bytes=settings.cache_memory_limit_bytes,
        memory_max_entries=settings.cache_memory_max_entries,
        disk_limit_bytes=settings.cache_disk_limit_bytes,
        default_ttl=settings.cache_default_ttl,
        debug=settings.debug,
    )
    deduplicator = RequestDeduplicator(
        max_join_window=settings.dedup_max_join_window_seconds,
        debug=settings.debug,
    )
    quota = QuotaGovernor(
        daily_limit=settings.quota_daily_limit,
        hard_stop_percent=settings.quota_hard_stop_percent,
        monthly=MonthlyUsageTracker(settings.quota_monthly_limit, database=database),
        database=database,
        protection_enabled=settings.quota_protection_enabled,
        fallback_mode_enabled=settings.quota_fallback_mode,
    )
    aggregator = ProductAggregator(
        multi_source_name=settings.multi_source_name,
        matcher=ProductMatcher(settings.similarity_threshold),
    )
    coordinator = SearchCoordinator(
        registry,
        rate_limiter,
        circuit_breakers,
        cache,
        deduplicator,
        quota,
        aggregator=aggregator,
        config=CoordinatorConfig(
            search_ttl=settings.search_ttl,
            popular_ttl=settings.popular_ttl,
            details_ttl=settings.details_ttl,
            popular_queries=settings.popular_queries,
            request_timeout=settings.backend_request_timeout,
        ),
    )
    scheduler = MaintenanceScheduler(
        rate_limiter,
        deduplicator,
        cache,
        pump_interval=settings.rate_limit_pump_interval_seconds,
        queue_reap_interval=settings.rate_limit_cleanup_interval_seconds,
        dedup_reap_interval=settings.dedup_reap_interval_seconds,
        cache_maintenance_interval=settings.cache_maintenance_interval_seconds,
    )

    return Application(
        settings=settings,
        database=database,
        registry=registry,
        rate_limiter=rate_limiter,
        circuit_breakers=circuit_breakers,
        cache=cache,
        deduplicator=deduplicator,
        quota=quota,
        coordinator=coordinator,
        scheduler=scheduler,
    )
