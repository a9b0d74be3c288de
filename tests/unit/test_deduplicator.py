"""Unit tests for request deduplication."""

import asyncio

import pytest

from pricemesh.services.deduplicator import (
    RequestDeduplicator,
    generate_details_key,
    generate_search_key,
)
from pricemesh.services.types import (
    DetailOptions,
    FilterType,
    ProductFilter,
    SearchOptions,
    SortOrder,
)


async def settle():
    """Let started tasks run up to their first real suspension."""
    for _ in range(3):
        await asyncio.sleep(0)


class GatedFactory:
    """Computation that blocks until released, counting invocations."""

    def __init__(self, result="done"):
        self.result = result
        self.calls = 0
        self.gate = asyncio.Event()
        self.error: Exception | None = None
        self.cancelled = False

    async def __call__(self):
        self.calls += 1
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.result


class TestJoinOrStart:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        factory = GatedFactory(result={"products": [1, 2]})

        tasks = [asyncio.create_task(dedup.join_or_start("k", factory)) for _ in range(5)]
        await settle()
        assert dedup.get_in_flight_count() == 1

        factory.gate.set()
        results = await asyncio.gather(*tasks)

        assert factory.calls == 1
        assert all(r is results[0] for r in results)
        stats = dedup.get_stats()
        assert stats.unique == 1
        assert stats.joined == 4
        assert dedup.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_error_reaches_every_caller(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        factory = GatedFactory()
        factory.error = RuntimeError("upstream exploded")

        tasks = [asyncio.create_task(dedup.join_or_start("k", factory)) for _ in range(3)]
        await settle()
        factory.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert factory.calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert dedup.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_completed_results_are_not_reused(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            return calls

        assert await dedup.join_or_start("k", compute) == 1
        assert await dedup.join_or_start("k", compute) == 2

    @pytest.mark.asyncio
    async def test_different_keys_run_independently(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        first = GatedFactory("a")
        second = GatedFactory("b")

        t1 = asyncio.create_task(dedup.join_or_start("k1", first))
        t2 = asyncio.create_task(dedup.join_or_start("k2", second))
        await settle()
        first.gate.set()
        second.gate.set()

        assert await asyncio.gather(t1, t2) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stale_entry_is_not_joined(self, fake_clock):
        dedup = RequestDeduplicator(max_join_window=10.0, clock=fake_clock)
        old = GatedFactory("old")
        fresh = GatedFactory("fresh")

        t_old = asyncio.create_task(dedup.join_or_start("k", old))
        await settle()
        fake_clock.advance(10.0)
        t_fresh = asyncio.create_task(dedup.join_or_start("k", fresh))
        await settle()

        assert fresh.calls == 1
        fresh.gate.set()
        old.gate.set()
        assert await t_fresh == "fresh"
        assert await t_old == "old"
        assert dedup.get_stats().unique == 2


class TestCancellation:

    @pytest.mark.asyncio
    async def test_one_cancelled_waiter_does_not_disturb_others(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        factory = GatedFactory("ok")

        leaving = asyncio.create_task(dedup.join_or_start("k", factory))
        staying = asyncio.create_task(dedup.join_or_start("k", factory))
        await settle()

        leaving.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leaving

        factory.gate.set()
        assert await staying == "ok"
        assert not factory.cancelled

    @pytest.mark.asyncio
    async def test_last_waiter_cancelled_cancels_computation(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        factory = GatedFactory()

        task = asyncio.create_task(dedup.join_or_start("k", factory))
        await settle()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await settle()

        assert factory.cancelled
        assert dedup.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_reap_expired_cancels_old_computations(self, fake_clock):
        dedup = RequestDeduplicator(max_join_window=60.0, clock=fake_clock)
        factory = GatedFactory()

        task = asyncio.create_task(dedup.join_or_start("k", factory))
        await settle()

        assert await dedup.reap_expired() == 0
        fake_clock.advance(60.0)
        assert await dedup.reap_expired() == 1

        with pytest.raises(asyncio.CancelledError):
            await task
        assert dedup.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_cancel_and_cancel_all(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        tasks = [
            asyncio.create_task(dedup.join_or_start(key, GatedFactory()))
            for key in ("a", "b", "c")
        ]
        await settle()

        assert await dedup.cancel("a")
        assert not await dedup.cancel("missing")
        assert await dedup.cancel_all() == 2

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, asyncio.CancelledError) for r in results)

    @pytest.mark.asyncio
    async def test_stats_report_oldest_age(self, fake_clock):
        dedup = RequestDeduplicator(clock=fake_clock)
        factory = GatedFactory()
        task = asyncio.create_task(dedup.join_or_start("k", factory))
        await settle()

        fake_clock.advance(12.0)
        stats = dedup.get_stats()

        assert stats.in_flight == 1
        assert stats.oldest_age == 12.0
        factory.gate.set()
        await task


class TestKeys:

    def test_search_key_ignores_backend_order_and_query_case(self):
        options = SearchOptions()

        assert generate_search_key("Widget  100", ["b", "a"], options) == generate_search_key(
            "widget 100", ["a", "b", "a"], options
        )

    def test_search_key_ignores_filter_order(self):
        brand = ProductFilter(type=FilterType.BRAND, value="Acme")
        stock = ProductFilter(type=FilterType.IN_STOCK_ONLY, value="true")

        assert generate_search_key(
            "widget", ["a"], SearchOptions(filters=(brand, stock))
        ) == generate_search_key("widget", ["a"], SearchOptions(filters=(stock, brand)))

    def test_search_key_depends_on_backends_and_options(self):
        base = generate_search_key("widget", ["a", "b"], SearchOptions())

        assert base != generate_search_key("widget", ["a"], SearchOptions())
        assert base != generate_search_key(
            "widget", ["a", "b"], SearchOptions(sort_order=SortOrder.RATING)
        )
        assert base != generate_search_key("gadget", ["a", "b"], SearchOptions())

    def test_details_key(self):
        options = DetailOptions()

        assert generate_details_key("1", "a", options) == generate_details_key("1", "a", options)
        assert generate_details_key("1", "a", options) != generate_details_key("1", "b", options)
        assert generate_details_key("1", "a", options) != generate_details_key(
            "1", "a", DetailOptions(include_related_products=False)
        )
