"""Unit tests for circuit breaker."""

from pricemesh.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


def make_breaker(clock, threshold=3, window=60.0, cool_down=30.0):
    return CircuitBreaker(
        "acme",
        CircuitBreakerConfig(
            failure_threshold=threshold, rolling_window=window, cool_down=cool_down
        ),
        clock=clock,
    )


class TestCircuitBreaker:

    def test_starts_closed(self, fake_clock):
        cb = make_breaker(fake_clock)

        assert cb.state == CircuitState.CLOSED
        assert cb.can_execute()
        assert cb.get_time_until_reset() is None

    def test_opens_at_threshold(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=3)

        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        assert not cb.can_execute()
        assert cb.get_time_until_reset() == 30.0

    def test_failures_outside_window_are_forgotten(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=3, window=60.0)

        cb.record_failure()
        cb.record_failure()
        fake_clock.advance(61.0)
        cb.record_failure()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1

    def test_success_clears_failures_when_closed(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=3)

        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        cb.record_failure()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1

    def test_half_open_after_cool_down(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1, cool_down=30.0)
        cb.record_failure()

        fake_clock.advance(29.9)
        assert cb.state == CircuitState.OPEN

        fake_clock.advance(0.1)
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_admits_exactly_one_trial(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        cb.record_failure()
        fake_clock.advance(30.0)

        assert cb.can_execute()
        assert not cb.can_execute()
        assert not cb.can_execute()

    def test_trial_success_closes(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        cb.record_failure()
        fake_clock.advance(30.0)
        assert cb.can_execute()

        cb.record_success()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.can_execute()

    def test_trial_failure_reopens_and_restarts_cool_down(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1, cool_down=30.0)
        cb.record_failure()
        fake_clock.advance(30.0)
        assert cb.can_execute()

        fake_clock.advance(5.0)
        cb.record_failure()

        assert cb.state == CircuitState.OPEN
        assert cb.get_time_until_reset() == 30.0
        fake_clock.advance(29.0)
        assert cb.state == CircuitState.OPEN

    def test_released_trial_can_be_claimed_again(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        cb.record_failure()
        fake_clock.advance(30.0)
        assert cb.can_execute()

        cb.release_trial()

        assert cb.state == CircuitState.HALF_OPEN
        assert cb.can_execute()

    def test_outcomes_from_before_half_open_are_ignored(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        assert cb.can_execute()
        old_call = cb.generation

        cb.record_failure()
        fake_clock.advance(30.0)
        assert cb.can_execute()
        trial = cb.generation

        cb.record_success(old_call)
        cb.release_trial(old_call)

        assert cb.state == CircuitState.HALF_OPEN
        assert not cb.can_execute()

        cb.record_success(trial)
        assert cb.state == CircuitState.CLOSED

    def test_failure_tagged_with_previous_state_is_ignored(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        cb.record_failure()
        fake_clock.advance(30.0)
        assert cb.can_execute()
        trial = cb.generation
        cb.record_success(trial)

        cb.record_failure(trial)

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_each_transition_bumps_generation(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        seen = [cb.generation]

        cb.record_failure()
        seen.append(cb.generation)
        fake_clock.advance(30.0)
        assert cb.state == CircuitState.HALF_OPEN
        seen.append(cb.generation)
        cb.record_success()
        seen.append(cb.generation)

        assert seen == [0, 1, 2, 3]

    def test_reset(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        cb.record_failure()

        cb.reset()

        assert cb.state == CircuitState.CLOSED
        assert cb.get_status()["last_failure"] is None

    def test_status(self, fake_clock):
        cb = make_breaker(fake_clock, threshold=1)
        cb.record_failure()

        status = cb.get_status()

        assert status["service_id"] == "acme"
        assert status["state"] == "OPEN"
        assert status["failure_count"] == 1
        assert status["opened_at"] is not None
        assert status["time_until_reset"] == 30.0


class TestCircuitBreakerRegistry:

    def test_breakers_are_per_service(self, fake_clock):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1), clock=fake_clock
        )

        registry.record_failure("a")

        assert not registry.can_execute("a")
        assert registry.can_execute("b")
        assert registry.get_open_circuits() == ["a"]

    def test_configure_overrides_default(self, fake_clock):
        registry = CircuitBreakerRegistry(clock=fake_clock)
        registry.configure("flaky", CircuitBreakerConfig(failure_threshold=2))

        registry.record_failure("flaky")
        registry.record_failure("flaky")

        assert registry.get("flaky").state == CircuitState.OPEN
        assert registry.get("other").config.failure_threshold == 5

    def test_reset_single_and_all(self, fake_clock):
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1), clock=fake_clock
        )
        registry.record_failure("a")
        registry.record_failure("b")

        assert registry.reset("a")
        assert not registry.reset("missing")
        assert registry.get_open_circuits() == ["b"]

        registry.reset_all()
        assert registry.get_open_circuits() == []
        assert set(registry.get_all_status()) == {"a", "b"}
