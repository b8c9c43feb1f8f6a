"""Tests for resilience patterns (CircuitBreaker, ExponentialBackoff)."""

import time

import pytest

from aur_updater.core.resilience import CircuitBreaker, ExponentialBackoff


# ═══════════════════════════════════════════
# ExponentialBackoff Tests
# ═══════════════════════════════════════════


class TestExponentialBackoff:
    def test_should_retry_within_limit(self):
        backoff = ExponentialBackoff(max_retries=3)
        assert backoff.should_retry(0) is True
        assert backoff.should_retry(2) is True

    def test_should_not_retry_at_limit(self):
        backoff = ExponentialBackoff(max_retries=3)
        assert backoff.should_retry(3) is False

    @pytest.mark.parametrize("attempt,base", [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0)])
    def test_delay_within_jitter(self, attempt, base):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0)
        delay = backoff.calculate_delay(attempt)
        assert base * 0.75 <= delay <= base * 1.25

    def test_delay_capped_at_max(self):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=10.0, max_retries=10)
        assert backoff.calculate_delay(100) <= 10.0 * 1.25

    def test_delay_never_negative(self):
        backoff = ExponentialBackoff(base_delay=0.1, max_delay=1.0)
        for attempt in range(10):
            assert backoff.calculate_delay(attempt) >= 0


# ═══════════════════════════════════════════
# CircuitBreaker Tests
# ═══════════════════════════════════════════


class TestCircuitBreaker:
    def test_initially_closed(self):
        cb = CircuitBreaker()
        assert cb.is_open("hub.gitmirror.com") is False

    def test_default_threshold_is_three(self):
        cb = CircuitBreaker()
        cb.record_failure("mirror")
        cb.record_failure("mirror")
        assert cb.is_open("mirror") is False
        cb.record_failure("mirror")
        assert cb.is_open("mirror") is True

    def test_success_resets_counter(self):
        cb = CircuitBreaker(failure_threshold=3)
        cb.record_failure("mirror")
        cb.record_failure("mirror")
        cb.record_success("mirror")
        assert "mirror" not in cb.failures
        cb.record_failure("mirror")
        assert cb.is_open("mirror") is False

    def test_success_closes_opened_circuit(self):
        cb = CircuitBreaker(failure_threshold=1)
        cb.record_failure("mirror")
        assert cb.is_open("mirror") is True
        cb.record_success("mirror")
        assert cb.is_open("mirror") is False

    def test_hosts_independent(self):
        cb = CircuitBreaker(failure_threshold=2)
        cb.record_failure("a.example")
        cb.record_failure("a.example")
        assert cb.is_open("a.example") is True
        assert cb.is_open("b.example") is False

    def test_timeout_resets_circuit(self):
        cb = CircuitBreaker(failure_threshold=2, timeout=60.0)
        cb.record_failure("mirror")
        cb.record_failure("mirror")
        assert cb.is_open("mirror") is True
        cb.opened_at["mirror"] = time.monotonic() - 61.0
        assert cb.is_open("mirror") is False
        assert cb.failures["mirror"] == 0
