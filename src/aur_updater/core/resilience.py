"""
Retry helpers for network operations.

ExponentialBackoff spaces out retries of AUR RPC queries. CircuitBreaker
tracks failing mirror hosts so a run stops routing downloads through a
mirror that keeps failing and goes straight to the upstream URL instead.
"""

import logging
import random
import time
from collections import defaultdict

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Exponential retry delays with ±25% jitter."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0, max_retries: int = 3):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        jitter = delay * 0.25 * (random.random() * 2 - 1)
        return max(0.0, delay + jitter)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


class CircuitBreaker:
    """
    Per-host failure counter.

    Once a host reaches ``failure_threshold`` consecutive failures its circuit
    opens and callers should bypass it until ``timeout`` seconds have passed.
    """

    def __init__(self, failure_threshold: int = 3, timeout: float = 300.0):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.failures: dict[str, int] = defaultdict(int)
        self.opened_at: dict[str, float] = {}

    def record_failure(self, host: str) -> None:
        self.failures[host] += 1
        if self.failures[host] >= self.failure_threshold and host not in self.opened_at:
            self.opened_at[host] = time.monotonic()
            logger.warning(f"Mirror {host} disabled after {self.failures[host]} failures")

    def record_success(self, host: str) -> None:
        self.failures.pop(host, None)
        if self.opened_at.pop(host, None) is not None:
            logger.info(f"Mirror {host} re-enabled")

    def is_open(self, host: str) -> bool:
        """True while ``host`` should be bypassed."""
        opened = self.opened_at.get(host)
        if opened is None:
            return False
        if time.monotonic() - opened > self.timeout:
            del self.opened_at[host]
            self.failures[host] = 0
            logger.info(f"Mirror {host} retried after timeout")
            return False
        return True
