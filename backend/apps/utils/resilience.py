# apps/utils/resilience.py
import logging
from functools import wraps
from django.core.cache import cache

logger = logging.getLogger(__name__)


class CircuitBreakerOpenException(Exception):
    pass


class CircuitBreaker:
    """
    Cache-backed breaker shared by every worker process.

    `failure_threshold` counted failures inside `recovery_timeout` seconds
    open the circuit for `recovery_timeout` seconds; calls made while it is
    open raise CircuitBreakerOpenException without touching the service.
    Exceptions outside `counted_exceptions` (a 4xx from a healthy carrier,
    say) propagate without being counted.
    """
    def __init__(self, service_name, failure_threshold=5, recovery_timeout=60, counted_exceptions=(Exception,)):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.counted_exceptions = counted_exceptions
        self.key_failures = f"cb:fails:{service_name}"
        self.key_open = f"cb:open:{service_name}"

    def __call__(self, func):
        @wraps(func)
        def guarded(*args, **kwargs):
            if self._open_or_unknown():
                logger.warning(f"Circuit open for {self.service_name}, failing fast")
                raise CircuitBreakerOpenException(f"{self.service_name} is temporarily unavailable")
            try:
                return func(*args, **kwargs)
            except self.counted_exceptions:
                self._record_failure()
                raise
        return guarded

    def is_open(self):
        return bool(cache.get(self.key_open))

    def reset(self):
        cache.delete_many([self.key_open, self.key_failures])

    def _open_or_unknown(self):
        # An unreachable cache must not take the carrier down with it
        try:
            return self.is_open()
        except Exception as e:
            logger.error(f"Circuit state for {self.service_name} unreadable: {e}")
            return False

    def _record_failure(self):
        try:
            cache.add(self.key_failures, 0, timeout=self.recovery_timeout)
            failures = cache.incr(self.key_failures)
        except Exception as e:
            logger.error(f"Could not count failure for {self.service_name}: {e}")
            return

        if failures >= self.failure_threshold:
            logger.critical(f"Circuit opened for {self.service_name} after {failures} failures")
            cache.set(self.key_open, "OPEN", timeout=self.recovery_timeout)
            cache.delete(self.key_failures)
