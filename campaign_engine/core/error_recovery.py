"""Error recovery mechanisms for transient failures."""

import asyncio
import logging
import random
import threading
import time
from datetime import datetime, timedelta
from functools import wraps
from typing import Callable, Any, Optional, Dict, List, Type

from .clock import utc_now
from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import get_logger, log_with_context


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior.

    Used both for in-process retries (``with_retry``) and for the durable
    backoff between message delivery attempts, where the delay is not slept
    but stored as the enrollment's next due time.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError, StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Add jitter to prevent thundering herd
            delay *= (0.5 + random.random() * 0.5)

        return delay


class ExponentialBackoff:
    """Deterministic backoff schedule for durable message retries.

    ``retry_count`` is the number of failures recorded so far, including the
    one just observed. The first retry waits ``base_delay``, each further one
    doubles, capped at ``max_delay``. Once ``retry_count`` exceeds
    ``max_retries`` the enrollment is failed instead of rescheduled.
    """

    def __init__(self, base_delay: float = 3600.0, max_delay: float = 86400.0, max_retries: int = 5):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.max_retries = max_retries
        self._config = RetryConfig(
            max_attempts=max_retries + 1,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=False
        )

    @property
    def base_delay(self) -> float:
        return self._config.base_delay

    @property
    def max_delay(self) -> float:
        return self._config.max_delay

    def exhausted(self, retry_count: int) -> bool:
        return retry_count > self.max_retries

    def delay_for(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self._config.get_delay(max(retry_count, 1)))

    def with_max_retries(self, max_retries: Optional[int]) -> "ExponentialBackoff":
        """Copy of this schedule with a per-node retry cap."""
        if max_retries is None or max_retries == self.max_retries:
            return self
        return ExponentialBackoff(self.base_delay, self.max_delay, max_retries)


class CircuitBreaker:
    """Circuit breaker pattern implementation for preventing cascading failures."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: Type[Exception] = Exception,
        name: str = "circuit_breaker",
        clock: Callable[[], datetime] = utc_now
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "closed"  # closed, open, half-open
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    def __call__(self, func: Callable) -> Callable:
        """Decorator to apply circuit breaker to a function."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        with self._lock:
            if self._state == "open":
                if self._should_attempt_reset():
                    self._state = "half-open"
                    logger.info(f"Circuit breaker '{self.name}' transitioning to half-open state")
                else:
                    reopen_at = self._last_failure_time + timedelta(seconds=self.recovery_timeout)
                    raise TransientError(
                        f"Circuit breaker '{self.name}' is open. Service unavailable until {reopen_at.isoformat()}"
                    )

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if circuit breaker should attempt to reset."""
        if self._last_failure_time is None:
            return True
        return self._clock() >= self._last_failure_time + timedelta(seconds=self.recovery_timeout)

    def _on_success(self):
        with self._lock:
            if self._state == "half-open":
                logger.info(f"Circuit breaker '{self.name}' reset to closed state")
            self._state = "closed"
            self._failure_count = 0

    def _on_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == "half-open" or self._failure_count >= self.failure_threshold:
                self._state = "open"
                log_with_context(
                    logger, logging.ERROR,
                    f"Circuit breaker '{self.name}' opened after {self._failure_count} failure(s)",
                    breaker=self.name, failures=self._failure_count
                )


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    operation = func.__name__
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not config.should_retry(e, attempt):
                _log_retry_exhausted(operation, e, attempt)
                raise

            delay = config.get_delay(attempt)
            log_with_context(
                logger, logging.WARNING,
                f"Retrying {operation} in {delay:.2f}s (attempt {attempt}/{config.max_attempts}): {e}",
                operation=operation, attempt=attempt, error_type=type(e).__name__
            )
            time.sleep(delay)

    _log_retry_exhausted(operation, last_exception, config.max_attempts)
    raise last_exception


def _log_retry_exhausted(operation: str, error: Exception, attempts: int):
    log_with_context(
        logger, logging.ERROR,
        f"{operation} failed after {attempts} attempt(s): {error}",
        operation=operation, attempts=attempts, error_type=type(error).__name__
    )


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("health_checker")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a health check function."""
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.info(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": utc_now().isoformat()
            }

        check_info = self.checks[name]
        start_time = time.time()

        try:
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(check_info["func"](), timeout=check_info["timeout"])
            else:
                result = check_info["func"]()

            duration = time.time() - start_time
            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round(duration * 1000, 2),
                "timestamp": utc_now().isoformat()
            }
            if isinstance(result, dict):
                check_result.update(result)

            self.last_results[name] = check_result
            return check_result

        except asyncio.TimeoutError:
            duration = time.time() - start_time
            result = {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round(duration * 1000, 2),
                "timestamp": utc_now().isoformat()
            }
            self.last_results[name] = result
            return result

        except Exception as e:
            duration = time.time() - start_time
            result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round(duration * 1000, 2),
                "timestamp": utc_now().isoformat()
            }
            self.last_results[name] = result
            return result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run all registered health checks."""
        results = {}
        overall_status = "healthy"

        for name in self.checks:
            result = await self.run_check(name)
            results[name] = result
            if result["status"] != "healthy":
                overall_status = "unhealthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": utc_now().isoformat()
        }


# Global health checker instance
health_checker = HealthChecker()
