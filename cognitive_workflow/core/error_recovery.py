"""Retry handling for transient node failures, and component health checks."""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

from ..models.core import RetryPolicy
from .exceptions import is_transient
from .logging import get_logger, log_with_context

logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 1,
        base_delay: float = 0.0,
        exponential_base: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = False
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.exponential_base = exponential_base
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_policy(cls, policy: RetryPolicy, jitter: bool = False) -> "RetryConfig":
        return cls(
            max_attempts=policy.max_attempts,
            base_delay=policy.backoff_seconds,
            exponential_base=policy.backoff_multiplier,
            jitter=jitter,
        )

    def should_retry(self, exception: BaseException, attempt: int) -> bool:
        """Only transient failures are retried, and only while attempts remain."""
        if attempt >= self.max_attempts:
            return False
        return is_transient(exception)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay after the given (1-based) attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    operation: str,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> Any:
    """Await ``func()`` until it succeeds or a non-retryable failure occurs.

    ``on_attempt`` is told the attempt number before each call.
    """
    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await func()
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    log_with_context(
                        logger, logging.ERROR,
                        f"Giving up on {operation} after {attempt} attempts",
                        operation=operation,
                        error_type=type(e).__name__,
                        error_message=str(e),
                        attempts_used=attempt,
                    )
                raise

            delay = config.get_delay(attempt)
            log_with_context(
                logger, logging.WARNING,
                f"Retry {attempt}/{config.max_attempts - 1} for {operation} in {delay:.2f}s",
                operation=operation,
                error_type=type(e).__name__,
                error_message=str(e),
                attempt=attempt,
                max_attempts=config.max_attempts,
            )
            await asyncio.sleep(delay)


class HealthCheck(NamedTuple):
    func: Callable[[], Any]
    timeout: float


class HealthChecker:
    """Named component checks run together for the health endpoint.

    A check passes when it returns; a returned dict is merged into its result
    and a returned string becomes the message. Async checks are bounded by
    their timeout.
    """

    def __init__(self):
        self.checks: Dict[str, HealthCheck] = {}

    def register_check(self, name: str, check_func: Callable[[], Any], timeout: float = 5.0):
        self.checks[name] = HealthCheck(check_func, timeout)

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        if check is None:
            return _check_result("error", 0.0, message=f"Health check '{name}' not found")

        started = time.perf_counter()
        try:
            if asyncio.iscoroutinefunction(check.func):
                outcome = await asyncio.wait_for(check.func(), timeout=check.timeout)
            else:
                outcome = check.func()
        except asyncio.TimeoutError:
            return _check_result("timeout", started, message=f"Timed out after {check.timeout}s")
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            return _check_result("unhealthy", started, message=str(e), error_type=type(e).__name__)

        result = _check_result("healthy", started, message=outcome if isinstance(outcome, str) else "ok")
        if isinstance(outcome, dict):
            result.update(outcome)
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        names = list(self.checks)
        results = dict(zip(names, await asyncio.gather(*(self.run_check(name) for name in names))))
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def _check_result(status: str, started: float, **fields) -> Dict[str, Any]:
    elapsed = time.perf_counter() - started if started else 0.0
    return {
        "status": status,
        "duration_ms": round(elapsed * 1000, 2),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **fields,
    }
