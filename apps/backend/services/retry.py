"""Retry policy and per-call timeouts for external dependencies."""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable

from apps.backend.services.errors import PortalEngineError, TransientDependencyError

logger = logging.getLogger(__name__)

_CALL_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="dep-call")


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, PortalEngineError):
        return bool(exc.retryable)
    return False


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable)
    sleep: Callable[[float], None] = field(default=time.sleep)

    def delay_for(self, attempt: int) -> float:
        """Экспоненциальная задержка перед попыткой attempt (1-based, после первой неудачи)."""
        if attempt <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def run(self, fn: Callable[[], Any], *, on_retry: Callable[[int, BaseException], None] | None = None) -> Any:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if not self.retryable(exc) or attempt >= attempts:
                    raise
                if on_retry:
                    on_retry(attempt, exc)
                delay = self.delay_for(attempt)
                logger.warning("retry_scheduled attempt=%s delay=%.2f error=%s", attempt, delay, str(exc)[:200])
                if delay:
                    self.sleep(delay)
        raise RuntimeError("unreachable")


def call_with_timeout(fn: Callable[[], Any], timeout: float, *, name: str = "call") -> Any:
    """Run fn with an upper bound on wall time; a stuck call becomes a transient error."""
    fut = _CALL_EXECUTOR.submit(fn)
    try:
        return fut.result(timeout=timeout)
    except FutureTimeoutError:
        fut.cancel()
        raise TransientDependencyError(f"{name}_timeout", code="timeout")
