"""Explicit retry/backoff policy shared by classification and stage execution."""
import time
from typing import Any, Callable, Optional, Tuple, Type

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)

from errors import PermanentAPIError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class RetryPolicy:
    """Bounded exponential backoff around a callable.

    Delay before attempt n+1 is ``base_delay * multiplier ** (n - 1)``
    capped at ``max_delay``. When every attempt fails with a retryable
    error, PermanentAPIError is raised with the last error as its cause.
    Errors outside ``retry_on`` (or matched by ``never_retry``) propagate
    immediately.
    """

    def __init__(
        self,
        max_attempts: int = config.RETRY_MAX_ATTEMPTS,
        base_delay: float = config.RETRY_BASE_DELAY,
        max_delay: float = config.RETRY_MAX_DELAY,
        multiplier: float = config.RETRY_BACKOFF_MULTIPLIER,
        retry_on: Tuple[Type[BaseException], ...] = (),
        never_retry: Tuple[Type[BaseException], ...] = (),
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.retry_on = retry_on
        self.never_retry = never_retry
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def _is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on) and not isinstance(exc, self.never_retry)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{self.max_attempts} failed: {exc}. "
            f"Retrying in {retry_state.next_action.sleep:.1f}s..."
        )

    def call(self, func: Callable[..., Any], *args, label: Optional[str] = None, **kwargs) -> Any:
        """Run `func` under this policy and return its result."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=lambda retry_state: self.delay_for(retry_state.attempt_number),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=self._log_retry,
            sleep=self.sleep,
            reraise=False
        )
        try:
            return retrying(func, *args, **kwargs)
        except RetryError as e:
            last = e.last_attempt.exception()
            what = label or getattr(func, "__name__", "call")
            raise PermanentAPIError(
                f"{what} failed after {self.max_attempts} attempts: {last}"
            ) from last
