"""Fixed-delay retry policy shared by every outbound call site."""

from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from app.logging_config import get_logger

logger = get_logger("retry")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (httpx.TransportError,)
# the request never left the client, so re-sending a POST cannot duplicate it
CONNECT_ERRORS: tuple[type[BaseException], ...] = (httpx.ConnectError, httpx.ConnectTimeout)


def _log_retry(operation: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        logger.info(
            f"{operation} attempt {state.attempt_number}/{max_attempts} failed, retrying",
            extra={
                "context": {
                    "operation": operation,
                    "error": str(state.outcome.exception()),
                    "delay": state.next_action.sleep if state.next_action else None,
                }
            },
        )

    return before_sleep


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    def retrying(
        self,
        retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
        operation: str = "call",
        sleep: Optional[Callable[[float], None]] = None,
    ) -> Retrying:
        """tenacity controller for this policy; the last exception is re-raised."""
        options = {"sleep": sleep} if sleep is not None else {}
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay_seconds),
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_retry(operation, self.max_attempts),
            reraise=True,
            **options,
        )


NO_RETRY = RetryPolicy(max_attempts=1, delay_seconds=0.0)


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    operation: str = "call",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    try:
        return policy.retrying(retry_on, operation, sleep)(func)
    except retry_on as exc:
        logger.warning(
            f"{operation} failed after {policy.max_attempts} attempts",
            extra={"context": {"operation": operation, "error": str(exc)}},
        )
        raise
