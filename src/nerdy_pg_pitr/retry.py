from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, TypeVar
import logging
import time

from botocore.exceptions import ClientError, ConnectionError as BotoConnectionError
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")
_TRANSIENT_S3_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError", "ServiceUnavailable"}


class RetriesExhaustedError(RuntimeError):
    def __init__(self, *, operation: str, attempts: int, last_error: Exception) -> None:
        reason = str(last_error).strip() or last_error.__class__.__name__
        super().__init__(f"{operation} failed after {attempts} attempts: {reason}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.initial_delay_seconds
        for _ in range(max(0, self.max_attempts - 1)):
            yield min(delay, self.max_delay_seconds)
            delay *= self.multiplier


def call_with_retry(
    func: Callable[[], T],
    *,
    operation: str,
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` with exponential backoff.

    Non-retryable errors propagate unchanged. A retryable error that survives
    every attempt is wrapped in :class:`RetriesExhaustedError`.
    """
    classify = is_retryable or is_transient_error
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except Exception as error:  # pylint: disable=broad-except
            if not classify(error):
                raise
            delay = next(delays, None)
            if delay is None:
                raise RetriesExhaustedError(operation=operation, attempts=attempt, last_error=error) from error
            logger.info("retrying %s in %.1fs after attempt %d: %s", operation, delay, attempt, error)
            sleep(delay)


def is_transient_error(error: Exception) -> bool:
    if isinstance(error, ApiException):
        status = error.status or 0
        return status == 429 or status >= 500 or status == 0
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        return code in _TRANSIENT_S3_CODES or status == 429 or status >= 500
    return isinstance(error, (BotoConnectionError, Urllib3HTTPError, ConnectionError, TimeoutError))
