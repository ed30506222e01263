import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger("adledger.utils.retry")

T = TypeVar("T")


def with_backoff(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter_ratio: float = 0.1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn, retrying with exponential backoff and jitter.
    - retry_on: exception types that trigger another attempt
    - should_retry: optional predicate for finer control
    - sleep: injectable for tests
    The last exception is re-raised once attempts are exhausted.
    """
    last_exc: Optional[BaseException] = None
    for i in range(attempts):
        try:
            return fn()
        except retry_on as e:
            if should_retry and not should_retry(e):
                raise
            last_exc = e
            if i == attempts - 1:
                break
            delay = min(max_delay, base_delay * (2 ** i))
            delay *= 1.0 + random.uniform(-jitter_ratio, jitter_ratio)
            logger.warning(
                "attempt %s/%s failed with %s; retrying in %.2fs",
                i + 1,
                attempts,
                type(e).__name__,
                delay,
            )
            sleep(max(0.0, delay))
    assert last_exc is not None
    raise last_exc
