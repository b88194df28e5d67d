"""
Bounded retries for outbound calls (payment provider, mail).

Each call gets at most ``UPSTREAM_RETRY_ATTEMPTS`` extra attempts with
exponential backoff and full jitter; after that the caller sees
``UpstreamUnavailableError``.
"""
import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from core.config import settings
from core.exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float) -> float:
    """Full-jitter delay for the given zero-based retry attempt."""
    return random.uniform(0, base * (2 ** attempt))


def call_with_retry(
    fn: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    label: str,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    retries = settings.UPSTREAM_RETRY_ATTEMPTS if attempts is None else attempts
    base = settings.UPSTREAM_RETRY_BASE_S if base_delay is None else base_delay

    for attempt in range(retries + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == retries:
                logger.error(
                    f"{label} failed after {retries + 1} attempts: {type(e).__name__}",
                    extra={"extra_fields": {"upstream": label, "error": str(e)}},
                )
                raise UpstreamUnavailableError() from e
            delay = backoff_delay(attempt, base)
            logger.warning(f"{label} attempt {attempt + 1} failed, retrying in {delay:.2f}s")
            sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise UpstreamUnavailableError()
