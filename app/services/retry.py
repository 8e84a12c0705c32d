"""
Retry with capped exponential backoff for provider calls.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from app.core.config import settings
from app.core.exceptions import FatalGenerationError, TransientGenerationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 10.0
    max_delay: float = 120.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.GENERATION_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return min(delay, self.max_delay)


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "generation",
) -> T:
    """
    Call `operation` until it succeeds, retrying TransientGenerationError.

    FatalGenerationError propagates immediately. When the attempt ceiling is
    reached the last transient error is escalated to FatalGenerationError.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except TransientGenerationError as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s failed after %d attempts: %s", description, attempt, e.message
                )
                raise FatalGenerationError(
                    f"{description[:1].upper()}{description[1:]} failed after {attempt} attempts: {e.message}",
                    attempts=attempt,
                ) from e

            delay = policy.delay_for(attempt, e.retry_after)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                description,
                attempt,
                policy.max_attempts,
                e.message,
                delay,
            )
            sleep(delay)
