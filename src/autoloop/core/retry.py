# src/autoloop/core/retry.py
"""
Bounded retry-with-backoff for Oracle calls.

Each component owns its own policy; there is no shared rate-limit state.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Any, Optional, TypeVar

from autoloop.api.client import OracleError, AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed attempt count with exponential delay between attempts."""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.multiplier < 1:
            raise ValueError("base_delay must be >= 0 and multiplier >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        """Create from the 'retry' section of a loaded config."""
        section = (config or {}).get('retry', {})
        return cls(
            max_attempts=int(section.get('max_attempts', 3)),
            base_delay=float(section.get('base_delay', 1.0)),
            multiplier=float(section.get('multiplier', 2.0)),
            max_delay=float(section.get('max_delay', 30.0))
        )


# Failures that another attempt cannot fix.
NON_RETRYABLE = (AuthenticationError, ConfigurationError)


async def with_retries(call: Callable[[], Awaitable[T]], policy: RetryPolicy,
                       description: str = "oracle call") -> T:
    """Run call(), retrying OracleError failures according to policy.

    The last OracleError is re-raised once attempts are exhausted. Anything
    that is not an OracleError propagates immediately.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await call()
        except NON_RETRYABLE:
            raise
        except OracleError as e:
            if attempt >= policy.max_attempts:
                logger.warning(f"{description} failed after {attempt} attempt(s): {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.info(f"{description} failed ({e}); retrying in {delay:.2f}s "
                        f"(attempt {attempt}/{policy.max_attempts})")
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise RuntimeError("retry loop exited without result")
