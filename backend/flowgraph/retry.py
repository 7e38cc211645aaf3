"""
Bounded retry with backoff.

One combinator drives every retry loop in the pipeline: the three stage
adapters (exponential backoff between attempts) and the orchestrator's
regeneration cycle (no backoff). Failures come back as values.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import Err, NonRetryableError, Ok, Result, StageFailure

T = TypeVar("T")


@dataclass(frozen=True)
class Attempt:
    """Position of the current try plus the failure that preceded it."""
    number: int
    error: Optional[BaseException] = None

    @property
    def is_retry(self) -> bool:
        return self.number > 1

    @property
    def prior_error(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


def exponential_backoff(attempt: int, base_ms: int = 1000, cap_ms: int = 10000) -> int:
    """Delay in milliseconds after failed attempt `attempt` (1-based): 1s, 2s, 4s ... capped."""
    return min(base_ms * 2 ** (attempt - 1), cap_ms)


def no_backoff(attempt: int) -> int:
    return 0


async def retry_with_backoff(
    operation: Callable[[Attempt], Awaitable[T]],
    max_attempts: int,
    label: str,
    backoff: Callable[[int], int] = exponential_backoff,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[Attempt, BaseException], None]] = None,
) -> Result:
    """
    Await `operation` up to `max_attempts` times.

    Returns Ok(value) on the first success, or Err(StageFailure) once the
    attempts are spent. A NonRetryableError ends the loop at once.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    attempt = Attempt(number=1)
    while True:
        try:
            value = await operation(attempt)
            return Ok(value)
        except NonRetryableError as e:
            logging.warning(f"{label} attempt {attempt.number} failed permanently: {e}")
            return Err(StageFailure(
                label=label,
                message=f"{label} failed: {e}",
                attempts=attempt.number,
                cause=e,
            ))
        except Exception as e:
            if attempt.number >= max_attempts:
                tries = f"{attempt.number} attempt" + ("s" if attempt.number != 1 else "")
                logging.error(f"{label} failed after {tries}: {e}")
                return Err(StageFailure(
                    label=label,
                    message=f"{label} failed after {tries}: {e}",
                    attempts=attempt.number,
                    cause=e,
                ))

            logging.warning(f"{label} attempt {attempt.number}/{max_attempts} failed: {e}")
            delay_ms = backoff(attempt.number)
            if delay_ms > 0:
                logging.info(f"{label}: backing off {delay_ms}ms before attempt {attempt.number + 1}")
                await sleep(delay_ms / 1000)

            next_attempt = Attempt(number=attempt.number + 1, error=e)
            if on_retry is not None:
                on_retry(next_attempt, e)
            attempt = next_attempt
