"""Bounded fan-out and time budget helpers.

Every lookup issued during one invocation shares a single Deadline. Once
it expires, in-flight work is abandoned and DeadlineExceeded propagates so
the run lands on the fail-closed path.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, TypeVar

from .errors import DeadlineExceeded

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class Deadline:
    """Monotonic time budget for one invocation."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        """Initialize deadline.

        Args:
            seconds: Budget in seconds; None means unbounded
            clock: Monotonic clock, injectable for tests
        """
        self._clock = clock
        self._expires_at = clock() + seconds if seconds is not None else None

    def remaining(self) -> Optional[float]:
        """Seconds left, None when unbounded, never negative."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str, resource: str = "") -> None:
        """Raise DeadlineExceeded if the budget is spent."""
        if self.expired:
            raise DeadlineExceeded(
                f"Time budget exhausted before {operation} {resource}".rstrip(),
                operation=operation,
                resource=resource,
            )


@dataclass(frozen=True)
class LookupOutcome:
    """Value or error produced by one fanned-out call."""

    value: Any = None
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def fan_out(
    func: Callable[[K], Any],
    items: Iterable[K],
    max_workers: int,
    deadline: Optional[Deadline] = None,
    operation: str = "lookup",
) -> Dict[K, LookupOutcome]:
    """Run func over items on a bounded worker pool.

    Each item gets exactly one outcome. Failures are recorded per item
    rather than raised, except DeadlineExceeded which aborts the whole
    fan-out.

    Args:
        func: Callable invoked once per item
        items: Distinct hashable inputs
        max_workers: Pool size bound
        deadline: Shared time budget
        operation: Name used in logs and errors

    Returns:
        Mapping of item to LookupOutcome
    """
    unique = list(dict.fromkeys(items))
    results: Dict[K, LookupOutcome] = {}
    if not unique:
        return results

    if deadline is not None:
        deadline.check(operation)

    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(unique))))
    try:
        future_to_item = {executor.submit(func, item): item for item in unique}
        timeout = deadline.remaining() if deadline is not None else None
        try:
            for future in as_completed(future_to_item, timeout=timeout):
                item = future_to_item[future]
                try:
                    results[item] = LookupOutcome(value=future.result())
                except DeadlineExceeded:
                    raise
                except Exception as e:
                    logger.debug(f"{operation} failed for {item}: {e}")
                    results[item] = LookupOutcome(error=e)
        except FuturesTimeoutError as e:
            raise DeadlineExceeded(
                f"Time budget exhausted during {operation} ({len(results)}/{len(unique)} done)",
                operation=operation,
            ) from e
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return results
