"""Common utility functions."""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, Tuple, Type

from cdc_engine.common.errors import TransientIOError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_cdc_timestamp(ts_value: Any) -> Optional[datetime]:
    """
    Parse CDC timestamp from various formats.

    Args:
        ts_value: Timestamp value (can be datetime, int (epoch millis), or ISO string)

    Returns:
        Parsed UTC datetime, or None
    """
    if ts_value is None:
        return None

    if isinstance(ts_value, datetime):
        return ts_value if ts_value.tzinfo else ts_value.replace(tzinfo=timezone.utc)

    if isinstance(ts_value, (int, float)):
        # Assume epoch milliseconds
        return datetime.fromtimestamp(ts_value / 1000.0, tz=timezone.utc)

    if isinstance(ts_value, str):
        parsed = datetime.fromisoformat(ts_value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def backoff_delays(
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
) -> Iterator[float]:
    """Yield an endless sequence of exponentially growing delays, capped at max_delay."""
    delay = initial_delay
    while True:
        yield min(delay, max_delay)
        delay *= backoff_factor


def retry_with_backoff(
    func: Callable[[], Any],
    max_retries: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientIOError,),
    stop_event: Optional[threading.Event] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Any:
    """
    Retry function with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else propagates
    immediately. Waits use ``stop_event`` when given so a shutdown interrupts them.

    Args:
        func: Function to retry
        max_retries: Maximum number of retries
        initial_delay: Initial delay in seconds
        backoff_factor: Backoff multiplier
        max_delay: Upper bound for a single delay
        retry_on: Exception types considered transient
        stop_event: Event that aborts the waiting between attempts
        on_retry: Callback invoked with (attempt, exception) before each wait

    Returns:
        Function result

    Raises:
        Last exception if all retries fail
    """
    delays = backoff_delays(initial_delay, backoff_factor, max_delay)

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= max_retries:
                raise
            if on_retry is not None:
                on_retry(attempt + 1, e)
            delay = next(delays)
            if stop_event is not None:
                if stop_event.wait(delay):
                    raise
            else:
                time.sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
