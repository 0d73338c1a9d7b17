"""Token-bucket gate pacing outbound requests."""

import logging
import threading
import time

from ..errors import CancelledError, ConfigurationError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Admit at most ``rate`` operations per second with a burst of one.

    Each acquire reserves the next free slot; slots are ``1 / rate`` seconds apart
    and never accumulate beyond one while the limiter is idle.
    """

    def __init__(self, rate: float, clock=time.monotonic):
        if rate is None or rate <= 0:
            raise ConfigurationError(f"rate must be positive, got {rate}")
        self.rate = float(rate)
        self.interval = 1.0 / self.rate
        self._clock = clock
        self._lock = threading.Lock()
        self._next_slot: float | None = None

    def acquire(self, cancel_event: threading.Event | None = None) -> None:
        """Block until the caller may proceed.

        Args:
            cancel_event: Optional event; when set while waiting, the wait ends early

        Raises:
            CancelledError: If cancel_event fires before the slot is reached
        """
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("rate limiter wait cancelled", operation="acquire")

        with self._lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self.interval
            delay = slot - now

        if delay <= 0:
            return

        if cancel_event is None:
            time.sleep(delay)
            return

        if cancel_event.wait(delay):
            # Give the slot back if nobody reserved after us
            with self._lock:
                if self._next_slot == slot + self.interval:
                    self._next_slot = slot
            logger.debug("[RATE] Wait cancelled")
            raise CancelledError("rate limiter wait cancelled", operation="acquire")
