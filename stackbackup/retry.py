"""
Bounded retry helper.

Used for the post-backup restart, where every attempt is an action followed by
a verification. Waits go through a `threading.Event` so a cancellation wakes
the loop immediately instead of sleeping out the delay.
"""
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from stackbackup.utils import get_logger

logger = get_logger(__name__)


@dataclass
class RetryResult:
    success: bool
    attempts: int
    cancelled: bool = False
    last_error: Optional[str] = None


@dataclass
class RetryPolicy:
    """Run an action up to `max_attempts` times until `check` says it worked.

    Attributes:
        max_attempts: Total number of attempts (>= 1)
        delay: Seconds to wait between attempts
        backoff: Multiplier applied to the delay after each failed attempt (1.0 = fixed)
        cancel_event: Setting this event aborts the remaining attempts
    """
    max_attempts: int = 3
    delay: float = 5.0
    backoff: float = 1.0
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0 or self.backoff < 1.0:
            raise ValueError("delay must be >= 0 and backoff >= 1.0")

    def wait(self, seconds):
        """Wait up to `seconds`; return True if cancelled during the wait."""
        if seconds <= 0:
            return self.cancel_event.is_set()
        return self.cancel_event.wait(seconds)

    def delays(self):
        """Delays slept between attempts, in order (len == max_attempts - 1)."""
        current = self.delay
        out = []
        for _ in range(self.max_attempts - 1):
            out.append(current)
            current *= self.backoff
        return out

    def run(self, action: Callable[[int], object], check: Optional[Callable[[object], bool]] = None,
            label='operation') -> RetryResult:
        """Call `action(attempt)` until `check(result)` is true or attempts run out.

        Without `check`, the truthiness of the action's return value decides.
        Exceptions from the action count as a failed attempt.
        """
        check = check or bool
        delays = self.delays()
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            if self.cancel_event.is_set():
                return RetryResult(False, attempt - 1, cancelled=True, last_error=last_error)
            try:
                outcome = action(attempt)
                ok = check(outcome)
            except Exception as e:
                logger.warning("%s attempt %s/%s raised: %s", label, attempt, self.max_attempts, e)
                last_error = str(e)
                ok = False
            if ok:
                return RetryResult(True, attempt)

            if attempt < self.max_attempts:
                wait_for = delays[attempt - 1]
                logger.info("%s attempt %s/%s failed, retrying in %ss", label, attempt, self.max_attempts, wait_for)
                if self.wait(wait_for):
                    return RetryResult(False, attempt, cancelled=True, last_error=last_error)

        return RetryResult(False, self.max_attempts, last_error=last_error)
