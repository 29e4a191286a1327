"""
=============================================================================
RESTART POLICY
=============================================================================

After every lifecycle, whatever its outcome, the server starts a new one.
This module decides WHETHER to start another one and HOW LONG to wait.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    Default: restart forever, now                     │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   lifecycle ──► lifecycle ──► lifecycle ──► ...                      │
    │            0s            0s            0s                            │
    │                                                                      │
    │   Fits an unattended service: nobody to escalate to, so keep         │
    │   serving. The pump itself yields the CPU while waiting.             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    ┌─────────────────────────────────────────────────────────────────────┐
    │            With backoff=0.5, factor=2, max_backoff=4                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   fail ──0.5s──► fail ──1s──► fail ──2s──► fail ──4s──► fail ──4s──► │
    │   ok   ──0s───► (failure streak reset)                               │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional

from .errors import ErrorCode


@dataclass
class RestartPolicy:
    """
    Governs the serve-forever loop.

    Attributes:
        max_restarts: Lifecycles allowed after the first. None = unbounded.
        backoff: Delay after the first failed lifecycle, in seconds.
        backoff_factor: Multiplier applied for each further failure in a row.
        max_backoff: Upper bound on any delay.
    """

    max_restarts: Optional[int] = None
    backoff: float = 0.0
    backoff_factor: float = 2.0
    max_backoff: float = 30.0

    # Consecutive failed lifecycles
    failures: int = field(default=0, repr=False)

    def __post_init__(self):
        if self.max_restarts is not None and self.max_restarts < 0:
            raise ValueError("max_restarts must be >= 0 or None")
        if self.backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff values must be >= 0")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")

    def should_restart(self, restarts_done: int) -> bool:
        """True if another lifecycle may run after restarts_done restarts."""
        if self.max_restarts is None:
            return True
        return restarts_done < self.max_restarts

    def next_delay(self, result_code: int) -> float:
        """
        Record a lifecycle outcome and return the wait before the next one.

        A successful lifecycle (code 0) resets the failure streak and
        restarts immediately.
        """
        if result_code == ErrorCode.OK:
            self.failures = 0
            return 0.0

        self.failures += 1
        if self.backoff == 0.0:
            return 0.0

        delay = self.backoff * (self.backoff_factor ** (self.failures - 1))
        return min(delay, self.max_backoff)

    def reset(self):
        self.failures = 0
