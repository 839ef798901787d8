"""
Retry policy helpers for step execution.

A failed or timed-out step is retried in place: the same step index goes
back to pending with a later ``next_retry_time``.
"""

import time
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from ..models import StepStatus

RETRYABLE_STATUSES = frozenset({StepStatus.FAILED, StepStatus.TIMEOUT})


@dataclass
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        delay_sec: Delay before a retried step may run again, in seconds
        retryable_statuses: Terminal statuses that may be retried
    """
    max_retries: int = 0
    delay_sec: int = 0
    retryable_statuses: FrozenSet[StepStatus] = field(default_factory=lambda: RETRYABLE_STATUSES)

    @classmethod
    def for_task(cls, task) -> 'RetryPolicy':
        """
        Create the retry policy of a task's steps.

        Tasks not flagged as retry-able never retry, whatever their retry
        number says.
        """
        if not task.retry_able:
            return cls(max_retries=0, delay_sec=max(task.retry_delay, 0))
        return cls(max_retries=max(task.retry_number, 0), delay_sec=max(task.retry_delay, 0))

    def should_retry(self, status: StepStatus, attempt: int) -> bool:
        """
        Determine if a retry should be attempted.

        Args:
            status: Terminal status of the last attempt
            attempt: Retries already made for this step

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= self.max_retries:
            return False
        return StepStatus.parse(status) in self.retryable_statuses

    def next_retry_time(self, now: Optional[float] = None) -> int:
        """Epoch second at which the retried step becomes runnable."""
        if now is None:
            now = time.time()
        return int(now) + self.delay_sec
