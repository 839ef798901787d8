"""
Step status transitions, approval gating and retry bookkeeping.

Legal transitions::

    pending   -> approving, running
    approving -> running, rejected
    running   -> complete, failed, timeout
    failed    -> pending          (retry only)
    timeout   -> pending          (retry only)

complete and rejected are final.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .. import layout
from ..exceptions import ConfigurationError, IllegalTransitionError
from ..exec.retry import RetryPolicy
from ..exec.dispatcher import TIMEOUT_EXIT_CODE
from ..models import Step, StepStatus, StepType

logger = logging.getLogger(__name__)

STEP_TRANSITIONS = {
    StepStatus.PENDING: frozenset({StepStatus.APPROVING, StepStatus.RUNNING}),
    StepStatus.APPROVING: frozenset({StepStatus.RUNNING, StepStatus.REJECTED}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETE, StepStatus.FAILED, StepStatus.TIMEOUT}),
    StepStatus.FAILED: frozenset({StepStatus.PENDING}),
    StepStatus.TIMEOUT: frozenset({StepStatus.PENDING}),
    StepStatus.COMPLETE: frozenset(),
    StepStatus.REJECTED: frozenset(),
}


def is_legal_step_transition(current: StepStatus, target: StepStatus) -> bool:
    return StepStatus.parse(target) in STEP_TRANSITIONS[StepStatus.parse(current)]


def effective_exit_code(step_type: StepType, exit_code: int, stop_on_violation: bool) -> int:
    """
    Exit code after step-type specific remapping.

    A scan that only found violations succeeds unless violations are
    configured to stop the run.
    """
    if (step_type == StepType.SCAN and not stop_on_violation
            and exit_code == layout.VIOLATIONS_FOUND_EXIT_CODE):
        return 0
    return exit_code


def _timestamp(now: Optional[float]) -> datetime:
    return datetime.fromtimestamp(time.time() if now is None else now, timezone.utc)


class StepStateMachine:
    """Applies status changes to a single step."""

    def __init__(self, step: Step, retry_delay: int = 0, stop_on_violation: bool = False):
        """
        Args:
            step: Step to drive; mutated in place
            retry_delay: Seconds between a failure and the retried attempt
            stop_on_violation: Scan violations fail the step
        """
        self.step = step
        self.retry_policy = RetryPolicy(max_retries=step.retry_number, delay_sec=retry_delay)
        self.stop_on_violation = stop_on_violation

    @property
    def status(self) -> StepStatus:
        return self.step.status

    def _transition(self, target: StepStatus):
        current = self.step.status
        if not is_legal_step_transition(current, target):
            raise IllegalTransitionError("step", current.value, target.value)
        logger.debug("step %d of task %s: %s -> %s",
                     self.step.index, self.step.task_id, current.value, target.value)
        self.step.status = target

    def begin(self, now: Optional[float] = None) -> StepStatus:
        """Leave pending: wait for approval when gated, otherwise run."""
        if self.step.needs_approval() and not self.step.approver_id:
            self._transition(StepStatus.APPROVING)
        else:
            self._transition(StepStatus.RUNNING)
            self.step.start_at = _timestamp(now)
        return self.step.status

    def _require_approving(self, target: StepStatus):
        if self.step.status != StepStatus.APPROVING:
            raise IllegalTransitionError("step", self.step.status.value, target.value)

    def approve(self, approver_id: str, now: Optional[float] = None):
        """Only a step waiting in approving can be approved into running."""
        if not approver_id:
            raise ConfigurationError("approver id is required", {"step": self.step.index})
        self._require_approving(StepStatus.RUNNING)
        self._transition(StepStatus.RUNNING)
        self.step.approver_id = approver_id
        self.step.start_at = _timestamp(now)

    def reject(self, approver_id: str = "", now: Optional[float] = None):
        self._require_approving(StepStatus.REJECTED)
        self._transition(StepStatus.REJECTED)
        self.step.approver_id = approver_id
        self.step.message = "rejected"
        self.step.end_at = _timestamp(now)

    def finish(self, exit_code: int, now: Optional[float] = None) -> StepStatus:
        """Record the exit of the step's execution."""
        code = effective_exit_code(self.step.type, exit_code, self.stop_on_violation)
        if code == 0:
            self._transition(StepStatus.COMPLETE)
            self.step.exit_code = 0
        else:
            self._transition(StepStatus.FAILED)
            self.step.exit_code = code
            self.step.message = f"exit code {code}"
        self.step.end_at = _timestamp(now)
        return self.step.status

    def expire(self, now: Optional[float] = None):
        """The step ran past its timeout, whatever its process state."""
        self._transition(StepStatus.TIMEOUT)
        self.step.exit_code = TIMEOUT_EXIT_CODE
        self.step.message = "timeout"
        self.step.end_at = _timestamp(now)

    def fail(self, error: Dict[str, Any], now: Optional[float] = None):
        """Fail a running step before or outside its execution (setup errors)."""
        self._transition(StepStatus.FAILED)
        self.step.error = error
        self.step.message = error.get("message", "")
        self.step.exit_code = 1
        self.step.end_at = _timestamp(now)

    def can_retry(self) -> bool:
        return self.retry_policy.should_retry(self.step.status, self.step.current_retry_count)

    def schedule_retry(self, now: Optional[float] = None) -> int:
        """
        Put a failed or timed-out step back to pending.

        Returns:
            The epoch second from which the step may run again
        """
        if not self.can_retry():
            raise IllegalTransitionError("step", self.step.status.value, StepStatus.PENDING.value)
        self._transition(StepStatus.PENDING)
        self.step.current_retry_count += 1
        self.step.next_retry_time = self.retry_policy.next_retry_time(now)
        self.step.exit_code = 0
        self.step.error = None
        self.step.start_at = None
        self.step.end_at = None
        logger.info("step %d of task %s retry %d/%d at %d",
                    self.step.index, self.step.task_id, self.step.current_retry_count,
                    self.retry_policy.max_retries, self.step.next_retry_time)
        return self.step.next_retry_time

    def is_ready(self, now: Optional[float] = None) -> bool:
        """Pending and past its retry time."""
        if self.step.status != StepStatus.PENDING:
            return False
        current = time.time() if now is None else now
        return self.step.next_retry_time <= current
