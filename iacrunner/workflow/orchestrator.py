"""
Task-level orchestration.

Plans a task into its step sequence, advances steps strictly in index
order and derives the task status from its steps. Legal task
transitions::

    pending   -> running, failed
    running   -> approving, complete, failed, rejected
    approving -> running, rejected, failed

failed, rejected and complete are final.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from ..exceptions import (
    ConfigurationError, IllegalTransitionError, OrchestratorError, SecretError, UnknownTypeError,
)
from ..exec.request import EnvDescriptor, PolicyBundle, RunTaskRequest, StateStore
from ..exec.retry import RetryPolicy
from ..models import (
    Step, StepStatus, StepType, Task, TaskResult, TaskStatus, TaskType, VariableType,
)
from ..variables.resolver import VariableResolver
from .step_machine import StepStateMachine

logger = logging.getLogger(__name__)

TASK_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.APPROVING, TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.REJECTED,
    }),
    TaskStatus.APPROVING: frozenset({TaskStatus.RUNNING, TaskStatus.REJECTED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.REJECTED: frozenset(),
    TaskStatus.COMPLETE: frozenset(),
}

TASK_PIPELINES = {
    TaskType.PLAN: (StepType.INIT, StepType.PLAN),
    TaskType.APPLY: (StepType.INIT, StepType.PLAN, StepType.APPLY, StepType.CONFIGURE, StepType.COLLECT),
    TaskType.DESTROY: (StepType.INIT, StepType.PLAN, StepType.DESTROY, StepType.COLLECT),
    TaskType.SCAN: (StepType.SCAN_INIT, StepType.SCAN),
    TaskType.PARSE: (StepType.SCAN_INIT, StepType.PARSE),
}

STEP_NAMES = {
    StepType.INIT: "Init",
    StepType.PLAN: "Plan",
    StepType.APPLY: "Apply",
    StepType.DESTROY: "Destroy",
    StepType.CONFIGURE: "Run playbook",
    StepType.COMMAND: "Command",
    StepType.COLLECT: "Collect state",
    StepType.PARSE: "Parse",
    StepType.SCAN: "Policy scan",
    StepType.SCAN_INIT: "Scan init",
}

# failures of these steps are logged but never fail the task
BEST_EFFORT_STEP_TYPES = frozenset({StepType.COLLECT})

NON_RETRYABLE_ERROR_TYPES = frozenset({
    ConfigurationError.error_type, UnknownTypeError.error_type, SecretError.error_type,
})


def is_legal_task_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return TaskStatus.parse(target) in TASK_TRANSITIONS[TaskStatus.parse(current)]


def check_step_sequence(steps: Sequence[Step]) -> List[Step]:
    """
    Steps ordered by index.

    Raises:
        ConfigurationError: Indices are not exactly 0..n-1
    """
    ordered = sorted(steps, key=lambda s: s.index)
    indices = [s.index for s in ordered]
    if indices != list(range(len(ordered))):
        raise ConfigurationError(f"step indices must be contiguous from 0, got {indices}",
                                 {"indices": indices})
    return ordered


def _timestamp(now: Optional[float]) -> datetime:
    return datetime.fromtimestamp(time.time() if now is None else now, timezone.utc)


class TaskOrchestrator:
    """Drives a task and its steps through their lifecycle."""

    def plan_steps(self, task: Task) -> List[Step]:
        """
        Build the step sequence of a task.

        A destroy task plans with ``-destroy`` and then applies that plan, so
        the plan shown to the approver is the one executed.
        """
        if task.started():
            raise IllegalTransitionError("task", task.status.value, "planned")

        retry = RetryPolicy.for_task(task)
        types = [
            t for t in TASK_PIPELINES[task.type]
            if t != StepType.CONFIGURE or task.playbook
        ]

        steps = []
        for index, step_type in enumerate(types):
            step = Step(
                task_id=task.id,
                index=index,
                type=step_type,
                id=f"{task.id}-step{index}",
                org_id=task.org_id,
                project_id=task.project_id,
                env_id=task.env_id,
                name=STEP_NAMES[step_type],
                args=self._step_args(task, step_type),
                retry_number=retry.max_retries,
            )
            if step.needs_approval() and task.auto_approve:
                step.approver_id = task.creator_id or "auto-approve"
            steps.append(step)

        for current, following in zip(steps, steps[1:]):
            current.next_step = following.id
        return steps

    @staticmethod
    def _step_args(task: Task, step_type: StepType) -> List[str]:
        if step_type != StepType.PLAN:
            return []
        args = [f"-target={target}" for target in task.targets]
        if task.type == TaskType.DESTROY:
            args.append("-destroy")
        return args

    def machine(self, task: Task, step: Step) -> StepStateMachine:
        return StepStateMachine(step, retry_delay=task.retry_delay, stop_on_violation=task.stop_on_violation)

    def current_step(self, steps: Sequence[Step]) -> Optional[Step]:
        """First step that has not finished for good, in index order."""
        for step in check_step_sequence(steps):
            if step.status == StepStatus.COMPLETE:
                continue
            if step.type in BEST_EFFORT_STEP_TYPES and step.is_exited():
                continue
            return step
        return None

    def advance(self, task: Task, steps: Sequence[Step], now: Optional[float] = None) -> Optional[Step]:
        """
        Move the task forward.

        Returns:
            The step that just entered ``running`` and must be dispatched, or
            None when the task is waiting (approval, retry delay, a running
            step) or has exited.
        """
        if task.exited():
            return None

        step = self.current_step(steps)
        if step is None or step.status != StepStatus.PENDING:
            self.refresh(task, steps, now)
            return None

        machine = self.machine(task, step)
        if not machine.is_ready(now):
            return None

        if task.status == TaskStatus.PENDING:
            self._set_status(task, TaskStatus.RUNNING, now)
        status = machine.begin(now)
        self.refresh(task, steps, now)
        if status == StepStatus.RUNNING:
            return step
        logger.info("task %s waiting for approval of step %d", task.id, step.index)
        return None

    def approve(self, task: Task, steps: Sequence[Step], step: Step, approver_id: str,
                now: Optional[float] = None) -> Step:
        """Record the approval; the returned step is running and must be dispatched."""
        self._check_mutable(task)
        self._check_current(steps, step, StepStatus.RUNNING)
        self.machine(task, step).approve(approver_id, now)
        self.refresh(task, steps, now)
        return step

    def reject(self, task: Task, steps: Sequence[Step], step: Step, approver_id: str = "",
               now: Optional[float] = None) -> TaskStatus:
        self._check_mutable(task)
        self._check_current(steps, step, StepStatus.REJECTED)
        self.machine(task, step).reject(approver_id, now)
        return self.refresh(task, steps, now)

    def report_exit(self, task: Task, steps: Sequence[Step], step: Step, exit_code: int,
                    now: Optional[float] = None) -> StepStatus:
        self._check_mutable(task)
        machine = self.machine(task, step)
        machine.finish(exit_code, now)
        self._after_exit(task, step, machine, now)
        self.refresh(task, steps, now)
        return step.status

    def report_timeout(self, task: Task, steps: Sequence[Step], step: Step,
                       now: Optional[float] = None) -> StepStatus:
        self._check_mutable(task)
        machine = self.machine(task, step)
        machine.expire(now)
        self._after_exit(task, step, machine, now)
        self.refresh(task, steps, now)
        return step.status

    def report_error(self, task: Task, steps: Sequence[Step], step: Step,
                     error: Union[OrchestratorError, Dict[str, Any]],
                     now: Optional[float] = None) -> StepStatus:
        """
        Fail a running step whose execution could not be prepared.

        I/O and execution errors leave the step eligible for retry;
        configuration and secret errors are final.
        """
        self._check_mutable(task)
        if isinstance(error, OrchestratorError):
            error = error.to_error()
        machine = self.machine(task, step)
        machine.fail(error, now)
        self._after_exit(task, step, machine, now)
        self.refresh(task, steps, now)
        return step.status

    def _after_exit(self, task: Task, step: Step, machine: StepStateMachine, now: Optional[float]):
        if step.status not in (StepStatus.FAILED, StepStatus.TIMEOUT):
            return
        if step.type in BEST_EFFORT_STEP_TYPES:
            logger.warning("task %s: %s step failed (%s), ignored",
                           task.id, step.type.value, step.message)
            return
        if self.is_retryable(task, step):
            machine.schedule_retry(now)

    def is_retryable(self, task: Task, step: Step) -> bool:
        if step.error and step.error.get("type") in NON_RETRYABLE_ERROR_TYPES:
            return False
        return self.machine(task, step).can_retry()

    def aggregate(self, task: Task, steps: Sequence[Step]) -> TaskStatus:
        """Task status implied by its steps."""
        ordered = check_step_sequence(steps)

        if any(s.status == StepStatus.REJECTED for s in ordered):
            return TaskStatus.REJECTED
        for s in ordered:
            if (s.status in (StepStatus.FAILED, StepStatus.TIMEOUT)
                    and s.type not in BEST_EFFORT_STEP_TYPES
                    and not self.is_retryable(task, s)):
                return TaskStatus.FAILED
        if any(s.status == StepStatus.APPROVING for s in ordered):
            return TaskStatus.APPROVING
        if ordered and all(
            s.status == StepStatus.COMPLETE or (s.type in BEST_EFFORT_STEP_TYPES and s.is_exited())
            for s in ordered
        ):
            return TaskStatus.COMPLETE
        if task.status == TaskStatus.PENDING and not any(s.is_started() for s in ordered):
            return TaskStatus.PENDING
        return TaskStatus.RUNNING

    def refresh(self, task: Task, steps: Sequence[Step], now: Optional[float] = None) -> TaskStatus:
        if task.exited():
            return task.status
        target = self.aggregate(task, steps)
        if target != task.status:
            self._set_status(task, target, now)
            if target == TaskStatus.FAILED:
                failed = [s for s in steps if s.status in (StepStatus.FAILED, StepStatus.TIMEOUT)]
                if failed:
                    task.message = failed[0].message
        return task.status

    def _check_mutable(self, task: Task):
        if task.exited():
            raise IllegalTransitionError("task", task.status.value, "modified")

    def _check_current(self, steps: Sequence[Step], step: Step, target: StepStatus):
        # steps run strictly in index order
        if step is not self.current_step(steps):
            raise IllegalTransitionError("step", step.status.value, target.value)

    def _set_status(self, task: Task, target: TaskStatus, now: Optional[float]):
        if not is_legal_task_transition(task.status, target):
            raise IllegalTransitionError("task", task.status.value, target.value)
        logger.info("task %s: %s -> %s", task.id, task.status.value, target.value)
        task.status = target
        if target == TaskStatus.RUNNING and task.start_at is None:
            task.start_at = _timestamp(now)
        if task.exited():
            task.end_at = _timestamp(now)

    def summarize(self, task: Task, plan_json: Optional[Dict[str, Any]] = None,
                  state_json: Optional[Dict[str, Any]] = None) -> TaskResult:
        """Compute and store the result summary of an exited task."""
        if not task.exited():
            raise RuntimeError(f"task {task.id} has not exited")
        task.result = TaskResult.from_plan(plan_json, state_json)
        return task.result

    def build_request(
        self,
        task: Task,
        step: Step,
        state_store: Optional[StateStore] = None,
        policies: Optional[List[PolicyBundle]] = None,
        private_key: str = "",
        docker_image: str = "",
        timeout: Optional[int] = None,
    ) -> RunTaskRequest:
        """Map a task and one of its steps onto a run request."""
        grouped = VariableResolver.group_by_type(task.variables)
        env = EnvDescriptor(
            id=task.env_id,
            workdir=task.workdir,
            environment_vars=grouped[VariableType.ENVIRONMENT],
            terraform_vars=grouped[VariableType.TERRAFORM],
            ansible_vars=grouped[VariableType.ANSIBLE],
            tf_vars_file=task.tf_vars_file,
            play_vars_file=task.play_vars_file,
            playbook=task.playbook,
        )
        return RunTaskRequest(
            env=env,
            project_id=task.project_id,
            task_id=task.id,
            step=step.index,
            step_type=step.type,
            repo_address=task.repo_addr,
            repo_revision=task.commit_id or task.revision,
            step_args=list(step.args),
            timeout=task.step_timeout if timeout is None else timeout,
            docker_image=docker_image,
            private_key=private_key,
            state_store=state_store or StateStore(path=task.state_path),
            policies=list(policies or []),
            stop_on_violation=task.stop_on_violation,
            retry_attempt=step.current_retry_count,
        )
