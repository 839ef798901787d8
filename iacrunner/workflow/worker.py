"""
Synchronous task worker.

Runs the steps of a task one at a time until the task exits or has to
wait: for an approval, for a retry delay, or for a step started by
someone else.
"""

import logging
import time
from typing import List, Optional, Sequence

from .. import layout
from ..exceptions import OrchestratorError
from ..exec.request import PolicyBundle, RunTaskRequest, StateStore
from ..exec.runner import TaskRunner
from ..models import Step, Task, TaskStatus
from .orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)


class TaskWorker:
    """Couples the orchestrator with a runner."""

    def __init__(self, runner: TaskRunner, orchestrator: Optional[TaskOrchestrator] = None,
                 clock=time.time):
        self.runner = runner
        self.orchestrator = orchestrator or TaskOrchestrator()
        self.clock = clock

    def run_until_blocked(
        self,
        task: Task,
        steps: Sequence[Step],
        state_store: Optional[StateStore] = None,
        policies: Optional[List[PolicyBundle]] = None,
        private_key: str = "",
    ) -> TaskStatus:
        """
        Run steps while the task can make progress.

        Returns:
            Task status at the point where nothing more can run
        """
        last_request = None
        while True:
            step = self.orchestrator.advance(task, steps, self.clock())
            if step is None:
                break
            last_request = self._run_step(task, steps, step, state_store, policies, private_key)

        if task.exited() and last_request is not None:
            self._summarize(task, last_request)
        return task.status

    def resume_after_approval(
        self,
        task: Task,
        steps: Sequence[Step],
        step: Step,
        approver_id: str,
        state_store: Optional[StateStore] = None,
        policies: Optional[List[PolicyBundle]] = None,
        private_key: str = "",
    ) -> TaskStatus:
        """Approve a waiting step, run it and continue with the rest."""
        self.orchestrator.approve(task, steps, step, approver_id, self.clock())
        request = self._run_step(task, steps, step, state_store, policies, private_key)
        if task.exited():
            self._summarize(task, request)
            return task.status
        return self.run_until_blocked(task, steps, state_store, policies, private_key)

    def _run_step(self, task: Task, steps: Sequence[Step], step: Step,
                  state_store: Optional[StateStore], policies: Optional[List[PolicyBundle]],
                  private_key: str) -> RunTaskRequest:
        request = self.orchestrator.build_request(
            task, step, state_store=state_store, policies=policies, private_key=private_key,
            timeout=task.step_timeout or self.runner.config.step_timeout,
        )
        try:
            run = self.runner.run(request)
            status = self.runner.dispatcher.wait(run.handle, request.timeout)
        except OrchestratorError as e:
            error = self.runner.masker.mask_dict(e.to_error())
            logger.error("task %s step %d: %s", task.id, step.index, error["message"])
            self.orchestrator.report_error(task, steps, step, error, self.clock())
            return request

        if status.timed_out:
            self.orchestrator.report_timeout(task, steps, step, self.clock())
        else:
            self.orchestrator.report_exit(task, steps, step, status.exit_code, self.clock())
        logger.info("task %s step %d (%s) %s, exit code %d", task.id, step.index,
                    step.type.value, step.status.value, step.exit_code)
        return request

    def _summarize(self, task: Task, request: RunTaskRequest):
        plan_json = self.runner.builder.read_artifact(request, layout.TF_PLAN_JSON_FILE)
        state_json = self.runner.builder.read_artifact(request, layout.TF_STATE_JSON_FILE)
        self.orchestrator.summarize(task, plan_json, state_json)
