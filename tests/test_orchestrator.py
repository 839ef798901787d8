"""Tests for task planning, sequencing and status aggregation."""

import pytest

from iacrunner.exceptions import (
    ConfigurationError, IllegalTransitionError, SecretError, WorkspaceError,
)
from iacrunner.exec.request import PolicyBundle
from iacrunner.models import Step, StepStatus, StepType, TaskStatus, Variable
from iacrunner.workflow.orchestrator import (
    TaskOrchestrator, check_step_sequence, is_legal_task_transition,
)


@pytest.fixture
def orchestrator():
    return TaskOrchestrator()


def run_to_completion(orchestrator, task, steps, exit_codes=None, now=0):
    """Advance and report the given exit code for each dispatched step index."""
    exit_codes = exit_codes or {}
    while True:
        step = orchestrator.advance(task, steps, now)
        if step is None:
            return
        orchestrator.report_exit(task, steps, step, exit_codes.get(step.index, 0), now)


class TestPlanSteps:

    @pytest.mark.parametrize("task_type,expected", [
        ("plan", ["init", "plan"]),
        ("apply", ["init", "plan", "apply", "collect"]),
        ("destroy", ["init", "plan", "destroy", "collect"]),
        ("scan", ["scaninit", "tfscan"]),
        ("parse", ["scaninit", "tfparse"]),
    ])
    def test_sequences(self, orchestrator, make_task, task_type, expected):
        steps = orchestrator.plan_steps(make_task(type=task_type))
        assert [s.type.value for s in steps] == expected

    def test_playbook_adds_configure_step(self, orchestrator, make_task):
        steps = orchestrator.plan_steps(make_task(type="apply", playbook="site.yml"))
        assert [s.type for s in steps][3] == StepType.CONFIGURE

    def test_indices_contiguous_and_linked(self, orchestrator, make_task):
        steps = orchestrator.plan_steps(make_task(type="apply"))

        assert [s.index for s in steps] == list(range(len(steps)))
        assert [s.next_step for s in steps] == ["t1-step1", "t1-step2", "t1-step3", ""]
        assert check_step_sequence(steps) == steps

    def test_destroy_plans_with_destroy_flag(self, orchestrator, make_task):
        steps = orchestrator.plan_steps(make_task(type="destroy", targets=["aws_instance.web"]))
        assert steps[1].args == ["-target=aws_instance.web", "-destroy"]
        assert steps[2].needs_approval()

    def test_auto_approve_uses_creator(self, orchestrator, make_task):
        steps = orchestrator.plan_steps(make_task(type="apply", auto_approve=True))
        assert steps[2].approver_id == "u1"

    def test_auto_approve_without_creator(self, orchestrator, make_task):
        steps = orchestrator.plan_steps(make_task(type="destroy", auto_approve=True, creator_id=""))
        assert steps[2].approver_id == "auto-approve"

    def test_retry_number_from_task(self, orchestrator, make_task):
        steps = orchestrator.plan_steps(make_task(retry_able=True, retry_number=2))
        assert {s.retry_number for s in steps} == {2}

    def test_started_task_cannot_be_planned(self, orchestrator, make_task):
        with pytest.raises(IllegalTransitionError):
            orchestrator.plan_steps(make_task(status="running"))

    def test_gap_in_indices(self):
        steps = [Step(task_id="t1", index=0, type="init"), Step(task_id="t1", index=2, type="plan")]
        with pytest.raises(ConfigurationError):
            check_step_sequence(steps)


class TestSequencing:

    def test_plan_task_completes(self, orchestrator, make_task):
        task = make_task()
        steps = orchestrator.plan_steps(task)

        run_to_completion(orchestrator, task, steps, now=100)

        assert task.status == TaskStatus.COMPLETE
        assert all(s.status == StepStatus.COMPLETE for s in steps)
        assert task.start_at is not None and task.end_at is not None

    def test_steps_run_strictly_in_order(self, orchestrator, make_task):
        task = make_task()
        steps = orchestrator.plan_steps(task)

        first = orchestrator.advance(task, steps)

        assert first.index == 0
        assert orchestrator.advance(task, steps) is None
        assert steps[1].status == StepStatus.PENDING

    def test_failure_fails_task(self, orchestrator, make_task):
        task = make_task()
        steps = orchestrator.plan_steps(task)

        run_to_completion(orchestrator, task, steps, {1: 1})

        assert task.status == TaskStatus.FAILED
        assert task.message == "exit code 1"
        with pytest.raises(IllegalTransitionError):
            orchestrator.report_exit(task, steps, steps[1], 0)

    def test_timeout_stops_task(self, orchestrator, make_task):
        task = make_task()
        steps = orchestrator.plan_steps(task)
        step = orchestrator.advance(task, steps)

        orchestrator.report_timeout(task, steps, step)

        assert step.status == StepStatus.TIMEOUT
        assert task.status == TaskStatus.FAILED
        assert orchestrator.advance(task, steps) is None
        assert steps[1].status == StepStatus.PENDING

    def test_failed_collect_does_not_fail_task(self, orchestrator, make_task):
        task = make_task(type="apply", auto_approve=True)
        steps = orchestrator.plan_steps(task)

        run_to_completion(orchestrator, task, steps, {3: 1})

        assert steps[3].status == StepStatus.FAILED
        assert task.status == TaskStatus.COMPLETE


class TestApproval:

    def setup_method(self):
        self.orchestrator = TaskOrchestrator()

    def _advance_to_approval(self, task):
        steps = self.orchestrator.plan_steps(task)
        run_to_completion(self.orchestrator, task, steps)
        return steps

    def test_task_waits_at_apply(self, make_task):
        task = make_task(type="apply")
        steps = self._advance_to_approval(task)

        assert task.status == TaskStatus.APPROVING
        assert steps[2].status == StepStatus.APPROVING
        assert self.orchestrator.advance(task, steps) is None

    def test_approval_resumes(self, make_task):
        task = make_task(type="apply")
        steps = self._advance_to_approval(task)

        step = self.orchestrator.approve(task, steps, steps[2], "reviewer")

        assert step.status == StepStatus.RUNNING
        assert task.status == TaskStatus.RUNNING
        self.orchestrator.report_exit(task, steps, step, 0)
        run_to_completion(self.orchestrator, task, steps)
        assert task.status == TaskStatus.COMPLETE

    def test_rejection_rejects_task(self, make_task):
        task = make_task(type="destroy")
        steps = self._advance_to_approval(task)

        status = self.orchestrator.reject(task, steps, steps[2], "reviewer")

        assert status == TaskStatus.REJECTED
        assert task.exited()
        assert steps[3].status == StepStatus.PENDING

    def test_destroy_cannot_skip_approval(self, make_task):
        task = make_task(type="destroy")
        steps = self._advance_to_approval(task)
        assert steps[1].status == StepStatus.COMPLETE
        assert steps[2].type == StepType.DESTROY
        assert steps[2].status == StepStatus.APPROVING

    def test_approval_before_plan_is_refused(self, make_task):
        task = make_task(type="apply")
        steps = self.orchestrator.plan_steps(task)

        with pytest.raises(IllegalTransitionError):
            self.orchestrator.approve(task, steps, steps[2], "reviewer")

        assert [s.status for s in steps] == [StepStatus.PENDING] * 4
        assert task.status == TaskStatus.PENDING
        assert steps[2].approver_id == ""

    def test_rejection_of_later_step_is_refused(self, make_task):
        task = make_task(type="destroy")
        steps = self.orchestrator.plan_steps(task)
        self.orchestrator.advance(task, steps)

        with pytest.raises(IllegalTransitionError):
            self.orchestrator.reject(task, steps, steps[2], "reviewer")

        assert steps[0].status == StepStatus.RUNNING
        assert steps[2].status == StepStatus.PENDING
        assert task.status == TaskStatus.RUNNING


class TestRetries:

    def test_failed_step_is_retried_in_place(self, orchestrator, make_task):
        task = make_task(retry_able=True, retry_number=1, retry_delay=60)
        steps = orchestrator.plan_steps(task)
        step = orchestrator.advance(task, steps, now=1000)

        status = orchestrator.report_exit(task, steps, step, 1, now=1000)

        assert status == StepStatus.PENDING
        assert task.status == TaskStatus.RUNNING
        assert orchestrator.advance(task, steps, now=1030) is None
        retried = orchestrator.advance(task, steps, now=1060)
        assert retried is step
        assert step.current_retry_count == 1

        orchestrator.report_exit(task, steps, step, 1, now=1070)
        assert step.status == StepStatus.FAILED
        assert task.status == TaskStatus.FAILED

    def test_io_error_is_retryable(self, orchestrator, make_task):
        task = make_task(retry_able=True, retry_number=1)
        steps = orchestrator.plan_steps(task)
        step = orchestrator.advance(task, steps, now=0)

        orchestrator.report_error(task, steps, step, WorkspaceError("disk full"), now=0)

        assert step.status == StepStatus.PENDING
        assert task.status == TaskStatus.RUNNING

    @pytest.mark.parametrize("error", [ConfigurationError("invalid workdir '..'"), SecretError("bad key")])
    def test_configuration_and_secret_errors_are_final(self, orchestrator, make_task, error):
        task = make_task(retry_able=True, retry_number=3)
        steps = orchestrator.plan_steps(task)
        step = orchestrator.advance(task, steps, now=0)

        orchestrator.report_error(task, steps, step, error, now=0)

        assert step.status == StepStatus.FAILED
        assert step.error["type"] == error.error_type
        assert task.status == TaskStatus.FAILED
        assert task.message == error.message


class TestTaskTransitions:

    @pytest.mark.parametrize("current,target,legal", [
        ("pending", "running", True),
        ("running", "approving", True),
        ("approving", "rejected", True),
        ("complete", "running", False),
        ("failed", "pending", False),
        ("pending", "complete", False),
    ])
    def test_table(self, current, target, legal):
        assert is_legal_task_transition(current, target) is legal


class TestSummaryAndRequest:

    def test_summarize_requires_exited_task(self, orchestrator, make_task):
        with pytest.raises(RuntimeError):
            orchestrator.summarize(make_task(status="running"))

    def test_summarize(self, orchestrator, make_task):
        task = make_task(status="complete")
        plan = {"resource_changes": [{"change": {"actions": ["create"]}}]}

        result = orchestrator.summarize(task, plan, {"values": {"outputs": {"a": {"value": 1}}}})

        assert result.res_added == 1
        assert task.result.outputs == {"a": {"value": 1}}

    def test_build_request(self, orchestrator, make_task):
        task = make_task(
            type="destroy",
            workdir="stack",
            commit_id="0123abc",
            state_path="p1/e1/terraform.tfstate",
            tf_vars_file="prod.tfvars",
            step_timeout=600,
            variables=[
                Variable(scope="env", type="environment", name="AWS_REGION", value="eu-west-1"),
                Variable(scope="env", type="terraform", name="size", value="small"),
                Variable(scope="env", type="ansible", name="user", value="admin"),
            ],
        )
        steps = orchestrator.plan_steps(task)

        request = orchestrator.build_request(
            task, steps[1], policies=[PolicyBundle(policy_id="po-1")], private_key="key",
        )

        assert request.step == 1
        assert request.step_type == StepType.PLAN
        assert request.step_args == ["-destroy"]
        assert request.repo_revision == "0123abc"
        assert request.timeout == 600
        assert request.env.workdir == "stack"
        assert request.env.tf_vars_file == "prod.tfvars"
        assert request.env.environment_vars == {"AWS_REGION": "eu-west-1"}
        assert request.env.terraform_vars == {"size": "small"}
        assert request.env.ansible_vars == {"user": "admin"}
        assert request.state_store.path == "p1/e1/terraform.tfstate"
        assert request.policies[0].policy_id == "po-1"
        assert request.retry_attempt == 0
