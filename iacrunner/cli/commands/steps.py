"""steps command: show the step sequence planned for a task type."""

from argparse import Namespace

from iacrunner.models import Task, TaskType
from iacrunner.workflow.orchestrator import TaskOrchestrator

from .common import handle_errors, setup_logging


@handle_errors
def list_steps(args: Namespace) -> int:
    setup_logging(args)
    task = Task(
        id="task",
        org_id="",
        project_id="",
        tpl_id="",
        env_id="",
        type=TaskType.parse(args.task_type),
        playbook=args.playbook or "",
        targets=list(args.target or []),
        auto_approve=args.auto_approve,
    )

    for step in TaskOrchestrator().plan_steps(task):
        line = f"{step.index}\t{step.type.value}\t{step.name}"
        if step.args:
            line += "\t" + " ".join(step.args)
        if step.needs_approval():
            line += "\t(approved)" if step.approver_id else "\t(needs approval)"
        print(line)
    return 0
