"""Shared fixtures for runner tests."""

from typing import List, Optional

import pytest

from iacrunner.exec.dispatcher import ContainerCommand, ExitStatus
from iacrunner.exec.request import EnvDescriptor, RunTaskRequest
from iacrunner.models import Task


class FakeRuntime:
    """Records started commands and reports scripted exit statuses."""

    def __init__(self, statuses: Optional[List[ExitStatus]] = None):
        self.started: List[ContainerCommand] = []
        self.statuses = list(statuses or [])
        self.waited: List[tuple] = []

    def start(self, command: ContainerCommand) -> str:
        self.started.append(command)
        return f"container-{len(self.started)}"

    def wait(self, handle: str, timeout=None) -> ExitStatus:
        self.waited.append((handle, timeout))
        if self.statuses:
            return self.statuses.pop(0)
        return ExitStatus(exit_code=0)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def make_task():
    def factory(**overrides) -> Task:
        values = dict(
            id="t1",
            org_id="org",
            project_id="p1",
            tpl_id="tpl",
            env_id="e1",
            type="plan",
            creator_id="u1",
            repo_addr="https://example.com/repo.git",
            revision="main",
        )
        values.update(overrides)
        return Task(**values)
    return factory


@pytest.fixture
def make_request():
    def factory(step: int = 0, step_type: str = "init", workdir: str = "", **overrides) -> RunTaskRequest:
        env_fields = {
            key: overrides.pop(key)
            for key in ("environment_vars", "terraform_vars", "ansible_vars",
                        "tf_vars_file", "play_vars_file", "playbook")
            if key in overrides
        }
        values = dict(
            env=EnvDescriptor(id="e1", workdir=workdir, **env_fields),
            project_id="p1",
            task_id="t1",
            step=step,
            step_type=step_type,
            repo_address="https://example.com/repo.git",
            repo_revision="abcdef1",
        )
        values.update(overrides)
        return RunTaskRequest(**values)
    return factory
