"""
Execution dispatch.

The runner only describes the container to start (``ContainerCommand``);
a ``ContainerRuntime`` starts it and reports its exit. ``LocalRuntime``
runs the step script with the host shell for development and tests.
"""

import json
import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .. import layout
from ..exceptions import ExecutionError
from ..security.secrets import SecretsMasker
from .request import RunTaskRequest

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_TRUE_STRINGS = {"1", "true", "yes", "on", "y"}


@dataclass
class ContainerCommand:
    """
    Description of one step execution.

    Attributes:
        image: Container image
        env: ``KEY=VALUE`` entries, sorted by key
        commands: Entry command (argv)
        timeout: Step timeout in seconds (0 = runtime default)
        workdir: Workspace mount point inside the container
        host_workdir: Workspace directory on the host
    """
    image: str
    env: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)
    timeout: int = 0
    workdir: str = ""
    host_workdir: str = ""


@dataclass
class ExitStatus:
    """How an execution ended."""
    exit_code: int
    timed_out: bool = False


class ContainerRuntime(Protocol):
    """Starts containers and waits for them."""

    def start(self, command: ContainerCommand) -> str:
        """Start the command; returns an opaque handle."""
        ...

    def wait(self, handle: str, timeout: Optional[int] = None) -> ExitStatus:
        """Block until the execution exits or the timeout elapses."""
        ...


def is_true_str(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUE_STRINGS


class ExecutionDispatcher:
    """Builds container commands and hands them to the runtime."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        default_image: str,
        container_workspace: str = "/cloudiac/workspace",
        plugin_cache_path: str = "/cloudiac/cache/plugins",
        masker: Optional[SecretsMasker] = None,
    ):
        self.runtime = runtime
        self.default_image = default_image
        self.container_workspace = container_workspace
        self.plugin_cache_path = plugin_cache_path
        self.masker = masker or SecretsMasker()

    def build_env(self, request: RunTaskRequest) -> List[str]:
        """
        Compose the container environment.

        Environment variables pass through, the plugin cache defaults to the
        runner's cache directory and terraform variables become TF_VAR_*.
        Entries are sorted so the same request always yields the same list.
        """
        env: Dict[str, str] = dict(request.env.environment_vars)
        env.setdefault("TF_PLUGIN_CACHE_DIR", self.plugin_cache_path)
        for name, value in request.env.terraform_vars.items():
            env[f"TF_VAR_{name}"] = value
        return [f"{key}={env[key]}" for key in sorted(env)]

    def build_command(self, request: RunTaskRequest, workspace: Path) -> ContainerCommand:
        step_dir = layout.step_dir_name(request.step)
        shell_args = " -x" if is_true_str(request.env.environment_vars.get("CLOUDIAC_DEBUG")) else ""
        shell_command = "sh{} {} >>{} 2>&1".format(
            shell_args,
            f"{step_dir}/{layout.TASK_STEP_SCRIPT_NAME}",
            f"{step_dir}/{layout.TASK_STEP_LOG_NAME}",
        )
        return ContainerCommand(
            image=request.docker_image or self.default_image,
            env=self.build_env(request),
            commands=["sh", "-c", shell_command],
            timeout=request.timeout,
            workdir=self.container_workspace,
            host_workdir=str(workspace),
        )

    def dispatch(self, request: RunTaskRequest, workspace: Path) -> str:
        """
        Start the step and record its handle in ``step<N>/step-info.json``.

        Returns:
            Runtime handle of the started execution
        """
        command = self.build_command(request, workspace)
        logger.info("start task step, workdir: %s", command.host_workdir)
        logger.debug("step env: %s", self.masker.mask_text(" ".join(command.env)))
        try:
            handle = self.runtime.start(command)
        except Exception as e:
            raise ExecutionError(f"start step container: {e}", {"step": request.step}) from e

        info = {
            "envId": request.env.id,
            "taskId": request.task_id,
            "step": request.step,
            "containerHandle": handle,
        }
        info_path = workspace / layout.step_dir_name(request.step) / layout.TASK_STEP_INFO_FILE_NAME
        try:
            info_path.write_text(json.dumps(info))
        except OSError as e:
            # the step is already running; losing the info file only affects diagnosis
            logger.error("write step info %s: %s", info_path, e)
        return handle

    def wait(self, handle: str, timeout: Optional[int] = None) -> ExitStatus:
        try:
            return self.runtime.wait(handle, timeout)
        except Exception as e:
            raise ExecutionError(f"wait for step container {handle}: {e}", {"handle": handle}) from e


class LocalRuntime:
    """Runs container commands as host processes in the workspace directory."""

    def __init__(self, inherit_env: bool = True):
        self.inherit_env = inherit_env
        self._processes: Dict[str, subprocess.Popen] = {}

    def start(self, command: ContainerCommand) -> str:
        env = os.environ.copy() if self.inherit_env else {}
        for entry in command.env:
            key, _, value = entry.partition("=")
            env[key] = value

        process = subprocess.Popen(
            command.commands,
            cwd=command.host_workdir,
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        handle = f"local-{process.pid}"
        self._processes[handle] = process
        return handle

    def wait(self, handle: str, timeout: Optional[int] = None) -> ExitStatus:
        process = self._processes.pop(handle)
        try:
            exit_code = process.wait(timeout=timeout or None)
        except subprocess.TimeoutExpired:
            # the script runs in its own session; kill the tools it started too
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            process.wait()
            return ExitStatus(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)
        return ExitStatus(exit_code=exit_code)
