"""
Run one step of a task.

Order of work: decrypt secrets, render the step script, prepare the
workspace, write the script, start the container. Secret and
configuration errors therefore surface before anything touches the
filesystem.
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

from .. import layout
from ..config import RunnerConfig
from ..exceptions import SecretError, WorkspaceError
from ..security.secrets import SecretCipher, SecretsMasker
from ..variables.resolver import VariableResolver
from .dispatcher import ContainerRuntime, ExecutionDispatcher
from .request import RunTaskRequest
from .scripts import ScriptContext, ScriptGenerator
from .templates import DEFAULT_TEMPLATES, ScriptTemplates
from .workspace import WorkspaceBuilder

logger = logging.getLogger(__name__)


@dataclass
class StepRun:
    """A started step execution."""
    handle: str
    workspace: Path
    script_path: Path


class TaskRunner:
    """Prepares and starts the execution of task steps."""

    def __init__(
        self,
        config: RunnerConfig,
        runtime: ContainerRuntime,
        cipher: Optional[SecretCipher] = None,
        masker: Optional[SecretsMasker] = None,
        templates: ScriptTemplates = DEFAULT_TEMPLATES,
    ):
        self.config = config
        self.masker = masker or SecretsMasker()
        self.cipher = cipher or SecretCipher(config.secret_key or None)
        self.resolver = VariableResolver(self.cipher, self.masker)
        self.builder = WorkspaceBuilder(config.storage_path, templates, config.consul_address)
        self.generator = ScriptGenerator(templates)
        self.dispatcher = ExecutionDispatcher(
            runtime,
            default_image=config.default_image,
            container_workspace=config.container_workspace,
            plugin_cache_path=config.plugin_cache_path,
            masker=self.masker,
        )

    def decrypt_request(self, request: RunTaskRequest) -> RunTaskRequest:
        """Return a copy of the request with every secret decrypted."""
        env = replace(
            request.env,
            environment_vars=self.resolver.decrypt_map(request.env.environment_vars),
            terraform_vars=self.resolver.decrypt_map(request.env.terraform_vars),
            ansible_vars=self.resolver.decrypt_map(request.env.ansible_vars),
        )

        private_key = request.private_key
        if private_key:
            try:
                private_key = self.cipher.decrypt_var(private_key)
            except SecretError as e:
                raise SecretError(f"decrypt private key: {e.message}") from e
            self.masker.register(private_key.strip())

        return replace(request, env=env, private_key=private_key)

    def prepare(self, request: RunTaskRequest) -> Tuple[RunTaskRequest, Path, Path]:
        """
        Everything but the dispatch.

        Returns:
            (decrypted request, workspace path, script path)
        """
        request = self.decrypt_request(request)
        script = self.generator.generate(
            request.step_type, ScriptContext.from_request(request, self.config.assets_dir)
        )

        if request.retry_attempt > 0:
            self.builder.reset(request)
        workspace = self.builder.build(request)
        script_path = self.write_script(request, workspace, script)
        return request, workspace, script_path

    def write_script(self, request: RunTaskRequest, workspace: Path, script: str) -> Path:
        script_path = workspace / layout.step_dir_name(request.step) / layout.TASK_STEP_SCRIPT_NAME
        try:
            script_path.write_text(script)
            os.chmod(script_path, 0o755)
        except OSError as e:
            raise WorkspaceError(f"generate step script: {e}", {"path": str(script_path)}) from e
        return script_path

    def run(self, request: RunTaskRequest) -> StepRun:
        request, workspace, script_path = self.prepare(request)
        handle = self.dispatcher.dispatch(request, workspace)
        logger.info(
            "Started step %d (%s) of task %s: %s",
            request.step, request.step_type.value, request.task_id, handle,
        )
        return StepRun(handle=handle, workspace=workspace, script_path=script_path)
