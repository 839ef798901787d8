"""
Task workspace construction.

Layout of a workspace (see ``iacrunner.layout``)::

    <workspace>/
      ssh_key                     # mode 0600
      cloudiac.tf                 # backend config + locals
      cloudiac_play_vars.yml
      policies/<policy-id>/meta.json
      policies/<policy-id>/policy.rego
      step<N>/script.sh, step.log, step-info.json
      code/                       # cloned by the init step

The first step initializes the workspace; later steps reuse it unchanged.
"""

import json
import logging
import os
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jinja2 import TemplateError

from .. import layout
from ..exceptions import ConfigurationError, WorkspaceError
from ..models import StepType
from .request import PolicyBundle, RunTaskRequest
from .templates import DEFAULT_TEMPLATES, ScriptTemplates

logger = logging.getLogger(__name__)


class WorkspaceBuilder:
    """Creates and maintains per-task workspaces under a storage root."""

    def __init__(
        self,
        storage_path: Union[str, Path],
        templates: ScriptTemplates = DEFAULT_TEMPLATES,
        default_state_address: str = "",
    ):
        """
        Initialize workspace builder.

        Args:
            storage_path: Root directory holding every task workspace
            templates: Compiled templates (the backend config template is used)
            default_state_address: State backend address when a request has none
        """
        self.storage_path = Path(storage_path)
        self.templates = templates
        self.default_state_address = default_state_address

    def workspace_path(self, request: RunTaskRequest) -> Path:
        return layout.task_workspace(self.storage_path, request.project_id, request.env.id, request.task_id)

    def step_dir(self, request: RunTaskRequest) -> Path:
        return self.workspace_path(request) / layout.step_dir_name(request.step)

    def build(self, request: RunTaskRequest) -> Path:
        """
        Prepare the workspace for the request's step.

        Every input is validated and every file body rendered before the
        first filesystem change, so configuration errors leave nothing
        behind.

        Returns:
            Workspace path

        Raises:
            ConfigurationError: Invalid workdir, policy id or template context
            WorkspaceError: Filesystem failure or double initialization
        """
        layout.validate_workdir(request.env.workdir)
        workspace = self.workspace_path(request)

        if request.step != 0:
            if not workspace.is_dir():
                raise WorkspaceError(
                    f"workspace '{workspace}' does not exist", {"workspace": str(workspace)}
                )
            self._make_step_dir(request)
            return workspace

        for policy in request.policies:
            self._validate_policy_id(policy.policy_id)
        backend_config = self._render_backend_config(request)
        play_vars = self._render_play_vars(request.env.ansible_vars)

        if workspace.exists() and request.step_type == StepType.INIT:
            raise WorkspaceError(f"workspace '{workspace}' already exists", {"workspace": str(workspace)})

        try:
            workspace.mkdir(parents=True, exist_ok=True)
            self._write_private_key(workspace / layout.PRIVATE_KEY_FILE, request.private_key)
            (workspace / layout.CLOUDIAC_TF_FILE).write_text(backend_config)
            (workspace / layout.CLOUDIAC_PLAY_VARS).write_text(play_vars)
            self._write_policies(workspace, request.policies)
        except OSError as e:
            raise WorkspaceError(f"initial workspace: {e}", {"workspace": str(workspace)}) from e

        self._make_step_dir(request)
        logger.info("Initialized workspace %s", workspace)
        return workspace

    def reset(self, request: RunTaskRequest) -> None:
        """
        Discard leftovers of a failed attempt before the step is retried.

        Retrying the first step starts from an empty workspace; retrying a
        later step only clears that step's directory, keeping the artifacts
        of the completed steps before it.
        """
        target = self.workspace_path(request) if request.step == 0 else self.step_dir(request)
        if not target.exists():
            return
        try:
            shutil.rmtree(target)
        except OSError as e:
            raise WorkspaceError(f"reset workspace: {e}", {"path": str(target)}) from e
        logger.info("Reset %s for retry attempt %d", target, request.retry_attempt)

    def read_artifact(self, request: RunTaskRequest, name: str) -> Optional[Dict[str, Any]]:
        """Load a JSON artifact from the workspace root; None if absent or unreadable."""
        path = self.workspace_path(request) / name
        if not path.is_file():
            return None
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable artifact %s: %s", path, e)
            return None

    def _make_step_dir(self, request: RunTaskRequest):
        try:
            self.step_dir(request).mkdir(parents=False, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"create step directory: {e}", {"step": request.step}) from e

    @staticmethod
    def _validate_policy_id(policy_id: str):
        if not policy_id or "/" in policy_id or "\\" in policy_id or policy_id in (".", ".."):
            raise ConfigurationError(f"invalid policy id '{policy_id}'", {"policy_id": policy_id})

    def _render_backend_config(self, request: RunTaskRequest) -> str:
        state = request.state_store
        if not state.address:
            state = replace(state, address=self.default_state_address)
        try:
            # cloudiac.tf is linked into code/<workdir>, so the key path is relative to it
            return self.templates.backend.render(
                state=state,
                private_key_path=layout.up_to_workspace(request.env.workdir, layout.PRIVATE_KEY_FILE),
            )
        except TemplateError as e:
            raise ConfigurationError(f"generate tf file: {e}") from e

    @staticmethod
    def _render_play_vars(ansible_vars: Dict[str, str]) -> str:
        try:
            return yaml.safe_dump(dict(ansible_vars), default_flow_style=False, sort_keys=True)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"generate play vars file: {e}") from e

    @staticmethod
    def _write_private_key(path: Path, private_key: str):
        content = f"{(private_key or '').strip()}\n"
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # an existing file keeps its old mode on open
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content)

    @staticmethod
    def _write_policies(workspace: Path, policies: List[PolicyBundle]):
        policies_dir = workspace / layout.POLICIES_DIR
        policies_dir.mkdir(exist_ok=True)
        for policy in policies:
            policy_dir = policies_dir / policy.policy_id
            policy_dir.mkdir(exist_ok=True)
            (policy_dir / layout.POLICY_META_FILE).write_text(json.dumps(policy.meta, sort_keys=True))
            (policy_dir / layout.POLICY_REGO_FILE).write_text(policy.rego)
