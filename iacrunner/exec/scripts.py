"""
Step script generation.

``ScriptGenerator.generate`` is a pure function of the step type and a
frozen ``ScriptContext``: the same input always yields byte-identical
script text. Every path written into a script is relative to the
working directory the script changes into.
"""

import posixpath
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from jinja2 import TemplateError

from .. import layout
from ..exceptions import ConfigurationError
from ..models import StepType
from .request import RunTaskRequest
from .templates import DEFAULT_TEMPLATES, ScriptTemplates

DEFAULT_ASSETS_DIR = "/cloudiac/assets"

_CLONE_STEPS = frozenset({StepType.INIT, StepType.SCAN_INIT})


@dataclass(frozen=True)
class ScriptContext:
    """Resolved inputs of a step script."""
    workdir: str = ""
    repo_address: str = ""
    revision: str = ""
    step_args: Tuple[str, ...] = ()
    tf_vars_file: str = ""
    play_vars_file: str = ""
    playbook: str = ""
    stop_on_violation: bool = False
    assets_dir: str = DEFAULT_ASSETS_DIR

    @classmethod
    def from_request(cls, request: RunTaskRequest, assets_dir: Optional[str] = None) -> "ScriptContext":
        return cls(
            workdir=request.env.workdir,
            repo_address=request.repo_address,
            revision=request.repo_revision,
            step_args=tuple(str(arg) for arg in request.step_args),
            tf_vars_file=request.env.tf_vars_file,
            play_vars_file=request.env.play_vars_file,
            playbook=request.env.playbook,
            stop_on_violation=request.stop_on_violation,
            assets_dir=assets_dir or DEFAULT_ASSETS_DIR,
        )


class ScriptGenerator:
    """Renders the shell script executed for a step."""

    def __init__(self, templates: ScriptTemplates = DEFAULT_TEMPLATES):
        self.templates = templates

    def generate(self, step_type: Any, context: ScriptContext) -> str:
        """
        Render the script for a step.

        Args:
            step_type: Step type (enum or persisted string value)
            context: Resolved script inputs

        Returns:
            Script text

        Raises:
            UnknownTypeError: No template exists for the step type
            ConfigurationError: The context cannot produce a valid script
        """
        step_type = StepType.parse(step_type)
        template = self.templates.for_step(step_type)
        layout.validate_workdir(context.workdir)
        self._check_context(step_type, context)

        try:
            return template.render(**self._variables(context))
        except TemplateError as e:
            raise ConfigurationError(
                f"render {step_type.value} script: {e}", {"step_type": step_type.value}
            ) from e

    def _check_context(self, step_type: StepType, context: ScriptContext):
        if step_type in _CLONE_STEPS:
            if not context.repo_address:
                raise ConfigurationError("repository address is required", {"step_type": step_type.value})
            if not context.revision:
                raise ConfigurationError("repository revision is required", {"step_type": step_type.value})
        elif step_type == StepType.CONFIGURE and not context.playbook:
            raise ConfigurationError("playbook is required", {"step_type": step_type.value})

    def _variables(self, context: ScriptContext) -> Dict[str, Any]:
        workdir = context.workdir

        def up(name: str) -> str:
            return layout.up_to_workspace(workdir, name)

        return {
            "code_dir": layout.code_dir(workdir),
            "repo_address": context.repo_address,
            "revision": context.revision,
            "step_args": list(context.step_args),
            "commands": list(context.step_args),
            "tf_vars_file": context.tf_vars_file,
            "play_vars_file": context.play_vars_file,
            "playbook": context.playbook,
            "stop_on_violation": context.stop_on_violation,
            "violations_exit_code": layout.VIOLATIONS_FOUND_EXIT_CODE,
            "plan_file": layout.TF_PLAN_FILE,
            "backend_file": up(layout.CLOUDIAC_TF_FILE),
            "private_key_path": up(layout.PRIVATE_KEY_FILE),
            "play_vars_path": up(layout.CLOUDIAC_PLAY_VARS),
            "policies_dir": up(layout.POLICIES_DIR),
            "plan_json_path": up(layout.TF_PLAN_JSON_FILE),
            "state_json_path": up(layout.TF_STATE_JSON_FILE),
            "parse_json_path": up(layout.TERRASCAN_JSON_FILE),
            "scan_result_path": up(layout.TERRASCAN_RESULT_FILE),
            "inventory_path": posixpath.join(context.assets_dir, layout.ANSIBLE_STATE_ANALYSIS_NAME),
        }


def generate_script(step_type: Any, context: ScriptContext) -> str:
    return ScriptGenerator().generate(step_type, context)
