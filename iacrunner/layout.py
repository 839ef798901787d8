"""
Workspace layout and fixed artifact names.

A task workspace lives at ``<storage>/<project>/<env>/<task>`` on the host
and is mounted at ``CONTAINER_WORKSPACE`` inside the container. Generated
scripts run from the workspace root; the repository is cloned into
``code/`` and every script changes into ``code/<workdir>`` before calling
the tools.
"""

import posixpath
from pathlib import Path, PurePosixPath
from typing import List, Union

from .exceptions import ConfigurationError

CODE_DIR = "code"
PRIVATE_KEY_FILE = "ssh_key"
CLOUDIAC_TF_FILE = "cloudiac.tf"
CLOUDIAC_PLAY_VARS = "cloudiac_play_vars.yml"
POLICIES_DIR = "policies"
POLICY_META_FILE = "meta.json"
POLICY_REGO_FILE = "policy.rego"

TASK_STEP_SCRIPT_NAME = "script.sh"
TASK_STEP_LOG_NAME = "step.log"
TASK_STEP_INFO_FILE_NAME = "step-info.json"

TF_PLAN_FILE = "_cloudiac.tfplan"
TF_PLAN_JSON_FILE = "tfplan.json"
TF_STATE_JSON_FILE = "tfstate.json"
TF_PROVIDER_SCHEMA_FILE = "tfproviderschema.json"
TERRASCAN_JSON_FILE = "tfscan.json"
TERRASCAN_RESULT_FILE = "scan_result.json"

ANSIBLE_STATE_ANALYSIS_NAME = "terraform.py"
VIOLATIONS_FOUND_EXIT_CODE = 3


def step_dir_name(step: int) -> str:
    return f"step{step}"


def task_workspace(storage_path: Union[str, Path], project_id: str, env_id: str, task_id: str) -> Path:
    return Path(storage_path) / project_id / env_id / task_id


def workdir_segments(workdir: str) -> List[str]:
    """Non-empty path segments of a working directory, ``.`` dropped."""
    return [part for part in PurePosixPath(workdir or ".").parts if part not in ("", ".", "/")]


def code_dir(workdir: str) -> str:
    """Path of the working directory relative to the workspace root."""
    return posixpath.join(CODE_DIR, *workdir_segments(workdir))


def up_to_workspace(workdir: str, name: str) -> str:
    """
    Path of a workspace-root file as seen from ``code/<workdir>``.

    One ``..`` leaves ``code/`` and one more is added per workdir segment.
    """
    ups = [".."] * (1 + len(workdir_segments(workdir)))
    return posixpath.join(*ups, name)


def validate_workdir(workdir: str) -> str:
    """
    Reject working directories that could leave the cloned repository.

    Raises:
        ConfigurationError: Absolute path or any ``..`` segment
    """
    value = workdir or ""
    if value.startswith("/") or ".." in PurePosixPath(value).parts:
        raise ConfigurationError(f"invalid workdir '{value}'", {"workdir": value})
    return value
