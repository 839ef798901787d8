"""
Run request passed from the triggering layer into the runner.

Mirrors the boundary contract: environment descriptor, repository,
step to run, state backend and policy bundles. Secret values may still be
encrypted; the task runner decrypts them before building the workspace.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

from ..exceptions import ConfigurationError
from ..models import StepType


@dataclass
class StateStore:
    """Terraform state backend descriptor."""
    backend: str = "consul"
    address: str = ""
    scheme: str = "http"
    path: str = ""


@dataclass
class PolicyBundle:
    """A policy rule set materialized under ``policies/<policy_id>/``."""
    policy_id: str
    meta: Dict[str, Any] = field(default_factory=dict)
    rego: str = ""


@dataclass
class EnvDescriptor:
    """
    Environment section of a run request.

    Attributes:
        id: Environment identifier
        workdir: Working directory relative to the repository root
        environment_vars: Process environment variables
        terraform_vars: Terraform input variables (injected as TF_VAR_*)
        ansible_vars: Configuration-management variables (rendered to YAML)
        tf_vars_file: Optional user tfvars file relative to workdir
        play_vars_file: Optional user playbook vars file relative to workdir
        playbook: Playbook run by configure steps
    """
    id: str
    workdir: str = ""
    environment_vars: Dict[str, str] = field(default_factory=dict)
    terraform_vars: Dict[str, str] = field(default_factory=dict)
    ansible_vars: Dict[str, str] = field(default_factory=dict)
    tf_vars_file: str = ""
    play_vars_file: str = ""
    playbook: str = ""


@dataclass
class RunTaskRequest:
    """Everything needed to run one step of a task."""
    env: EnvDescriptor
    project_id: str
    task_id: str
    step: int
    step_type: StepType
    repo_address: str = ""
    repo_revision: str = ""
    step_args: List[str] = field(default_factory=list)
    timeout: int = 0
    docker_image: str = ""
    private_key: str = ""
    state_store: StateStore = field(default_factory=StateStore)
    policies: List[PolicyBundle] = field(default_factory=list)
    stop_on_violation: bool = False
    retry_attempt: int = 0

    def __post_init__(self):
        self.step_type = StepType.parse(self.step_type)
        if not isinstance(self.step, int) or isinstance(self.step, bool) or self.step < 0:
            raise ConfigurationError(f"invalid step index '{self.step}'", {"step": self.step})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["step_type"] = self.step_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunTaskRequest":
        """Build a request from a YAML/JSON mapping."""
        if not isinstance(data, dict):
            raise ConfigurationError("run request must be a mapping")
        try:
            env = EnvDescriptor(**data["env"])
            state_store = StateStore(**(data.get("state_store") or {}))
            policies = [PolicyBundle(**p) for p in data.get("policies") or []]
            return cls(
                env=env,
                project_id=str(data["project_id"]),
                task_id=str(data["task_id"]),
                step=data.get("step", 0),
                step_type=data["step_type"],
                repo_address=data.get("repo_address", ""),
                repo_revision=data.get("repo_revision", ""),
                step_args=[str(a) for a in data.get("step_args") or []],
                timeout=int(data.get("timeout", 0)),
                docker_image=data.get("docker_image", ""),
                private_key=data.get("private_key", ""),
                state_store=state_store,
                policies=policies,
                stop_on_violation=bool(data.get("stop_on_violation", False)),
                retry_attempt=int(data.get("retry_attempt", 0)),
            )
        except KeyError as e:
            raise ConfigurationError(f"run request missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"malformed run request: {e}") from e
