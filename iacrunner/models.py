"""
Task, step and variable records.

The persistence layer owns storage; these dataclasses are the in-memory
shape the runner reads and mutates. Status and type values are closed
enumerations whose values match the persisted strings.
"""

import copy
import posixpath
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .exceptions import UnknownTypeError
from . import layout


class _ParsableEnum(str, Enum):
    """String enum with an explicit error for unknown values."""

    @classmethod
    def _label(cls) -> str:
        return re.sub(r"(?<!^)(?=[A-Z])", " ", cls.__name__).lower()

    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownTypeError(
                f"unknown {cls._label()} '{value}'",
                {"value": value, "allowed": [m.value for m in cls]},
            ) from None


class TaskType(_ParsableEnum):
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    SCAN = "scan"
    PARSE = "parse"


class TaskStatus(_ParsableEnum):
    PENDING = "pending"
    RUNNING = "running"
    APPROVING = "approving"
    REJECTED = "rejected"
    FAILED = "failed"
    COMPLETE = "complete"


class StepType(_ParsableEnum):
    INIT = "init"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    CONFIGURE = "play"
    COMMAND = "command"
    COLLECT = "collect"
    PARSE = "tfparse"
    SCAN = "tfscan"
    SCAN_INIT = "scaninit"


class StepStatus(_ParsableEnum):
    PENDING = "pending"
    APPROVING = "approving"
    REJECTED = "rejected"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETE = "complete"
    TIMEOUT = "timeout"


class VariableScope(_ParsableEnum):
    """Inheritance order follows declaration order: org is the broadest."""

    ORG = "org"
    TEMPLATE = "template"
    PROJECT = "project"
    ENV = "env"


class VariableType(_ParsableEnum):
    ENVIRONMENT = "environment"
    TERRAFORM = "terraform"
    ANSIBLE = "ansible"


TASK_EXITED_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.REJECTED, TaskStatus.COMPLETE})
EFFECT_TASK_TYPES = frozenset({TaskType.APPLY, TaskType.DESTROY})

STEP_EXITED_STATUSES = frozenset({
    StepStatus.REJECTED, StepStatus.COMPLETE, StepStatus.FAILED, StepStatus.TIMEOUT,
})
STEP_UNSTARTED_STATUSES = frozenset({StepStatus.PENDING, StepStatus.APPROVING})
APPROVAL_STEP_TYPES = frozenset({StepType.APPLY, StepType.DESTROY})

TASK_TYPE_NAMES = {
    TaskType.PLAN: "Plan",
    TaskType.APPLY: "Apply",
    TaskType.DESTROY: "Destroy",
    TaskType.SCAN: "Scan",
    TaskType.PARSE: "Parse",
}


def task_name_for_type(typ: Any) -> str:
    """Display name for a task type; unknown types raise UnknownTypeError."""
    return TASK_TYPE_NAMES[TaskType.parse(typ)]


def is_task_exited_status(status: Any) -> bool:
    return TaskStatus.parse(status) in TASK_EXITED_STATUSES


def is_task_started_status(status: Any) -> bool:
    # approving counts as started
    return TaskStatus.parse(status) != TaskStatus.PENDING


def is_effect_task_type(typ: Any) -> bool:
    return TaskType.parse(typ) in EFFECT_TASK_TYPES


@runtime_checkable
class Tasker(Protocol):
    """Capabilities shared by every task-like record."""

    id: str
    runner_id: str
    step_timeout: int

    def exited(self) -> bool:
        ...

    def started(self) -> bool:
        ...


@dataclass
class Variable:
    """
    A named value declared at one scope.

    Attributes:
        scope: Declaring scope (org, template, project, env)
        type: Where the value is injected (environment, terraform, ansible)
        name: Variable name, unique per (scope path, type)
        value: Stored value, possibly encrypted
        sensitive: Redact when the owning task is exposed externally
        description: Free-form text
    """
    scope: VariableScope
    type: VariableType
    name: str
    value: str = ""
    sensitive: bool = False
    description: str = ""

    def __post_init__(self):
        self.scope = VariableScope.parse(self.scope)
        self.type = VariableType.parse(self.type)

    @property
    def key(self):
        return (self.type, self.name)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "scope": self.scope.value,
            "type": self.type.value,
            "name": self.name,
            "value": self.value,
        }
        if self.sensitive:
            result["sensitive"] = True
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variable":
        return cls(
            scope=data["scope"],
            type=data["type"],
            name=data["name"],
            value=data.get("value", ""),
            sensitive=bool(data.get("sensitive", False)),
            description=data.get("description", ""),
        )


@dataclass
class TaskResult:
    """
    Outcome summary of a task.

    A ``None`` count means the count was never computed, which is different
    from zero changes.
    """
    res_added: Optional[int] = None
    res_changed: Optional[int] = None
    res_destroyed: Optional[int] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_plan(cls, plan_json: Optional[Dict[str, Any]],
                  state_json: Optional[Dict[str, Any]] = None) -> "TaskResult":
        result = cls()
        if plan_json is not None:
            added = changed = destroyed = 0
            for change in plan_json.get("resource_changes") or []:
                actions = (change.get("change") or {}).get("actions") or []
                if "create" in actions:
                    added += 1
                if "delete" in actions:
                    destroyed += 1
                if "update" in actions:
                    changed += 1
            result.res_added = added
            result.res_changed = changed
            result.res_destroyed = destroyed

        if state_json is not None:
            outputs = (state_json.get("values") or {}).get("outputs") or {}
            result.outputs = dict(outputs)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resAdded": self.res_added,
            "resChanged": self.res_changed,
            "resDestroyed": self.res_destroyed,
            "outputs": self.outputs,
        }


@dataclass
class TaskExtra:
    source: str = ""
    transition_id: str = ""


@dataclass
class Task:
    """One automation run."""
    id: str
    org_id: str
    project_id: str
    tpl_id: str
    env_id: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    name: str = ""
    creator_id: str = ""
    repo_addr: str = ""
    revision: str = ""
    commit_id: str = ""
    workdir: str = ""
    playbook: str = ""
    tf_vars_file: str = ""
    play_vars_file: str = ""
    targets: List[str] = field(default_factory=list)
    variables: List[Variable] = field(default_factory=list)
    state_path: str = ""
    extra: TaskExtra = field(default_factory=TaskExtra)
    key_id: str = ""
    auto_approve: bool = False
    stop_on_violation: bool = False
    result: TaskResult = field(default_factory=TaskResult)
    retry_number: int = 0
    retry_delay: int = 0
    retry_able: bool = False
    runner_id: str = ""
    step_timeout: int = 0
    message: str = ""
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = TaskType.parse(self.type)
        self.status = TaskStatus.parse(self.status)

    def exited(self) -> bool:
        return is_task_exited_status(self.status)

    def started(self) -> bool:
        return is_task_started_status(self.status)

    def is_effect_task(self) -> bool:
        return is_effect_task_type(self.type)

    def default_name(self) -> str:
        return task_name_for_type(self.type)

    def _artifact_path(self, name: str) -> str:
        return posixpath.join(self.project_id, self.env_id, self.id, name)

    def plan_json_path(self) -> str:
        return self._artifact_path(layout.TF_PLAN_JSON_FILE)

    def state_json_path(self) -> str:
        return self._artifact_path(layout.TF_STATE_JSON_FILE)

    def provider_schema_json_path(self) -> str:
        return self._artifact_path(layout.TF_PROVIDER_SCHEMA_FILE)

    def parse_json_path(self) -> str:
        return self._artifact_path(layout.TERRASCAN_JSON_FILE)

    def scan_result_json_path(self) -> str:
        return self._artifact_path(layout.TERRASCAN_RESULT_FILE)

    def redacted(self) -> "Task":
        """Copy safe for external exposure: sensitive values are emptied."""
        exposed = copy.deepcopy(self)
        for variable in exposed.variables:
            if variable.sensitive:
                variable.value = ""
        return exposed


@dataclass
class Step:
    """One executable unit within a task."""
    task_id: str
    index: int
    type: StepType
    id: str = ""
    org_id: str = ""
    project_id: str = ""
    env_id: str = ""
    name: str = ""
    args: List[str] = field(default_factory=list)
    next_step: str = ""
    status: StepStatus = StepStatus.PENDING
    exit_code: int = 0
    message: str = ""
    error: Optional[Dict[str, Any]] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    approver_id: str = ""
    current_retry_count: int = 0
    next_retry_time: int = 0
    retry_number: int = 0

    def __post_init__(self):
        self.type = StepType.parse(self.type)
        self.status = StepStatus.parse(self.status)

    def is_started(self) -> bool:
        return self.status not in STEP_UNSTARTED_STATUSES

    def is_exited(self) -> bool:
        return self.status in STEP_EXITED_STATUSES

    def is_rejected(self) -> bool:
        return self.status == StepStatus.REJECTED

    def needs_approval(self) -> bool:
        return self.type in APPROVAL_STEP_TYPES

    def is_approved(self) -> bool:
        if self.status == StepStatus.REJECTED:
            return False
        # only apply and destroy steps are gated
        if self.needs_approval() and not self.approver_id:
            return False
        return True

    def log_path(self) -> str:
        return posixpath.join(
            self.project_id,
            self.env_id,
            self.task_id,
            layout.step_dir_name(self.index),
            layout.TASK_STEP_LOG_NAME,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        for key in ("start_at", "end_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
